"""Database connectivity for DuckDB and PostgreSQL.

``connect`` returns a ``Connection`` wrapping the driver connection with the
handful of operations the study stages need: running rendered SQL scripts,
querying into DataFrames and uploading small DataFrames as (temp) tables.
"""

from __future__ import annotations

import logging
from typing import Any

import pandas as pd

from .config import ConnectionDetails
from .sql import split_sql

logger = logging.getLogger(__name__)


def _sql_type(dtype: Any) -> str:
    if pd.api.types.is_bool_dtype(dtype):
        return "BOOLEAN"
    if pd.api.types.is_integer_dtype(dtype):
        return "BIGINT"
    if pd.api.types.is_float_dtype(dtype):
        return "DOUBLE PRECISION"
    if pd.api.types.is_datetime64_any_dtype(dtype):
        return "DATE"
    return "VARCHAR(255)"


class Connection:
    """Thin wrapper over a DB-API connection."""

    def __init__(self, raw: Any, dbms: str) -> None:
        self.raw = raw
        self.dbms = dbms

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.raw.close()

    def execute_sql(self, sql: str) -> None:
        """Run every statement of a rendered script in order."""
        statements = split_sql(sql)
        logger.debug(f"Executing {len(statements)} SQL statement(s)")
        if self.dbms == "duckdb":
            for statement in statements:
                self.raw.execute(statement)
            return

        with self.raw.cursor() as cursor:
            for statement in statements:
                cursor.execute(statement)
        self.raw.commit()

    def query(self, sql: str) -> pd.DataFrame:
        """Run a single rendered query and return the result as a DataFrame."""
        statements = split_sql(sql)
        if len(statements) != 1:
            raise ValueError(f"Expected exactly one query statement, got {len(statements)}")
        statement = statements[0]

        if self.dbms == "duckdb":
            return self.raw.execute(statement).fetchdf()

        with self.raw.cursor() as cursor:
            cursor.execute(statement)
            columns = [column[0] for column in cursor.description]
            rows = cursor.fetchall()
        return pd.DataFrame(rows, columns=columns)

    def insert_table(self, name: str, data: pd.DataFrame, temp: bool = True) -> None:
        """Create ``name`` (dropping any previous version) and fill it with ``data``."""
        column_defs = ", ".join(f"{col} {_sql_type(data[col].dtype)}" for col in data.columns)
        create = "CREATE TEMP TABLE" if temp else "CREATE TABLE"
        self.execute_sql(f"DROP TABLE IF EXISTS {name}; {create} {name} ({column_defs});")

        if data.empty:
            return

        if self.dbms == "duckdb":
            view_name = f"{name.replace('.', '_')}_upload"
            self.raw.register(view_name, data)
            try:
                self.raw.execute(f"INSERT INTO {name} SELECT * FROM {view_name}")
            finally:
                self.raw.unregister(view_name)
            return

        import psycopg2.extras

        columns = ", ".join(data.columns)
        records = [
            tuple(None if pd.isna(value) else value for value in row)
            for row in data.astype(object).itertuples(index=False, name=None)
        ]
        with self.raw.cursor() as cursor:
            psycopg2.extras.execute_values(
                cursor, f"INSERT INTO {name} ({columns}) VALUES %s", records
            )
        self.raw.commit()


def connect(details: ConnectionDetails) -> Connection:
    """
    Open a connection described by ``details``.

    Raises:
        ValueError: If the server string cannot be parsed for PostgreSQL
    """
    if details.dbms == "duckdb":
        import duckdb

        logger.info(f"Connecting to DuckDB: {details.server}")
        return Connection(duckdb.connect(details.server), "duckdb")

    import psycopg2

    if "/" not in details.server:
        raise ValueError(
            f"PostgreSQL server must look like 'host/database', got: {details.server}"
        )
    host, database = details.server.split("/", 1)
    logger.info(f"Connecting to PostgreSQL: {host}:{details.port}/{database}")
    raw = psycopg2.connect(
        host=host,
        port=details.port,
        dbname=database,
        user=details.resolved_user(),
        password=details.resolved_password(),
    )
    return Connection(raw, "postgresql")
