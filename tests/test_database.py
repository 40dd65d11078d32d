"""Unit tests for the database connection wrapper."""

import pandas as pd
import pytest

from legend.config import ConnectionDetails
from legend.database import connect


class TestDuckDbConnection:
    """Test the DuckDB connection wrapper."""

    def test_insert_and_query_temp_table(self):
        # Arrange
        frame = pd.DataFrame({"target_id": [1, 2], "name": ["a", "b"], "weight": [0.5, 1.5]})

        # Act
        with connect(ConnectionDetails(dbms="duckdb", server=":memory:")) as connection:
            connection.insert_table("uploaded", frame)
            result = connection.query("SELECT * FROM uploaded ORDER BY target_id")

        # Assert
        assert result["target_id"].tolist() == [1, 2]
        assert result["name"].tolist() == ["a", "b"]
        assert result["weight"].tolist() == [0.5, 1.5]

    def test_insert_empty_frame_creates_table(self):
        # Arrange
        frame = pd.DataFrame({"concept_id": pd.Series(dtype="int64")})

        # Act
        with connect(ConnectionDetails(dbms="duckdb", server=":memory:")) as connection:
            connection.insert_table("empty_concepts", frame)
            result = connection.query("SELECT COUNT(*) AS n FROM empty_concepts")

        # Assert
        assert result.loc[0, "n"] == 0

    def test_execute_script_runs_every_statement(self):
        # Arrange
        script = "CREATE TABLE t (x INTEGER); INSERT INTO t VALUES (1); INSERT INTO t VALUES (2);"

        # Act
        with connect(ConnectionDetails(dbms="duckdb", server=":memory:")) as connection:
            connection.execute_sql(script)
            result = connection.query("SELECT SUM(x) AS total FROM t;")

        # Assert
        assert result.loc[0, "total"] == 3

    def test_query_rejects_multiple_statements(self):
        # Arrange & Act & Assert
        with connect(ConnectionDetails(dbms="duckdb", server=":memory:")) as connection:
            with pytest.raises(ValueError):
                connection.query("SELECT 1; SELECT 2")


class TestPostgresConnection:
    """Test PostgreSQL connection settings."""

    def test_server_must_name_database(self):
        # Arrange
        details = ConnectionDetails(dbms="postgresql", server="localhost")

        # Act & Assert
        with pytest.raises(ValueError, match="host/database"):
            connect(details)
