"""
Test utilities for comparing rendered SQL templates.
"""
from __future__ import annotations


def normalize_sql(sql: str | None) -> str:
    """
    Collapse whitespace so rendered templates compare independent of layout.

    Templates are indented with tabs and split over many lines; expected
    fragments in tests are written on one line.
    """
    if not sql:
        return ""
    return " ".join(sql.strip().split())
