"""
Parameterized SQL templates.

Templates live in ``legend/sql`` and follow the ``{DEFAULT @param = value}``
convention:

    {DEFAULT @cohort_database_schema = 'scratch'}
    SELECT * FROM @cohort_database_schema.@cohort_table;

Functions:
- render_sql: apply defaults and caller parameters to a template
- split_sql: split a rendered script into single statements
- load_rendered_sql: read a packaged template and render it
"""

from __future__ import annotations

import re
from importlib import resources
from typing import Any

_DEFAULT_PATTERN = re.compile(r"\{\s*DEFAULT\s+@(\w+)\s*=\s*(.*?)\s*\}\s*\n?", re.IGNORECASE)
_PARAM_PATTERN = re.compile(r"@([A-Za-z_]\w*)")


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(_format_value(v) for v in value)
    return str(value)


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def render_sql(sql: str, **params: Any) -> str:
    """
    Render a SQL template.

    Args:
        sql: Template text
        **params: Parameter values; sequences are joined with commas

    Returns:
        Rendered SQL. References to parameters that have neither a default
        nor a value are left untouched.

    Example:
        >>> render_sql("{DEFAULT @a = 'x'}SELECT @a, @b;", b=[1, 2])
        'SELECT x, 1,2;'
    """
    values: dict[str, str] = {}
    for match in _DEFAULT_PATTERN.finditer(sql):
        values[match.group(1).lower()] = _strip_quotes(match.group(2))
    body = _DEFAULT_PATTERN.sub("", sql)

    for name, value in params.items():
        values[name.lower()] = _format_value(value)

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1).lower()
        return values.get(name, match.group(0))

    return _PARAM_PATTERN.sub(substitute, body)


def split_sql(sql: str) -> list[str]:
    """Split a script on top-level semicolons.

    Semicolons inside quoted literals, line comments and block comments do
    not end a statement. Empty statements are dropped.
    """
    statements: list[str] = []
    current: list[str] = []
    i = 0
    n = len(sql)
    quote: str | None = None

    while i < n:
        char = sql[i]
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            i += 1
            continue
        if char in ("'", '"'):
            quote = char
            current.append(char)
            i += 1
            continue
        if sql.startswith("--", i):
            end = sql.find("\n", i)
            end = n if end == -1 else end
            current.append(sql[i:end])
            i = end
            continue
        if sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
            current.append(sql[i:end])
            i = end
            continue
        if char == ";":
            statements.append("".join(current))
            current = []
            i += 1
            continue
        current.append(char)
        i += 1

    statements.append("".join(current))
    return [s.strip() for s in statements if _has_code(s)]


def _has_code(statement: str) -> bool:
    without_block = re.sub(r"/\*.*?\*/", "", statement, flags=re.DOTALL)
    without_line = re.sub(r"--[^\n]*", "", without_block)
    return bool(without_line.strip())


def read_sql_template(name: str) -> str:
    """Read a packaged template by file name.

    Raises:
        FileNotFoundError: If no template with that name ships with the package
    """
    resource = resources.files("legend").joinpath("sql", name)
    if not resource.is_file():
        raise FileNotFoundError(f"SQL template not found: {name}")
    return resource.read_text(encoding="utf-8")


def load_rendered_sql(name: str, **params: Any) -> str:
    return render_sql(read_sql_template(name), **params)
