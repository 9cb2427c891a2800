from __future__ import annotations


def _escape_identifier(name: str) -> str:
    return name.replace("\\", "\\\\").replace("`", "\\`")


def quote_column(column: str) -> str:
    """Return a backtick-quoted column identifier."""
    if not column:
        raise ValueError("column name must not be empty")
    return f"`{_escape_identifier(column)}`"


def format_identifier(database: str, table: str) -> str:
    """Return a quoted identifier `` `db`.`table` `` suitable for SQL strings."""
    return f"`{_escape_identifier(database)}`.`{_escape_identifier(table)}`"
