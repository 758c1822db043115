"""Table Archival Engine - Shared utilities."""

import re

_FORBIDDEN_PREDICATE_TOKENS = (";", "--", "/*", "*/")


def safe_identifier(name: str) -> str:
    """Validate and quote a PostgreSQL identifier to prevent SQL injection.

    Ensures the name is a valid SQL identifier, then double-quotes it.
    Rejects anything that isn't alphanumeric/underscores (plus dots for schema.table).

    Args:
        name: SQL identifier (table name, column name, schema name)

    Returns:
        Safely quoted identifier (e.g., '"public"."my_table"')

    Raises:
        ValueError: If the identifier contains invalid characters
    """
    if "." in name:
        parts = name.split(".", 1)
        return f"{safe_identifier(parts[0])}.{safe_identifier(parts[1])}"

    if not is_valid_identifier(name):
        raise ValueError(
            f"Invalid SQL identifier: {name!r}. "
            "Only letters, digits, and underscores are allowed."
        )

    return f'"{name}"'


def is_valid_identifier(name: str) -> bool:
    """Check whether a bare (unqualified) name is a valid SQL identifier."""
    return bool(name) and re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", name) is not None


def qualified_name(schema: str, table: str) -> str:
    """Return the quoted ``schema.table`` name."""
    return f"{safe_identifier(schema)}.{safe_identifier(table)}"


def validate_filter_predicate(predicate: str) -> str:
    """Validate a raw filter predicate fragment.

    The predicate is appended verbatim after the filter column, so statement
    separators and comment markers are rejected.

    Args:
        predicate: Predicate fragment such as ``< now() - interval '10 minutes'``

    Returns:
        The stripped predicate

    Raises:
        ValueError: If the predicate is empty or contains forbidden tokens
    """
    stripped = (predicate or "").strip()
    if not stripped:
        raise ValueError("Filter predicate must not be empty")
    for token in _FORBIDDEN_PREDICATE_TOKENS:
        if token in stripped:
            raise ValueError(f"Filter predicate contains forbidden token {token!r}")
    return stripped
