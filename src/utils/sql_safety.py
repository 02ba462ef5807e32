"""
SQL identifier safety checks.

Rule files name tables and columns that end up inside DDL statements
(security labels). Names are validated here before any SQL is built;
quoting itself is done with ``psycopg2.sql.Identifier`` at execution time.
"""

import re


# Strict ASCII-only patterns for SQL identifiers
VALID_IDENTIFIER = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63


def is_valid_identifier(identifier: str) -> bool:
    """Return True when ``identifier`` is a plain SQL identifier."""
    return (
        isinstance(identifier, str)
        and len(identifier) <= MAX_IDENTIFIER_LENGTH
        and VALID_IDENTIFIER.fullmatch(identifier) is not None
    )


def validate_identifier(identifier: str) -> None:
    """
    Validate a SQL identifier (table name, column name, role name).

    Args:
        identifier: The identifier to validate

    Raises:
        ValueError: If the identifier is empty, too long, or contains
            characters outside ASCII letters, digits and underscores
    """
    if not identifier:
        raise ValueError("SQL identifier cannot be empty")

    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Invalid SQL identifier: {identifier!r}. "
            f"Longer than {MAX_IDENTIFIER_LENGTH} characters."
        )

    if not VALID_IDENTIFIER.fullmatch(identifier):
        raise ValueError(
            f"Invalid SQL identifier: {identifier!r}. "
            "Only ASCII letters, digits, and underscores are allowed, "
            "and must start with a letter or underscore."
        )


def validate_positive_int(value: int, param_name: str, min_value: int = 1) -> None:
    """
    Validate an integer setting (ports, attempt counts).

    Raises:
        ValueError: If the value is not an integer or below ``min_value``
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(
            f"Invalid {param_name}: {value!r}. Must be an integer."
        )

    if value < min_value:
        raise ValueError(
            f"Invalid {param_name}: {value}. Must be >= {min_value}."
        )
