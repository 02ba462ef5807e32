"""
Masking rule file loading.

Rule files are YAML or JSON documents of the form::

    users:
      masks:
        first_name: anon.fake_first_name()
        email: anon.partial_email(email)

Mask expressions are passed through untouched; only the table and column
names are checked, since they end up in DDL statements.
"""

import json
import logging
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from src.utils.sql_safety import validate_identifier

from .errors import RuleSetError
from .models import RuleSet

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"

RULE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "minProperties": 1,
    "propertyNames": {"pattern": IDENTIFIER_PATTERN},
    "additionalProperties": {
        "type": "object",
        "required": ["masks"],
        "additionalProperties": False,
        "properties": {
            "masks": {
                "type": "object",
                "minProperties": 1,
                "propertyNames": {"pattern": IDENTIFIER_PATTERN},
                "additionalProperties": {"type": "string", "minLength": 1},
            }
        },
    },
}


def parse_rules(data: Any, source: str = "<memory>") -> RuleSet:
    """
    Validate a decoded rule document and build a RuleSet

    Args:
        data: Decoded YAML/JSON document
        source: Where the document came from, for error messages

    Raises:
        RuleSetError: If the document does not describe a valid rule set
    """
    try:
        jsonschema.validate(instance=data, schema=RULE_FILE_SCHEMA)
    except jsonschema.exceptions.ValidationError as e:
        location = "/".join(str(part) for part in e.absolute_path) or "<root>"
        raise RuleSetError(
            f"Invalid rule file: {e.message}", source=source, location=location
        ) from e

    for table, definition in data.items():
        try:
            validate_identifier(table)
            for column, expression in definition["masks"].items():
                validate_identifier(column)
                if not expression.strip():
                    raise ValueError(f"Empty mask expression for {table}.{column}")
        except ValueError as e:
            raise RuleSetError(str(e), source=source, table=table) from e

    try:
        rules = RuleSet.from_mapping(data)
    except ValueError as e:
        raise RuleSetError(str(e), source=source) from e

    logger.debug(
        f"Parsed {len(rules)} table rule(s) with {rules.column_count} column(s) from {source}"
    )
    return rules


def load_rules(path: str | Path) -> RuleSet:
    """
    Load a rule file. ``.json`` files are parsed as JSON, anything else as YAML.

    Raises:
        RuleSetError: If the file is missing, unparsable, or invalid
    """
    path = Path(path)
    if not path.is_file():
        raise RuleSetError("Rule file not found", source=str(path))

    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise RuleSetError(f"Cannot parse rule file: {e}", source=str(path)) from e

    return parse_rules(data, source=str(path))
