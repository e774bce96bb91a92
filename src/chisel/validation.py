"""
Schema Validation - JSON Schema validation utilities.

Validates module documents before they are turned into Resources, and
resource properties against the optional schema a provider declares.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

RESOURCE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["type", "name"],
    "properties": {
        "type": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "state": {"enum": ["present", "absent", "running", "stopped"]},
        "depends_on": {"type": "array", "items": {"type": "string"}},
    },
}

MODULE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["apiVersion", "kind", "metadata", "spec"],
    "properties": {
        "apiVersion": {"type": "string"},
        "kind": {"type": "string"},
        "metadata": {
            "type": "object",
            "required": ["name", "version"],
            "properties": {
                "name": {"type": "string"},
                "version": {"type": ["string", "number"]},
                "description": {"type": "string"},
                "labels": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
        },
        "spec": {
            "type": "object",
            "properties": {
                "resources": {"type": "array", "items": RESOURCE_SCHEMA},
            },
        },
    },
}


def validate_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate that a schema is itself a valid JSON Schema (Draft 7).

    Args:
        schema: The schema to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except Exception as e:
        return False, f"Invalid schema: {str(e)}"


def validate_against_schema(
    document: Any, schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a document against a JSON Schema.

    Args:
        document: The data to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = sorted(validator.iter_errors(document), key=lambda e: [str(p) for p in e.path])

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
    except Exception as e:
        logger.error(f"Unexpected error during validation: {e}")
        return False, f"Validation failed: {str(e)}"


def validate_module_document(doc: Any) -> Tuple[bool, Optional[str]]:
    """Validate the shape of a parsed module document."""
    return validate_against_schema(doc, MODULE_SCHEMA)
