"""
Schema Validation - JSON Schema validation for configuration documents.

Validates workspace configuration files (environments and solutions)
before they are turned into Config objects.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "environments": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "url"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "url": {"type": "string", "pattern": "^https?://"},
                    "resource": {"type": "string"},
                    "authType": {"enum": ["interactive", "clientSecret"]},
                    "createMissingComponents": {"type": "boolean"},
                },
            },
        },
        "solutions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "prefix": {"type": "string"},
                    "default": {"type": "boolean"},
                },
            },
        },
        "defaultSolution": {"type": "string"},
        "reflection": {
            "type": "object",
            "properties": {
                "provider": {"type": "string", "minLength": 1},
                "configs": {"type": "object"},
            },
        },
    },
}


def validate_against_schema(
    document: Any, schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a document against a JSON Schema (Draft 7).

    Args:
        document: The decoded document to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema)
        errors = list(validator.iter_errors(document))

        if not errors:
            return True, None

        # Collect all validation errors
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


def validate_config_document(document: Any) -> Tuple[bool, Optional[str]]:
    """Validate a workspace configuration document."""
    return validate_against_schema(document, CONFIG_SCHEMA)
