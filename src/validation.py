"""
Schema Validation - OpenAPI v3 schema validation utilities.

Validates StorageCluster specs before they are reconciled and the schemas of
custom resource definitions before they are registered.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

_ENV_VAR_SCHEMA = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "value": {"type": "string"},
        "valueFrom": {"type": "object"},
    },
}

STORAGE_CLUSTER_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "image": {"type": "string"},
        "imagePullPolicy": {
            "type": "string",
            "enum": ["Always", "IfNotPresent", "Never"],
        },
        "imagePullSecret": {"type": "string"},
        "customImageRegistry": {"type": "string"},
        "secretsProvider": {"type": "string"},
        "startPort": {"type": "integer", "minimum": 1, "maximum": 65535},
        "kvdb": {
            "type": "object",
            "properties": {
                "internal": {"type": "boolean"},
                "endpoints": {"type": "array", "items": {"type": "string"}},
            },
        },
        "placement": {"type": "object"},
        "deleteStrategy": {
            "type": "object",
            "required": ["type"],
            "properties": {
                "type": {"type": "string", "enum": ["Uninstall", "UninstallAndWipe"]},
            },
        },
        "stork": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "image": {"type": "string"},
                "args": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
                "env": {"type": "array", "items": _ENV_VAR_SCHEMA},
            },
        },
    },
}


def validate_openapi_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate that a schema is a valid OpenAPI v3 / JSON Schema.

    Args:
        schema: The schema to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        # Draft 7 is what OpenAPI 3.0 schemas are checked against
        Draft7Validator.check_schema(schema)
        return True, None
    except Exception as e:
        return False, f"Invalid schema: {str(e)}"


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against an OpenAPI v3 schema.

    Args:
        spec: The resource spec to validate
        schema: The OpenAPI v3 JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = list(validator.iter_errors(spec))

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


def validate_storage_cluster_spec(spec: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Validate a raw StorageCluster spec."""
    return validate_spec_against_schema(spec, STORAGE_CLUSTER_SPEC_SCHEMA)
