"""
Spec Validation - JSON Schema for declared Sentry projects.

Specs are validated when they are declared or replaced through the API; the
reconciler assumes it only ever sees valid specs.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator

from models import ConflictPolicy

logger = logging.getLogger(__name__)

_IDENTIFIER = {
    "type": "string",
    "minLength": 4,
    "maxLength": 50,
    "pattern": "^[a-z0-9-]+$",
}

SENTRY_PROJECT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["slug", "team", "organization"],
    "additionalProperties": False,
    "properties": {
        "name": {
            "type": "string",
            "description": "Human-readable name of the project in Sentry",
        },
        "slug": dict(_IDENTIFIER, description="Unique project identifier"),
        "team": dict(_IDENTIFIER, description="Team that owns the project"),
        "organization": dict(
            _IDENTIFIER, description="Organization that owns the project"
        ),
        "platform": {
            "type": "string",
            "description": "Platform of the project in Sentry",
        },
        "conflictPolicy": {
            "type": "string",
            "enum": [p.value for p in ConflictPolicy],
            "description": "What to do when the slug already exists in Sentry",
        },
    },
}

_validator = Draft7Validator(SENTRY_PROJECT_SCHEMA)


def validate_project_spec(spec: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate a declared project spec.

    Returns:
        Tuple of (is_valid, error_message); all violations are joined with
        "; " and prefixed by the offending field path.
    """
    errors = sorted(_validator.iter_errors(spec), key=lambda e: list(e.absolute_path))
    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")
    return False, "; ".join(error_messages)
