"""
JSON Schema validation for lab payloads.

Collects every error rather than stopping at the first one, so a center
correcting an upload sees all problems at once.
"""

from typing import Any

import jsonschema


def validate_against_schema(data: Any, schema: dict[str, Any]) -> list[str]:
    """
    Validate data against a JSON schema.
    Returns a list of error messages prefixed with their location
    (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    messages = []
    for error in errors:
        location = "/".join(str(part) for part in error.absolute_path)
        messages.append(f"{location}: {error.message}" if location else error.message)
    return messages
