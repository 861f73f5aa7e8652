"""
vmfleet/models/validator.py

Helpers for turning untyped data (kubectl JSON, stored state documents,
YAML fleet files) into typed values through pydantic's TypeAdapter.
"""

import json
from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validate `obj` against `expected_type` and return it typed.

    Raises:
        ValueError: If validation fails.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Validation failed for type {expected_type}: {e}") from e


def parse_json_as(raw: str, expected_type: Type[T]) -> T:
    """
    Decode a JSON document and validate it as `expected_type`.

    Raises:
        ValueError: If the text is not JSON or does not match the type.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON document: {e}") from e
    return validate_type(data, expected_type)
