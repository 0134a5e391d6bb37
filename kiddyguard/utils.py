"""Shared utility functions used across KiddyGuard modules."""
from __future__ import annotations

import json
import re
from typing import Any

from kiddyguard.errors import ValidationError

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE,
)

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def validate_uuid(value: object, label: str = "ID") -> str:
    """Return *value* normalised to lower case if it is a canonical UUID, else raise ValidationError."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid {label}")
    value = value.strip()
    if not UUID_RE.match(value):
        raise ValidationError(f"Invalid {label} format")
    return value.lower()
