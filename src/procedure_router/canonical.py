from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_primitive(value: Any) -> Any:
    """Reduce models, enums, paths, dates and sets to values rfc8785 accepts.

    Sets become sorted lists so that two definitions listing the same
    disallowed tools in a different order share a fingerprint.

    Raises:
        TypeError: If ``value`` has no JSON representation.
    """
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitive(value.model_dump(mode="json", exclude_none=True))
    if isinstance(value, Enum):
        return _to_json_primitive(value.value)
    if isinstance(value, dict):
        return {str(key): _to_json_primitive(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(_to_json_primitive(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [_to_json_primitive(item) for item in value]
    if isinstance(value, PurePath):
        return value.as_posix()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` to RFC 8785 canonical JSON.

    Used to fingerprint workflow definitions so reloads can report which
    definitions actually changed.
    """
    return rfc8785.dumps(_to_json_primitive(value)).decode("utf-8")
