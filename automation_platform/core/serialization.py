from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any


def parse_uuid(value: Any) -> uuid.UUID | None:
    """Return a UUID for `value`, or None when it is not a valid id."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


def to_jsonable(value: Any) -> Any:
    """Round-trip through json so datetimes, UUIDs and decimals fit JSON columns."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
