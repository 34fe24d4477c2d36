"""
JSON codec for cached values.

Plain JSON would turn datetimes, decimals and UUIDs into strings, so a value
read from the cache would differ from the same value read from the backend.
Those types are written as tagged objects and restored on load.
"""

import base64
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


_TAG = "__mtc__"


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_TAG: "datetime", "v": value.isoformat()}
    if isinstance(value, date):
        return {_TAG: "date", "v": value.isoformat()}
    if isinstance(value, Decimal):
        return {_TAG: "decimal", "v": str(value)}
    if isinstance(value, UUID):
        return {_TAG: "uuid", "v": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {_TAG: "bytes", "v": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (set, frozenset)):
        return {_TAG: "set", "v": sorted(value, key=repr)}
    raise TypeError(f"Object of type {type(value).__name__} is not cacheable")


def _decode(obj: dict) -> Any:
    tag = obj.get(_TAG)
    if tag is None or len(obj) != 2:
        return obj
    raw = obj["v"]
    if tag == "datetime":
        return datetime.fromisoformat(raw)
    if tag == "date":
        return date.fromisoformat(raw)
    if tag == "decimal":
        return Decimal(raw)
    if tag == "uuid":
        return UUID(raw)
    if tag == "bytes":
        return base64.b64decode(raw)
    if tag == "set":
        return set(raw)
    return obj


def dumps(value: Any) -> str:
    return json.dumps(value, default=_encode, separators=(",", ":"))


def loads(payload: str) -> Any:
    return json.loads(payload, object_hook=_decode)
