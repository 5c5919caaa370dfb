"""Canonical JSON, hashing and signing utilities."""

import hashlib
import hmac
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def _canonical_value(obj: Any) -> Any:
    """Convert value for canonical representation."""
    if obj is None:
        return None
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, Enum):
        return _canonical_value(obj.value)
    if isinstance(obj, (int, float, Decimal)):
        return float(obj) if isinstance(obj, (float, Decimal)) else int(obj)
    if isinstance(obj, dict):
        return {str(k): _canonical_value(v) for k, v in sorted(obj.items())}
    if isinstance(obj, (list, tuple)):
        return [_canonical_value(v) for v in obj]
    if isinstance(obj, str):
        return obj
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON string (sorted keys, consistent formatting)."""
    canonical = _canonical_value(obj)
    return json.dumps(canonical, sort_keys=True, separators=(",", ":"))


def salted_hash(salt: str, value: str) -> str:
    """SHA256 of salt:value, used for stored secrets."""
    return hashlib.sha256(f"{salt}:{value}".encode()).hexdigest()


def sign_body(secret: str, body: bytes) -> str:
    """HMAC-SHA256 signature header value for a webhook body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"
