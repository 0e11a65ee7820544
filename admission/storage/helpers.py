from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any


def doc_id_from_text(value: str) -> str:
    normalized = value.strip().replace("/", "_")
    if not normalized:
        raise ValueError("Document id source must not be empty.")

    if len(normalized) <= 128:
        return normalized

    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
    return f"{normalized[:96]}-{digest}"


def serialize_for_redis(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def split_redis_mapping(mapping: dict[str, Any]) -> tuple[dict[str, str], list[str]]:
    """Split into fields to write and fields to delete (``None`` values)."""
    present = {key: serialize_for_redis(value) for key, value in mapping.items() if value is not None}
    missing = [key for key, value in mapping.items() if value is None]
    return present, missing
