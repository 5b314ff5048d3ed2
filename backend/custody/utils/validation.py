from __future__ import annotations
"""Reusable validation helpers for request payloads.

All helpers raise ``ValidationError`` (400) so malformed input never reaches the
lifecycle rules.
"""
from datetime import datetime
from typing import Any, Iterable, List, Optional
from custody.services.errors import ValidationError


def validate_status(new_status: str, allowed: Iterable[str], field_name: str = 'status') -> str:
    """Validate that new_status is inside allowed.

    Returns the status (to enable inline usage) or raises ValidationError.
    """
    allowed = tuple(allowed)
    if new_status not in allowed:
        raise ValidationError(f"{field_name} invalid", field=field_name, value=new_status, allowed=list(allowed))
    return new_status


def require_fields(data: dict, *names: str) -> None:
    missing = [n for n in names if data.get(n) in (None, '')]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required", missing=missing)


def coerce_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)


def coerce_id_list(values: Any, field_name: str, max_items: Optional[int] = None) -> List[int]:
    """Parse a list of ids, dropping duplicates while keeping first-seen order."""
    if not isinstance(values, list) or not values:
        raise ValidationError(f"{field_name} must be a non-empty list", field=field_name)
    out: List[int] = []
    for raw in values:
        val = coerce_int(raw, field_name)
        if val not in out:
            out.append(val)
    if max_items is not None and len(out) > max_items:
        raise ValidationError(
            f"{field_name} accepts at most {max_items} items",
            field=field_name, count=len(out), max_items=max_items,
        )
    return out


def parse_datetime(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field_name} must be an ISO-8601 timestamp", field=field_name)
    try:
        dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO-8601 timestamp", field=field_name)
    if dt.tzinfo is not None:
        from custody.utils.clock import resolve_now
        dt = resolve_now(dt)
    return dt

__all__ = ['validate_status', 'require_fields', 'coerce_int', 'coerce_id_list', 'parse_datetime']
