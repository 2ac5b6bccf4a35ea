"""Request-body field parsers. Each records a message in ``errors`` and returns None on bad input."""

import re
from datetime import datetime, time
from typing import Any, Dict

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

_INT_PATTERN = re.compile(r"[+-]?\d+")


def _parse_int(value: Any, field_name: str, errors: Dict[str, str]) -> int | None:
    if isinstance(value, bool) or isinstance(value, float):
        errors[field_name] = "Must be an integer."
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or not _INT_PATTERN.fullmatch(stripped):
            errors[field_name] = "Must be an integer."
            return None
        value = stripped
    try:
        return int(value)
    except (TypeError, ValueError):
        errors[field_name] = "Must be an integer."
        return None


def parse_positive_int(value: Any, field_name: str, errors: Dict[str, str]) -> int | None:
    parsed = _parse_int(value, field_name, errors)
    if parsed is None:
        return None
    if parsed <= 0:
        errors[field_name] = "Must be a positive integer."
        return None
    return parsed


def parse_non_negative_int(value: Any, field_name: str, errors: Dict[str, str]) -> int | None:
    parsed = _parse_int(value, field_name, errors)
    if parsed is None:
        return None
    if parsed < 0:
        errors[field_name] = "Must be zero or greater."
        return None
    return parsed


def parse_datetime_field(value: Any, field_name: str, errors: Dict[str, str]) -> datetime | None:
    """Accept an ISO datetime or a bare ``YYYY-MM-DD`` date (midnight, local time)."""
    if not isinstance(value, str) or not value.strip():
        errors[field_name] = "Must be an ISO date or datetime."
        return None
    text = value.strip()
    try:
        parsed = parse_datetime(text)
        if parsed is None:
            day = parse_date(text)
            if day is not None:
                parsed = datetime.combine(day, time.min)
    except ValueError:
        parsed = None
    if parsed is None:
        errors[field_name] = "Must be an ISO date or datetime."
        return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def optional_text(value: Any, field_name: str, errors: Dict[str, str], max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        errors[field_name] = "Must be a string."
        return None
    text = value.strip()
    if max_length is not None and len(text) > max_length:
        errors[field_name] = f"Must be at most {max_length} characters."
        return None
    return text or None


def actor_worker_id(request, payload: Dict[str, Any], field_name: str, errors: Dict[str, str]) -> int | None:
    """Worker id named in the body, else the authenticated principal's numeric id."""
    raw = (payload or {}).get(field_name)
    if raw is not None and raw != "":
        return parse_positive_int(raw, field_name, errors)
    worker_id = getattr(request.user, "worker_id", None)
    if worker_id is None:
        errors[field_name] = "Required when the caller has no numeric worker id."
    return worker_id
