from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from django.db import DatabaseError

from api.exceptions import NotFound, PersistenceFailure
from supplies.models import SupplyMatch, SupplyNeed
from supplies.services import data_access

logger = logging.getLogger("ngo.audit")


def serialize_match(match: SupplyMatch, worker_names: Dict[int, str] | None = None) -> Dict[str, Any]:
    match_date = match.match_date
    return {
        "match_id": match.match_id,
        "need_id": match.need_id,
        "matched_quantity": match.matched_quantity,
        "matched_by_worker_id": match.matched_by_worker_id,
        "matched_by_worker": (worker_names or {}).get(match.matched_by_worker_id),
        "match_date": match_date.isoformat() if match_date else None,
        "note": match.note,
    }


def create_match(
    need_id: int,
    matched_quantity: int | None,
    matched_by: int | None,
    note: str | None = None,
) -> SupplyMatch:
    """Record a stock match against a need. The need's status is not touched."""
    if not SupplyNeed.objects.filter(need_id=need_id).exists():
        raise NotFound(f"Supply need {need_id} not found.", field="need_id")
    try:
        match = SupplyMatch.objects.create(
            need_id=need_id,
            matched_quantity=matched_quantity,
            matched_by_worker_id=matched_by,
            note=note,
        )
    except DatabaseError as exc:
        raise PersistenceFailure("Could not record supply match.", cause=exc) from exc

    logger.info(
        "supply_match_created",
        extra={
            "event_type": "CREATE",
            "user_id": matched_by,
            "need_id": need_id,
            "match_id": match.match_id,
            "matched_quantity": matched_quantity,
        },
    )
    return match


def list_matches(need_id: int | None = None) -> Tuple[List[Dict[str, Any]], List[str]]:
    queryset = SupplyMatch.objects.all()
    if need_id is not None:
        queryset = queryset.filter(need_id=need_id)
    matches = list(queryset)
    names, warnings = data_access.get_worker_names(m.matched_by_worker_id for m in matches)
    return [serialize_match(match, names) for match in matches], warnings
