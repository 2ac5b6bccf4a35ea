"""
Distribution batches: creation, supervisor approval and rejection.

Needs join a batch one at a time through ``need_workflow.collect``. Rejecting a
batch undoes every collection that points at it: member needs go back to
``approved`` with no batch, in the same transaction that marks the batch
rejected.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import Exists, OuterRef
from django.utils import timezone

from api.exceptions import InvalidTransition, NotFound, PersistenceFailure
from supplies.models import DistributionBatch, SupplyNeed
from supplies.services import data_access
from supplies.services.need_workflow import serialize_needs
from supplies.status_catalog import BatchStatus, NeedStatus, normalize_batch_status

logger = logging.getLogger("ngo.audit")

_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _format_dt(value: Optional[datetime], fmt: str = _DATETIME_FORMAT) -> Optional[str]:
    if value is None:
        return None
    if timezone.is_aware(value):
        value = timezone.localtime(value)
    return value.strftime(fmt)


def serialize_batch(
    batch: DistributionBatch,
    worker_names: Dict[int, str] | None = None,
) -> Dict[str, Any]:
    names = worker_names or {}
    return {
        "distribution_batch_id": batch.distribution_batch_id,
        "distribution_date": _format_dt(batch.distribution_date, "%Y-%m-%d"),
        "case_count": batch.case_count,
        "total_supply_items": batch.total_supply_items,
        "status": normalize_batch_status(batch.status).value,
        "created_at": _format_dt(batch.created_at),
        "approved_at": _format_dt(batch.approved_at),
        "notes": batch.notes,
        "created_by_worker_id": batch.created_by_worker_id,
        "created_by_worker": names.get(batch.created_by_worker_id),
        "approved_by_worker_id": batch.approved_by_worker_id,
        "approved_by_worker": names.get(batch.approved_by_worker_id),
    }


def serialize_batches(batches: List[DistributionBatch]) -> Tuple[List[Dict[str, Any]], List[str]]:
    worker_ids = set()
    for batch in batches:
        worker_ids.add(batch.created_by_worker_id)
        worker_ids.add(batch.approved_by_worker_id)
    names, warnings = data_access.get_worker_names(worker_ids)
    return [serialize_batch(batch, names) for batch in batches], warnings


def create_batch(
    distribution_date: datetime,
    case_count: int,
    total_supply_items: int,
    created_by: int,
    notes: str | None = None,
) -> DistributionBatch:
    """Insert a pending batch. Needs are attached afterwards via collect."""
    try:
        batch = DistributionBatch.objects.create(
            distribution_date=distribution_date,
            case_count=case_count,
            total_supply_items=total_supply_items,
            created_by_worker_id=created_by,
            status=BatchStatus.PENDING.value,
            notes=notes,
        )
    except DatabaseError as exc:
        raise PersistenceFailure("Could not create distribution batch.", cause=exc) from exc

    logger.info(
        "distribution_batch_created",
        extra={
            "event_type": "CREATE",
            "user_id": created_by,
            "batch_id": batch.distribution_batch_id,
            "case_count": case_count,
            "total_supply_items": total_supply_items,
        },
    )
    return batch


def get_batch(batch_id: int) -> DistributionBatch:
    try:
        return DistributionBatch.objects.get(distribution_batch_id=batch_id)
    except DistributionBatch.DoesNotExist:
        raise NotFound(f"Distribution batch {batch_id} not found.", field="batch_id")


def list_batches(worker_id: int | None = None) -> Tuple[List[Dict[str, Any]], List[str]]:
    """All batches, newest distribution first; a worker only sees batches holding one of their cases."""
    queryset = DistributionBatch.objects.order_by("-distribution_date", "-distribution_batch_id")
    warnings: List[str] = []
    if worker_id is not None:
        case_ids, warnings = data_access.get_case_ids_for_worker(worker_id)
        if case_ids is not None:
            member = SupplyNeed.objects.filter(
                batch_id=OuterRef("distribution_batch_id"),
                case_id__in=case_ids,
            )
            queryset = queryset.filter(Exists(member))
    items, name_warnings = serialize_batches(list(queryset))
    return items, list(dict.fromkeys(warnings + name_warnings))


def list_needs_in_batch(batch_id: int) -> List[SupplyNeed]:
    """Needs whose batch currently equals ``batch_id``, whatever their status."""
    return list(SupplyNeed.objects.filter(batch_id=batch_id).order_by("need_id"))


def batch_detail(batch_id: int) -> Tuple[Dict[str, Any], List[str]]:
    batch = get_batch(batch_id)
    serialized, warnings = serialize_batches([batch])
    needs, need_warnings = serialize_needs(list_needs_in_batch(batch_id))
    detail = serialized[0]
    detail["needs"] = needs
    detail["need_count"] = len(needs)
    return detail, list(dict.fromkeys(warnings + need_warnings))


def _load_pending_for_update(batch_id: int, action: str) -> DistributionBatch:
    try:
        batch = DistributionBatch.objects.select_for_update().get(distribution_batch_id=batch_id)
    except DistributionBatch.DoesNotExist:
        raise NotFound(f"Distribution batch {batch_id} not found.", field="batch_id")
    if normalize_batch_status(batch.status) != BatchStatus.PENDING:
        raise InvalidTransition(f"Only pending batches can be {action}.")
    return batch


def approve_batch(batch_id: int, approved_by: int) -> DistributionBatch:
    """pending -> approved. Member needs stay collected."""
    try:
        with transaction.atomic():
            batch = _load_pending_for_update(batch_id, "approved")
            batch.status = BatchStatus.APPROVED.value
            batch.approved_at = timezone.now()
            batch.approved_by_worker_id = approved_by
            batch.save(update_fields=["status", "approved_at", "approved_by_worker_id"])
    except DatabaseError as exc:
        logger.exception("distribution_batch.approve failed batch_id=%s", batch_id)
        raise PersistenceFailure(f"Could not approve distribution batch {batch_id}.", cause=exc) from exc

    logger.info(
        "distribution_batch_approved",
        extra={
            "event_type": "STATE_CHANGE",
            "user_id": approved_by,
            "batch_id": batch_id,
            "from_status": BatchStatus.PENDING.value,
            "to_status": BatchStatus.APPROVED.value,
        },
    )
    return batch


def reject_batch(batch_id: int, rejected_by: int, reason: str | None = None) -> Tuple[DistributionBatch, int]:
    """
    Reject a pending batch and release its needs.

    Every need attached to the batch returns to ``approved`` with no batch so
    it can be collected into a later batch. The need updates and the batch
    status change commit together or not at all.

    Returns the batch and the number of needs released.
    """
    notes = (reason or "").strip() or getattr(
        settings, "SUPPLY_BATCH_DEFAULT_REJECT_REASON", "Rejected by supervisor"
    )
    try:
        with transaction.atomic():
            batch = _load_pending_for_update(batch_id, "rejected")
            member_ids = list(
                SupplyNeed.objects.select_for_update()
                .filter(batch_id=batch_id)
                .values_list("need_id", flat=True)
            )
            released = 0
            if member_ids:
                released = SupplyNeed.objects.filter(need_id__in=member_ids).update(
                    status=NeedStatus.APPROVED.value,
                    batch=None,
                )

            batch.status = BatchStatus.REJECTED.value
            batch.approved_at = timezone.now()
            batch.approved_by_worker_id = rejected_by
            batch.notes = notes
            batch.save(update_fields=["status", "approved_at", "approved_by_worker_id", "notes"])
    except DatabaseError as exc:
        logger.exception("distribution_batch.reject failed batch_id=%s", batch_id)
        raise PersistenceFailure(
            f"Could not reject distribution batch {batch_id}; no changes were applied.",
            cause=exc,
        ) from exc

    logger.info(
        "distribution_batch_rejected",
        extra={
            "event_type": "STATE_CHANGE",
            "user_id": rejected_by,
            "batch_id": batch_id,
            "from_status": BatchStatus.PENDING.value,
            "to_status": BatchStatus.REJECTED.value,
            "reason": notes,
            "released_need_ids": member_ids,
        },
    )
    return batch, released
