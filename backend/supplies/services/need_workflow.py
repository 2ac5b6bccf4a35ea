"""
Recurring supply need workflow.

Happy path: pending -> approved -> pending_super -> collected, with rejection
exits from pending and pending_super. ``rejected`` and ``collected`` are
terminal. Every transition is a single-row update made under a row lock;
cross-row effects (batch rollback) live in services/batches.py.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from api.exceptions import InvalidTransition, NotFound, PersistenceFailure
from supplies.models import DistributionBatch, SupplyNeed
from supplies.services import data_access
from supplies.status_catalog import BatchStatus, NeedStatus, normalize_batch_status, normalize_need_status

logger = logging.getLogger("ngo.audit")

UNKNOWN_LABEL = "Unknown"

# operation -> (allowed source statuses, target status, failure message)
_TRANSITIONS: Dict[str, Tuple[frozenset, NeedStatus, str]] = {
    "approve": (
        frozenset({NeedStatus.PENDING}),
        NeedStatus.APPROVED,
        "Only pending requests can be approved.",
    ),
    "reject": (
        frozenset({NeedStatus.PENDING}),
        NeedStatus.REJECTED,
        "Only pending requests can be rejected.",
    ),
    "confirm": (
        frozenset({NeedStatus.APPROVED}),
        NeedStatus.PENDING_SUPER,
        "Only approved requests can be confirmed.",
    ),
    "supervisor_approve": (
        frozenset({NeedStatus.PENDING_SUPER}),
        NeedStatus.COLLECTED,
        "Only requests awaiting supervisor review can be approved by a supervisor.",
    ),
    "supervisor_reject": (
        frozenset({NeedStatus.PENDING_SUPER}),
        NeedStatus.REJECTED,
        "Only requests awaiting supervisor review can be rejected by a supervisor.",
    ),
    "collect": (
        frozenset({NeedStatus.APPROVED, NeedStatus.PENDING_SUPER}),
        NeedStatus.COLLECTED,
        "Only approved requests can be collected.",
    ),
}


def _collect_guard_enabled() -> bool:
    return bool(getattr(settings, "SUPPLY_COLLECT_REQUIRES_APPROVAL", True))


def _format_date(value) -> Optional[str]:
    if value is None:
        return None
    if timezone.is_aware(value):
        value = timezone.localtime(value)
    return value.strftime("%Y-%m-%d")


def estimated_cost(quantity: object, price: Decimal | None) -> Decimal:
    if price is None:
        return Decimal("0")
    return Decimal(int(quantity or 0)) * price


def serialize_need(
    need: SupplyNeed,
    cases: Dict[int, Dict[str, object]] | None = None,
    supplies: Dict[int, Dict[str, object]] | None = None,
) -> Dict[str, Any]:
    case = (cases or {}).get(need.case_id) or {}
    supply = (supplies or {}).get(need.supply_id) or {}
    return {
        "need_id": need.need_id,
        "case_id": need.case_id,
        "case_name": case.get("name") or UNKNOWN_LABEL,
        "assigned_worker_id": case.get("worker_id"),
        "supply_id": need.supply_id,
        "item_name": supply.get("name") or UNKNOWN_LABEL,
        "quantity": need.quantity or 0,
        "status": normalize_need_status(need.status).value,
        "batch_id": need.batch_id,
        "request_date": _format_date(need.apply_date),
        "pickup_date": _format_date(need.pickup_date),
        "estimated_cost": float(estimated_cost(need.quantity, supply.get("price"))),
    }


def serialize_needs(needs: Iterable[SupplyNeed]) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Serialize needs with case and supply labels resolved in two batched lookups."""
    needs = list(needs)
    cases, case_warnings = data_access.get_cases(need.case_id for need in needs)
    supplies, supply_warnings = data_access.get_supplies(need.supply_id for need in needs)
    warnings = list(dict.fromkeys(case_warnings + supply_warnings))
    return [serialize_need(need, cases, supplies) for need in needs], warnings


def _load_for_update(need_id: int) -> SupplyNeed:
    try:
        return SupplyNeed.objects.select_for_update().get(need_id=need_id)
    except SupplyNeed.DoesNotExist:
        raise NotFound(f"Supply need {need_id} not found.", field="need_id")


def _apply_transition(
    need_id: int,
    operation: str,
    actor_id: object = None,
    batch_id: int | None = None,
) -> SupplyNeed:
    allowed, target, message = _TRANSITIONS[operation]
    try:
        with transaction.atomic():
            # Batch row first, then need row: the same order reject_batch locks in.
            locked_batch_id = None
            if operation == "collect" and batch_id is not None:
                locked_batch_id = _lock_pending_batch(batch_id)
            need = _load_for_update(need_id)
            current = normalize_need_status(need.status)
            guarded = operation != "collect" or _collect_guard_enabled()
            if guarded and current not in allowed:
                raise InvalidTransition(message)

            need.status = target.value
            update_fields = ["status"]
            if target == NeedStatus.COLLECTED:
                need.pickup_date = timezone.now()
                update_fields.append("pickup_date")
            if operation == "collect":
                need.batch_id = locked_batch_id
                update_fields.append("batch")
            need.save(update_fields=update_fields)
    except DatabaseError as exc:
        logger.exception("supply_need.%s failed need_id=%s", operation, need_id)
        raise PersistenceFailure(f"Could not update supply need {need_id}.", cause=exc) from exc

    logger.info(
        "supply_need_%s",
        operation,
        extra={
            "event_type": "STATE_CHANGE",
            "user_id": actor_id,
            "need_id": need.need_id,
            "from_status": current.value,
            "to_status": target.value,
            "batch_id": need.batch_id,
        },
    )
    return need


def _lock_pending_batch(batch_id: int) -> int:
    """Lock the target batch and confirm it still accepts needs."""
    batch = (
        DistributionBatch.objects.select_for_update()
        .filter(distribution_batch_id=batch_id)
        .only("status")
        .first()
    )
    if batch is None:
        raise NotFound(f"Distribution batch {batch_id} not found.", field="batch_id")
    if normalize_batch_status(batch.status) != BatchStatus.PENDING:
        raise InvalidTransition("Needs can only be collected into a pending batch.")
    return batch.distribution_batch_id


def approve(need_id: int, actor_id: object = None) -> SupplyNeed:
    """pending -> approved."""
    return _apply_transition(need_id, "approve", actor_id)


def reject(need_id: int, actor_id: object = None) -> SupplyNeed:
    """pending -> rejected."""
    return _apply_transition(need_id, "reject", actor_id)


def confirm(need_id: int, actor_id: object = None) -> SupplyNeed:
    """approved -> pending_super: the worker hands the request to a supervisor."""
    return _apply_transition(need_id, "confirm", actor_id)


def supervisor_approve(need_id: int, actor_id: object = None) -> SupplyNeed:
    """pending_super -> collected, stamping the pickup date."""
    return _apply_transition(need_id, "supervisor_approve", actor_id)


def supervisor_reject(need_id: int, actor_id: object = None) -> SupplyNeed:
    """pending_super -> rejected."""
    return _apply_transition(need_id, "supervisor_reject", actor_id)


def collect(need_id: int, batch_id: int | None = None, actor_id: object = None) -> SupplyNeed:
    """
    Mark a need collected and attach it to ``batch_id``.

    The need must be approved or awaiting supervisor review unless
    SUPPLY_COLLECT_REQUIRES_APPROVAL is turned off.
    """
    return _apply_transition(need_id, "collect", actor_id, batch_id=batch_id)


def create_need(case_id: int, supply_id: int, quantity: int, actor_id: object = None) -> SupplyNeed:
    try:
        need = SupplyNeed.objects.create(
            case_id=case_id,
            supply_id=supply_id,
            quantity=quantity,
            apply_date=timezone.now(),
            status=NeedStatus.PENDING.value,
        )
    except DatabaseError as exc:
        raise PersistenceFailure("Could not create supply need.", cause=exc) from exc

    logger.info(
        "supply_need_created",
        extra={
            "event_type": "CREATE",
            "user_id": actor_id,
            "need_id": need.need_id,
            "case_id": case_id,
            "supply_id": supply_id,
            "quantity": quantity,
        },
    )
    return need


def get_need(need_id: int) -> SupplyNeed:
    try:
        return SupplyNeed.objects.get(need_id=need_id)
    except SupplyNeed.DoesNotExist:
        raise NotFound(f"Supply need {need_id} not found.", field="need_id")


def _scoped_queryset(worker_id: int | None):
    queryset = SupplyNeed.objects.all()
    warnings: List[str] = []
    if worker_id is not None:
        case_ids, warnings = data_access.get_case_ids_for_worker(worker_id)
        if case_ids is not None:
            queryset = queryset.filter(case_id__in=case_ids)
    return queryset, warnings


def list_needs(worker_id: int | None = None) -> Tuple[List[Dict[str, Any]], List[str]]:
    queryset, scope_warnings = _scoped_queryset(worker_id)
    items, warnings = serialize_needs(queryset)
    return items, list(dict.fromkeys(scope_warnings + warnings))


def need_stats(worker_id: int | None = None) -> Tuple[Dict[str, Any], List[str]]:
    queryset, warnings = _scoped_queryset(worker_id)
    rows = list(queryset.values_list("status", "supply_id", "quantity"))

    counts = {status.value: 0 for status in NeedStatus}
    for status, _, _ in rows:
        counts[normalize_need_status(status).value] += 1

    supplies, supply_warnings = data_access.get_supplies(supply_id for _, supply_id, _ in rows)
    total_cost = sum(
        (
            estimated_cost(quantity, (supplies.get(supply_id) or {}).get("price"))
            for _, supply_id, quantity in rows
        ),
        Decimal("0"),
    )

    stats = {
        "total_requests": len(rows),
        "pending_requests": counts[NeedStatus.PENDING.value],
        "approved_requests": counts[NeedStatus.APPROVED.value],
        "pending_super_requests": counts[NeedStatus.PENDING_SUPER.value],
        "collected_requests": counts[NeedStatus.COLLECTED.value],
        "rejected_requests": counts[NeedStatus.REJECTED.value],
        "total_estimated_cost": float(total_cost),
    }
    return stats, list(dict.fromkeys(warnings + supply_warnings))
