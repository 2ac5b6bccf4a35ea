import logging
from typing import Any, Dict

from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from api.authentication import LegacyCompatAuthentication
from api.exceptions import WorkflowError, error_response
from api.parsing import (
    actor_worker_id,
    optional_text,
    parse_datetime_field,
    parse_non_negative_int,
    parse_positive_int,
)
from api.permissions import WorkflowPermission, requires
from api.rbac import (
    PERM_BATCH_APPROVE,
    PERM_BATCH_CREATE,
    PERM_BATCH_VIEW,
    PERM_NEED_COLLECT,
    PERM_NEED_CONFIRM,
    PERM_NEED_CREATE,
    PERM_NEED_MATCH,
    PERM_NEED_REVIEW,
    PERM_NEED_SUPERVISE,
    PERM_NEED_VIEW,
)
from supplies.services import batches as batch_service
from supplies.services import matches as match_service
from supplies.services import need_workflow

logger = logging.getLogger(__name__)


def _validation_response(errors: Dict[str, str]) -> Response:
    return Response({"errors": errors}, status=400)


def _worker_scope(request, errors: Dict[str, str]) -> int | None:
    raw = request.query_params.get("worker_id")
    if raw in (None, ""):
        return None
    return parse_positive_int(raw, "worker_id", errors)


def _need_response(need, status: int = 200) -> Response:
    items, warnings = need_workflow.serialize_needs([need])
    return Response({"need": items[0], "warnings": warnings}, status=status)


def _batch_response(batch, status: int = 200, **extra: Any) -> Response:
    items, warnings = batch_service.serialize_batches([batch])
    body = {"batch": items[0], "warnings": warnings}
    body.update(extra)
    return Response(body, status=status)


@requires({"GET": PERM_NEED_VIEW, "POST": PERM_NEED_CREATE})
@api_view(["GET", "POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def needs_collection(request):
    """
    GET lists needs (``?worker_id=`` narrows to that worker's cases).
    POST creates a pending need from ``case_id``, ``supply_id`` and ``quantity``.
    """
    errors: Dict[str, str] = {}
    if request.method == "GET":
        worker_id = _worker_scope(request, errors)
        if errors:
            return _validation_response(errors)
        items, warnings = need_workflow.list_needs(worker_id)
        return Response({"needs": items, "count": len(items), "warnings": warnings})

    payload = request.data or {}
    case_id = parse_positive_int(payload.get("case_id"), "case_id", errors)
    supply_id = parse_positive_int(payload.get("supply_id"), "supply_id", errors)
    quantity = parse_positive_int(payload.get("quantity"), "quantity", errors)
    if errors:
        return _validation_response(errors)

    try:
        need = need_workflow.create_need(case_id, supply_id, quantity, actor_id=request.user.user_id)
    except WorkflowError as exc:
        return error_response(exc)
    return _need_response(need, status=201)


@requires(PERM_NEED_VIEW)
@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def need_stats(request):
    errors: Dict[str, str] = {}
    worker_id = _worker_scope(request, errors)
    if errors:
        return _validation_response(errors)
    stats, warnings = need_workflow.need_stats(worker_id)
    return Response({"stats": stats, "warnings": warnings})


@requires(PERM_NEED_VIEW)
@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def need_detail(request, need_id: int):
    try:
        need = need_workflow.get_need(need_id)
    except WorkflowError as exc:
        return error_response(exc)
    return _need_response(need)


def _run_transition(request, need_id: int, transition, **kwargs) -> Response:
    try:
        need = transition(need_id, actor_id=request.user.user_id, **kwargs)
    except WorkflowError as exc:
        return error_response(exc)
    return _need_response(need)


@requires(PERM_NEED_REVIEW)
@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def need_approve(request, need_id: int):
    return _run_transition(request, need_id, need_workflow.approve)


@requires(PERM_NEED_REVIEW)
@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def need_reject(request, need_id: int):
    return _run_transition(request, need_id, need_workflow.reject)


@requires(PERM_NEED_CONFIRM)
@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def need_confirm(request, need_id: int):
    return _run_transition(request, need_id, need_workflow.confirm)


@requires(PERM_NEED_SUPERVISE)
@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def need_supervisor_approve(request, need_id: int):
    return _run_transition(request, need_id, need_workflow.supervisor_approve)


@requires(PERM_NEED_SUPERVISE)
@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def need_supervisor_reject(request, need_id: int):
    return _run_transition(request, need_id, need_workflow.supervisor_reject)


@requires(PERM_NEED_COLLECT)
@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def need_collect(request, need_id: int):
    """Mark collected; ``batch_id`` in the body attaches the need to a pending batch."""
    payload = request.data or {}
    errors: Dict[str, str] = {}
    batch_id = None
    if payload.get("batch_id") not in (None, ""):
        batch_id = parse_positive_int(payload.get("batch_id"), "batch_id", errors)
    if errors:
        return _validation_response(errors)
    return _run_transition(request, need_id, need_workflow.collect, batch_id=batch_id)


@requires({"GET": PERM_BATCH_VIEW, "POST": PERM_BATCH_CREATE})
@api_view(["GET", "POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def batches_collection(request):
    errors: Dict[str, str] = {}
    if request.method == "GET":
        worker_id = _worker_scope(request, errors)
        if errors:
            return _validation_response(errors)
        items, warnings = batch_service.list_batches(worker_id)
        return Response({"batches": items, "count": len(items), "warnings": warnings})

    payload = request.data or {}
    distribution_date = parse_datetime_field(payload.get("distribution_date"), "distribution_date", errors)
    case_count = parse_non_negative_int(payload.get("case_count", 0), "case_count", errors)
    total_items = parse_non_negative_int(
        payload.get("total_supply_items", 0), "total_supply_items", errors
    )
    created_by = actor_worker_id(request, payload, "created_by_worker_id", errors)
    notes = optional_text(payload.get("notes"), "notes", errors)
    if errors:
        return _validation_response(errors)

    try:
        batch = batch_service.create_batch(distribution_date, case_count, total_items, created_by, notes)
    except WorkflowError as exc:
        return error_response(exc)
    return _batch_response(batch, status=201)


@requires(PERM_BATCH_VIEW)
@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def batch_detail(request, batch_id: int):
    try:
        detail, warnings = batch_service.batch_detail(batch_id)
    except WorkflowError as exc:
        return error_response(exc)
    return Response({"batch": detail, "warnings": warnings})


@requires(PERM_BATCH_VIEW)
@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def batch_needs(request, batch_id: int):
    try:
        batch_service.get_batch(batch_id)
    except WorkflowError as exc:
        return error_response(exc)
    items, warnings = need_workflow.serialize_needs(batch_service.list_needs_in_batch(batch_id))
    return Response({"needs": items, "count": len(items), "warnings": warnings})


@requires(PERM_BATCH_APPROVE)
@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def batch_approve(request, batch_id: int):
    payload = request.data or {}
    errors: Dict[str, str] = {}
    approved_by = actor_worker_id(request, payload, "approved_by_worker_id", errors)
    if errors:
        return _validation_response(errors)

    try:
        batch = batch_service.approve_batch(batch_id, approved_by)
    except WorkflowError as exc:
        return error_response(exc)
    return _batch_response(batch)


@requires(PERM_BATCH_APPROVE)
@api_view(["POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def batch_reject(request, batch_id: int):
    """Reject a pending batch; its needs return to approved and leave the batch."""
    payload = request.data or {}
    errors: Dict[str, str] = {}
    rejected_by = actor_worker_id(request, payload, "rejected_by_worker_id", errors)
    reason = optional_text(payload.get("reason"), "reason", errors)
    if errors:
        return _validation_response(errors)

    try:
        batch, released = batch_service.reject_batch(batch_id, rejected_by, reason)
    except WorkflowError as exc:
        if exc.http_status >= 500:
            logger.error("Batch %s rejection rolled back: %s", batch_id, exc.message)
        return error_response(exc)
    return _batch_response(batch, released_needs=released)


@requires({"GET": PERM_NEED_VIEW, "POST": PERM_NEED_MATCH})
@api_view(["GET", "POST"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def matches_collection(request):
    errors: Dict[str, str] = {}
    if request.method == "GET":
        need_id = None
        raw_need_id = request.query_params.get("need_id")
        if raw_need_id not in (None, ""):
            need_id = parse_positive_int(raw_need_id, "need_id", errors)
        if errors:
            return _validation_response(errors)
        items, warnings = match_service.list_matches(need_id)
        return Response({"matches": items, "count": len(items), "warnings": warnings})

    payload = request.data or {}
    need_id = parse_positive_int(payload.get("need_id"), "need_id", errors)
    matched_quantity = None
    if payload.get("matched_quantity") is not None:
        matched_quantity = parse_non_negative_int(payload.get("matched_quantity"), "matched_quantity", errors)
    matched_by = actor_worker_id(request, payload, "matched_by_worker_id", errors)
    note = optional_text(payload.get("note"), "note", errors, max_length=500)
    if errors:
        return _validation_response(errors)

    try:
        match = match_service.create_match(need_id, matched_quantity, matched_by, note)
    except WorkflowError as exc:
        return error_response(exc)
    return Response({"match": match_service.serialize_match(match)}, status=201)
