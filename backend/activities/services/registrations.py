"""
Registration review: status changes that keep the activity's participant count
in step.

The registration save and the counter adjustment are two separate statements,
each committed on its own. A failure between them leaves the status saved and
the count unadjusted.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple, Type

from django.db import DatabaseError, transaction

from activities.models import Activity, CaseActivityRegistration, UserActivityRegistration
from activities.services import counter
from activities.services import data_access
from activities.status_catalog import RegistrationStatus, normalize_registration_status
from api.exceptions import NotFound, PersistenceFailure, ValidationFailed

logger = logging.getLogger("ngo.audit")

REGISTRATION_KINDS: Dict[str, Type] = {
    "case": CaseActivityRegistration,
    "public": UserActivityRegistration,
}


def _model_for(kind: str):
    try:
        return REGISTRATION_KINDS[kind]
    except KeyError:
        raise ValidationFailed(f"Unknown registration kind: {kind}.", field="kind")


def participant_delta(old_status: object, new_status: object, party_size: int) -> int:
    """+party when a registration becomes approved, -party when an approval is cancelled."""
    old = normalize_registration_status(old_status)
    new = normalize_registration_status(new_status)
    if old == RegistrationStatus.APPROVED and new == RegistrationStatus.CANCELLED:
        return -party_size
    if old != RegistrationStatus.APPROVED and new == RegistrationStatus.APPROVED:
        return party_size
    return 0


def set_status(kind: str, registration_id: int, new_status: object) -> Tuple[Any, int]:
    """
    Move a case or public registration to ``new_status``.

    Returns the saved registration and the participant delta applied to its
    activity (0 when the count did not change).
    """
    model = _model_for(kind)
    target = normalize_registration_status(new_status)
    try:
        # Old status is read under the row lock; concurrent reviewers serialize here.
        with transaction.atomic():
            try:
                registration = model.objects.select_for_update().get(registration_id=registration_id)
            except model.DoesNotExist:
                raise NotFound(f"Registration {registration_id} not found.", field="registration_id")

            activity_id = registration.activity_id
            if activity_id is None or not Activity.objects.filter(activity_id=activity_id).exists():
                raise NotFound(f"Activity {activity_id} not found.", field="activity_id")

            old_status = normalize_registration_status(registration.status)
            delta = participant_delta(old_status, target, registration.party_size())

            registration.status = target.value
            registration.save(update_fields=["status"])
    except DatabaseError as exc:
        logger.exception("registration.set_status failed kind=%s id=%s", kind, registration_id)
        raise PersistenceFailure(f"Could not update registration {registration_id}.", cause=exc) from exc

    if delta:
        counter.adjust(activity_id, delta)

    logger.info(
        "activity_registration_status_changed",
        extra={
            "event_type": "STATE_CHANGE",
            "registration_kind": kind,
            "registration_id": registration_id,
            "activity_id": activity_id,
            "from_status": old_status.value,
            "to_status": target.value,
            "participant_delta": delta,
        },
    )
    return registration, delta


def _activity_names(activity_ids) -> Dict[int, str]:
    ids = {activity_id for activity_id in activity_ids if activity_id is not None}
    return dict(
        Activity.objects.filter(activity_id__in=ids).values_list("activity_id", "activity_name")
    )


def _format_time(value) -> str | None:
    return value.isoformat() if value else None


def list_case_registrations() -> Tuple[List[Dict[str, Any]], List[str]]:
    registrations = list(CaseActivityRegistration.objects.all())
    case_names, warnings = data_access.get_case_names(r.case_id for r in registrations)
    activities = _activity_names(r.activity_id for r in registrations)
    items = [
        {
            "registration_id": r.registration_id,
            "case_id": r.case_id,
            "case_name": case_names.get(r.case_id) or "Unknown case",
            "activity_id": r.activity_id,
            "activity_name": activities.get(r.activity_id) or "Unknown activity",
            "status": normalize_registration_status(r.status).value,
            "register_time": _format_time(r.register_time),
        }
        for r in registrations
    ]
    return items, warnings


def list_public_registrations() -> Tuple[List[Dict[str, Any]], List[str]]:
    registrations = list(UserActivityRegistration.objects.all())
    user_names, warnings = data_access.get_user_names(r.user_id for r in registrations)
    activities = _activity_names(r.activity_id for r in registrations)
    items = [
        {
            "registration_id": r.registration_id,
            "user_id": r.user_id,
            "user_name": user_names.get(r.user_id) or f"User {r.user_id}",
            "activity_id": r.activity_id,
            "activity_name": activities.get(r.activity_id) or f"Activity {r.activity_id}",
            "number_of_companions": r.number_of_companions or 0,
            "status": normalize_registration_status(r.status).value,
            "register_time": _format_time(r.register_time),
        }
        for r in registrations
    ]
    return items, warnings
