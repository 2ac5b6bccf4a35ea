"""
Participant counter maintenance for ``activity.current_participants``.

The column is also written by a database trigger and by concurrent reviewers,
so it is only ever changed with a single UPDATE that the database evaluates
against the current value. The row is never read first.
"""

import logging

from django.db import DatabaseError
from django.db.models import F, Value
from django.db.models.functions import Coalesce, Greatest

from activities.models import Activity
from api.exceptions import NotFound, PersistenceFailure

logger = logging.getLogger("ngo.audit")


def adjust(activity_id: int, delta: int) -> int:
    """
    Add ``delta`` to the activity's participant count, clamping at zero.

    A NULL count is treated as zero. Returns the number of rows updated.
    """
    if not delta:
        return 0
    try:
        updated = Activity.objects.filter(activity_id=activity_id).update(
            current_participants=Greatest(
                Coalesce(F("current_participants"), Value(0)) + Value(int(delta)),
                Value(0),
            )
        )
    except DatabaseError as exc:
        logger.exception("activity.adjust failed activity_id=%s delta=%s", activity_id, delta)
        raise PersistenceFailure(
            f"Could not adjust participants for activity {activity_id}.", cause=exc
        ) from exc

    if updated == 0:
        raise NotFound(f"Activity {activity_id} not found.", field="activity_id")

    logger.info(
        "activity_participants_adjusted",
        extra={
            "event_type": "COUNTER_ADJUST",
            "activity_id": activity_id,
            "delta": int(delta),
        },
    )
    return updated
