"""Best-effort name lookups for registration listings."""

import logging
from typing import Dict, Iterable, List, Tuple

from django.conf import settings
from django.db import DatabaseError, connection

from supplies.services.data_access import get_cases, clean_ids, placeholders, table_available

logger = logging.getLogger(__name__)

USER_TABLE = getattr(settings, "LEGACY_USER_TABLE", "users")


def get_case_names(case_ids: Iterable[object]) -> Tuple[Dict[int, str], List[str]]:
    cases, warnings = get_cases(case_ids)
    return {case_id: case.get("name") for case_id, case in cases.items()}, warnings


def get_user_names(user_ids: Iterable[object]) -> Tuple[Dict[int, str], List[str]]:
    ids = clean_ids(user_ids)
    if not ids:
        return {}, []
    if not table_available(USER_TABLE):
        return {}, ["user_directory_unavailable"]

    table = connection.ops.quote_name(USER_TABLE)
    try:
        with connection.cursor() as cursor:
            cursor.execute(
                f"SELECT user_id, name FROM {table} WHERE user_id IN ({placeholders(ids)})",
                ids,
            )
            rows = cursor.fetchall()
    except DatabaseError as exc:
        logger.warning("User lookup failed for %s ids: %s", len(ids), exc)
        return {}, ["user_directory_unavailable"]
    return {int(user_id): name for user_id, name in rows}, []
