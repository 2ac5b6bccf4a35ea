"""
Read-only lookups against the legacy case, worker and supply tables.

These tables are owned by the master-data side of the platform. Every lookup is
best effort: when a table is missing or the query fails, callers get an empty
mapping plus a warning code and fall back to placeholder labels.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from django.conf import settings
from django.db import DatabaseError, connection

logger = logging.getLogger(__name__)

CASE_TABLE = getattr(settings, "LEGACY_CASE_TABLE", "cases")
WORKER_TABLE = getattr(settings, "LEGACY_WORKER_TABLE", "workers")
SUPPLY_TABLE = getattr(settings, "LEGACY_SUPPLY_TABLE", "supplies")


def table_available(table_name: str) -> bool:
    try:
        return table_name in connection.introspection.table_names()
    except DatabaseError as exc:
        logger.warning("Table introspection failed for %s: %s", table_name, exc)
        return False


def placeholders(values: List[int]) -> str:
    return ", ".join(["%s"] * len(values))


def clean_ids(ids: Iterable[object]) -> List[int]:
    cleaned = set()
    for value in ids:
        if value is None:
            continue
        try:
            cleaned.add(int(value))
        except (TypeError, ValueError):
            continue
    return sorted(cleaned)


def get_cases(case_ids: Iterable[object]) -> Tuple[Dict[int, Dict[str, object]], List[str]]:
    """Return ``{case_id: {"name", "worker_id"}}`` for the given ids."""
    ids = clean_ids(case_ids)
    if not ids:
        return {}, []
    if not table_available(CASE_TABLE):
        return {}, ["case_directory_unavailable"]

    table = connection.ops.quote_name(CASE_TABLE)
    try:
        with connection.cursor() as cursor:
            cursor.execute(
                f"SELECT case_id, name, worker_id FROM {table} WHERE case_id IN ({placeholders(ids)})",
                ids,
            )
            rows = cursor.fetchall()
    except DatabaseError as exc:
        logger.warning("Case lookup failed for %s ids: %s", len(ids), exc)
        return {}, ["case_directory_unavailable"]

    return {
        int(case_id): {"name": name, "worker_id": worker_id}
        for case_id, name, worker_id in rows
    }, []


def get_case_ids_for_worker(worker_id: int) -> Tuple[List[int] | None, List[str]]:
    """
    Case ids managed by a worker. ``None`` means the directory could not be read
    and the caller should not filter.
    """
    if not table_available(CASE_TABLE):
        return None, ["case_directory_unavailable"]

    table = connection.ops.quote_name(CASE_TABLE)
    try:
        with connection.cursor() as cursor:
            cursor.execute(f"SELECT case_id FROM {table} WHERE worker_id = %s", [int(worker_id)])
            rows = cursor.fetchall()
    except DatabaseError as exc:
        logger.warning("Case lookup failed for worker_id=%s: %s", worker_id, exc)
        return None, ["case_directory_unavailable"]
    return [int(row[0]) for row in rows], []


def get_worker_names(worker_ids: Iterable[object]) -> Tuple[Dict[int, str], List[str]]:
    ids = clean_ids(worker_ids)
    if not ids:
        return {}, []
    if not table_available(WORKER_TABLE):
        return {}, ["worker_directory_unavailable"]

    table = connection.ops.quote_name(WORKER_TABLE)
    try:
        with connection.cursor() as cursor:
            cursor.execute(
                f"SELECT worker_id, name FROM {table} WHERE worker_id IN ({placeholders(ids)})",
                ids,
            )
            rows = cursor.fetchall()
    except DatabaseError as exc:
        logger.warning("Worker lookup failed for %s ids: %s", len(ids), exc)
        return {}, ["worker_directory_unavailable"]
    return {int(worker_id): name for worker_id, name in rows}, []


def get_supplies(supply_ids: Iterable[object]) -> Tuple[Dict[int, Dict[str, object]], List[str]]:
    """Return ``{supply_id: {"name", "price"}}`` from the supply catalog."""
    ids = clean_ids(supply_ids)
    if not ids:
        return {}, []
    if not table_available(SUPPLY_TABLE):
        return {}, ["supply_catalog_unavailable"]

    table = connection.ops.quote_name(SUPPLY_TABLE)
    try:
        with connection.cursor() as cursor:
            cursor.execute(
                f"""
                SELECT supply_id, supply_name, supply_price
                FROM {table}
                WHERE supply_id IN ({placeholders(ids)})
                """,
                ids,
            )
            rows = cursor.fetchall()
    except DatabaseError as exc:
        logger.warning("Supply lookup failed for %s ids: %s", len(ids), exc)
        return {}, ["supply_catalog_unavailable"]

    supplies: Dict[int, Dict[str, object]] = {}
    for supply_id, name, price in rows:
        supplies[int(supply_id)] = {
            "name": name,
            "price": Decimal(str(price)) if price is not None else None,
        }
    return supplies, []
