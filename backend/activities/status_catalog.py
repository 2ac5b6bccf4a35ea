"""
Registration status vocabulary.

Approval screens have written ``Approved``, ``approved`` and ``cancelled`` to
the same column over time, along with localized labels. Compare only the
canonical values returned by ``normalize_registration_status``.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict


class RegistrationStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"


_REGISTRATION_STATUS_ALIASES: Dict[str, RegistrationStatus] = {
    "pending": RegistrationStatus.PENDING,
    "registered": RegistrationStatus.PENDING,
    "待審核": RegistrationStatus.PENDING,
    "approved": RegistrationStatus.APPROVED,
    "已同意": RegistrationStatus.APPROVED,
    "同意": RegistrationStatus.APPROVED,
    "cancelled": RegistrationStatus.CANCELLED,
    "canceled": RegistrationStatus.CANCELLED,
    "已取消": RegistrationStatus.CANCELLED,
    "不同意": RegistrationStatus.CANCELLED,
    "rejected": RegistrationStatus.REJECTED,
}


def _token(raw: object) -> str:
    if isinstance(raw, Enum):
        raw = raw.value
    return str(raw or "").strip().lower()


def normalize_registration_status(raw: object) -> RegistrationStatus:
    return _REGISTRATION_STATUS_ALIASES.get(_token(raw), RegistrationStatus.PENDING)


def is_known_registration_status(raw: object) -> bool:
    """True when ``raw`` is a canonical value or a recognised legacy spelling."""
    return _token(raw) in _REGISTRATION_STATUS_ALIASES
