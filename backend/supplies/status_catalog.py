"""
Canonical status vocabulary for recurring supply needs and distribution batches.

Rows written by earlier versions of the platform carry localized status strings
(e.g. ``待審核``) alongside the English tokens the admin UI sends today. Every
read and write goes through ``normalize_need_status`` / ``normalize_batch_status``
so the workflow code only ever compares canonical values.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict


class NeedStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PENDING_SUPER = "pending_super"
    COLLECTED = "collected"
    REJECTED = "rejected"


class BatchStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


DEFAULT_NEED_STATUS = NeedStatus.PENDING
DEFAULT_BATCH_STATUS = BatchStatus.PENDING

_NEED_STATUS_ALIASES: Dict[str, NeedStatus] = {
    "pending": NeedStatus.PENDING,
    "待審核": NeedStatus.PENDING,
    "approved": NeedStatus.APPROVED,
    "批准": NeedStatus.APPROVED,
    "未領取": NeedStatus.APPROVED,
    "rejected": NeedStatus.REJECTED,
    "不批准": NeedStatus.REJECTED,
    "collected": NeedStatus.COLLECTED,
    "completed": NeedStatus.COLLECTED,
    "已領取": NeedStatus.COLLECTED,
    "pending_super": NeedStatus.PENDING_SUPER,
    "等待主管審核": NeedStatus.PENDING_SUPER,
}

_BATCH_STATUS_ALIASES: Dict[str, BatchStatus] = {
    "pending": BatchStatus.PENDING,
    "待審核": BatchStatus.PENDING,
    "等待批准": BatchStatus.PENDING,
    "approved": BatchStatus.APPROVED,
    "已批准": BatchStatus.APPROVED,
    "已完成": BatchStatus.APPROVED,
    "rejected": BatchStatus.REJECTED,
    "已拒絕": BatchStatus.REJECTED,
}


def _token(raw: object) -> str:
    if isinstance(raw, Enum):
        raw = raw.value
    text = str(raw or "").strip().lower()
    return text.replace("-", "_").replace(" ", "_")


def normalize_need_status(raw: object) -> NeedStatus:
    """Map any stored or requested spelling to a NeedStatus; unknown input is pending."""
    return _NEED_STATUS_ALIASES.get(_token(raw), DEFAULT_NEED_STATUS)


def normalize_batch_status(raw: object) -> BatchStatus:
    return _BATCH_STATUS_ALIASES.get(_token(raw), DEFAULT_BATCH_STATUS)
