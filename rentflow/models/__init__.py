"""Database models."""

from rentflow.models.audit import InconsistencyFlag
from rentflow.models.pending import PendingRecord

__all__ = [
    "InconsistencyFlag",
    "PendingRecord",
]
