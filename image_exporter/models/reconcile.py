"""Reconcile attempt outcome types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum


class ReconcileState(StrEnum):
    """Lifecycle of one reconcile attempt for one object."""

    PENDING = "pending"
    RESOLVING = "resolving"
    SCHEDULED = "scheduled"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful or ignored attempt.

    A zero or negative ``requeue_after`` means the object is not re-checked
    until the next watch event.
    """

    state: ReconcileState
    requeue_after: timedelta = timedelta(0)
