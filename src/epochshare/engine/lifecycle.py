"""Epoch lifecycle — derived phases and the gates every mutation passes.

Phases:
    SCHEDULED   now < starts_at
    ACTIVE      starts_at <= now < starts_at + duration
    FINISHED    now >= starts_at + duration, reveal not yet submitted
    FINALIZED   finished and the reveal has been submitted

The phase is computed from the clock on every call and never cached on
the epoch, so it cannot drift from the timestamps it is derived from.
Gates are fail-closed: a mutation that does not pass its gate raises
StateError before touching any state.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from epochshare.errors import StateError
from epochshare.models.epoch import Epoch


class EpochPhase(str, enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    FINISHED = "finished"
    FINALIZED = "finalized"


class EpochLifecycle:
    """Pure predicates and gates over an epoch and the current time."""

    @staticmethod
    def phase(epoch: Epoch, now: Optional[datetime] = None) -> EpochPhase:
        now = now or datetime.now(timezone.utc)
        if now < epoch.starts_at:
            return EpochPhase.SCHEDULED
        if now < epoch.ends_at:
            return EpochPhase.ACTIVE
        if epoch.revealed:
            return EpochPhase.FINALIZED
        return EpochPhase.FINISHED

    @classmethod
    def is_scheduled(cls, epoch: Epoch, now: Optional[datetime] = None) -> bool:
        return cls.phase(epoch, now) == EpochPhase.SCHEDULED

    @classmethod
    def is_active(cls, epoch: Epoch, now: Optional[datetime] = None) -> bool:
        return cls.phase(epoch, now) == EpochPhase.ACTIVE

    @classmethod
    def is_finished(cls, epoch: Epoch, now: Optional[datetime] = None) -> bool:
        """True once the active window has closed, finalized or not."""
        return cls.phase(epoch, now) in (EpochPhase.FINISHED, EpochPhase.FINALIZED)

    @classmethod
    def is_finalized(cls, epoch: Epoch, now: Optional[datetime] = None) -> bool:
        return cls.phase(epoch, now) == EpochPhase.FINALIZED

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    @classmethod
    def require_scheduled(cls, epoch: Epoch, now: Optional[datetime] = None) -> None:
        if not cls.is_scheduled(epoch, now):
            raise StateError(
                f"Epoch of {epoch.admin} must be inactive and not yet started"
            )

    @classmethod
    def require_active(cls, epoch: Epoch, now: Optional[datetime] = None) -> None:
        if not cls.is_active(epoch, now):
            raise StateError(f"Epoch of {epoch.admin} must be active")

    @classmethod
    def require_finished_unrevealed(
        cls, epoch: Epoch, now: Optional[datetime] = None,
    ) -> None:
        phase = cls.phase(epoch, now)
        if phase == EpochPhase.FINALIZED:
            raise StateError(
                f"Epoch of {epoch.admin} is already finalized",
                code="already_finalized",
            )
        if phase != EpochPhase.FINISHED:
            raise StateError(f"Epoch of {epoch.admin} must be inactive and finished")

    @classmethod
    def require_finalized(cls, epoch: Epoch, now: Optional[datetime] = None) -> None:
        if not cls.is_finalized(epoch, now):
            raise StateError(
                f"Epoch of {epoch.admin} must be finalized before withdrawing funds"
            )
