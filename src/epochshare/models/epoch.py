"""Epoch model — the aggregate record for one round of private allocation.

All monetary values use Decimal for exact arithmetic. Commitments and
public inputs are integers (field elements of the proving system).

Invariant: every per-member list (commitments, verified,
revealed_allocations, withdrawn) is exactly len(members) long and
index-aligned with members. Member order is significant: a member's
index is the slot it occupies in every allocation vector.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional


EMPTY_COMMITMENT = 0


@dataclass
class Epoch:
    """One admin's epoch.

    Mutable — commitments, verification flags, reveal and withdrawals
    change over the epoch's life. The lifecycle phase is never stored
    here; it is derived from the clock by EpochLifecycle.
    """
    admin: str
    members: list[str]
    starts_at: datetime
    duration: timedelta
    coordinator: str
    escrowed_value: Decimal
    reward_rate_per_unit: Decimal
    escrow_balance: Decimal
    commitments: list[int] = field(default_factory=list)
    verified: list[bool] = field(default_factory=list)
    revealed_allocations: list[int] = field(default_factory=list)
    withdrawn: list[bool] = field(default_factory=list)
    revealed: bool = False
    scheduled_utc: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.commitments:
            self.reset_member_state()

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + self.duration

    @property
    def member_count(self) -> int:
        return len(self.members)

    def member_index(self, identity: str) -> Optional[int]:
        """Index of identity in members, or None if not a member."""
        try:
            return self.members.index(identity)
        except ValueError:
            return None

    def all_verified(self) -> bool:
        return all(self.verified)

    def reset_member_state(self) -> None:
        """Size every per-member list to the current member set."""
        n = len(self.members)
        self.commitments = [EMPTY_COMMITMENT] * n
        self.verified = [False] * n
        self.revealed_allocations = [0] * n
        self.withdrawn = [False] * n

    def to_dict(self) -> dict[str, Any]:
        return {
            "admin": self.admin,
            "members": list(self.members),
            "starts_at": self.starts_at.isoformat(),
            "duration_seconds": self.duration.total_seconds(),
            "coordinator": self.coordinator,
            "escrowed_value": str(self.escrowed_value),
            "reward_rate_per_unit": str(self.reward_rate_per_unit),
            "escrow_balance": str(self.escrow_balance),
            # Field elements exceed JSON's safe integer range in most readers.
            "commitments": [str(c) for c in self.commitments],
            "verified": list(self.verified),
            "revealed_allocations": list(self.revealed_allocations),
            "withdrawn": list(self.withdrawn),
            "revealed": self.revealed,
            "scheduled_utc": (
                self.scheduled_utc.isoformat() if self.scheduled_utc else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Epoch:
        members = list(data["members"])
        epoch = cls(
            admin=data["admin"],
            members=members,
            starts_at=datetime.fromisoformat(data["starts_at"]),
            duration=timedelta(seconds=data["duration_seconds"]),
            coordinator=data["coordinator"],
            escrowed_value=Decimal(data["escrowed_value"]),
            reward_rate_per_unit=Decimal(data["reward_rate_per_unit"]),
            escrow_balance=Decimal(data["escrow_balance"]),
            commitments=[int(c) for c in data["commitments"]],
            verified=[bool(v) for v in data["verified"]],
            revealed_allocations=[int(v) for v in data["revealed_allocations"]],
            withdrawn=[bool(w) for w in data["withdrawn"]],
            revealed=bool(data["revealed"]),
            scheduled_utc=(
                datetime.fromisoformat(data["scheduled_utc"])
                if data.get("scheduled_utc") else None
            ),
        )
        for name in ("commitments", "verified", "revealed_allocations", "withdrawn"):
            if len(getattr(epoch, name)) != len(members):
                raise ValueError(
                    f"Epoch for {epoch.admin}: {name} has "
                    f"{len(getattr(epoch, name))} entries, expected {len(members)}"
                )
        return epoch
