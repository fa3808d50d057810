"""Epoch store — the facade every epoch operation goes through.

The store owns one Epoch per admin identity and routes each request:

    1. look up the admin's epoch
    2. check the caller's role (admin / coordinator / member)
    3. pass the lifecycle gate for the operation
    4. mutate through CommitmentRegistry or EscrowLedger
    5. append an audit event and persist the snapshot

Every check in steps 1-3 and every validation inside step 4 happens
before the first write, so a failed call leaves no partial state.

Mutations on the same epoch are serialized by a per-admin re-entrant
lock. Different admins never share mutable state and proceed
independently.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Sequence
from uuid import uuid4

from epochshare.compensation.escrow import EscrowLedger
from epochshare.compensation.payment_rail import InMemoryPayoutRail, PayoutRail
from epochshare.crypto.verifier import ProofVerifier
from epochshare.engine.lifecycle import EpochLifecycle, EpochPhase
from epochshare.engine.registry import CommitmentRegistry
from epochshare.errors import (
    AuthorizationError,
    ProofRejected,
    TransferError,
    TransferPending,
    UnknownEpochError,
    ValidationError,
)
from epochshare.models.epoch import Epoch
from epochshare.persistence.event_log import EventKind, EventLog, EventRecord
from epochshare.persistence.state_store import StateStore
from epochshare.policy.resolver import PolicyResolver


ZERO_ADDRESS = "0x" + "0" * 40


def _require_aware(ts: datetime, name: str) -> None:
    if ts.tzinfo is None or ts.utcoffset() is None:
        raise ValidationError(
            f"{name} must be timezone-aware, got {ts.isoformat()}",
            code="naive_timestamp",
        )


class EpochStore:
    """Schedules, runs and settles epochs keyed by admin.

    Usage:
        store = EpochStore(resolver, verifier)
        store.schedule_epoch("alice", ["alice", "bob", "carol"],
                             starts_at, timedelta(seconds=10),
                             coordinator="coord", value=Decimal("10"))
        store.update_commitment("alice", "bob", commitment)
        store.admit_proof("alice", "coord", "bob", proof, public_inputs)
        store.submit_revealed_allocations("alice", "coord", [4000, 9000, 17000])
        store.collect_reward("alice", "alice")

    Persistence (optional):
        store = EpochStore(resolver, verifier, event_log=log, state_store=state)
        # Epochs are loaded on construction and saved on each mutation.
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        verifier: ProofVerifier,
        rail: Optional[PayoutRail] = None,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._resolver = resolver
        self._registry = CommitmentRegistry(resolver, verifier)
        self._ledger = EscrowLedger(resolver, rail or InMemoryPayoutRail())
        self._event_log = event_log or EventLog()
        self._state_store = state_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._epochs: Dict[str, Epoch] = (
            state_store.load_epochs() if state_store else {}
        )
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Scheduling and membership
    # ------------------------------------------------------------------

    def schedule_epoch(
        self,
        admin: str,
        members: Sequence[str],
        starts_at: datetime,
        duration: timedelta,
        coordinator: str,
        value: Decimal,
        now: Optional[datetime] = None,
    ) -> Epoch:
        """Create an epoch for admin, replacing any epoch admin already has.

        Any unclaimed escrow of the replaced epoch is refunded to admin.
        """
        now = self._resolve_now(now)
        value = Decimal(value)
        if value <= Decimal("0"):
            raise ValidationError(
                "Must send some funds to allocate during epoch",
                code="invalid_funding",
            )
        members = list(members)
        self._validate_members(members)
        _require_aware(starts_at, "starts_at")
        if starts_at <= now:
            raise ValidationError("Epoch must start in the future", code="past_start")
        if duration < timedelta(0):
            raise ValidationError(
                f"Epoch duration must not be negative, got {duration}",
                code="invalid_duration",
            )
        if not coordinator or coordinator == ZERO_ADDRESS:
            raise ValidationError("Must assign coordinator", code="missing_coordinator")
        if coordinator in members:
            raise ValidationError(
                f"Coordinator {coordinator} cannot also be an epoch member",
                code="coordinator_is_member",
            )

        with self._lock_for(admin):
            previous = self._epochs.get(admin)
            if previous is not None:
                residual = previous.escrow_balance
                try:
                    refund = self._ledger.refund_residual(
                        previous, on_debit=self._persist,
                    )
                except TransferPending as exc:
                    self._record(EventKind.ESCROW_REFUNDED, admin, now, {
                        "admin": admin,
                        "amount": str(residual),
                        "receipt": exc.receipt,
                        "pending": True,
                    })
                    raise
                except TransferError:
                    self._persist()
                    raise
                if refund is not None:
                    amount, receipt = refund
                    self._record(EventKind.ESCROW_REFUNDED, admin, now, {
                        "admin": admin,
                        "amount": str(amount),
                        "receipt": receipt,
                        "pending": False,
                    })

            epoch = Epoch(
                admin=admin,
                members=members,
                starts_at=starts_at,
                duration=duration,
                coordinator=coordinator,
                escrowed_value=value,
                reward_rate_per_unit=self._ledger.reward_rate(value),
                escrow_balance=value,
                scheduled_utc=now,
            )
            self._epochs[admin] = epoch
            self._record(EventKind.EPOCH_SCHEDULED, admin, now, {
                "admin": admin,
                "members": list(members),
                "starts_at": starts_at.isoformat(),
                "duration_seconds": duration.total_seconds(),
                "coordinator": coordinator,
                "escrowed_value": str(value),
                "reward_rate_per_unit": str(epoch.reward_rate_per_unit),
            })
            self._persist()
            return epoch

    def update_members(
        self,
        admin: str,
        caller: str,
        members: Sequence[str],
        now: Optional[datetime] = None,
    ) -> None:
        """Replace the member list wholesale. Admin only, before the epoch starts."""
        now = self._resolve_now(now)
        with self._lock_for(admin):
            epoch = self._get(admin)
            if caller != epoch.admin:
                raise AuthorizationError(
                    f"Only the epoch admin may update members (caller {caller})",
                    code="not_admin",
                )
            EpochLifecycle.require_scheduled(epoch, now)
            members = list(members)
            self._validate_members(members)
            if epoch.coordinator in members:
                raise ValidationError(
                    f"Coordinator {epoch.coordinator} cannot also be an epoch member",
                    code="coordinator_is_member",
                )

            epoch.members = members
            epoch.reset_member_state()
            self._record(EventKind.EPOCH_MEMBERS_UPDATED, caller, now, {
                "admin": admin,
                "members": list(members),
            })
            self._persist()

    # ------------------------------------------------------------------
    # Commitments and proofs
    # ------------------------------------------------------------------

    def update_commitment(
        self,
        admin: str,
        caller: str,
        commitment: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Set the caller's commitment. Clears any earlier verification."""
        now = self._resolve_now(now)
        with self._lock_for(admin):
            epoch = self._get(admin)
            EpochLifecycle.require_active(epoch, now)
            idx = epoch.member_index(caller)
            if idx is None:
                raise AuthorizationError(
                    f"Commitment must be from epoch member (caller {caller})",
                    code="not_member",
                )
            self._registry.update_commitment(epoch, idx, commitment)
            self._record(EventKind.COMMITMENT_UPDATED, caller, now, {
                "admin": admin,
                "member_idx": idx,
                "commitment": str(commitment),
            })
            self._persist()

    def admit_proof(
        self,
        admin: str,
        caller: str,
        member: str,
        proof: Any,
        public_inputs: Sequence[int],
        now: Optional[datetime] = None,
    ) -> None:
        """Mark member's commitment verified. Coordinator only, while active."""
        now = self._resolve_now(now)
        with self._lock_for(admin):
            epoch = self._get(admin)
            self._require_coordinator(epoch, caller)
            EpochLifecycle.require_active(epoch, now)
            idx = epoch.member_index(member)
            if idx is None:
                raise ValidationError(
                    f"Member {member} not part of this epoch", code="not_member",
                )
            try:
                self._registry.admit_proof(epoch, idx, proof, public_inputs)
            except (ValidationError, ProofRejected) as exc:
                self._record(EventKind.PROOF_REJECTED, caller, now, {
                    "admin": admin,
                    "member_idx": idx,
                    "reason": exc.code,
                })
                raise
            self._record(EventKind.PROOF_ADMITTED, caller, now, {
                "admin": admin,
                "member_idx": idx,
                "commitment": str(epoch.commitments[idx]),
            })
            self._persist()

    # ------------------------------------------------------------------
    # Reveal and settlement
    # ------------------------------------------------------------------

    def submit_revealed_allocations(
        self,
        admin: str,
        caller: str,
        values: Sequence[int],
        now: Optional[datetime] = None,
    ) -> None:
        """Record the coordinator's aggregate reveal and finalize the epoch.

        The aggregate is accepted as given once every commitment is
        verified; it is not recomputed here.
        """
        now = self._resolve_now(now)
        with self._lock_for(admin):
            epoch = self._get(admin)
            self._require_coordinator(epoch, caller)
            EpochLifecycle.require_finished_unrevealed(epoch, now)
            if not epoch.all_verified():
                raise ValidationError(
                    "All token allocation commitments must be verified",
                    code="not_all_verified",
                )
            values = list(values)
            if len(values) != epoch.member_count:
                raise ValidationError(
                    f"Expected {epoch.member_count} revealed allocations, "
                    f"got {len(values)}",
                    code="bad_reveal_length",
                )
            for i, v in enumerate(values):
                if isinstance(v, bool) or not isinstance(v, int) or v < 0:
                    raise ValidationError(
                        f"Revealed allocation {i} must be a non-negative integer, "
                        f"got {v!r}",
                        code="bad_reveal_value",
                    )

            epoch.revealed_allocations = values
            epoch.revealed = True
            self._record(EventKind.ALLOCATIONS_REVEALED, caller, now, {
                "admin": admin,
                "revealed_allocations": values,
            })
            self._persist()

    def collect_reward(
        self,
        admin: str,
        caller: str,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """Pay the caller's reward. Returns the amount paid.

        The withdrawal is persisted before the rail is called, so a crash
        mid-transfer can never leave the member collectable again. A
        TransferPending is re-raised after the booked payout and its
        receipt are recorded; the member stays withdrawn.
        """
        now = self._resolve_now(now)
        with self._lock_for(admin):
            epoch = self._get(admin)
            EpochLifecycle.require_finalized(epoch, now)
            idx = epoch.member_index(caller)
            if idx is None:
                raise AuthorizationError(
                    f"Member {caller} not part of this epoch", code="not_member",
                )
            try:
                payout, receipt = self._ledger.collect(
                    epoch, idx, on_debit=self._persist,
                )
            except TransferPending as exc:
                self._record(EventKind.REWARD_COLLECTED, caller, now, {
                    "admin": admin,
                    "member_idx": idx,
                    "amount": str(self._ledger.payout_for(epoch, idx)),
                    "receipt": exc.receipt,
                    "pending": True,
                })
                raise
            except TransferError:
                # Rolled back in memory; bring the snapshot back in line.
                self._persist()
                raise
            self._record(EventKind.REWARD_COLLECTED, caller, now, {
                "admin": admin,
                "member_idx": idx,
                "amount": str(payout),
                "receipt": receipt,
                "pending": False,
            })
            self._persist()
            return payout

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_epoch(self, admin: str) -> bool:
        return admin in self._epochs

    def admins(self) -> list[str]:
        return sorted(self._epochs)

    def get_epoch(self, admin: str) -> Epoch:
        return self._get(admin)

    def get_members(self, admin: str) -> list[str]:
        return list(self._get(admin).members)

    def get_commitments(self, admin: str) -> list[int]:
        return list(self._get(admin).commitments)

    def get_verified(self, admin: str) -> list[bool]:
        return list(self._get(admin).verified)

    def get_revealed_allocations(self, admin: str) -> list[int]:
        return list(self._get(admin).revealed_allocations)

    def get_withdrawn(self, admin: str) -> list[bool]:
        return list(self._get(admin).withdrawn)

    def phase(self, admin: str, now: Optional[datetime] = None) -> EpochPhase:
        return EpochLifecycle.phase(self._get(admin), self._resolve_now(now))

    def is_active(self, admin: str, now: Optional[datetime] = None) -> bool:
        return EpochLifecycle.is_active(self._get(admin), self._resolve_now(now))

    def is_finished(self, admin: str, now: Optional[datetime] = None) -> bool:
        return EpochLifecycle.is_finished(self._get(admin), self._resolve_now(now))

    def is_finalized(self, admin: str, now: Optional[datetime] = None) -> bool:
        return EpochLifecycle.is_finalized(self._get(admin), self._resolve_now(now))

    def is_all_verified(self, admin: str) -> bool:
        return self._get(admin).all_verified()

    def payout_for(self, admin: str, member: str) -> Decimal:
        """Reward the member would collect under the current reveal."""
        epoch = self._get(admin)
        idx = epoch.member_index(member)
        if idx is None:
            raise AuthorizationError(
                f"Member {member} not part of this epoch", code="not_member",
            )
        return self._ledger.payout_for(epoch, idx)

    def status(self, admin: str, now: Optional[datetime] = None) -> dict[str, Any]:
        """Public projection of one epoch for observers and the CLI."""
        epoch = self._get(admin)
        now = self._resolve_now(now)
        return {
            "admin": epoch.admin,
            "phase": EpochLifecycle.phase(epoch, now).value,
            "members": list(epoch.members),
            "coordinator": epoch.coordinator,
            "starts_at": epoch.starts_at.isoformat(),
            "ends_at": epoch.ends_at.isoformat(),
            "escrowed_value": str(epoch.escrowed_value),
            "escrow_balance": str(epoch.escrow_balance),
            "total_owed": (
                str(self._ledger.total_owed(epoch)) if epoch.revealed else None
            ),
            "reward_rate_per_unit": str(epoch.reward_rate_per_unit),
            "commitments": [str(c) for c in epoch.commitments],
            "verified": list(epoch.verified),
            "all_verified": epoch.all_verified(),
            "revealed_allocations": list(epoch.revealed_allocations),
            "withdrawn": list(epoch.withdrawn),
        }

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _resolve_now(self, now: Optional[datetime]) -> datetime:
        now = now or self._clock()
        _require_aware(now, "now")
        return now

    def _get(self, admin: str) -> Epoch:
        epoch = self._epochs.get(admin)
        if epoch is None:
            raise UnknownEpochError(f"No epoch scheduled by {admin}")
        return epoch

    def _lock_for(self, admin: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(admin)
            if lock is None:
                lock = threading.RLock()
                self._locks[admin] = lock
            return lock

    def _validate_members(self, members: list[str]) -> None:
        lo, hi = self._resolver.min_members(), self._resolver.max_members()
        if not (lo <= len(members) <= hi):
            raise ValidationError(
                f"Cannot create epoch involving less than {lo} members "
                f"or more than {hi} members (got {len(members)})",
                code="invalid_member_count",
            )
        if any(not m for m in members):
            raise ValidationError("Member identities must be non-empty",
                                  code="invalid_member")
        if len(set(members)) != len(members):
            raise ValidationError("Epoch members must be distinct",
                                  code="duplicate_member")

    @staticmethod
    def _require_coordinator(epoch: Epoch, caller: str) -> None:
        if caller != epoch.coordinator:
            raise AuthorizationError(
                f"Only dedicated coordinator is allowed to interact (caller {caller})",
                code="not_coordinator",
            )

    def _record(
        self,
        kind: EventKind,
        actor_id: str,
        now: datetime,
        payload: dict[str, Any],
    ) -> None:
        self._event_log.append(EventRecord.create(
            event_id=f"evt_{uuid4().hex}",
            event_kind=kind,
            actor_id=actor_id,
            payload=payload,
            timestamp_utc=now,
        ))

    def _persist(self) -> None:
        if self._state_store is not None:
            self._state_store.save_epochs(self._epochs)
