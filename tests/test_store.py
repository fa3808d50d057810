"""Tests for the epoch store — proves the full commit, prove, reveal, settle flow."""

import threading
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from epochshare.compensation.payment_rail import InMemoryPayoutRail
from epochshare.crypto.allocation import AllocationOpening, build_public_inputs, commit_opening
from epochshare.crypto.verifier import OpeningVerifier
from epochshare.engine.lifecycle import EpochPhase
from epochshare.errors import (
    AuthorizationError,
    DoubleSpendError,
    EpochError,
    ProofRejected,
    StateError,
    TransferError,
    TransferPending,
    UnknownEpochError,
    ValidationError,
)
from epochshare.persistence.event_log import EventKind, EventLog
from epochshare.persistence.state_store import StateStore
from epochshare.policy.resolver import PolicyResolver
from epochshare.store import ZERO_ADDRESS, EpochStore


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
BEFORE = START - timedelta(minutes=5)
DURING = START + timedelta(seconds=5)
AFTER = START + timedelta(seconds=11)

MEMBERS = ["alice", "bob", "carol"]
COORD = "coord"

# Each member's private split; no one allocates to themself.
SPLITS = {
    "alice": [0, 5000, 5000],
    "bob": [4000, 0, 6000],
    "carol": [0, 10000, 0],
}


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def rail() -> InMemoryPayoutRail:
    return InMemoryPayoutRail()


@pytest.fixture
def store(resolver: PolicyResolver, rail: InMemoryPayoutRail) -> EpochStore:
    return EpochStore(resolver, OpeningVerifier(), rail=rail)


def _schedule(store: EpochStore, value: str = "10", members=None) -> None:
    store.schedule_epoch(
        "alice", members or MEMBERS, START, timedelta(seconds=10),
        coordinator=COORD, value=Decimal(value), now=BEFORE,
    )


def _commit_and_prove(store: EpochStore, member: str) -> AllocationOpening:
    opening = AllocationOpening.create(SPLITS[member], salt=len(member))
    commitment = commit_opening(opening)
    idx = MEMBERS.index(member)
    store.update_commitment("alice", member, commitment, now=DURING)
    store.admit_proof(
        "alice", COORD, member, opening,
        build_public_inputs(commitment, idx, len(MEMBERS)), now=DURING,
    )
    return opening


def _finalize(store: EpochStore, reveal=None) -> None:
    for member in MEMBERS:
        _commit_and_prove(store, member)
    store.submit_revealed_allocations(
        "alice", COORD, reveal or [4000, 3000, 3000], now=AFTER,
    )


class TestScenario:
    """End-to-end round with three members and a ten-unit pool."""

    def test_full_round(self, store: EpochStore, rail: InMemoryPayoutRail) -> None:
        _schedule(store)
        assert store.phase("alice", BEFORE) == EpochPhase.SCHEDULED

        store.update_members("alice", "alice", MEMBERS, now=BEFORE)
        with pytest.raises(StateError):
            store.update_members("alice", "alice", MEMBERS, now=DURING)

        for member in MEMBERS:
            _commit_and_prove(store, member)
        assert store.is_all_verified("alice")

        store.submit_revealed_allocations("alice", COORD, [4000, 9000, 17000], now=AFTER)
        assert store.phase("alice", AFTER) == EpochPhase.FINALIZED

        paid = store.collect_reward("alice", "alice", now=AFTER)
        assert paid == Decimal(4000) * (Decimal(10) / Decimal(10000))
        assert paid == Decimal("4")
        assert rail.balance_of("alice") == Decimal("4")

        with pytest.raises(DoubleSpendError):
            store.collect_reward("alice", "alice", now=AFTER)

    def test_reveal_beyond_escrow_cannot_overdraw(self, store: EpochStore) -> None:
        _schedule(store)
        _finalize(store, reveal=[4000, 9000, 17000])
        store.collect_reward("alice", "alice", now=AFTER)

        with pytest.raises(TransferError) as exc_info:
            store.collect_reward("alice", "carol", now=AFTER)
        assert exc_info.value.code == "insufficient_escrow"
        assert store.get_withdrawn("alice") == [True, False, False]

    def test_balanced_reveal_drains_pool(
        self, store: EpochStore, rail: InMemoryPayoutRail,
    ) -> None:
        _schedule(store)
        _finalize(store)
        for member in MEMBERS:
            store.collect_reward("alice", member, now=AFTER)
        assert rail.balance_of("bob") == Decimal("3")
        assert rail.balance_of("carol") == Decimal("3")
        assert store.get_epoch("alice").escrow_balance == Decimal("0")


class TestSchedule:
    def test_records_rate_and_escrow(self, store: EpochStore) -> None:
        _schedule(store, value="25")
        epoch = store.get_epoch("alice")
        assert epoch.reward_rate_per_unit == Decimal("0.0025")
        assert epoch.escrow_balance == Decimal("25")
        assert store.get_commitments("alice") == [0, 0, 0]
        assert store.get_verified("alice") == [False, False, False]

    def test_admin_need_not_be_member(self, store: EpochStore) -> None:
        store.schedule_epoch(
            "alice", ["bob", "carol"], START, timedelta(seconds=10),
            coordinator=COORD, value=Decimal("1"), now=BEFORE,
        )
        assert store.get_members("alice") == ["bob", "carol"]

    @pytest.mark.parametrize("members,code", [
        (["alice"], "invalid_member_count"),
        ([f"m{i}" for i in range(16)], "invalid_member_count"),
        (["alice", ""], "invalid_member"),
        (["alice", "alice"], "duplicate_member"),
        (["alice", COORD], "coordinator_is_member"),
    ])
    def test_rejects_bad_members(self, store: EpochStore, members, code) -> None:
        with pytest.raises(ValidationError) as exc_info:
            _schedule(store, members=members)
        assert exc_info.value.code == code
        assert not store.has_epoch("alice")

    def test_accepts_member_bounds(self, store: EpochStore) -> None:
        _schedule(store, members=["a", "b"])
        _schedule(store, members=[f"m{i}" for i in range(15)])
        assert len(store.get_members("alice")) == 15

    @pytest.mark.parametrize("value", ["0", "-5"])
    def test_rejects_unfunded(self, store: EpochStore, value: str) -> None:
        with pytest.raises(ValidationError, match="Must send some funds"):
            _schedule(store, value=value)

    def test_rejects_past_start(self, store: EpochStore) -> None:
        with pytest.raises(ValidationError) as exc_info:
            store.schedule_epoch(
                "alice", MEMBERS, START, timedelta(seconds=10),
                coordinator=COORD, value=Decimal("10"), now=START,
            )
        assert exc_info.value.code == "past_start"

    @pytest.mark.parametrize("coordinator", ["", ZERO_ADDRESS])
    def test_rejects_missing_coordinator(self, store: EpochStore, coordinator) -> None:
        with pytest.raises(ValidationError, match="Must assign coordinator"):
            store.schedule_epoch(
                "alice", MEMBERS, START, timedelta(seconds=10),
                coordinator=coordinator, value=Decimal("10"), now=BEFORE,
            )

    def test_reschedule_replaces_and_refunds(
        self, store: EpochStore, rail: InMemoryPayoutRail,
    ) -> None:
        _schedule(store, value="10")
        _schedule(store, value="7", members=["bob", "carol"])

        assert store.get_members("alice") == ["bob", "carol"]
        assert store.get_epoch("alice").escrow_balance == Decimal("7")
        assert rail.balance_of("alice") == Decimal("10")
        refunds = store.event_log.events(EventKind.ESCROW_REFUNDED)
        assert len(refunds) == 1
        assert refunds[0].payload["amount"] == "10"

    def test_admins_are_independent(self, store: EpochStore) -> None:
        _schedule(store)
        store.schedule_epoch(
            "dave", ["erin", "frank"], START, timedelta(seconds=10),
            coordinator=COORD, value=Decimal("2"), now=BEFORE,
        )
        assert store.admins() == ["alice", "dave"]
        assert store.get_members("alice") == MEMBERS


class TestUpdateMembers:
    def test_resets_member_state(self, store: EpochStore) -> None:
        _schedule(store)
        store.update_members("alice", "alice", ["bob", "carol", "dave", "erin"], now=BEFORE)
        assert store.get_commitments("alice") == [0, 0, 0, 0]
        assert store.get_withdrawn("alice") == [False] * 4

    def test_only_admin(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(AuthorizationError) as exc_info:
            store.update_members("alice", "bob", ["bob", "carol"], now=BEFORE)
        assert exc_info.value.code == "not_admin"

    def test_validates_members(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(ValidationError):
            store.update_members("alice", "alice", ["bob"], now=BEFORE)
        assert store.get_members("alice") == MEMBERS

    def test_unknown_epoch(self, store: EpochStore) -> None:
        with pytest.raises(UnknownEpochError):
            store.update_members("nobody", "nobody", MEMBERS, now=BEFORE)


class TestCommitments:
    def test_only_while_active(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(StateError, match="must be active"):
            store.update_commitment("alice", "bob", 42, now=BEFORE)
        with pytest.raises(StateError, match="must be active"):
            store.update_commitment("alice", "bob", 42, now=AFTER)

    def test_only_members(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(AuthorizationError) as exc_info:
            store.update_commitment("alice", "mallory", 42, now=DURING)
        assert exc_info.value.code == "not_member"

    def test_recommit_clears_verification(self, store: EpochStore) -> None:
        _schedule(store)
        _commit_and_prove(store, "bob")
        assert store.get_verified("alice") == [False, True, False]
        store.update_commitment("alice", "bob", 99, now=DURING)
        assert store.get_verified("alice") == [False, False, False]
        assert store.get_commitments("alice")[1] == 99


class TestAdmitProof:
    def test_only_coordinator(self, store: EpochStore) -> None:
        _schedule(store)
        store.update_commitment("alice", "bob", 42, now=DURING)
        with pytest.raises(AuthorizationError, match="dedicated coordinator"):
            store.admit_proof("alice", "bob", "bob", None, [1, 42, 42, 1, 3], now=DURING)

    def test_only_while_active(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(StateError):
            store.admit_proof("alice", COORD, "bob", None, [1, 0, 0, 1, 3], now=AFTER)

    def test_target_must_be_member(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(ValidationError) as exc_info:
            store.admit_proof("alice", COORD, "mallory", None, [1, 0, 0, 3, 3], now=DURING)
        assert exc_info.value.code == "not_member"

    def test_rejection_is_logged(self, store: EpochStore) -> None:
        _schedule(store)
        opening = AllocationOpening.create([500, 0, 9500], salt=3)  # self-allocation
        commitment = commit_opening(opening)
        store.update_commitment("alice", "alice", commitment, now=DURING)

        with pytest.raises(ProofRejected):
            store.admit_proof(
                "alice", COORD, "alice", opening,
                build_public_inputs(commitment, 0, 3), now=DURING,
            )
        rejected = store.event_log.events_for_epoch("alice", EventKind.PROOF_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].payload["reason"] == "proof_invalid"
        assert "allocations" not in rejected[0].payload
        assert store.get_verified("alice") == [False, False, False]

    def test_mismatched_inputs_are_logged(self, store: EpochStore) -> None:
        _schedule(store)
        store.update_commitment("alice", "bob", 42, now=DURING)
        with pytest.raises(ValidationError):
            store.admit_proof("alice", COORD, "bob", None, [1, 42, 42, 2, 3], now=DURING)
        rejected = store.event_log.events(EventKind.PROOF_REJECTED)
        assert rejected[0].payload["reason"] == "bad_public_input_idx"


class TestReveal:
    def test_only_coordinator(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(AuthorizationError):
            store.submit_revealed_allocations("alice", "alice", [1, 2, 3], now=AFTER)

    def test_not_before_end(self, store: EpochStore) -> None:
        _schedule(store)
        for member in MEMBERS:
            _commit_and_prove(store, member)
        with pytest.raises(StateError, match="inactive and finished"):
            store.submit_revealed_allocations("alice", COORD, [1, 2, 3], now=DURING)

    def test_requires_all_verified(self, store: EpochStore) -> None:
        _schedule(store)
        _commit_and_prove(store, "alice")
        _commit_and_prove(store, "bob")
        with pytest.raises(ValidationError, match="must be verified"):
            store.submit_revealed_allocations("alice", COORD, [1, 2, 3], now=AFTER)
        assert store.phase("alice", AFTER) == EpochPhase.FINISHED

    @pytest.mark.parametrize("values,code", [
        ([1, 2], "bad_reveal_length"),
        ([1, 2, 3, 4], "bad_reveal_length"),
        ([1, -2, 3], "bad_reveal_value"),
        ([1, True, 3], "bad_reveal_value"),
    ])
    def test_rejects_malformed_reveal(self, store: EpochStore, values, code) -> None:
        _schedule(store)
        for member in MEMBERS:
            _commit_and_prove(store, member)
        with pytest.raises(ValidationError) as exc_info:
            store.submit_revealed_allocations("alice", COORD, values, now=AFTER)
        assert exc_info.value.code == code
        assert not store.is_finalized("alice", AFTER)

    def test_second_reveal_fails(self, store: EpochStore) -> None:
        _schedule(store)
        _finalize(store)
        with pytest.raises(StateError) as exc_info:
            store.submit_revealed_allocations("alice", COORD, [0, 0, 10000], now=AFTER)
        assert exc_info.value.code == "already_finalized"
        assert store.get_revealed_allocations("alice") == [4000, 3000, 3000]


class TestCollect:
    def test_requires_finalized(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(StateError, match="finalized before withdrawing"):
            store.collect_reward("alice", "alice", now=AFTER)

    def test_only_members(self, store: EpochStore) -> None:
        _schedule(store)
        _finalize(store)
        with pytest.raises(AuthorizationError, match="not part of this epoch"):
            store.collect_reward("alice", COORD, now=AFTER)

    def test_payout_for(self, store: EpochStore) -> None:
        _schedule(store)
        _finalize(store)
        assert store.payout_for("alice", "bob") == Decimal("3")

    def test_reentrant_collect_is_refused(
        self, store: EpochStore, rail: InMemoryPayoutRail,
    ) -> None:
        _schedule(store)
        _finalize(store)
        codes: list[str] = []

        def reenter(recipient: str, amount: Decimal) -> None:
            try:
                store.collect_reward("alice", "bob", now=AFTER)
            except DoubleSpendError as exc:
                codes.append(exc.code)

        rail.before_transfer = reenter
        assert store.collect_reward("alice", "bob", now=AFTER) == Decimal("3")
        assert codes == ["already_withdrawn"]
        assert rail.balance_of("bob") == Decimal("3")
        assert len(rail.receipts) == 1

    def test_concurrent_collects_pay_once(
        self, store: EpochStore, rail: InMemoryPayoutRail,
    ) -> None:
        _schedule(store)
        _finalize(store)
        outcomes: list[str] = []
        guard = threading.Lock()

        def attempt() -> None:
            try:
                store.collect_reward("alice", "carol", now=AFTER)
                result = "paid"
            except DoubleSpendError:
                result = "refused"
            with guard:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(outcomes) == ["paid"] + ["refused"] * 7
        assert rail.balance_of("carol") == Decimal("3")


class TestQueriesAndErrors:
    def test_status_projection(self, store: EpochStore) -> None:
        _schedule(store)
        status = store.status("alice", DURING)
        assert status["phase"] == "active"
        assert status["ends_at"] == (START + timedelta(seconds=10)).isoformat()
        assert status["escrowed_value"] == "10"
        assert status["all_verified"] is False

    def test_unknown_admin(self, store: EpochStore) -> None:
        with pytest.raises(UnknownEpochError) as exc_info:
            store.get_members("nobody")
        assert isinstance(exc_info.value, LookupError)
        assert str(exc_info.value).startswith("unknown_epoch:")

    def test_every_failure_is_an_epoch_error(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(EpochError):
            store.collect_reward("alice", "alice", now=DURING)

    def test_clock_is_injectable(self, resolver: PolicyResolver) -> None:
        now = {"t": BEFORE}
        store = EpochStore(resolver, OpeningVerifier(), clock=lambda: now["t"])
        store.schedule_epoch(
            "alice", MEMBERS, START, timedelta(seconds=10),
            coordinator=COORD, value=Decimal("10"),
        )
        assert store.phase("alice") == EpochPhase.SCHEDULED
        now["t"] = DURING
        assert store.is_active("alice")
        now["t"] = AFTER
        assert store.is_finished("alice")


class TestAuditAndPersistence:
    def test_every_mutation_is_logged(self, store: EpochStore) -> None:
        _schedule(store)
        _finalize(store)
        store.collect_reward("alice", "alice", now=AFTER)

        kinds = [e.event_kind for e in store.event_log.events_for_epoch("alice")]
        assert kinds == [
            EventKind.EPOCH_SCHEDULED,
            EventKind.COMMITMENT_UPDATED, EventKind.PROOF_ADMITTED,
            EventKind.COMMITMENT_UPDATED, EventKind.PROOF_ADMITTED,
            EventKind.COMMITMENT_UPDATED, EventKind.PROOF_ADMITTED,
            EventKind.ALLOCATIONS_REVEALED,
            EventKind.REWARD_COLLECTED,
        ]

    def test_failed_calls_leave_no_event(self, store: EpochStore) -> None:
        _schedule(store)
        before = store.event_log.count
        with pytest.raises(StateError):
            store.update_commitment("alice", "bob", 1, now=BEFORE)
        assert store.event_log.count == before

    def test_state_survives_restart(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        state_path = tmp_path / "state.json"
        log_path = tmp_path / "events.jsonl"
        first = EpochStore(
            resolver, OpeningVerifier(),
            event_log=EventLog(log_path), state_store=StateStore(state_path),
        )
        _schedule(first)
        opening = _commit_and_prove(first, "bob")

        second = EpochStore(
            resolver, OpeningVerifier(),
            event_log=EventLog(log_path), state_store=StateStore(state_path),
        )
        assert second.get_members("alice") == MEMBERS
        assert second.get_commitments("alice")[1] == commit_opening(opening)
        assert second.get_verified("alice") == [False, True, False]
        assert second.event_log.count == first.event_log.count


class CrashDuringTransfer(BaseException):
    """Stands in for the process dying while a transfer is in flight."""


class UnconfirmedRail:
    def __init__(self) -> None:
        self.sent: list[str] = []

    def transfer(self, recipient: str, amount: Decimal) -> str:
        self.sent.append(recipient)
        raise TransferPending("receipt not seen in time", receipt="0xfeed")


class TestSettlementDurability:
    def _durable(self, resolver: PolicyResolver, tmp_path: Path, rail) -> EpochStore:
        return EpochStore(
            resolver, OpeningVerifier(), rail=rail,
            event_log=EventLog(tmp_path / "events.jsonl"),
            state_store=StateStore(tmp_path / "state.json"),
        )

    def test_unconfirmed_payout_is_not_paid_twice(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        rail = UnconfirmedRail()
        store = self._durable(resolver, tmp_path, rail)
        _schedule(store)
        _finalize(store)

        with pytest.raises(TransferPending):
            store.collect_reward("alice", "bob", now=AFTER)
        with pytest.raises(DoubleSpendError):
            store.collect_reward("alice", "bob", now=AFTER)

        assert rail.sent == ["bob"]
        assert store.get_withdrawn("alice") == [False, True, False]
        booked = store.event_log.events_for_epoch("alice", EventKind.REWARD_COLLECTED)
        assert [(e.payload["receipt"], e.payload["pending"]) for e in booked] == [
            ("0xfeed", True),
        ]

        restarted = self._durable(resolver, tmp_path, InMemoryPayoutRail())
        with pytest.raises(DoubleSpendError):
            restarted.collect_reward("alice", "bob", now=AFTER)

    def test_crash_mid_transfer_leaves_member_withdrawn(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        def crash(recipient: str, amount: Decimal) -> None:
            raise CrashDuringTransfer()

        store = self._durable(resolver, tmp_path, InMemoryPayoutRail(before_transfer=crash))
        _schedule(store)
        _finalize(store)
        with pytest.raises(CrashDuringTransfer):
            store.collect_reward("alice", "carol", now=AFTER)

        restarted = self._durable(resolver, tmp_path, InMemoryPayoutRail())
        assert restarted.get_withdrawn("alice") == [False, False, True]
        assert restarted.get_epoch("alice").escrow_balance == Decimal("7")
        with pytest.raises(DoubleSpendError):
            restarted.collect_reward("alice", "carol", now=AFTER)

    def test_failed_transfer_rollback_is_persisted(
        self, resolver: PolicyResolver, tmp_path: Path,
    ) -> None:
        def refuse(recipient: str, amount: Decimal) -> None:
            raise ConnectionError("rail offline")

        store = self._durable(resolver, tmp_path, InMemoryPayoutRail(before_transfer=refuse))
        _schedule(store)
        _finalize(store)
        with pytest.raises(TransferError):
            store.collect_reward("alice", "carol", now=AFTER)

        restarted = self._durable(resolver, tmp_path, InMemoryPayoutRail())
        assert restarted.get_withdrawn("alice") == [False, False, False]
        assert restarted.collect_reward("alice", "carol", now=AFTER) == Decimal("3")


class TestTimestamps:
    def test_naive_start_rejected(self, store: EpochStore) -> None:
        with pytest.raises(ValidationError) as exc_info:
            store.schedule_epoch(
                "alice", MEMBERS, START.replace(tzinfo=None), timedelta(seconds=10),
                coordinator=COORD, value=Decimal("10"), now=BEFORE,
            )
        assert exc_info.value.code == "naive_timestamp"
        assert not store.has_epoch("alice")

    def test_naive_now_rejected(self, store: EpochStore) -> None:
        _schedule(store)
        with pytest.raises(ValidationError) as exc_info:
            store.phase("alice", DURING.replace(tzinfo=None))
        assert exc_info.value.code == "naive_timestamp"

    def test_other_offsets_accepted(self, store: EpochStore) -> None:
        plus_two = timezone(timedelta(hours=2))
        store.schedule_epoch(
            "alice", MEMBERS, START.astimezone(plus_two), timedelta(seconds=10),
            coordinator=COORD, value=Decimal("10"), now=BEFORE,
        )
        assert store.is_active("alice", DURING)


class TestStatusOwed:
    def test_total_owed_after_reveal(self, store: EpochStore) -> None:
        _schedule(store)
        assert store.status("alice", DURING)["total_owed"] is None
        _finalize(store)
        assert Decimal(store.status("alice", AFTER)["total_owed"]) == Decimal("10")
        store.collect_reward("alice", "alice", now=AFTER)
        assert Decimal(store.status("alice", AFTER)["total_owed"]) == Decimal("6")
