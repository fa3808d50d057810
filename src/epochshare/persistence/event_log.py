"""Append-only event log — the audit trail of every epoch mutation.

Every successful state change in an EpochStore produces an event record
appended here, plus one ``proof_rejected`` record per failed admission.
Records are immutable once written and are indexed by the admin whose
epoch they concern, so a coordinator or third party can replay one
epoch's history.

Payloads carry commitments, indices, amounts and receipts. They never
carry openings, salts or private allocation vectors.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of epoch events."""
    EPOCH_SCHEDULED = "epoch_scheduled"
    EPOCH_MEMBERS_UPDATED = "epoch_members_updated"
    COMMITMENT_UPDATED = "commitment_updated"
    PROOF_ADMITTED = "proof_admitted"
    PROOF_REJECTED = "proof_rejected"
    ALLOCATIONS_REVEALED = "allocations_revealed"
    REWARD_COLLECTED = "reward_collected"
    ESCROW_REFUNDED = "escrow_refunded"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event.

    ``event_hash`` is SHA-256 over the canonical JSON of every other
    field. It is fixed at creation and checked again by ``from_dict``.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def digest(
        event_id: str,
        event_kind: EventKind,
        timestamp_utc: str,
        actor_id: str,
        payload: dict[str, Any],
    ) -> str:
        body = json.dumps(
            {
                "event_id": event_id,
                "event_kind": event_kind.value,
                "timestamp_utc": timestamp_utc,
                "actor_id": actor_id,
                "payload": payload,
            },
            sort_keys=True,
            ensure_ascii=False,
        ).encode("utf-8")
        return f"sha256:{hashlib.sha256(body).hexdigest()}"

    @classmethod
    def create(
        cls,
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = (timestamp_utc or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
        return cls(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts,
            actor_id=actor_id,
            payload=payload,
            event_hash=cls.digest(event_id, event_kind, ts, actor_id, payload),
        )

    @property
    def admin(self) -> Optional[str]:
        return self.payload.get("admin")

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        """Rebuild a stored record. Raises ValueError if its hash does not match."""
        kind = EventKind(data["event_kind"])
        expected = cls.digest(
            data["event_id"], kind, data["timestamp_utc"],
            data["actor_id"], data["payload"],
        )
        if data["event_hash"] != expected:
            raise ValueError(
                f"Integrity check failed: event {data['event_id']} "
                f"stored hash {data['event_hash']} != computed {expected}"
            )
        return cls(
            event_id=data["event_id"],
            event_kind=kind,
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=data["event_hash"],
        )


class EventLog:
    """Append-only epoch event log, optionally mirrored to a JSONL file.

    Usage:
        log = EventLog(Path("data/events.jsonl"))
        log.append(EventRecord.create(...))
        log.events_for_epoch("alice", EventKind.PROOF_REJECTED)
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = storage_path
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._by_admin: dict[str, list[EventRecord]] = {}
        if storage_path is not None and storage_path.exists():
            self._replay(storage_path)

    @property
    def count(self) -> int:
        return len(self._events)

    def append(self, event: EventRecord) -> None:
        """Add an event. Raises ValueError on a reused event_id."""
        self._index(event)
        if self._storage_path is not None:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            with self._storage_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False))
                f.write("\n")

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        return [e for e in self._events if kind is None or e.event_kind == kind]

    def events_for_epoch(
        self,
        admin: str,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        """Events recorded against one admin's epoch, oldest first."""
        return [
            e for e in self._by_admin.get(admin, [])
            if kind is None or e.event_kind == kind
        ]

    def _index(self, event: EventRecord) -> None:
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        self._event_ids.add(event.event_id)
        self._events.append(event)
        if event.admin is not None:
            self._by_admin.setdefault(event.admin, []).append(event)

    def _replay(self, path: Path) -> None:
        """Load a JSONL log, failing closed on tampered or duplicated records."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    self._index(EventRecord.from_dict(json.loads(line)))
                except ValueError as exc:
                    raise ValueError(f"{path} line {line_num}: {exc}") from exc
