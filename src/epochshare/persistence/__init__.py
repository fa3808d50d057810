"""Persistence — audit event log and epoch snapshots."""

from epochshare.persistence.event_log import EventKind, EventLog, EventRecord
from epochshare.persistence.state_store import StateStore

__all__ = ["EventKind", "EventLog", "EventRecord", "StateStore"]
