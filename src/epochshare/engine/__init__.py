"""Epoch engine — lifecycle gates and the commitment registry."""

from epochshare.engine.lifecycle import EpochLifecycle, EpochPhase
from epochshare.engine.registry import CommitmentRegistry

__all__ = ["CommitmentRegistry", "EpochLifecycle", "EpochPhase"]
