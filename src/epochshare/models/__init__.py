"""Data models for epochs."""

from epochshare.models.epoch import EMPTY_COMMITMENT, Epoch

__all__ = ["EMPTY_COMMITMENT", "Epoch"]
