"""Epoch protocol errors.

Every failure surfaces synchronously with a stable, machine-readable
``code`` alongside the human-readable message. Nothing is retried
internally: each operation is a single atomic transition, so a failed
call leaves the epoch exactly as it was.

Each class also derives from the built-in exception it most resembles,
so callers that only know about ValueError / RuntimeError still catch
the right things.
"""

from __future__ import annotations


class EpochError(Exception):
    """Base class for all epoch protocol failures."""

    code = "epoch_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.args[0]}"


class StateError(EpochError, RuntimeError):
    """Operation attempted in the wrong lifecycle phase."""

    code = "wrong_state"


class AuthorizationError(EpochError):
    """Caller is not the admin, coordinator, or member the operation requires."""

    code = "unauthorized"


class ValidationError(EpochError, ValueError):
    """Malformed input: member count, funding, timestamps, public inputs."""

    code = "invalid_input"


class ProofRejected(EpochError, ValueError):
    """The proof verifier rejected the proof."""

    code = "proof_invalid"


class DoubleSpendError(EpochError, RuntimeError):
    """Reward already withdrawn for this member."""

    code = "already_withdrawn"


class UnknownEpochError(EpochError, LookupError):
    """No epoch is scheduled for the given admin."""

    code = "unknown_epoch"


class TransferError(EpochError, RuntimeError):
    """The payout rail failed to move funds. Nothing was delivered."""

    code = "transfer_failed"


class TransferPending(TransferError):
    """The transfer left the rail but its outcome is not yet known.

    The funds may still arrive, so the payout must stay booked. ``receipt``
    identifies the in-flight transfer (a transaction hash on chain rails).
    """

    code = "transfer_pending"

    def __init__(self, message: str, receipt: str, code: str | None = None) -> None:
        super().__init__(message, code)
        self.receipt = receipt
