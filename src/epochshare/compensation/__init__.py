"""Compensation subsystem — escrow accounting and payout rails."""

from epochshare.compensation.escrow import EscrowLedger
from epochshare.compensation.payment_rail import (
    InMemoryPayoutRail,
    PayoutRail,
    Web3PayoutRail,
)

__all__ = [
    "EscrowLedger",
    "InMemoryPayoutRail",
    "PayoutRail",
    "Web3PayoutRail",
]
