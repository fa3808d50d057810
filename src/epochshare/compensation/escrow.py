"""Escrow ledger — pooled epoch funds, the reward rate, and payouts.

At scheduling the admin deposits the whole pool. The per-unit reward
rate is fixed right then:

    reward_rate_per_unit = escrowed_value / basis_points_total

and never recomputed. After the reveal, a member holding X revealed
units collects X * reward_rate_per_unit, once.

Payout ordering is check → effect → transfer:
    1. refuse if already withdrawn or the escrow cannot cover the payout
    2. flip withdrawn[i], debit the escrow balance, run ``on_debit``
    3. hand the amount to the payout rail
``on_debit`` is where the caller makes step 2 durable; it runs before
any funds move. If the rail fails outright, step 2 is undone before the
error propagates, so a member is never marked paid without having been
paid. If the rail raises TransferPending the funds are in flight and
step 2 stands. Because the flag is already set during step 3, a
re-entrant collect for the same member fails with DoubleSpendError
instead of paying twice.

Lifecycle and caller checks happen in the EpochStore.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Callable, Optional, Tuple

from epochshare.compensation.payment_rail import PayoutRail
from epochshare.errors import (
    DoubleSpendError,
    TransferError,
    TransferPending,
    ValidationError,
)
from epochshare.models.epoch import Epoch
from epochshare.policy.resolver import PolicyResolver


class EscrowLedger:
    """Escrow accounting for epochs.

    Usage:
        ledger = EscrowLedger(resolver, rail)
        rate = ledger.reward_rate(Decimal("10"))
        payout, receipt = ledger.collect(epoch, member_idx, on_debit=save)
    """

    def __init__(self, resolver: PolicyResolver, rail: PayoutRail) -> None:
        self._resolver = resolver
        self._rail = rail

    def reward_rate(self, escrowed_value: Decimal) -> Decimal:
        """Value of one revealed unit (one basis point of one allocation)."""
        if escrowed_value <= Decimal("0"):
            raise ValidationError(
                "Must send some funds to allocate during epoch",
                code="invalid_funding",
            )
        return escrowed_value / Decimal(self._resolver.basis_points_total())

    def payout_for(self, epoch: Epoch, member_idx: int) -> Decimal:
        """Reward owed to a member under the revealed allocations."""
        raw = Decimal(epoch.revealed_allocations[member_idx]) * epoch.reward_rate_per_unit
        return raw.quantize(self._resolver.payout_quantum(), rounding=ROUND_DOWN)

    def total_owed(self, epoch: Epoch) -> Decimal:
        """Outstanding payouts for members who have not withdrawn yet."""
        return sum(
            (self.payout_for(epoch, i)
             for i in range(epoch.member_count) if not epoch.withdrawn[i]),
            Decimal("0"),
        )

    def collect(
        self,
        epoch: Epoch,
        member_idx: int,
        on_debit: Optional[Callable[[], None]] = None,
    ) -> Tuple[Decimal, str]:
        """Pay a member's reward out of escrow exactly once.

        Returns:
            Tuple of (amount paid, rail receipt ID).

        Raises:
            TransferPending: the payout is booked but not yet confirmed.
        """
        if epoch.withdrawn[member_idx]:
            raise DoubleSpendError(
                f"Reward must not have been withdrawn yet "
                f"({epoch.members[member_idx]})"
            )
        payout = self.payout_for(epoch, member_idx)
        if payout > epoch.escrow_balance:
            raise TransferError(
                f"Escrow balance {epoch.escrow_balance} cannot cover "
                f"payout {payout} to {epoch.members[member_idx]}",
                code="insufficient_escrow",
            )

        def undo() -> None:
            epoch.escrow_balance += payout
            epoch.withdrawn[member_idx] = False

        epoch.withdrawn[member_idx] = True
        epoch.escrow_balance -= payout
        receipt = self._send(
            epoch.members[member_idx], payout, undo, on_debit,
        )
        return payout, receipt

    def refund_residual(
        self,
        epoch: Epoch,
        on_debit: Optional[Callable[[], None]] = None,
    ) -> Optional[Tuple[Decimal, str]]:
        """Return whatever is left in escrow to the admin.

        Used when an admin reschedules over an existing epoch. Returns
        None when there is nothing to refund.
        """
        residual = epoch.escrow_balance
        if residual <= Decimal("0"):
            return None

        def undo() -> None:
            epoch.escrow_balance = residual

        epoch.escrow_balance = Decimal("0")
        return residual, self._send(epoch.admin, residual, undo, on_debit)

    def _send(
        self,
        recipient: str,
        amount: Decimal,
        undo: Callable[[], None],
        on_debit: Optional[Callable[[], None]],
    ) -> str:
        """Run the debit hook, then the rail. Undo the debit on a definite failure."""
        try:
            if on_debit is not None:
                on_debit()
            return self._rail.transfer(recipient, amount)
        except TransferPending:
            raise
        except Exception as exc:
            undo()
            if isinstance(exc, TransferError):
                raise
            raise TransferError(f"Payout to {recipient} failed: {exc}") from exc
