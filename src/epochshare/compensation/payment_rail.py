"""Payout rails — the pluggable backend that actually moves settled funds.

The escrow ledger never touches money directly. It debits its own
accounting and then asks a PayoutRail to deliver the amount. Adding a
rail means implementing the Protocol; nothing in escrow or settlement
changes.

A rail signals failure by raising. The ledger treats any exception from
``transfer`` as "nothing was delivered" and rolls its accounting back,
except TransferPending: the funds are in flight and stay booked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable
from uuid import uuid4

from epochshare.errors import TransferError, TransferPending


@runtime_checkable
class PayoutRail(Protocol):
    """Delivers funds to a recipient. Returns a rail-specific receipt ID."""

    def transfer(self, recipient: str, amount: Decimal) -> str:
        ...


@dataclass(frozen=True)
class TransferReceipt:
    receipt_id: str
    recipient: str
    amount: Decimal
    timestamp_utc: datetime


class InMemoryPayoutRail:
    """Rail that credits an in-process balance sheet.

    ``before_transfer`` is invoked ahead of each credit; tests use it to
    inject faults or to re-enter the store mid-payout.
    """

    def __init__(
        self,
        before_transfer: Optional[Callable[[str, Decimal], None]] = None,
    ) -> None:
        self._balances: Dict[str, Decimal] = {}
        self._receipts: List[TransferReceipt] = []
        self.before_transfer = before_transfer

    def transfer(self, recipient: str, amount: Decimal) -> str:
        if amount < Decimal("0"):
            raise TransferError(f"Cannot transfer negative amount {amount}")
        if self.before_transfer is not None:
            self.before_transfer(recipient, amount)
        receipt = TransferReceipt(
            receipt_id=f"xfer_{uuid4().hex[:12]}",
            recipient=recipient,
            amount=amount,
            timestamp_utc=datetime.now(timezone.utc),
        )
        self._balances[recipient] = self._balances.get(recipient, Decimal("0")) + amount
        self._receipts.append(receipt)
        return receipt.receipt_id

    def balance_of(self, recipient: str) -> Decimal:
        return self._balances.get(recipient, Decimal("0"))

    @property
    def receipts(self) -> List[TransferReceipt]:
        return list(self._receipts)


@dataclass
class Web3PayoutRail:
    """Rail that pays out native currency on an Ethereum-compatible chain.

    Amounts are denominated in ether and converted to wei. Each transfer
    is signed locally and waits for one confirmation; a reverted or
    unconfirmed transaction raises TransferError.
    """
    rpc_url: str
    private_key: str
    chain_id: int = 11155111  # Sepolia
    gas: int = 21_000
    gas_price_gwei: str = "2"
    confirmation_timeout: int = 300
    w3: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.w3 is None:
            from web3 import Web3, HTTPProvider
            self.w3 = Web3(HTTPProvider(self.rpc_url))

    def transfer(self, recipient: str, amount: Decimal) -> str:
        from eth_account import Account

        w3 = self.w3
        try:
            acct = Account.from_key(self.private_key)
            tx = {
                "to": w3.to_checksum_address(recipient),
                "value": w3.to_wei(amount, "ether"),
                "gas": self.gas,
                "gasPrice": w3.to_wei(self.gas_price_gwei, "gwei"),
                "nonce": w3.eth.get_transaction_count(acct.address),
                "chainId": self.chain_id,
            }
            signed = acct.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            raise TransferError(f"Payout to {recipient} failed: {exc}") from exc

        # Broadcast from here on: a missing receipt does not mean no payment.
        try:
            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout,
            )
        except Exception as exc:
            raise TransferPending(
                f"Payout to {recipient} broadcast as {tx_hash.hex()}, "
                f"receipt not seen: {exc}",
                receipt=tx_hash.hex(),
            ) from exc
        if receipt.status != 1:
            raise TransferError(
                f"Payout to {recipient} reverted in block {receipt.blockNumber}"
            )
        return tx_hash.hex()
