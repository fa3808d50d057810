"""Policy resolver — typed access to the epoch protocol constants.

All tunables live in ``config/epoch_policy.json``. Code never hardcodes
member bounds, the basis-point denominator, or the public-input layout;
it asks the resolver.
"""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Any


class PolicyResolver:
    """Resolves protocol parameters from the loaded policy document.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        resolver.max_members()       # 15
        resolver.basis_points_total()  # 10000
    """

    POLICY_FILENAME = "epoch_policy.json"

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        path = config_dir / cls.POLICY_FILENAME
        with path.open("r", encoding="utf-8") as handle:
            return cls(json.load(handle))

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def min_members(self) -> int:
        return int(self._policy["membership"]["min_members"])

    def max_members(self) -> int:
        return int(self._policy["membership"]["max_members"])

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocation_slots(self) -> int:
        """Fixed width of the private allocation vector."""
        return int(self._policy["allocation"]["allocation_slots"])

    def basis_points_total(self) -> int:
        """Denominator every allocation vector must sum to."""
        return int(self._policy["allocation"]["basis_points_total"])

    # ------------------------------------------------------------------
    # Proof
    # ------------------------------------------------------------------

    def public_input_layout(self) -> tuple[str, ...]:
        return tuple(self._policy["proof"]["public_input_layout"])

    def public_input_index(self, name: str) -> int:
        """Position of a named field within the public-input vector."""
        try:
            return self.public_input_layout().index(name)
        except ValueError:
            raise KeyError(f"Unknown public input field: {name}") from None

    def snark_scalar_field(self) -> int:
        return int(self._policy["proof"]["snark_scalar_field"])

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def payout_quantum(self) -> Decimal:
        return Decimal(self._policy["settlement"]["payout_quantum"])

    def _validate(self) -> None:
        """Fail closed on a policy document that breaks protocol invariants."""
        lo, hi = self.min_members(), self.max_members()
        if lo < 2:
            raise ValueError(f"min_members must be >= 2, got {lo}")
        if hi < lo:
            raise ValueError(f"max_members ({hi}) must be >= min_members ({lo})")
        if hi > self.allocation_slots():
            raise ValueError(
                f"max_members ({hi}) cannot exceed allocation_slots "
                f"({self.allocation_slots()})"
            )
        if self.basis_points_total() <= 0:
            raise ValueError("basis_points_total must be positive")
        required = {
            "validity_flag",
            "commitment",
            "commitment_echo",
            "allocating_member_idx",
            "member_count",
        }
        missing = required - set(self.public_input_layout())
        if missing:
            raise ValueError(
                f"public_input_layout missing fields: {', '.join(sorted(missing))}"
            )
