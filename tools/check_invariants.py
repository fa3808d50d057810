#!/usr/bin/env python3
"""epochshare invariant checks against the policy config."""

import json
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
POLICY_FILENAME = "epoch_policy.json"

REQUIRED_PUBLIC_INPUTS = (
    "validity_flag",
    "commitment",
    "commitment_echo",
    "allocating_member_idx",
    "member_count",
)


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check(config_dir: Path = CONFIG_DIR) -> int:
    policy = load_json(config_dir / POLICY_FILENAME)
    errors: list[str] = []

    # --- Membership invariants ---
    lo = policy["membership"]["min_members"]
    hi = policy["membership"]["max_members"]
    slots = policy["allocation"]["allocation_slots"]
    if lo < 2:
        errors.append(f"min_members must be >= 2, got {lo}")
    if hi < lo:
        errors.append(f"max_members ({hi}) must be >= min_members ({lo})")
    if hi > slots:
        errors.append(f"max_members ({hi}) cannot exceed allocation_slots ({slots})")

    # --- Allocation invariants ---
    total = policy["allocation"]["basis_points_total"]
    if total != 10000:
        errors.append(f"basis_points_total must be 10000, got {total}")

    # --- Proof layout invariants ---
    layout = policy["proof"]["public_input_layout"]
    if tuple(layout) != REQUIRED_PUBLIC_INPUTS:
        errors.append(
            f"public_input_layout must be {list(REQUIRED_PUBLIC_INPUTS)}, got {layout}"
        )
    field = int(policy["proof"]["snark_scalar_field"])
    if field <= total * slots:
        errors.append("snark_scalar_field too small to hold allocation sums")

    # --- Settlement invariants ---
    quantum = policy["settlement"]["payout_quantum"]
    try:
        if Decimal(quantum) <= 0:
            errors.append(f"payout_quantum must be positive, got {quantum}")
    except InvalidOperation:
        errors.append(f"payout_quantum is not a decimal: {quantum!r}")

    if errors:
        print("Invariant check FAILED:")
        for err in errors:
            print(f"  - {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    sys.exit(check())
