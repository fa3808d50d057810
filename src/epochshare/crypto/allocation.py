"""Allocation commitments — hashing, openings, and the allocation constraints.

A member's private decision is a fixed-width vector of basis points
(one slot per possible member) plus a random salt. The member publishes
only the commitment:

    commitment = H(salt, allocations) reduced into the SNARK scalar field

A proof later convinces the epoch that the committed vector satisfies
the allocation constraints without revealing it:

    1. H(salt, allocations) == commitment
    2. every allocation >= 0
    3. allocations[allocating_member_idx] == 0      (no self-allocation)
    4. allocations[k] == 0 for k >= member_count    (no phantom members)
    5. sum(allocations) == basis_points_total
    6. 0 <= allocating_member_idx < member_count

The builder is deterministic: the same opening always produces the same
commitment.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import Sequence


BN254_SCALAR_FIELD = (
    21888242871839275222246405745257275088548364400416034343698204186575808495617
)
DEFAULT_ALLOCATION_SLOTS = 15
DEFAULT_BASIS_POINTS_TOTAL = 10_000


@dataclass(frozen=True)
class AllocationOpening:
    """The private witness behind a commitment: salt plus allocation vector."""
    salt: int
    allocations: tuple[int, ...]

    @staticmethod
    def create(
        allocations: Sequence[int],
        salt: int | None = None,
        slots: int = DEFAULT_ALLOCATION_SLOTS,
    ) -> AllocationOpening:
        """Pad allocations to the fixed slot width and draw a salt if absent."""
        if len(allocations) > slots:
            raise ValueError(
                f"Allocation vector has {len(allocations)} entries, "
                f"at most {slots} slots available"
            )
        if salt is None:
            salt = secrets.randbelow(BN254_SCALAR_FIELD)
        padded = tuple(int(a) for a in allocations) + (0,) * (slots - len(allocations))
        return AllocationOpening(salt=int(salt), allocations=padded)

    def to_dict(self) -> dict[str, object]:
        return {
            "salt": str(self.salt),
            "allocations": [str(a) for a in self.allocations],
        }

    @staticmethod
    def from_dict(data: dict[str, object]) -> AllocationOpening:
        return AllocationOpening(
            salt=int(data["salt"]),  # type: ignore[arg-type]
            allocations=tuple(int(a) for a in data["allocations"]),  # type: ignore[union-attr]
        )


def commit_allocations(
    salt: int,
    allocations: Sequence[int],
    field_modulus: int = BN254_SCALAR_FIELD,
) -> int:
    """Compute the commitment hash for a salt and allocation vector.

    Canonical form: JSON with decimal-string values, sorted keys, UTF-8.
    The SHA-256 digest is reduced into the scalar field so it fits a
    single public input.
    """
    canonical = json.dumps(
        {
            "salt": str(int(salt)),
            "allocations": [str(int(a)) for a in allocations],
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    digest = hashlib.sha256(canonical).digest()
    return int.from_bytes(digest, "big") % field_modulus


def commit_opening(
    opening: AllocationOpening,
    field_modulus: int = BN254_SCALAR_FIELD,
) -> int:
    return commit_allocations(opening.salt, opening.allocations, field_modulus)


def build_public_inputs(
    commitment: int,
    allocating_member_idx: int,
    member_count: int,
    valid: bool = True,
) -> list[int]:
    """Public-input vector as emitted by the proving system.

    Layout: [validity_flag, commitment, commitment_echo,
             allocating_member_idx, member_count]
    """
    return [
        1 if valid else 0,
        int(commitment),
        int(commitment),
        int(allocating_member_idx),
        int(member_count),
    ]


def check_constraints(
    opening: AllocationOpening,
    commitment: int,
    allocating_member_idx: int,
    member_count: int,
    slots: int = DEFAULT_ALLOCATION_SLOTS,
    basis_points_total: int = DEFAULT_BASIS_POINTS_TOTAL,
    field_modulus: int = BN254_SCALAR_FIELD,
) -> list[str]:
    """Evaluate the allocation constraints against an opening.

    Returns a list of violations. Empty list means the opening is a
    valid witness for (commitment, allocating_member_idx, member_count).
    """
    errors: list[str] = []
    allocations = opening.allocations

    if len(allocations) != slots:
        errors.append(
            f"allocation vector must have {slots} slots, got {len(allocations)}"
        )
        return errors  # Remaining checks assume the fixed width

    if commit_opening(opening, field_modulus) != commitment:
        errors.append("opening does not hash to the commitment")

    negative = [k for k, a in enumerate(allocations) if a < 0]
    if negative:
        errors.append(f"negative allocation at slots {negative}")

    if not (0 <= allocating_member_idx < member_count):
        errors.append(
            f"allocating member index {allocating_member_idx} out of range "
            f"for {member_count} members"
        )
    elif allocations[allocating_member_idx] != 0:
        errors.append(
            f"member {allocating_member_idx} allocated "
            f"{allocations[allocating_member_idx]} to itself"
        )

    if not (0 < member_count <= slots):
        errors.append(f"member count {member_count} out of range 1..{slots}")
    else:
        phantom = [k for k in range(member_count, slots) if allocations[k] != 0]
        if phantom:
            errors.append(f"allocation to non-existent members at slots {phantom}")

    total = sum(allocations)
    if total != basis_points_total:
        errors.append(
            f"allocations sum to {total}, must sum to {basis_points_total}"
        )

    return errors
