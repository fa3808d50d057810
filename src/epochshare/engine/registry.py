"""Commitment registry — per-member commitments and the proof admission gate.

A member's commitment is an opaque field element. It only counts toward
settlement once the coordinator has admitted a proof for it. Admission is
fail-closed and ordered: target member, public-input shape, each echoed
public input, the validity flag, then the external verifier. Nothing is
written unless every check passes.

Invariant: verified[i] is True only for the commitment value the last
admitted proof was checked against. Any commitment update clears it.

Lifecycle and caller authorization are the EpochStore's job; the
registry assumes the gate has already been passed.
"""

from __future__ import annotations

from typing import Any, Sequence

from epochshare.crypto.verifier import ProofVerifier
from epochshare.errors import ProofRejected, ValidationError
from epochshare.models.epoch import Epoch
from epochshare.policy.resolver import PolicyResolver


class CommitmentRegistry:
    """Mutates commitments and verified flags on an epoch.

    Usage:
        registry = CommitmentRegistry(resolver, verifier)
        registry.update_commitment(epoch, member_idx, commitment)
        registry.admit_proof(epoch, member_idx, proof, public_inputs)
    """

    def __init__(self, resolver: PolicyResolver, verifier: ProofVerifier) -> None:
        self._resolver = resolver
        self._verifier = verifier

    def update_commitment(self, epoch: Epoch, member_idx: int, commitment: int) -> None:
        """Overwrite a member's commitment and invalidate any prior proof."""
        self._require_member(epoch, member_idx)
        field = self._resolver.snark_scalar_field()
        if not isinstance(commitment, int) or not (0 <= commitment < field):
            raise ValidationError(
                f"Commitment must be an integer in [0, scalar field), got {commitment!r}",
                code="bad_commitment",
            )
        epoch.commitments[member_idx] = commitment
        epoch.verified[member_idx] = False

    def admit_proof(
        self,
        epoch: Epoch,
        member_idx: int,
        proof: Any,
        public_inputs: Sequence[int],
    ) -> None:
        """Mark a member's commitment verified if the proof checks out."""
        self._require_member(epoch, member_idx)
        inputs = self.check_public_inputs(epoch, member_idx, public_inputs)

        if inputs[self._resolver.public_input_index("validity_flag")] != 1:
            raise ProofRejected(
                f"Proof for member {member_idx} carries an unset validity flag"
            )
        if not self._verifier.verify(proof, inputs):
            raise ProofRejected(f"Proof for member {member_idx} must be valid")

        epoch.verified[member_idx] = True

    def check_public_inputs(
        self,
        epoch: Epoch,
        member_idx: int,
        public_inputs: Sequence[int],
    ) -> list[int]:
        """Validate echoed public inputs against stored state.

        Returns the inputs normalised to ints.
        """
        layout = self._resolver.public_input_layout()
        try:
            inputs = [int(x) for x in public_inputs]
        except (TypeError, ValueError):
            raise ValidationError(
                "Public inputs must be integers", code="bad_public_input_shape",
            ) from None
        if len(inputs) != len(layout):
            raise ValidationError(
                f"Expected {len(layout)} public inputs, got {len(inputs)}",
                code="bad_public_input_shape",
            )

        def field(name: str) -> int:
            return inputs[self._resolver.public_input_index(name)]

        stored = epoch.commitments[member_idx]
        if field("commitment") != stored or field("commitment_echo") != stored:
            raise ValidationError(
                "commitment proof input does not match existing commitment",
                code="bad_public_input_hash",
            )
        if field("allocating_member_idx") != member_idx:
            raise ValidationError(
                f"allocating_member_idx proof input is invalid: "
                f"{field('allocating_member_idx')} != {member_idx}",
                code="bad_public_input_idx",
            )
        if field("member_count") != epoch.member_count:
            raise ValidationError(
                f"member_count proof input is invalid: "
                f"{field('member_count')} != {epoch.member_count}",
                code="bad_public_input_count",
            )
        return inputs

    @staticmethod
    def _require_member(epoch: Epoch, member_idx: int) -> None:
        if not (0 <= member_idx < epoch.member_count):
            raise ValidationError(
                f"Member index {member_idx} not part of this epoch",
                code="not_member",
            )
