"""Cryptographic pieces — allocation commitments and proof verifiers."""

from epochshare.crypto.allocation import AllocationOpening, commit_allocations
from epochshare.crypto.verifier import (
    ContractProofVerifier,
    Groth16Proof,
    OpeningVerifier,
    ProofVerifier,
    SnarkjsVerifier,
)

__all__ = [
    "AllocationOpening",
    "ContractProofVerifier",
    "Groth16Proof",
    "OpeningVerifier",
    "ProofVerifier",
    "SnarkjsVerifier",
    "commit_allocations",
]
