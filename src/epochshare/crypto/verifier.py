"""Proof verifiers — the external gate that turns a commitment into "verified".

The epoch never evaluates pairing equations itself. It hands the proof and
the public-input vector to an injected ProofVerifier and trusts the
boolean it gets back. Any object with a matching ``verify`` method
satisfies the Protocol, so deployments and tests can swap backends
without touching the registry.

Backends:
    ContractProofVerifier  calls a deployed Groth16 verifier contract's
                           ``verifyProof`` view function through web3.
    SnarkjsVerifier        runs ``snarkjs groth16 verify`` against a
                           verification key on disk.
    OpeningVerifier        development backend: the "proof" is the opening
                           itself and the allocation constraints are
                           checked directly. Not zero-knowledge.
"""

from __future__ import annotations

import json
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from epochshare.crypto.allocation import (
    BN254_SCALAR_FIELD,
    DEFAULT_ALLOCATION_SLOTS,
    DEFAULT_BASIS_POINTS_TOTAL,
    AllocationOpening,
    check_constraints,
)


@runtime_checkable
class ProofVerifier(Protocol):
    """Checks a proof against a public-input vector for a fixed circuit."""

    def verify(self, proof: Any, public_inputs: Sequence[int]) -> bool:
        ...


def _to_int(x: Any) -> int:
    if isinstance(x, str) and x.startswith("0x"):
        return int(x, 16)
    return int(x)


@dataclass(frozen=True)
class Groth16Proof:
    """Groth16 proof points in verifier-contract calldata order.

    ``b`` holds each Fp2 coordinate as (c1, c0), the order the EVM
    pairing precompile expects, which is the reverse of snarkjs JSON.
    """
    a: tuple[int, int]
    b: tuple[tuple[int, int], tuple[int, int]]
    c: tuple[int, int]

    @staticmethod
    def from_snarkjs(proof: dict[str, Any]) -> Groth16Proof:
        pi_b = proof["pi_b"]
        return Groth16Proof(
            a=(_to_int(proof["pi_a"][0]), _to_int(proof["pi_a"][1])),
            b=(
                (_to_int(pi_b[0][1]), _to_int(pi_b[0][0])),
                (_to_int(pi_b[1][1]), _to_int(pi_b[1][0])),
            ),
            c=(_to_int(proof["pi_c"][0]), _to_int(proof["pi_c"][1])),
        )

    def to_snarkjs(self) -> dict[str, Any]:
        return {
            "pi_a": [str(self.a[0]), str(self.a[1]), "1"],
            "pi_b": [
                [str(self.b[0][1]), str(self.b[0][0])],
                [str(self.b[1][1]), str(self.b[1][0])],
                ["1", "0"],
            ],
            "pi_c": [str(self.c[0]), str(self.c[1]), "1"],
            "protocol": "groth16",
            "curve": "bn128",
        }

    def calldata(self) -> tuple[list[int], list[list[int]], list[int]]:
        return (
            list(self.a),
            [list(self.b[0]), list(self.b[1])],
            list(self.c),
        )


VERIFY_PROOF_ABI = [{
    "inputs": [
        {"internalType": "uint256[2]", "name": "a", "type": "uint256[2]"},
        {"internalType": "uint256[2][2]", "name": "b", "type": "uint256[2][2]"},
        {"internalType": "uint256[2]", "name": "c", "type": "uint256[2]"},
        {"internalType": "uint256[5]", "name": "input", "type": "uint256[5]"},
    ],
    "name": "verifyProof",
    "outputs": [{"internalType": "bool", "name": "r", "type": "bool"}],
    "stateMutability": "view",
    "type": "function",
}]


class ContractProofVerifier:
    """Verifies proofs with an on-chain Groth16 verifier contract.

    The call is a read-only ``eth_call``; nothing is sent or signed.

    Usage:
        verifier = ContractProofVerifier(rpc_url, "0xVerifier...")
        verifier.verify(Groth16Proof.from_snarkjs(proof_json), public_inputs)
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        w3: Any = None,
    ) -> None:
        if w3 is None:
            from web3 import Web3, HTTPProvider
            w3 = Web3(HTTPProvider(rpc_url))
        self._w3 = w3
        self._contract = w3.eth.contract(
            address=w3.to_checksum_address(contract_address),
            abi=VERIFY_PROOF_ABI,
        )

    def verify(self, proof: Any, public_inputs: Sequence[int]) -> bool:
        from web3.exceptions import ContractLogicError

        if not isinstance(proof, Groth16Proof):
            return False
        a, b, c = proof.calldata()
        try:
            result = self._contract.functions.verifyProof(
                a, b, c, [int(x) for x in public_inputs]
            ).call()
        except ContractLogicError:
            # A reverting verifier is a rejection, not an outage.
            return False
        return bool(result)


class SnarkjsVerifier:
    """Verifies proofs by invoking the snarkjs CLI.

    Usage:
        verifier = SnarkjsVerifier(Path("CheckTokenAllocations_15.vkey.json"))
        verifier.verify(proof, public_inputs)
    """

    def __init__(
        self,
        verification_key: Path,
        snarkjs_bin: str = "snarkjs",
        timeout_seconds: int = 120,
    ) -> None:
        self._verification_key = verification_key
        self._command = shlex.split(snarkjs_bin)
        self._timeout = timeout_seconds

    def verify(self, proof: Any, public_inputs: Sequence[int]) -> bool:
        if not isinstance(proof, Groth16Proof):
            return False
        with tempfile.TemporaryDirectory(prefix="epochshare-verify-") as tmp:
            tmp_dir = Path(tmp)
            proof_path = tmp_dir / "proof.json"
            public_path = tmp_dir / "public.json"
            proof_path.write_text(json.dumps(proof.to_snarkjs()), encoding="utf-8")
            public_path.write_text(
                json.dumps([str(int(x)) for x in public_inputs]), encoding="utf-8",
            )
            cmd = [
                *self._command, "groth16", "verify",
                str(self._verification_key), str(public_path), str(proof_path),
            ]
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self._timeout,
            )
        return result.returncode == 0 and "OK" in result.stdout


class OpeningVerifier:
    """Development verifier that checks the opening in the clear.

    Accepts an AllocationOpening as the proof and evaluates every
    allocation constraint directly, so it rejects exactly the witnesses
    a real circuit could not prove. It reveals the allocation vector to
    whoever runs it; use it only where privacy does not matter.
    """

    def __init__(
        self,
        slots: int = DEFAULT_ALLOCATION_SLOTS,
        basis_points_total: int = DEFAULT_BASIS_POINTS_TOTAL,
        field_modulus: int = BN254_SCALAR_FIELD,
    ) -> None:
        self._slots = slots
        self._basis_points_total = basis_points_total
        self._field_modulus = field_modulus
        self.last_errors: list[str] = []

    def verify(self, proof: Any, public_inputs: Sequence[int]) -> bool:
        self.last_errors = self.explain(proof, public_inputs)
        return not self.last_errors

    def explain(self, proof: Any, public_inputs: Sequence[int]) -> list[str]:
        """Return every reason the proof would be rejected."""
        if not isinstance(proof, AllocationOpening):
            return [f"expected an AllocationOpening, got {type(proof).__name__}"]
        if len(public_inputs) != 5:
            return [f"expected 5 public inputs, got {len(public_inputs)}"]
        validity, commitment, echo, idx, count = (int(x) for x in public_inputs)
        errors: list[str] = []
        if validity != 1:
            errors.append("validity flag not set")
        if echo != commitment:
            errors.append("commitment echo differs from commitment")
        errors.extend(check_constraints(
            proof,
            commitment=commitment,
            allocating_member_idx=idx,
            member_count=count,
            slots=self._slots,
            basis_points_total=self._basis_points_total,
            field_modulus=self._field_modulus,
        ))
        return errors


def opening_verifier_from_policy(resolver: Optional[Any] = None) -> OpeningVerifier:
    """Build an OpeningVerifier whose constants match the loaded policy."""
    if resolver is None:
        return OpeningVerifier()
    return OpeningVerifier(
        slots=resolver.allocation_slots(),
        basis_points_total=resolver.basis_points_total(),
        field_modulus=resolver.snark_scalar_field(),
    )
