"""epochshare CLI — drive epochs from the command line.

Usage:
    python -m epochshare.cli schedule --admin alice --members alice,bob,carol \
        --starts-in 60 --duration 3600 --coordinator coord --value 10
    python -m epochshare.cli make-commitment --allocations 0,2000,8000 --out alice.opening.json
    python -m epochshare.cli commit --admin alice --caller alice --commitment 1234...
    python -m epochshare.cli admit-proof --admin alice --caller coord --member alice \
        --opening alice.opening.json
    python -m epochshare.cli reveal --admin alice --caller coord --values 4000,9000,17000
    python -m epochshare.cli collect --admin alice --caller alice
    python -m epochshare.cli status --admin alice

Every mutating command loads the snapshot from --data, applies one
operation, and saves. Chain settings (RPC URL, verifier contract, payout
key) are read from the environment or a .env file.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from epochshare.compensation.payment_rail import (
    InMemoryPayoutRail,
    PayoutRail,
    Web3PayoutRail,
)
from epochshare.crypto.allocation import (
    AllocationOpening,
    build_public_inputs,
    commit_opening,
)
from epochshare.crypto.verifier import (
    ContractProofVerifier,
    Groth16Proof,
    ProofVerifier,
    SnarkjsVerifier,
    opening_verifier_from_policy,
)
from epochshare.errors import EpochError
from epochshare.persistence.event_log import EventLog
from epochshare.persistence.state_store import StateStore
from epochshare.policy.resolver import PolicyResolver
from epochshare.store import EpochStore


ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG = ROOT / "config"
DEFAULT_DATA = ROOT / "data"


def _make_verifier(args: argparse.Namespace, resolver: PolicyResolver) -> ProofVerifier:
    if args.verifier == "contract":
        rpc_url = os.getenv("EPOCHSHARE_RPC_URL")
        address = os.getenv("EPOCHSHARE_VERIFIER_ADDRESS")
        if not rpc_url or not address:
            raise SystemExit(
                "ERROR: contract verifier needs EPOCHSHARE_RPC_URL and "
                "EPOCHSHARE_VERIFIER_ADDRESS"
            )
        return ContractProofVerifier(rpc_url, address)
    if args.verifier == "snarkjs":
        vkey = os.getenv("EPOCHSHARE_VERIFICATION_KEY")
        if not vkey:
            raise SystemExit("ERROR: snarkjs verifier needs EPOCHSHARE_VERIFICATION_KEY")
        return SnarkjsVerifier(Path(vkey), os.getenv("EPOCHSHARE_SNARKJS_BIN", "snarkjs"))
    return opening_verifier_from_policy(resolver)


def _make_rail(args: argparse.Namespace) -> PayoutRail:
    if args.rail == "web3":
        rpc_url = os.getenv("EPOCHSHARE_RPC_URL")
        key = os.getenv("EPOCHSHARE_PAYOUT_KEY")
        if not rpc_url or not key:
            raise SystemExit(
                "ERROR: web3 rail needs EPOCHSHARE_RPC_URL and EPOCHSHARE_PAYOUT_KEY"
            )
        chain_id = int(os.getenv("EPOCHSHARE_CHAIN_ID", "11155111"))
        return Web3PayoutRail(rpc_url=rpc_url, private_key=key, chain_id=chain_id)
    return InMemoryPayoutRail()


def _make_store(args: argparse.Namespace) -> EpochStore:
    """Create an EpochStore with durable persistence."""
    load_dotenv(args.data.parent / ".env")
    args.data.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(args.config)
    return EpochStore(
        resolver,
        _make_verifier(args, resolver),
        rail=_make_rail(args),
        event_log=EventLog(storage_path=args.data / "events.jsonl"),
        state_store=StateStore(storage_path=args.data / "state.json"),
    )


def _now(args: argparse.Namespace) -> Optional[datetime]:
    if getattr(args, "now", None) is None:
        return None
    return _parse_time(args.now)


def _parse_time(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _fail(exc: EpochError) -> int:
    print(f"Failed: {exc}", file=sys.stderr)
    return 1


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def cmd_status(args: argparse.Namespace) -> int:
    store = _make_store(args)
    if args.admin is None:
        print(json.dumps({"epochs": store.admins()}, indent=2))
        return 0
    try:
        print(json.dumps(store.status(args.admin, now=_now(args)), indent=2))
    except EpochError as exc:
        return _fail(exc)
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    store = _make_store(args)
    now = _now(args) or datetime.now(timezone.utc)
    if args.starts_at is not None:
        starts_at = _parse_time(args.starts_at)
    else:
        starts_at = now + timedelta(seconds=args.starts_in)
    try:
        epoch = store.schedule_epoch(
            admin=args.admin,
            members=_split(args.members),
            starts_at=starts_at,
            duration=timedelta(seconds=args.duration),
            coordinator=args.coordinator,
            value=Decimal(args.value),
            now=now,
        )
    except EpochError as exc:
        return _fail(exc)
    print(f"Scheduled epoch for {epoch.admin}: starts {epoch.starts_at.isoformat()}, "
          f"rate {epoch.reward_rate_per_unit} per unit")
    return 0


def cmd_update_members(args: argparse.Namespace) -> int:
    store = _make_store(args)
    try:
        store.update_members(args.admin, args.caller, _split(args.members), now=_now(args))
    except EpochError as exc:
        return _fail(exc)
    print(f"Updated members of {args.admin}'s epoch")
    return 0


def cmd_make_commitment(args: argparse.Namespace) -> int:
    """Build an opening and its commitment locally. Nothing is submitted.

    The commitment is the SHA-256 form only the opening verifier checks;
    circuit-backed verifiers need the prover's own commitment.
    """
    if args.verifier != "opening":
        print(
            f"Failed: make-commitment only serves --verifier opening; "
            f"use the circuit's prover for --verifier {args.verifier}",
            file=sys.stderr,
        )
        return 1
    resolver = PolicyResolver.from_config_dir(args.config)
    try:
        opening = AllocationOpening.create(
            [int(a) for a in _split(args.allocations)],
            salt=int(args.salt) if args.salt is not None else None,
            slots=resolver.allocation_slots(),
        )
    except ValueError as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1
    commitment = commit_opening(opening, resolver.snark_scalar_field())
    document = {"commitment": str(commitment), "opening": opening.to_dict()}
    if args.out is not None:
        args.out.write_text(json.dumps(document, indent=2), encoding="utf-8")
        print(f"Wrote opening to {args.out}")
    print(json.dumps({"commitment": str(commitment)}))
    return 0


def cmd_commit(args: argparse.Namespace) -> int:
    store = _make_store(args)
    try:
        store.update_commitment(args.admin, args.caller, int(args.commitment), now=_now(args))
    except EpochError as exc:
        return _fail(exc)
    print(f"Commitment recorded for {args.caller}")
    return 0


def cmd_admit_proof(args: argparse.Namespace) -> int:
    store = _make_store(args)
    if args.opening is not None:
        document = _read_json(args.opening)
        proof: Any = AllocationOpening.from_dict(document["opening"])
        try:
            epoch = store.get_epoch(args.admin)
        except EpochError as exc:
            return _fail(exc)
        idx = epoch.member_index(args.member)
        public_inputs = build_public_inputs(
            commit_opening(
                proof, PolicyResolver.from_config_dir(args.config).snark_scalar_field(),
            ),
            idx if idx is not None else -1,
            epoch.member_count,
        )
    elif args.proof is not None and args.public is not None:
        proof = Groth16Proof.from_snarkjs(_read_json(args.proof))
        public_inputs = [int(x) for x in _read_json(args.public)]
    else:
        print("Failed: need --opening, or --proof with --public", file=sys.stderr)
        return 1
    try:
        store.admit_proof(
            args.admin, args.caller, args.member, proof, public_inputs, now=_now(args),
        )
    except EpochError as exc:
        return _fail(exc)
    print(f"Proof admitted for {args.member}")
    return 0


def cmd_reveal(args: argparse.Namespace) -> int:
    store = _make_store(args)
    try:
        store.submit_revealed_allocations(
            args.admin, args.caller, [int(v) for v in _split(args.values)], now=_now(args),
        )
    except EpochError as exc:
        return _fail(exc)
    print(f"Epoch of {args.admin} finalized")
    return 0


def cmd_collect(args: argparse.Namespace) -> int:
    store = _make_store(args)
    try:
        payout = store.collect_reward(args.admin, args.caller, now=_now(args))
    except EpochError as exc:
        return _fail(exc)
    print(f"Paid {payout} to {args.caller}")
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run policy invariant checks."""
    tools_dir = ROOT / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import check
    return check(args.config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="epochshare",
        description="epochshare — private reward splitting CLI",
    )
    parser.add_argument(
        "--config", type=Path, default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data", type=Path, default=DEFAULT_DATA,
        help="Path to data directory (default: data/)",
    )
    parser.add_argument(
        "--verifier", choices=["opening", "snarkjs", "contract"], default="opening",
        help="Proof verifier backend (default: opening)",
    )
    parser.add_argument(
        "--rail", choices=["memory", "web3"], default="memory",
        help="Payout rail (default: memory)",
    )
    parser.add_argument("--now", help="Override the current time (ISO 8601)")
    sub = parser.add_subparsers(dest="command")

    p_status = sub.add_parser("status", help="Show epochs or one epoch's state")
    p_status.add_argument("--admin", help="Admin whose epoch to show")

    p_sched = sub.add_parser("schedule", help="Schedule a new epoch")
    p_sched.add_argument("--admin", required=True)
    p_sched.add_argument("--members", required=True, help="Comma-separated member IDs")
    start = p_sched.add_mutually_exclusive_group(required=True)
    start.add_argument("--starts-at", help="Start time (ISO 8601)")
    start.add_argument("--starts-in", type=int, help="Seconds from now until start")
    p_sched.add_argument("--duration", type=int, required=True, help="Seconds")
    p_sched.add_argument("--coordinator", required=True)
    p_sched.add_argument("--value", required=True, help="Escrowed value (Decimal)")

    p_mem = sub.add_parser("update-members", help="Replace members before start")
    p_mem.add_argument("--admin", required=True)
    p_mem.add_argument("--caller", required=True)
    p_mem.add_argument("--members", required=True, help="Comma-separated member IDs")

    p_make = sub.add_parser(
        "make-commitment",
        help="Build an allocation commitment (opening verifier only)",
    )
    p_make.add_argument("--allocations", required=True, help="Comma-separated basis points")
    p_make.add_argument("--salt", help="Salt (random if omitted)")
    p_make.add_argument("--out", type=Path, help="Write opening JSON here")

    p_commit = sub.add_parser("commit", help="Submit a commitment")
    p_commit.add_argument("--admin", required=True)
    p_commit.add_argument("--caller", required=True)
    p_commit.add_argument("--commitment", required=True)

    p_proof = sub.add_parser("admit-proof", help="Admit a proof for a member")
    p_proof.add_argument("--admin", required=True)
    p_proof.add_argument("--caller", required=True)
    p_proof.add_argument("--member", required=True)
    p_proof.add_argument("--opening", type=Path, help="Opening JSON (opening verifier)")
    p_proof.add_argument("--proof", type=Path, help="snarkjs proof.json")
    p_proof.add_argument("--public", type=Path, help="snarkjs public.json")

    p_reveal = sub.add_parser("reveal", help="Submit revealed allocations")
    p_reveal.add_argument("--admin", required=True)
    p_reveal.add_argument("--caller", required=True)
    p_reveal.add_argument("--values", required=True, help="Comma-separated units")

    p_collect = sub.add_parser("collect", help="Collect a member's reward")
    p_collect.add_argument("--admin", required=True)
    p_collect.add_argument("--caller", required=True)

    sub.add_parser("check-invariants", help="Run policy invariant checks")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "schedule": cmd_schedule,
        "update-members": cmd_update_members,
        "make-commitment": cmd_make_commitment,
        "commit": cmd_commit,
        "admit-proof": cmd_admit_proof,
        "reveal": cmd_reveal,
        "collect": cmd_collect,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
