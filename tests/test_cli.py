"""Tests for epochshare CLI — proves CLI dispatches correctly and persists between runs."""

import json
import pytest
from pathlib import Path

from epochshare.cli import build_parser, main


BEFORE = "2026-03-01T11:55:00Z"
START = "2026-03-01T12:00:00Z"
DURING = "2026-03-01T12:00:05Z"
AFTER = "2026-03-01T12:00:11Z"

SPLITS = {
    "alice": "0,5000,5000",
    "bob": "4000,0,6000",
    "carol": "0,10000,0",
}


def _run(data: Path, now: str, *argv: str) -> int:
    return main(["--data", str(data), "--now", now, *argv])


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"
        assert args.admin is None

    def test_schedule_command(self) -> None:
        args = build_parser().parse_args([
            "schedule", "--admin", "alice", "--members", "alice,bob",
            "--starts-in", "60", "--duration", "3600",
            "--coordinator", "coord", "--value", "10",
        ])
        assert args.command == "schedule"
        assert args.starts_in == 60
        assert args.value == "10"

    def test_schedule_needs_one_start(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([
                "schedule", "--admin", "alice", "--members", "alice,bob",
                "--duration", "10", "--coordinator", "coord", "--value", "1",
            ])

    def test_backend_choices(self) -> None:
        args = build_parser().parse_args(["--verifier", "snarkjs", "--rail", "web3", "status"])
        assert args.verifier == "snarkjs"
        assert args.rail == "web3"


class TestCLIExecution:
    def test_no_command_shows_help(self) -> None:
        assert main([]) == 0

    def test_check_invariants_runs(self, capsys) -> None:
        assert main(["check-invariants"]) == 0
        assert "Invariant check passed." in capsys.readouterr().out

    def test_status_lists_nothing(self, tmp_path: Path, capsys) -> None:
        assert main(["--data", str(tmp_path / "data"), "status"]) == 0
        assert json.loads(capsys.readouterr().out) == {"epochs": []}

    def test_make_commitment(self, tmp_path: Path, capsys) -> None:
        out = tmp_path / "opening.json"
        assert main([
            "make-commitment", "--allocations", "0,2000,8000", "--salt", "9",
            "--out", str(out),
        ]) == 0
        document = json.loads(out.read_text(encoding="utf-8"))
        assert document["opening"]["salt"] is not None
        assert document["commitment"] in capsys.readouterr().out

    def test_make_commitment_too_wide(self, capsys) -> None:
        assert main(["make-commitment", "--allocations", ",".join(["0"] * 16)]) == 1
        assert "at most 15" in capsys.readouterr().err

    @pytest.mark.parametrize("backend", ["snarkjs", "contract"])
    def test_make_commitment_needs_opening_backend(
        self, tmp_path: Path, capsys, backend: str,
    ) -> None:
        out = tmp_path / "opening.json"
        assert main([
            "--verifier", backend,
            "make-commitment", "--allocations", "0,10000", "--out", str(out),
        ]) == 1
        assert "--verifier opening" in capsys.readouterr().err
        assert not out.exists()

    def test_failure_reports_code(self, tmp_path: Path, capsys) -> None:
        data = tmp_path / "data"
        assert _run(data, BEFORE, "collect", "--admin", "nobody", "--caller", "x") == 1
        assert "unknown_epoch" in capsys.readouterr().err

    def test_full_round_e2e(self, tmp_path: Path, capsys) -> None:
        data = tmp_path / "data"
        assert _run(
            data, BEFORE, "schedule", "--admin", "alice",
            "--members", "alice,bob,carol", "--starts-at", START,
            "--duration", "10", "--coordinator", "coord", "--value", "10",
        ) == 0

        assert _run(
            data, BEFORE, "update-members", "--admin", "alice", "--caller", "alice",
            "--members", "alice,bob,carol",
        ) == 0

        for member, split in SPLITS.items():
            opening = tmp_path / f"{member}.json"
            assert main([
                "make-commitment", "--allocations", split, "--out", str(opening),
            ]) == 0
            commitment = json.loads(opening.read_text(encoding="utf-8"))["commitment"]
            assert _run(
                data, DURING, "commit", "--admin", "alice", "--caller", member,
                "--commitment", commitment,
            ) == 0
            assert _run(
                data, DURING, "admit-proof", "--admin", "alice", "--caller", "coord",
                "--member", member, "--opening", str(opening),
            ) == 0

        assert _run(
            data, AFTER, "reveal", "--admin", "alice", "--caller", "coord",
            "--values", "4000,9000,17000",
        ) == 0
        capsys.readouterr()

        assert _run(data, AFTER, "collect", "--admin", "alice", "--caller", "alice") == 0
        assert "Paid 4" in capsys.readouterr().out
        assert _run(data, AFTER, "collect", "--admin", "alice", "--caller", "alice") == 1
        assert "already_withdrawn" in capsys.readouterr().err

        assert _run(data, AFTER, "status", "--admin", "alice") == 0
        status = json.loads(capsys.readouterr().out)
        assert status["phase"] == "finalized"
        assert status["withdrawn"] == [True, False, False]
        assert (data / "events.jsonl").exists()

    def test_late_member_update_fails(self, tmp_path: Path, capsys) -> None:
        data = tmp_path / "data"
        _run(
            data, BEFORE, "schedule", "--admin", "alice", "--members", "alice,bob",
            "--starts-at", START, "--duration", "10", "--coordinator", "coord",
            "--value", "10",
        )
        assert _run(
            data, DURING, "update-members", "--admin", "alice", "--caller", "alice",
            "--members", "alice,carol",
        ) == 1
        assert "wrong_state" in capsys.readouterr().err
