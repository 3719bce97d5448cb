"""
Tests for the run_escrow command line.

Covers:
  - Argument parsing and defaults
  - A full dispute lifecycle across separate invocations
  - Exit codes and JSON error output
  - Manual slot clock persistence and auto-release
  - Two services sharing one database see each other's ledger moves
  - Warning when vault authorities use the development seed
"""

from __future__ import annotations

import json
import logging

import pytest

import run_escrow
from escrowflow_core.config import DEFAULT_AUTHORITY_SEED, EscrowFlowConfig
from escrowflow_core.errors import ErrorCode, EscrowError
from run_escrow import EXIT_FATAL, EXIT_OK, EXIT_REJECTED, EscrowService, main, parse_args


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def cli(tmp_path, capsys):
    db = str(tmp_path / "cli.db")

    def run(*argv):
        code = main(["--db", db, *argv])
        out, err = capsys.readouterr()
        return code, (json.loads(out) if out.strip() else None), err

    return run


def _setup_funded(cli):
    cli("mint", "alice", "USD", "1000")
    cli("--caller", "alice", "init", "1", "--beneficiary", "bob", "--arbiter", "carol",
        "--asset", "USD", "--amount", "100", "--deadline", "5")
    return cli("--caller", "alice", "fund", "alice", "1")


# ═══════════════════════════════════════════════════════════════════
#  Parsing
# ═══════════════════════════════════════════════════════════════════

class TestParseArgs:
    def test_init(self):
        args = parse_args([
            "--caller", "alice", "init", "7", "--beneficiary", "bob",
            "--arbiter", "carol", "--asset", "USD", "--amount", "100",
        ])
        assert args.command == "init"
        assert args.escrow_id == 7
        assert args.amount == 100
        assert args.deadline is None

    def test_resolve_outcome_choices(self):
        assert parse_args(["resolve", "alice", "1", "depositor"]).outcome == "depositor"
        with pytest.raises(SystemExit):
            parse_args(["resolve", "alice", "1", "split"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])

    def test_caller_from_env(self, monkeypatch):
        monkeypatch.setenv("ESCROWFLOW_CALLER", "dave")
        assert parse_args(["status"]).caller == "dave"

    def test_advance_slot_default(self):
        assert parse_args(["advance-slot"]).slots == 1


# ═══════════════════════════════════════════════════════════════════
#  Lifecycle across invocations
# ═══════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_mint_and_balance_persist(self, cli):
        code, out, _ = cli("mint", "alice", "USD", "1000")
        assert code == EXIT_OK
        assert out == {"account": "alice:USD", "balance": 1000}
        _, out, _ = cli("balance", "alice", "USD")
        assert out["balance"] == 1000

    def test_fund_moves_balance(self, cli):
        code, out, _ = _setup_funded(cli)
        assert code == EXIT_OK
        assert out["escrow"]["status"] == "Funded"
        assert out["vault_balance"] == 100
        assert cli("balance", "alice", "USD")[1]["balance"] == 900

    def test_dispute_then_refund(self, cli):
        _setup_funded(cli)
        code, out, _ = cli("--caller", "bob", "dispute", "alice", "1", "not delivered")
        assert code == EXIT_OK
        assert out["escrow"]["dispute_reason"] == "not delivered"

        code, out, _ = cli("--caller", "carol", "resolve", "alice", "1", "depositor")
        assert code == EXIT_OK
        assert out["escrow"]["status"] == "Cancelled"
        assert cli("balance", "alice", "USD")[1]["balance"] == 1000

        _, out, _ = cli("history", "alice", "1")
        assert [e["operation"] for e in out["history"]] == [
            "initialize", "fund", "raise_dispute", "resolve_dispute",
        ]

    def test_auto_release_after_advancing(self, cli):
        _setup_funded(cli)
        code, _, err = cli("--caller", "keeper", "auto-release", "alice", "1")
        assert code == EXIT_REJECTED
        assert json.loads(err.strip().splitlines()[-1])["error"] == "AUTO_RELEASE_NOT_READY"

        _, out, _ = cli("advance-slot", "10")
        assert out["slot"] == 10
        code, out, _ = cli("--caller", "keeper", "auto-release", "alice", "1")
        assert code == EXIT_OK
        assert out["escrow"]["status"] == "Released"
        assert cli("balance", "bob", "USD")[1]["balance"] == 100

    def test_list_and_status(self, cli):
        _setup_funded(cli)
        _, out, _ = cli("list", "--status", "Funded")
        assert out["count"] == 1
        _, out, _ = cli("status")
        assert out["by_status"]["Funded"] == 1
        assert out["locked"] == 100


# ═══════════════════════════════════════════════════════════════════
#  Errors and exit codes
# ═══════════════════════════════════════════════════════════════════

class TestExitCodes:
    def test_rejected_operation(self, cli):
        _setup_funded(cli)
        code, out, err = cli("--caller", "bob", "release", "alice", "1")
        assert code == EXIT_REJECTED
        assert out is None
        assert json.loads(err.strip().splitlines()[-1])["error"] == "UNAUTHORIZED_DEPOSITOR"
        assert cli("show", "alice", "1")[1]["escrow"]["status"] == "Funded"

    def test_missing_caller(self, cli, monkeypatch):
        monkeypatch.delenv("ESCROWFLOW_CALLER", raising=False)
        code, _, err = cli("fund", "alice", "1")
        assert code == EXIT_REJECTED
        assert "--caller" in err

    def test_unfunded_depositor(self, cli):
        cli("--caller", "alice", "init", "1", "--beneficiary", "bob", "--arbiter", "carol",
            "--asset", "USD", "--amount", "100")
        code, _, err = cli("--caller", "alice", "fund", "alice", "1")
        assert code == EXIT_REJECTED
        assert json.loads(err.strip().splitlines()[-1])["error"] == "TRANSFER_FAILED"

    def test_show_missing(self, cli):
        code, _, err = cli("show", "alice", "404")
        assert code == EXIT_REJECTED
        assert "ESCROW_NOT_FOUND" in err

    def test_fatal_inconsistency(self, cli, monkeypatch):
        _setup_funded(cli)

        def broken_save(self, record):
            raise OSError("disk gone")

        monkeypatch.setattr(run_escrow.EscrowStore, "save_escrow", broken_save)
        code, _, err = cli("--caller", "alice", "release", "alice", "1")
        assert code == EXIT_FATAL
        assert json.loads(err.strip().splitlines()[-1])["error"] == "FATAL_INCONSISTENCY"


# ═══════════════════════════════════════════════════════════════════
#  Services sharing one database
# ═══════════════════════════════════════════════════════════════════

def _service(path, seed="shared-test-seed"):
    cfg = EscrowFlowConfig()
    cfg.storage.path = path
    cfg.engine.authority_seed = seed
    return EscrowService(cfg)


class TestSharedDatabase:
    def test_second_service_cannot_spend_moved_funds(self, tmp_path):
        path = str(tmp_path / "shared.db")
        boot = _service(path)
        boot.mint("alice", "USD", 100)
        boot.engine.initialize("alice", 1, "bob", "carol", "USD", 100)
        boot.engine.initialize("alice", 2, "bob", "carol", "USD", 100)
        boot.close()

        service_a, service_b = _service(path), _service(path)
        try:
            service_a.engine.fund("alice", "alice", 1)
            with pytest.raises(EscrowError) as exc_info:
                service_b.engine.fund("alice", "alice", 2)
            assert exc_info.value.code == ErrorCode.TRANSFER_FAILED
        finally:
            service_a.close()
            service_b.close()

        fresh = _service(path)
        try:
            first = fresh.engine.get_escrow("alice", 1)
            second = fresh.engine.get_escrow("alice", 2)
            assert first.status.value == "Funded"
            assert fresh.engine.vault_balance(first) == 100
            assert second.status.value == "Created"
            assert fresh.engine.vault_balance(second) == 0
            assert fresh.balance("alice", "USD")["balance"] == 0
        finally:
            fresh.close()

    def test_mint_adds_to_stored_balance(self, tmp_path):
        path = str(tmp_path / "mint.db")
        service_a, service_b = _service(path), _service(path)
        try:
            service_a.mint("alice", "USD", 40)
            assert service_b.mint("alice", "USD", 60)["balance"] == 100
            assert service_a.balance("alice", "USD")["balance"] == 100
        finally:
            service_a.close()
            service_b.close()


# ═══════════════════════════════════════════════════════════════════
#  Authority seed warning
# ═══════════════════════════════════════════════════════════════════

class TestAuthoritySeedWarning:
    def test_default_seed_warns(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="escrowflow"):
            service = _service(str(tmp_path / "dev.db"), seed=DEFAULT_AUTHORITY_SEED)
        service.close()
        assert any(
            r.levelno == logging.WARNING and "authority_seed" in r.getMessage()
            for r in caplog.records
        )

    def test_custom_seed_is_quiet(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="escrowflow"):
            service = _service(str(tmp_path / "quiet.db"))
        service.close()
        assert not any("authority_seed" in r.getMessage() for r in caplog.records)
