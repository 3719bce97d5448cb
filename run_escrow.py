#!/usr/bin/env python3
"""
EscrowFlow runner: a one-shot command line over the escrow engine, plus
``serve`` to expose the same engine over HTTP.

State (escrow records, audit trail, reference-ledger balances and the
manual slot counter) lives in the configured SQLite database, so each
invocation picks up where the previous one left off.

Usage:
    python run_escrow.py mint alice USD 1000
    python run_escrow.py --caller alice init 1 --beneficiary bob \\
                         --arbiter carol --asset USD --amount 100 --deadline 50
    python run_escrow.py --caller alice fund alice 1
    python run_escrow.py --caller bob dispute alice 1 "goods not delivered"
    python run_escrow.py --caller carol resolve alice 1 depositor
    python run_escrow.py advance-slot 60
    python run_escrow.py --caller anyone auto-release alice 1
    python run_escrow.py serve --port 8080

Exit codes: 0 success, 1 rejected operation or bad input, 2 fatal inconsistency.

Environment variables (alternative to flags):
    ESCROWFLOW_CALLER, ESCROWFLOW_DB_PATH, plus everything load_config reads
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from typing import Any, Optional

from escrowflow_core.api import APIServer
from escrowflow_core.clock import StoreBackedClock, SystemSlotClock
from escrowflow_core.config import DEFAULT_AUTHORITY_SEED, EscrowFlowConfig, load_config
from escrowflow_core.engine import EscrowEngine
from escrowflow_core.errors import EscrowError, FatalInconsistencyError
from escrowflow_core.ledger import InMemoryLedger, TransferError
from escrowflow_core.logging_config import setup_logging
from escrowflow_core.storage import EscrowStore

logger = logging.getLogger("escrowflow")

EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_FATAL = 2


# ===================================================================
#  Runtime wiring
# ===================================================================

class EscrowService:
    """Store, reference ledger, clock and engine opened from one config."""

    def __init__(self, cfg: EscrowFlowConfig):
        self.cfg = cfg
        if cfg.engine.authority_seed == DEFAULT_AUTHORITY_SEED:
            logger.warning(
                "Vault authorities derive from the public development seed; "
                "set [engine] authority_seed or ESCROWFLOW_AUTHORITY_SEED before holding real funds"
            )
        self.store = EscrowStore(cfg.storage.path)
        self.ledger = InMemoryLedger()
        self.ledger.restore(self.store.load_ledger_state())
        logger.debug(f"Restored {len(self.ledger.accounts)} ledger accounts from {cfg.storage.path}")
        if cfg.clock.mode == "system":
            self.clock: Any = SystemSlotClock(cfg.clock.slot_ms, cfg.clock.genesis)
        else:
            self.clock = StoreBackedClock(self.store)
        self.engine = EscrowEngine(
            self.ledger,
            self.store,
            self.clock,
            cfg.engine.authority_seed,
            check_invariants=cfg.engine.check_invariants,
            reload_ledger=True,
        )

    def mint(self, owner: str, asset: str, amount: int) -> dict:
        with self.store.transaction():
            self.ledger.restore(self.store.load_ledger_state())
            account = self.ledger.mint(owner, asset, amount)
            self.store.save_ledger_state(self.ledger.snapshot())
        return {"account": account, "balance": self.ledger.balance_of(account)}

    def balance(self, owner: str, asset: str) -> dict:
        self.ledger.restore(self.store.load_ledger_state())
        account = self.ledger.token_account(owner, asset)
        return {"account": account, "balance": self.ledger.balance_of(account)}

    def close(self) -> None:
        self.store.close()


# ===================================================================
#  Commands
# ===================================================================

def _emit(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _escrow_out(service: EscrowService, record) -> dict:
    return {"escrow": record.to_dict(), "vault_balance": service.engine.vault_balance(record)}


class _UsageError(Exception):
    pass


def _require_caller(args) -> str:
    if not args.caller:
        raise _UsageError("this command needs --caller (or ESCROWFLOW_CALLER)")
    return args.caller


def run_command(service: EscrowService, args) -> Any:
    engine = service.engine
    cmd = args.command

    if cmd == "mint":
        return service.mint(args.owner, args.asset, args.amount)

    if cmd == "balance":
        return service.balance(args.owner, args.asset)

    if cmd == "init":
        record = engine.initialize(
            _require_caller(args), args.escrow_id, args.beneficiary, args.arbiter,
            args.asset, args.amount, args.deadline,
        )
        return _escrow_out(service, record)

    if cmd in ("fund", "release", "cancel", "auto-release"):
        handler = {
            "fund": engine.fund,
            "release": engine.release,
            "cancel": engine.cancel,
            "auto-release": engine.auto_release,
        }[cmd]
        record = handler(_require_caller(args), args.depositor, args.escrow_id)
        return _escrow_out(service, record)

    if cmd == "dispute":
        record = engine.raise_dispute(
            _require_caller(args), args.depositor, args.escrow_id, args.reason,
        )
        return _escrow_out(service, record)

    if cmd == "resolve":
        record = engine.resolve_dispute(
            _require_caller(args), args.depositor, args.escrow_id,
            args.outcome == "beneficiary",
        )
        return _escrow_out(service, record)

    if cmd == "show":
        return _escrow_out(service, engine.get_escrow(args.depositor, args.escrow_id))

    if cmd == "list":
        records = engine.list_escrows(depositor=args.depositor, status=args.status)
        return {"escrows": [r.to_dict() for r in records], "count": len(records)}

    if cmd == "history":
        return {"history": [e.to_dict() for e in engine.history(args.depositor, args.escrow_id)]}

    if cmd == "status":
        return engine.summary()

    if cmd == "advance-slot":
        if not isinstance(service.clock, StoreBackedClock):
            raise _UsageError("advance-slot needs clock.mode = 'manual'")
        return {"slot": service.clock.advance(args.slots)}

    raise _UsageError(f"unknown command {cmd!r}")


async def serve(service: EscrowService, host: str, port: int) -> None:
    api = APIServer(service.engine, host=host, port=port, api_config=service.cfg.api)
    await api.start()
    logger.info("Serving until interrupted")
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await api.stop()


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: Optional[list[str]] = None):
    p = argparse.ArgumentParser(description="EscrowFlow escrow engine")
    p.add_argument("--config", default=None, help="Path to escrowflow.toml config file")
    p.add_argument("--db", default=None, help="SQLite database path (overrides config)")
    p.add_argument("--caller", default=os.environ.get("ESCROWFLOW_CALLER", ""),
                   help="Identity performing the operation")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    sub = p.add_subparsers(dest="command", required=True)

    def escrow_ref(sp):
        sp.add_argument("depositor")
        sp.add_argument("escrow_id", type=int)

    sp = sub.add_parser("mint", help="Credit test funds to an account")
    sp.add_argument("owner")
    sp.add_argument("asset")
    sp.add_argument("amount", type=int)

    sp = sub.add_parser("balance", help="Show an account balance")
    sp.add_argument("owner")
    sp.add_argument("asset")

    sp = sub.add_parser("init", help="Create an escrow; --caller becomes the depositor")
    sp.add_argument("escrow_id", type=int)
    sp.add_argument("--beneficiary", required=True)
    sp.add_argument("--arbiter", required=True)
    sp.add_argument("--asset", required=True)
    sp.add_argument("--amount", type=int, required=True)
    sp.add_argument("--deadline", type=int, default=None,
                    help="Auto-release slot (omit or 0 to disable)")

    for name, text in [
        ("fund", "Move the escrowed amount into the vault"),
        ("release", "Pay the vault out to the beneficiary"),
        ("cancel", "Cancel and refund the depositor"),
        ("auto-release", "Release once the deadline slot is reached"),
        ("show", "Show an escrow and its vault balance"),
        ("history", "Show an escrow's audit trail"),
    ]:
        escrow_ref(sub.add_parser(name, help=text))

    sp = sub.add_parser("dispute", help="Raise a dispute on a funded escrow")
    escrow_ref(sp)
    sp.add_argument("reason")

    sp = sub.add_parser("resolve", help="Arbiter decides a disputed escrow")
    escrow_ref(sp)
    sp.add_argument("outcome", choices=["beneficiary", "depositor"])

    sp = sub.add_parser("list", help="List escrows")
    sp.add_argument("--depositor", default=None)
    sp.add_argument("--status", default=None)

    sub.add_parser("status", help="Engine summary")

    sp = sub.add_parser("advance-slot", help="Move the manual clock forward")
    sp.add_argument("slots", type=int, nargs="?", default=1)

    sp = sub.add_parser("serve", help="Run the HTTP API")
    sp.add_argument("--host", default=None)
    sp.add_argument("--port", type=int, default=None)

    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    cfg = load_config(args.config)
    if args.db:
        cfg.storage.path = args.db
    if args.log_level:
        cfg.logging.level = args.log_level
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    service = EscrowService(cfg)
    try:
        if args.command == "serve":
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(serve(
                    service, args.host or cfg.api.host, args.port or cfg.api.port,
                ))
            return EXIT_OK

        try:
            result = run_command(service, args)
        except FatalInconsistencyError as exc:
            print(json.dumps(exc.to_dict()), file=sys.stderr)
            return EXIT_FATAL
        except EscrowError as exc:
            print(json.dumps(exc.to_dict()), file=sys.stderr)
            return EXIT_REJECTED
        except (TransferError, _UsageError, ValueError) as exc:
            print(json.dumps({"error": type(exc).__name__, "message": str(exc)}), file=sys.stderr)
            return EXIT_REJECTED

        _emit(result)
        return EXIT_OK
    finally:
        service.close()


def main_sync():
    """Synchronous entry point for console_scripts."""
    sys.exit(main())


if __name__ == "__main__":
    main_sync()
