"""
EscrowFlow - a custodial escrow engine.

Key features:
- Lifecycle state machine: initialize, fund, release, dispute, resolve,
  cancel and a permissionless auto-release crank
- Per-escrow vault authorities derived from a seed (secp256k1)
- Atomic transitions over a pluggable ledger client, persisted in SQLite
- Audit trail of every committed transition
- HTTP API (aiohttp) and command-line runner
"""

__version__ = "0.1.0"
__all__ = [
    "errors",
    "escrow",
    "guard",
    "vault",
    "ledger",
    "clock",
    "invariants",
    "engine",
    "storage",
    "config",
    "logging_config",
    "api",
]
