"""
Ledger client interface and an in-memory reference ledger.

The escrow engine never settles value itself.  It calls a ``LedgerClient``
that performs atomic, all-or-nothing balance moves between accounts and
reports balances.  ``InMemoryLedger`` is the reference implementation used
by the tests and the command-line runner:

  - token accounts are keyed by (owner, asset) and created on first use;
  - custody accounts are owned by a vault authority's public key, and every
    outbound transfer must carry a valid signature from that authority over
    the account's current nonce;
  - balances are integers in the asset's smallest unit, bounded to u64.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Protocol, Union, runtime_checkable

from escrowflow_core.vault import verify_transfer_signature

logger = logging.getLogger("escrowflow_ledger")

U64_MAX = (1 << 64) - 1

AccountId = str


class TransferFailure(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN_ACCOUNT = "unknown_account"
    ASSET_MISMATCH = "asset_mismatch"
    INVALID_AMOUNT = "invalid_amount"
    OVERFLOW = "overflow"


class TransferError(Exception):
    """Raised by a ledger client when a transfer is rejected as a whole."""

    def __init__(self, reason: TransferFailure, message: str = ""):
        self.reason = reason
        super().__init__(message or reason.value)


@runtime_checkable
class CustodySigner(Protocol):
    address: str
    public_key: bytes

    def sign_transfer(self, source: str, destination: str, amount: int, nonce: int) -> bytes: ...


Principal = Union[str, CustodySigner]


@runtime_checkable
class LedgerClient(Protocol):
    def create_custody_account(self, owner_authority: CustodySigner, asset: str) -> AccountId: ...

    def token_account(self, owner: str, asset: str) -> AccountId: ...

    def transfer(
        self, source: AccountId, destination: AccountId,
        authorizing_principal: Principal, amount: int,
    ) -> None: ...

    def balance_of(self, account: AccountId) -> int: ...


@dataclass
class LedgerAccount:
    account_id: str
    owner: str
    asset: str
    balance: int = 0
    custody: bool = False
    public_key: str = ""    # hex, custody accounts only
    nonce: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def custody_account_id(authority_address: str) -> AccountId:
    return "vault:" + hashlib.sha256(b"vault" + authority_address.encode()).hexdigest()[:40]


class InMemoryLedger:
    """Dict-backed ledger with signature-checked custody accounts."""

    def __init__(self):
        self.accounts: dict[str, LedgerAccount] = {}

    # ── accounts ─────────────────────────────────────────────────

    def token_account(self, owner: str, asset: str) -> AccountId:
        account_id = f"{owner}:{asset}"
        if account_id not in self.accounts:
            self.accounts[account_id] = LedgerAccount(account_id, owner, asset)
        return account_id

    def create_custody_account(self, owner_authority: CustodySigner, asset: str) -> AccountId:
        account_id = custody_account_id(owner_authority.address)
        pub_hex = owner_authority.public_key.hex()
        existing = self.accounts.get(account_id)
        if existing is not None:
            if existing.public_key != pub_hex or existing.asset != asset:
                raise TransferError(
                    TransferFailure.UNAUTHORIZED,
                    f"custody account {account_id} belongs to another authority",
                )
            return account_id
        self.accounts[account_id] = LedgerAccount(
            account_id, owner_authority.address, asset, custody=True, public_key=pub_hex,
        )
        logger.debug(f"Custody account {account_id} opened for {owner_authority.address}")
        return account_id

    def _get(self, account_id: AccountId) -> LedgerAccount:
        acc = self.accounts.get(account_id)
        if acc is None:
            raise TransferError(TransferFailure.UNKNOWN_ACCOUNT, f"unknown account {account_id}")
        return acc

    def balance_of(self, account: AccountId) -> int:
        acc = self.accounts.get(account)
        if acc is None:
            raise KeyError(f"Account {account} not found")
        return acc.balance

    def mint(self, owner: str, asset: str, amount: int) -> AccountId:
        """Credit *amount* out of thin air; test and bootstrap use only."""
        if amount <= 0:
            raise TransferError(TransferFailure.INVALID_AMOUNT, "mint amount must be > 0")
        account_id = self.token_account(owner, asset)
        acc = self.accounts[account_id]
        if acc.balance + amount > U64_MAX:
            raise TransferError(TransferFailure.OVERFLOW, "balance overflow")
        acc.balance += amount
        return account_id

    def total_supply(self, asset: str) -> int:
        return sum(a.balance for a in self.accounts.values() if a.asset == asset)

    # ── transfers ────────────────────────────────────────────────

    def _authorize(
        self, src: LedgerAccount, destination: str, principal: Principal, amount: int,
    ) -> None:
        if not src.custody:
            if not isinstance(principal, str) or principal != src.owner:
                raise TransferError(
                    TransferFailure.UNAUTHORIZED,
                    f"{principal!r} may not debit {src.account_id}",
                )
            return
        if isinstance(principal, str) or not isinstance(principal, CustodySigner):
            raise TransferError(
                TransferFailure.UNAUTHORIZED,
                f"custody account {src.account_id} needs its vault authority",
            )
        if principal.public_key.hex() != src.public_key:
            raise TransferError(
                TransferFailure.UNAUTHORIZED,
                f"{principal.address} does not own {src.account_id}",
            )
        try:
            signature = principal.sign_transfer(src.account_id, destination, amount, src.nonce)
        except PermissionError as exc:
            raise TransferError(TransferFailure.UNAUTHORIZED, str(exc)) from exc
        if not verify_transfer_signature(
            bytes.fromhex(src.public_key), src.account_id, destination, amount, src.nonce, signature,
        ):
            raise TransferError(TransferFailure.UNAUTHORIZED, "bad vault authority signature")

    def transfer(
        self,
        source: AccountId,
        destination: AccountId,
        authorizing_principal: Principal,
        amount: int,
    ) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise TransferError(TransferFailure.INVALID_AMOUNT, f"invalid amount {amount!r}")
        src = self._get(source)
        dst = self._get(destination)
        if src.asset != dst.asset:
            raise TransferError(
                TransferFailure.ASSET_MISMATCH, f"{src.asset} cannot move into {dst.asset} account",
            )
        self._authorize(src, destination, authorizing_principal, amount)
        if src.balance < amount:
            raise TransferError(
                TransferFailure.INSUFFICIENT_FUNDS,
                f"{source} holds {src.balance}, needs {amount}",
            )
        if dst.balance + amount > U64_MAX:
            raise TransferError(TransferFailure.OVERFLOW, "receiver balance overflow")

        src.balance -= amount
        dst.balance += amount
        if src.custody:
            src.nonce += 1
        logger.debug(f"Transfer {amount} {src.asset}: {source} -> {destination}")

    # ── persistence helpers ──────────────────────────────────────

    def snapshot(self) -> list[dict[str, Any]]:
        return [acc.to_dict() for acc in self.accounts.values()]

    def restore(self, rows: list[dict[str, Any]]) -> None:
        self.accounts.clear()
        for row in rows:
            acc = LedgerAccount(
                account_id=row["account_id"],
                owner=row["owner"],
                asset=row["asset"],
                balance=int(row["balance"]),
                custody=bool(row["custody"]),
                public_key=row.get("public_key") or "",
                nonce=int(row.get("nonce", 0)),
            )
            self.accounts[acc.account_id] = acc
