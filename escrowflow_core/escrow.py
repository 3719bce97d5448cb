"""
Escrow records and the lifecycle transition table for EscrowFlow.

An escrow moves through five phases:

    Created ──fund──▶ Funded ──release / auto_release──▶ Released
       │                │  └──raise_dispute──▶ Disputed ──resolve──▶ Released
       │                │                                    └──────▶ Cancelled
       └───cancel───────┴──cancel──▶ Cancelled

The table lives in ``TRANSITIONS`` as plain data.  ``plan_transition`` is a
pure function that turns (record, operation, vault balance, outcome) into
the target status plus at most one fund movement; the engine executes the
plan against the ledger and the store.
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from escrowflow_core.errors import ErrorCode, EscrowError

MAX_DISPUTE_REASON_LEN = 128
U64_MAX = (1 << 64) - 1


class EscrowStatus(str, Enum):
    CREATED = "Created"
    FUNDED = "Funded"
    DISPUTED = "Disputed"
    RELEASED = "Released"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EscrowStatus.RELEASED, EscrowStatus.CANCELLED)


class Operation(str, Enum):
    INITIALIZE = "initialize"
    FUND = "fund"
    RELEASE = "release"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    CANCEL = "cancel"
    AUTO_RELEASE = "auto_release"


class Party(str, Enum):
    """Who a fund movement touches, resolved to accounts by the engine."""
    DEPOSITOR = "depositor"
    BENEFICIARY = "beneficiary"
    VAULT = "vault"


@dataclass(frozen=True)
class Transition:
    sources: frozenset[EscrowStatus]
    targets: frozenset[EscrowStatus]


_S = EscrowStatus

TRANSITIONS: dict[Operation, Transition] = {
    Operation.FUND: Transition(frozenset({_S.CREATED}), frozenset({_S.FUNDED})),
    Operation.RELEASE: Transition(frozenset({_S.FUNDED}), frozenset({_S.RELEASED})),
    Operation.RAISE_DISPUTE: Transition(frozenset({_S.FUNDED}), frozenset({_S.DISPUTED})),
    Operation.RESOLVE_DISPUTE: Transition(
        frozenset({_S.DISPUTED}), frozenset({_S.RELEASED, _S.CANCELLED}),
    ),
    Operation.CANCEL: Transition(
        frozenset({_S.CREATED, _S.FUNDED}), frozenset({_S.CANCELLED}),
    ),
    Operation.AUTO_RELEASE: Transition(frozenset({_S.FUNDED}), frozenset({_S.RELEASED})),
}

# Every edge of the lifecycle graph, used by the invariant checker.
ALLOWED_EDGES: frozenset[tuple[EscrowStatus, EscrowStatus]] = frozenset(
    (src, dst)
    for t in TRANSITIONS.values()
    for src in t.sources
    for dst in t.targets
)


def record_key(depositor: str, escrow_id: int) -> str:
    """Derive the record identity from the (depositor, escrow_id) pair."""
    if not isinstance(escrow_id, int) or isinstance(escrow_id, bool) \
            or escrow_id < 0 or escrow_id > U64_MAX:
        raise EscrowError(ErrorCode.INVALID_ESCROW_ID, f"escrow id out of range: {escrow_id!r}")
    buf = b"escrow" + depositor.encode("utf-8") + escrow_id.to_bytes(8, "little")
    return hashlib.sha256(buf).hexdigest()


@dataclass(frozen=True)
class EscrowRecord:
    """The persistent state of one escrow."""
    escrow_id: int
    depositor: str
    beneficiary: str
    arbiter: str
    asset: str
    vault: str
    amount: int
    status: EscrowStatus = EscrowStatus.CREATED
    auto_release_deadline: int = 0     # slot; 0 = auto-release disabled
    created_at: int = 0
    updated_at: int = 0
    dispute_reason: str = ""
    key: str = ""
    authority: str = ""                # vault authority address (audit only)

    @property
    def auto_release_enabled(self) -> bool:
        return self.auto_release_deadline > 0

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> EscrowRecord:
        return cls(
            escrow_id=int(d["escrow_id"]),
            depositor=d["depositor"],
            beneficiary=d["beneficiary"],
            arbiter=d["arbiter"],
            asset=d["asset"],
            vault=d["vault"],
            amount=int(d["amount"]),
            status=EscrowStatus(d["status"]),
            auto_release_deadline=int(d.get("auto_release_deadline") or 0),
            created_at=int(d.get("created_at", 0)),
            updated_at=int(d.get("updated_at", 0)),
            dispute_reason=d.get("dispute_reason") or "",
            key=d.get("key", ""),
            authority=d.get("authority", ""),
        )


@dataclass(frozen=True)
class FundMovement:
    source: Party
    destination: Party
    amount: int


@dataclass(frozen=True)
class TransitionPlan:
    operation: Operation
    source: EscrowStatus
    target: EscrowStatus
    transfer: Optional[FundMovement] = None
    dispute_reason: Optional[str] = None


def require_status(record: EscrowRecord, op: Operation) -> None:
    transition = TRANSITIONS[op]
    if record.status not in transition.sources:
        expected = "/".join(sorted(s.value for s in transition.sources))
        raise EscrowError(
            ErrorCode.INVALID_STATE,
            f"{op.value} requires {expected}, escrow is {record.status.value}",
        )


def _outbound(record: EscrowRecord, destination: Party, vault_balance: int) -> FundMovement:
    # A funded vault must still hold the full escrowed amount.
    if vault_balance < record.amount:
        raise EscrowError(
            ErrorCode.INSUFFICIENT_VAULT_BALANCE,
            f"vault holds {vault_balance}, escrow expects {record.amount}",
        )
    return FundMovement(Party.VAULT, destination, vault_balance)


def plan_transition(
    record: EscrowRecord,
    op: Operation,
    *,
    vault_balance: int,
    release_to_beneficiary: Optional[bool] = None,
    reason: Optional[str] = None,
) -> TransitionPlan:
    """Compute the effect of *op* on *record* without touching anything.

    Raises ``EscrowError`` when the source status or an extra precondition
    does not hold.  Authorization is the guard's job and is not repeated here.
    """
    if op == Operation.INITIALIZE:
        raise EscrowError(ErrorCode.INVALID_STATE, "escrow already initialized")

    require_status(record, op)

    if op == Operation.FUND:
        if vault_balance != 0:
            raise EscrowError(
                ErrorCode.INVALID_STATE,
                f"vault must be empty before funding, holds {vault_balance}",
            )
        return TransitionPlan(
            op, record.status, EscrowStatus.FUNDED,
            FundMovement(Party.DEPOSITOR, Party.VAULT, record.amount),
        )

    if op in (Operation.RELEASE, Operation.AUTO_RELEASE):
        return TransitionPlan(
            op, record.status, EscrowStatus.RELEASED,
            _outbound(record, Party.BENEFICIARY, vault_balance),
        )

    if op == Operation.RAISE_DISPUTE:
        reason = reason or ""
        if len(reason) > MAX_DISPUTE_REASON_LEN:
            raise EscrowError(
                ErrorCode.DISPUTE_REASON_TOO_LONG,
                f"reason is {len(reason)} characters, max {MAX_DISPUTE_REASON_LEN}",
            )
        return TransitionPlan(op, record.status, EscrowStatus.DISPUTED, dispute_reason=reason)

    if op == Operation.RESOLVE_DISPUTE:
        if release_to_beneficiary is None:
            raise ValueError("resolve_dispute needs a release_to_beneficiary outcome")
        if release_to_beneficiary:
            return TransitionPlan(
                op, record.status, EscrowStatus.RELEASED,
                _outbound(record, Party.BENEFICIARY, vault_balance),
            )
        return TransitionPlan(
            op, record.status, EscrowStatus.CANCELLED,
            _outbound(record, Party.DEPOSITOR, vault_balance),
        )

    if op == Operation.CANCEL:
        # Refund whatever the vault actually holds; an unfunded escrow moves nothing.
        transfer = None
        if vault_balance > 0:
            transfer = FundMovement(Party.VAULT, Party.DEPOSITOR, vault_balance)
        return TransitionPlan(op, record.status, EscrowStatus.CANCELLED, transfer)

    raise ValueError(f"unknown operation: {op}")
