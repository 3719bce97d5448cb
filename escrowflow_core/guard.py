"""
Authorization guard for EscrowFlow transitions.

Every check has the same shape, ``(caller, record, slot) -> (ok, code)``,
whether it authorizes by identity (depositor, party, arbiter) or by
condition (the auto-release deadline).  Checks are pure: they never read
the ledger, the store or the clock themselves.
"""

from __future__ import annotations

from typing import Callable, Optional

from escrowflow_core.errors import ErrorCode
from escrowflow_core.escrow import EscrowRecord, Operation

GuardResult = tuple[bool, ErrorCode]
Guard = Callable[[str, Optional[EscrowRecord], int], GuardResult]

_OK: GuardResult = (True, ErrorCode.SUCCESS)


def can_initialize(caller: str, record: Optional[EscrowRecord], slot: int) -> GuardResult:
    """No prior record may exist; the caller becomes the depositor."""
    if record is not None:
        return False, ErrorCode.ESCROW_EXISTS
    return _OK


def _depositor_only(caller: str, record: Optional[EscrowRecord], slot: int) -> GuardResult:
    if record is None or caller != record.depositor:
        return False, ErrorCode.UNAUTHORIZED_DEPOSITOR
    return _OK


can_fund = _depositor_only
can_release = _depositor_only
can_cancel = _depositor_only


def can_raise_dispute(caller: str, record: Optional[EscrowRecord], slot: int) -> GuardResult:
    if record is None or caller not in (record.depositor, record.beneficiary):
        return False, ErrorCode.UNAUTHORIZED_PARTY
    return _OK


def can_resolve_dispute(caller: str, record: Optional[EscrowRecord], slot: int) -> GuardResult:
    if record is None or caller != record.arbiter:
        return False, ErrorCode.UNAUTHORIZED_ARBITER
    return _OK


def can_auto_release(caller: str, record: Optional[EscrowRecord], slot: int) -> GuardResult:
    """Permissionless crank: any caller, gated on the deadline alone."""
    if record is None or not record.auto_release_enabled:
        return False, ErrorCode.AUTO_RELEASE_DISABLED
    if slot < record.auto_release_deadline:
        return False, ErrorCode.AUTO_RELEASE_NOT_READY
    return _OK


GUARDS: dict[Operation, Guard] = {
    Operation.INITIALIZE: can_initialize,
    Operation.FUND: can_fund,
    Operation.RELEASE: can_release,
    Operation.RAISE_DISPUTE: can_raise_dispute,
    Operation.RESOLVE_DISPUTE: can_resolve_dispute,
    Operation.CANCEL: can_cancel,
    Operation.AUTO_RELEASE: can_auto_release,
}


def authorize(op: Operation, caller: str, record: Optional[EscrowRecord], slot: int) -> GuardResult:
    return GUARDS[op](caller, record, slot)
