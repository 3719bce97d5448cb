"""
Escrow state machine handlers for EscrowFlow.

``EscrowEngine`` executes the seven lifecycle operations against three
collaborators: a ``LedgerClient`` that moves value, an ``EscrowStore``
that persists records and the audit trail, and a ``Clock`` that supplies
the current slot.

Every handler follows the same sequence inside one store transaction:

  1. load the record (``ESCROW_NOT_FOUND`` if absent)
  2. run the authorization guard
  3. check the source status, then any extra precondition
  4. perform at most one ledger transfer
  5. verify invariants, persist the new record, append an audit entry

A rejected transfer rolls the transaction back and surfaces as
``TRANSFER_FAILED`` (or ``INSUFFICIENT_VAULT_BALANCE``).  Once a transfer
has gone through, any failure to commit the matching status change is a
``FatalInconsistencyError``.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Optional, Union

from escrowflow_core.clock import Clock
from escrowflow_core.errors import ErrorCode, EscrowError, FatalInconsistencyError
from escrowflow_core.escrow import (
    U64_MAX,
    EscrowRecord,
    EscrowStatus,
    Operation,
    Party,
    TransitionPlan,
    plan_transition,
    record_key,
    require_status,
)
from escrowflow_core.guard import authorize
from escrowflow_core.invariants import InvariantChecker, check_record
from escrowflow_core.ledger import LedgerClient, TransferError, TransferFailure
from escrowflow_core.storage import AuditEntry, EscrowStore
from escrowflow_core.vault import VaultAuthority, derive_vault_authority

logger = logging.getLogger("escrowflow_engine")

_STATUS_BEFORE_GUARD = frozenset({Operation.AUTO_RELEASE, Operation.RAISE_DISPUTE})


class EscrowEngine:
    """Runs escrow transitions atomically against a ledger and a store."""

    def __init__(
        self,
        ledger: LedgerClient,
        store: EscrowStore,
        clock: Clock,
        authority_seed: Union[bytes, str],
        check_invariants: bool = True,
        reload_ledger: bool = False,
    ):
        if isinstance(authority_seed, str):
            authority_seed = authority_seed.encode("utf-8")
        if not authority_seed:
            raise ValueError("authority seed must not be empty")
        self.ledger = ledger
        self.store = store
        self.clock = clock
        self.check_invariants = check_invariants
        self.reload_ledger = reload_ledger
        self._seed = authority_seed
        self._authorities: dict[str, VaultAuthority] = {}

    # ── helpers ──────────────────────────────────────────────────

    def _authority_for(self, key: str) -> VaultAuthority:
        authority = self._authorities.get(key)
        if authority is None:
            authority = derive_vault_authority(self._seed, key)
            self._authorities[key] = authority
        return authority

    def _reject(self, op: Operation, caller: str, code: ErrorCode, detail: str = "") -> None:
        err = EscrowError(code, detail)
        logger.warning(f"{op.value} by {caller} rejected: {err}")
        raise err

    def _account(self, record: EscrowRecord, party: Party) -> str:
        if party == Party.VAULT:
            return record.vault
        owner = record.depositor if party == Party.DEPOSITOR else record.beneficiary
        return self.ledger.token_account(owner, record.asset)

    def _load_ledger(self) -> None:
        # The stored snapshot is authoritative when several processes share one database.
        restore = getattr(self.ledger, "restore", None)
        if self.reload_ledger and restore is not None:
            restore(self.store.load_ledger_state())

    def _persist_ledger(self) -> None:
        # Only the reference ledger lives in this process and needs saving.
        snapshot = getattr(self.ledger, "snapshot", None)
        if snapshot is not None:
            self.store.save_ledger_state(snapshot())

    def _execute(
        self, caller: str, record: EscrowRecord, plan: TransitionPlan,
    ) -> Optional[tuple[str, int]]:
        """Perform the plan's transfer, if any.  Returns (destination, amount)."""
        movement = plan.transfer
        if movement is None:
            return None
        source = self._account(record, movement.source)
        destination = self._account(record, movement.destination)
        if movement.source == Party.VAULT:
            authority = self._authority_for(record.key)
            authority.bind(record.vault)
            principal: Any = authority
        else:
            principal = record.depositor
        try:
            self.ledger.transfer(source, destination, principal, movement.amount)
        except TransferError as exc:
            code = ErrorCode.TRANSFER_FAILED
            if movement.source == Party.VAULT and exc.reason == TransferFailure.INSUFFICIENT_FUNDS:
                code = ErrorCode.INSUFFICIENT_VAULT_BALANCE
            self._reject(plan.operation, caller, code, f"{exc.reason.value}: {exc}")
        return destination, movement.amount

    # ── operations ───────────────────────────────────────────────

    def initialize(
        self,
        caller: str,
        escrow_id: int,
        beneficiary: str,
        arbiter: str,
        asset: str,
        amount: int,
        auto_release_deadline: Optional[int] = None,
    ) -> EscrowRecord:
        """Create a new escrow in ``Created`` with its own vault and authority."""
        op = Operation.INITIALIZE
        try:
            key = record_key(caller, escrow_id)
        except EscrowError as exc:
            self._reject(op, caller, exc.code, exc.message)
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            self._reject(op, caller, ErrorCode.INVALID_AMOUNT)
        if amount > U64_MAX:
            self._reject(op, caller, ErrorCode.INVALID_AMOUNT, f"amount {amount} exceeds u64")
        deadline = auto_release_deadline if auto_release_deadline and auto_release_deadline > 0 else 0

        slot = self.clock.current_slot()
        with self.store.transaction():
            self._load_ledger()
            existing = self.store.get_escrow(caller, escrow_id)
            ok, code = authorize(op, caller, existing, slot)
            if not ok:
                self._reject(op, caller, code, f"escrow {caller}/{escrow_id} already exists")

            authority = self._authority_for(key)
            try:
                vault = self.ledger.create_custody_account(authority, asset)
            except TransferError as exc:
                self._reject(op, caller, ErrorCode.TRANSFER_FAILED, str(exc))
            authority.bind(vault)

            record = EscrowRecord(
                escrow_id=escrow_id,
                depositor=caller,
                beneficiary=beneficiary,
                arbiter=arbiter,
                asset=asset,
                vault=vault,
                amount=amount,
                status=EscrowStatus.CREATED,
                auto_release_deadline=deadline,
                created_at=slot,
                updated_at=slot,
                key=key,
                authority=authority.address,
            )
            if self.check_invariants:
                ok, msg = check_record(record, self.ledger.balance_of(vault))
                if not ok:
                    self._reject(op, caller, ErrorCode.INVALID_STATE, msg)

            self.store.insert_escrow(record)
            self.store.record_transition(AuditEntry(
                key=key, operation=op.value, from_status="",
                to_status=record.status.value, caller=caller, slot=slot,
            ))
            self._persist_ledger()

        if arbiter in (caller, beneficiary):
            logger.warning(f"Escrow {caller}/{escrow_id}: arbiter {arbiter} is also a party")
        logger.info(
            f"Escrow {caller}/{escrow_id} created: {amount} {asset} for {beneficiary}, "
            f"arbiter {arbiter}, vault {vault}"
        )
        return record

    def _transition(
        self,
        op: Operation,
        caller: str,
        depositor: str,
        escrow_id: int,
        *,
        release_to_beneficiary: Optional[bool] = None,
        reason: Optional[str] = None,
    ) -> EscrowRecord:
        try:
            key = record_key(depositor, escrow_id)
        except EscrowError as exc:
            self._reject(op, caller, exc.code, exc.message)
        slot = self.clock.current_slot()
        moved: Optional[tuple[str, int]] = None

        try:
            with self.store.transaction():
                self._load_ledger()
                record = self.store.get_escrow(depositor, escrow_id)
                if record is None:
                    self._reject(op, caller, ErrorCode.ESCROW_NOT_FOUND,
                                 f"no escrow {depositor}/{escrow_id}")

                # Deadline and party rules only apply to a Funded record.
                if op in _STATUS_BEFORE_GUARD:
                    try:
                        require_status(record, op)
                    except EscrowError as exc:
                        self._reject(op, caller, exc.code, exc.message)

                ok, code = authorize(op, caller, record, slot)
                if not ok:
                    self._reject(op, caller, code)

                vault_balance = self.ledger.balance_of(record.vault)
                try:
                    plan = plan_transition(
                        record, op,
                        vault_balance=vault_balance,
                        release_to_beneficiary=release_to_beneficiary,
                        reason=reason,
                    )
                except EscrowError as exc:
                    self._reject(op, caller, exc.code, exc.message)

                checker = InvariantChecker()
                checker.capture(record, vault_balance)

                moved = self._execute(caller, record, plan)

                updated = replace(
                    record,
                    status=plan.target,
                    updated_at=max(slot, record.updated_at),
                    dispute_reason=(
                        plan.dispute_reason if plan.dispute_reason is not None
                        else record.dispute_reason
                    ),
                )
                if self.check_invariants:
                    ok, msg = checker.verify(updated, self.ledger.balance_of(record.vault))
                    if not ok:
                        raise RuntimeError(f"invariant violated: {msg}")

                self.store.save_escrow(updated)
                self.store.record_transition(AuditEntry(
                    key=key,
                    operation=op.value,
                    from_status=record.status.value,
                    to_status=updated.status.value,
                    caller=caller,
                    slot=slot,
                    amount_moved=moved[1] if moved else 0,
                    destination=moved[0] if moved else "",
                ))
                self._persist_ledger()
        except FatalInconsistencyError:
            raise
        except Exception as exc:
            if moved is None:
                raise
            logger.critical(
                f"FATAL: {op.value} on {depositor}/{escrow_id} moved {moved[1]} to "
                f"{moved[0]} but the new state was not committed: {exc}",
                extra={"escrow": key, "operation": op.value},
            )
            raise FatalInconsistencyError(key, op.value, str(exc)) from exc

        logger.info(
            f"Escrow {depositor}/{escrow_id} {record.status.value} -> {updated.status.value} "
            f"({op.value} by {caller} at slot {slot})",
            extra={"escrow": key, "operation": op.value},
        )
        return updated

    def fund(self, caller: str, depositor: str, escrow_id: int) -> EscrowRecord:
        """Move exactly ``amount`` from the depositor into the vault."""
        return self._transition(Operation.FUND, caller, depositor, escrow_id)

    def release(self, caller: str, depositor: str, escrow_id: int) -> EscrowRecord:
        """Depositor approves: the vault pays the beneficiary."""
        return self._transition(Operation.RELEASE, caller, depositor, escrow_id)

    def raise_dispute(self, caller: str, depositor: str, escrow_id: int, reason: str) -> EscrowRecord:
        """Either party freezes a funded escrow pending the arbiter's decision."""
        return self._transition(
            Operation.RAISE_DISPUTE, caller, depositor, escrow_id, reason=reason,
        )

    def resolve_dispute(
        self, caller: str, depositor: str, escrow_id: int, release_to_beneficiary: bool,
    ) -> EscrowRecord:
        """The arbiter pays out to the beneficiary or refunds the depositor."""
        return self._transition(
            Operation.RESOLVE_DISPUTE, caller, depositor, escrow_id,
            release_to_beneficiary=bool(release_to_beneficiary),
        )

    def cancel(self, caller: str, depositor: str, escrow_id: int) -> EscrowRecord:
        """Depositor withdraws before release; any vault balance is refunded."""
        return self._transition(Operation.CANCEL, caller, depositor, escrow_id)

    def auto_release(self, caller: str, depositor: str, escrow_id: int) -> EscrowRecord:
        """Permissionless crank: releases once the deadline slot is reached."""
        return self._transition(Operation.AUTO_RELEASE, caller, depositor, escrow_id)

    # ── queries ──────────────────────────────────────────────────

    def get_escrow(self, depositor: str, escrow_id: int) -> EscrowRecord:
        record_key(depositor, escrow_id)
        record = self.store.get_escrow(depositor, escrow_id)
        if record is None:
            raise EscrowError(ErrorCode.ESCROW_NOT_FOUND, f"no escrow {depositor}/{escrow_id}")
        return record

    def list_escrows(
        self,
        depositor: Optional[str] = None,
        status: Optional[Union[EscrowStatus, str]] = None,
    ) -> list[EscrowRecord]:
        if status is not None and not isinstance(status, EscrowStatus):
            try:
                status = EscrowStatus(status)
            except ValueError as exc:
                raise EscrowError(ErrorCode.INVALID_STATE, f"unknown status {status!r}") from exc
        return self.store.list_escrows(depositor=depositor, status=status)

    def history(self, depositor: str, escrow_id: int) -> list[AuditEntry]:
        record = self.get_escrow(depositor, escrow_id)
        return self.store.load_history(record.key)

    def vault_balance(self, record: EscrowRecord) -> int:
        self._load_ledger()
        return self.ledger.balance_of(record.vault)

    def summary(self) -> dict:
        self._load_ledger()
        counts = self.store.count_by_status()
        locked = 0
        for status in (EscrowStatus.FUNDED, EscrowStatus.DISPUTED):
            for record in self.store.list_escrows(status=status):
                locked += self.ledger.balance_of(record.vault)
        return {
            "slot": self.clock.current_slot(),
            "escrows": sum(counts.values()),
            "by_status": {s.value: counts.get(s.value, 0) for s in EscrowStatus},
            "locked": locked,
        }
