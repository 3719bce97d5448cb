"""
Post-transition invariant checks for EscrowFlow.

Run after a transition has been planned and its transfer executed, but
before the new record is committed:

  - status only moves along an edge of the lifecycle graph
  - vault holds 0 while Created, exactly ``amount`` while Funded/Disputed,
    and 0 once Released/Cancelled
  - ``amount`` is positive and never changes
  - identity fields (parties, asset, vault, key) never change
  - ``dispute_reason`` is only ever set by raise_dispute and never cleared
  - timestamps never go backwards

If any invariant fails the engine refuses to commit.
"""

from __future__ import annotations

from dataclasses import dataclass

from escrowflow_core.escrow import ALLOWED_EDGES, EscrowRecord, EscrowStatus

_IMMUTABLE_FIELDS = (
    "escrow_id", "depositor", "beneficiary", "arbiter",
    "asset", "vault", "amount", "key", "authority", "created_at",
    "auto_release_deadline",
)


def expected_vault_balance(record: EscrowRecord) -> int:
    if record.status in (EscrowStatus.FUNDED, EscrowStatus.DISPUTED):
        return record.amount
    return 0


def check_record(record: EscrowRecord, vault_balance: int) -> tuple[bool, str]:
    """Invariants that hold for any committed record on its own."""
    if record.amount <= 0:
        return False, f"amount must be positive, got {record.amount}"
    expected = expected_vault_balance(record)
    if vault_balance != expected:
        return False, (
            f"vault balance {vault_balance} != {expected} "
            f"expected while {record.status.value}"
        )
    if record.dispute_reason and record.status in (EscrowStatus.CREATED, EscrowStatus.FUNDED):
        return False, f"dispute reason set while {record.status.value}"
    if record.updated_at < record.created_at:
        return False, "updated_at precedes created_at"
    return True, ""


def check_transition(before: EscrowRecord, after: EscrowRecord) -> tuple[bool, str]:
    """Invariants relating a record to the one it replaces."""
    errors: list[str] = []

    # 1. Forward-only status
    if (before.status, after.status) not in ALLOWED_EDGES:
        errors.append(f"illegal status edge {before.status.value} -> {after.status.value}")

    # 2. Immutable fields
    for name in _IMMUTABLE_FIELDS:
        if getattr(before, name) != getattr(after, name):
            errors.append(f"{name} changed")

    # 3. Dispute reason is written once and kept
    if after.dispute_reason != before.dispute_reason:
        if before.dispute_reason:
            errors.append("dispute reason was modified")
        elif after.status != EscrowStatus.DISPUTED:
            errors.append("dispute reason set outside raise_dispute")

    # 4. Time only moves forward
    if after.updated_at < before.updated_at:
        errors.append("updated_at moved backwards")

    if errors:
        return False, "; ".join(errors)
    return True, ""


@dataclass
class RecordSnapshot:
    """The record and its vault balance before a transition."""
    record: EscrowRecord
    vault_balance: int


class InvariantChecker:
    """
    Captures the record before a transition and validates the record
    (and vault balance) produced by it.
    """

    def __init__(self):
        self._snapshot: RecordSnapshot | None = None

    def capture(self, record: EscrowRecord | None, vault_balance: int = 0) -> None:
        self._snapshot = RecordSnapshot(record, vault_balance) if record is not None else None

    def verify(self, record: EscrowRecord, vault_balance: int) -> tuple[bool, str]:
        """Returns (passed, error_message)."""
        errors: list[str] = []

        ok, msg = check_record(record, vault_balance)
        if not ok:
            errors.append(msg)

        if self._snapshot is not None:
            ok, msg = check_transition(self._snapshot.record, record)
            if not ok:
                errors.append(msg)

        if errors:
            return False, "; ".join(errors)
        return True, ""
