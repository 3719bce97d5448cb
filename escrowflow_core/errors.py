"""
Error taxonomy for EscrowFlow.

Every state-machine handler fails with an ``EscrowError`` carrying one of
the ``ErrorCode`` values below, so callers can tell "wrong party" apart
from "wrong phase" and "not yet eligible".

``FatalInconsistencyError`` is deliberately *not* an ``EscrowError``: it is
raised only when a ledger transfer went through but the matching status
change could not be committed.
"""

from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    SUCCESS = 0

    # Validation
    INVALID_AMOUNT = 100
    INVALID_ESCROW_ID = 101
    DISPUTE_REASON_TOO_LONG = 102

    # State
    INVALID_STATE = 200
    ESCROW_NOT_FOUND = 201
    ESCROW_EXISTS = 202

    # Authorization
    UNAUTHORIZED_DEPOSITOR = 300
    UNAUTHORIZED_ARBITER = 301
    UNAUTHORIZED_PARTY = 302

    # Timing (authorization-by-condition)
    AUTO_RELEASE_DISABLED = 400
    AUTO_RELEASE_NOT_READY = 401

    # Funds
    INSUFFICIENT_VAULT_BALANCE = 500
    TRANSFER_FAILED = 501

    # Internal
    FATAL_INCONSISTENCY = 900


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.SUCCESS: "OK",
    ErrorCode.INVALID_AMOUNT: "Escrow amount must be greater than zero",
    ErrorCode.INVALID_ESCROW_ID: "Escrow id must be an unsigned 64-bit integer",
    ErrorCode.DISPUTE_REASON_TOO_LONG: "Dispute reason is too long (max 128 characters)",
    ErrorCode.INVALID_STATE: "Escrow is not in the expected state for this operation",
    ErrorCode.ESCROW_NOT_FOUND: "Escrow not found",
    ErrorCode.ESCROW_EXISTS: "Escrow already exists for this depositor and id",
    ErrorCode.UNAUTHORIZED_DEPOSITOR: "Only the depositor can perform this action",
    ErrorCode.UNAUTHORIZED_ARBITER: "Only the arbiter can resolve disputes",
    ErrorCode.UNAUTHORIZED_PARTY: "Only a party to the escrow can raise a dispute",
    ErrorCode.AUTO_RELEASE_DISABLED: "Auto-release is not enabled for this escrow",
    ErrorCode.AUTO_RELEASE_NOT_READY: "Auto-release slot has not been reached yet",
    ErrorCode.INSUFFICIENT_VAULT_BALANCE: "Escrow vault balance is insufficient",
    ErrorCode.TRANSFER_FAILED: "Ledger transfer failed",
    ErrorCode.FATAL_INCONSISTENCY: "Funds moved but escrow state was not committed",
}

AUTHORIZATION_CODES = frozenset({
    ErrorCode.UNAUTHORIZED_DEPOSITOR,
    ErrorCode.UNAUTHORIZED_ARBITER,
    ErrorCode.UNAUTHORIZED_PARTY,
})


class EscrowError(Exception):
    """A recoverable failure reported before anything was committed."""

    def __init__(self, code: ErrorCode, message: str = ""):
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code.name)
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code.name}({int(self.code)}): {self.message}"

    def to_dict(self) -> dict:
        return {"error": self.code.name, "code": int(self.code), "message": self.message}


class FatalInconsistencyError(Exception):
    """Funds were moved by the ledger but the new status was not persisted."""

    code = ErrorCode.FATAL_INCONSISTENCY

    def __init__(self, escrow_key: str, operation: str, detail: str = ""):
        self.escrow_key = escrow_key
        self.operation = operation
        self.detail = detail
        super().__init__(
            f"{ERROR_MESSAGES[ErrorCode.FATAL_INCONSISTENCY]} "
            f"(escrow={escrow_key}, op={operation}): {detail}"
        )

    def to_dict(self) -> dict:
        return {
            "error": self.code.name,
            "code": int(self.code),
            "message": str(self),
            "escrow_key": self.escrow_key,
        }
