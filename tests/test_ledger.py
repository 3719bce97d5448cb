"""
Tests for the reference ledger (ledger.py).

Covers:
  - Token accounts, minting and balances
  - Owner-authorized transfers and their failure modes
  - Custody accounts that only their vault authority can debit
  - Snapshot / restore
"""

from __future__ import annotations

import pytest

from escrowflow_core.escrow import record_key
from escrowflow_core.ledger import (
    U64_MAX,
    CustodySigner,
    InMemoryLedger,
    LedgerClient,
    TransferError,
    TransferFailure,
    custody_account_id,
)
from escrowflow_core.vault import derive_vault_authority

SEED = b"ledger-test-seed"


@pytest.fixture
def led():
    led = InMemoryLedger()
    led.mint("alice", "USD", 500)
    led.mint("bob", "USD", 10)
    led.mint("alice", "EUR", 70)
    return led


@pytest.fixture
def custody(led):
    """(authority, vault account id) for alice/1, bound and empty."""
    auth = derive_vault_authority(SEED, record_key("alice", 1))
    vault = led.create_custody_account(auth, "USD")
    auth.bind(vault)
    return auth, vault


# ═══════════════════════════════════════════════════════════════════
#  Accounts
# ═══════════════════════════════════════════════════════════════════

class TestAccounts:
    def test_satisfies_client_protocol(self, led):
        assert isinstance(led, LedgerClient)

    def test_token_account_is_idempotent(self, led):
        assert led.token_account("carol", "USD") == led.token_account("carol", "USD")
        assert led.balance_of(led.token_account("carol", "USD")) == 0

    def test_accounts_are_per_asset(self, led):
        assert led.balance_of(led.token_account("alice", "USD")) == 500
        assert led.balance_of(led.token_account("alice", "EUR")) == 70

    def test_unknown_account_balance(self, led):
        with pytest.raises(KeyError):
            led.balance_of("nobody:USD")

    def test_mint_rejects_non_positive(self, led):
        with pytest.raises(TransferError) as exc_info:
            led.mint("alice", "USD", 0)
        assert exc_info.value.reason == TransferFailure.INVALID_AMOUNT

    def test_mint_overflow(self, led):
        with pytest.raises(TransferError) as exc_info:
            led.mint("alice", "USD", U64_MAX)
        assert exc_info.value.reason == TransferFailure.OVERFLOW

    def test_total_supply(self, led):
        assert led.total_supply("USD") == 510
        assert led.total_supply("EUR") == 70


# ═══════════════════════════════════════════════════════════════════
#  Transfers
# ═══════════════════════════════════════════════════════════════════

class TestTransfers:
    def test_owner_transfer(self, led):
        led.transfer("alice:USD", "bob:USD", "alice", 200)
        assert led.balance_of("alice:USD") == 300
        assert led.balance_of("bob:USD") == 210

    def test_wrong_owner(self, led):
        with pytest.raises(TransferError) as exc_info:
            led.transfer("alice:USD", "bob:USD", "bob", 1)
        assert exc_info.value.reason == TransferFailure.UNAUTHORIZED

    def test_insufficient_funds_moves_nothing(self, led):
        with pytest.raises(TransferError) as exc_info:
            led.transfer("bob:USD", "alice:USD", "bob", 11)
        assert exc_info.value.reason == TransferFailure.INSUFFICIENT_FUNDS
        assert led.balance_of("bob:USD") == 10
        assert led.balance_of("alice:USD") == 500

    def test_asset_mismatch(self, led):
        with pytest.raises(TransferError) as exc_info:
            led.transfer("alice:EUR", "bob:USD", "alice", 1)
        assert exc_info.value.reason == TransferFailure.ASSET_MISMATCH

    @pytest.mark.parametrize("amount", [0, -5, True, 1.5])
    def test_invalid_amount(self, led, amount):
        with pytest.raises(TransferError) as exc_info:
            led.transfer("alice:USD", "bob:USD", "alice", amount)
        assert exc_info.value.reason == TransferFailure.INVALID_AMOUNT

    def test_unknown_destination(self, led):
        with pytest.raises(TransferError) as exc_info:
            led.transfer("alice:USD", "ghost:USD", "alice", 1)
        assert exc_info.value.reason == TransferFailure.UNKNOWN_ACCOUNT


# ═══════════════════════════════════════════════════════════════════
#  Custody accounts
# ═══════════════════════════════════════════════════════════════════

class TestCustody:
    def test_authority_satisfies_signer_protocol(self, custody):
        auth, _vault = custody
        assert isinstance(auth, CustodySigner)

    def test_vault_id_derived_from_authority(self, custody):
        auth, vault = custody
        assert vault == custody_account_id(auth.address)

    def test_create_is_idempotent_for_same_authority(self, led, custody):
        auth, vault = custody
        assert led.create_custody_account(auth, "USD") == vault

    def test_create_with_other_asset_rejected(self, led, custody):
        auth, _vault = custody
        with pytest.raises(TransferError) as exc_info:
            led.create_custody_account(auth, "EUR")
        assert exc_info.value.reason == TransferFailure.UNAUTHORIZED

    def test_anyone_can_deposit(self, led, custody):
        _auth, vault = custody
        led.transfer("alice:USD", vault, "alice", 100)
        assert led.balance_of(vault) == 100

    def test_authority_can_withdraw(self, led, custody):
        auth, vault = custody
        led.transfer("alice:USD", vault, "alice", 100)
        led.transfer(vault, "bob:USD", auth, 100)
        assert led.balance_of(vault) == 0
        assert led.balance_of("bob:USD") == 110

    def test_nonce_advances_per_withdrawal(self, led, custody):
        auth, vault = custody
        led.transfer("alice:USD", vault, "alice", 100)
        led.transfer(vault, "bob:USD", auth, 40)
        led.transfer(vault, "bob:USD", auth, 60)
        assert led.accounts[vault].nonce == 2

    @pytest.mark.parametrize("principal", ["alice", "bob", "vault"])
    def test_plain_identity_cannot_withdraw(self, led, custody, principal):
        _auth, vault = custody
        led.transfer("alice:USD", vault, "alice", 100)
        with pytest.raises(TransferError) as exc_info:
            led.transfer(vault, "bob:USD", principal, 100)
        assert exc_info.value.reason == TransferFailure.UNAUTHORIZED
        assert led.balance_of(vault) == 100

    def test_other_authority_cannot_withdraw(self, led, custody):
        _auth, vault = custody
        led.transfer("alice:USD", vault, "alice", 100)
        other = derive_vault_authority(SEED, record_key("alice", 2))
        other.bind(vault)
        with pytest.raises(TransferError) as exc_info:
            led.transfer(vault, "bob:USD", other, 100)
        assert exc_info.value.reason == TransferFailure.UNAUTHORIZED

    def test_unbound_authority_cannot_withdraw(self, led, custody):
        _auth, vault = custody
        led.transfer("alice:USD", vault, "alice", 100)
        fresh = derive_vault_authority(SEED, record_key("alice", 1))   # same key, never bound
        with pytest.raises(TransferError) as exc_info:
            led.transfer(vault, "bob:USD", fresh, 100)
        assert exc_info.value.reason == TransferFailure.UNAUTHORIZED


# ═══════════════════════════════════════════════════════════════════
#  Snapshot / restore
# ═══════════════════════════════════════════════════════════════════

class TestSnapshot:
    def test_roundtrip(self, led, custody):
        auth, vault = custody
        led.transfer("alice:USD", vault, "alice", 100)
        led.transfer(vault, "bob:USD", auth, 30)

        restored = InMemoryLedger()
        restored.restore(led.snapshot())
        assert restored.balance_of("alice:USD") == 400
        assert restored.balance_of(vault) == 70
        assert restored.accounts[vault].custody
        assert restored.accounts[vault].nonce == 1

        # the same authority still controls the restored vault
        restored.transfer(vault, "bob:USD", auth, 70)
        assert restored.balance_of("bob:USD") == 110

    def test_restore_replaces_existing_state(self, led):
        other = InMemoryLedger()
        other.mint("zed", "USD", 1)
        led.restore(other.snapshot())
        assert set(led.accounts) == {"zed:USD"}
