"""
Tests for vault authority derivation and transfer signing (vault.py).

Covers:
  - Deterministic derivation from (seed, record key)
  - Separation between records and between seeds
  - Binding to exactly one custody account
  - Signature verification, including tampered messages
"""

from __future__ import annotations

import pytest

from escrowflow_core.escrow import record_key
from escrowflow_core.vault import (
    VaultAuthority,
    authority_address,
    derive_vault_authority,
    transfer_message,
    verify_transfer_signature,
)

SEED = b"vault-test-seed"
KEY = record_key("alice", 1)


@pytest.fixture
def authority() -> VaultAuthority:
    auth = derive_vault_authority(SEED, KEY)
    auth.bind("vault:one")
    return auth


# ═══════════════════════════════════════════════════════════════════
#  Derivation
# ═══════════════════════════════════════════════════════════════════

class TestDerivation:
    def test_deterministic(self):
        a = derive_vault_authority(SEED, KEY)
        b = derive_vault_authority(SEED, KEY)
        assert a.public_key == b.public_key
        assert a.address == b.address
        assert a.bump == b.bump

    def test_distinct_per_record(self):
        a = derive_vault_authority(SEED, record_key("alice", 1))
        b = derive_vault_authority(SEED, record_key("alice", 2))
        assert a.address != b.address

    def test_distinct_per_seed(self):
        a = derive_vault_authority(SEED, KEY)
        b = derive_vault_authority(b"another-seed", KEY)
        assert a.address != b.address

    def test_empty_seed_rejected(self):
        with pytest.raises(ValueError):
            derive_vault_authority(b"", KEY)

    def test_compressed_public_key_and_address(self):
        a = derive_vault_authority(SEED, KEY)
        assert len(a.public_key) == 33
        assert a.address == authority_address(a.public_key)
        assert a.address.startswith("va")
        assert 0 <= a.bump <= 255

    def test_repr_hides_key_material(self):
        a = derive_vault_authority(SEED, KEY)
        text = repr(a)
        assert a.address in text
        assert "signing" not in text.lower()


# ═══════════════════════════════════════════════════════════════════
#  Binding & signing
# ═══════════════════════════════════════════════════════════════════

class TestSigning:
    def test_unbound_authority_cannot_sign(self):
        a = derive_vault_authority(SEED, KEY)
        with pytest.raises(PermissionError):
            a.sign_transfer("vault:one", "bob:USD", 10, 0)

    def test_signs_only_for_own_vault(self, authority):
        with pytest.raises(PermissionError):
            authority.sign_transfer("vault:other", "bob:USD", 10, 0)

    def test_rebinding_elsewhere_rejected(self, authority):
        authority.bind("vault:one")   # same vault is fine
        with pytest.raises(PermissionError):
            authority.bind("vault:two")

    def test_signature_verifies(self, authority):
        sig = authority.sign_transfer("vault:one", "bob:USD", 10, 3)
        assert verify_transfer_signature(authority.public_key, "vault:one", "bob:USD", 10, 3, sig)

    @pytest.mark.parametrize("field,value", [
        ("destination", "mallory:USD"),
        ("amount", 11),
        ("nonce", 4),
    ])
    def test_tampered_message_fails(self, authority, field, value):
        sig = authority.sign_transfer("vault:one", "bob:USD", 10, 3)
        args = {"source": "vault:one", "destination": "bob:USD", "amount": 10, "nonce": 3}
        args[field] = value
        assert not verify_transfer_signature(authority.public_key, signature=sig, **args)

    def test_other_authority_signature_fails(self, authority):
        other = derive_vault_authority(SEED, record_key("alice", 2))
        other.bind("vault:one")
        sig = other.sign_transfer("vault:one", "bob:USD", 10, 0)
        assert not verify_transfer_signature(authority.public_key, "vault:one", "bob:USD", 10, 0, sig)

    def test_garbage_signature_fails(self, authority):
        assert not verify_transfer_signature(
            authority.public_key, "vault:one", "bob:USD", 10, 0, b"\x00" * 64,
        )

    def test_transfer_message_is_canonical(self):
        m1 = transfer_message("a", "b", 5, 1)
        m2 = transfer_message("a", "b", 5, 1)
        assert m1 == m2
        assert b'"type":"vault_transfer"' in m1
