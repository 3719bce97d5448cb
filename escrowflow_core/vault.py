"""
Vault authority derivation for EscrowFlow.

Each escrow record gets its own non-human signing capability: a secp256k1
key pair derived deterministically from the engine's authority seed and the
record key, HD-wallet style:

    I = HMAC-SHA512(seed, b"vault_authority" || record_key || bump)
    k = int(I[:32])               (accepted when 0 < k < n)

The bump starts at 255 and counts down until ``k`` is a valid scalar, so the
derivation is total and reproducible.  The resulting ``VaultAuthority`` is
the only principal a ledger accepts for outbound transfers from the
escrow's custody vault.  It is created inside the engine and handed only to
the ledger client; it never leaves through a public API.
"""

from __future__ import annotations

import hashlib
import hmac
import json

from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey

VAULT_AUTHORITY_DOMAIN = b"vault_authority"


def transfer_message(source: str, destination: str, amount: int, nonce: int) -> bytes:
    """Canonical bytes signed to authorize one outbound vault transfer."""
    return json.dumps(
        {
            "type": "vault_transfer",
            "source": source,
            "destination": destination,
            "amount": int(amount),
            "nonce": int(nonce),
        },
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")


def authority_address(public_key: bytes) -> str:
    return "va" + hashlib.sha256(public_key).hexdigest()[:40]


def verify_transfer_signature(
    public_key: bytes,
    source: str,
    destination: str,
    amount: int,
    nonce: int,
    signature: bytes,
) -> bool:
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        return vk.verify(
            signature,
            transfer_message(source, destination, amount, nonce),
            hashfunc=hashlib.sha256,
        )
    except (BadSignatureError, ValueError):
        return False


class VaultAuthority:
    """Opaque signing capability bound one-to-one to an escrow record."""

    __slots__ = ("_signing_key", "escrow_key", "bump", "public_key", "address", "_vault")

    def __init__(self, signing_key: SigningKey, escrow_key: str, bump: int):
        self._signing_key = signing_key
        self.escrow_key = escrow_key
        self.bump = bump
        self.public_key = signing_key.get_verifying_key().to_string("compressed")
        self.address = authority_address(self.public_key)
        self._vault: str | None = None

    @property
    def vault(self) -> str | None:
        return self._vault

    def bind(self, vault: str) -> None:
        """Tie this authority to the custody account it owns."""
        if self._vault is not None and self._vault != vault:
            raise PermissionError(f"authority {self.address} already owns vault {self._vault}")
        self._vault = vault

    def sign_transfer(self, source: str, destination: str, amount: int, nonce: int) -> bytes:
        if self._vault is None or source != self._vault:
            raise PermissionError(
                f"authority {self.address} cannot sign for account {source}"
            )
        return self._signing_key.sign_deterministic(
            transfer_message(source, destination, amount, nonce),
            hashfunc=hashlib.sha256,
        )

    def __repr__(self) -> str:
        return f"VaultAuthority(address={self.address!r}, escrow={self.escrow_key[:12]}...)"


def derive_vault_authority(seed: bytes, escrow_key: str) -> VaultAuthority:
    """Derive the vault authority for *escrow_key* under the engine *seed*."""
    if not seed:
        raise ValueError("authority seed must not be empty")
    key_bytes = bytes.fromhex(escrow_key)
    order = SECP256k1.order
    for bump in range(255, -1, -1):
        digest = hmac.new(
            seed, VAULT_AUTHORITY_DOMAIN + key_bytes + bytes([bump]), hashlib.sha512,
        ).digest()
        k = int.from_bytes(digest[:32], "big")
        if 0 < k < order:
            sk = SigningKey.from_string(k.to_bytes(32, "big"), curve=SECP256k1)
            return VaultAuthority(sk, escrow_key, bump)
    raise ValueError(f"no valid vault authority for escrow {escrow_key}")
