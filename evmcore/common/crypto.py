"""
Hash functions and secp256k1 helpers needed by the engine.

KECCAK256 and CREATE addresses use keccak256; the sha256 and ripemd160
precompiles use the standard digests; ecrecover needs public key recovery.
"""

from __future__ import annotations

from Crypto.Hash import RIPEMD160, SHA256, keccak
from coincurve import PrivateKey, PublicKey


def keccak256(data: bytes) -> bytes:
    """Keccak-256 as used by Ethereum (pre-standard padding, not SHA3-256)."""
    return keccak.new(data=data, digest_bits=256).digest()


def sha256(data: bytes) -> bytes:
    return SHA256.new(data).digest()


def ripemd160(data: bytes) -> bytes:
    return RIPEMD160.new(data).digest()


# ---------------------------------------------------------------------------
# secp256k1
# ---------------------------------------------------------------------------

def _require_hash(msg_hash: bytes) -> None:
    if len(msg_hash) != 32:
        raise ValueError(f"expected a 32-byte message hash, got {len(msg_hash)}")


def ecdsa_sign(msg_hash: bytes, private_key: bytes) -> tuple[int, int, int]:
    """Sign a message hash; returns (recovery_id, r, s)."""
    _require_hash(msg_hash)
    signature = PrivateKey(private_key).sign_recoverable(msg_hash, hasher=None)
    r, s = signature[:32], signature[32:64]
    return signature[64], int.from_bytes(r, "big"), int.from_bytes(s, "big")


def ecdsa_recover(msg_hash: bytes, recovery_id: int, r: int, s: int) -> bytes:
    """Uncompressed public key (0x04 || x || y) of the signer.

    Raises ValueError when no key can be recovered.
    """
    _require_hash(msg_hash)
    signature = b"".join((r.to_bytes(32, "big"), s.to_bytes(32, "big"), bytes([recovery_id])))
    return PublicKey.from_signature_and_message(signature, msg_hash, hasher=None).format(
        compressed=False
    )


def pubkey_to_address(pubkey: bytes) -> bytes:
    """Last 20 bytes of keccak256 over the 64-byte x || y point."""
    point = pubkey[1:] if len(pubkey) == 65 else pubkey
    if len(point) != 64:
        raise ValueError(f"bad public key length {len(pubkey)}")
    return keccak256(point)[-20:]


def private_key_to_address(private_key: bytes) -> bytes:
    return pubkey_to_address(PrivateKey(private_key).public_key.format(compressed=False))
