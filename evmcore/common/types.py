"""
Core value types shared by the engine: accounts, logs, addresses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

import rlp
from eth_utils import to_canonical_address

from evmcore.common.crypto import keccak256


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMPTY_CODE_HASH = keccak256(b"")
ZERO_HASH = b"\x00" * 32
ZERO_ADDRESS = b"\x00" * 20

AddressLike = Union[bytes, str, int]


def to_address(value: AddressLike) -> bytes:
    """Normalize a hex string, int or bytes into a 20-byte address."""
    if isinstance(value, int):
        return (value % (1 << 160)).to_bytes(20, "big")
    if isinstance(value, (bytes, bytearray)) and len(value) == 20:
        return bytes(value)
    return to_canonical_address(value)


def address_from_word(word: int) -> bytes:
    """Low 160 bits of a stack word as an address."""
    return (word & ((1 << 160) - 1)).to_bytes(20, "big")


def address_to_word(address: bytes) -> int:
    return int.from_bytes(address, "big")


def compute_create_address(sender: bytes, nonce: int) -> bytes:
    """CREATE: keccak256(rlp([sender, nonce]))[12:]"""
    return keccak256(rlp.encode([sender, nonce]))[12:]


def compute_create2_address(sender: bytes, salt: int, init_code: bytes) -> bytes:
    """CREATE2: keccak256(0xff ++ sender ++ salt ++ keccak256(init_code))[12:]"""
    return keccak256(
        b"\xff" + sender + salt.to_bytes(32, "big") + keccak256(init_code)
    )[12:]


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------

@dataclass
class Account:
    nonce: int = 0
    balance: int = 0
    code: bytes = b""
    storage: dict[int, int] = field(default_factory=dict)

    @property
    def code_hash(self) -> bytes:
        return keccak256(self.code) if self.code else EMPTY_CODE_HASH

    def is_empty(self) -> bool:
        """EIP-161 emptiness: no nonce, no balance, no code."""
        return self.nonce == 0 and self.balance == 0 and not self.code

    def copy(self) -> "Account":
        return Account(self.nonce, self.balance, self.code, dict(self.storage))


# ---------------------------------------------------------------------------
# Log
# ---------------------------------------------------------------------------

@dataclass
class Log:
    address: bytes = field(default_factory=lambda: ZERO_ADDRESS)
    topics: list[bytes] = field(default_factory=list)
    data: bytes = b""
