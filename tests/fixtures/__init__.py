"""Test fixtures for the EVM engine tests."""

from .addresses import (
    ALICE_ADDRESS,
    ALICE_PRIVATE_KEY,
    BOB_ADDRESS,
    COINBASE_ADDRESS,
    CONTRACT_ADDRESS,
    OTHER_CONTRACT_ADDRESS,
    ZERO_ADDRESS,
)
from .programs import (
    bytecode,
    call_code,
    eof_container,
    push,
    pushn,
    return_word,
    run_code,
)

__all__ = [
    # Addresses
    "ALICE_ADDRESS",
    "ALICE_PRIVATE_KEY",
    "BOB_ADDRESS",
    "COINBASE_ADDRESS",
    "CONTRACT_ADDRESS",
    "OTHER_CONTRACT_ADDRESS",
    "ZERO_ADDRESS",
    # Programs
    "bytecode",
    "call_code",
    "eof_container",
    "push",
    "pushn",
    "return_word",
    "run_code",
]
