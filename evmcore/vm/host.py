"""
Host: the EVM's capability interface to chain state and environment.

The engine never touches a persistence backend directly. Everything it
reads or writes about accounts, storage, blocks and the transaction goes
through a Host. Mutations made during execution go through the Journal,
which calls the raw setters here and remembers how to undo them.

InMemoryHost keeps all accounts in a dict and is what tests and embedders
without a database use.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from evmcore.common.crypto import keccak256
from evmcore.common.types import (
    EMPTY_CODE_HASH,
    ZERO_ADDRESS,
    ZERO_HASH,
    Account,
    AddressLike,
    to_address,
)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

@dataclass
class BlockEnv:
    number: int = 0
    timestamp: int = 0
    coinbase: bytes = ZERO_ADDRESS
    # DIFFICULTY before the merge, PREVRANDAO after
    prevrandao: int = 0
    difficulty: int = 0
    gas_limit: int = 30_000_000
    chain_id: int = 1
    base_fee: int = 0
    blob_base_fee: int = 1


@dataclass
class TxEnv:
    origin: bytes = ZERO_ADDRESS
    gas_price: int = 0
    blob_hashes: list[bytes] = field(default_factory=list)


# Only the most recent 256 block hashes are visible to BLOCKHASH
BLOCKHASH_WINDOW = 256


class Host(ABC):
    """State and environment capabilities used by the interpreter."""

    def __init__(self, block: Optional[BlockEnv] = None, tx: Optional[TxEnv] = None) -> None:
        self.block = block or BlockEnv()
        self.tx = tx or TxEnv()

    # -- Accounts --

    @abstractmethod
    def get_account(self, address: bytes) -> Optional[Account]:
        """Return a copy of the account, or None if it does not exist."""

    @abstractmethod
    def put_account(self, address: bytes, account: Optional[Account]) -> None:
        """Replace the whole account (None removes it)."""

    @abstractmethod
    def account_exists(self, address: bytes) -> bool: ...

    @abstractmethod
    def get_balance(self, address: bytes) -> int: ...

    @abstractmethod
    def set_balance(self, address: bytes, balance: int) -> None: ...

    @abstractmethod
    def get_nonce(self, address: bytes) -> int: ...

    @abstractmethod
    def set_nonce(self, address: bytes, nonce: int) -> None: ...

    @abstractmethod
    def get_code(self, address: bytes) -> bytes: ...

    @abstractmethod
    def set_code(self, address: bytes, code: bytes) -> None: ...

    @abstractmethod
    def get_storage(self, address: bytes, key: int) -> int: ...

    @abstractmethod
    def set_storage(self, address: bytes, key: int, value: int) -> None: ...

    @abstractmethod
    def create_account(self, address: bytes) -> None:
        """Create a fresh account, keeping any balance already sent to it."""

    @abstractmethod
    def destroy_account(self, address: bytes) -> None: ...

    # -- Derived queries --

    def is_empty(self, address: bytes) -> bool:
        """EIP-161 "dead": missing, or no nonce, no balance and no code."""
        account = self.get_account(address)
        return account is None or account.is_empty()

    def get_code_hash(self, address: bytes) -> bytes:
        if not self.account_exists(address):
            return ZERO_HASH
        code = self.get_code(address)
        return keccak256(code) if code else EMPTY_CODE_HASH

    def transfer(self, sender: bytes, recipient: bytes, value: int) -> None:
        """Move value between accounts. The caller checks the balance."""
        if value == 0 or sender == recipient:
            return
        self.set_balance(sender, self.get_balance(sender) - value)
        self.set_balance(recipient, self.get_balance(recipient) + value)

    # -- Block history --

    def get_block_hash(self, number: int) -> bytes:
        return ZERO_HASH


class InMemoryHost(Host):
    """Host backed by a plain dict of accounts.

    Works as a cache state: accounts not present are treated as not
    existing, and `insert_account` seeds state for tests and fixtures.
    """

    def __init__(
        self,
        block: Optional[BlockEnv] = None,
        tx: Optional[TxEnv] = None,
        accounts: Optional[dict[bytes, Account]] = None,
    ) -> None:
        super().__init__(block, tx)
        self.accounts: dict[bytes, Account] = dict(accounts or {})
        self.block_hashes: dict[int, bytes] = {}

    def insert_account(
        self,
        address: AddressLike,
        balance: int = 0,
        nonce: int = 0,
        code: bytes = b"",
        storage: Optional[dict[int, int]] = None,
    ) -> Account:
        account = Account(nonce=nonce, balance=balance, code=code, storage=dict(storage or {}))
        self.accounts[to_address(address)] = account
        return account

    def _get_or_create(self, address: bytes) -> Account:
        account = self.accounts.get(address)
        if account is None:
            account = Account()
            self.accounts[address] = account
        return account

    # -- Accounts --

    def get_account(self, address: bytes) -> Optional[Account]:
        account = self.accounts.get(address)
        return account.copy() if account is not None else None

    def put_account(self, address: bytes, account: Optional[Account]) -> None:
        if account is None:
            self.accounts.pop(address, None)
        else:
            self.accounts[address] = account.copy()

    def account_exists(self, address: bytes) -> bool:
        return address in self.accounts

    def is_empty(self, address: bytes) -> bool:
        account = self.accounts.get(address)
        return account is None or account.is_empty()

    def get_balance(self, address: bytes) -> int:
        account = self.accounts.get(address)
        return account.balance if account is not None else 0

    def set_balance(self, address: bytes, balance: int) -> None:
        self._get_or_create(address).balance = balance

    def get_nonce(self, address: bytes) -> int:
        account = self.accounts.get(address)
        return account.nonce if account is not None else 0

    def set_nonce(self, address: bytes, nonce: int) -> None:
        self._get_or_create(address).nonce = nonce

    def get_code(self, address: bytes) -> bytes:
        account = self.accounts.get(address)
        return account.code if account is not None else b""

    def set_code(self, address: bytes, code: bytes) -> None:
        self._get_or_create(address).code = code

    def get_storage(self, address: bytes, key: int) -> int:
        account = self.accounts.get(address)
        if account is None:
            return 0
        return account.storage.get(key, 0)

    def set_storage(self, address: bytes, key: int, value: int) -> None:
        storage = self._get_or_create(address).storage
        if value == 0:
            storage.pop(key, None)
        else:
            storage[key] = value

    def create_account(self, address: bytes) -> None:
        balance = self.get_balance(address)
        self.accounts[address] = Account(balance=balance)

    def destroy_account(self, address: bytes) -> None:
        self.accounts.pop(address, None)

    # -- Block history --

    def get_block_hash(self, number: int) -> bytes:
        return self.block_hashes.get(number, ZERO_HASH)
