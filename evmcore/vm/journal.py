"""
Journal: undo log for state mutations made during a transaction.

Every mutation the interpreter makes goes through the Journal, which applies
it to the Host and appends an entry that knows how to invert it. Frames
take a Checkpoint (the log length) when they start; a failing frame rewinds
to it, a succeeding one commits it. Checkpoints nest strictly, so a single
flat log with marker offsets is enough for arbitrarily deep call trees.

Warm/cold access marks (EIP-2929), transient storage (EIP-1153), logs and
SELFDESTRUCT marks are journaled as well, so a revert restores them too.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from evmcore.common.types import Account, Log
from evmcore.vm.exceptions import InsufficientBalance, JournalError
from evmcore.vm.host import Host

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

class JournalEntry:
    """A reversible state mutation."""

    __slots__ = ()

    def undo(self, journal: "Journal") -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class BalanceChanged(JournalEntry):
    address: bytes
    previous: int

    def undo(self, journal: "Journal") -> None:
        journal.host.set_balance(self.address, self.previous)


@dataclass(frozen=True)
class NonceChanged(JournalEntry):
    address: bytes
    previous: int

    def undo(self, journal: "Journal") -> None:
        journal.host.set_nonce(self.address, self.previous)


@dataclass(frozen=True)
class CodeChanged(JournalEntry):
    address: bytes
    previous: bytes

    def undo(self, journal: "Journal") -> None:
        journal.host.set_code(self.address, self.previous)


@dataclass(frozen=True)
class StorageChanged(JournalEntry):
    address: bytes
    key: int
    previous: int

    def undo(self, journal: "Journal") -> None:
        journal.host.set_storage(self.address, self.key, self.previous)


@dataclass(frozen=True)
class TransientStorageChanged(JournalEntry):
    address: bytes
    key: int
    previous: int

    def undo(self, journal: "Journal") -> None:
        if self.previous == 0:
            journal.transient.pop((self.address, self.key), None)
        else:
            journal.transient[(self.address, self.key)] = self.previous


@dataclass(frozen=True)
class AccountCreated(JournalEntry):
    address: bytes
    previous: Optional[Account]

    def undo(self, journal: "Journal") -> None:
        journal.host.put_account(self.address, self.previous)
        journal.created.discard(self.address)


@dataclass(frozen=True)
class AccountDestroyed(JournalEntry):
    address: bytes
    previous: Account

    def undo(self, journal: "Journal") -> None:
        journal.host.put_account(self.address, self.previous)


@dataclass(frozen=True)
class AccountTouched(JournalEntry):
    address: bytes

    def undo(self, journal: "Journal") -> None:
        journal.touched.discard(self.address)


@dataclass(frozen=True)
class LogEmitted(JournalEntry):
    def undo(self, journal: "Journal") -> None:
        journal.logs.pop()


@dataclass(frozen=True)
class AddressWarmed(JournalEntry):
    address: bytes

    def undo(self, journal: "Journal") -> None:
        journal.warm_addresses.discard(self.address)


@dataclass(frozen=True)
class StorageWarmed(JournalEntry):
    address: bytes
    key: int

    def undo(self, journal: "Journal") -> None:
        journal.warm_storage.discard((self.address, self.key))


@dataclass(frozen=True)
class SelfDestructMarked(JournalEntry):
    address: bytes

    def undo(self, journal: "Journal") -> None:
        journal.selfdestructs.discard(self.address)


@dataclass(frozen=True)
class Checkpoint:
    marker: int
    depth: int


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------

class Journal:
    """Journaled view of the Host for one transaction."""

    def __init__(self, host: Host) -> None:
        self.host = host
        self.entries: list[JournalEntry] = []
        self._checkpoints: list[Checkpoint] = []

        self.warm_addresses: set[bytes] = set()
        self.warm_storage: set[tuple[bytes, int]] = set()
        self.transient: dict[tuple[bytes, int], int] = {}
        self.logs: list[Log] = []
        self.selfdestructs: set[bytes] = set()
        self.created: set[bytes] = set()
        self.touched: set[bytes] = set()
        # Storage values as of the start of the transaction
        self._original_storage: dict[tuple[bytes, int], int] = {}

    def begin_transaction(self) -> None:
        """Reset all per-transaction bookkeeping."""
        if self._checkpoints:
            raise JournalError(f"{len(self._checkpoints)} checkpoint(s) still open")
        self.entries.clear()
        self.warm_addresses.clear()
        self.warm_storage.clear()
        self.transient.clear()
        self.logs = []
        self.selfdestructs.clear()
        self.created.clear()
        self.touched.clear()
        self._original_storage.clear()

    # -- Checkpoints --

    @property
    def depth(self) -> int:
        return len(self._checkpoints)

    def checkpoint(self) -> Checkpoint:
        cp = Checkpoint(marker=len(self.entries), depth=len(self._checkpoints))
        self._checkpoints.append(cp)
        return cp

    def _pop(self, cp: Checkpoint) -> None:
        if not self._checkpoints or self._checkpoints[-1] != cp:
            raise JournalError(f"checkpoint {cp} is not the innermost open checkpoint")
        self._checkpoints.pop()

    def commit(self, cp: Checkpoint) -> None:
        """Close the checkpoint; its entries become part of the enclosing scope."""
        self._pop(cp)

    def rewind(self, cp: Checkpoint) -> None:
        """Undo every entry recorded since the checkpoint, newest first."""
        self._pop(cp)
        undone = len(self.entries) - cp.marker
        for entry in reversed(self.entries[cp.marker:]):
            entry.undo(self)
        del self.entries[cp.marker:]
        if undone:
            logger.debug("Journal rewound %d entries to marker %d", undone, cp.marker)

    def record(self, entry: JournalEntry) -> None:
        self.entries.append(entry)

    # -- Balances / nonces / code --

    def get_balance(self, address: bytes) -> int:
        return self.host.get_balance(address)

    def set_balance(self, address: bytes, balance: int) -> None:
        self.record(BalanceChanged(address, self.host.get_balance(address)))
        self.host.set_balance(address, balance)

    def add_balance(self, address: bytes, amount: int) -> None:
        self.touch(address)
        if amount:
            self.set_balance(address, self.host.get_balance(address) + amount)

    def transfer(self, sender: bytes, recipient: bytes, value: int) -> None:
        balance = self.host.get_balance(sender)
        if balance < value:
            raise InsufficientBalance(f"balance {balance} < value {value}")
        self.touch(recipient)
        if value == 0 or sender == recipient:
            return
        self.record(BalanceChanged(sender, balance))
        self.record(BalanceChanged(recipient, self.host.get_balance(recipient)))
        self.host.transfer(sender, recipient, value)

    def get_nonce(self, address: bytes) -> int:
        return self.host.get_nonce(address)

    def set_nonce(self, address: bytes, nonce: int) -> None:
        self.record(NonceChanged(address, self.host.get_nonce(address)))
        self.host.set_nonce(address, nonce)

    def increment_nonce(self, address: bytes) -> None:
        self.set_nonce(address, self.host.get_nonce(address) + 1)

    def get_code(self, address: bytes) -> bytes:
        return self.host.get_code(address)

    def set_code(self, address: bytes, code: bytes) -> None:
        self.record(CodeChanged(address, self.host.get_code(address)))
        self.host.set_code(address, code)

    # -- Storage --

    def get_storage(self, address: bytes, key: int) -> int:
        return self.host.get_storage(address, key)

    def original_storage(self, address: bytes, key: int) -> int:
        slot = (address, key)
        if slot not in self._original_storage:
            self._original_storage[slot] = self.host.get_storage(address, key)
        return self._original_storage[slot]

    def set_storage(self, address: bytes, key: int, value: int) -> None:
        current = self.host.get_storage(address, key)
        slot = (address, key)
        if slot not in self._original_storage:
            self._original_storage[slot] = current
        self.record(StorageChanged(address, key, current))
        self.host.set_storage(address, key, value)

    def get_transient(self, address: bytes, key: int) -> int:
        return self.transient.get((address, key), 0)

    def set_transient(self, address: bytes, key: int, value: int) -> None:
        previous = self.transient.get((address, key), 0)
        self.record(TransientStorageChanged(address, key, previous))
        if value == 0:
            self.transient.pop((address, key), None)
        else:
            self.transient[(address, key)] = value

    # -- Account lifecycle --

    def create_account(self, address: bytes) -> None:
        self.record(AccountCreated(address, self.host.get_account(address)))
        self.host.create_account(address)
        self.created.add(address)

    def ensure_account(self, address: bytes) -> None:
        """Materialize a missing account without marking it as created."""
        if self.host.account_exists(address):
            return
        self.record(AccountCreated(address, None))
        self.host.create_account(address)

    def destroy_account(self, address: bytes) -> None:
        previous = self.host.get_account(address)
        if previous is None:
            return
        self.record(AccountDestroyed(address, previous))
        self.host.destroy_account(address)

    def touch(self, address: bytes) -> None:
        if address not in self.touched:
            self.touched.add(address)
            self.record(AccountTouched(address))

    def mark_selfdestruct(self, address: bytes) -> bool:
        """Mark for deletion at the end of the transaction.

        Returns True if the account was already marked.
        """
        if address in self.selfdestructs:
            return True
        self.selfdestructs.add(address)
        self.record(SelfDestructMarked(address))
        return False

    # -- Access lists (EIP-2929) --

    def is_warm_address(self, address: bytes) -> bool:
        return address in self.warm_addresses

    def warm_address(self, address: bytes) -> bool:
        """Mark address as warm. Returns True if it was already warm."""
        if address in self.warm_addresses:
            return True
        self.warm_addresses.add(address)
        self.record(AddressWarmed(address))
        return False

    def is_warm_storage(self, address: bytes, key: int) -> bool:
        return (address, key) in self.warm_storage

    def warm_storage_slot(self, address: bytes, key: int) -> bool:
        """Mark storage slot as warm. Returns True if it was already warm."""
        slot = (address, key)
        if slot in self.warm_storage:
            return True
        self.warm_storage.add(slot)
        self.record(StorageWarmed(address, key))
        return False

    # -- Logs --

    def add_log(self, log: Log) -> None:
        self.logs.append(log)
        self.record(LogEmitted())
