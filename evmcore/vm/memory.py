"""
EVM Stack and Memory implementations.

Stack: bounded LIFO of 256-bit (uint256) values, 1024 slots by default.
Memory: byte-addressable, grows forward in 32-byte words. Growth is priced
by ensure_capacity() and applied by expand(); reads and writes never grow
memory on their own.
"""

from __future__ import annotations

from typing import Optional

from evmcore.vm.exceptions import MemoryLimitExceeded, StackOverflow, StackUnderflow

# Max uint256
UINT256_MAX = (1 << 256) - 1
UINT256_CEIL = 1 << 256

MAX_STACK_DEPTH = 1024


class Stack:
    """EVM stack: each item is a 256-bit unsigned integer."""

    __slots__ = ("_data", "limit")

    def __init__(self, limit: int = MAX_STACK_DEPTH) -> None:
        self._data: list[int] = []
        self.limit = limit

    def push(self, value: int) -> None:
        if len(self._data) >= self.limit:
            raise StackOverflow(f"Stack overflow (max {self.limit})")
        self._data.append(value & UINT256_MAX)

    def pop(self) -> int:
        if not self._data:
            raise StackUnderflow("Stack underflow")
        return self._data.pop()

    def pop_many(self, count: int) -> list[int]:
        """Pop `count` items, top of stack first."""
        if count > len(self._data):
            raise StackUnderflow(f"Stack underflow: need {count}, have {len(self._data)}")
        items = self._data[-count:] if count else []
        del self._data[len(self._data) - count:]
        items.reverse()
        return items

    def peek(self, depth: int = 0) -> int:
        if depth >= len(self._data):
            raise StackUnderflow(f"Stack underflow: peek({depth})")
        return self._data[-(depth + 1)]

    def swap(self, depth: int) -> None:
        """Swap top with item at depth (1-indexed: SWAP1 uses depth=1)."""
        if depth >= len(self._data):
            raise StackUnderflow(f"Stack underflow: swap({depth})")
        idx = -(depth + 1)
        self._data[-1], self._data[idx] = self._data[idx], self._data[-1]

    def exchange(self, n: int, m: int) -> None:
        """Swap the items at depths n and m (0 is the top)."""
        if max(n, m) >= len(self._data):
            raise StackUnderflow(f"Stack underflow: exchange({n}, {m})")
        a, b = -(n + 1), -(m + 1)
        self._data[a], self._data[b] = self._data[b], self._data[a]

    def dup(self, depth: int) -> None:
        """Duplicate item at depth (1-indexed: DUP1 uses depth=1)."""
        if depth > len(self._data):
            raise StackUnderflow(f"Stack underflow: dup({depth})")
        if len(self._data) >= self.limit:
            raise StackOverflow("Stack overflow on DUP")
        self._data.append(self._data[-depth])

    def items(self) -> list[int]:
        """Snapshot of the stack, bottom first."""
        return list(self._data)

    @property
    def size(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return len(self._data)


def memory_word_size(byte_size: int) -> int:
    """Convert byte size to word (32-byte) count, rounding up."""
    return (byte_size + 31) // 32


class Memory:
    """EVM memory: byte-addressable, expands in 32-byte word increments.

    Expansion cost follows the yellow paper formula
    ``gas_per_word * words + words**2 // quad_divisor`` and is charged by the
    caller between ensure_capacity() and expand().
    """

    __slots__ = ("_data", "limit", "gas_per_word", "quad_divisor")

    def __init__(
        self,
        limit: Optional[int] = None,
        gas_per_word: int = 3,
        quad_divisor: int = 512,
    ) -> None:
        self._data = bytearray()
        self.limit = limit
        self.gas_per_word = gas_per_word
        self.quad_divisor = quad_divisor

    def _total_cost(self, words: int) -> int:
        return self.gas_per_word * words + (words * words) // self.quad_divisor

    def ensure_capacity(self, offset: int, length: int) -> int:
        """Return the gas needed to cover [offset, offset+length).

        Does not grow memory. Raises MemoryLimitExceeded when the grown size
        would pass the configured ceiling.
        """
        if length == 0:
            return 0
        end = offset + length
        if end <= len(self._data):
            return 0
        new_words = memory_word_size(end)
        if self.limit is not None and new_words * 32 > self.limit:
            raise MemoryLimitExceeded(
                f"Memory limit exceeded: {new_words * 32} > {self.limit}"
            )
        return self._total_cost(new_words) - self._total_cost(len(self._data) // 32)

    def expand(self, offset: int, length: int) -> None:
        """Grow (zero-filled) to cover [offset, offset+length)."""
        if length == 0:
            return
        end = offset + length
        if end > len(self._data):
            new_size = memory_word_size(end) * 32
            self._data.extend(bytes(new_size - len(self._data)))

    def _check(self, offset: int, length: int) -> None:
        if offset + length > len(self._data):
            raise IndexError(
                f"Memory access [{offset}, {offset + length}) past size {len(self._data)}"
            )

    def read(self, offset: int, length: int) -> bytes:
        """Read `length` bytes from memory starting at `offset`."""
        if length == 0:
            return b""
        self._check(offset, length)
        return bytes(self._data[offset : offset + length])

    def read_word(self, offset: int) -> int:
        """Load a 32-byte word as uint256."""
        return int.from_bytes(self.read(offset, 32), "big")

    def write(self, offset: int, data: bytes) -> None:
        """Write bytes to memory at offset."""
        if len(data) == 0:
            return
        self._check(offset, len(data))
        self._data[offset : offset + len(data)] = data

    def write_word(self, offset: int, value: int) -> None:
        """Store a uint256 as 32 bytes at offset."""
        self.write(offset, (value & UINT256_MAX).to_bytes(32, "big"))

    def write_byte(self, offset: int, value: int) -> None:
        self._check(offset, 1)
        self._data[offset] = value & 0xFF

    def copy(self, dst: int, src: int, length: int) -> None:
        """Copy `length` bytes within memory from src to dst."""
        if length == 0:
            return
        self._check(max(dst, src), length)
        self._data[dst : dst + length] = bytes(self._data[src : src + length])

    @property
    def size(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return len(self._data)
