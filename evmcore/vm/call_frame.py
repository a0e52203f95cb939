"""
EVM call frames: one activation record per CALL/CREATE invocation.

A Message describes what a frame runs (who calls whom, with what value,
input and gas). A Frame adds the private execution state: program counter,
stack, memory, gas meter and the return data of its last sub-call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from evmcore.common.types import ZERO_ADDRESS
from evmcore.vm.exceptions import ErrorKind
from evmcore.vm.gas import GasMeter
from evmcore.vm.memory import Memory, Stack

if TYPE_CHECKING:
    from evmcore.vm.bytecode import Bytecode
    from evmcore.vm.journal import Checkpoint


class CallKind(Enum):
    CALL = "call"
    STATICCALL = "staticcall"
    DELEGATECALL = "delegatecall"
    CALLCODE = "callcode"
    CREATE = "create"
    CREATE2 = "create2"

    @property
    def is_create(self) -> bool:
        return self in (CallKind.CREATE, CallKind.CREATE2)


@dataclass
class Message:
    """Call context of one frame."""

    kind: CallKind = CallKind.CALL
    caller: bytes = ZERO_ADDRESS
    # Account whose storage and balance the code acts on
    target: bytes = ZERO_ADDRESS
    # Account whose code runs (differs from target for DELEGATECALL/CALLCODE)
    code_address: bytes = ZERO_ADDRESS
    value: int = 0
    data: bytes = b""
    gas: int = 0
    depth: int = 0
    is_static: bool = False
    # Whether `value` moves from caller to target (not for DELEGATECALL)
    transfers_value: bool = True
    # CREATE/CREATE2: init code and salt
    init_code: bytes = b""
    salt: Optional[int] = None
    # Where the caller wants the output written
    ret_offset: int = 0
    ret_size: int = 0


class Status(Enum):
    HALT = "halt"
    REVERT = "revert"
    ERROR = "error"


@dataclass
class ExecutionOutcome:
    """Terminal result of a frame."""

    status: Status
    output: bytes = b""
    gas_used: int = 0
    gas_left: int = 0
    gas_refunded: int = 0
    error: Optional[ErrorKind] = None
    created_address: Optional[bytes] = None

    @property
    def success(self) -> bool:
        return self.status is Status.HALT

    @property
    def is_revert(self) -> bool:
        return self.status is Status.REVERT

    @property
    def is_error(self) -> bool:
        return self.status is Status.ERROR


@dataclass(eq=False)
class Frame:
    """One frame in the EVM call stack."""

    message: Message
    bytecode: "Bytecode"
    gas: GasMeter
    stack: Stack = field(default_factory=Stack)
    memory: Memory = field(default_factory=Memory)

    pc: int = 0
    # Code of the active section (the whole code for legacy programs)
    code: bytes = b""
    section: int = 0
    # CALLF return addresses: (section, pc)
    return_stack: list[tuple[int, int]] = field(default_factory=list)

    # Return data from the last sub-call
    return_data: bytes = b""

    checkpoint: Optional["Checkpoint"] = None
    # Sub-call this frame is suspended on
    pending: Optional[Message] = None

    def __post_init__(self) -> None:
        if not self.code:
            self.code = self.bytecode.section(self.section)

    # -- Call context shortcuts --

    @property
    def address(self) -> bytes:
        return self.message.target

    @property
    def caller(self) -> bytes:
        return self.message.caller

    @property
    def value(self) -> int:
        return self.message.value

    @property
    def calldata(self) -> bytes:
        return self.message.data

    @property
    def depth(self) -> int:
        return self.message.depth

    @property
    def is_static(self) -> bool:
        return self.message.is_static

    def consume_gas(self, amount: int) -> None:
        self.gas.charge(amount)

    def charge_memory(self, offset: int, length: int) -> None:
        """Price, charge and perform the expansion covering [offset, offset+length)."""
        if length == 0:
            return
        self.gas.charge(self.memory.ensure_capacity(offset, length))
        self.memory.expand(offset, length)

    def __repr__(self) -> str:
        return (
            f"Frame(kind={self.message.kind.value}, depth={self.depth}, "
            f"address=0x{self.address.hex()}, pc={self.pc}, gas={self.gas.remaining})"
        )
