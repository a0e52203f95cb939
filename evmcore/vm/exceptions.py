"""
EVM execution errors and control-flow signals.

Every failure raised inside a frame is an EvmError carrying an ErrorKind.
The interpreter loop turns any EvmError into an Errored outcome; the kind
travels with the outcome so the caller can inspect it.

Halting opcodes (STOP, RETURN, REVERT, SELFDESTRUCT) and sub-call requests
are signalled with exceptions too, but they derive from ControlSignal so
they can never be mistaken for failures.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from evmcore.vm.call_frame import Message


class ErrorKind(Enum):
    STACK_OVERFLOW = "stack overflow"
    STACK_UNDERFLOW = "stack underflow"
    OUT_OF_GAS = "out of gas"
    INVALID_JUMP = "invalid jump destination"
    INVALID_OPCODE = "invalid opcode"
    WRITE_PROTECTION = "state modification in static context"
    MEMORY_LIMIT_EXCEEDED = "memory limit exceeded"
    DEPTH_EXCEEDED = "call depth exceeded"
    STRUCTURAL_VALIDATION = "malformed container"
    CALL_VALUE_OVERFLOW = "call value overflow"
    INSUFFICIENT_BALANCE = "insufficient balance"
    PRECOMPILE_FAILURE = "precompile failure"
    INVALID_OPERAND = "operand out of bounds"
    CREATE_COLLISION = "create collision"
    CODE_SIZE_LIMIT = "code size limit exceeded"
    INITCODE_SIZE_LIMIT = "initcode size limit exceeded"
    INVALID_CODE_PREFIX = "invalid code prefix"
    CODE_DEPOSIT_OUT_OF_GAS = "code deposit out of gas"
    RETURN_STACK_OVERFLOW = "return stack overflow"
    STEP_LIMIT_EXCEEDED = "step limit exceeded"


class EvmError(Exception):
    """Base class for EVM execution errors."""

    kind: ErrorKind = ErrorKind.INVALID_OPCODE


class StackOverflow(EvmError):
    kind = ErrorKind.STACK_OVERFLOW


class StackUnderflow(EvmError):
    kind = ErrorKind.STACK_UNDERFLOW


class OutOfGas(EvmError):
    kind = ErrorKind.OUT_OF_GAS


class InvalidJumpDest(EvmError):
    kind = ErrorKind.INVALID_JUMP


class InvalidOpcode(EvmError):
    kind = ErrorKind.INVALID_OPCODE


class WriteProtection(EvmError):
    kind = ErrorKind.WRITE_PROTECTION


class MemoryLimitExceeded(EvmError):
    kind = ErrorKind.MEMORY_LIMIT_EXCEEDED


class InsufficientBalance(EvmError):
    kind = ErrorKind.INSUFFICIENT_BALANCE


class InvalidOperand(EvmError):
    """RETURNDATACOPY / DATACOPY style reads past the end of a buffer."""

    kind = ErrorKind.INVALID_OPERAND


class InitcodeSizeLimit(EvmError):
    kind = ErrorKind.INITCODE_SIZE_LIMIT


class ReturnStackOverflow(EvmError):
    kind = ErrorKind.RETURN_STACK_OVERFLOW


# ---------------------------------------------------------------------------
# Container format validation
# ---------------------------------------------------------------------------

class EofValidationError(Enum):
    INVALID_MAGIC = "invalid magic"
    INVALID_VERSION = "invalid version"
    MISSING_TYPE_HEADER = "missing type section header"
    MISSING_CODE_HEADER = "missing code section header"
    MISSING_DATA_HEADER = "missing data section header"
    MISSING_TERMINATOR = "missing header terminator"
    INCOMPLETE_HEADER = "incomplete section header"
    ZERO_SECTION_SIZE = "zero section size"
    TOO_MANY_CODE_SECTIONS = "too many code sections"
    TOO_MANY_CONTAINERS = "too many container sections"
    INVALID_TYPE_SECTION_SIZE = "invalid type section size"
    INVALID_FIRST_SECTION_TYPE = "invalid first section type"
    INVALID_SECTION_TYPE = "invalid section type"
    MAX_STACK_HEIGHT_ABOVE_LIMIT = "max stack height above limit"
    INVALID_SECTION_BODIES_SIZE = "invalid section bodies size"
    UNDEFINED_INSTRUCTION = "undefined instruction"
    TRUNCATED_INSTRUCTION = "truncated instruction"
    INVALID_RJUMP_DESTINATION = "invalid relative jump destination"
    INVALID_CODE_SECTION_INDEX = "invalid code section index"
    INVALID_DATALOADN_INDEX = "invalid DATALOADN index"
    NON_RETURNING_CALLF_TARGET = "CALLF to non-returning section"
    INVALID_NON_RETURNING_FLAG = "RETF in non-returning section"
    JUMPF_INCOMPATIBLE_OUTPUTS = "JUMPF to section with incompatible outputs"
    MISSING_RETURN = "returning section without RETF or returning JUMPF"
    UNREACHABLE_INSTRUCTIONS = "unreachable instructions"
    STACK_UNDERFLOW = "stack underflow"
    STACK_OVERFLOW = "stack overflow"
    STACK_HEIGHT_MISMATCH = "stack height mismatch"
    INVALID_MAX_STACK_HEIGHT = "declared max stack height does not match code"
    MISSING_TERMINATING_INSTRUCTION = "missing terminating instruction"


class StructuralError(EvmError):
    """Raised when a container fails validation at load time."""

    kind = ErrorKind.STRUCTURAL_VALIDATION

    def __init__(self, reason: EofValidationError, detail: str = ""):
        self.reason = reason
        msg = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(msg)


# ---------------------------------------------------------------------------
# Precompile failures
# ---------------------------------------------------------------------------

class PrecompileFailureKind(Enum):
    OUT_OF_GAS = "out of gas"
    INVALID_INPUT_LENGTH = "invalid input length"
    INVALID_POINT = "point not on curve"
    INVALID_FINAL_FLAG = "invalid final flag"
    MODEXP_INPUT_TOO_LARGE = "modexp input too large"
    KZG_INVALID_VERSIONED_HASH = "mismatched versioned hash"
    KZG_VERIFICATION_FAILED = "kzg proof verification failed"
    KZG_SETUP_MISSING = "kzg trusted setup not configured"
    INVALID_FIELD_ELEMENT = "invalid field element encoding"


class PrecompileFailure(EvmError):
    kind = ErrorKind.PRECOMPILE_FAILURE

    def __init__(self, reason: PrecompileFailureKind, detail: str = ""):
        self.reason = reason
        msg = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(msg)


# ---------------------------------------------------------------------------
# Journal / transaction level
# ---------------------------------------------------------------------------

class JournalError(RuntimeError):
    """Checkpoints were committed or rewound out of order."""


class InvalidTransaction(ValueError):
    """Transaction rejected before any execution."""


# ---------------------------------------------------------------------------
# Control-flow signals
# ---------------------------------------------------------------------------

class ControlSignal(Exception):
    """Base class for non-error exits from the handler of an opcode."""


class StopExecution(ControlSignal):
    """STOP opcode, or running off the end of code."""


class ReturnData(ControlSignal):
    """RETURN opcode."""

    def __init__(self, data: bytes = b""):
        self.data = data
        super().__init__()


class Revert(ControlSignal):
    """REVERT opcode."""

    def __init__(self, data: bytes = b""):
        self.data = data
        super().__init__()


class SelfDestruct(ControlSignal):
    """SELFDESTRUCT opcode; the beneficiary transfer already happened."""


class SubCallRequest(ControlSignal):
    """Raised by CALL/CREATE-family handlers to ask for a child frame."""

    def __init__(self, message: "Message"):
        self.message = message
        super().__init__()
