"""
Interpreter loop: fetch-decode-execute over a single Frame.

run_frame() steps a frame until it reaches a terminal state (and returns its
ExecutionOutcome) or until a CALL/CREATE-family instruction asks for a child
frame (in which case frame.pending is set and None is returned). Once the
child is done the EVM calls resume_frame() and then run_frame() again.

There are two loop variants: the plain one has no inspector calls at all,
the inspected one calls step()/step_end() around every instruction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from evmcore.common.types import address_to_word
from evmcore.vm.call_frame import ExecutionOutcome, Status
from evmcore.vm.exceptions import (
    ControlSignal,
    ErrorKind,
    EvmError,
    InvalidOpcode,
    ReturnData,
    Revert,
    StackOverflow,
    StackUnderflow,
    SubCallRequest,
)
from evmcore.vm.opcodes import JumpTable, Op, opcode_name

if TYPE_CHECKING:
    from evmcore.vm.call_frame import Frame
    from evmcore.vm.evm import EVM


def run_frame(frame: Frame, evm: EVM, table: JumpTable) -> Optional[ExecutionOutcome]:
    """Execute until the frame halts, reverts, errors or requests a sub-call."""
    try:
        if evm.inspector is None:
            _run(frame, evm, table)
        else:
            _run_inspected(frame, evm, table)
    except SubCallRequest as request:
        frame.pending = request.message
        return None
    except ControlSignal as signal:
        return _halted(frame, signal)
    except EvmError as err:
        return ExecutionOutcome(
            status=Status.ERROR,
            gas_left=frame.gas.remaining,
            error=err.kind,
        )
    # Unreachable: both loops only exit by raising
    raise AssertionError("interpreter loop exited without a signal")


def _halted(frame: Frame, signal: ControlSignal) -> ExecutionOutcome:
    if isinstance(signal, Revert):
        return ExecutionOutcome(
            status=Status.REVERT,
            output=signal.data,
            gas_left=frame.gas.remaining,
        )
    output = signal.data if isinstance(signal, ReturnData) else b""
    return ExecutionOutcome(
        status=Status.HALT,
        output=output,
        gas_left=frame.gas.remaining,
        gas_refunded=frame.gas.refunded,
    )


def _fetch(frame: Frame, table: JumpTable):
    code = frame.code
    pc = frame.pc
    # Running off the end of code is an implicit STOP
    op = code[pc] if pc < len(code) else Op.STOP
    instruction = table[op]
    if instruction is None:
        raise InvalidOpcode(f"Invalid opcode: 0x{op:02x}")
    handler, static_gas, min_stack, max_stack = instruction
    size = frame.stack.size
    if size < min_stack:
        raise StackUnderflow(f"{opcode_name(op)} needs {min_stack} items, have {size}")
    if size > max_stack:
        raise StackOverflow(f"{opcode_name(op)} would exceed the stack limit")
    return op, handler, static_gas


def _run(frame: Frame, evm: EVM, table: JumpTable) -> None:
    charge = frame.gas.charge
    while True:
        _op, handler, static_gas = _fetch(frame, table)
        charge(static_gas)
        handler(frame, evm)


def _run_inspected(frame: Frame, evm: EVM, table: JumpTable) -> None:
    inspector = evm.inspector
    charge = frame.gas.charge
    while True:
        code = frame.code
        op = code[frame.pc] if frame.pc < len(code) else Op.STOP
        forced = inspector.step(frame, op)
        if forced is not None:
            raise _forced_error(forced)
        try:
            _op, handler, static_gas = _fetch(frame, table)
            charge(static_gas)
            handler(frame, evm)
        except (ControlSignal, EvmError):
            # Halting, suspending and failing instructions still end their step
            inspector.step_end(frame, op)
            raise
        inspector.step_end(frame, op)


def _forced_error(kind: ErrorKind) -> EvmError:
    err = EvmError(f"halted by inspector: {kind.value}")
    err.kind = kind
    return err


def resume_frame(frame: Frame, outcome: ExecutionOutcome) -> None:
    """Fold a finished child's outcome back into its suspended parent."""
    message = frame.pending
    frame.pending = None

    frame.gas.return_gas(outcome.gas_left)
    if outcome.success:
        frame.gas.refund(outcome.gas_refunded)

    if message.kind.is_create:
        if outcome.success and outcome.created_address is not None:
            frame.stack.push(address_to_word(outcome.created_address))
        else:
            frame.stack.push(0)
        frame.return_data = outcome.output if outcome.is_revert else b""
    else:
        frame.stack.push(1 if outcome.success else 0)
        frame.return_data = outcome.output
        size = min(message.ret_size, len(outcome.output))
        if size:
            frame.memory.write(message.ret_offset, outcome.output[:size])

    frame.pc += 1
