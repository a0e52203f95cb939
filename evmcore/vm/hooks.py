"""
EVM inspector system.

Provides extension points for observing execution without modifying the
interpreter. The EVM runs a loop variant without any hook calls when no
inspector is installed; Inspector itself is all no-ops.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from evmcore.vm.exceptions import ErrorKind

if TYPE_CHECKING:
    from evmcore.common.types import Log
    from evmcore.vm.call_frame import ExecutionOutcome, Frame, Message


class Inspector:
    """Base inspector interface. Override methods to observe execution."""

    def initialize_frame(self, frame: Frame) -> None:
        """Called once a child frame is built, before its first instruction."""
        pass

    def step(self, frame: Frame, opcode: int) -> Optional[ErrorKind]:
        """Called before each instruction.

        Returning an ErrorKind forces the frame into the Errored state with
        that kind. This is the only way an inspector can alter execution.
        """
        return None

    def step_end(self, frame: Frame, opcode: int) -> None:
        """Called after every instruction that step() let run.

        This includes the instruction that ends the frame and a CALL or
        CREATE handing control to a child frame.
        """
        pass

    def call(self, message: Message) -> None:
        """Called when a CALL/CREATE-family request is about to be handled."""
        pass

    def call_end(self, message: Message, outcome: ExecutionOutcome) -> None:
        """Called with the outcome of every message, including failed spawns."""
        pass

    def log(self, frame: Frame, log: Log) -> None:
        pass

    def selfdestruct(self, frame: Frame, beneficiary: bytes, balance: int) -> None:
        pass


class StepLimiter(Inspector):
    """Ceiling on the number of instructions executed across all frames."""

    def __init__(self, max_steps: int) -> None:
        self.max_steps = max_steps
        self.steps = 0

    def step(self, frame: Frame, opcode: int) -> Optional[ErrorKind]:
        self.steps += 1
        if self.steps > self.max_steps:
            return ErrorKind.STEP_LIMIT_EXCEEDED
        return None


class CallRecorder(Inspector):
    """Keeps every (message, outcome) pair, innermost calls first."""

    def __init__(self) -> None:
        self.calls: list[tuple[Message, ExecutionOutcome]] = []
        self.max_depth = 0

    def call(self, message: Message) -> None:
        self.max_depth = max(self.max_depth, message.depth)

    def call_end(self, message: Message, outcome: ExecutionOutcome) -> None:
        self.calls.append((message, outcome))

    def errors(self) -> list[ErrorKind]:
        return [outcome.error for _, outcome in self.calls if outcome.error is not None]
