"""
Bytecode analysis.

A Bytecode is built once per distinct program and shared by every frame
that runs it. Legacy code gets a JUMPDEST bitmap; container-format (EOF v1)
code is parsed and validated eagerly so the interpreter can trust it.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from evmcore.vm.exceptions import EofValidationError, StructuralError
from evmcore.vm.opcodes import (
    EOF_ONLY_OPCODES,
    EOF_VALID_OPCODES,
    OPCODES,
    TERMINATING_OPCODES,
    Op,
)

# ---------------------------------------------------------------------------
# Container format constants
# ---------------------------------------------------------------------------

EOF_MAGIC = b"\xef\x00"
EOF_VERSION = 1

KIND_TYPES = 0x01
KIND_CODE = 0x02
KIND_CONTAINER = 0x03
KIND_DATA = 0xFF
HEADER_TERMINATOR = 0x00

TYPE_ENTRY_SIZE = 4
MAX_CODE_SECTIONS = 1024
MAX_CONTAINER_SECTIONS = 256
MAX_STACK_HEIGHT = 1023
MAX_SECTION_INPUTS = 127
NON_RETURNING = 0x80

ANALYSIS_CACHE_SIZE = 1024


@dataclass(frozen=True)
class SectionType:
    inputs: int
    outputs: int
    max_stack_height: int

    @property
    def non_returning(self) -> bool:
        return self.outputs == NON_RETURNING


@dataclass(frozen=True)
class Container:
    """A validated EOF v1 container."""

    raw: bytes
    types: tuple[SectionType, ...]
    code_sections: tuple[bytes, ...]
    containers: tuple["Container", ...]
    data: bytes


class Bytecode:
    """Immutable, analysed program code."""

    __slots__ = ("code", "_jumpdests", "container")

    def __init__(
        self,
        code: bytes,
        jumpdests: Optional[bytearray] = None,
        container: Optional[Container] = None,
    ) -> None:
        self.code = code
        self._jumpdests = jumpdests
        self.container = container

    @property
    def is_eof(self) -> bool:
        return self.container is not None

    def is_valid_jump(self, dest: int) -> bool:
        jumpdests = self._jumpdests
        return jumpdests is not None and dest < len(jumpdests) and jumpdests[dest] == 1

    def section(self, index: int) -> bytes:
        """Code executed for code section `index` (the whole code for legacy)."""
        if self.container is None:
            return self.code
        return self.container.code_sections[index]

    def __len__(self) -> int:
        return len(self.code)

    def __repr__(self) -> str:
        kind = "eof" if self.is_eof else "legacy"
        return f"Bytecode({kind}, {len(self.code)} bytes)"


# ---------------------------------------------------------------------------
# Legacy analysis
# ---------------------------------------------------------------------------

def compute_jumpdests(code: bytes) -> bytearray:
    """Bitmap of valid JUMPDEST positions.

    PUSH instructions' immediate data bytes are not valid jump targets.
    """
    bitmap = bytearray(len(code))
    i = 0
    n = len(code)
    while i < n:
        op = code[i]
        if op == Op.JUMPDEST:
            bitmap[i] = 1
        elif Op.PUSH1 <= op <= Op.PUSH32:
            i += op - Op.PUSH0  # skip 1..32 data bytes
        i += 1
    return bitmap


@lru_cache(maxsize=ANALYSIS_CACHE_SIZE)
def analyze(code: bytes, eof_enabled: bool = False) -> Bytecode:
    """Build (or fetch the cached) Bytecode for raw code.

    With the container format enabled, code starting with the EOF magic is
    validated as a container and StructuralError is raised if malformed.
    """
    if eof_enabled and code.startswith(EOF_MAGIC):
        return Bytecode(code, container=parse_container(code))
    return Bytecode(code, jumpdests=compute_jumpdests(code))


# ---------------------------------------------------------------------------
# Container parsing
# ---------------------------------------------------------------------------

class _Reader:
    __slots__ = ("data", "pos")

    def __init__(self, data: bytes, pos: int = 0) -> None:
        self.data = data
        self.pos = pos

    def uint(self, width: int) -> int:
        end = self.pos + width
        if end > len(self.data):
            raise StructuralError(EofValidationError.INCOMPLETE_HEADER, f"at offset {self.pos}")
        value = int.from_bytes(self.data[self.pos:end], "big")
        self.pos = end
        return value

    def kind(self, expected: int, missing: EofValidationError) -> None:
        if self.pos >= len(self.data):
            raise StructuralError(missing)
        if self.data[self.pos] != expected:
            raise StructuralError(missing, f"got 0x{self.data[self.pos]:02x}")
        self.pos += 1

    def peek(self) -> Optional[int]:
        return self.data[self.pos] if self.pos < len(self.data) else None


def parse_container(raw: bytes) -> Container:
    """Parse and validate an EOF v1 container, subcontainers included."""
    if not raw.startswith(EOF_MAGIC):
        raise StructuralError(EofValidationError.INVALID_MAGIC)
    if len(raw) < 3 or raw[2] != EOF_VERSION:
        raise StructuralError(EofValidationError.INVALID_VERSION)

    r = _Reader(raw, 3)

    r.kind(KIND_TYPES, EofValidationError.MISSING_TYPE_HEADER)
    types_size = r.uint(2)
    if types_size == 0:
        raise StructuralError(EofValidationError.ZERO_SECTION_SIZE, "type section")

    r.kind(KIND_CODE, EofValidationError.MISSING_CODE_HEADER)
    num_code = r.uint(2)
    if num_code == 0:
        raise StructuralError(EofValidationError.ZERO_SECTION_SIZE, "no code sections")
    if num_code > MAX_CODE_SECTIONS:
        raise StructuralError(EofValidationError.TOO_MANY_CODE_SECTIONS, str(num_code))
    code_sizes = [r.uint(2) for _ in range(num_code)]
    if 0 in code_sizes:
        raise StructuralError(EofValidationError.ZERO_SECTION_SIZE, "code section")

    container_sizes: list[int] = []
    if r.peek() == KIND_CONTAINER:
        r.pos += 1
        num_containers = r.uint(2)
        if num_containers == 0:
            raise StructuralError(EofValidationError.ZERO_SECTION_SIZE, "no container sections")
        if num_containers > MAX_CONTAINER_SECTIONS:
            raise StructuralError(EofValidationError.TOO_MANY_CONTAINERS, str(num_containers))
        container_sizes = [r.uint(4) for _ in range(num_containers)]
        if 0 in container_sizes:
            raise StructuralError(EofValidationError.ZERO_SECTION_SIZE, "container section")

    r.kind(KIND_DATA, EofValidationError.MISSING_DATA_HEADER)
    data_size = r.uint(2)
    r.kind(HEADER_TERMINATOR, EofValidationError.MISSING_TERMINATOR)

    if types_size != TYPE_ENTRY_SIZE * num_code:
        raise StructuralError(
            EofValidationError.INVALID_TYPE_SECTION_SIZE,
            f"{types_size} bytes for {num_code} code sections",
        )

    body_size = types_size + sum(code_sizes) + sum(container_sizes) + data_size
    if len(raw) - r.pos != body_size:
        raise StructuralError(
            EofValidationError.INVALID_SECTION_BODIES_SIZE,
            f"expected {body_size}, got {len(raw) - r.pos}",
        )

    pos = r.pos
    types = []
    for i in range(num_code):
        entry = raw[pos + i * TYPE_ENTRY_SIZE: pos + (i + 1) * TYPE_ENTRY_SIZE]
        types.append(SectionType(entry[0], entry[1], int.from_bytes(entry[2:4], "big")))
    pos += types_size
    _validate_types(types)

    code_sections = []
    for size in code_sizes:
        code_sections.append(raw[pos:pos + size])
        pos += size

    containers = []
    for size in container_sizes:
        containers.append(parse_container(raw[pos:pos + size]))
        pos += size

    data = raw[pos:pos + data_size]

    for index, code in enumerate(code_sections):
        _validate_code(index, code, types, data_size)

    return Container(
        raw=raw,
        types=tuple(types),
        code_sections=tuple(code_sections),
        containers=tuple(containers),
        data=data,
    )


def _validate_types(types: list[SectionType]) -> None:
    first = types[0]
    if first.inputs != 0 or not first.non_returning:
        raise StructuralError(EofValidationError.INVALID_FIRST_SECTION_TYPE)
    for i, t in enumerate(types):
        if t.inputs > MAX_SECTION_INPUTS or t.outputs > NON_RETURNING:
            raise StructuralError(EofValidationError.INVALID_SECTION_TYPE, f"section {i}")
        if t.max_stack_height > MAX_STACK_HEIGHT:
            raise StructuralError(
                EofValidationError.MAX_STACK_HEIGHT_ABOVE_LIMIT,
                f"section {i}: {t.max_stack_height}",
            )


def immediate_size(code: bytes, pos: int) -> int:
    """Number of immediate bytes following the instruction at `pos`."""
    op = code[pos]
    if Op.PUSH1 <= op <= Op.PUSH32:
        return op - Op.PUSH0
    if op in (Op.RJUMP, Op.RJUMPI, Op.CALLF, Op.JUMPF, Op.DATALOADN):
        return 2
    if op in (Op.DUPN, Op.SWAPN, Op.EXCHANGE):
        return 1
    if op == Op.RJUMPV:
        if pos + 1 >= len(code):
            return 1
        return 1 + 2 * (code[pos + 1] + 1)
    return 0


def _signed16(data: bytes) -> int:
    return int.from_bytes(data, "big", signed=True)


def _validate_code(
    index: int,
    code: bytes,
    types: list[SectionType],
    data_size: int,
) -> None:
    starts: set[int] = set()
    targets: list[int] = []
    pos = 0
    op = None
    returns = False

    while pos < len(code):
        op = code[pos]
        starts.add(pos)
        if op not in EOF_VALID_OPCODES:
            raise StructuralError(
                EofValidationError.UNDEFINED_INSTRUCTION,
                f"0x{op:02x} at section {index} offset {pos}",
            )
        imm = immediate_size(code, pos)
        end = pos + 1 + imm
        if end > len(code):
            raise StructuralError(
                EofValidationError.TRUNCATED_INSTRUCTION,
                f"section {index} offset {pos}",
            )

        if op in (Op.RJUMP, Op.RJUMPI):
            targets.append(end + _signed16(code[pos + 1:pos + 3]))
        elif op == Op.RJUMPV:
            count = code[pos + 1] + 1
            for k in range(count):
                at = pos + 2 + 2 * k
                targets.append(end + _signed16(code[at:at + 2]))
        elif op in (Op.CALLF, Op.JUMPF):
            target = int.from_bytes(code[pos + 1:pos + 3], "big")
            if target >= len(types):
                raise StructuralError(
                    EofValidationError.INVALID_CODE_SECTION_INDEX,
                    f"section {index} offset {pos} -> {target}",
                )
            if op == Op.CALLF and types[target].non_returning:
                raise StructuralError(EofValidationError.NON_RETURNING_CALLF_TARGET, str(target))
            if op == Op.JUMPF and not types[target].non_returning:
                # A returning target hands its outputs to this section's caller
                if types[index].non_returning or types[target].outputs > types[index].outputs:
                    raise StructuralError(
                        EofValidationError.JUMPF_INCOMPATIBLE_OUTPUTS,
                        f"section {index} -> {target}",
                    )
                returns = True
        elif op == Op.RETF:
            if types[index].non_returning:
                raise StructuralError(EofValidationError.INVALID_NON_RETURNING_FLAG, str(index))
            returns = True
        elif op == Op.DATALOADN:
            offset = int.from_bytes(code[pos + 1:pos + 3], "big")
            if offset + 32 > data_size:
                raise StructuralError(EofValidationError.INVALID_DATALOADN_INDEX, str(offset))

        pos = end

    if op not in TERMINATING_OPCODES:
        raise StructuralError(EofValidationError.MISSING_TERMINATING_INSTRUCTION, f"section {index}")

    for target in targets:
        if target not in starts:
            raise StructuralError(
                EofValidationError.INVALID_RJUMP_DESTINATION,
                f"section {index} -> {target}",
            )

    if not types[index].non_returning and not returns:
        raise StructuralError(EofValidationError.MISSING_RETURN, f"section {index}")

    _validate_stack(index, code, types)


def _stack_effect(code: bytes, pos: int, types: list[SectionType]) -> tuple[int, int]:
    """(items required, items left in their place) for the instruction at `pos`."""
    op = code[pos]
    if op == Op.CALLF or op == Op.JUMPF:
        target = types[int.from_bytes(code[pos + 1:pos + 3], "big")]
        outputs = 0 if op == Op.JUMPF else target.outputs
        return target.inputs, outputs
    if op == Op.DUPN:
        n = code[pos + 1] + 1
        return n, n + 1
    if op == Op.SWAPN:
        n = code[pos + 1] + 2
        return n, n
    if op == Op.EXCHANGE:
        n = (code[pos + 1] >> 4) + (code[pos + 1] & 0x0F) + 3
        return n, n
    definition = OPCODES.get(op) or EOF_ONLY_OPCODES[op]
    return definition.pops, definition.pushes


def _successors(code: bytes, pos: int, end: int) -> list[int]:
    op = code[pos]
    if op == Op.RJUMP:
        return [end + _signed16(code[pos + 1:pos + 3])]
    if op == Op.RJUMPI:
        return [end, end + _signed16(code[pos + 1:pos + 3])]
    if op == Op.RJUMPV:
        count = code[pos + 1] + 1
        return [end] + [
            end + _signed16(code[pos + 2 + 2 * k:pos + 4 + 2 * k]) for k in range(count)
        ]
    if op in TERMINATING_OPCODES:
        return []
    return [end]


def _validate_stack(index: int, code: bytes, types: list[SectionType]) -> None:
    """Single forward pass tracking the [min, max] stack height at every instruction.

    Forward jumps widen the range at their target; backward jumps must
    arrive with exactly the range already recorded there. Every
    instruction must be reachable and the highest height seen must equal
    the declared max_stack_height.
    """
    section = types[index]
    lowest = [-1] * len(code)
    highest = [-1] * len(code)
    lowest[0] = highest[0] = section.inputs
    max_height = section.inputs

    pos = 0
    while pos < len(code):
        low, high = lowest[pos], highest[pos]
        where = f"section {index} offset {pos}"
        if low < 0:
            raise StructuralError(EofValidationError.UNREACHABLE_INSTRUCTIONS, where)

        op = code[pos]
        end = pos + 1 + immediate_size(code, pos)
        required, produced = _stack_effect(code, pos, types)
        if low < required:
            raise StructuralError(EofValidationError.STACK_UNDERFLOW, f"{where}: {low} < {required}")

        if op == Op.CALLF or op == Op.JUMPF:
            target = types[int.from_bytes(code[pos + 1:pos + 3], "big")]
            if high + target.max_stack_height - target.inputs > MAX_STACK_HEIGHT:
                raise StructuralError(EofValidationError.STACK_OVERFLOW, where)
            if op == Op.JUMPF and not target.non_returning:
                expected = section.outputs + target.inputs - target.outputs
                if low != expected or high != expected:
                    raise StructuralError(
                        EofValidationError.STACK_HEIGHT_MISMATCH,
                        f"{where}: JUMPF needs exactly {expected}",
                    )
        elif op == Op.RETF:
            if low != section.outputs or high != section.outputs:
                raise StructuralError(
                    EofValidationError.STACK_HEIGHT_MISMATCH,
                    f"{where}: RETF needs exactly {section.outputs}",
                )

        low += produced - required
        high += produced - required
        max_height = max(max_height, high)

        for successor in _successors(code, pos, end):
            if successor > pos:
                if lowest[successor] < 0:
                    lowest[successor], highest[successor] = low, high
                else:
                    lowest[successor] = min(lowest[successor], low)
                    highest[successor] = max(highest[successor], high)
            elif lowest[successor] != low or highest[successor] != high:
                raise StructuralError(
                    EofValidationError.STACK_HEIGHT_MISMATCH,
                    f"{where}: backward jump to {successor}",
                )
        pos = end

    if max_height > MAX_STACK_HEIGHT:
        raise StructuralError(EofValidationError.MAX_STACK_HEIGHT_ABOVE_LIMIT, f"section {index}")
    if max_height != section.max_stack_height:
        raise StructuralError(
            EofValidationError.INVALID_MAX_STACK_HEIGHT,
            f"section {index}: declared {section.max_stack_height}, computed {max_height}",
        )
