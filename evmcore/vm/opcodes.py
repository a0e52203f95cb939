"""
EVM opcode definitions and handlers.

Each handler takes a Frame and the running EVM and modifies them, advancing
the program counter itself. Handlers of CALL/CREATE-family opcodes do not
run the callee: they charge the caller, describe the child in a Message
and raise SubCallRequest; the EVM resumes the frame once the child is done.

build_jump_table() turns the definitions below into a 256-entry table for
one rule-set: (handler, static_gas, min_stack, max_stack) or None.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, Callable, NamedTuple, Optional, Union

from evmcore.common.config import Fork, RuleSet
from evmcore.common.crypto import keccak256
from evmcore.common.types import Log, address_from_word, address_to_word
from evmcore.vm.call_frame import CallKind, Message
from evmcore.vm.exceptions import (
    InitcodeSizeLimit,
    InvalidJumpDest,
    InvalidOpcode,
    InvalidOperand,
    OutOfGas,
    ReturnData,
    ReturnStackOverflow,
    Revert,
    SelfDestruct,
    StackOverflow,
    StopExecution,
    SubCallRequest,
    WriteProtection,
)
from evmcore.vm.gas import (
    G_BASE,
    G_BLOCKHASH,
    G_CALLF,
    G_DATALOAD,
    G_EXP,
    G_HIGH,
    G_JUMPDEST,
    G_KECCAK256,
    G_LOG,
    G_LOG_DATA,
    G_LOG_TOPIC,
    G_LOW,
    G_MID,
    G_RETF,
    G_RJUMP,
    G_RJUMPI,
    G_SELFBALANCE,
    G_VERY_LOW,
    G_WARM_ACCESS,
    G_ZERO,
    call_gas,
    copy_gas,
    create_gas,
    exp_gas,
    initcode_gas,
    keccak_gas,
    sstore_gas,
)
from evmcore.vm.host import BLOCKHASH_WINDOW
from evmcore.vm.memory import UINT256_CEIL, UINT256_MAX

if TYPE_CHECKING:
    from evmcore.vm.call_frame import Frame
    from evmcore.vm.evm import EVM

RETURN_STACK_LIMIT = 1024


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_signed(value: int) -> int:
    """Convert uint256 to signed int256."""
    if value >= (1 << 255):
        return value - UINT256_CEIL
    return value


def _to_unsigned(value: int) -> int:
    """Convert signed int256 to uint256."""
    return value % UINT256_CEIL


def _padded(data: bytes, offset: int, size: int) -> bytes:
    """data[offset:offset+size], zero-padded to `size`."""
    if offset >= len(data):
        return bytes(size)
    return data[offset : offset + size].ljust(size, b"\x00")


def _charge_account_access(frame: Frame, evm: EVM, address: bytes) -> None:
    """EIP-2929: charge the cold surcharge on first access to an account."""
    rules = evm.rules
    if rules.access_lists and not evm.journal.warm_address(address):
        frame.consume_gas(rules.cold_account_access_gas - G_WARM_ACCESS)


def _is_dead(evm: EVM, address: bytes) -> bool:
    """Whether touching `address` with value would create a new account."""
    if evm.rules.state_clearing:
        return evm.host.is_empty(address)
    return not evm.host.account_exists(address)


# ---------------------------------------------------------------------------
# Opcode enum / names
# ---------------------------------------------------------------------------

# fmt: off
class Op:
    STOP            = 0x00
    ADD             = 0x01
    MUL             = 0x02
    SUB             = 0x03
    DIV             = 0x04
    SDIV            = 0x05
    MOD             = 0x06
    SMOD            = 0x07
    ADDMOD          = 0x08
    MULMOD          = 0x09
    EXP             = 0x0A
    SIGNEXTEND      = 0x0B
    LT              = 0x10
    GT              = 0x11
    SLT             = 0x12
    SGT             = 0x13
    EQ              = 0x14
    ISZERO          = 0x15
    AND             = 0x16
    OR              = 0x17
    XOR             = 0x18
    NOT             = 0x19
    BYTE            = 0x1A
    SHL             = 0x1B
    SHR             = 0x1C
    SAR             = 0x1D
    CLZ             = 0x1E
    KECCAK256       = 0x20
    ADDRESS         = 0x30
    BALANCE         = 0x31
    ORIGIN          = 0x32
    CALLER          = 0x33
    CALLVALUE       = 0x34
    CALLDATALOAD    = 0x35
    CALLDATASIZE    = 0x36
    CALLDATACOPY    = 0x37
    CODESIZE        = 0x38
    CODECOPY        = 0x39
    GASPRICE        = 0x3A
    EXTCODESIZE     = 0x3B
    EXTCODECOPY     = 0x3C
    RETURNDATASIZE  = 0x3D
    RETURNDATACOPY  = 0x3E
    EXTCODEHASH     = 0x3F
    BLOCKHASH       = 0x40
    COINBASE        = 0x41
    TIMESTAMP       = 0x42
    NUMBER          = 0x43
    PREVRANDAO      = 0x44  # was DIFFICULTY pre-merge
    GASLIMIT        = 0x45
    CHAINID         = 0x46
    SELFBALANCE     = 0x47
    BASEFEE         = 0x48
    BLOBHASH        = 0x49
    BLOBBASEFEE     = 0x4A
    POP             = 0x50
    MLOAD           = 0x51
    MSTORE          = 0x52
    MSTORE8         = 0x53
    SLOAD           = 0x54
    SSTORE          = 0x55
    JUMP            = 0x56
    JUMPI           = 0x57
    PC              = 0x58
    MSIZE           = 0x59
    GAS             = 0x5A
    JUMPDEST        = 0x5B
    TLOAD           = 0x5C
    TSTORE          = 0x5D
    MCOPY           = 0x5E
    PUSH0           = 0x5F
    PUSH1           = 0x60
    PUSH2           = 0x61
    PUSH32          = 0x7F
    DUP1            = 0x80
    DUP16           = 0x8F
    SWAP1           = 0x90
    SWAP16          = 0x9F
    LOG0            = 0xA0
    LOG1            = 0xA1
    LOG2            = 0xA2
    LOG4            = 0xA4
    DATALOAD        = 0xD0
    DATALOADN       = 0xD1
    DATASIZE        = 0xD2
    DATACOPY        = 0xD3
    RJUMP           = 0xE0
    RJUMPI          = 0xE1
    RJUMPV          = 0xE2
    CALLF           = 0xE3
    RETF            = 0xE4
    JUMPF           = 0xE5
    DUPN            = 0xE6
    SWAPN           = 0xE7
    EXCHANGE        = 0xE8
    CREATE          = 0xF0
    CALL            = 0xF1
    CALLCODE        = 0xF2
    RETURN          = 0xF3
    DELEGATECALL    = 0xF4
    CREATE2         = 0xF5
    STATICCALL      = 0xFA
    REVERT          = 0xFD
    INVALID         = 0xFE
    SELFDESTRUCT    = 0xFF
# fmt: on


# ---------------------------------------------------------------------------
# Opcode handlers
# ---------------------------------------------------------------------------

def op_stop(frame, evm):
    raise StopExecution()


# -- Arithmetic --

def op_add(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a + b) & UINT256_MAX)
    frame.pc += 1


def op_mul(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a * b) & UINT256_MAX)
    frame.pc += 1


def op_sub(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a - b) & UINT256_MAX)
    frame.pc += 1


def op_div(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a // b if b != 0 else 0)
    frame.pc += 1


def op_sdiv(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    if b == 0:
        frame.stack.push(0)
    else:
        sa, sb = _to_signed(a), _to_signed(b)
        if sa == -(1 << 255) and sb == -1:
            frame.stack.push(1 << 255)  # overflow case
        else:
            sign = -1 if (sa < 0) ^ (sb < 0) else 1
            frame.stack.push(_to_unsigned(sign * (abs(sa) // abs(sb))))
    frame.pc += 1


def op_mod(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a % b if b != 0 else 0)
    frame.pc += 1


def op_smod(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    if b == 0:
        frame.stack.push(0)
    else:
        sa, sb = _to_signed(a), _to_signed(b)
        sign = -1 if sa < 0 else 1
        frame.stack.push(_to_unsigned(sign * (abs(sa) % abs(sb))))
    frame.pc += 1


def op_addmod(frame, evm):
    a, b, n = frame.stack.pop(), frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a + b) % n if n != 0 else 0)
    frame.pc += 1


def op_mulmod(frame, evm):
    a, b, n = frame.stack.pop(), frame.stack.pop(), frame.stack.pop()
    frame.stack.push((a * b) % n if n != 0 else 0)
    frame.pc += 1


def op_exp(frame, evm):
    base, exponent = frame.stack.pop(), frame.stack.pop()
    frame.consume_gas(exp_gas(evm.rules, exponent))
    frame.stack.push(pow(base, exponent, UINT256_CEIL))
    frame.pc += 1


def op_signextend(frame, evm):
    b, x = frame.stack.pop(), frame.stack.pop()
    if b < 31:
        bit = b * 8 + 7
        mask = (1 << bit) - 1
        if x & (1 << bit):
            frame.stack.push(x | (UINT256_MAX - mask))
        else:
            frame.stack.push(x & mask)
    else:
        frame.stack.push(x)
    frame.pc += 1


# -- Comparison & Bitwise --

def op_lt(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if a < b else 0)
    frame.pc += 1


def op_gt(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if a > b else 0)
    frame.pc += 1


def op_slt(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if _to_signed(a) < _to_signed(b) else 0)
    frame.pc += 1


def op_sgt(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if _to_signed(a) > _to_signed(b) else 0)
    frame.pc += 1


def op_eq(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(1 if a == b else 0)
    frame.pc += 1


def op_iszero(frame, evm):
    frame.stack.push(1 if frame.stack.pop() == 0 else 0)
    frame.pc += 1


def op_and(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a & b)
    frame.pc += 1


def op_or(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a | b)
    frame.pc += 1


def op_xor(frame, evm):
    a, b = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(a ^ b)
    frame.pc += 1


def op_not(frame, evm):
    frame.stack.push(frame.stack.pop() ^ UINT256_MAX)
    frame.pc += 1


def op_byte(frame, evm):
    i, x = frame.stack.pop(), frame.stack.pop()
    if i >= 32:
        frame.stack.push(0)
    else:
        frame.stack.push((x >> (248 - i * 8)) & 0xFF)
    frame.pc += 1


def op_shl(frame, evm):
    shift, value = frame.stack.pop(), frame.stack.pop()
    if shift >= 256:
        frame.stack.push(0)
    else:
        frame.stack.push((value << shift) & UINT256_MAX)
    frame.pc += 1


def op_shr(frame, evm):
    shift, value = frame.stack.pop(), frame.stack.pop()
    frame.stack.push(0 if shift >= 256 else value >> shift)
    frame.pc += 1


def op_sar(frame, evm):
    shift, value = frame.stack.pop(), frame.stack.pop()
    signed = _to_signed(value)
    if shift >= 256:
        frame.stack.push(_to_unsigned(-1 if signed < 0 else 0))
    else:
        frame.stack.push(_to_unsigned(signed >> shift))
    frame.pc += 1


def op_clz(frame, evm):
    frame.stack.push(256 - frame.stack.pop().bit_length())
    frame.pc += 1


# -- Keccak256 --

def op_keccak256(frame, evm):
    offset, size = frame.stack.pop(), frame.stack.pop()
    frame.consume_gas(keccak_gas(size))
    frame.charge_memory(offset, size)
    data = frame.memory.read(offset, size)
    frame.stack.push(int.from_bytes(keccak256(data), "big"))
    frame.pc += 1


# -- Environment --

def op_address(frame, evm):
    frame.stack.push(address_to_word(frame.address))
    frame.pc += 1


def op_balance(frame, evm):
    addr = address_from_word(frame.stack.pop())
    _charge_account_access(frame, evm, addr)
    frame.stack.push(evm.host.get_balance(addr))
    frame.pc += 1


def op_origin(frame, evm):
    frame.stack.push(address_to_word(evm.host.tx.origin))
    frame.pc += 1


def op_caller(frame, evm):
    frame.stack.push(address_to_word(frame.caller))
    frame.pc += 1


def op_callvalue(frame, evm):
    frame.stack.push(frame.value)
    frame.pc += 1


def op_calldataload(frame, evm):
    offset = frame.stack.pop()
    frame.stack.push(int.from_bytes(_padded(frame.calldata, offset, 32), "big"))
    frame.pc += 1


def op_calldatasize(frame, evm):
    frame.stack.push(len(frame.calldata))
    frame.pc += 1


def op_calldatacopy(frame, evm):
    dest_offset = frame.stack.pop()
    data_offset = frame.stack.pop()
    size = frame.stack.pop()
    frame.consume_gas(copy_gas(size))
    frame.charge_memory(dest_offset, size)
    if size:
        frame.memory.write(dest_offset, _padded(frame.calldata, data_offset, size))
    frame.pc += 1


def op_codesize(frame, evm):
    frame.stack.push(len(frame.bytecode.code))
    frame.pc += 1


def op_codecopy(frame, evm):
    dest_offset = frame.stack.pop()
    code_offset = frame.stack.pop()
    size = frame.stack.pop()
    frame.consume_gas(copy_gas(size))
    frame.charge_memory(dest_offset, size)
    if size:
        frame.memory.write(dest_offset, _padded(frame.bytecode.code, code_offset, size))
    frame.pc += 1


def op_gasprice(frame, evm):
    frame.stack.push(evm.host.tx.gas_price)
    frame.pc += 1


def op_extcodesize(frame, evm):
    addr = address_from_word(frame.stack.pop())
    _charge_account_access(frame, evm, addr)
    frame.stack.push(len(evm.host.get_code(addr)))
    frame.pc += 1


def op_extcodecopy(frame, evm):
    addr = address_from_word(frame.stack.pop())
    dest_offset = frame.stack.pop()
    code_offset = frame.stack.pop()
    size = frame.stack.pop()
    _charge_account_access(frame, evm, addr)
    frame.consume_gas(copy_gas(size))
    frame.charge_memory(dest_offset, size)
    if size:
        frame.memory.write(dest_offset, _padded(evm.host.get_code(addr), code_offset, size))
    frame.pc += 1


def op_returndatasize(frame, evm):
    frame.stack.push(len(frame.return_data))
    frame.pc += 1


def op_returndatacopy(frame, evm):
    dest_offset = frame.stack.pop()
    data_offset = frame.stack.pop()
    size = frame.stack.pop()
    frame.consume_gas(copy_gas(size))
    if data_offset + size > len(frame.return_data):
        raise InvalidOperand("RETURNDATACOPY out of bounds")
    frame.charge_memory(dest_offset, size)
    frame.memory.write(dest_offset, frame.return_data[data_offset : data_offset + size])
    frame.pc += 1


def op_extcodehash(frame, evm):
    addr = address_from_word(frame.stack.pop())
    _charge_account_access(frame, evm, addr)
    if _is_dead(evm, addr):
        frame.stack.push(0)
    else:
        frame.stack.push(int.from_bytes(evm.host.get_code_hash(addr), "big"))
    frame.pc += 1


# -- Block info --

def op_blockhash(frame, evm):
    block_num = frame.stack.pop()
    current = evm.host.block.number
    if block_num >= current or current - block_num > BLOCKHASH_WINDOW:
        frame.stack.push(0)
    else:
        frame.stack.push(int.from_bytes(evm.host.get_block_hash(block_num), "big"))
    frame.pc += 1


def op_coinbase(frame, evm):
    frame.stack.push(address_to_word(evm.host.block.coinbase))
    frame.pc += 1


def op_timestamp(frame, evm):
    frame.stack.push(evm.host.block.timestamp)
    frame.pc += 1


def op_number(frame, evm):
    frame.stack.push(evm.host.block.number)
    frame.pc += 1


def op_prevrandao(frame, evm):
    block = evm.host.block
    if evm.rules.is_active(Fork.PARIS):
        frame.stack.push(block.prevrandao)
    else:
        frame.stack.push(block.difficulty)
    frame.pc += 1


def op_gaslimit(frame, evm):
    frame.stack.push(evm.host.block.gas_limit)
    frame.pc += 1


def op_chainid(frame, evm):
    frame.stack.push(evm.host.block.chain_id)
    frame.pc += 1


def op_selfbalance(frame, evm):
    frame.stack.push(evm.host.get_balance(frame.address))
    frame.pc += 1


def op_basefee(frame, evm):
    frame.stack.push(evm.host.block.base_fee)
    frame.pc += 1


def op_blobhash(frame, evm):
    idx = frame.stack.pop()
    hashes = evm.host.tx.blob_hashes
    frame.stack.push(int.from_bytes(hashes[idx], "big") if idx < len(hashes) else 0)
    frame.pc += 1


def op_blobbasefee(frame, evm):
    frame.stack.push(evm.host.block.blob_base_fee)
    frame.pc += 1


# -- Stack, Memory, Storage, Flow --

def op_pop(frame, evm):
    frame.stack.pop()
    frame.pc += 1


def op_mload(frame, evm):
    offset = frame.stack.pop()
    frame.charge_memory(offset, 32)
    frame.stack.push(frame.memory.read_word(offset))
    frame.pc += 1


def op_mstore(frame, evm):
    offset = frame.stack.pop()
    value = frame.stack.pop()
    frame.charge_memory(offset, 32)
    frame.memory.write_word(offset, value)
    frame.pc += 1


def op_mstore8(frame, evm):
    offset = frame.stack.pop()
    value = frame.stack.pop()
    frame.charge_memory(offset, 1)
    frame.memory.write_byte(offset, value)
    frame.pc += 1


def op_sload(frame, evm):
    key = frame.stack.pop()
    rules = evm.rules
    if rules.access_lists and not evm.journal.warm_storage_slot(frame.address, key):
        frame.consume_gas(rules.cold_sload_gas - G_WARM_ACCESS)
    frame.stack.push(evm.journal.get_storage(frame.address, key))
    frame.pc += 1


def op_sstore(frame, evm):
    if frame.is_static:
        raise WriteProtection("SSTORE in static call")
    rules = evm.rules
    if rules.sstore_sentry and frame.gas.remaining <= rules.call_stipend:
        raise OutOfGas("SSTORE with gas left at or below the call stipend")
    key = frame.stack.pop()
    new_value = frame.stack.pop()
    journal = evm.journal
    is_cold = rules.access_lists and not journal.warm_storage_slot(frame.address, key)
    current = journal.get_storage(frame.address, key)
    original = journal.original_storage(frame.address, key)
    gas_cost, refund = sstore_gas(rules, current, new_value, original, is_cold)
    frame.consume_gas(gas_cost)
    frame.gas.refund(refund)
    journal.set_storage(frame.address, key, new_value)
    frame.pc += 1


def op_jump(frame, evm):
    dest = frame.stack.pop()
    if not frame.bytecode.is_valid_jump(dest):
        raise InvalidJumpDest(f"Invalid JUMP destination: {dest}")
    frame.pc = dest


def op_jumpi(frame, evm):
    dest = frame.stack.pop()
    cond = frame.stack.pop()
    if cond != 0:
        if not frame.bytecode.is_valid_jump(dest):
            raise InvalidJumpDest(f"Invalid JUMPI destination: {dest}")
        frame.pc = dest
    else:
        frame.pc += 1


def op_pc(frame, evm):
    frame.stack.push(frame.pc)
    frame.pc += 1


def op_msize(frame, evm):
    frame.stack.push(frame.memory.size)
    frame.pc += 1


def op_gas(frame, evm):
    frame.stack.push(frame.gas.remaining)
    frame.pc += 1


def op_jumpdest(frame, evm):
    frame.pc += 1


def op_tload(frame, evm):
    key = frame.stack.pop()
    frame.stack.push(evm.journal.get_transient(frame.address, key))
    frame.pc += 1


def op_tstore(frame, evm):
    if frame.is_static:
        raise WriteProtection("TSTORE in static call")
    key = frame.stack.pop()
    value = frame.stack.pop()
    evm.journal.set_transient(frame.address, key, value)
    frame.pc += 1


def op_mcopy(frame, evm):
    dest = frame.stack.pop()
    src = frame.stack.pop()
    size = frame.stack.pop()
    frame.consume_gas(copy_gas(size))
    frame.charge_memory(max(dest, src), size)
    frame.memory.copy(dest, src, size)
    frame.pc += 1


# -- PUSH --

def op_push0(frame, evm):
    frame.stack.push(0)
    frame.pc += 1


def _make_push(n: int):
    def op_push(frame, evm):
        start = frame.pc + 1
        data = frame.code[start : start + n]
        # PUSH past the end of code reads zeros
        frame.stack.push(int.from_bytes(data.ljust(n, b"\x00"), "big"))
        frame.pc += 1 + n
    op_push.__name__ = f"op_push{n}"
    return op_push


# -- DUP --

def _make_dup(n: int):
    def op_dup(frame, evm):
        frame.stack.dup(n)
        frame.pc += 1
    op_dup.__name__ = f"op_dup{n}"
    return op_dup


# -- SWAP --

def _make_swap(n: int):
    def op_swap(frame, evm):
        frame.stack.swap(n)
        frame.pc += 1
    op_swap.__name__ = f"op_swap{n}"
    return op_swap


# -- LOG --

def _make_log(topic_count: int):
    def op_log(frame, evm):
        if frame.is_static:
            raise WriteProtection(f"LOG{topic_count} in static call")
        offset = frame.stack.pop()
        size = frame.stack.pop()
        topics = [frame.stack.pop().to_bytes(32, "big") for _ in range(topic_count)]
        frame.consume_gas(G_LOG_TOPIC * topic_count + G_LOG_DATA * size)
        frame.charge_memory(offset, size)
        log = Log(address=frame.address, topics=topics, data=frame.memory.read(offset, size))
        evm.journal.add_log(log)
        if evm.inspector is not None:
            evm.inspector.log(frame, log)
        frame.pc += 1
    op_log.__name__ = f"op_log{topic_count}"
    return op_log


# -- System --

def _create(frame, evm, kind: CallKind):
    if frame.is_static:
        raise WriteProtection(f"{kind.name} in static call")
    rules = evm.rules
    value = frame.stack.pop()
    offset = frame.stack.pop()
    size = frame.stack.pop()
    salt = frame.stack.pop() if kind is CallKind.CREATE2 else None

    if rules.max_initcode_size is not None and size > rules.max_initcode_size:
        raise InitcodeSizeLimit(f"initcode of {size} bytes")
    frame.charge_memory(offset, size)
    extra = initcode_gas(rules, size)
    if kind is CallKind.CREATE2:
        extra += keccak_gas(size)
    frame.consume_gas(extra)
    init_code = frame.memory.read(offset, size)

    child_gas = create_gas(rules, frame.gas.remaining)
    frame.consume_gas(child_gas)
    raise SubCallRequest(Message(
        kind=kind,
        caller=frame.address,
        value=value,
        init_code=init_code,
        gas=child_gas,
        depth=frame.depth + 1,
        salt=salt,
    ))


def op_create(frame, evm):
    _create(frame, evm, CallKind.CREATE)


def op_create2(frame, evm):
    _create(frame, evm, CallKind.CREATE2)


def _call(frame, evm, kind: CallKind):
    rules = evm.rules
    gas_req = frame.stack.pop()
    addr = address_from_word(frame.stack.pop())
    if kind in (CallKind.CALL, CallKind.CALLCODE):
        value = frame.stack.pop()
    else:
        value = 0
    args_offset = frame.stack.pop()
    args_size = frame.stack.pop()
    ret_offset = frame.stack.pop()
    ret_size = frame.stack.pop()

    if kind is CallKind.CALL and frame.is_static and value > 0:
        raise WriteProtection("CALL with value in static context")

    _charge_account_access(frame, evm, addr)
    frame.charge_memory(args_offset, args_size)
    frame.charge_memory(ret_offset, ret_size)

    extra = 0
    if value > 0:
        extra += rules.call_value_gas
    if kind is CallKind.CALL:
        if rules.state_clearing:
            if value > 0 and evm.host.is_empty(addr):
                extra += rules.new_account_gas
        elif not evm.host.account_exists(addr):
            extra += rules.new_account_gas

    total_cost, callee_gas = call_gas(rules, frame.gas.remaining, gas_req, extra, value > 0)
    frame.consume_gas(total_cost)

    calldata = frame.memory.read(args_offset, args_size)

    if kind is CallKind.CALL:
        message = Message(
            kind=kind, caller=frame.address, target=addr, code_address=addr,
            value=value, is_static=frame.is_static,
        )
    elif kind is CallKind.CALLCODE:
        message = Message(
            kind=kind, caller=frame.address, target=frame.address, code_address=addr,
            value=value, is_static=frame.is_static,
        )
    elif kind is CallKind.DELEGATECALL:
        message = Message(
            kind=kind, caller=frame.caller, target=frame.address, code_address=addr,
            value=frame.value, is_static=frame.is_static, transfers_value=False,
        )
    else:
        message = Message(
            kind=kind, caller=frame.address, target=addr, code_address=addr,
            value=0, is_static=True,
        )
    message.data = calldata
    message.gas = callee_gas
    message.depth = frame.depth + 1
    message.ret_offset = ret_offset
    message.ret_size = ret_size
    raise SubCallRequest(message)


def op_call(frame, evm):
    _call(frame, evm, CallKind.CALL)


def op_callcode(frame, evm):
    _call(frame, evm, CallKind.CALLCODE)


def op_delegatecall(frame, evm):
    _call(frame, evm, CallKind.DELEGATECALL)


def op_staticcall(frame, evm):
    _call(frame, evm, CallKind.STATICCALL)


def op_return(frame, evm):
    offset = frame.stack.pop()
    size = frame.stack.pop()
    frame.charge_memory(offset, size)
    raise ReturnData(frame.memory.read(offset, size))


def op_revert(frame, evm):
    offset = frame.stack.pop()
    size = frame.stack.pop()
    frame.charge_memory(offset, size)
    raise Revert(frame.memory.read(offset, size))


def op_invalid(frame, evm):
    raise InvalidOpcode("INVALID opcode (0xFE)")


def op_selfdestruct(frame, evm):
    if frame.is_static:
        raise WriteProtection("SELFDESTRUCT in static call")
    rules = evm.rules
    journal = evm.journal
    beneficiary = address_from_word(frame.stack.pop())

    if rules.access_lists and not journal.warm_address(beneficiary):
        frame.consume_gas(rules.cold_account_access_gas)

    balance = evm.host.get_balance(frame.address)
    if rules.is_active(Fork.TANGERINE_WHISTLE):
        if rules.state_clearing:
            if balance > 0 and evm.host.is_empty(beneficiary):
                frame.consume_gas(rules.new_account_gas)
        elif not evm.host.account_exists(beneficiary):
            frame.consume_gas(rules.new_account_gas)

    if rules.selfdestruct_only_in_same_tx and frame.address not in journal.created:
        # EIP-6780: only the balance moves
        journal.transfer(frame.address, beneficiary, balance)
    else:
        already = journal.mark_selfdestruct(frame.address)
        if not already and rules.selfdestruct_refund:
            frame.gas.refund(rules.selfdestruct_refund)
        journal.add_balance(beneficiary, balance)
        journal.set_balance(frame.address, 0)

    if evm.inspector is not None:
        evm.inspector.selfdestruct(frame, beneficiary, balance)
    raise SelfDestruct()


# -- Container format (EOF) --

def _imm_u16(frame) -> int:
    return int.from_bytes(frame.code[frame.pc + 1 : frame.pc + 3], "big")


def _imm_i16(code: bytes, at: int) -> int:
    return int.from_bytes(code[at : at + 2], "big", signed=True)


def op_rjump(frame, evm):
    frame.pc += 3 + _imm_i16(frame.code, frame.pc + 1)


def op_rjumpi(frame, evm):
    cond = frame.stack.pop()
    offset = _imm_i16(frame.code, frame.pc + 1)
    frame.pc += 3 + (offset if cond else 0)


def op_rjumpv(frame, evm):
    case = frame.stack.pop()
    code = frame.code
    count = code[frame.pc + 1] + 1
    end = frame.pc + 2 + 2 * count
    if case < count:
        frame.pc = end + _imm_i16(code, frame.pc + 2 + 2 * case)
    else:
        frame.pc = end


def _enter_section(frame, evm, index: int) -> None:
    section_type = frame.bytecode.container.types[index]
    if frame.stack.size - section_type.inputs + section_type.max_stack_height > frame.stack.limit:
        raise StackOverflow(f"section {index} may exceed the stack limit")
    frame.section = index
    frame.code = frame.bytecode.section(index)
    frame.pc = 0


def op_callf(frame, evm):
    index = _imm_u16(frame)
    if len(frame.return_stack) >= RETURN_STACK_LIMIT:
        raise ReturnStackOverflow("CALLF return stack full")
    frame.return_stack.append((frame.section, frame.pc + 3))
    _enter_section(frame, evm, index)


def op_retf(frame, evm):
    section, pc = frame.return_stack.pop()
    frame.section = section
    frame.code = frame.bytecode.section(section)
    frame.pc = pc


def op_jumpf(frame, evm):
    _enter_section(frame, evm, _imm_u16(frame))


def op_dataload(frame, evm):
    offset = frame.stack.pop()
    data = frame.bytecode.container.data
    frame.stack.push(int.from_bytes(_padded(data, offset, 32), "big"))
    frame.pc += 1


def op_dataloadn(frame, evm):
    offset = _imm_u16(frame)
    data = frame.bytecode.container.data
    frame.stack.push(int.from_bytes(data[offset : offset + 32], "big"))
    frame.pc += 3


def op_datasize(frame, evm):
    frame.stack.push(len(frame.bytecode.container.data))
    frame.pc += 1


def op_datacopy(frame, evm):
    dest_offset = frame.stack.pop()
    data_offset = frame.stack.pop()
    size = frame.stack.pop()
    frame.consume_gas(copy_gas(size))
    frame.charge_memory(dest_offset, size)
    if size:
        frame.memory.write(dest_offset, _padded(frame.bytecode.container.data, data_offset, size))
    frame.pc += 1


def op_dupn(frame, evm):
    frame.stack.dup(frame.code[frame.pc + 1] + 1)
    frame.pc += 2


def op_swapn(frame, evm):
    frame.stack.swap(frame.code[frame.pc + 1] + 1)
    frame.pc += 2


def op_exchange(frame, evm):
    imm = frame.code[frame.pc + 1]
    n = (imm >> 4) + 1
    m = (imm & 0x0F) + 1
    frame.stack.exchange(n, n + m)
    frame.pc += 2


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

StaticGas = Union[int, Callable[[RuleSet], int]]


class OpDef(NamedTuple):
    name: str
    handler: Callable
    pops: int
    pushes: int
    gas: StaticGas
    since: Fork = Fork.FRONTIER


# Jump table entry: (handler, static_gas, min_stack, max_stack)
Instruction = tuple[Callable, int, int, int]
JumpTable = list[Optional[Instruction]]

OPCODES: dict[int, OpDef] = {}
EOF_ONLY_OPCODES: dict[int, OpDef] = {}


def _define(table, code, name, handler, pops, pushes, gas, since=Fork.FRONTIER):
    table[code] = OpDef(name, handler, pops, pushes, gas, since)


def _register() -> None:
    d = OPCODES
    _define(d, Op.STOP, "STOP", op_stop, 0, 0, G_ZERO)
    _define(d, Op.ADD, "ADD", op_add, 2, 1, G_VERY_LOW)
    _define(d, Op.MUL, "MUL", op_mul, 2, 1, G_LOW)
    _define(d, Op.SUB, "SUB", op_sub, 2, 1, G_VERY_LOW)
    _define(d, Op.DIV, "DIV", op_div, 2, 1, G_LOW)
    _define(d, Op.SDIV, "SDIV", op_sdiv, 2, 1, G_LOW)
    _define(d, Op.MOD, "MOD", op_mod, 2, 1, G_LOW)
    _define(d, Op.SMOD, "SMOD", op_smod, 2, 1, G_LOW)
    _define(d, Op.ADDMOD, "ADDMOD", op_addmod, 3, 1, G_MID)
    _define(d, Op.MULMOD, "MULMOD", op_mulmod, 3, 1, G_MID)
    _define(d, Op.EXP, "EXP", op_exp, 2, 1, G_EXP)
    _define(d, Op.SIGNEXTEND, "SIGNEXTEND", op_signextend, 2, 1, G_LOW)

    _define(d, Op.LT, "LT", op_lt, 2, 1, G_VERY_LOW)
    _define(d, Op.GT, "GT", op_gt, 2, 1, G_VERY_LOW)
    _define(d, Op.SLT, "SLT", op_slt, 2, 1, G_VERY_LOW)
    _define(d, Op.SGT, "SGT", op_sgt, 2, 1, G_VERY_LOW)
    _define(d, Op.EQ, "EQ", op_eq, 2, 1, G_VERY_LOW)
    _define(d, Op.ISZERO, "ISZERO", op_iszero, 1, 1, G_VERY_LOW)
    _define(d, Op.AND, "AND", op_and, 2, 1, G_VERY_LOW)
    _define(d, Op.OR, "OR", op_or, 2, 1, G_VERY_LOW)
    _define(d, Op.XOR, "XOR", op_xor, 2, 1, G_VERY_LOW)
    _define(d, Op.NOT, "NOT", op_not, 1, 1, G_VERY_LOW)
    _define(d, Op.BYTE, "BYTE", op_byte, 2, 1, G_VERY_LOW)
    _define(d, Op.SHL, "SHL", op_shl, 2, 1, G_VERY_LOW, Fork.CONSTANTINOPLE)
    _define(d, Op.SHR, "SHR", op_shr, 2, 1, G_VERY_LOW, Fork.CONSTANTINOPLE)
    _define(d, Op.SAR, "SAR", op_sar, 2, 1, G_VERY_LOW, Fork.CONSTANTINOPLE)
    _define(d, Op.CLZ, "CLZ", op_clz, 1, 1, G_LOW, Fork.OSAKA)

    _define(d, Op.KECCAK256, "KECCAK256", op_keccak256, 2, 1, G_KECCAK256)

    _define(d, Op.ADDRESS, "ADDRESS", op_address, 0, 1, G_BASE)
    _define(d, Op.BALANCE, "BALANCE", op_balance, 1, 1, lambda r: r.balance_gas)
    _define(d, Op.ORIGIN, "ORIGIN", op_origin, 0, 1, G_BASE)
    _define(d, Op.CALLER, "CALLER", op_caller, 0, 1, G_BASE)
    _define(d, Op.CALLVALUE, "CALLVALUE", op_callvalue, 0, 1, G_BASE)
    _define(d, Op.CALLDATALOAD, "CALLDATALOAD", op_calldataload, 1, 1, G_VERY_LOW)
    _define(d, Op.CALLDATASIZE, "CALLDATASIZE", op_calldatasize, 0, 1, G_BASE)
    _define(d, Op.CALLDATACOPY, "CALLDATACOPY", op_calldatacopy, 3, 0, G_VERY_LOW)
    _define(d, Op.CODESIZE, "CODESIZE", op_codesize, 0, 1, G_BASE)
    _define(d, Op.CODECOPY, "CODECOPY", op_codecopy, 3, 0, G_VERY_LOW)
    _define(d, Op.GASPRICE, "GASPRICE", op_gasprice, 0, 1, G_BASE)
    _define(d, Op.EXTCODESIZE, "EXTCODESIZE", op_extcodesize, 1, 1, lambda r: r.extcode_gas)
    _define(d, Op.EXTCODECOPY, "EXTCODECOPY", op_extcodecopy, 4, 0, lambda r: r.extcode_gas)
    _define(d, Op.RETURNDATASIZE, "RETURNDATASIZE", op_returndatasize, 0, 1, G_BASE,
            Fork.BYZANTIUM)
    _define(d, Op.RETURNDATACOPY, "RETURNDATACOPY", op_returndatacopy, 3, 0, G_VERY_LOW,
            Fork.BYZANTIUM)
    _define(d, Op.EXTCODEHASH, "EXTCODEHASH", op_extcodehash, 1, 1,
            lambda r: r.extcodehash_gas, Fork.CONSTANTINOPLE)

    _define(d, Op.BLOCKHASH, "BLOCKHASH", op_blockhash, 1, 1, G_BLOCKHASH)
    _define(d, Op.COINBASE, "COINBASE", op_coinbase, 0, 1, G_BASE)
    _define(d, Op.TIMESTAMP, "TIMESTAMP", op_timestamp, 0, 1, G_BASE)
    _define(d, Op.NUMBER, "NUMBER", op_number, 0, 1, G_BASE)
    _define(d, Op.PREVRANDAO, "PREVRANDAO", op_prevrandao, 0, 1, G_BASE)
    _define(d, Op.GASLIMIT, "GASLIMIT", op_gaslimit, 0, 1, G_BASE)
    _define(d, Op.CHAINID, "CHAINID", op_chainid, 0, 1, G_BASE, Fork.ISTANBUL)
    _define(d, Op.SELFBALANCE, "SELFBALANCE", op_selfbalance, 0, 1, G_SELFBALANCE,
            Fork.ISTANBUL)
    _define(d, Op.BASEFEE, "BASEFEE", op_basefee, 0, 1, G_BASE, Fork.LONDON)
    _define(d, Op.BLOBHASH, "BLOBHASH", op_blobhash, 1, 1, G_VERY_LOW, Fork.CANCUN)
    _define(d, Op.BLOBBASEFEE, "BLOBBASEFEE", op_blobbasefee, 0, 1, G_BASE, Fork.CANCUN)

    _define(d, Op.POP, "POP", op_pop, 1, 0, G_BASE)
    _define(d, Op.MLOAD, "MLOAD", op_mload, 1, 1, G_VERY_LOW)
    _define(d, Op.MSTORE, "MSTORE", op_mstore, 2, 0, G_VERY_LOW)
    _define(d, Op.MSTORE8, "MSTORE8", op_mstore8, 2, 0, G_VERY_LOW)
    _define(d, Op.SLOAD, "SLOAD", op_sload, 1, 1, lambda r: r.sload_gas)
    # Entirely dynamic (and subject to the stipend sentry)
    _define(d, Op.SSTORE, "SSTORE", op_sstore, 2, 0, G_ZERO)
    _define(d, Op.JUMP, "JUMP", op_jump, 1, 0, G_MID)
    _define(d, Op.JUMPI, "JUMPI", op_jumpi, 2, 0, G_HIGH)
    _define(d, Op.PC, "PC", op_pc, 0, 1, G_BASE)
    _define(d, Op.MSIZE, "MSIZE", op_msize, 0, 1, G_BASE)
    _define(d, Op.GAS, "GAS", op_gas, 0, 1, G_BASE)
    _define(d, Op.JUMPDEST, "JUMPDEST", op_jumpdest, 0, 0, G_JUMPDEST)
    _define(d, Op.TLOAD, "TLOAD", op_tload, 1, 1, G_WARM_ACCESS, Fork.CANCUN)
    _define(d, Op.TSTORE, "TSTORE", op_tstore, 2, 0, G_WARM_ACCESS, Fork.CANCUN)
    _define(d, Op.MCOPY, "MCOPY", op_mcopy, 3, 0, G_VERY_LOW, Fork.CANCUN)

    _define(d, Op.PUSH0, "PUSH0", op_push0, 0, 1, G_BASE, Fork.SHANGHAI)
    for i in range(1, 33):
        _define(d, Op.PUSH0 + i, f"PUSH{i}", _make_push(i), 0, 1, G_VERY_LOW)
    for i in range(1, 17):
        _define(d, Op.DUP1 + i - 1, f"DUP{i}", _make_dup(i), i, i + 1, G_VERY_LOW)
    for i in range(1, 17):
        _define(d, Op.SWAP1 + i - 1, f"SWAP{i}", _make_swap(i), i + 1, i + 1, G_VERY_LOW)
    for i in range(5):
        _define(d, Op.LOG0 + i, f"LOG{i}", _make_log(i), 2 + i, 0, G_LOG)

    _define(d, Op.CREATE, "CREATE", op_create, 3, 1, lambda r: r.create_gas)
    _define(d, Op.CALL, "CALL", op_call, 7, 1, lambda r: r.call_gas)
    _define(d, Op.CALLCODE, "CALLCODE", op_callcode, 7, 1, lambda r: r.call_gas)
    _define(d, Op.RETURN, "RETURN", op_return, 2, 0, G_ZERO)
    _define(d, Op.DELEGATECALL, "DELEGATECALL", op_delegatecall, 6, 1,
            lambda r: r.call_gas, Fork.HOMESTEAD)
    _define(d, Op.CREATE2, "CREATE2", op_create2, 4, 1, lambda r: r.create_gas,
            Fork.CONSTANTINOPLE)
    _define(d, Op.STATICCALL, "STATICCALL", op_staticcall, 6, 1, lambda r: r.call_gas,
            Fork.BYZANTIUM)
    _define(d, Op.REVERT, "REVERT", op_revert, 2, 0, G_ZERO, Fork.BYZANTIUM)
    _define(d, Op.INVALID, "INVALID", op_invalid, 0, 0, G_ZERO)
    _define(d, Op.SELFDESTRUCT, "SELFDESTRUCT", op_selfdestruct, 1, 0,
            lambda r: r.selfdestruct_gas)

    e = EOF_ONLY_OPCODES
    _define(e, Op.DATALOAD, "DATALOAD", op_dataload, 1, 1, G_DATALOAD)
    _define(e, Op.DATALOADN, "DATALOADN", op_dataloadn, 0, 1, G_VERY_LOW)
    _define(e, Op.DATASIZE, "DATASIZE", op_datasize, 0, 1, G_BASE)
    _define(e, Op.DATACOPY, "DATACOPY", op_datacopy, 3, 0, G_VERY_LOW)
    _define(e, Op.RJUMP, "RJUMP", op_rjump, 0, 0, G_RJUMP)
    _define(e, Op.RJUMPI, "RJUMPI", op_rjumpi, 1, 0, G_RJUMPI)
    _define(e, Op.RJUMPV, "RJUMPV", op_rjumpv, 1, 0, G_RJUMPI)
    _define(e, Op.CALLF, "CALLF", op_callf, 0, 0, G_CALLF)
    _define(e, Op.RETF, "RETF", op_retf, 0, 0, G_RETF)
    _define(e, Op.JUMPF, "JUMPF", op_jumpf, 0, 0, G_CALLF)
    # Depths come from the immediate; the stack itself checks bounds
    _define(e, Op.DUPN, "DUPN", op_dupn, 0, 1, G_VERY_LOW)
    _define(e, Op.SWAPN, "SWAPN", op_swapn, 0, 0, G_VERY_LOW)
    _define(e, Op.EXCHANGE, "EXCHANGE", op_exchange, 0, 0, G_VERY_LOW)


_register()

OPCODE_NAMES: dict[int, str] = {
    code: op.name for code, op in {**OPCODES, **EOF_ONLY_OPCODES}.items()
}

# Legacy instructions that container code may not use
LEGACY_ONLY_OPCODES = frozenset({
    Op.CALL, Op.CALLCODE, Op.DELEGATECALL, Op.STATICCALL,
    Op.CREATE, Op.CREATE2, Op.SELFDESTRUCT,
    Op.JUMP, Op.JUMPI, Op.PC, Op.GAS,
    Op.CODESIZE, Op.CODECOPY, Op.EXTCODESIZE, Op.EXTCODECOPY, Op.EXTCODEHASH,
})

EOF_VALID_OPCODES = frozenset(
    (set(OPCODES) - LEGACY_ONLY_OPCODES) | set(EOF_ONLY_OPCODES)
)

TERMINATING_OPCODES = frozenset({
    Op.STOP, Op.RETURN, Op.REVERT, Op.INVALID, Op.RETF, Op.JUMPF, Op.RJUMP,
})


def opcode_name(op: int) -> str:
    return OPCODE_NAMES.get(op, f"0x{op:02x}")


# ---------------------------------------------------------------------------
# Jump tables
# ---------------------------------------------------------------------------

def _entry(op: OpDef, rules: RuleSet, stack_limit: int) -> Instruction:
    gas = op.gas(rules) if callable(op.gas) else op.gas
    growth = op.pushes - op.pops
    max_stack = stack_limit - growth if growth > 0 else stack_limit
    return (op.handler, gas, op.pops, max_stack)


@lru_cache(maxsize=None)
def build_jump_table(rules: RuleSet, stack_limit: int = 1024, eof: bool = False) -> JumpTable:
    """256-entry dispatch table for one rule-set.

    Undefined slots are None and execute as InvalidOpcode. With `eof`, the
    table is the one used by container code: legacy-only instructions are
    removed and the container instructions added.
    """
    table: JumpTable = [None] * 256
    for code, op in OPCODES.items():
        if not rules.is_active(op.since):
            continue
        if eof and code in LEGACY_ONLY_OPCODES:
            continue
        table[code] = _entry(op, rules, stack_limit)
    if eof:
        for code, op in EOF_ONLY_OPCODES.items():
            table[code] = _entry(op, rules, stack_limit)
    return table
