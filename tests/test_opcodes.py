"""Tests for single-frame opcode execution."""

import pytest

from evmcore.common.config import Fork, get_rules
from evmcore.common.crypto import keccak256
from evmcore.vm.call_frame import Status
from evmcore.vm.evm import EVM
from evmcore.vm.exceptions import ErrorKind
from evmcore.vm.host import BlockEnv, InMemoryHost
from evmcore.vm.memory import UINT256_MAX
from evmcore.vm.opcodes import Op, build_jump_table, opcode_name

from tests.fixtures.addresses import ALICE_ADDRESS, CONTRACT_ADDRESS
from tests.fixtures.programs import bytecode, push, pushn, return_word, run_code


def top(code: bytes, **kwargs) -> int:
    frame, outcome = run_code(code, **kwargs)
    assert outcome.success, outcome.error
    return frame.stack.peek(0)


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------

class TestArithmetic:
    def test_add(self):
        frame, outcome = run_code(bytecode(push(1, 1), push(1, 1), Op.ADD, Op.STOP))
        assert outcome.status is Status.HALT
        assert frame.stack.items() == [2]
        assert outcome.gas_left == 100_000 - 9

    def test_add_wraps(self):
        assert top(bytecode(push(1), push(UINT256_MAX), Op.ADD)) == 0

    def test_sub_underflow_wraps(self):
        assert top(bytecode(push(1), push(0), Op.SUB)) == UINT256_MAX

    def test_div_by_zero(self):
        assert top(bytecode(push(0), push(10), Op.DIV)) == 0

    def test_sdiv_negative(self):
        # -10 / 3 == -3
        assert top(bytecode(push(3), push(UINT256_MAX - 9), Op.SDIV)) == UINT256_MAX - 2

    def test_sdiv_overflow(self):
        min_int = 1 << 255
        assert top(bytecode(push(UINT256_MAX), push(min_int), Op.SDIV)) == min_int

    def test_smod_takes_dividend_sign(self):
        # -10 % 3 == -1
        assert top(bytecode(push(3), push(UINT256_MAX - 9), Op.SMOD)) == UINT256_MAX

    def test_addmod_does_not_wrap(self):
        assert top(bytecode(push(8), push(UINT256_MAX), push(2), Op.ADDMOD)) == 1

    def test_mulmod(self):
        assert top(bytecode(push(12), push(10), push(10), Op.MULMOD)) == 4

    def test_exp_value_and_gas(self):
        frame, outcome = run_code(bytecode(push(3, 1), push(2, 1), Op.EXP))
        assert frame.stack.items() == [8]
        assert outcome.gas_left == 100_000 - (3 + 3 + 10 + 50)

    def test_signextend(self):
        assert top(bytecode(push(0xFF), push(0), Op.SIGNEXTEND)) == UINT256_MAX
        assert top(bytecode(push(0x7F), push(0), Op.SIGNEXTEND)) == 0x7F


# ---------------------------------------------------------------------------
# Comparison / bitwise
# ---------------------------------------------------------------------------

class TestBitwise:
    def test_slt(self):
        # -1 < 1
        assert top(bytecode(push(1), push(UINT256_MAX), Op.SLT)) == 1

    def test_byte(self):
        assert top(bytecode(push(0x1234), push(31), Op.BYTE)) == 0x34
        assert top(bytecode(push(0x1234), push(30), Op.BYTE)) == 0x12
        assert top(bytecode(push(0x1234), push(32), Op.BYTE)) == 0

    def test_shifts(self):
        assert top(bytecode(push(1), push(4), Op.SHL)) == 16
        assert top(bytecode(push(256), push(4), Op.SHR)) == 16
        assert top(bytecode(push(1), push(256, 2), Op.SHL)) == 0

    def test_sar_negative(self):
        # -16 >> 2 == -4
        assert top(bytecode(push(UINT256_MAX - 15), push(2), Op.SAR)) == UINT256_MAX - 3
        assert top(bytecode(push(UINT256_MAX - 15), push(300, 2), Op.SAR)) == UINT256_MAX

    def test_clz(self):
        assert top(bytecode(push(1), Op.CLZ)) == 255
        assert top(bytecode(push(0), Op.CLZ)) == 256

    def test_clz_not_before_osaka(self):
        _frame, outcome = run_code(bytecode(push(1), Op.CLZ), rules=get_rules(Fork.CANCUN))
        assert outcome.error is ErrorKind.INVALID_OPCODE

    def test_keccak_of_empty(self):
        assert top(bytecode(push(0), push(0), Op.KECCAK256)) == int.from_bytes(keccak256(b""), "big")


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

class TestEnvironment:
    def test_address_and_caller(self):
        assert top(bytecode(Op.ADDRESS)) == int.from_bytes(CONTRACT_ADDRESS, "big")
        assert top(bytecode(Op.CALLER)) == int.from_bytes(ALICE_ADDRESS, "big")

    def test_callvalue(self):
        assert top(bytecode(Op.CALLVALUE), value=5) == 5

    def test_calldataload_pads(self):
        data = b"\x01\x02"
        assert top(bytecode(push(0), Op.CALLDATALOAD), calldata=data) == 0x0102 << 240
        assert top(bytecode(push(1), Op.CALLDATALOAD), calldata=data) == 0x02 << 248
        assert top(bytecode(push(64), Op.CALLDATALOAD), calldata=data) == 0

    def test_calldatacopy(self):
        frame, outcome = run_code(
            bytecode(push(4), push(0), push(0), Op.CALLDATACOPY), calldata=b"\xaa\xbb"
        )
        assert outcome.success
        assert frame.memory.read(0, 4) == b"\xaa\xbb\x00\x00"

    def test_selfbalance(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, balance=77)
        assert top(bytecode(Op.SELFBALANCE), host=host) == 77

    def test_chainid(self):
        host = InMemoryHost(block=BlockEnv(chain_id=5))
        assert top(bytecode(Op.CHAINID), host=host) == 5

    def test_blockhash_window(self):
        host = InMemoryHost(block=BlockEnv(number=100))
        host.block_hashes[99] = b"\x11" * 32
        assert top(bytecode(push(99), Op.BLOCKHASH), host=host) == int.from_bytes(b"\x11" * 32, "big")
        assert top(bytecode(push(100), Op.BLOCKHASH), host=host) == 0

    def test_prevrandao_after_merge(self):
        host = InMemoryHost(block=BlockEnv(prevrandao=7, difficulty=9))
        assert top(bytecode(Op.PREVRANDAO), host=host) == 7
        london = get_rules(Fork.LONDON)
        assert top(bytecode(Op.PREVRANDAO), host=host, rules=london) == 9

    def test_gas(self):
        assert top(bytecode(Op.GAS), gas=1000) == 1000 - 2

    def test_pc(self):
        assert top(bytecode(push(0), Op.POP, Op.PC)) == 2


# ---------------------------------------------------------------------------
# Memory and storage
# ---------------------------------------------------------------------------

class TestMemoryOps:
    def test_mstore_mload(self):
        frame, outcome = run_code(bytecode(push(0x42), push(0), Op.MSTORE, push(0), Op.MLOAD))
        assert frame.stack.items() == [0x42]
        assert frame.memory.size == 32

    def test_mstore_expansion_gas(self):
        _frame, outcome = run_code(bytecode(push(0x42), push(0), Op.MSTORE))
        assert outcome.gas_left == 100_000 - (3 + 2 + 3 + 3)

    def test_mstore8(self):
        frame, _outcome = run_code(bytecode(push(0x1FF), push(1), Op.MSTORE8))
        assert frame.memory.read(0, 2) == b"\x00\xff"

    def test_msize(self):
        assert top(bytecode(push(1), push(33), Op.MSTORE8, Op.MSIZE)) == 64

    def test_mcopy(self):
        code = bytecode(
            push(0x42), push(0), Op.MSTORE,
            push(32), push(0), push(32), Op.MCOPY,
            push(32), Op.MLOAD,
        )
        assert top(code) == 0x42

    def test_return(self):
        _frame, outcome = run_code(bytecode(push(42), return_word()))
        assert outcome.status is Status.HALT
        assert outcome.output == (42).to_bytes(32, "big")

    def test_revert_keeps_gas(self):
        _frame, outcome = run_code(bytecode(push(0), push(0), Op.REVERT), gas=1000)
        assert outcome.status is Status.REVERT
        assert outcome.gas_left == 1000 - 4

    def test_returndatacopy_out_of_bounds(self):
        _frame, outcome = run_code(bytecode(push(1), push(0), push(0), Op.RETURNDATACOPY))
        assert outcome.error is ErrorKind.INVALID_OPERAND


class TestStorageOps:
    def test_sload_cold_then_warm(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, storage={0: 5})
        frame, outcome = run_code(
            bytecode(pushn(0), Op.SLOAD, pushn(0), Op.SLOAD), host=host
        )
        assert frame.stack.items() == [5, 5]
        assert outcome.gas_left == 100_000 - (3 + 2100 + 3 + 100)

    def test_sstore(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS)
        _frame, outcome = run_code(bytecode(push(42), push(0), Op.SSTORE), host=host)
        assert outcome.success
        assert host.get_storage(CONTRACT_ADDRESS, 0) == 42

    def test_sstore_in_static_frame(self):
        _frame, outcome = run_code(bytecode(push(1), push(0), Op.SSTORE), is_static=True)
        assert outcome.error is ErrorKind.WRITE_PROTECTION

    def test_sstore_at_stipend_fails(self):
        _frame, outcome = run_code(bytecode(push(1, 1), push(0), Op.SSTORE), gas=2305)
        assert outcome.error is ErrorKind.OUT_OF_GAS

    def test_transient_storage(self):
        assert top(bytecode(push(7), push(1), Op.TSTORE, push(1), Op.TLOAD)) == 7

    def test_tstore_in_static_frame(self):
        _frame, outcome = run_code(bytecode(push(7), push(1), Op.TSTORE), is_static=True)
        assert outcome.error is ErrorKind.WRITE_PROTECTION

    def test_log(self):
        evm = EVM(InMemoryHost())
        code = bytecode(
            push(0xAB), push(0), Op.MSTORE8,
            push(0xBB), push(0xAA), push(1), push(0), Op.LOG2,
        )
        _frame, outcome = run_code(code, evm=evm)
        assert outcome.success
        (log,) = evm.journal.logs
        assert log.address == CONTRACT_ADDRESS
        assert log.topics == [(0xAA).to_bytes(32, "big"), (0xBB).to_bytes(32, "big")]
        assert log.data == b"\xab"

    def test_log_in_static_frame(self):
        _frame, outcome = run_code(bytecode(push(0), push(0), Op.LOG0), is_static=True)
        assert outcome.error is ErrorKind.WRITE_PROTECTION


# ---------------------------------------------------------------------------
# Control flow and stack validation
# ---------------------------------------------------------------------------

class TestControlFlow:
    def test_jump(self):
        code = bytecode(push(4, 1), Op.JUMP, Op.INVALID, Op.JUMPDEST, push(1, 1), Op.STOP)
        frame, outcome = run_code(code)
        assert outcome.success
        assert frame.stack.items() == [1]

    def test_jumpi_not_taken(self):
        code = bytecode(push(0, 1), push(8, 1), Op.JUMPI, push(7, 1), Op.STOP)
        frame, outcome = run_code(code)
        assert frame.stack.items() == [7]

    def test_jump_into_push_data(self):
        # Byte 4 is 0x5B but belongs to PUSH1's operand
        code = bytecode(push(4, 1), Op.JUMP, push(Op.JUMPDEST, 1), Op.STOP)
        _frame, outcome = run_code(code)
        assert outcome.status is Status.ERROR
        assert outcome.error is ErrorKind.INVALID_JUMP

    def test_implicit_stop(self):
        frame, outcome = run_code(bytecode(push(1, 1)))
        assert outcome.success
        assert frame.stack.items() == [1]

    def test_invalid_instruction(self):
        _frame, outcome = run_code(bytecode(Op.INVALID))
        assert outcome.error is ErrorKind.INVALID_OPCODE

    def test_undefined_opcode(self):
        _frame, outcome = run_code(bytes([0x0C]))
        assert outcome.error is ErrorKind.INVALID_OPCODE

    def test_stack_underflow(self):
        _frame, outcome = run_code(bytecode(push(1), Op.ADD))
        assert outcome.error is ErrorKind.STACK_UNDERFLOW

    def test_stack_overflow(self):
        code = bytecode(*[push(1, 1)] * 1025)
        frame, outcome = run_code(code)
        assert outcome.error is ErrorKind.STACK_OVERFLOW
        assert frame.stack.size == 1024

    def test_out_of_gas(self):
        _frame, outcome = run_code(bytecode(push(1, 1), push(1, 1), Op.ADD), gas=8)
        assert outcome.error is ErrorKind.OUT_OF_GAS


# ---------------------------------------------------------------------------
# Jump tables per fork
# ---------------------------------------------------------------------------

class TestJumpTables:
    def test_push0_from_shanghai(self):
        assert build_jump_table(get_rules(Fork.LONDON))[Op.PUSH0] is None
        assert build_jump_table(get_rules(Fork.SHANGHAI))[Op.PUSH0] is not None

    def test_shifts_from_constantinople(self):
        _frame, outcome = run_code(
            bytecode(push(1, 1), push(1, 1), Op.SHL), rules=get_rules(Fork.BYZANTIUM)
        )
        assert outcome.error is ErrorKind.INVALID_OPCODE
        assert top(bytecode(push(1, 1), push(1, 1), Op.SHL), rules=get_rules(Fork.CONSTANTINOPLE)) == 2

    @pytest.mark.parametrize(
        "fork, gas",
        [
            (Fork.FRONTIER, 50),
            (Fork.TANGERINE_WHISTLE, 200),
            (Fork.ISTANBUL, 800),
            (Fork.BERLIN, 100),
        ],
    )
    def test_sload_static_gas(self, fork, gas):
        assert build_jump_table(get_rules(fork))[Op.SLOAD][1] == gas

    def test_table_is_cached(self):
        rules = get_rules(Fork.CANCUN)
        assert build_jump_table(rules) is build_jump_table(rules)

    def test_container_table(self):
        table = build_jump_table(get_rules(Fork.OSAKA), eof=True)
        assert table[Op.JUMP] is None
        assert table[Op.SELFDESTRUCT] is None
        assert table[Op.RJUMP] is not None
        assert build_jump_table(get_rules(Fork.OSAKA))[Op.RJUMP] is None

    def test_opcode_name(self):
        assert opcode_name(Op.SSTORE) == "SSTORE"
        assert opcode_name(0x0C) == "0x0c"
