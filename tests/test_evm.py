"""Tests for call orchestration: sub-calls, creates, gas accounting and depth."""

from evmcore.common.config import EngineConfig, Fork, get_rules
from evmcore.common.types import compute_create2_address, compute_create_address
from evmcore.vm.call_frame import Message, Status
from evmcore.vm.evm import EVM
from evmcore.vm.exceptions import ErrorKind
from evmcore.vm.hooks import CallRecorder
from evmcore.vm.host import InMemoryHost
from evmcore.vm.opcodes import Op

from tests.fixtures.addresses import (
    ALICE_ADDRESS,
    CONTRACT_ADDRESS,
    EMPTY_ADDRESS,
    OTHER_CONTRACT_ADDRESS,
)
from tests.fixtures.programs import bytecode, call_code, push, pushn, return_word

GAS = 1_000_000

# 5 x PUSH1, PUSH20, PUSH3 for the arguments, then CALL's warm cost and the
# cold-account surcharge
CALL_OVERHEAD = 5 * 3 + 3 + 3 + 100 + 2500


def execute(host, target=CONTRACT_ADDRESS, gas=GAS, rules=None, config=None, inspector=None, value=0):
    evm = EVM(host, rules, config=config, inspector=inspector)
    message = Message(
        caller=ALICE_ADDRESS,
        target=target,
        code_address=target,
        gas=gas,
        value=value,
    )
    return evm, evm.execute(message)


def child_outcomes(recorder, depth=1):
    return [outcome for message, outcome in recorder.calls if message.depth == depth]


# ---------------------------------------------------------------------------
# Top-level execution
# ---------------------------------------------------------------------------

class TestExecute:
    def test_simple_program(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(push(1, 1), push(1, 1), Op.ADD, Op.STOP))
        _evm, outcome = execute(host)
        assert outcome.status is Status.HALT
        assert outcome.gas_left == GAS - 9
        assert outcome.gas_used == 9

    def test_account_without_code(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS)
        _evm, outcome = execute(host)
        assert outcome.success
        assert outcome.gas_left == GAS

    def test_error_forfeits_all_gas(self):
        # PUSH1 4; JUMP; PUSH1 0x5B; STOP -- offset 4 is push data
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(push(4, 1), Op.JUMP, push(Op.JUMPDEST, 1), Op.STOP))
        _evm, outcome = execute(host)
        assert outcome.status is Status.ERROR
        assert outcome.error is ErrorKind.INVALID_JUMP
        assert outcome.gas_left == 0
        assert outcome.gas_used == GAS

    def test_error_rewinds_state(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(push(1), push(0), Op.SSTORE, Op.INVALID))
        execute(host)
        assert host.get_storage(CONTRACT_ADDRESS, 0) == 0

    def test_consecutive_messages_start_cold(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(pushn(0), Op.SLOAD, Op.STOP))
        evm, first = execute(host)
        second = evm.execute(Message(
            caller=ALICE_ADDRESS, target=CONTRACT_ADDRESS, code_address=CONTRACT_ADDRESS, gas=GAS,
        ))
        assert second.gas_used == first.gas_used == 3 + 2100

    def test_transient_storage_cleared_between_messages(self):
        # Return TLOAD(0), then TSTORE(0, 1)
        code = bytecode(pushn(0), Op.TLOAD, pushn(1), pushn(0), Op.TSTORE, return_word())
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=code)
        evm, first = execute(host)
        second = evm.execute(Message(
            caller=ALICE_ADDRESS, target=CONTRACT_ADDRESS, code_address=CONTRACT_ADDRESS, gas=GAS,
        ))
        assert first.output == second.output == bytes(32)

    def test_revert_keeps_remaining_gas(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(push(0), push(0), Op.REVERT))
        _evm, outcome = execute(host)
        assert outcome.is_revert
        assert outcome.gas_left == GAS - 4

    def test_memory_limit(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(push(1), push(2048, 2), Op.MSTORE))
        _evm, outcome = execute(host, config=EngineConfig(memory_limit=1024))
        assert outcome.error is ErrorKind.MEMORY_LIMIT_EXCEEDED


# ---------------------------------------------------------------------------
# Sub-calls
# ---------------------------------------------------------------------------

class TestCalls:
    def test_reverted_child_spends_only_what_it_used(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(call_code(Op.CALL, OTHER_CONTRACT_ADDRESS), Op.STOP))
        child = bytecode(push(1, 1), push(0, 1), Op.SSTORE, push(0, 1), push(0, 1), Op.REVERT)
        host.insert_account(OTHER_CONTRACT_ADDRESS, code=child)
        recorder = CallRecorder()

        evm, outcome = execute(host, inspector=recorder)

        (child_outcome,) = child_outcomes(recorder)
        assert child_outcome.is_revert
        assert child_outcome.gas_used == 3 + 3 + 22100 + 3 + 3
        assert outcome.success
        assert outcome.gas_left == GAS - CALL_OVERHEAD - child_outcome.gas_used
        assert outcome.gas_refunded == 0
        assert host.get_storage(OTHER_CONTRACT_ADDRESS, 0) == 0
        assert not evm.journal.is_warm_storage(OTHER_CONTRACT_ADDRESS, 0)

    def test_insufficient_balance_opens_no_frame(self):
        host = InMemoryHost()
        host.insert_account(
            CONTRACT_ADDRESS, code=bytecode(call_code(Op.CALL, OTHER_CONTRACT_ADDRESS, value=1), Op.STOP)
        )
        host.insert_account(OTHER_CONTRACT_ADDRESS, code=bytecode(push(1), push(0), Op.SSTORE))
        recorder = CallRecorder()
        evm = EVM(host, inspector=recorder)
        checkpoints = []
        original = evm.journal.checkpoint

        def counting_checkpoint():
            checkpoints.append(evm.journal.depth)
            return original()

        evm.journal.checkpoint = counting_checkpoint
        outcome = evm.execute(Message(
            caller=ALICE_ADDRESS, target=CONTRACT_ADDRESS, code_address=CONTRACT_ADDRESS, gas=GAS,
        ))

        assert outcome.success
        assert recorder.errors() == [ErrorKind.INSUFFICIENT_BALANCE]
        # Only the top-level frame took a checkpoint
        assert checkpoints == [0]
        # Value surcharge is kept; the forwarded gas and stipend come back
        assert outcome.gas_left == GAS - CALL_OVERHEAD - 9000 + 2300
        assert host.get_storage(OTHER_CONTRACT_ADDRESS, 0) == 0

    def test_gas_conservation(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(call_code(Op.CALL, OTHER_CONTRACT_ADDRESS), Op.STOP))
        host.insert_account(OTHER_CONTRACT_ADDRESS, code=bytecode(push(1, 1), push(2, 1), Op.ADD, Op.POP, Op.STOP))
        recorder = CallRecorder()

        _evm, outcome = execute(host, inspector=recorder)

        (child_outcome,) = child_outcomes(recorder)
        assert child_outcome.gas_used == 11
        assert outcome.gas_used == CALL_OVERHEAD + child_outcome.gas_used

    def test_return_data(self):
        host = InMemoryHost()
        parent = bytecode(
            call_code(Op.CALL, OTHER_CONTRACT_ADDRESS, ret_size=32),
            Op.POP,
            pushn(0), Op.MLOAD, pushn(0), Op.SSTORE,
            Op.RETURNDATASIZE, pushn(1), Op.SSTORE,
        )
        host.insert_account(CONTRACT_ADDRESS, code=parent)
        host.insert_account(OTHER_CONTRACT_ADDRESS, code=bytecode(push(42), return_word()))

        _evm, outcome = execute(host)

        assert outcome.success
        assert host.get_storage(CONTRACT_ADDRESS, 0) == 42
        assert host.get_storage(CONTRACT_ADDRESS, 1) == 32

    def test_short_output_leaves_rest_of_buffer(self):
        marker = 0xFF
        host = InMemoryHost()
        parent = bytecode(
            push(marker), pushn(0), Op.MSTORE,
            call_code(Op.CALL, OTHER_CONTRACT_ADDRESS, ret_size=32),
            Op.POP,
            pushn(0), Op.MLOAD, pushn(0), Op.SSTORE,
        )
        host.insert_account(CONTRACT_ADDRESS, code=parent)
        # Child returns a single 0x01 byte
        child = bytecode(push(1), pushn(0), Op.MSTORE8, pushn(1), pushn(0), Op.RETURN)
        host.insert_account(OTHER_CONTRACT_ADDRESS, code=child)

        execute(host)

        assert host.get_storage(CONTRACT_ADDRESS, 0) == (1 << 248) | marker

    def test_value_transfer(self):
        host = InMemoryHost()
        host.insert_account(
            CONTRACT_ADDRESS, balance=1000, code=bytecode(call_code(Op.CALL, OTHER_CONTRACT_ADDRESS, value=10))
        )
        host.insert_account(OTHER_CONTRACT_ADDRESS)
        _evm, outcome = execute(host)
        assert outcome.success
        assert host.get_balance(CONTRACT_ADDRESS) == 990
        assert host.get_balance(OTHER_CONTRACT_ADDRESS) == 10

    def test_value_to_new_account(self):
        host = InMemoryHost()
        host.insert_account(
            CONTRACT_ADDRESS, balance=1000, code=bytecode(call_code(Op.CALL, EMPTY_ADDRESS, value=10))
        )
        _evm, outcome = execute(host)
        assert outcome.success
        assert host.get_balance(EMPTY_ADDRESS) == 10
        # New-account surcharge on top of the value cost
        assert outcome.gas_left == GAS - CALL_OVERHEAD - 9000 - 25000 + 2300

    def test_zero_value_call_does_not_create_account(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(call_code(Op.CALL, EMPTY_ADDRESS)))
        _evm, outcome = execute(host)
        assert outcome.success
        assert not host.account_exists(EMPTY_ADDRESS)

    def test_delegatecall_uses_callers_context(self):
        host = InMemoryHost()
        host.insert_account(
            CONTRACT_ADDRESS, code=bytecode(call_code(Op.DELEGATECALL, OTHER_CONTRACT_ADDRESS), Op.STOP)
        )
        library = bytecode(push(42), pushn(0), Op.SSTORE, Op.CALLER, pushn(1), Op.SSTORE, Op.STOP)
        host.insert_account(OTHER_CONTRACT_ADDRESS, code=library)

        _evm, outcome = execute(host)

        assert outcome.success
        assert host.get_storage(CONTRACT_ADDRESS, 0) == 42
        assert host.get_storage(CONTRACT_ADDRESS, 1) == int.from_bytes(ALICE_ADDRESS, "big")
        assert host.get_storage(OTHER_CONTRACT_ADDRESS, 0) == 0

    def test_staticcall_write_protection(self):
        host = InMemoryHost()
        parent = bytecode(call_code(Op.STATICCALL, OTHER_CONTRACT_ADDRESS), pushn(1), Op.SSTORE)
        host.insert_account(CONTRACT_ADDRESS, code=parent, storage={1: 9})
        host.insert_account(OTHER_CONTRACT_ADDRESS, code=bytecode(push(1), push(0), Op.SSTORE))
        recorder = CallRecorder()

        _evm, outcome = execute(host, inspector=recorder)

        assert outcome.success
        (child_outcome,) = child_outcomes(recorder)
        assert child_outcome.error is ErrorKind.WRITE_PROTECTION
        assert child_outcome.gas_left == 0
        # CALL result 0 was stored
        assert host.get_storage(CONTRACT_ADDRESS, 1) == 0
        assert host.get_storage(OTHER_CONTRACT_ADDRESS, 0) == 0

    def test_call_to_precompile(self):
        host = InMemoryHost()
        identity = (4).to_bytes(20, "big")
        parent = bytecode(
            push(0xABCD), pushn(0), Op.MSTORE,
            call_code(Op.STATICCALL, identity, args_offset=0, args_size=32, ret_offset=32, ret_size=32),
            Op.POP,
            pushn(32), Op.MLOAD, pushn(0), Op.SSTORE,
        )
        host.insert_account(CONTRACT_ADDRESS, code=parent)
        _evm, outcome = execute(host)
        assert outcome.success
        assert host.get_storage(CONTRACT_ADDRESS, 0) == 0xABCD


# ---------------------------------------------------------------------------
# Contract creation from code
# ---------------------------------------------------------------------------

# Init code returning one zero byte: PUSH1 1 PUSH1 0 RETURN
INIT_CODE = bytes.fromhex("60016000f3")


def _create_program(init_code: bytes, op: int = Op.CREATE, salt: int = 0) -> bytes:
    """Place init_code at the end of memory word 0 and CREATE from it."""
    offset = 32 - len(init_code)
    parts = [push(int.from_bytes(init_code, "big"), len(init_code)), pushn(0), Op.MSTORE]
    if op == Op.CREATE2:
        parts.append(pushn(salt))
    parts += [pushn(len(init_code)), pushn(offset), pushn(0), op, pushn(0), Op.SSTORE]
    return bytecode(*parts)


class TestCreate:
    def test_create(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, nonce=1, code=_create_program(INIT_CODE))
        _evm, outcome = execute(host)

        expected = compute_create_address(CONTRACT_ADDRESS, 1)
        assert outcome.success
        assert host.get_storage(CONTRACT_ADDRESS, 0) == int.from_bytes(expected, "big")
        assert host.get_code(expected) == b"\x00"
        assert host.get_nonce(expected) == 1
        assert host.get_nonce(CONTRACT_ADDRESS) == 2

    def test_create2(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, nonce=1, code=_create_program(INIT_CODE, Op.CREATE2, salt=7))
        execute(host)

        expected = compute_create2_address(CONTRACT_ADDRESS, 7, INIT_CODE)
        assert host.get_storage(CONTRACT_ADDRESS, 0) == int.from_bytes(expected, "big")
        assert host.get_code(expected) == b"\x00"

    def test_collision(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, nonce=1, code=_create_program(INIT_CODE))
        host.insert_account(compute_create_address(CONTRACT_ADDRESS, 1), nonce=1)
        recorder = CallRecorder()
        execute(host, inspector=recorder)

        assert recorder.errors() == [ErrorKind.CREATE_COLLISION]
        assert host.get_storage(CONTRACT_ADDRESS, 0) == 0
        assert host.get_nonce(CONTRACT_ADDRESS) == 2

    def test_code_size_limit(self):
        # PUSH2 0x6001 PUSH1 0 RETURN: returns 24577 zero bytes
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, nonce=1, code=_create_program(bytes.fromhex("6160016000f3")))
        recorder = CallRecorder()
        execute(host, inspector=recorder)
        assert recorder.errors() == [ErrorKind.CODE_SIZE_LIMIT]
        assert host.get_storage(CONTRACT_ADDRESS, 0) == 0

    def test_ef_prefix_rejected(self):
        # MSTORE8 0xEF at 0, return one byte
        init = bytes.fromhex("60ef60005360016000f3")
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, nonce=1, code=_create_program(init))
        recorder = CallRecorder()
        execute(host, inspector=recorder)
        assert recorder.errors() == [ErrorKind.INVALID_CODE_PREFIX]

    def test_ef_prefix_allowed_before_london(self):
        init = bytes.fromhex("60ef60005360016000f3")
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, nonce=1, code=_create_program(init))
        execute(host, rules=get_rules(Fork.BERLIN))
        assert host.get_code(compute_create_address(CONTRACT_ADDRESS, 1)) == b"\xef"

    def test_reverting_init_code(self):
        host = InMemoryHost()
        # PUSH1 0 PUSH1 0 REVERT
        host.insert_account(CONTRACT_ADDRESS, nonce=1, code=_create_program(bytes.fromhex("60006000fd")))
        recorder = CallRecorder()
        execute(host, inspector=recorder)
        (child_outcome,) = child_outcomes(recorder)
        assert child_outcome.is_revert
        assert not host.account_exists(compute_create_address(CONTRACT_ADDRESS, 1))

    def test_create_in_static_context(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(call_code(Op.STATICCALL, OTHER_CONTRACT_ADDRESS)))
        host.insert_account(OTHER_CONTRACT_ADDRESS, nonce=1, code=_create_program(INIT_CODE))
        recorder = CallRecorder()
        execute(host, inspector=recorder)
        assert recorder.errors() == [ErrorKind.WRITE_PROTECTION]


# ---------------------------------------------------------------------------
# Call depth
# ---------------------------------------------------------------------------

# CALL(gas - 256, ADDRESS, 0, 0, 0, 0, 0): the contract calls itself
RECURSIVE = bytecode(
    pushn(0), pushn(0), pushn(0), pushn(0), pushn(0),
    Op.ADDRESS, push(0x0100, 2), Op.GAS, Op.SUB, Op.CALL, Op.STOP,
)


class TestDepth:
    def test_depth_limit(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=RECURSIVE)
        recorder = CallRecorder()

        _evm, outcome = execute(host, rules=get_rules(Fork.HOMESTEAD), inspector=recorder)

        assert outcome.success
        assert recorder.errors() == [ErrorKind.DEPTH_EXCEEDED]
        rejected = [m for m, o in recorder.calls if o.error is ErrorKind.DEPTH_EXCEEDED]
        assert rejected[0].depth == 1025
        assert recorder.max_depth == 1025
        # 1025 frames plus the rejected message
        assert len(recorder.calls) == 1026

    def test_configured_depth(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=RECURSIVE)
        recorder = CallRecorder()

        _evm, outcome = execute(host, config=EngineConfig(max_call_depth=8), inspector=recorder)

        assert outcome.success
        assert recorder.max_depth == 9
        assert recorder.errors() == [ErrorKind.DEPTH_EXCEEDED]

    def test_no_inspector_runs_same_program(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=RECURSIVE)
        _evm, outcome = execute(host, config=EngineConfig(max_call_depth=8))
        assert outcome.success


# ---------------------------------------------------------------------------
# SELFDESTRUCT
# ---------------------------------------------------------------------------

class TestSelfDestruct:
    def _program(self, beneficiary):
        return bytecode(push(int.from_bytes(beneficiary, "big"), 20), Op.SELFDESTRUCT)

    def test_moves_balance(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, balance=500, code=self._program(OTHER_CONTRACT_ADDRESS))
        evm, outcome = execute(host)
        assert outcome.success
        assert host.get_balance(OTHER_CONTRACT_ADDRESS) == 500
        assert host.get_balance(CONTRACT_ADDRESS) == 0
        # Existing contract: only the balance moves
        assert CONTRACT_ADDRESS not in evm.journal.selfdestructs

    def test_marks_account_before_cancun(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, balance=500, code=self._program(OTHER_CONTRACT_ADDRESS))
        evm, outcome = execute(host, rules=get_rules(Fork.SHANGHAI))
        assert outcome.success
        assert CONTRACT_ADDRESS in evm.journal.selfdestructs

    def test_in_static_context(self):
        host = InMemoryHost()
        host.insert_account(CONTRACT_ADDRESS, code=bytecode(call_code(Op.STATICCALL, OTHER_CONTRACT_ADDRESS)))
        host.insert_account(OTHER_CONTRACT_ADDRESS, code=self._program(EMPTY_ADDRESS))
        recorder = CallRecorder()
        execute(host, inspector=recorder)
        assert recorder.errors() == [ErrorKind.WRITE_PROTECTION]
