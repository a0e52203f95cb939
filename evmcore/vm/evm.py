"""
EVM orchestrator.

EVM owns the call stack as an explicit list of Frames, so nesting depth is a
checked counter rather than Python recursion. execute() runs one message
(call or create) to completion; execute_transaction() wraps it with the
transaction-level rules: intrinsic gas, nonce, gas purchase, access-list
warming, refunds, account cleanup and the coinbase fee.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from evmcore.common.config import EngineConfig, RuleSet, get_rules
from evmcore.common.types import (
    ZERO_ADDRESS,
    Log,
    compute_create2_address,
    compute_create_address,
    to_address,
)
from evmcore.vm.bytecode import analyze
from evmcore.vm.call_frame import (
    CallKind,
    ExecutionOutcome,
    Frame,
    Message,
    Status,
)
from evmcore.vm.exceptions import (
    ErrorKind,
    InvalidTransaction,
    PrecompileFailure,
    StructuralError,
)
from evmcore.vm.gas import GasMeter, calldata_floor_gas, intrinsic_gas
from evmcore.vm.hooks import Inspector
from evmcore.vm.host import Host, TxEnv
from evmcore.vm.interpreter import resume_frame, run_frame
from evmcore.vm.journal import Journal
from evmcore.vm.memory import Memory, Stack
from evmcore.vm.opcodes import build_jump_table
from evmcore.vm.precompiles import PrecompileRegistry

logger = logging.getLogger(__name__)

# EIP-2681
MAX_NONCE = 2**64 - 1


class EVM:
    """Executes messages against a Host under one rule-set."""

    def __init__(
        self,
        host: Host,
        rules: Optional[RuleSet] = None,
        config: Optional[EngineConfig] = None,
        inspector: Optional[Inspector] = None,
        precompiles: Optional[PrecompileRegistry] = None,
    ) -> None:
        self.host = host
        self.rules = rules or get_rules()
        self.config = config or EngineConfig()
        self.inspector = inspector
        self.journal = Journal(host)
        self.precompiles = precompiles or PrecompileRegistry.for_rules(self.rules, self.config)

        self._legacy_table = build_jump_table(self.rules, self.config.stack_limit)
        self._eof_table = None
        if self.rules.eof_enabled:
            self._eof_table = build_jump_table(self.rules, self.config.stack_limit, eof=True)

    # -- Message execution --

    def execute(self, message: Message) -> ExecutionOutcome:
        """Run a message and every sub-call it makes; return its outcome.

        A message started outside any open checkpoint is a transaction of
        its own, so per-transaction journal state left by earlier messages
        is cleared first.
        """
        if self.journal.depth == 0:
            self.journal.begin_transaction()
        return self._execute(message)

    def _execute(self, message: Message) -> ExecutionOutcome:
        frames: list[Frame] = []
        outcome = self._spawn(message, frames)

        while frames:
            frame = frames[-1]
            table = self._eof_table if frame.bytecode.is_eof else self._legacy_table
            result = run_frame(frame, self, table)

            if result is None:
                child = self._spawn(frame.pending, frames)
                if child is not None:
                    resume_frame(frame, child)
                continue

            frames.pop()
            outcome = self._finish(frame, result)
            if frames:
                resume_frame(frames[-1], outcome)

        return outcome

    def _spawn(self, message: Message, frames: list[Frame]) -> Optional[ExecutionOutcome]:
        """Start a message.

        Pushes a new frame and returns None, or returns the outcome directly
        when no frame is needed (failed precondition, precompile, no code).
        """
        if self.inspector is not None:
            self.inspector.call(message)
        if message.kind.is_create:
            return self._spawn_create(message, frames)
        return self._spawn_call(message, frames)

    def _fail_early(self, message: Message, kind: ErrorKind) -> ExecutionOutcome:
        # Nothing ran: the caller gets all the gas it handed over back
        outcome = ExecutionOutcome(status=Status.ERROR, gas_left=message.gas, error=kind)
        logger.debug("Message at depth %d rejected: %s", message.depth, kind.value)
        return self._ended(message, outcome)

    def _ended(self, message: Message, outcome: ExecutionOutcome) -> ExecutionOutcome:
        outcome.gas_used = message.gas - outcome.gas_left
        if self.inspector is not None:
            self.inspector.call_end(message, outcome)
        return outcome

    def _spawn_call(self, message: Message, frames: list[Frame]) -> Optional[ExecutionOutcome]:
        journal = self.journal
        if message.depth > self.config.max_call_depth:
            return self._fail_early(message, ErrorKind.DEPTH_EXCEEDED)
        if (
            message.transfers_value
            and message.value > 0
            and journal.get_balance(message.caller) < message.value
        ):
            return self._fail_early(message, ErrorKind.INSUFFICIENT_BALANCE)

        cp = journal.checkpoint()
        is_precompile = message.code_address in self.precompiles

        if message.kind is CallKind.CALL and not self.host.account_exists(message.target):
            if self.rules.state_clearing and message.value == 0 and not is_precompile:
                # EIP-161: a zero-value call does not create the account
                journal.commit(cp)
                return self._ended(message, ExecutionOutcome(Status.HALT, gas_left=message.gas))
            journal.ensure_account(message.target)

        if message.transfers_value:
            journal.transfer(message.caller, message.target, message.value)
        elif message.kind is CallKind.STATICCALL:
            journal.touch(message.target)

        if is_precompile:
            return self._run_precompile(message, cp)

        code = journal.get_code(message.code_address)
        if not code:
            journal.commit(cp)
            return self._ended(message, ExecutionOutcome(Status.HALT, gas_left=message.gas))

        try:
            bytecode = analyze(code, self.rules.eof_enabled)
        except StructuralError as exc:
            logger.debug("Code at %s failed validation: %s", message.code_address.hex(), exc)
            journal.rewind(cp)
            return self._ended(message, self._errored(message.gas, ErrorKind.STRUCTURAL_VALIDATION))

        self._push_frame(message, bytecode, cp, frames)
        return None

    def _run_precompile(self, message: Message, cp) -> ExecutionOutcome:
        try:
            output, gas_used = self.precompiles.run(message.code_address, message.data, message.gas)
        except PrecompileFailure as exc:
            logger.debug(
                "Precompile %s failed: %s", message.code_address.hex(), exc.reason.value
            )
            self.journal.rewind(cp)
            return self._ended(message, self._errored(message.gas, ErrorKind.PRECOMPILE_FAILURE))
        self.journal.commit(cp)
        outcome = ExecutionOutcome(Status.HALT, output=output, gas_left=message.gas - gas_used)
        return self._ended(message, outcome)

    def _spawn_create(self, message: Message, frames: list[Frame]) -> Optional[ExecutionOutcome]:
        journal = self.journal
        rules = self.rules
        sender = message.caller

        if message.depth > self.config.max_call_depth:
            return self._fail_early(message, ErrorKind.DEPTH_EXCEEDED)
        if journal.get_balance(sender) < message.value:
            return self._fail_early(message, ErrorKind.INSUFFICIENT_BALANCE)
        nonce = journal.get_nonce(sender)
        if nonce >= MAX_NONCE:
            return self._fail_early(message, ErrorKind.CALL_VALUE_OVERFLOW)

        if message.kind is CallKind.CREATE2:
            address = compute_create2_address(sender, message.salt, message.init_code)
        else:
            address = compute_create_address(sender, nonce)
        journal.increment_nonce(sender)
        if rules.access_lists:
            journal.warm_address(address)
        message.target = address
        message.code_address = address

        if journal.get_nonce(address) != 0 or journal.get_code(address):
            logger.debug("CREATE collision at %s", address.hex())
            return self._ended(message, self._errored(message.gas, ErrorKind.CREATE_COLLISION))

        cp = journal.checkpoint()
        journal.create_account(address)
        if rules.create_account_nonce:
            journal.set_nonce(address, rules.create_account_nonce)
        journal.transfer(sender, address, message.value)

        # Init code always runs as legacy code
        self._push_frame(message, analyze(message.init_code), cp, frames)
        return None

    def _push_frame(self, message: Message, bytecode, cp, frames: list[Frame]) -> None:
        frame = Frame(
            message=message,
            bytecode=bytecode,
            gas=GasMeter(message.gas),
            stack=Stack(self.config.stack_limit),
            memory=Memory(
                limit=self.config.memory_limit,
                gas_per_word=self.rules.memory_gas_per_word,
                quad_divisor=self.rules.memory_quad_divisor,
            ),
            checkpoint=cp,
        )
        frames.append(frame)
        logger.debug(
            "Enter frame depth=%d kind=%s target=%s gas=%d",
            message.depth, message.kind.value, message.target.hex(), message.gas,
        )
        if self.inspector is not None:
            self.inspector.initialize_frame(frame)

    def _errored(self, gas_left: int, kind: ErrorKind) -> ExecutionOutcome:
        if self.rules.error_consumes_all_gas:
            gas_left = 0
        return ExecutionOutcome(status=Status.ERROR, gas_left=gas_left, error=kind)

    def _finish(self, frame: Frame, outcome: ExecutionOutcome) -> ExecutionOutcome:
        """Commit or rewind a terminated frame and settle its gas."""
        message = frame.message
        if message.kind.is_create and outcome.success:
            outcome = self._deposit_code(frame, outcome)

        if outcome.success:
            self.journal.commit(frame.checkpoint)
        else:
            self.journal.rewind(frame.checkpoint)
            if outcome.is_error:
                outcome = self._errored(outcome.gas_left, outcome.error)

        logger.debug(
            "Exit frame depth=%d status=%s gas_left=%d",
            message.depth, outcome.status.value, outcome.gas_left,
        )
        return self._ended(message, outcome)

    def _deposit_code(self, frame: Frame, outcome: ExecutionOutcome) -> ExecutionOutcome:
        rules = self.rules
        code = outcome.output
        address = frame.address

        if rules.max_code_size is not None and len(code) > rules.max_code_size:
            return ExecutionOutcome(Status.ERROR, gas_left=frame.gas.remaining, error=ErrorKind.CODE_SIZE_LIMIT)
        if rules.reject_ef_code and code[:1] == b"\xef":
            return ExecutionOutcome(Status.ERROR, gas_left=frame.gas.remaining, error=ErrorKind.INVALID_CODE_PREFIX)

        cost = rules.code_deposit_gas * len(code)
        if cost > frame.gas.remaining:
            if rules.code_deposit_oog_fails:
                return ExecutionOutcome(
                    Status.ERROR, gas_left=frame.gas.remaining, error=ErrorKind.CODE_DEPOSIT_OUT_OF_GAS
                )
            # Frontier: the contract is created without code
            code = b""
        else:
            frame.gas.charge(cost)
        self.journal.set_code(address, code)

        return ExecutionOutcome(
            status=Status.HALT,
            output=code,
            gas_left=frame.gas.remaining,
            gas_refunded=outcome.gas_refunded,
            created_address=address,
        )

    # -- Transactions --

    def execute_transaction(self, tx: Transaction) -> TxResult:
        """Validate, execute and settle a transaction.

        Raises InvalidTransaction if the transaction cannot be included; no
        state is changed in that case.
        """
        rules = self.rules
        host = self.host
        journal = self.journal
        block = host.block
        is_create = tx.to is None

        try:
            gas_price, priority_fee = self._effective_gas_price(tx)
            if is_create and rules.max_initcode_size is not None and len(tx.data) > rules.max_initcode_size:
                raise InvalidTransaction(f"initcode too large: {len(tx.data)} bytes")
            intrinsic = intrinsic_gas(rules, tx.data, is_create, tuple(tx.access_list))
            floor = calldata_floor_gas(rules, tx.data)
            if tx.gas_limit < max(intrinsic, floor):
                raise InvalidTransaction(
                    f"intrinsic gas too low: {tx.gas_limit} < {max(intrinsic, floor)}"
                )
            if rules.tx_gas_limit_cap is not None and tx.gas_limit > rules.tx_gas_limit_cap:
                raise InvalidTransaction(
                    f"gas limit {tx.gas_limit} above cap {rules.tx_gas_limit_cap}"
                )
            if tx.gas_limit > block.gas_limit:
                raise InvalidTransaction(f"gas limit {tx.gas_limit} above block limit {block.gas_limit}")
            nonce = host.get_nonce(tx.sender)
            if tx.nonce is not None and tx.nonce != nonce:
                raise InvalidTransaction(f"nonce mismatch: expected {nonce}, got {tx.nonce}")
            if nonce >= MAX_NONCE:
                raise InvalidTransaction("sender nonce at maximum")
            max_price = tx.max_fee_per_gas if tx.max_fee_per_gas is not None else gas_price
            upfront = tx.gas_limit * max_price + tx.value
            balance = host.get_balance(tx.sender)
            if balance < upfront:
                raise InvalidTransaction(f"insufficient funds: balance {balance} < {upfront}")
        except InvalidTransaction as exc:
            logger.info("Transaction from %s rejected: %s", tx.sender.hex(), exc)
            raise

        journal.begin_transaction()
        host.tx = TxEnv(origin=tx.sender, gas_price=gas_price, blob_hashes=list(tx.blob_hashes))

        journal.set_balance(tx.sender, balance - tx.gas_limit * gas_price)
        if not is_create:
            journal.increment_nonce(tx.sender)

        if rules.access_lists:
            self._warm_access_list(tx)

        gas = GasMeter(tx.gas_limit)
        gas.charge(intrinsic)
        message = Message(
            kind=CallKind.CREATE if is_create else CallKind.CALL,
            caller=tx.sender,
            target=tx.to if tx.to is not None else ZERO_ADDRESS,
            code_address=tx.to if tx.to is not None else ZERO_ADDRESS,
            value=tx.value,
            data=b"" if is_create else tx.data,
            gas=gas.remaining,
            init_code=tx.data if is_create else b"",
        )
        gas.spend_all()
        outcome = self._execute(message)
        gas.return_gas(outcome.gas_left)
        if outcome.success:
            gas.refund(outcome.gas_refunded)

        refund = gas.final_refund(rules.max_refund_quotient)
        gas_used = max(gas.spent - refund, floor)

        journal.add_balance(tx.sender, (tx.gas_limit - gas_used) * gas_price)
        journal.add_balance(block.coinbase, gas_used * priority_fee)

        for address in sorted(journal.selfdestructs):
            journal.destroy_account(address)
        if rules.state_clearing:
            for address in sorted(journal.touched):
                if host.account_exists(address) and host.is_empty(address):
                    journal.destroy_account(address)

        result = TxResult(
            status=outcome.status,
            gas_used=gas_used,
            gas_refunded=refund,
            output=outcome.output,
            logs=list(journal.logs) if outcome.success else [],
            error=outcome.error,
            created_address=outcome.created_address,
        )
        logger.debug(
            "Transaction from %s: status=%s gas_used=%d refund=%d",
            tx.sender.hex(), outcome.status.value, gas_used, refund,
        )
        return result

    def _effective_gas_price(self, tx: Transaction) -> tuple[int, int]:
        """Return (price paid per gas, part of it that goes to the coinbase)."""
        base_fee = self.host.block.base_fee if self.rules.eip1559 else 0
        if tx.max_fee_per_gas is not None:
            if not self.rules.eip1559:
                raise InvalidTransaction("dynamic-fee transaction before London")
            max_priority = tx.max_priority_fee_per_gas or 0
            if tx.max_fee_per_gas < base_fee:
                raise InvalidTransaction(
                    f"max fee {tx.max_fee_per_gas} below base fee {base_fee}"
                )
            if max_priority > tx.max_fee_per_gas:
                raise InvalidTransaction("priority fee above max fee")
            priority = min(max_priority, tx.max_fee_per_gas - base_fee)
            return base_fee + priority, priority
        if tx.gas_price < base_fee:
            raise InvalidTransaction(f"gas price {tx.gas_price} below base fee {base_fee}")
        return tx.gas_price, tx.gas_price - base_fee

    def _warm_access_list(self, tx: Transaction) -> None:
        journal = self.journal
        journal.warm_address(tx.sender)
        if tx.to is not None:
            journal.warm_address(tx.to)
        for address in self.precompiles.addresses():
            journal.warm_address(address)
        if self.rules.warm_coinbase:
            journal.warm_address(self.host.block.coinbase)
        for address, keys in tx.access_list:
            journal.warm_address(address)
            for key in keys:
                journal.warm_storage_slot(address, key)


# ---------------------------------------------------------------------------
# Transaction types
# ---------------------------------------------------------------------------

@dataclass
class Transaction:
    sender: bytes
    to: Optional[bytes] = None
    value: int = 0
    data: bytes = b""
    gas_limit: int = 1_000_000
    gas_price: int = 0
    # EIP-1559 fee fields; when set, gas_price is ignored
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    # None skips the nonce check
    nonce: Optional[int] = None
    access_list: list[tuple[bytes, list[int]]] = field(default_factory=list)
    blob_hashes: list[bytes] = field(default_factory=list)

    def __post_init__(self) -> None:
        # Addresses may be given as hex strings or ints
        self.sender = to_address(self.sender)
        if self.to is not None:
            self.to = to_address(self.to)
        self.access_list = [(to_address(address), list(keys)) for address, keys in self.access_list]


@dataclass
class TxResult:
    status: Status
    gas_used: int = 0
    gas_refunded: int = 0
    output: bytes = b""
    logs: list[Log] = field(default_factory=list)
    error: Optional[ErrorKind] = None
    created_address: Optional[bytes] = None

    @property
    def success(self) -> bool:
        return self.status is Status.HALT
