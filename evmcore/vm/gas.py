"""
EVM gas metering and cost calculations.

GasMeter tracks one frame's remaining gas and refund counter. The helpers
below compute the dynamic parts of opcode costs (memory copies, EXP, SSTORE,
CALL) from a RuleSet so every repriced constant comes from configuration.
"""

from __future__ import annotations

from evmcore.common.config import RuleSet
from evmcore.vm.exceptions import OutOfGas
from evmcore.vm.memory import memory_word_size

# ---------------------------------------------------------------------------
# Fork-independent base costs
# ---------------------------------------------------------------------------

G_ZERO = 0
G_BASE = 2
G_VERY_LOW = 3
G_LOW = 5
G_MID = 8
G_HIGH = 10
G_JUMPDEST = 1
G_EXP = 10
G_LOG = 375
G_LOG_DATA = 8
G_LOG_TOPIC = 375
G_KECCAK256 = 30
G_KECCAK256_WORD = 6
G_COPY = 3
G_BLOCKHASH = 20
G_SELFBALANCE = 5
G_WARM_ACCESS = 100

# Container format
G_RJUMP = 2
G_RJUMPI = 4
G_CALLF = 5
G_RETF = 3
G_DATALOAD = 4


# ---------------------------------------------------------------------------
# Gas meter
# ---------------------------------------------------------------------------

class GasMeter:
    """Remaining gas and refund counter for one frame."""

    __slots__ = ("limit", "remaining", "refunded")

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.remaining = limit
        # Signed: net metering may subtract refunds granted by ancestors.
        self.refunded = 0

    def charge(self, amount: int) -> None:
        """Consume gas, raising OutOfGas if insufficient."""
        if amount > self.remaining:
            raise OutOfGas(f"Out of gas: need {amount}, have {self.remaining}")
        self.remaining -= amount

    def return_gas(self, amount: int) -> None:
        """Give back gas a child frame did not use."""
        self.remaining += amount

    def spend_all(self) -> None:
        self.remaining = 0

    def refund(self, amount: int) -> None:
        self.refunded += amount

    def remove_refund(self, amount: int) -> None:
        self.refunded -= amount

    @property
    def spent(self) -> int:
        return self.limit - self.remaining

    def final_refund(self, max_refund_quotient: int) -> int:
        """Refund granted at the end of a transaction, capped by the fork rule."""
        if self.refunded <= 0:
            return 0
        return min(self.refunded, self.spent // max_refund_quotient)

    def __repr__(self) -> str:
        return f"GasMeter(limit={self.limit}, remaining={self.remaining}, refunded={self.refunded})"


# ---------------------------------------------------------------------------
# Dynamic cost helpers
# ---------------------------------------------------------------------------

def copy_gas(size: int) -> int:
    """Per-word cost of CALLDATACOPY / CODECOPY / RETURNDATACOPY / MCOPY."""
    return G_COPY * memory_word_size(size)


def keccak_gas(size: int) -> int:
    return G_KECCAK256_WORD * memory_word_size(size)


def exp_gas(rules: RuleSet, exponent: int) -> int:
    """Dynamic part of EXP (G_EXP is charged from the jump table)."""
    if exponent == 0:
        return 0
    byte_len = (exponent.bit_length() + 7) // 8
    return rules.exp_byte_gas * byte_len


def initcode_gas(rules: RuleSet, size: int) -> int:
    """EIP-3860 per-word initcode charge (zero before Shanghai)."""
    return rules.initcode_word_gas * memory_word_size(size)


def all_but_one_64th(gas: int) -> int:
    return gas - gas // 64


# ---------------------------------------------------------------------------
# SSTORE
# ---------------------------------------------------------------------------

def sstore_gas(
    rules: RuleSet,
    current_value: int,
    new_value: int,
    original_value: int,
    is_cold: bool,
) -> tuple[int, int]:
    """Calculate SSTORE gas cost and refund delta.

    Covers the legacy schedule, EIP-1283/EIP-2200 net metering and the
    EIP-2929/EIP-3529 repricing, selected by the rule-set.
    Returns (gas_cost, refund_delta); refund_delta may be negative.
    """
    cold_cost = rules.cold_sload_gas if (rules.access_lists and is_cold) else 0

    if not rules.net_gas_metering:
        if current_value == 0 and new_value != 0:
            gas = rules.sstore_set_gas
        else:
            gas = rules.sstore_reset_gas
        refund = rules.sstore_clears_refund if (current_value != 0 and new_value == 0) else 0
        return gas + cold_cost, refund

    if current_value == new_value:
        return rules.sstore_dirty_gas + cold_cost, 0

    refund = 0
    if original_value == current_value:
        # Slot hasn't been changed yet in this tx
        if original_value == 0:
            return rules.sstore_set_gas + cold_cost, 0
        if new_value == 0:
            refund = rules.sstore_clears_refund
        return rules.sstore_reset_gas + cold_cost, refund

    # Slot was already changed
    if original_value != 0:
        if current_value == 0:
            refund -= rules.sstore_clears_refund
        elif new_value == 0:
            refund += rules.sstore_clears_refund

    if original_value == new_value:
        if original_value == 0:
            refund += rules.sstore_set_gas - rules.sstore_dirty_gas
        else:
            refund += rules.sstore_reset_gas - rules.sstore_dirty_gas

    return rules.sstore_dirty_gas + cold_cost, refund


# ---------------------------------------------------------------------------
# CALL gas calculation
# ---------------------------------------------------------------------------

def call_gas(
    rules: RuleSet,
    gas_available: int,
    gas_requested: int,
    extra_cost: int,
    has_value: bool,
) -> tuple[int, int]:
    """Calculate the gas forwarded by a CALL-type opcode.

    `gas_available` is what the caller has left after the static cost, memory
    expansion and access charges. `extra_cost` covers value transfer and new
    account charges.

    Returns (total_gas_cost, gas_for_callee). Before EIP-150 the callee gets
    exactly what was requested; afterwards the caller retains 1/64 of what it
    has left.
    """
    if rules.all_but_one_64th:
        if gas_available < extra_cost:
            raise OutOfGas(f"Out of gas: need {extra_cost}, have {gas_available}")
        callee_gas = min(gas_requested, all_but_one_64th(gas_available - extra_cost))
    else:
        callee_gas = gas_requested

    total_cost = extra_cost + callee_gas
    if has_value:
        callee_gas += rules.call_stipend  # free gas for value transfer
    return total_cost, callee_gas


def create_gas(rules: RuleSet, gas_available: int) -> int:
    """Gas handed to init code by CREATE/CREATE2."""
    if rules.all_but_one_64th:
        return all_but_one_64th(gas_available)
    return gas_available


# ---------------------------------------------------------------------------
# Intrinsic gas for a transaction
# ---------------------------------------------------------------------------

def intrinsic_gas(
    rules: RuleSet,
    data: bytes,
    is_create: bool,
    access_list: tuple = (),
) -> int:
    """Calculate the intrinsic gas for a transaction."""
    gas = rules.tx_gas
    if is_create:
        gas += rules.tx_create_gas
        gas += initcode_gas(rules, len(data))
    zeros = data.count(0)
    gas += zeros * rules.tx_data_zero_gas
    gas += (len(data) - zeros) * rules.tx_data_nonzero_gas
    for _address, keys in access_list:
        gas += rules.access_list_address_gas
        gas += len(keys) * rules.access_list_storage_key_gas
    return gas


def calldata_floor_gas(rules: RuleSet, data: bytes) -> int:
    """EIP-7623 minimum gas a transaction pays for its calldata.

    Zero bytes count as one token and other bytes as four. Zero before Prague.
    """
    if not rules.calldata_floor_token_gas:
        return 0
    zeros = data.count(0)
    tokens = zeros + 4 * (len(data) - zeros)
    return rules.tx_gas + tokens * rules.calldata_floor_token_gas
