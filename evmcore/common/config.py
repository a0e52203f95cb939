"""
Rule-set (hardfork) configuration and engine limits.

A RuleSet bundles every fork-dependent constant and feature switch the
interpreter consults. Nothing reads a global "current fork": the active
RuleSet is handed to the EVM, the jump-table builder and the precompile
registry explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Optional


# ---------------------------------------------------------------------------
# Hardfork sequence
# ---------------------------------------------------------------------------

class Fork(IntEnum):
    FRONTIER = 0
    HOMESTEAD = 1
    TANGERINE_WHISTLE = 2     # EIP-150
    SPURIOUS_DRAGON = 3       # EIP-155/160/161/170
    BYZANTIUM = 4
    CONSTANTINOPLE = 5
    PETERSBURG = 6
    ISTANBUL = 7
    BERLIN = 8
    LONDON = 9
    PARIS = 10                # the merge
    SHANGHAI = 11
    CANCUN = 12
    PRAGUE = 13
    OSAKA = 14

    @classmethod
    def from_name(cls, name: str) -> "Fork":
        key = name.strip().upper().replace(" ", "_")
        aliases = {
            "TANGERINEWHISTLE": "TANGERINE_WHISTLE",
            "EIP150": "TANGERINE_WHISTLE",
            "SPURIOUSDRAGON": "SPURIOUS_DRAGON",
            "EIP158": "SPURIOUS_DRAGON",
            "MERGE": "PARIS",
        }
        return cls[aliases.get(key, key)]


# ---------------------------------------------------------------------------
# Rule-set
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RuleSet:
    fork: Fork

    # Account/storage access (static part; pre-Berlin these are the full cost)
    balance_gas: int = 20
    extcode_gas: int = 20
    extcodehash_gas: int = 400
    sload_gas: int = 50
    call_gas: int = 40
    selfdestruct_gas: int = 0
    exp_byte_gas: int = 10

    # EIP-2929 warm/cold access
    access_lists: bool = False
    warm_access_gas: int = 100
    cold_sload_gas: int = 2100
    cold_account_access_gas: int = 2600

    # SSTORE schedule
    sstore_set_gas: int = 20000
    sstore_reset_gas: int = 5000
    sstore_clears_refund: int = 15000
    net_gas_metering: bool = False      # EIP-1283 / EIP-2200
    sstore_dirty_gas: int = 200
    sstore_sentry: bool = False         # EIP-2200 "gas left <= stipend" check

    # Calls
    call_value_gas: int = 9000
    call_stipend: int = 2300
    new_account_gas: int = 25000
    all_but_one_64th: bool = False      # EIP-150

    # Refunds
    max_refund_quotient: int = 2        # EIP-3529 raises this to 5
    selfdestruct_refund: int = 24000

    # Memory
    memory_gas_per_word: int = 3
    memory_quad_divisor: int = 512

    # Contract creation
    create_gas: int = 32000
    code_deposit_gas: int = 200
    max_code_size: Optional[int] = None         # EIP-170
    max_initcode_size: Optional[int] = None     # EIP-3860
    initcode_word_gas: int = 0                  # EIP-3860
    reject_ef_code: bool = False                # EIP-3541
    code_deposit_oog_fails: bool = False        # Homestead
    create_account_nonce: int = 0               # EIP-161 sets 1

    # Account semantics
    state_clearing: bool = False                # EIP-161
    selfdestruct_only_in_same_tx: bool = False  # EIP-6780
    warm_coinbase: bool = False                 # EIP-3651

    # Transaction
    tx_gas: int = 21000
    tx_create_gas: int = 0
    tx_data_zero_gas: int = 4
    tx_data_nonzero_gas: int = 68
    access_list_address_gas: int = 2400
    access_list_storage_key_gas: int = 1900
    eip1559: bool = False
    calldata_floor_token_gas: int = 0            # EIP-7623
    tx_gas_limit_cap: Optional[int] = None      # EIP-7825

    # Container format (EOF v1)
    eof_enabled: bool = False

    # Forfeiture policy: Errored frames burn their remaining gas
    error_consumes_all_gas: bool = True

    def is_active(self, fork: Fork) -> bool:
        return self.fork >= fork

    @property
    def name(self) -> str:
        return self.fork.name.lower()


FRONTIER_RULES = RuleSet(fork=Fork.FRONTIER)

HOMESTEAD_RULES = replace(
    FRONTIER_RULES,
    fork=Fork.HOMESTEAD,
    code_deposit_oog_fails=True,
    tx_create_gas=32000,
)

TANGERINE_WHISTLE_RULES = replace(
    HOMESTEAD_RULES,
    fork=Fork.TANGERINE_WHISTLE,
    balance_gas=400,
    extcode_gas=700,
    sload_gas=200,
    call_gas=700,
    selfdestruct_gas=5000,
    all_but_one_64th=True,
)

SPURIOUS_DRAGON_RULES = replace(
    TANGERINE_WHISTLE_RULES,
    fork=Fork.SPURIOUS_DRAGON,
    exp_byte_gas=50,
    max_code_size=24576,
    state_clearing=True,
    create_account_nonce=1,
)

BYZANTIUM_RULES = replace(SPURIOUS_DRAGON_RULES, fork=Fork.BYZANTIUM)

CONSTANTINOPLE_RULES = replace(
    BYZANTIUM_RULES,
    fork=Fork.CONSTANTINOPLE,
    net_gas_metering=True,
    sstore_dirty_gas=200,
)

# Petersburg removed EIP-1283 again
PETERSBURG_RULES = replace(
    CONSTANTINOPLE_RULES,
    fork=Fork.PETERSBURG,
    net_gas_metering=False,
)

ISTANBUL_RULES = replace(
    PETERSBURG_RULES,
    fork=Fork.ISTANBUL,
    balance_gas=700,
    extcodehash_gas=700,
    sload_gas=800,
    net_gas_metering=True,
    sstore_dirty_gas=800,
    sstore_sentry=True,
    tx_data_nonzero_gas=16,
)

BERLIN_RULES = replace(
    ISTANBUL_RULES,
    fork=Fork.BERLIN,
    access_lists=True,
    balance_gas=100,
    extcode_gas=100,
    extcodehash_gas=100,
    sload_gas=100,
    call_gas=100,
    sstore_dirty_gas=100,
    sstore_reset_gas=2900,
)

LONDON_RULES = replace(
    BERLIN_RULES,
    fork=Fork.LONDON,
    max_refund_quotient=5,
    selfdestruct_refund=0,
    sstore_clears_refund=4800,
    reject_ef_code=True,
    eip1559=True,
)

PARIS_RULES = replace(LONDON_RULES, fork=Fork.PARIS)

SHANGHAI_RULES = replace(
    PARIS_RULES,
    fork=Fork.SHANGHAI,
    max_initcode_size=49152,
    initcode_word_gas=2,
    warm_coinbase=True,
)

CANCUN_RULES = replace(
    SHANGHAI_RULES,
    fork=Fork.CANCUN,
    selfdestruct_only_in_same_tx=True,
)

PRAGUE_RULES = replace(
    CANCUN_RULES,
    fork=Fork.PRAGUE,
    calldata_floor_token_gas=10,
)

OSAKA_RULES = replace(
    PRAGUE_RULES,
    fork=Fork.OSAKA,
    tx_gas_limit_cap=2**24,
)


RULES: dict[Fork, RuleSet] = {
    Fork.FRONTIER: FRONTIER_RULES,
    Fork.HOMESTEAD: HOMESTEAD_RULES,
    Fork.TANGERINE_WHISTLE: TANGERINE_WHISTLE_RULES,
    Fork.SPURIOUS_DRAGON: SPURIOUS_DRAGON_RULES,
    Fork.BYZANTIUM: BYZANTIUM_RULES,
    Fork.CONSTANTINOPLE: CONSTANTINOPLE_RULES,
    Fork.PETERSBURG: PETERSBURG_RULES,
    Fork.ISTANBUL: ISTANBUL_RULES,
    Fork.BERLIN: BERLIN_RULES,
    Fork.LONDON: LONDON_RULES,
    Fork.PARIS: PARIS_RULES,
    Fork.SHANGHAI: SHANGHAI_RULES,
    Fork.CANCUN: CANCUN_RULES,
    Fork.PRAGUE: PRAGUE_RULES,
    Fork.OSAKA: OSAKA_RULES,
}

LATEST_FORK = Fork.OSAKA


def get_rules(fork: Fork | str = LATEST_FORK) -> RuleSet:
    """Return the rule-set for a fork (enum member or name)."""
    if isinstance(fork, str):
        fork = Fork.from_name(fork)
    return RULES[fork]


# ---------------------------------------------------------------------------
# Engine limits
# ---------------------------------------------------------------------------

@dataclass
class EngineConfig:
    max_call_depth: int = 1024
    stack_limit: int = 1024
    # Ceiling on a single frame's memory in bytes; None leaves it to gas.
    memory_limit: Optional[int] = None
    # Path to the KZG trusted setup used by the point-evaluation precompile.
    kzg_trusted_setup_path: Optional[str] = None
