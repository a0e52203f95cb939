"""Pytest configuration and shared fixtures for all tests."""

import pytest

from evmcore.common.config import get_rules
from evmcore.vm.evm import EVM
from evmcore.vm.host import BlockEnv, InMemoryHost

from tests.fixtures.addresses import (
    ALICE_ADDRESS,
    BOB_ADDRESS,
    COINBASE_ADDRESS,
)
from tests.fixtures.chain import BASE_FEE, ONE_ETHER


# =============================================================================
# Core Fixtures - Block, Host, EVM
# =============================================================================

@pytest.fixture
def block():
    """Block environment with a small base fee."""
    return BlockEnv(
        number=100,
        timestamp=1_700_000_000,
        coinbase=COINBASE_ADDRESS,
        gas_limit=30_000_000,
        chain_id=1,
        base_fee=BASE_FEE,
        prevrandao=0x42,
    )


@pytest.fixture
def host(block):
    """In-memory host with Alice and Bob funded."""
    h = InMemoryHost(block=block)
    h.insert_account(ALICE_ADDRESS, balance=ONE_ETHER)
    h.insert_account(BOB_ADDRESS, balance=ONE_ETHER)
    return h


@pytest.fixture
def rules():
    """Latest fork rules."""
    return get_rules()


@pytest.fixture
def evm(host, rules):
    """EVM over the shared host."""
    return EVM(host, rules)
