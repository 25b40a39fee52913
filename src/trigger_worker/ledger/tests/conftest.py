"""
Ledger layer test fixtures.

Ledger tests never touch a network: the web3 object is a MagicMock
with contracts dispatched by ABI.
"""
import pytest
from unittest.mock import MagicMock, AsyncMock

from trigger_worker.ledger import (
    ResilienceLayer,
    RetryPolicy,
    TransitionResult,
    Web3LedgerClient,
)
from trigger_worker.ledger.client import ORACLE_ABI, TRIGGER_ABI


REGISTRY_ADDRESS = "0x" + "11" * 20
ORACLE_ADDRESS = "0x" + "22" * 20
TOKEN_ADDRESS = "0x" + "33" * 20
OWNER_ADDRESS = "0x" + "44" * 20
PRIVATE_KEY = "0x" + "01" * 32


class Resolved:
    """Awaitable that can be awaited any number of times (web3 async properties)."""

    def __init__(self, value):
        self.value = value

    def __await__(self):
        if isinstance(self.value, BaseException):
            raise self.value
        return self.value
        yield  # pragma: no cover


@pytest.fixture
def resolved():
    """The Resolved awaitable class, for overriding web3 async properties."""
    return Resolved


# =============================================================================
# Raw Contract Data
# =============================================================================


@pytest.fixture
def make_raw_trigger():
    """Factory for getTrigger tuples."""

    def _make(
        trigger_id=1,
        watch_index=3,
        threshold=100_000_000,  # 100.000000
        is_above=True,
        status=0,
        created_at=1_700_000_000,
        expires_at=0,
        execution_started_at=0,
        output_amount=0,
    ):
        return (
            trigger_id,
            OWNER_ADDRESS,
            watch_index,
            TOKEN_ADDRESS,
            1_000_000,
            50,
            threshold,
            is_above,
            status,
            created_at,
            expires_at,
            execution_started_at,
            output_amount,
        )

    return _make


# =============================================================================
# Web3 Fixtures
# =============================================================================


@pytest.fixture
def registry_contract():
    """Mock registry contract; every transition builds, sends and mines."""
    contract = MagicMock()
    for name in ("startExecution", "completeExecution", "markFailed"):
        fn = getattr(contract.functions, name)
        fn.return_value.build_transaction = AsyncMock(return_value={"nonce": 7})
    return contract


@pytest.fixture
def oracle_contract():
    return MagicMock()


@pytest.fixture
def token_contract():
    return MagicMock()


@pytest.fixture
def mock_web3(registry_contract, oracle_contract, token_contract):
    """AsyncWeb3 stand-in with contracts picked by ABI."""
    w3 = MagicMock()

    def contract(address, abi):
        if abi is TRIGGER_ABI:
            return registry_contract
        if abi is ORACLE_ABI:
            return oracle_contract
        return token_contract

    w3.eth.contract = MagicMock(side_effect=contract)
    w3.eth.chain_id = Resolved(998)
    w3.eth.block_number = Resolved(12345)
    w3.eth.get_transaction_count = AsyncMock(return_value=7)
    w3.eth.send_raw_transaction = AsyncMock(return_value=b"\xab" * 32)
    w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 1})
    w3.provider.disconnect = AsyncMock()
    return w3


@pytest.fixture
def client(mock_web3):
    """Web3LedgerClient with a mocked web3 and signer."""
    ledger = Web3LedgerClient(
        rpc_url="http://localhost:8545",
        trigger_contract_address=REGISTRY_ADDRESS,
        oracle_contract_address=ORACLE_ADDRESS,
        private_key=PRIVATE_KEY,
        web3=mock_web3,
    )
    signed = MagicMock()
    signed.raw_transaction = b"\x02\x01"
    signed.hash = b"\xab" * 32
    ledger._account = MagicMock(address=ledger.address)
    ledger._account.sign_transaction.return_value = signed
    return ledger


# =============================================================================
# Resilience Fixtures
# =============================================================================


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def layer(no_sleep):
    """Resilience layer with 3 attempts and no real delay."""
    return ResilienceLayer(RetryPolicy(max_retries=3, retry_delay_seconds=2.0), sleep=no_sleep)


@pytest.fixture
def mock_inner():
    """Raw ledger client mock."""
    inner = MagicMock()
    inner.get_trigger_count = AsyncMock(return_value=3)
    inner.get_trigger = AsyncMock()
    inner.get_price = AsyncMock()
    inner.get_settlement_balance = AsyncMock(return_value=0)
    inner.start_execution = AsyncMock(return_value=TransitionResult.accept("0x1"))
    inner.complete_execution = AsyncMock(return_value=TransitionResult.accept("0x2"))
    inner.mark_failed = AsyncMock(return_value=TransitionResult.accept("0x3"))
    inner.ping = AsyncMock(return_value=12345)
    return inner
