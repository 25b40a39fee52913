"""
Remote ledger client for the trigger registry.

Provides typed async access to the registry contract, the price oracle
and ERC20 balances, and submits the worker's state transitions.

Transition outcomes:
    - Pre-flight revert (gas estimation fails): REJECTED, nothing was sent
    - Receipt status 1: ACCEPTED
    - Receipt status 0: REJECTED (reverted on-chain)
    - Receipt not seen in time after sending: UNKNOWN
    - Transport error while sending: UNKNOWN, the node may have it

Transport failures before anything is sent are raised as
LedgerTransportError so the resilience layer can retry them. Everything
else is a LedgerCallError.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Optional, Protocol, Tuple, runtime_checkable

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from .models import Trigger, TransitionResult, from_fixed_point

logger = logging.getLogger(__name__)


TRIGGER_STRUCT = {
    "type": "tuple",
    "name": "",
    "components": [
        {"name": "id", "type": "uint256"},
        {"name": "owner", "type": "address"},
        {"name": "watchIndex", "type": "uint32"},
        {"name": "targetAsset", "type": "address"},
        {"name": "inputAmount", "type": "uint256"},
        {"name": "maxSlippage", "type": "uint256"},
        {"name": "thresholdPrice", "type": "uint256"},
        {"name": "isAbove", "type": "bool"},
        {"name": "status", "type": "uint8"},
        {"name": "createdAt", "type": "uint256"},
        {"name": "expiresAt", "type": "uint256"},
        {"name": "executionStartedAt", "type": "uint256"},
        {"name": "outputAmount", "type": "uint256"},
    ],
}

TRIGGER_ABI = [
    {
        "type": "function",
        "name": "getTrigger",
        "inputs": [{"name": "triggerId", "type": "uint256"}],
        "outputs": [TRIGGER_STRUCT],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "nextTriggerId",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "startExecution",
        "inputs": [{"name": "triggerId", "type": "uint256"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "completeExecution",
        "inputs": [
            {"name": "triggerId", "type": "uint256"},
            {"name": "outputAmount", "type": "uint256"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "markFailed",
        "inputs": [
            {"name": "triggerId", "type": "uint256"},
            {"name": "reason", "type": "string"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]

ORACLE_ABI = [
    {
        "type": "function",
        "name": "getPrice",
        "inputs": [{"name": "index", "type": "uint32"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]

ERC20_BALANCE_ABI = [
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]

# Errors that mean "the endpoint could not be reached", not "the ledger said no"
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


class LedgerError(Exception):
    """Base exception for ledger access errors."""
    pass


class LedgerTransportError(LedgerError):
    """The RPC endpoint could not be reached or timed out."""
    pass


class LedgerCallError(LedgerError):
    """The endpoint answered but the call failed (revert, bad data, ...)."""
    pass


@runtime_checkable
class LedgerClient(Protocol):
    """Typed view of the remote ledger consumed by the worker."""

    async def get_trigger_count(self) -> int:
        """Next id the registry will assign (ids run 1..count-1)."""
        ...

    async def get_trigger(self, trigger_id: int) -> Trigger:
        ...

    async def get_price(self, feed_index: int) -> Decimal:
        ...

    async def get_settlement_balance(self, asset: str, holder: Optional[str] = None) -> int:
        ...

    async def start_execution(self, trigger_id: int) -> TransitionResult:
        ...

    async def complete_execution(self, trigger_id: int, output_amount: int) -> TransitionResult:
        ...

    async def mark_failed(self, trigger_id: int, reason: str) -> TransitionResult:
        ...

    async def ping(self) -> int:
        """Lightweight connectivity check. Returns the current block number."""
        ...


def connect(rpc_url: str, request_timeout: float = 10.0) -> AsyncWeb3:
    """AsyncWeb3 over HTTP with a per-request timeout."""
    return AsyncWeb3(
        AsyncWeb3.AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
        )
    )


async def check_endpoint(
    rpc_url: str,
    request_timeout: float = 10.0,
    web3: Optional[AsyncWeb3] = None,
) -> Tuple[int, int]:
    """
    Connectivity check needing only an RPC URL.

    Returns:
        (chain_id, block_number)

    Raises:
        LedgerTransportError: Endpoint unreachable
        LedgerCallError: Endpoint answered with an error
    """
    w3 = web3 or connect(rpc_url, request_timeout)
    try:
        chain_id = int(await w3.eth.chain_id)
        block = int(await w3.eth.block_number)
    except TRANSPORT_ERRORS as e:
        raise LedgerTransportError(f"{rpc_url}: {e}") from e
    except Exception as e:
        raise LedgerCallError(f"{rpc_url}: {e}") from e
    finally:
        disconnect = getattr(w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
    return chain_id, block


class Web3LedgerClient:
    """
    LedgerClient backed by an EVM JSON-RPC endpoint.

    Usage:
        client = Web3LedgerClient(
            rpc_url="https://rpc.hyperliquid-testnet.xyz/evm",
            trigger_contract_address="0x...",
            oracle_contract_address="0x...",
            private_key=os.environ["PRIVATE_KEY"],
        )
        count = await client.get_trigger_count()
        result = await client.start_execution(7)
        await client.close()
    """

    def __init__(
        self,
        rpc_url: str,
        trigger_contract_address: str,
        oracle_contract_address: str,
        private_key: str,
        price_decimals: int = 6,
        request_timeout: float = 10.0,
        receipt_timeout: float = 60.0,
        web3: Optional[AsyncWeb3] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            rpc_url: JSON-RPC endpoint URL
            trigger_contract_address: Trigger registry contract
            oracle_contract_address: Price oracle contract
            private_key: Executor signing key (hex, with or without 0x)
            price_decimals: Fixed-point decimals of thresholds and oracle prices
            request_timeout: Per-request HTTP timeout in seconds
            receipt_timeout: How long to wait for a transition to be mined
            web3: Optional pre-built AsyncWeb3 (for testing)
        """
        self._w3 = web3 or connect(rpc_url, request_timeout)
        key = private_key if private_key.startswith("0x") else f"0x{private_key}"
        self._account = Account.from_key(key)
        self._price_decimals = price_decimals
        self._receipt_timeout = receipt_timeout

        self._registry = self._w3.eth.contract(
            address=Web3.to_checksum_address(trigger_contract_address),
            abi=TRIGGER_ABI,
        )
        self._oracle = self._w3.eth.contract(
            address=Web3.to_checksum_address(oracle_contract_address),
            abi=ORACLE_ABI,
        )

        # One signer, one nonce sequence
        self._send_lock = asyncio.Lock()
        self._chain_id: Optional[int] = None

    @property
    def address(self) -> str:
        """Executor address derived from the signing key."""
        return self._account.address

    async def close(self) -> None:
        """Release the provider's HTTP session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_trigger_count(self) -> int:
        return int(await self._read("nextTriggerId", self._registry.functions.nextTriggerId()))

    async def get_trigger(self, trigger_id: int) -> Trigger:
        raw = await self._read(
            f"getTrigger({trigger_id})",
            self._registry.functions.getTrigger(trigger_id),
        )
        try:
            return Trigger.from_contract(raw, self._price_decimals)
        except (ValueError, TypeError) as e:
            raise LedgerCallError(f"Malformed trigger {trigger_id}: {e}") from e

    async def get_price(self, feed_index: int) -> Decimal:
        raw = await self._read(
            f"getPrice({feed_index})",
            self._oracle.functions.getPrice(feed_index),
        )
        if not raw:
            raise LedgerCallError(f"Oracle returned no price for feed {feed_index}")
        return from_fixed_point(raw, self._price_decimals)

    async def get_settlement_balance(self, asset: str, holder: Optional[str] = None) -> int:
        token = self._w3.eth.contract(
            address=Web3.to_checksum_address(asset),
            abi=ERC20_BALANCE_ABI,
        )
        owner = Web3.to_checksum_address(holder or self.address)
        return int(await self._read(f"balanceOf({asset})", token.functions.balanceOf(owner)))

    async def ping(self) -> int:
        try:
            return int(await self._w3.eth.block_number)
        except TRANSPORT_ERRORS as e:
            raise LedgerTransportError(f"eth_blockNumber: {e}") from e
        except Exception as e:
            raise LedgerCallError(f"eth_blockNumber: {e}") from e

    async def _read(self, label: str, fn: Any) -> Any:
        """Run a view call, classifying failures."""
        try:
            return await fn.call()
        except TRANSPORT_ERRORS as e:
            raise LedgerTransportError(f"{label}: {e}") from e
        except Exception as e:
            raise LedgerCallError(f"{label}: {e}") from e

    # =========================================================================
    # Transitions
    # =========================================================================

    async def start_execution(self, trigger_id: int) -> TransitionResult:
        return await self._transact(
            f"startExecution({trigger_id})",
            self._registry.functions.startExecution(trigger_id),
        )

    async def complete_execution(self, trigger_id: int, output_amount: int) -> TransitionResult:
        return await self._transact(
            f"completeExecution({trigger_id})",
            self._registry.functions.completeExecution(trigger_id, output_amount),
        )

    async def mark_failed(self, trigger_id: int, reason: str) -> TransitionResult:
        return await self._transact(
            f"markFailed({trigger_id})",
            self._registry.functions.markFailed(trigger_id, reason),
        )

    async def _transact(self, label: str, fn: Any) -> TransitionResult:
        """
        Build, sign, send and confirm one transition.

        Gas estimation during build_transaction simulates the call, so a
        revert there means the ledger rejected it and nothing was sent.
        Once the transaction is out, transport errors no longer raise: the
        outcome is UNKNOWN and resubmitting would risk a duplicate.
        """
        async with self._send_lock:
            try:
                if self._chain_id is None:
                    self._chain_id = int(await self._w3.eth.chain_id)
                nonce = await self._w3.eth.get_transaction_count(self.address, "pending")
                tx = await fn.build_transaction({
                    "from": self.address,
                    "nonce": nonce,
                    "chainId": self._chain_id,
                })
            except ContractLogicError as e:
                logger.warning(f"{label} rejected in pre-flight: {e}")
                return TransitionResult.reject(f"pre-flight revert: {e}")
            except TRANSPORT_ERRORS as e:
                raise LedgerTransportError(f"{label}: {e}") from e
            except Exception as e:
                raise LedgerCallError(f"{label}: {e}") from e

            signed = self._account.sign_transaction(tx)
            tx_hash = Web3.to_hex(signed.hash)

            try:
                await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except TRANSPORT_ERRORS as e:
                # The node may have taken it before the connection dropped
                logger.warning(f"{label} send failed, may be in the mempool: {tx_hash}: {e}")
                return TransitionResult.unknown(f"send failed: {e}", tx_hash=tx_hash)
            except Exception as e:
                raise LedgerCallError(f"{label} send: {e}") from e

            logger.debug(f"{label} sent: {tx_hash}")

            try:
                receipt = await self._w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self._receipt_timeout
                )
            except TimeExhausted:
                logger.warning(
                    f"{label} not mined within {self._receipt_timeout}s: {tx_hash}"
                )
                return TransitionResult.unknown("receipt timeout", tx_hash=tx_hash)
            except TRANSPORT_ERRORS as e:
                logger.warning(f"{label} receipt lookup failed: {e}")
                return TransitionResult.unknown(f"receipt lookup failed: {e}", tx_hash=tx_hash)

            if receipt["status"] == 1:
                logger.info(f"{label} confirmed: {tx_hash}")
                return TransitionResult.accept(tx_hash)

            logger.warning(f"{label} reverted on-chain: {tx_hash}")
            return TransitionResult.reject("reverted on-chain", tx_hash=tx_hash)
