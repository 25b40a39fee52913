"""
Ledger Layer - Typed access to the on-chain trigger registry.

This module provides:
    - Trigger: Read-through snapshot of a registry entry
    - TriggerStatus: Ledger-owned status (Pending, Executing, ...)
    - Direction: Above/below threshold condition
    - TransitionResult: Outcome of start/complete/fail submissions
    - LedgerClient: Protocol consumed by the worker
    - Web3LedgerClient: JSON-RPC implementation (web3 + eth_account signer)
    - check_endpoint: Key-less connectivity check (chain id, block)
    - ResilienceLayer: Bounded retries with fail-stop escalation
    - ResilientLedgerClient: LedgerClient wrapper routing calls through it

Error Classes:
    - LedgerTransportError: endpoint unreachable, retried
    - LedgerCallError: ledger answered with an error, not retried
    - TransportDegradedError: retries exhausted, scheduler halts
"""

from .models import (
    Direction,
    TransitionOutcome,
    TransitionResult,
    Trigger,
    TriggerStatus,
    from_fixed_point,
)
from .client import (
    LedgerCallError,
    LedgerClient,
    LedgerError,
    LedgerTransportError,
    Web3LedgerClient,
    check_endpoint,
    connect,
)
from .resilience import (
    ResilienceLayer,
    ResilienceStats,
    ResilientLedgerClient,
    RetryPolicy,
    TransportDegradedError,
)

__all__ = [
    # Models
    "Direction",
    "TransitionOutcome",
    "TransitionResult",
    "Trigger",
    "TriggerStatus",
    "from_fixed_point",
    # Client
    "LedgerCallError",
    "LedgerClient",
    "LedgerError",
    "LedgerTransportError",
    "Web3LedgerClient",
    "check_endpoint",
    "connect",
    # Resilience
    "ResilienceLayer",
    "ResilienceStats",
    "ResilientLedgerClient",
    "RetryPolicy",
    "TransportDegradedError",
]
