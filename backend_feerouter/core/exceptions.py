"""
Application-level exceptions.

Every error carries a short machine-readable ``code`` so the API layer and the
worker can map failures consistently. Only InvalidAmount (and the lookup
errors) ever reach a caller of the routing API; MixingFailure surfaces as a
transaction in ``failed`` state and PersistenceFailure is logged and swallowed.
"""

from __future__ import annotations


class FeeRouterError(Exception):
    """Base class for all fee router errors."""

    code = "fee_router_error"


class InvalidAmount(FeeRouterError, ValueError):
    """Fee amount is not a positive finite number."""

    code = "invalid_amount"


class TransactionNotFound(FeeRouterError, LookupError):
    """No fee transaction with the given id."""

    code = "not_found"

    def __init__(self, transaction_id: str) -> None:
        super().__init__(f"Fee transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


# Alias used by callers that think in terms of the generic lookup failure.
NotFound = TransactionNotFound


class WalletNotFound(FeeRouterError, LookupError):
    code = "wallet_not_found"

    def __init__(self, wallet_id: str) -> None:
        super().__init__(f"Shell wallet not found: {wallet_id}")
        self.wallet_id = wallet_id


class WalletNotEmpty(FeeRouterError):
    """Retirement requested for a wallet that still holds a balance."""

    code = "wallet_not_empty"


class InvalidTransition(FeeRouterError):
    """Status change not allowed by the fee transaction state machine."""

    code = "invalid_transition"


class MixingFailure(FeeRouterError):
    """Internal failure during the hop sequence; recorded as status=failed."""

    code = "mixing_failure"


class HopFailure(MixingFailure):
    """A single hop could not be applied; nothing was mutated."""

    code = "hop_failure"


class PersistenceFailure(FeeRouterError):
    """Snapshot could not be read from or written to the backing store."""

    code = "persistence_failure"


class ConfigError(FeeRouterError, ValueError):
    """Invalid mixing configuration or config update."""

    code = "config_error"


class EngineStopped(FeeRouterError):
    """Mutating call on an engine that has been stopped."""

    code = "engine_stopped"
