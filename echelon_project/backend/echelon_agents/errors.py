"""
Error taxonomy for the Echelon agent runtime
"""
from typing import Any, Dict, Optional


class EchelonError(Exception):
    """Base class for all agent runtime errors."""


class ConfigurationError(EchelonError):
    """Required settings are missing or malformed. Fatal at startup."""

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("Configuration validation failed:\n" + "\n".join(self.problems))


class RpcError(EchelonError):
    """Network failure or timeout talking to the RPC endpoint."""


class RevertError(EchelonError):
    """A contract read reverted."""

    def __init__(self, reason: str, method: Optional[str] = None):
        super().__init__(f"{method} reverted: {reason}" if method else f"Call reverted: {reason}")
        self.reason = reason
        self.method = method


class InsufficientFundsError(EchelonError):
    """The signing wallet cannot pay for the transaction."""


class NonceError(EchelonError):
    """The node rejected the transaction nonce."""


class ReceiptTimeoutError(EchelonError, TimeoutError):
    """No receipt within the timeout. The transaction may still confirm later."""

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"No receipt for {tx_hash} after {timeout}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class RevertedError(EchelonError):
    """The transaction was mined but its execution reverted."""

    def __init__(self, tx_hash: str, reason: str, receipt: Optional[Dict[str, Any]] = None):
        super().__init__(f"Transaction {tx_hash} reverted: {reason}")
        self.tx_hash = tx_hash
        self.reason = reason
        self.receipt = receipt or {}


class IndexerUnavailableError(EchelonError):
    """The indexer could not be reached or answered with a non-2xx status."""


class IndexerSchemaError(EchelonError):
    """The indexer answered with a malformed or unexpected payload."""


class StaleDecisionError(EchelonError):
    """Live chain state no longer supports the decision."""


class InvariantViolation(EchelonError):
    """A safety invariant was broken. The runtime fails fast on this."""


class RegistrationError(EchelonError):
    """The signing wallet is not the registered agent it claims to be."""


class CycleCancelled(EchelonError):
    """A stop was requested while the cycle was suspended."""


TRANSIENT_ERRORS = (RpcError, IndexerUnavailableError)
