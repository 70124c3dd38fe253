"""
Custom exception classes for the revenue pipeline.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class DistributorException(Exception):
    """Base exception class for the revenue distributor."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(DistributorException):
    """Raised when there's a configuration or credential error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class PersistenceError(DistributorException):
    """Raised when the accumulator record cannot be written."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PERSISTENCE_ERROR", details)


class DatabaseError(DistributorException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class SolanaError(DistributorException):
    """Raised when the ledger rejects a request."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "SOLANA_ERROR"
    ):
        super().__init__(message, code, details)


class RateLimitError(SolanaError):
    """Raised when the RPC endpoint answers with a rate-limit rejection."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "RATE_LIMIT_ERROR")


class RetriesExhaustedError(SolanaError):
    """Raised when a submission is still rate limited after the last attempt."""

    def __init__(self, attempts: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Max retries ({attempts}) exceeded for sending transaction",
            {"attempts": attempts, **(details or {})},
            "RETRIES_EXHAUSTED"
        )


class ConfirmationError(SolanaError):
    """Raised when a transaction is not confirmed before its blockhash expires."""

    def __init__(self, signature: str, reason: str):
        super().__init__(
            f"Transaction {signature} not confirmed: {reason}",
            {"signature": signature, "reason": reason},
            "CONFIRMATION_ERROR"
        )


class SwapError(DistributorException):
    """Raised when the token-to-SOL swap cannot be completed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SWAP_ERROR", details)


class NoRecipientsError(DistributorException):
    """Raised when a distribution cycle has nobody to pay."""

    def __init__(self, message: str = "No valid recipients found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NO_RECIPIENTS", details)


class SchedulerError(DistributorException):
    """Raised when there's a scheduler error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)
