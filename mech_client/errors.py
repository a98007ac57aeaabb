"""Exception hierarchy shared by the request and delivery pipeline."""

from __future__ import annotations

from typing import Optional


class MechClientError(RuntimeError):
    """Base class for every error raised by :mod:`mech_client`."""


class InvalidCidError(MechClientError, ValueError):
    """Raised when a content identifier cannot be decoded."""


class UnsupportedDigestError(InvalidCidError):
    """Raised when a multihash is not a 32 byte sha2-256 digest."""

    def __init__(self, message: str, *, code: Optional[int] = None, length: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.length = length


class ConfigurationError(MechClientError):
    """Raised when static configuration is missing or invalid."""


class UnsupportedPaymentTypeError(ConfigurationError):
    """Raised when a mech reports a payment type this client cannot handle."""

    def __init__(self, message: str, *, payment_type: str) -> None:
        super().__init__(message)
        self.payment_type = payment_type


class InsufficientBalanceError(MechClientError):
    """Raised when a pre-flight balance check fails."""

    def __init__(self, message: str, *, needed: int, actual: int, address: str) -> None:
        super().__init__(message)
        self.needed = needed
        self.actual = actual
        self.address = address


class TransactionBuildError(MechClientError):
    """Raised when a transaction cannot be encoded or signed."""


class TransactionSubmissionError(MechClientError):
    """Raised once every submission attempt has failed."""

    def __init__(self, message: str, *, last_error: Optional[BaseException] = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class TransactionSendError(MechClientError):
    """Raised by the chain adapter when sending a signed transaction errors.

    ``transaction_hash`` is set when the node had already accepted the
    transaction before the error surfaced.
    """

    def __init__(self, message: str, *, transaction_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.transaction_hash = transaction_hash


class ReceiptTimeoutError(MechClientError):
    """Raised when a receipt is not observed before the wait ends."""

    def __init__(self, message: str, *, tx_hash: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class MalformedLogError(MechClientError):
    """Raised when a single log entry cannot be decoded."""


class ContentStoreError(MechClientError):
    """Raised when the content store rejects an upload or fetch."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


__all__ = [
    "ConfigurationError",
    "ContentStoreError",
    "InsufficientBalanceError",
    "InvalidCidError",
    "MalformedLogError",
    "MechClientError",
    "ReceiptTimeoutError",
    "TransactionBuildError",
    "TransactionSendError",
    "TransactionSubmissionError",
    "UnsupportedDigestError",
    "UnsupportedPaymentTypeError",
]
