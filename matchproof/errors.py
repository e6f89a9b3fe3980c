"""
Error Taxonomy and Classification

Every failure the integrity pipeline can raise lives here, so callers can
catch by category instead of by call site.

HIERARCHY:
    MatchProofError
    ├── CanonicalizationError   (fatal, value cannot be canonicalized)
    ├── KeyFormatError          (fatal, malformed key material)
    ├── PayloadTooLargeError    (fatal, caller should batch instead)
    ├── StorageError            (object store failure)
    └── TransportError
        ├── TransientTransportError   (retried with backoff)
        ├── PermanentTransportError   (surfaced immediately)
        └── CircuitOpenError          (ledger temporarily disabled)

Verification mismatches are never raised. They are collected as strings
in VerificationResult.errors.

classify_error() is the single place that decides whether a failure is
worth retrying. The TransactionHandler consults it; nobody else retries.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx


class MatchProofError(Exception):
    """Base exception for all matchproof errors."""
    pass


class CanonicalizationError(MatchProofError):
    """Raised when a value cannot be canonically serialized."""
    pass


class KeyFormatError(MatchProofError):
    """Raised when key material has the wrong length or encoding."""
    pass


class PayloadTooLargeError(MatchProofError):
    """Raised when even the minimal anchor payload exceeds the size ceiling."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Anchor payload is {size} bytes, limit is {limit}. "
            "Use batch anchoring instead."
        )


class StorageError(MatchProofError):
    """Raised when the object store cannot complete an operation."""
    pass


class TransportError(MatchProofError):
    """Base class for ledger transport failures."""
    pass


class TransientTransportError(TransportError):
    """Network, timeout or congestion failure. Safe to retry."""
    pass


class PermanentTransportError(TransportError):
    """The ledger rejected the transaction. Retrying will not help."""
    pass


class CircuitOpenError(TransportError):
    """Raised when the circuit breaker refuses a call."""
    pass


# ============================================================
# CLASSIFICATION
# ============================================================

class ErrorCode(str, Enum):
    """Stable error codes reported to users and logs."""
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    CONGESTION = "CONGESTION"
    RATE_LIMITED = "RATE_LIMITED"
    BLOCKHASH_EXPIRED = "BLOCKHASH_EXPIRED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    UNAUTHORIZED = "UNAUTHORIZED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    STORAGE_ERROR = "STORAGE_ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ErrorDetails:
    """Result of classifying an exception."""
    code: ErrorCode
    message: str
    user_message: str
    retryable: bool


# Keyword tables, checked in order. Permanent keywords win over transient
# ones so "invalid signature (timeout)" is never retried.
_PERMANENT_KEYWORDS: list[tuple[tuple[str, ...], ErrorCode, str]] = [
    (("insufficient funds", "insufficient lamports", "insufficient balance"),
     ErrorCode.INSUFFICIENT_FUNDS,
     "The anchoring wallet does not have enough funds."),
    (("invalid signature", "signature verification failed", "bad signature"),
     ErrorCode.INVALID_SIGNATURE,
     "The transaction signature was rejected."),
    (("malformed", "invalid payload", "invalid instruction", "too large"),
     ErrorCode.MALFORMED_PAYLOAD,
     "The anchor payload was rejected by the ledger."),
    (("unauthorized", "forbidden", "401", "403"),
     ErrorCode.UNAUTHORIZED,
     "The ledger refused the credentials."),
]

_TRANSIENT_KEYWORDS: list[tuple[tuple[str, ...], ErrorCode, str]] = [
    (("blockhash not found", "block height exceeded", "blockhash expired"),
     ErrorCode.BLOCKHASH_EXPIRED,
     "The transaction expired before landing. Retrying."),
    (("rate limit", "too many requests", "429"),
     ErrorCode.RATE_LIMITED,
     "The ledger is rate limiting requests. Retrying."),
    (("congestion", "congested", "busy", "503", "502"),
     ErrorCode.CONGESTION,
     "The ledger is congested. Retrying."),
    (("timeout", "timed out"),
     ErrorCode.TIMEOUT,
     "The ledger did not answer in time. Retrying."),
    (("network", "connection", "econnrefused", "econnreset", "fetch failed", "unreachable"),
     ErrorCode.NETWORK_ERROR,
     "Network problem talking to the ledger. Retrying."),
]


def classify_error(error: BaseException) -> ErrorDetails:
    """
    Decide whether an exception is transient (retryable) or permanent.

    Typed errors are classified by type. Everything else falls back to
    keyword matching on the message. Anything unrecognized is treated as
    permanent so that unknown ledger rejections are not hammered.
    """
    message = str(error) or type(error).__name__

    if isinstance(error, PayloadTooLargeError):
        return ErrorDetails(
            ErrorCode.PAYLOAD_TOO_LARGE, message,
            "The anchor payload is too large. Use batch anchoring.", False,
        )
    if isinstance(error, CircuitOpenError):
        return ErrorDetails(
            ErrorCode.CIRCUIT_OPEN, message,
            "Anchoring is temporarily disabled after repeated failures.", False,
        )
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorDetails(
            ErrorCode.TIMEOUT, message,
            "The ledger did not answer in time. Retrying.", True,
        )

    lowered = message.lower()
    for keywords, code, user_message in _PERMANENT_KEYWORDS:
        if any(k in lowered for k in keywords):
            return ErrorDetails(code, message, user_message, False)

    if isinstance(error, PermanentTransportError):
        return ErrorDetails(
            ErrorCode.UNKNOWN, message, "The ledger rejected the transaction.", False,
        )

    for keywords, code, user_message in _TRANSIENT_KEYWORDS:
        if any(k in lowered for k in keywords):
            return ErrorDetails(code, message, user_message, True)

    if isinstance(error, (TransientTransportError, ConnectionError, httpx.TransportError)):
        return ErrorDetails(
            ErrorCode.NETWORK_ERROR, message,
            "Network problem talking to the ledger. Retrying.", True,
        )
    if isinstance(error, StorageError):
        return ErrorDetails(
            ErrorCode.STORAGE_ERROR, message, "The object store failed.", False,
        )

    return ErrorDetails(ErrorCode.UNKNOWN, message, "Unexpected anchoring failure.", False)


def is_retryable(error: BaseException) -> bool:
    """Shortcut for classify_error(error).retryable."""
    return classify_error(error).retryable


def to_transport_error(error: BaseException, details: Optional[ErrorDetails] = None) -> TransportError:
    """Wrap an arbitrary exception into the matching TransportError subclass."""
    if isinstance(error, TransportError):
        return error
    details = details or classify_error(error)
    cls = TransientTransportError if details.retryable else PermanentTransportError
    wrapped = cls(f"[{details.code.value}] {details.message}")
    wrapped.__cause__ = error
    return wrapped
