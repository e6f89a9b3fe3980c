"""
Ledger Client Abstraction

The integrity core never speaks a ledger's wire protocol. It builds a
payload, hands it to a LedgerClient, and interprets what comes back.

Implementations:
- InMemoryLedger: for development and testing
- LocalLedger: append-only JSON-lines file, for the CLI and demos

A production client wraps the real ledger SDK behind this interface.

ERROR CONTRACT:
Implementations raise TransientTransportError for failures worth retrying
(network, timeout, congestion) and PermanentTransportError for rejections
(bad signature, insufficient funds, malformed payload). Anything else is
classified by matchproof.errors.classify_error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from ..schemas.anchor import AnchorRecord


class CommitmentLevel(str, Enum):
    """How final a transaction must be before we call it landed."""
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"


class ConfirmationStatus(str, Enum):
    """Outcome of waiting for a confirmation."""
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    """Point-in-time status of a submitted transaction."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def is_landed(self) -> bool:
        return self in (TransactionStatus.CONFIRMED, TransactionStatus.FINALIZED)


class PayloadSigner(Protocol):
    """Anything that can authorize a ledger transaction."""

    @property
    def public_key(self) -> str: ...

    def sign(self, message: bytes) -> str: ...


@dataclass(frozen=True)
class LocatedAnchor:
    """An anchor together with the transaction that carries it."""
    transaction_id: str
    anchor: AnchorRecord


class LedgerClient(ABC):
    """
    Narrow interface to a public append-only ledger.

    All methods are coroutines: ledger calls are network I/O.
    """

    @abstractmethod
    async def submit_payload(self, payload: bytes, signer: Optional[PayloadSigner] = None) -> str:
        """
        Broadcast a payload.

        Returns:
            Transaction id
        """
        pass

    @abstractmethod
    async def get_anchor_by_transaction(self, transaction_id: str) -> Optional[AnchorRecord]:
        """Anchor carried by a transaction, or None if it carries none."""
        pass

    @abstractmethod
    async def wait_for_confirmation(
        self,
        transaction_id: str,
        commitment: CommitmentLevel,
        timeout: float,
    ) -> ConfirmationStatus:
        """Block until the transaction reaches `commitment` or timeout elapses."""
        pass

    @abstractmethod
    async def get_transaction_status(self, transaction_id: str) -> Optional[TransactionStatus]:
        """Current status, or None if the ledger has never seen the id."""
        pass

    @abstractmethod
    async def estimate_fee(self, payload: bytes) -> int:
        """Fee estimate in the ledger's smallest unit."""
        pass

    @abstractmethod
    async def find_anchor(self, identifier: str) -> Optional[LocatedAnchor]:
        """
        Scan for the most recent anchor whose match_id or batch_id equals
        `identifier`.
        """
        pass

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
        return None
