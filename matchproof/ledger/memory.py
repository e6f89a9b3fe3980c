"""
In-process Ledger Implementations

InMemoryLedger behaves like a public ledger with a memo program: it
accepts small opaque payloads, assigns transaction ids, confirms them,
and lets anyone scan history. LocalLedger adds an append-only JSON-lines
file so anchors survive between CLI invocations.

Neither does consensus or fees in any real sense. They exist so the
integrity pipeline can be exercised end to end without a network.
"""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Optional

from ..errors import PermanentTransportError
from ..schemas.anchor import AnchorRecord, parse_anchor_payload
from .base import (
    CommitmentLevel,
    ConfirmationStatus,
    LedgerClient,
    LocatedAnchor,
    PayloadSigner,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

# A memo-style instruction carries at most this many bytes
MAX_LEDGER_PAYLOAD_BYTES = 566

BASE_FEE = 5000
FEE_PER_BYTE = 10


@dataclass
class LedgerTransaction:
    """One stored transaction."""
    transaction_id: str
    payload: bytes
    submitted_at: float
    confirmed_at: float
    signer_public_key: Optional[str] = None
    signature: Optional[str] = None
    failed: bool = False

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "payload": self.payload.decode("utf-8"),
            "submitted_at": self.submitted_at,
            "confirmed_at": self.confirmed_at,
            "signer_public_key": self.signer_public_key,
            "signature": self.signature,
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerTransaction":
        return cls(
            transaction_id=data["transaction_id"],
            payload=data["payload"].encode("utf-8"),
            submitted_at=float(data["submitted_at"]),
            confirmed_at=float(data["confirmed_at"]),
            signer_public_key=data.get("signer_public_key"),
            signature=data.get("signature"),
            failed=bool(data.get("failed", False)),
        )


class InMemoryLedger(LedgerClient):
    """
    In-memory ledger for development and testing.

    Args:
        confirmation_delay: Seconds between submission and confirmation.
            0 confirms immediately.
        finalization_delay: Extra seconds before a confirmed transaction
            counts as finalized.
    """

    def __init__(self, confirmation_delay: float = 0.0, finalization_delay: float = 0.0):
        self.confirmation_delay = confirmation_delay
        self.finalization_delay = finalization_delay
        self._transactions: dict[str, LedgerTransaction] = {}
        self._order: list[str] = []
        self._lock = Lock()

    # ------------------------------------------------------------
    # Write
    # ------------------------------------------------------------

    async def submit_payload(self, payload: bytes, signer: Optional[PayloadSigner] = None) -> str:
        if not payload:
            raise PermanentTransportError("malformed payload: empty")
        if len(payload) > MAX_LEDGER_PAYLOAD_BYTES:
            raise PermanentTransportError(
                f"malformed payload: {len(payload)} bytes exceeds {MAX_LEDGER_PAYLOAD_BYTES}"
            )
        try:
            payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PermanentTransportError(f"malformed payload: not UTF-8 ({e})") from e

        signer_public_key = None
        signature = None
        if signer is not None:
            try:
                signature = signer.sign(payload)
                signer_public_key = signer.public_key
            except Exception as e:
                raise PermanentTransportError(f"invalid signature: {e}") from e

        now = time.monotonic()
        with self._lock:
            sequence = len(self._order)
            digest = hashlib.sha256(payload + sequence.to_bytes(8, "big")).hexdigest()
            tx = LedgerTransaction(
                transaction_id=f"tx-{sequence:06d}-{digest[:16]}",
                payload=bytes(payload),
                submitted_at=now,
                confirmed_at=now + self.confirmation_delay,
                signer_public_key=signer_public_key,
                signature=signature,
            )
            self._transactions[tx.transaction_id] = tx
            self._order.append(tx.transaction_id)

        self._on_recorded(tx)
        logger.debug(f"Ledger accepted {tx.transaction_id} ({len(payload)} bytes)")
        return tx.transaction_id

    def _on_recorded(self, tx: LedgerTransaction) -> None:
        """Hook for persistent subclasses."""
        pass

    # ------------------------------------------------------------
    # Read
    # ------------------------------------------------------------

    def _get(self, transaction_id: str) -> Optional[LedgerTransaction]:
        with self._lock:
            return self._transactions.get(transaction_id)

    def _status_of(self, tx: LedgerTransaction) -> TransactionStatus:
        if tx.failed:
            return TransactionStatus.FAILED
        now = time.monotonic()
        if now < tx.confirmed_at:
            return TransactionStatus.PENDING
        if now < tx.confirmed_at + self.finalization_delay:
            return TransactionStatus.CONFIRMED
        return TransactionStatus.FINALIZED

    async def get_transaction_status(self, transaction_id: str) -> Optional[TransactionStatus]:
        tx = self._get(transaction_id)
        if tx is None:
            return None
        return self._status_of(tx)

    async def wait_for_confirmation(
        self,
        transaction_id: str,
        commitment: CommitmentLevel = CommitmentLevel.CONFIRMED,
        timeout: float = 30.0,
    ) -> ConfirmationStatus:
        tx = self._get(transaction_id)
        if tx is None:
            return ConfirmationStatus.FAILED

        target = tx.confirmed_at
        if commitment == CommitmentLevel.FINALIZED:
            target += self.finalization_delay

        remaining = target - time.monotonic()
        if remaining > timeout:
            await asyncio.sleep(timeout)
            return ConfirmationStatus.TIMED_OUT
        if remaining > 0:
            await asyncio.sleep(remaining)

        if self._status_of(tx) == TransactionStatus.FAILED:
            return ConfirmationStatus.FAILED
        return ConfirmationStatus.CONFIRMED

    async def get_anchor_by_transaction(self, transaction_id: str) -> Optional[AnchorRecord]:
        tx = self._get(transaction_id)
        if tx is None or tx.failed:
            return None
        return parse_anchor_payload(tx.payload)

    async def estimate_fee(self, payload: bytes) -> int:
        return BASE_FEE + FEE_PER_BYTE * len(payload)

    async def find_anchor(self, identifier: str) -> Optional[LocatedAnchor]:
        with self._lock:
            history = [self._transactions[tx_id] for tx_id in reversed(self._order)]
        for tx in history:
            if tx.failed:
                continue
            anchor = parse_anchor_payload(tx.payload)
            if anchor is not None and anchor.identifier == identifier:
                return LocatedAnchor(transaction_id=tx.transaction_id, anchor=anchor)
        return None

    # ------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------

    @property
    def transaction_count(self) -> int:
        with self._lock:
            return len(self._order)

    def mark_failed(self, transaction_id: str) -> None:
        """Simulate a transaction that was dropped after submission."""
        tx = self._get(transaction_id)
        if tx is not None:
            tx.failed = True

    def get_payload(self, transaction_id: str) -> Optional[bytes]:
        tx = self._get(transaction_id)
        return tx.payload if tx else None


class LocalLedger(InMemoryLedger):
    """
    File-backed ledger: one JSON object per line, append-only.

    Transactions confirm immediately. History is reloaded on startup.
    """

    def __init__(self, path: str | Path):
        super().__init__(confirmation_delay=0.0)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    stored = LedgerTransaction.from_dict(json.loads(line))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping corrupt ledger line {line_no} in {self.path}: {e}")
                    continue
                # monotonic clocks do not survive restarts; treat history as final
                stored.submitted_at = 0.0
                stored.confirmed_at = 0.0
                self._transactions[stored.transaction_id] = stored
                self._order.append(stored.transaction_id)
        logger.info(f"Loaded {len(self._order)} ledger transactions from {self.path}")

    def _on_recorded(self, tx: LedgerTransaction) -> None:
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(tx.to_dict(), sort_keys=True) + "\n")
