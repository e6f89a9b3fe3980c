"""
Anchoring Transport

Writes a match hash or a batch Merkle root to the public ledger.

PAYLOADS (canonical JSON, no whitespace):
    {"hot_url":...,"match_id":...,"sha256":...,"signers":[...]}
    {"batch_id":...,"match_count":N,"merkle_root":...}

SIZE POLICY:
A ledger memo holds at most MAX_ANCHOR_PAYLOAD_BYTES. If a match payload
is too big, the advisory fields are dropped in order (hot_url, then
signers). If the bare {match_id, sha256} still does not fit, the write
fails with PayloadTooLargeError. Payloads are never truncated: a
truncated anchor would be unverifiable.

Submission goes through the TransactionHandler, which owns retries.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..ledger.base import LedgerClient, LocatedAnchor
from ..schemas.anchor import AnchorRecord, BatchAnchor, MatchAnchor, parse_anchor_payload
from ..schemas.batch import BatchManifest
from .canonical import canonicalize
from ..errors import PayloadTooLargeError
from .hasher import Hasher
from .transaction_handler import ProgressCallback, TransactionHandler

logger = logging.getLogger(__name__)

MAX_ANCHOR_PAYLOAD_BYTES = 566

# Dropped in this order when a payload is too large
OPTIONAL_MATCH_FIELDS = ("hot_url", "signers")


def _require_hash(value: str, what: str) -> str:
    value = value.lower() if isinstance(value, str) else value
    if not Hasher.is_valid_hash(value):
        raise ValueError(f"{what} must be a 64-character hex hash, got {value!r}")
    return value


def _shrink_match_payload(
    match_id: str,
    sha256: str,
    hot_url: Optional[str],
    signers: Optional[list[str]],
    max_bytes: int,
) -> tuple[bytes, list[str]]:
    doc: dict = {"match_id": match_id, "sha256": _require_hash(sha256, "sha256")}
    if hot_url:
        doc["hot_url"] = hot_url
    if signers:
        doc["signers"] = list(signers)

    dropped: list[str] = []
    encoded = canonicalize(doc)
    for name in OPTIONAL_MATCH_FIELDS:
        if len(encoded) <= max_bytes:
            break
        if name in doc:
            del doc[name]
            dropped.append(name)
            encoded = canonicalize(doc)

    if len(encoded) > max_bytes:
        raise PayloadTooLargeError(len(encoded), max_bytes)
    if dropped:
        logger.warning(f"Anchor payload for {match_id} over {max_bytes} bytes; dropped {dropped}")
    return encoded, dropped


def build_match_payload(
    match_id: str,
    sha256: str,
    hot_url: Optional[str] = None,
    signers: Optional[list[str]] = None,
    max_bytes: int = MAX_ANCHOR_PAYLOAD_BYTES,
) -> bytes:
    """
    Per-match anchor payload, shrunk to fit if necessary.

    Raises:
        PayloadTooLargeError: If {match_id, sha256} alone exceeds max_bytes
    """
    payload, _ = _shrink_match_payload(match_id, sha256, hot_url, signers, max_bytes)
    return payload


def build_batch_payload(
    batch_id: str,
    merkle_root: str,
    match_count: int,
    max_bytes: int = MAX_ANCHOR_PAYLOAD_BYTES,
) -> bytes:
    """
    Per-batch anchor payload.

    Raises:
        PayloadTooLargeError: If the payload exceeds max_bytes
    """
    if match_count < 1:
        raise ValueError("match_count must be at least 1")
    payload = canonicalize({
        "batch_id": batch_id,
        "merkle_root": _require_hash(merkle_root, "merkle_root"),
        "match_count": match_count,
    })
    if len(payload) > max_bytes:
        raise PayloadTooLargeError(len(payload), max_bytes)
    return payload


@dataclass
class AnchorReceipt:
    """What a successful anchor write produced."""
    transaction_id: str
    anchor: AnchorRecord
    payload: bytes
    fee_estimate: int
    attempts: int
    dropped_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "anchor": self.anchor.model_dump(exclude_none=True),
            "payload_bytes": len(self.payload),
            "fee_estimate": self.fee_estimate,
            "attempts": self.attempts,
            "dropped_fields": list(self.dropped_fields),
        }


class AnchorService:
    """
    Builds anchor payloads and writes them through a TransactionHandler.

    Also the read side: look an anchor up by transaction id, or scan the
    ledger for the latest anchor naming a match or batch id.
    """

    def __init__(self, handler: TransactionHandler, max_payload_bytes: int = MAX_ANCHOR_PAYLOAD_BYTES):
        self.handler = handler
        self.max_payload_bytes = max_payload_bytes

    @property
    def ledger(self) -> LedgerClient:
        return self.handler.ledger

    async def anchor_match(
        self,
        match_id: str,
        sha256: str,
        hot_url: Optional[str] = None,
        signers: Optional[list[str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AnchorReceipt:
        """
        Anchor a single match hash.

        Raises:
            PayloadTooLargeError: Batch this match instead
            TransportError: The ledger write failed after retries
        """
        payload, dropped = _shrink_match_payload(
            match_id, sha256, hot_url, signers, self.max_payload_bytes
        )
        result = await self.handler.submit(payload, on_progress=on_progress)
        anchor = parse_anchor_payload(payload)
        logger.info(f"Anchored match {match_id} in {result.transaction_id}")
        return AnchorReceipt(
            transaction_id=result.transaction_id,
            anchor=anchor,
            payload=payload,
            fee_estimate=result.fee_estimate,
            attempts=result.attempts,
            dropped_fields=dropped,
        )

    async def anchor_batch(
        self,
        manifest: BatchManifest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AnchorReceipt:
        """Anchor a batch's Merkle root."""
        payload = build_batch_payload(
            manifest.batch_id, manifest.merkle_root, manifest.match_count,
            max_bytes=self.max_payload_bytes,
        )
        result = await self.handler.submit(payload, on_progress=on_progress)
        logger.info(
            f"Anchored batch {manifest.batch_id} ({manifest.match_count} matches) "
            f"in {result.transaction_id}"
        )
        return AnchorReceipt(
            transaction_id=result.transaction_id,
            anchor=BatchAnchor(
                batch_id=manifest.batch_id,
                merkle_root=manifest.merkle_root,
                match_count=manifest.match_count,
            ),
            payload=payload,
            fee_estimate=result.fee_estimate,
            attempts=result.attempts,
        )

    async def get_anchor(self, transaction_id: str) -> Optional[AnchorRecord]:
        return await self.ledger.get_anchor_by_transaction(transaction_id)

    async def find_match_anchor(self, match_id: str) -> Optional[LocatedAnchor]:
        located = await self.ledger.find_anchor(match_id)
        if located is not None and isinstance(located.anchor, MatchAnchor):
            return located
        return None

    async def find_batch_anchor(self, batch_id: str) -> Optional[LocatedAnchor]:
        located = await self.ledger.find_anchor(batch_id)
        if located is not None and isinstance(located.anchor, BatchAnchor):
            return located
        return None
