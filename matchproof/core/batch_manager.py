"""
Batch Manager

Accumulates match hashes and turns them into anchored, signed batch
manifests. One ledger transaction per batch instead of one per match.

STATES (per pending batch):
    collecting → flushing → closed

FLUSH TRIGGERS (whichever comes first):
- flush() called explicitly
- the batch reaches max_batch_size
- max_wait_seconds elapse since the first unflushed entry

FLUSH:
1. Under the lock: take the pending batch, install a fresh one
2. Outside the lock: Merkle tree → manifest → coordinator signature →
   anchor the root → write the manifest once → write per-match pointers
3. If the manifest cannot be written, the entries go back to the HEAD of
   the pending batch and the error propagates. No hash is ever lost.

The lock guards in-memory list mutation only. No I/O happens under it.

CONFIGURATION:
- MATCHPROOF_BATCH_MAX_SIZE: matches per batch (default: 100)
- MATCHPROOF_BATCH_MAX_WAIT_SECONDS: oldest entry age before a flush (default: 300)
- MATCHPROOF_BATCH_AUTO_FLUSH: flush on size/time triggers (default: true)
- MATCHPROOF_BATCH_PERSIST_PENDING: save unflushed entries to the store (default: true)
- MATCHPROOF_BATCH_FLUSH_RETRY_SECONDS: delay before retrying a failed timed flush (default: 30)
"""

import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from ..schemas.batch import BatchManifest
from ..storage.store import (
    PENDING_STATE_KEY,
    ObjectStore,
    batch_index_key,
    manifest_key,
)
from .canonical import canonicalize, utc_now_iso
from ..errors import StorageError, TransportError
from .hasher import Hasher
from .merkle import MerkleProof, MerkleTree

if TYPE_CHECKING:
    from .anchor import AnchorService
    from .signing_service import SigningService

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


@dataclass
class BatchConfig:
    """Configuration for the batch manager."""
    max_batch_size: int = 100
    max_wait_seconds: float = 300.0
    auto_flush: bool = True
    persist_pending: bool = True
    flush_retry_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "BatchConfig":
        """Load configuration from environment variables."""
        return cls(
            max_batch_size=int(os.environ.get("MATCHPROOF_BATCH_MAX_SIZE", "100")),
            max_wait_seconds=float(os.environ.get("MATCHPROOF_BATCH_MAX_WAIT_SECONDS", "300")),
            auto_flush=_env_flag("MATCHPROOF_BATCH_AUTO_FLUSH", True),
            persist_pending=_env_flag("MATCHPROOF_BATCH_PERSIST_PENDING", True),
            flush_retry_seconds=float(os.environ.get("MATCHPROOF_BATCH_FLUSH_RETRY_SECONDS", "30")),
        )


class BatchState(str, Enum):
    COLLECTING = "collecting"
    FLUSHING = "flushing"
    CLOSED = "closed"


@dataclass
class PendingBatch:
    """Entries not yet flushed, in insertion (= leaf) order."""
    match_ids: list[str] = field(default_factory=list)
    match_hashes: list[str] = field(default_factory=list)
    state: BatchState = BatchState.COLLECTING
    opened_at: Optional[float] = None  # clock() of the first entry

    def __len__(self) -> int:
        return len(self.match_ids)

    def to_dict(self) -> dict:
        return {
            "match_ids": list(self.match_ids),
            "match_hashes": list(self.match_hashes),
            "opened_at": self.opened_at,
        }


class BatchManager:
    """
    Collects match hashes and flushes them into batch manifests.

    Usage:
        manager = BatchManager(store, anchor_service, get_signing_service())
        await manager.load_pending()
        await manager.add_match(match_id, match_hash)
        ...
        manifest = await manager.flush()
        await manager.shutdown()
    """

    def __init__(
        self,
        store: ObjectStore,
        anchor_service: Optional["AnchorService"] = None,
        signing_service: Optional["SigningService"] = None,
        config: Optional[BatchConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.anchor_service = anchor_service
        self.signing_service = signing_service
        self.config = config or BatchConfig()
        self._clock = clock

        self._batch = PendingBatch()
        self._lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        # ids of the batch currently being flushed
        self._flushing: set[str] = set()
        self._sequence: dict[str, int] = {}

    # ------------------------------------------------------------
    # State
    # ------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._batch)

    @property
    def state(self) -> BatchState:
        return self._batch.state

    def pending_entries(self) -> list[tuple[str, str]]:
        return list(zip(self._batch.match_ids, self._batch.match_hashes))

    def _is_overdue(self) -> bool:
        opened = self._batch.opened_at
        return opened is not None and self._clock() - opened >= self.config.max_wait_seconds

    def _next_batch_id(self) -> str:
        day = datetime.now(timezone.utc).strftime("%Y%m%d")
        self._sequence[day] = self._sequence.get(day, 0) + 1
        return f"batch-{day}-{self._sequence[day]:03d}-{uuid.uuid4().hex[:8]}"

    # ------------------------------------------------------------
    # Collecting
    # ------------------------------------------------------------

    async def add_match(self, match_id: str, match_hash: str) -> Optional[BatchManifest]:
        """
        Queue a match hash.

        Returns:
            The manifest if this entry triggered a flush, else None

        Raises:
            ValueError: Malformed hash, or the match is already pending
        """
        match_hash = match_hash.lower()
        if not Hasher.is_valid_hash(match_hash):
            raise ValueError(f"Invalid match hash for {match_id}: {match_hash!r}")

        async with self._lock:
            if match_id in self._batch.match_ids or match_id in self._flushing:
                raise ValueError(f"Match {match_id} is already pending or being flushed")
            first_entry = not self._batch.match_ids
            self._batch.match_ids.append(match_id)
            self._batch.match_hashes.append(match_hash)
            if first_entry:
                self._batch.opened_at = self._clock()
            size = len(self._batch)
            overdue = self._is_overdue()

        logger.debug(f"Queued match {match_id} ({size}/{self.config.max_batch_size})")
        await self._persist_pending()

        if not self.config.auto_flush:
            return None
        if size >= self.config.max_batch_size or overdue:
            return await self.flush()
        if first_entry:
            self._arm_timer()
        return None

    # ------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------

    async def flush(self) -> Optional[BatchManifest]:
        """
        Close the pending batch.

        Returns:
            The persisted manifest, or None if nothing was pending

        Raises:
            StorageError: The manifest could not be written (entries re-queued)
        """
        async with self._lock:
            if not self._batch.match_ids:
                return None
            batch = self._batch
            batch.state = BatchState.FLUSHING
            self._batch = PendingBatch()
            self._flushing.update(batch.match_ids)
            batch_id = self._next_batch_id()
            self._cancel_timer()

        logger.info(f"Flushing batch {batch_id} with {len(batch)} matches")
        try:
            manifest = await self._close_batch(batch, batch_id)
        except Exception:
            async with self._lock:
                # Re-queue ahead of anything added while we were flushing
                queued = set(self._batch.match_ids)
                requeue = [
                    (match_id, match_hash)
                    for match_id, match_hash in zip(batch.match_ids, batch.match_hashes)
                    if match_id not in queued
                ]
                self._batch.match_ids[0:0] = [match_id for match_id, _ in requeue]
                self._batch.match_hashes[0:0] = [match_hash for _, match_hash in requeue]
                self._flushing.difference_update(batch.match_ids)
                if self._batch.opened_at is None or (
                    batch.opened_at is not None and batch.opened_at < self._batch.opened_at
                ):
                    self._batch.opened_at = batch.opened_at
                batch.state = BatchState.COLLECTING
            logger.exception(f"Flush of {batch_id} failed; {len(batch)} matches re-queued")
            await self._persist_pending()
            if self.config.auto_flush:
                self._arm_timer(self.config.flush_retry_seconds)
            raise

        async with self._lock:
            batch.state = BatchState.CLOSED
            self._flushing.difference_update(batch.match_ids)
        await self._persist_pending()
        if self.config.auto_flush and self.pending_count:
            self._arm_timer()
        return manifest

    async def _close_batch(self, batch: PendingBatch, batch_id: str) -> BatchManifest:
        tree = MerkleTree(batch.match_hashes)
        manifest = BatchManifest(
            batch_id=batch_id,
            match_ids=list(batch.match_ids),
            match_hashes=list(batch.match_hashes),
            merkle_root=tree.root,
            match_count=len(batch),
            created_at=utc_now_iso(),
        )

        if self.signing_service is not None:
            manifest = manifest.model_copy(update={
                "signature": self.signing_service.sign_document(manifest.signing_document()),
                "signer_public_key": self.signing_service.public_key,
            })

        if self.anchor_service is not None:
            try:
                receipt = await self.anchor_service.anchor_batch(manifest)
            except TransportError as e:
                # The manifest is still worth keeping; the root can be anchored later
                logger.error(f"Anchoring batch {batch_id} failed, storing unanchored: {e}")
            else:
                manifest = manifest.model_copy(update={
                    "anchor_txid": receipt.transaction_id,
                    "anchored_at": utc_now_iso(),
                })

        await self.store.put(manifest_key(batch_id), canonicalize(manifest.to_document()))

        for match_id in manifest.match_ids:
            try:
                await self.store.put(batch_index_key(match_id), batch_id.encode("utf-8"), "text/plain")
            except StorageError as e:
                logger.error(f"Batch pointer for {match_id} -> {batch_id} not written: {e}")

        logger.info(
            f"Batch {batch_id} closed: root {manifest.merkle_root[:16]}..., "
            f"anchor {manifest.anchor_txid or 'none'}"
        )
        return manifest

    # ------------------------------------------------------------
    # Wait-time trigger
    # ------------------------------------------------------------

    def _arm_timer(self, delay: Optional[float] = None) -> None:
        if self._timer is not None and not self._timer.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.create_task(self._flush_after(delay))

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        # Never cancel ourselves when the timer is the one flushing
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _flush_after(self, delay: Optional[float]) -> None:
        if delay is None:
            opened = self._batch.opened_at
            if opened is None:
                return
            delay = max(0.0, opened + self.config.max_wait_seconds - self._clock())
        await asyncio.sleep(delay)
        try:
            await self.flush()
        except Exception as e:
            # flush() already re-queued the entries and re-armed the timer
            logger.warning(f"Timed batch flush failed: {e}")

    # ------------------------------------------------------------
    # Pending-state persistence
    # ------------------------------------------------------------

    async def _persist_pending(self) -> None:
        if not self.config.persist_pending:
            return
        async with self._persist_lock:
            async with self._lock:
                snapshot = self._batch.to_dict()
            try:
                await self.store.put(PENDING_STATE_KEY, canonicalize(snapshot))
            except StorageError as e:
                logger.warning(f"Pending batch state not saved: {e}")

    async def load_pending(self) -> int:
        """
        Restore unflushed entries saved by a previous process.

        Returns:
            Number of entries restored
        """
        raw = await self.store.get(PENDING_STATE_KEY)
        if not raw:
            return 0
        try:
            saved = PendingBatch(**_parse_pending(raw))
        except (ValueError, TypeError) as e:
            logger.error(f"Ignoring corrupt pending batch state: {e}")
            return 0

        async with self._lock:
            known = set(self._batch.match_ids) | self._flushing
            for match_id, match_hash in zip(saved.match_ids, saved.match_hashes):
                if match_id not in known:
                    self._batch.match_ids.append(match_id)
                    self._batch.match_hashes.append(match_hash)
            if saved.opened_at is not None and (
                self._batch.opened_at is None or saved.opened_at < self._batch.opened_at
            ):
                self._batch.opened_at = saved.opened_at
            restored = len(self._batch)

        if restored:
            logger.info(f"Restored {restored} pending batch entries")
            if self.config.auto_flush:
                self._arm_timer()
        return restored

    # ------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------

    async def get_manifest(self, batch_id: str) -> Optional[BatchManifest]:
        raw = await self.store.get(manifest_key(batch_id))
        if raw is None:
            return None
        return BatchManifest.model_validate_json(raw)

    async def find_batch_for_match(self, match_id: str) -> Optional[str]:
        raw = await self.store.get(batch_index_key(match_id))
        return raw.decode("utf-8").strip() if raw else None

    async def generate_proof(
        self,
        match_id: str,
        manifest: Optional[BatchManifest] = None,
    ) -> Optional[MerkleProof]:
        """Inclusion proof for a flushed match, rebuilt from its manifest."""
        if manifest is None:
            batch_id = await self.find_batch_for_match(match_id)
            if batch_id is None:
                return None
            manifest = await self.get_manifest(batch_id)
            if manifest is None:
                return None
        return proof_from_manifest(manifest, match_id)

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def shutdown(self, flush: bool = True) -> Optional[BatchManifest]:
        """Stop the timer and optionally flush what is pending."""
        self._cancel_timer()
        if flush:
            return await self.flush()
        return None


def proof_from_manifest(manifest: BatchManifest, match_id: str) -> Optional[MerkleProof]:
    """Rebuild the manifest's tree and prove one of its matches."""
    try:
        index = manifest.match_ids.index(match_id)
    except ValueError:
        return None
    tree = MerkleTree(manifest.match_hashes)
    return tree.generate_proof(match_id, manifest.match_hashes[index], index=index)


def _parse_pending(raw: bytes) -> dict:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("pending state must be an object")
    ids = data.get("match_ids", [])
    hashes = data.get("match_hashes", [])
    if len(ids) != len(hashes):
        raise ValueError("pending match_ids and match_hashes differ in length")
    opened_at = data.get("opened_at")
    return {
        "match_ids": [str(i) for i in ids],
        "match_hashes": [str(h) for h in hashes],
        "opened_at": float(opened_at) if opened_at is not None else None,
    }
