"""
Service Wiring

Builds the integrity pipeline (store, ledger, transaction handler, anchor
service, batch manager, verifier) from configuration. The HTTP app and the
CLI both go through here so they agree on how the pieces connect.

Environment Variables:
    MATCHPROOF_TRUSTED_MANIFEST_KEYS: Comma-separated coordinator public keys
        whose manifest signatures the verifier trusts. The local coordinator
        key is always trusted.
"""

import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from .config import LedgerConfig, StorageConfig, create_ledger_client, create_object_store
from .core import (
    AnchorReceipt,
    AnchorService,
    BatchConfig,
    BatchManager,
    CanonicalizationError,
    CircuitBreaker,
    CircuitBreakerConfig,
    MatchVerifier,
    SigningService,
    TransactionConfig,
    TransactionHandler,
    Hasher,
    TransportError,
    canonicalize,
    get_signing_service,
)
from .core.replay import RulesEngine
from .ledger import LedgerClient
from .observability import get_logger, get_metrics
from .schemas import BatchManifest, MatchRecord
from .storage import ObjectStore, match_key

logger = get_logger(__name__)


def trusted_keys_from_env() -> set[str]:
    raw = os.environ.get("MATCHPROOF_TRUSTED_MANIFEST_KEYS", "")
    return {k.strip().lower() for k in raw.split(",") if k.strip()}


@dataclass
class Services:
    """Everything a request or a CLI command needs."""
    store: ObjectStore
    ledger: LedgerClient
    signing_service: SigningService
    circuit_breaker: CircuitBreaker
    handler: TransactionHandler
    anchor_service: AnchorService
    batch_manager: BatchManager
    verifier: MatchVerifier

    async def close(self, flush: bool = True) -> None:
        """Stop the batch timer, optionally flush, then release backends."""
        try:
            await self.batch_manager.shutdown(flush=flush)
        finally:
            await self.store.close()
            await self.ledger.close()


def create_services(
    store: Optional[ObjectStore] = None,
    ledger: Optional[LedgerClient] = None,
    storage_config: Optional[StorageConfig] = None,
    ledger_config: Optional[LedgerConfig] = None,
    transaction_config: Optional[TransactionConfig] = None,
    batch_config: Optional[BatchConfig] = None,
    rules_engine: Optional[RulesEngine] = None,
) -> Services:
    """
    Wire the pipeline. Explicit store/ledger instances win over config.

    Raises:
        ValueError: Unknown or incomplete backend configuration
        RuntimeError: Coordinator key missing in production
    """
    store = store if store is not None else create_object_store(storage_config)
    ledger = ledger if ledger is not None else create_ledger_client(ledger_config)
    signing_service = get_signing_service()

    breaker = CircuitBreaker("ledger", CircuitBreakerConfig.from_env())
    handler = TransactionHandler(
        ledger,
        transaction_config or TransactionConfig.from_env(),
        signer=signing_service,
        circuit_breaker=breaker,
    )
    anchor_service = AnchorService(handler)
    batch_manager = BatchManager(
        store,
        anchor_service=anchor_service,
        signing_service=signing_service,
        config=batch_config or BatchConfig.from_env(),
    )
    verifier = MatchVerifier(
        ledger,
        store=store,
        rules_engine=rules_engine,
        trusted_manifest_keys=trusted_keys_from_env() | {signing_service.public_key},
    )

    logger.info(
        "Services ready",
        store_type=type(store).__name__,
        ledger_type=type(ledger).__name__,
        coordinator_key="ephemeral" if signing_service.is_ephemeral else "configured",
    )
    return Services(
        store=store,
        ledger=ledger,
        signing_service=signing_service,
        circuit_breaker=breaker,
        handler=handler,
        anchor_service=anchor_service,
        batch_manager=batch_manager,
        verifier=verifier,
    )


class AnchorMode(str, Enum):
    NONE = "none"
    DIRECT = "direct"
    BATCH = "batch"


@dataclass
class UploadResult:
    """Where an uploaded match ended up."""
    match_id: str
    match_hash: str
    url: str
    anchor_mode: AnchorMode
    anchor: Optional[AnchorReceipt] = None
    batch: Optional[BatchManifest] = None

    def to_dict(self) -> dict:
        return {
            "match_id": self.match_id,
            "match_hash": self.match_hash,
            "url": self.url,
            "anchor_mode": self.anchor_mode.value,
            "anchor": self.anchor.to_dict() if self.anchor else None,
            "batch_id": self.batch.batch_id if self.batch else None,
            "pending_in_batch": self.anchor_mode == AnchorMode.BATCH and self.batch is None,
        }


async def upload_match(
    services: Services,
    record: Any,
    mode: AnchorMode = AnchorMode.BATCH,
) -> UploadResult:
    """
    Store a match record and anchor it (directly or through the batcher).

    The stored object is the canonical form, so re-hashing what the store
    returns reproduces the anchored hash.

    Raises:
        CanonicalizationError: The record is not a valid match record
        StorageError: The record could not be stored
        PayloadTooLargeError: Direct anchor payload over the ledger limit
        TransportError: Direct anchoring failed after retries
    """
    model = record if isinstance(record, MatchRecord) else None
    if model is None:
        try:
            model = MatchRecord.model_validate(record)
        except ValidationError as e:
            raise CanonicalizationError(f"Invalid match record: {e}") from e

    canonical_bytes = canonicalize(model.to_document())
    match_hash = Hasher.hash_bytes(canonical_bytes)
    url = await services.store.put(match_key(model.match_id), canonical_bytes)
    logger.info("Stored match", match_id=model.match_id, byte_length=len(canonical_bytes), url=url)

    result = UploadResult(match_id=model.match_id, match_hash=match_hash, url=url, anchor_mode=mode)
    metrics = get_metrics()

    if mode == AnchorMode.DIRECT:
        start = time.perf_counter()
        try:
            result.anchor = await services.anchor_service.anchor_match(
                model.match_id,
                match_hash,
                hot_url=url,
                signers=sorted({s.public_key for s in model.signatures}) or None,
            )
        except TransportError:
            metrics.record_anchor((time.perf_counter() - start) * 1000, success=False)
            raise
        metrics.record_anchor(
            (time.perf_counter() - start) * 1000, success=True, attempts=result.anchor.attempts
        )
    elif mode == AnchorMode.BATCH:
        result.batch = await services.batch_manager.add_match(model.match_id, match_hash)
        if result.batch is not None:
            metrics.record_batch(result.batch.match_count)

    return result
