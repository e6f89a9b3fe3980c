"""
HTTP API Routes

Command endpoints:
- POST /api/canonicalize            - Canonical bytes and hash of any JSON value
- POST /api/matches                 - Store a match record and anchor it
- POST /api/batches/flush           - Close the pending batch now

Query endpoints:
- GET /api/matches/{id}/verify      - Verify a stored match against the ledger
- GET /api/matches/{id}/proof       - Merkle inclusion proof for a batched match
- GET /api/batches/{id}             - Batch manifest
- GET /api/metrics                  - Counters and latencies
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel

from ..core import Hasher, canonicalize_to_str
from ..errors import (
    CanonicalizationError,
    CircuitOpenError,
    MatchProofError,
    PayloadTooLargeError,
    StorageError,
    TransportError,
)
from ..observability import get_logger, get_metrics
from ..schemas import VerificationResult
from ..services import AnchorMode, Services, upload_match


router = APIRouter(prefix="/api")
logger = get_logger(__name__)


# ============================================================
# Response Models
# ============================================================

class CanonicalizeResponse(BaseModel):
    canonical: str
    sha256: str
    byte_length: int


class AnchorResponse(BaseModel):
    transaction_id: str
    payload_bytes: int
    fee_estimate: int
    attempts: int
    dropped_fields: list[str] = []


class UploadResponse(BaseModel):
    match_id: str
    match_hash: str
    url: str
    anchor_mode: AnchorMode
    anchor: Optional[AnchorResponse] = None
    batch_id: Optional[str] = None
    pending_in_batch: bool = False


class FlushResponse(BaseModel):
    flushed: bool
    batch_id: Optional[str] = None
    match_count: int = 0
    merkle_root: Optional[str] = None
    anchor_txid: Optional[str] = None


class ProofResponse(BaseModel):
    batch_id: str
    merkle_root: str
    anchor_txid: Optional[str] = None
    proof: dict[str, Any]


# ============================================================
# Dependency Injection
# ============================================================

def get_services(request: Request) -> Services:
    """Get the wired pipeline from app state."""
    return request.app.state.services


def _to_http_error(e: MatchProofError) -> HTTPException:
    """Map the error taxonomy onto status codes."""
    if isinstance(e, CanonicalizationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, PayloadTooLargeError):
        code = 413
    elif isinstance(e, CircuitOpenError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(e, (TransportError, StorageError)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(
        status_code=code,
        detail={"error": type(e).__name__, "message": str(e)},
    )


# ============================================================
# Command Endpoints
# ============================================================

@router.post(
    "/canonicalize",
    response_model=CanonicalizeResponse,
    tags=["Integrity"],
    summary="Canonicalize a JSON value",
)
async def canonicalize_value(value: Any = Body(...)):
    """
    Return the canonical serialization of any JSON value and its SHA-256.

    Useful for checking a client-side implementation byte for byte.
    """
    try:
        canonical = canonicalize_to_str(value)
    except CanonicalizationError as e:
        raise _to_http_error(e)

    encoded = canonical.encode("utf-8")
    return CanonicalizeResponse(
        canonical=canonical,
        sha256=Hasher.hash_bytes(encoded),
        byte_length=len(encoded),
    )


@router.post(
    "/matches",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Matches"],
    summary="Store and anchor a match record",
)
async def create_match(
    record: dict[str, Any] = Body(...),
    anchor: AnchorMode = AnchorMode.BATCH,
    services: Services = Depends(get_services),
):
    """
    Store a finished match in canonical form and anchor its hash.

    anchor=batch (default) queues the hash for the next Merkle batch,
    anchor=direct writes a per-match anchor now, anchor=none only stores.
    """
    try:
        result = await upload_match(services, record, anchor)
    except MatchProofError as e:
        logger.warning("Match upload failed", error=str(e), error_type=type(e).__name__)
        raise _to_http_error(e)

    receipt = result.anchor
    return UploadResponse(
        match_id=result.match_id,
        match_hash=result.match_hash,
        url=result.url,
        anchor_mode=result.anchor_mode,
        anchor=AnchorResponse(
            transaction_id=receipt.transaction_id,
            payload_bytes=len(receipt.payload),
            fee_estimate=receipt.fee_estimate,
            attempts=receipt.attempts,
            dropped_fields=receipt.dropped_fields,
        ) if receipt else None,
        batch_id=result.batch.batch_id if result.batch else None,
        pending_in_batch=result.anchor_mode == AnchorMode.BATCH and result.batch is None,
    )


@router.post(
    "/batches/flush",
    response_model=FlushResponse,
    tags=["Batches"],
    summary="Flush the pending batch",
)
async def flush_batch(services: Services = Depends(get_services)):
    """Close the pending batch now instead of waiting for size or time."""
    try:
        manifest = await services.batch_manager.flush()
    except MatchProofError as e:
        raise _to_http_error(e)

    if manifest is None:
        return FlushResponse(flushed=False)

    get_metrics().record_batch(manifest.match_count)
    return FlushResponse(
        flushed=True,
        batch_id=manifest.batch_id,
        match_count=manifest.match_count,
        merkle_root=manifest.merkle_root,
        anchor_txid=manifest.anchor_txid,
    )


# ============================================================
# Query Endpoints
# ============================================================

@router.get(
    "/matches/{match_id}/verify",
    response_model=VerificationResult,
    tags=["Verification"],
    summary="Verify a stored match",
)
async def verify_match(
    match_id: str,
    anchor_tx: Optional[str] = None,
    batch_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """
    Reconcile the stored record with its anchor.

    A record that fails verification still returns 200; read is_valid
    and the itemized errors.
    """
    try:
        record = await services.verifier.load_record(match_id)
    except StorageError as e:
        raise _to_http_error(e)
    except ValueError as e:
        raise HTTPException(
            status_code=422,
            detail=f"Stored record for {match_id} is unreadable: {e}",
        )

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Match {match_id} not found",
        )

    result = await services.verifier.verify_match(
        match_id, record, anchor_transaction=anchor_tx, batch_id=batch_id
    )
    get_metrics().record_verification(result.is_valid)
    return result


@router.get(
    "/matches/{match_id}/proof",
    response_model=ProofResponse,
    tags=["Verification"],
    summary="Merkle inclusion proof",
)
async def get_match_proof(match_id: str, services: Services = Depends(get_services)):
    """Inclusion proof for a match that has been flushed into a batch."""
    manager = services.batch_manager
    try:
        batch_id = await manager.find_batch_for_match(match_id)
        manifest = await manager.get_manifest(batch_id) if batch_id else None
    except StorageError as e:
        raise _to_http_error(e)

    proof = await manager.generate_proof(match_id, manifest) if manifest else None
    if manifest is None or proof is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Match {match_id} is not in a flushed batch",
        )

    return ProofResponse(
        batch_id=manifest.batch_id,
        merkle_root=manifest.merkle_root,
        anchor_txid=manifest.anchor_txid,
        proof=proof.to_dict(),
    )


@router.get(
    "/batches/{batch_id}",
    tags=["Batches"],
    summary="Get a batch manifest",
)
async def get_batch(batch_id: str, services: Services = Depends(get_services)):
    """The stored manifest for a closed batch."""
    try:
        manifest = await services.batch_manager.get_manifest(batch_id)
    except StorageError as e:
        raise _to_http_error(e)

    if manifest is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Batch {batch_id} not found",
        )
    return manifest.to_document()


@router.get(
    "/metrics",
    tags=["System"],
    summary="Application metrics",
)
async def metrics(services: Services = Depends(get_services)):
    """Counters, latency percentiles and the ledger circuit state."""
    summary = get_metrics().get_summary()
    summary["pending_batch_entries"] = services.batch_manager.pending_count
    summary["ledger_circuit"] = services.circuit_breaker.get_status()
    return summary
