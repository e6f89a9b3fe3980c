"""
MatchProof - Match Integrity Service

Main application entry point.

Finished matches are canonicalized, hashed, batched into Merkle trees and
anchored on a public ledger, so anyone holding a match record can check
it was not altered after the game ended.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
)
from .services import create_services

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    services = getattr(app.state, "services", None) or create_services()
    app.state.services = services

    restored = await services.batch_manager.load_pending()

    logger.info(
        "Application startup complete",
        store_type=type(services.store).__name__,
        ledger_type=type(services.ledger).__name__,
        restored_pending=restored,
        coordinator_public_key=services.signing_service.public_key,
    )

    yield

    # Shutdown: flush what is pending so nothing waits for the next start
    try:
        await services.close(flush=True)
    except Exception:
        logger.exception("Final batch flush failed; pending entries remain persisted")
    logger.info("Application shutdown complete")


app = FastAPI(
    title="MatchProof",
    description="""
## Match Integrity Ledger

Tamper-evidence for finished multiplayer card game matches.

### Pipeline

```
match record → canonical bytes → SHA-256 → Merkle batch → ledger anchor
```

- **Canonical**: one byte sequence per logical record
- **Anchored**: a per-match hash or a batch Merkle root lives on a public ledger
- **Verifiable**: any record can be reconciled with its anchor

### Anchoring modes

- `batch` (default): queued and anchored with the next Merkle root
- `direct`: anchored on its own
- `none`: stored only
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add request context middleware for logging
app.add_middleware(RequestContextMiddleware)

from .api.routes import router  # noqa: E402
app.include_router(router)


@app.get("/health", tags=["System"])
async def health(request: Request):
    """
    Health check.

    Returns 200 if the service and its object store respond, 503 otherwise.
    """
    services = request.app.state.services
    health_status = await check_health(
        store=services.store,
        batch_manager=services.batch_manager,
        circuit_breaker=services.circuit_breaker,
    )

    return JSONResponse(
        status_code=200 if health_status.healthy else 503,
        content={
            "status": "healthy" if health_status.healthy else "unhealthy",
            "service": "matchproof",
            "version": __version__,
            "checks": health_status.checks,
            "duration_ms": health_status.duration_ms,
        },
    )
