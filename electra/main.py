"""
Electra - Election Ledger Client

HTTP entry point. Serves the read-only election API over whichever
ledger gateway the environment selects.

Run with: uvicorn electra.main:app
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from electra import __version__
from electra.api import router as api_router
from electra.config import ClientConfig
from electra.core import ElectionClient
from electra.gateway import create_gateway
from electra.observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    gateway = getattr(app.state, "gateway", None) or create_gateway()
    client = ElectionClient(gateway, config=ClientConfig.from_env())
    await client.start()
    app.state.client = client

    logger.info(
        "Application startup complete",
        gateway=type(gateway).__name__,
        monitor_mode=client.monitor.mode,
    )

    yield

    await client.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Electra",
    description="""
## Election Ledger Client

Read-only view over an Electra election contract.

### Election Phases

```
Setup → Registration → Preparation → Voting → Ended → Finalized
```

### API Design

- Reads are cached briefly and served stale when the ledger is unreachable
- Permissions are hints for the UI; the ledger enforces every rule
- Writes require a signer and are not exposed over HTTP

### Verification

`/api/integrity` cross-checks vote totals, turnout and the declared winner.
`/api/audit/export` returns a fingerprinted snapshot with the full event history.

### Gateways

- **InMemoryLedger**: Development/testing (default)
- **Web3Gateway**: Deployed contract over JSON-RPC

Set `ELECTRA_RPC_URL` and `ELECTRA_CONTRACT_ADDRESS` to use a real node.
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add request context middleware for logging
app.add_middleware(RequestContextMiddleware)

# CORS for local frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_methods=["GET"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health", tags=["System"])
async def health(request: Request):
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    For detailed health, use /health/detailed
    """
    return {"status": "healthy", "service": "electra"}


@app.get("/health/detailed", tags=["System"])
async def health_detailed(request: Request):
    """
    Detailed health check.

    Checks:
    - Service liveness
    - Ledger connectivity
    - Event monitor mode
    - Snapshot integrity

    Returns 200 if healthy, 503 if unhealthy.
    """
    health_status = await check_health(request.app.state.client, include_integrity=True)
    return JSONResponse(
        status_code=200 if health_status.healthy else 503,
        content={
            "status": "healthy" if health_status.healthy else "unhealthy",
            "checks": health_status.checks,
            "duration_ms": health_status.duration_ms,
        },
    )


@app.get("/metrics", tags=["System"])
async def metrics(request: Request):
    """
    Get client metrics.

    Cache hit rate, transaction outcomes, event counts and latencies.
    """
    return request.app.state.client.metrics.get_summary()


@app.get("/api", tags=["System"])
async def api_info(request: Request):
    client = request.app.state.client
    return {
        "name": "Electra API",
        "version": __version__,
        "gateway": type(client.gateway).__name__,
        "status": await client.system_status(),
        "endpoints": {
            "election": "/api/election",
            "phase": "/api/election/phase",
            "candidates": "/api/candidates",
            "statistics": "/api/statistics",
            "winner": "/api/winner",
            "voter": "/api/voters/{address}",
            "permissions": "/api/voters/{address}/permissions",
            "integrity": "/api/integrity",
            "audit_export": "/api/audit/export",
            "transactions": "/api/transactions",
            "transaction": "/api/transactions/{tx_id}",
        },
    }
