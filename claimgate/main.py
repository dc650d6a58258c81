"""
claimgate - Payment-Gated Claim Registry

Main application entry point.

A subject pays once, its claim is registered once, and the registered
record is the permanent answer for that subject.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import register_error_handlers, router
from .clients import RegistryClients, build_clients
from .core.config import RegistryConfig
from .core.coordinator import ClaimSubmissionCoordinator
from .core.negotiator import (
    CHALLENGE_HEADER,
    RECEIPT_HEADER,
    PaymentChallengeNegotiator,
)
from .db import ClaimLedger, create_claim_ledger
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

logger = get_logger(__name__)


def _cors_origins() -> list[str]:
    raw = os.environ.get("CLAIMGATE_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


async def _recover(coordinator: ClaimSubmissionCoordinator) -> None:
    try:
        recovered = await coordinator.recover_pending()
    except asyncio.CancelledError:
        logger.info("Startup recovery cancelled")
        raise
    except Exception:
        logger.exception("Startup recovery failed")
        return
    if recovered:
        logger.info(
            "Startup recovery finished",
            recovered=len(recovered),
            registered=sum(1 for r in recovered if r.is_final),
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    recovery_task = None
    if app.state.config.coordinator.recover_on_startup:
        recovery_task = asyncio.create_task(_recover(app.state.coordinator))

    logger.info(
        "Application startup complete",
        store_type=type(app.state.claim_ledger).__name__,
        facilitator=type(app.state.clients.facilitator).__name__,
        content_store=type(app.state.clients.content_store).__name__,
        ledger=type(app.state.clients.ledger).__name__,
        price=str(app.state.config.pricing.price_amount),
        currency=app.state.config.pricing.currency,
    )

    yield

    if recovery_task is not None and not recovery_task.done():
        recovery_task.cancel()
        try:
            await recovery_task
        except asyncio.CancelledError:
            pass

    await app.state.clients.aclose()
    logger.info("Application shutdown complete")


def create_app(
    config: Optional[RegistryConfig] = None,
    claim_ledger: Optional[ClaimLedger] = None,
    clients: Optional[RegistryClients] = None,
) -> FastAPI:
    """
    Build the application.

    Anything not passed in is built from the environment.
    """
    config = config or RegistryConfig.from_env()
    config.validate()
    claim_ledger = claim_ledger or create_claim_ledger()
    clients = clients or build_clients(config.clients)

    coordinator = ClaimSubmissionCoordinator(
        claim_ledger,
        clients,
        pricing=config.pricing,
        clients_config=config.clients,
        config=config.coordinator,
    )
    negotiator = PaymentChallengeNegotiator(coordinator, pricing=config.pricing)

    app = FastAPI(
        title="claimgate",
        description="""
## Payment-Gated Claim Registry

Registers one identity claim per subject, paid per submission over x402.

### Flow

```
POST /genesis/claim/submit            -> 402 + PAYMENT-REQUIRED
POST /genesis/claim/submit + X-PAYMENT -> 200 + PAYMENT-RESPONSE
```

### Guarantees

- **Once**: at most one registered claim per subject
- **Single-use payments**: a proof never pays for two registrations
- **Recoverable**: a failure after payment is retried without paying again
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.claim_ledger = claim_ledger
    app.state.clients = clients
    app.state.coordinator = coordinator
    app.state.negotiator = negotiator

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    # Browser agents must be able to read the x402 headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=[CHALLENGE_HEADER, RECEIPT_HEADER],
    )
    register_error_handlers(app)
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health(request: Request):
        """
        Health check with claim ledger probe.

        Returns 200 if healthy, 503 if the claim ledger is unreachable.
        """
        health_status = await asyncio.to_thread(check_health, request.app.state.claim_ledger)
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "service": "claimgate",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


def _create_default_app() -> FastAPI:
    setup_logging()
    return create_app()


app = _create_default_app()
