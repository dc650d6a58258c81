"""
Genesis Claim API Routes

Endpoints:
    POST /genesis/claim/submit       - paid claim submission (x402)
    GET  /genesis/claim/{subject_id} - current record for a subject
    GET  /genesis/info               - service and pricing info (never gated)

Status codes:
    200  claim registered (or replayed)
    202  claim reserved and broadcast, ledger confirmation still pending
    402  payment required (PAYMENT-REQUIRED header) or payment rejected
    404  no record for subject
    409  submission in progress / conflicting claim
    422  malformed submission
    502  content store or ledger failure after payment (record is Failed)
    503  payment facilitator unavailable
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..core.errors import MalformedSubmission, PaymentRejected, RegistryError
from ..core.negotiator import (
    PROOF_HEADER,
    Challenge,
    PaymentChallengeNegotiator,
)
from ..observability import get_logger, subject_id_var
from ..schemas import ClaimRecord, ClaimStatus, ClaimSubmission

logger = get_logger(__name__)

router = APIRouter(prefix="/genesis", tags=["Genesis Claims"])


# ============================================================
# Helpers
# ============================================================

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _negotiator(request: Request) -> PaymentChallengeNegotiator:
    return request.app.state.negotiator


def _claim_body(record: ClaimRecord, replayed: bool) -> dict:
    return {
        "success": True,
        "claim": record.model_dump(mode="json"),
        "replayed": replayed,
    }


# ============================================================
# Routes
# ============================================================

@router.get("/info")
async def service_info(request: Request):
    """Service and pricing information. Never requires payment."""
    pricing = request.app.state.config.pricing
    return {
        "service": "claimgate",
        "description": "x402-gated identity claim registry",
        "pricing": {
            "claimSubmission": f"{pricing.price_amount} {pricing.currency}",
            "amount": str(pricing.price_amount),
            "currency": pricing.currency,
        },
        "network": pricing.network,
        "payTo": pricing.pay_to,
        "rails": pricing.accepted_rails,
        "maxTimeoutSeconds": pricing.max_timeout_seconds,
        "endpoints": {
            "submitClaim": "POST /genesis/claim/submit",
            "getClaim": "GET /genesis/claim/{subject_id}",
        },
    }


@router.post("/claim/submit")
async def submit_claim(
    claim: ClaimSubmission,
    request: Request,
    x_payment: Optional[str] = Header(default=None, alias=PROOF_HEADER),
):
    """
    Submit a claim for registration.

    Without a usable X-PAYMENT header the response is a 402 challenge,
    unless the claim is already settled for this subject.
    """
    subject_id_var.set(claim.subject_id)

    outcome = await _negotiator(request).negotiate(claim, x_payment)

    if isinstance(outcome, Challenge):
        return JSONResponse(
            status_code=402,
            content=outcome.challenge.to_dict(),
            headers=outcome.headers(),
        )

    record = outcome.result.record
    status_code = 202 if record.status == ClaimStatus.PENDING else 200
    return JSONResponse(
        status_code=status_code,
        content=_claim_body(record, outcome.result.replayed),
        headers=outcome.headers(),
    )


@router.get("/claim/{subject_id}")
async def get_claim(subject_id: str, request: Request):
    """Current record for a subject. 404 if none."""
    record = await _negotiator(request).coordinator.lookup(subject_id)
    return _claim_body(record, replayed=False)


# ============================================================
# Error rendering
# ============================================================

async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    body = {
        "success": False,
        "error": exc.to_dict(),
        "timestamp": _now(),
    }
    if exc.record is not None:
        body["claim"] = exc.record.model_dump(mode="json")

    headers = {}
    if isinstance(exc, PaymentRejected):
        # Tell the client what a valid payment would look like
        headers = _negotiator(request).challenge(exc.detail).headers()

    return JSONResponse(status_code=exc.http_status, content=body, headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
        for err in exc.errors()
    )
    return await registry_error_handler(
        request, MalformedSubmission(problems or "Invalid claim submission")
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "kind": "internal_inconsistency",
                "detail": "Internal server error",
                "retryable": False,
            },
            "timestamp": _now(),
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RegistryError, registry_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
