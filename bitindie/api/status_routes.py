"""
Status API routes - liveness and payout configuration readiness.

Public endpoints (no auth) for load balancers and operators.
"""

from datetime import UTC, datetime

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.config import Settings, get_settings
from bitindie.db.session import get_read_db
from bitindie.models.api import HealthResponse, PayoutReadinessResponse, UrlCheck

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

HTTP_SCHEMES = ("http", "https")


def check_url(value: str) -> str | None:
    """
    Validate an http(s) URL.

    Returns:
        None when valid, otherwise a reason: missing, invalid_url or invalid_protocol
    """
    if not value:
        return "missing"
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL:
        return "invalid_url"
    if not url.scheme:
        return "invalid_url"
    if url.scheme not in HTTP_SCHEMES:
        return "invalid_protocol"
    if not url.host:
        return "invalid_url"
    return None


def build_payout_readiness(config: Settings) -> PayoutReadinessResponse:
    """Assess whether payouts can run with the given configuration."""
    secret = config.payout_webhook_secret
    callback_url = config.opennode_withdrawal_callback_url.strip()
    base_url = config.opennode_base_url.strip()

    callback_problem = check_url(callback_url)
    # Base URL is optional; the provider default applies when unset
    base_problem = check_url(base_url) if base_url else None

    reasons: list[str] = []
    if not secret:
        reasons.append("OPENNODE_API_KEY missing")
    if callback_problem:
        reasons.append(f"OPENNODE_WITHDRAWAL_CALLBACK_URL {callback_problem}")
    if base_problem:
        reasons.append(f"OPENNODE_BASE_URL {base_problem}")

    return PayoutReadinessResponse(
        payout_ready=not reasons,
        provider_mode=config.payout_provider if secret else "mock",
        has_webhook_secret=bool(secret),
        callback_url=UrlCheck(
            configured=bool(callback_url),
            valid=callback_problem is None,
            value=callback_url or None,
        ),
        base_url=UrlCheck(
            configured=bool(base_url),
            valid=base_problem is None,
            value=base_url or None,
        ),
        reasons=reasons,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC),
    )


@router.get("/v1/ops/payouts/readiness", response_model=PayoutReadinessResponse)
async def payout_readiness(config: Settings = Depends(get_settings)) -> PayoutReadinessResponse:
    """Report whether payout configuration is complete."""
    readiness = build_payout_readiness(config)
    if not readiness.payout_ready:
        logger.info("payout_not_ready", reasons=readiness.reasons)
    return readiness
