"""
Payout webhook routes - provider callbacks for withdrawals.

Only four answers leave this endpoint: misconfigured (503), invalid (400),
unauthorized (401) or acknowledged (200). Business-level "nothing to do"
outcomes are acknowledged so the provider stops retrying.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bitindie.config import settings
from bitindie.db.session import get_write_db
from bitindie.exceptions import (
    WebhookMisconfiguredError,
    WebhookValidationError,
    WebhookVerificationError,
)
from bitindie.models.api import WebhookAck
from bitindie.services.payout_webhook import PayoutWebhookProcessor

router = APIRouter(tags=["webhooks"])


@router.post("/v1/webhooks/opennode/withdrawals", response_model=WebhookAck)
async def opennode_withdrawal_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
) -> WebhookAck:
    """
    OpenNode withdrawal status callback (form-encoded).

    Authenticated by hashed_order = HMAC-SHA256(OPENNODE_API_KEY, id).
    """
    processor = PayoutWebhookProcessor(
        db,
        secret=settings.payout_webhook_secret,
        provider=settings.payout_provider,
    )
    form = await request.form()

    try:
        await processor.process(form)

    except WebhookMisconfiguredError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{exc.provider} webhook misconfigured",
        ) from exc

    except WebhookValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.reason,
        ) from exc

    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        ) from exc

    return WebhookAck()
