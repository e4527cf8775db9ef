"""
API Routes - FastAPI endpoints for purchases, payments, claims and libraries.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.api.dependencies import get_current_user_id, require_invoice_webhook_secret
from bitindie.db.session import get_read_db, get_write_db
from bitindie.exceptions import (
    GameNotFoundError,
    InvalidAmountError,
    InvalidPurchaseStatusError,
    MissingDeveloperPayoutProfileError,
    PurchaseNotFoundError,
    PurchaseNotPaidError,
    ReceiptClaimedByOtherError,
    ReceiptCodeExhaustedError,
    ReceiptNotFoundError,
    WriteVerificationError,
)
from bitindie.models.api import (
    ClaimRequest,
    ClaimResponse,
    ConflictDetail,
    CreatePurchaseRequest,
    CreatePurchaseResponse,
    EntitlementItem,
    EntitlementListResponse,
    InvoicePaidRequest,
    InvoicePaidResponse,
    InvoiceView,
    PurchaseView,
)
from bitindie.models.domain import BuyerIdentity, PurchaseData
from bitindie.services.claims import ClaimService
from bitindie.services.entitlements import EntitlementService
from bitindie.services.purchases import PurchaseService

logger = get_logger(__name__)
router = APIRouter()


def _purchase_view(purchase: PurchaseData) -> PurchaseView:
    return PurchaseView(
        id=purchase.purchase_id,
        buyer_user_id=purchase.buyer_user_id,
        guest_receipt_code=purchase.guest_receipt_code,
        game_id=purchase.game_id,
        invoice_provider=purchase.invoice_provider,
        invoice_id=purchase.invoice_id,
        status=purchase.status,
        amount_msat=purchase.amount_msat,
        paid_at=purchase.paid_at,
        created_at=purchase.created_at,
    )


def _conflict(
    error: str, reason: str, purchase_id: UUID | None = None, purchase_status: str | None = None
) -> HTTPException:
    detail = ConflictDetail(
        error=error, reason=reason, purchase_id=purchase_id, status=purchase_status
    )
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=detail.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def _buyer_identity(pubkey: str) -> BuyerIdentity:
    try:
        return BuyerIdentity(pubkey=pubkey)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc


@router.post(
    "/v1/purchases",
    response_model=CreatePurchaseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_purchase(
    request: CreatePurchaseRequest,
    db: AsyncSession = Depends(get_write_db),
) -> CreatePurchaseResponse:
    """
    Create a PENDING purchase.

    Without buyerPubkey the purchase is a guest checkout and the response
    carries the receipt code the buyer must keep.
    """
    service = PurchaseService(db)
    buyer = _buyer_identity(request.buyer_pubkey) if request.buyer_pubkey else None

    try:
        created = await service.create_purchase(request.game_id, request.amount_msat, buyer)

    except InvalidAmountError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except GameNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Game not found",
        ) from exc

    except ReceiptCodeExhaustedError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not allocate a receipt code, retry",
        ) from exc

    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Write verification failed",
        ) from exc

    return CreatePurchaseResponse(
        purchase=_purchase_view(created.purchase),
        invoice=InvoiceView(
            provider=created.invoice.provider,
            id=created.invoice.invoice_id,
            bolt11=created.invoice.bolt11,
        ),
        guest_receipt_code=created.guest_receipt_code,
    )


@router.post(
    "/v1/webhooks/invoice-paid",
    response_model=InvoicePaidResponse,
    dependencies=[Depends(require_invoice_webhook_secret)],
)
async def invoice_paid(
    request: InvoicePaidRequest,
    db: AsyncSession = Depends(get_write_db),
) -> InvoicePaidResponse:
    """
    Payment notification for an invoice.

    Idempotent: a repeat delivery reports already=true and only repairs
    missing artifacts.
    """
    paid_at = request.paid_at
    if paid_at is not None and paid_at.tzinfo is None:
        paid_at = paid_at.replace(tzinfo=UTC)

    service = PurchaseService(db)
    try:
        result = await service.mark_paid_and_ensure_artifacts(request.invoice_id.strip(), paid_at)

    except PurchaseNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Purchase not found",
        ) from exc

    except InvalidPurchaseStatusError as exc:
        raise _conflict(
            "Purchase not in PENDING state",
            "invalid_status",
            purchase_id=exc.purchase_id,
            purchase_status=exc.status,
        ) from exc

    except MissingDeveloperPayoutProfileError as exc:
        raise _conflict(
            "Developer payout profile missing",
            "missing_developer_payout_profile",
            purchase_id=exc.purchase_id,
        ) from exc

    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Write verification failed",
        ) from exc

    return InvoicePaidResponse(
        purchase_id=result.purchase_id,
        entitlement_id=result.artifacts.entitlement_id,
        payout_id=result.artifacts.payout_id,
        already=result.already,
        repaired=result.repaired,
        created_ledger_types=list(result.artifacts.created_ledger_types),
    )


@router.post("/v1/purchases/claim", response_model=ClaimResponse)
async def claim_purchase(
    request: ClaimRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ClaimResponse:
    """Claim a guest receipt for a buyer identity."""
    buyer = _buyer_identity(request.buyer_pubkey)

    service = ClaimService(db)
    try:
        result = await service.claim(request.receipt_code, buyer)

    except ReceiptNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Receipt not found",
        ) from exc

    except PurchaseNotPaidError as exc:
        raise _conflict(
            "Purchase not paid",
            "not_paid",
            purchase_id=exc.purchase_id,
            purchase_status=exc.status,
        ) from exc

    except ReceiptClaimedByOtherError as exc:
        raise _conflict("Receipt already claimed", "claimed_by_other") from exc

    return ClaimResponse(
        purchase_id=result.purchase_id,
        entitlement_id=result.entitlement_id,
        game_id=result.game_id,
        buyer_user_id=result.buyer_user_id,
    )


@router.get("/v1/me/entitlements", response_model=EntitlementListResponse)
async def list_my_entitlements(
    user_id: UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_read_db),
) -> EntitlementListResponse:
    """Active entitlements of the authenticated buyer."""
    service = EntitlementService(db)
    entitlements = await service.list_for_user(user_id)

    return EntitlementListResponse(
        entitlements=[
            EntitlementItem(
                id=e.entitlement_id,
                purchase_id=e.purchase_id,
                game_id=e.game_id,
                granted_at=e.granted_at,
            )
            for e in entitlements
        ]
    )
