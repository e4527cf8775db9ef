"""
Claim Service - link a guest purchase to an identified buyer.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.db.models import Purchase, utc_now
from bitindie.exceptions import (
    PurchaseNotPaidError,
    ReceiptClaimedByOtherError,
    ReceiptNotFoundError,
    WriteVerificationError,
)
from bitindie.models.api import PurchaseStatus
from bitindie.models.domain import BuyerIdentity, ClaimResult
from bitindie.observability.metrics import metrics
from bitindie.services.entitlements import EntitlementService
from bitindie.services.receipt_codes import normalize_receipt_code
from bitindie.services.users import UserService

logger = get_logger(__name__)


class ClaimService:
    """
    Guest claim resolver.

    The buyer link is written with UPDATE ... WHERE buyer_user_id IS NULL, so
    of two racing claims exactly one writes; the other re-reads the winner.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize claim service with database session."""
        self.session = session
        self.users = UserService(session)
        self.entitlements = EntitlementService(session)

    async def claim(self, receipt_code: str, buyer: BuyerIdentity) -> ClaimResult:
        """
        Claim a guest receipt for a buyer.

        Re-claiming by the same buyer succeeds and re-links the entitlement.

        Raises:
            InvalidReceiptCodeError: malformed code
            ReceiptNotFoundError: no purchase for the code
            PurchaseNotPaidError: purchase is not PAID
            ReceiptClaimedByOtherError: a different buyer holds the receipt
        """
        code = normalize_receipt_code(receipt_code)

        try:
            purchase = await self._lock_purchase_by_code(code)
            if purchase is None:
                raise ReceiptNotFoundError()

            if purchase.status != PurchaseStatus.PAID:
                raise PurchaseNotPaidError(purchase.id, PurchaseStatus(purchase.status).value)

            user = await self.users.resolve_or_create(buyer)

            already_claimed = purchase.buyer_user_id is not None
            if not already_claimed:
                result = await self.session.execute(
                    update(Purchase)
                    .where(Purchase.id == purchase.id, Purchase.buyer_user_id.is_(None))
                    .values(buyer_user_id=user.id, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    already_claimed = True
                    logger.info("claim_race_lost", purchase_id=str(purchase.id))

                purchase = await self._lock_purchase_by_code(code)
                if purchase is None:
                    raise WriteVerificationError("Purchase for receipt vanished during claim")

            if purchase.buyer_user_id != user.id:
                raise ReceiptClaimedByOtherError(purchase.id)

            entitlement = await self.entitlements.link_buyer(purchase, user.id)
            await self.session.commit()
        except ReceiptClaimedByOtherError:
            await self.session.rollback()
            logger.warning("receipt_claimed_by_other", receipt_prefix=code[:5])
            metrics.record_claim("claimed_by_other")
            raise
        except Exception as exc:
            await self.session.rollback()
            metrics.record_claim(type(exc).__name__)
            raise

        logger.info(
            "receipt_claimed",
            purchase_id=str(purchase.id),
            buyer_user_id=str(user.id),
            already_claimed=already_claimed,
        )
        metrics.record_claim("reclaimed" if already_claimed else "claimed")

        return ClaimResult(
            purchase_id=purchase.id,
            entitlement_id=entitlement.entitlement_id,
            game_id=purchase.game_id,
            buyer_user_id=user.id,
            already_claimed=already_claimed,
        )

    async def _lock_purchase_by_code(self, code: str) -> Purchase | None:
        stmt = (
            select(Purchase)
            .where(Purchase.guest_receipt_code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
