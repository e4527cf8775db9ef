"""
Entitlement Service - one durable access grant per purchase.

NO DICTIONARIES - Entitlements are returned as EntitlementData snapshots.
The service never commits; writes join the caller's transaction.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.db.dml import insert_or_ignore
from bitindie.db.models import Entitlement, Purchase, utc_now
from bitindie.exceptions import EntitlementNotFoundError, WriteVerificationError
from bitindie.models.domain import EntitlementData

logger = get_logger(__name__)


def to_entitlement_data(entitlement: Entitlement) -> EntitlementData:
    """Snapshot an ORM entitlement."""
    return EntitlementData(
        entitlement_id=entitlement.id,
        purchase_id=entitlement.purchase_id,
        buyer_user_id=entitlement.buyer_user_id,
        guest_receipt_code=entitlement.guest_receipt_code,
        game_id=entitlement.game_id,
        granted_at=entitlement.granted_at,
        revoked_at=entitlement.revoked_at,
    )


class EntitlementService:
    """
    Entitlement registry.

    Upserts are keyed by purchase_id: a repeat is a no-op beyond refreshing
    the buyer link. Revocation is never undone by an upsert.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize entitlement service with database session."""
        self.session = session

    async def upsert_for_purchase(self, purchase: Purchase) -> EntitlementData:
        """Create the purchase's entitlement or refresh its buyer link."""
        return await self._upsert(purchase, purchase.buyer_user_id)

    async def link_buyer(self, purchase: Purchase, user_id: UUID) -> EntitlementData:
        """Point the purchase's entitlement at a claiming user."""
        return await self._upsert(purchase, user_id)

    async def get_for_purchase(self, purchase_id: UUID) -> EntitlementData | None:
        """Entitlement for a purchase, if granted."""
        entitlement = await self._fetch(purchase_id)
        return to_entitlement_data(entitlement) if entitlement else None

    async def revoke(self, purchase_id: UUID) -> EntitlementData:
        """
        Revoke an entitlement. Revoking twice keeps the first timestamp.

        Raises:
            EntitlementNotFoundError: purchase has no entitlement
        """
        entitlement = await self._fetch(purchase_id)
        if entitlement is None:
            raise EntitlementNotFoundError(purchase_id)

        if entitlement.revoked_at is None:
            entitlement.revoked_at = utc_now()
            await self.session.flush()
            logger.info(
                "entitlement_revoked",
                entitlement_id=str(entitlement.id),
                purchase_id=str(purchase_id),
            )

        return to_entitlement_data(entitlement)

    async def list_for_user(
        self, user_id: UUID, include_revoked: bool = False
    ) -> list[EntitlementData]:
        """A buyer's library, newest grant first."""
        stmt = select(Entitlement).where(Entitlement.buyer_user_id == user_id)
        if not include_revoked:
            stmt = stmt.where(Entitlement.revoked_at.is_(None))
        stmt = stmt.order_by(Entitlement.granted_at.desc(), Entitlement.id)

        result = await self.session.execute(stmt)
        return [to_entitlement_data(e) for e in result.scalars().all()]

    async def _upsert(self, purchase: Purchase, buyer_user_id: UUID | None) -> EntitlementData:
        created_id = await insert_or_ignore(
            self.session,
            Entitlement,
            {
                "purchase_id": purchase.id,
                "buyer_user_id": buyer_user_id,
                "guest_receipt_code": purchase.guest_receipt_code,
                "game_id": purchase.game_id,
                "granted_at": utc_now(),
            },
            ["purchase_id"],
        )

        if created_id is None:
            await self.session.execute(
                update(Entitlement)
                .where(Entitlement.purchase_id == purchase.id)
                .values(
                    buyer_user_id=buyer_user_id,
                    guest_receipt_code=purchase.guest_receipt_code,
                )
                .execution_options(synchronize_session=False)
            )

        entitlement = await self._fetch(purchase.id)
        if entitlement is None:
            raise WriteVerificationError(f"Entitlement for purchase {purchase.id} not found")

        if created_id is not None:
            logger.info(
                "entitlement_granted",
                entitlement_id=str(entitlement.id),
                purchase_id=str(purchase.id),
                guest=buyer_user_id is None,
            )

        return to_entitlement_data(entitlement)

    async def _fetch(self, purchase_id: UUID) -> Entitlement | None:
        stmt = (
            select(Entitlement)
            .where(Entitlement.purchase_id == purchase_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
