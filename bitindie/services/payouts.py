"""
Payout Scheduler - one payout per purchase and its status machine.

The service never commits; writes join the caller's transaction.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.db.dml import insert_or_ignore
from bitindie.db.models import Payout, utc_now
from bitindie.exceptions import InvalidPayoutTransitionError, WriteVerificationError
from bitindie.models.api import PayoutStatus
from bitindie.models.domain import PayoutReceipt

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.SCHEDULED: frozenset({PayoutStatus.SUBMITTED, PayoutStatus.CANCELED}),
    PayoutStatus.SUBMITTED: frozenset(
        {PayoutStatus.SENT, PayoutStatus.FAILED, PayoutStatus.RETRYING}
    ),
    PayoutStatus.RETRYING: frozenset(
        {PayoutStatus.SUBMITTED, PayoutStatus.FAILED, PayoutStatus.CANCELED}
    ),
    PayoutStatus.FAILED: frozenset(
        {PayoutStatus.RETRYING, PayoutStatus.SENT, PayoutStatus.CANCELED}
    ),
    PayoutStatus.SENT: frozenset(),
    PayoutStatus.CANCELED: frozenset(),
}


def payout_idempotency_key(purchase_id: UUID) -> str:
    """Provider-facing idempotency key for a purchase's payout."""
    return f"purchase:{purchase_id}"


def can_transition(current: PayoutStatus, target: PayoutStatus) -> bool:
    """Whether the status machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS[PayoutStatus(current)]


class PayoutScheduler:
    """
    Payout scheduler.

    Worker-driven changes go through transition(), which enforces the
    status machine. Webhook-driven changes (mark_sent / mark_failed) only
    guarantee that SENT is never regressed; they log edges the machine
    does not list instead of dropping the provider's word.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize payout scheduler with database session."""
        self.session = session

    async def schedule(
        self,
        purchase_id: UUID,
        developer_user_id: UUID,
        destination: str,
        amount_msat: int,
    ) -> tuple[Payout, bool]:
        """
        Ensure a SCHEDULED payout exists for a purchase.

        An existing payout still in SCHEDULED has its destination and amount
        refreshed. A payout that has progressed is left untouched.

        Returns:
            (payout, created)
        """
        now = utc_now()
        payout_id = await insert_or_ignore(
            self.session,
            Payout,
            {
                "purchase_id": purchase_id,
                "developer_user_id": developer_user_id,
                "destination_ln_address": destination,
                "amount_msat": amount_msat,
                "status": PayoutStatus.SCHEDULED,
                "idempotency_key": payout_idempotency_key(purchase_id),
                "attempt_count": 0,
                "created_at": now,
                "updated_at": now,
            },
            ["purchase_id"],
        )

        if payout_id is not None:
            payout = await self.get(payout_id)
            if payout is None:
                raise WriteVerificationError(f"Payout {payout_id} not found after insert")
            logger.info(
                "payout_scheduled",
                payout_id=str(payout.id),
                purchase_id=str(purchase_id),
                amount_msat=amount_msat,
            )
            return payout, True

        payout = await self.get_for_purchase(purchase_id, for_update=True)
        if payout is None:
            raise WriteVerificationError(f"Payout for purchase {purchase_id} conflicted but not found")

        if payout.status == PayoutStatus.SCHEDULED and (
            payout.destination_ln_address != destination or payout.amount_msat != amount_msat
        ):
            payout.destination_ln_address = destination
            payout.amount_msat = amount_msat
            await self.session.flush()
            logger.info("payout_schedule_refreshed", payout_id=str(payout.id))

        return payout, False

    async def get(self, payout_id: UUID, for_update: bool = False) -> Payout | None:
        """Fresh read of a payout by id."""
        stmt = select(Payout).where(Payout.id == payout_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_purchase(self, purchase_id: UUID, for_update: bool = False) -> Payout | None:
        """Fresh read of a purchase's payout."""
        stmt = (
            select(Payout)
            .where(Payout.purchase_id == purchase_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_provider_withdrawal_id(
        self, provider: str, withdrawal_id: str
    ) -> Payout | None:
        """Payout matching a provider's withdrawal id."""
        stmt = select(Payout).where(
            Payout.provider == provider,
            Payout.provider_withdrawal_id == withdrawal_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(self, payout: Payout, target: PayoutStatus) -> Payout:
        """
        Move a payout along the status machine.

        Raises:
            InvalidPayoutTransitionError: edge is not in ALLOWED_TRANSITIONS
        """
        current = PayoutStatus(payout.status)
        if not can_transition(current, target):
            raise InvalidPayoutTransitionError(payout.id, current.value, target.value)

        payout.status = target
        await self.session.flush()
        logger.info(
            "payout_transitioned",
            payout_id=str(payout.id),
            from_status=current.value,
            to_status=target.value,
        )
        return payout

    async def record_submission(
        self, payout: Payout, provider: str, provider_withdrawal_id: str
    ) -> Payout:
        """Record that the payout worker handed the payout to the provider."""
        await self.transition(payout, PayoutStatus.SUBMITTED)
        payout.provider = provider
        payout.provider_withdrawal_id = provider_withdrawal_id
        payout.submitted_at = utc_now()
        payout.attempt_count = (payout.attempt_count or 0) + 1
        payout.last_error = None
        await self.session.flush()
        return payout

    async def mark_sent(self, payout: Payout, receipt: PayoutReceipt) -> bool:
        """
        Confirm a payout.

        Returns:
            False when the payout was already SENT (only the receipt is stored)
        """
        current = PayoutStatus(payout.status)
        if current == PayoutStatus.SENT:
            await self.record_receipt(payout, receipt)
            return False

        if not can_transition(current, PayoutStatus.SENT):
            logger.warning(
                "payout_confirmation_outside_state_machine",
                payout_id=str(payout.id),
                from_status=current.value,
            )

        payout.status = PayoutStatus.SENT
        payout.confirmed_at = utc_now()
        payout.last_error = None
        await self.record_receipt(payout, receipt)
        return True

    async def mark_failed(self, payout: Payout, error: str, receipt: PayoutReceipt) -> bool:
        """
        Record a provider failure.

        Returns:
            False when the payout was already SENT (never regressed; receipt only)
        """
        current = PayoutStatus(payout.status)
        if current == PayoutStatus.SENT:
            logger.warning(
                "payout_failure_after_sent_ignored",
                payout_id=str(payout.id),
                error=error,
            )
            await self.record_receipt(payout, receipt)
            return False

        if current != PayoutStatus.FAILED and not can_transition(current, PayoutStatus.FAILED):
            logger.warning(
                "payout_failure_outside_state_machine",
                payout_id=str(payout.id),
                from_status=current.value,
            )

        payout.status = PayoutStatus.FAILED
        payout.last_error = error
        await self.record_receipt(payout, receipt)
        return True

    async def record_receipt(self, payout: Payout, receipt: PayoutReceipt) -> None:
        """Store the webhook receipt, keeping any other provider metadata."""
        meta = dict(payout.provider_meta_json or {})
        meta["webhook"] = receipt.to_json()
        payout.provider_meta_json = meta
        await self.session.flush()
