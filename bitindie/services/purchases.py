"""
Purchase Service - checkout and the PENDING -> PAID transition.

NO DICTIONARIES - All operations use strongly typed domain models.

Every public operation is one transaction: any failure rolls back the whole
step, so a purchase is never PAID with half of its artifacts.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.config import settings
from bitindie.db.models import DeveloperProfile, Game, Purchase
from bitindie.exceptions import (
    GameNotFoundError,
    InvalidAmountError,
    InvalidPurchaseStatusError,
    MissingDeveloperPayoutProfileError,
    PurchaseNotFoundError,
    ReceiptCodeExhaustedError,
    WriteVerificationError,
)
from bitindie.models.api import LedgerEntryType, PurchaseStatus
from bitindie.models.domain import (
    BuyerIdentity,
    CreatedPurchase,
    InvoiceStub,
    PaidArtifacts,
    PaidArtifactsResult,
    PurchaseData,
)
from bitindie.observability.metrics import metrics
from bitindie.observability.tracing import add_span_attributes, trace_operation
from bitindie.services import receipt_codes
from bitindie.services.entitlements import EntitlementService
from bitindie.services.ledger import PAID_LEDGER_TYPES, LedgerService, dedupe_key_for
from bitindie.services.money import parse_amount_msat, split_fee
from bitindie.services.payouts import PayoutScheduler
from bitindie.services.users import UserService

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def to_purchase_data(purchase: Purchase) -> PurchaseData:
    """Snapshot an ORM purchase."""
    return PurchaseData(
        purchase_id=purchase.id,
        buyer_user_id=purchase.buyer_user_id,
        guest_receipt_code=purchase.guest_receipt_code,
        game_id=purchase.game_id,
        invoice_provider=purchase.invoice_provider,
        invoice_id=purchase.invoice_id,
        status=PurchaseStatus(purchase.status),
        amount_msat=purchase.amount_msat,
        paid_at=purchase.paid_at,
        created_at=purchase.created_at,
    )


class PurchaseService:
    """
    Purchase lifecycle manager.

    Orchestrates the ledger, entitlement registry and payout scheduler.
    Idempotency is layered:
    1. Whole operation - an already PAID purchase runs in repair mode
    2. Per artifact - only missing ledger types are appended
    3. Storage - unique constraints absorb races between existence checks
    """

    def __init__(
        self,
        session: AsyncSession,
        fee_bps: int | None = None,
        invoice_provider: str | None = None,
        max_receipt_code_attempts: int | None = None,
    ) -> None:
        """Initialize purchase service with database session and pricing config."""
        self.session = session
        self.fee_bps = settings.platform_fee_bps if fee_bps is None else fee_bps
        self.invoice_provider = invoice_provider or settings.invoice_provider
        self.max_receipt_code_attempts = (
            settings.guest_receipt_code_max_attempts
            if max_receipt_code_attempts is None
            else max_receipt_code_attempts
        )

        self.ledger = LedgerService(session)
        self.entitlements = EntitlementService(session)
        self.payouts = PayoutScheduler(session)
        self.users = UserService(session)

    # ========================================================================
    # Checkout
    # ========================================================================

    async def create_purchase(
        self,
        game_id: UUID,
        amount_msat: object,
        buyer: BuyerIdentity | None = None,
    ) -> CreatedPurchase:
        """
        Create a PENDING purchase and its INVOICE_CREATED ledger entry.

        Without a buyer identity a guest receipt code is issued. A code that
        loses a uniqueness race is regenerated; callers never see the collision.

        Raises:
            InvalidAmountError: amount is not a positive exact integer
            GameNotFoundError: game does not exist
            ReceiptCodeExhaustedError: no unique code after max attempts
        """
        amount = parse_amount_msat(amount_msat)
        if amount == 0:
            raise InvalidAmountError("amountMsat must be greater than zero")

        attempts = 1 if buyer is not None else self.max_receipt_code_attempts

        for attempt in range(1, attempts + 1):
            try:
                created = await self._insert_purchase(game_id, amount, buyer)
                await self.session.commit()
            except IntegrityError as exc:
                await self.session.rollback()
                if buyer is not None:
                    raise
                logger.warning(
                    "guest_receipt_code_race",
                    game_id=str(game_id),
                    attempt=attempt,
                    error=str(exc.orig),
                )
                continue
            except Exception:
                await self.session.rollback()
                raise

            logger.info(
                "purchase_created",
                purchase_id=str(created.purchase.purchase_id),
                game_id=str(game_id),
                amount_msat=amount,
                guest=buyer is None,
                invoice_id=created.invoice.invoice_id,
            )
            metrics.record_purchase_created(guest=buyer is None, amount_msat=amount)
            return created

        raise ReceiptCodeExhaustedError(attempts)

    async def _insert_purchase(
        self, game_id: UUID, amount_msat: int, buyer: BuyerIdentity | None
    ) -> CreatedPurchase:
        game = await self.session.get(Game, game_id)
        if game is None:
            raise GameNotFoundError(game_id)

        buyer_user_id: UUID | None = None
        guest_receipt_code: str | None = None
        if buyer is not None:
            user = await self.users.resolve_or_create(buyer)
            buyer_user_id = user.id
        else:
            guest_receipt_code = await self._allocate_guest_receipt_code()

        # Invoicing is stubbed until a real provider is wired in
        invoice = InvoiceStub(provider=self.invoice_provider, invoice_id=f"mock_{uuid4()}")

        purchase = Purchase(
            buyer_user_id=buyer_user_id,
            guest_receipt_code=guest_receipt_code,
            game_id=game.id,
            invoice_provider=invoice.provider,
            invoice_id=invoice.invoice_id,
            status=PurchaseStatus.PENDING,
            amount_msat=amount_msat,
        )
        self.session.add(purchase)
        await self.session.flush()

        await self.ledger.append(
            purchase.id,
            LedgerEntryType.INVOICE_CREATED,
            amount_msat,
            {"invoiceProvider": invoice.provider, "invoiceId": invoice.invoice_id},
        )

        # Write verification
        verified = await self.session.get(Purchase, purchase.id)
        if verified is None or verified.status != PurchaseStatus.PENDING:
            raise WriteVerificationError(f"Purchase {purchase.id} not persisted as PENDING")

        return CreatedPurchase(
            purchase=to_purchase_data(purchase),
            invoice=invoice,
            guest_receipt_code=guest_receipt_code,
        )

    async def _allocate_guest_receipt_code(self) -> str:
        for attempt in range(1, self.max_receipt_code_attempts + 1):
            code = receipt_codes.generate_guest_receipt_code()
            taken = await self.session.execute(
                select(Purchase.id).where(Purchase.guest_receipt_code == code)
            )
            if taken.scalar_one_or_none() is None:
                return code
            logger.warning("guest_receipt_code_collision", attempt=attempt)

        raise ReceiptCodeExhaustedError(self.max_receipt_code_attempts)

    # ========================================================================
    # Payment
    # ========================================================================

    async def mark_paid_and_ensure_artifacts(
        self, invoice_id: str, paid_at: datetime | None = None
    ) -> PaidArtifactsResult:
        """
        Flip a purchase to PAID and bring its artifacts to a complete state.

        Safe under duplicate delivery: an already PAID purchase keeps its
        status and paid_at, and only missing artifacts are created.

        Raises:
            PurchaseNotFoundError: no purchase for the invoice
            InvalidPurchaseStatusError: purchase is EXPIRED or FAILED
            MissingDeveloperPayoutProfileError: developer has no payout
                destination; the purchase is committed as PAID without artifacts
        """
        paid_at = paid_at or _utc_now()

        with trace_operation("mark_paid_and_ensure_artifacts", invoice_id=invoice_id) as span:
            try:
                purchase = await self._lock_purchase_by_invoice(invoice_id)
                if purchase is None:
                    raise PurchaseNotFoundError(invoice_id)

                already = purchase.status == PurchaseStatus.PAID
                if not already:
                    if purchase.status != PurchaseStatus.PENDING:
                        raise InvalidPurchaseStatusError(
                            purchase.id, PurchaseStatus(purchase.status).value
                        )
                    purchase.status = PurchaseStatus.PAID
                    purchase.paid_at = paid_at
                    await self.session.flush()

                try:
                    artifacts = await self.ensure_paid_artifacts(
                        purchase, purchase.paid_at or paid_at
                    )
                except MissingDeveloperPayoutProfileError:
                    # PAID and paid_at stand; a redelivery repairs the artifacts
                    await self.session.commit()
                    raise
                await self.session.commit()
            except Exception as exc:
                await self.session.rollback()
                metrics.record_payment(type(exc).__name__)
                raise

            add_span_attributes(
                span,
                already=already,
                created_ledger_entries=len(artifacts.created_ledger_types),
                payout_status=artifacts.payout_status,
            )

        if already:
            logger.info(
                "purchase_paid_artifacts_repaired",
                purchase_id=str(purchase.id),
                invoice_id=invoice_id,
                created_ledger_types=[t.value for t in artifacts.created_ledger_types],
                payout_created=artifacts.payout_created,
            )
        else:
            logger.info(
                "purchase_marked_paid",
                purchase_id=str(purchase.id),
                invoice_id=invoice_id,
                amount_msat=purchase.amount_msat,
            )
        metrics.record_payment("repaired" if already else "paid")

        return PaidArtifactsResult(
            purchase_id=purchase.id,
            already=already,
            repaired=already,
            artifacts=artifacts,
        )

    async def ensure_paid_artifacts(self, purchase: Purchase, paid_at: datetime) -> PaidArtifacts:
        """
        Bring a PAID purchase's entitlement, ledger split and payout into place.

        Safe to re-run. Runs inside the caller's transaction and never commits.

        Raises:
            InvalidPurchaseStatusError: purchase is not PAID
            MissingDeveloperPayoutProfileError: developer has no payout destination
        """
        if purchase.status != PurchaseStatus.PAID:
            raise InvalidPurchaseStatusError(purchase.id, PurchaseStatus(purchase.status).value)

        game = await self.session.get(Game, purchase.game_id)
        if game is None:
            raise GameNotFoundError(purchase.game_id)

        profile = await self.session.get(DeveloperProfile, game.developer_user_id)
        if profile is None or not profile.payout_ln_address.strip():
            logger.warning(
                "missing_developer_payout_profile",
                purchase_id=str(purchase.id),
                developer_user_id=str(game.developer_user_id),
            )
            raise MissingDeveloperPayoutProfileError(purchase.id, game.developer_user_id)

        entitlement = await self.entitlements.upsert_for_purchase(purchase)

        split = split_fee(purchase.amount_msat, self.fee_bps)
        planned = (
            (
                LedgerEntryType.INVOICE_PAID,
                purchase.amount_msat,
                {"invoiceId": purchase.invoice_id, "paidAt": paid_at.isoformat()},
            ),
            (
                LedgerEntryType.PLATFORM_FEE,
                split.platform_fee_msat,
                {"feeBps": split.fee_bps},
            ),
            (
                LedgerEntryType.DEVELOPER_NET,
                split.developer_net_msat,
                {"feeBps": split.fee_bps, "developerUserId": str(game.developer_user_id)},
            ),
        )

        existing = await self.ledger.list_types(purchase.id, PAID_LEDGER_TYPES)
        created: list[LedgerEntryType] = []
        for entry_type, amount, meta in planned:
            if entry_type in existing:
                continue
            entry = await self.ledger.append(
                purchase.id,
                entry_type,
                amount,
                meta,
                dedupe_key=dedupe_key_for(entry_type, purchase.id),
            )
            if not entry.deduplicated:
                created.append(entry_type)

        payout, payout_created = await self.payouts.schedule(
            purchase.id,
            game.developer_user_id,
            profile.payout_ln_address.strip(),
            split.developer_net_msat,
        )

        return PaidArtifacts(
            entitlement_id=entitlement.entitlement_id,
            payout_id=payout.id,
            payout_status=payout.status,
            payout_created=payout_created,
            fee_split=split,
            created_ledger_types=tuple(created),
        )

    async def get_by_invoice(self, invoice_id: str) -> PurchaseData | None:
        """Purchase snapshot for an invoice id."""
        result = await self.session.execute(
            select(Purchase)
            .where(Purchase.invoice_id == invoice_id)
            .execution_options(populate_existing=True)
        )
        purchase = result.scalar_one_or_none()
        return to_purchase_data(purchase) if purchase else None

    async def _lock_purchase_by_invoice(self, invoice_id: str) -> Purchase | None:
        stmt = (
            select(Purchase)
            .where(Purchase.invoice_id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
