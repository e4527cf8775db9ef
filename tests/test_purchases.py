"""
Tests for checkout and the idempotent mark-paid operation.
"""

import asyncio
from collections import Counter
from datetime import UTC, datetime
from uuid import uuid4

import pytest
from sqlalchemy import delete, select

from bitindie.config import settings
from bitindie.db.models import DeveloperProfile, Entitlement, LedgerEntry, Payout, Purchase
from bitindie.exceptions import (
    GameNotFoundError,
    InvalidAmountError,
    InvalidPurchaseStatusError,
    MissingDeveloperPayoutProfileError,
    PurchaseNotFoundError,
    ReceiptCodeExhaustedError,
)
from bitindie.models.api import LedgerEntryType, PurchaseStatus
from bitindie.services import receipt_codes
from bitindie.services.ledger import LedgerService
from bitindie.services.purchases import PurchaseService


async def _ledger_types(session, purchase_id) -> Counter:
    entries = await LedgerService(session).list_for_purchase(purchase_id)
    return Counter(e.entry_type for e in entries)


async def _rows(session, model, purchase_id) -> list:
    result = await session.execute(select(model).where(model.purchase_id == purchase_id))
    return list(result.scalars().all())


class TestCreatePurchase:
    """Tests for PurchaseService.create_purchase."""

    @pytest.mark.asyncio
    async def test_guest_checkout(self, db_session, seeded_game):
        """A guest purchase is PENDING with a receipt code and an invoice."""
        created = await PurchaseService(db_session).create_purchase(seeded_game.game_id, "250000")

        assert created.purchase.status == PurchaseStatus.PENDING
        assert created.purchase.amount_msat == 250_000
        assert created.purchase.buyer_user_id is None
        assert created.guest_receipt_code is not None
        assert created.purchase.guest_receipt_code == created.guest_receipt_code
        assert created.invoice.provider == "mock"
        assert created.invoice.invoice_id.startswith("mock_")
        assert created.invoice.bolt11 is None

    @pytest.mark.asyncio
    async def test_buyer_checkout(self, db_session, seeded_game, buyer):
        """An identified buyer gets no receipt code."""
        created = await PurchaseService(db_session).create_purchase(
            seeded_game.game_id, 1000, buyer
        )

        assert created.guest_receipt_code is None
        assert created.purchase.guest_receipt_code is None
        assert created.purchase.buyer_user_id is not None

    @pytest.mark.asyncio
    async def test_records_invoice_created(self, db_session, guest_purchase):
        """Checkout writes a single INVOICE_CREATED entry."""
        types = await _ledger_types(db_session, guest_purchase.purchase.purchase_id)
        assert types == Counter({LedgerEntryType.INVOICE_CREATED: 1})

    @pytest.mark.asyncio
    async def test_zero_amount_rejected(self, db_session, seeded_game):
        """Free purchases are not checkouts."""
        with pytest.raises(InvalidAmountError, match="greater than zero"):
            await PurchaseService(db_session).create_purchase(seeded_game.game_id, 0)

    @pytest.mark.asyncio
    async def test_fractional_amount_rejected(self, db_session, seeded_game):
        """Amounts are never rounded."""
        with pytest.raises(InvalidAmountError):
            await PurchaseService(db_session).create_purchase(seeded_game.game_id, "1.5")

    @pytest.mark.asyncio
    async def test_unknown_game(self, db_session):
        """Checkout for a missing game fails and writes nothing."""
        with pytest.raises(GameNotFoundError):
            await PurchaseService(db_session).create_purchase(uuid4(), 1000)

        result = await db_session.execute(select(Purchase))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_receipt_code_collision_regenerates(
        self, db_session, seeded_game, guest_purchase, monkeypatch
    ):
        """A colliding code is replaced; the caller never sees the collision."""
        taken = guest_purchase.guest_receipt_code
        codes = iter([taken, taken, "FRESH-CODE0-00001"])
        monkeypatch.setattr(receipt_codes, "generate_guest_receipt_code", lambda: next(codes))

        created = await PurchaseService(db_session).create_purchase(seeded_game.game_id, 1000)

        assert created.guest_receipt_code == "FRESH-CODE0-00001"

    @pytest.mark.asyncio
    async def test_receipt_code_exhaustion(
        self, db_session, seeded_game, guest_purchase, monkeypatch
    ):
        """Giving up after the configured attempts is a distinct error."""
        taken = guest_purchase.guest_receipt_code
        monkeypatch.setattr(receipt_codes, "generate_guest_receipt_code", lambda: taken)

        with pytest.raises(ReceiptCodeExhaustedError) as exc_info:
            await PurchaseService(db_session, max_receipt_code_attempts=3).create_purchase(
                seeded_game.game_id, 1000
            )
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_explicit_attempt_count_is_kept(self, db_session):
        """Only an omitted attempt count falls back to settings."""
        service = PurchaseService(db_session, max_receipt_code_attempts=0)
        assert service.max_receipt_code_attempts == 0
        assert (
            PurchaseService(db_session).max_receipt_code_attempts
            == settings.guest_receipt_code_max_attempts
        )


class TestMarkPaid:
    """Tests for mark_paid_and_ensure_artifacts."""

    @pytest.mark.asyncio
    async def test_first_notification(self, db_session, guest_purchase, seeded_game):
        """PENDING becomes PAID with every artifact in place."""
        purchase_id = guest_purchase.purchase.purchase_id
        paid_at = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)

        result = await PurchaseService(db_session).mark_paid_and_ensure_artifacts(
            guest_purchase.invoice.invoice_id, paid_at
        )

        assert result.already is False
        assert result.repaired is False
        assert set(result.artifacts.created_ledger_types) == {
            LedgerEntryType.INVOICE_PAID,
            LedgerEntryType.PLATFORM_FEE,
            LedgerEntryType.DEVELOPER_NET,
        }
        assert result.artifacts.payout_created is True
        assert result.artifacts.fee_split.platform_fee_msat == 10_000
        assert result.artifacts.fee_split.developer_net_msat == 90_000

        purchase = await PurchaseService(db_session).get_by_invoice(
            guest_purchase.invoice.invoice_id
        )
        assert purchase.status == PurchaseStatus.PAID
        assert purchase.paid_at.replace(tzinfo=None) == paid_at.replace(tzinfo=None)

        entries = await LedgerService(db_session).list_for_purchase(purchase_id)
        amounts = {e.entry_type: e.amount_msat for e in entries}
        assert amounts[LedgerEntryType.INVOICE_PAID] == 100_000
        assert amounts[LedgerEntryType.PLATFORM_FEE] == 10_000
        assert amounts[LedgerEntryType.DEVELOPER_NET] == 90_000

        entitlements = await _rows(db_session, Entitlement, purchase_id)
        assert len(entitlements) == 1
        assert entitlements[0].id == result.artifacts.entitlement_id
        assert entitlements[0].guest_receipt_code == guest_purchase.guest_receipt_code

        payouts = await _rows(db_session, Payout, purchase_id)
        assert len(payouts) == 1
        assert payouts[0].developer_user_id == seeded_game.developer_user_id

    @pytest.mark.asyncio
    async def test_repeat_notification_is_idempotent(self, db_session, guest_purchase):
        """The second delivery changes nothing and reports already=true."""
        service = PurchaseService(db_session)
        invoice_id = guest_purchase.invoice.invoice_id
        purchase_id = guest_purchase.purchase.purchase_id

        first = await service.mark_paid_and_ensure_artifacts(invoice_id)
        paid_at = (await service.get_by_invoice(invoice_id)).paid_at
        second = await service.mark_paid_and_ensure_artifacts(
            invoice_id, datetime(2030, 1, 1, tzinfo=UTC)
        )

        assert second.already is True
        assert second.repaired is True
        assert second.artifacts.created_ledger_types == ()
        assert second.artifacts.payout_created is False
        assert second.artifacts.entitlement_id == first.artifacts.entitlement_id
        assert second.artifacts.payout_id == first.artifacts.payout_id
        assert (await service.get_by_invoice(invoice_id)).paid_at == paid_at

        types = await _ledger_types(db_session, purchase_id)
        assert types == Counter(
            {
                LedgerEntryType.INVOICE_CREATED: 1,
                LedgerEntryType.INVOICE_PAID: 1,
                LedgerEntryType.PLATFORM_FEE: 1,
                LedgerEntryType.DEVELOPER_NET: 1,
            }
        )
        assert len(await _rows(db_session, Entitlement, purchase_id)) == 1
        assert len(await _rows(db_session, Payout, purchase_id)) == 1

    @pytest.mark.asyncio
    async def test_partial_artifacts_are_repaired(self, db_session, paid_guest_purchase):
        """Missing rows on a PAID purchase are recreated, present ones kept."""
        purchase_id = paid_guest_purchase.purchase.purchase_id
        await db_session.execute(
            delete(LedgerEntry).where(
                LedgerEntry.purchase_id == purchase_id,
                LedgerEntry.type == LedgerEntryType.DEVELOPER_NET,
            )
        )
        await db_session.execute(delete(Payout).where(Payout.purchase_id == purchase_id))
        await db_session.commit()

        result = await PurchaseService(db_session).mark_paid_and_ensure_artifacts(
            paid_guest_purchase.invoice.invoice_id
        )

        assert result.already is True
        assert result.artifacts.created_ledger_types == (LedgerEntryType.DEVELOPER_NET,)
        assert result.artifacts.payout_created is True
        types = await _ledger_types(db_session, purchase_id)
        assert types[LedgerEntryType.DEVELOPER_NET] == 1
        assert types[LedgerEntryType.INVOICE_PAID] == 1
        assert len(await _rows(db_session, Payout, purchase_id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, db_session):
        """No purchase for the invoice."""
        with pytest.raises(PurchaseNotFoundError):
            await PurchaseService(db_session).mark_paid_and_ensure_artifacts("mock_nope")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [PurchaseStatus.EXPIRED, PurchaseStatus.FAILED])
    async def test_terminal_status_conflicts(self, db_session, guest_purchase, status):
        """EXPIRED and FAILED purchases are not resurrected."""
        purchase = await db_session.get(Purchase, guest_purchase.purchase.purchase_id)
        purchase.status = status
        await db_session.commit()

        with pytest.raises(InvalidPurchaseStatusError) as exc_info:
            await PurchaseService(db_session).mark_paid_and_ensure_artifacts(
                guest_purchase.invoice.invoice_id
            )

        assert exc_info.value.status == status.value
        assert exc_info.value.purchase_id == guest_purchase.purchase.purchase_id

    @pytest.mark.asyncio
    async def test_missing_profile_commits_paid_without_artifacts(
        self, db_session, game_without_profile
    ):
        """Without a payout destination the purchase is PAID but has no artifacts."""
        service = PurchaseService(db_session)
        created = await service.create_purchase(game_without_profile.game_id, 5000)
        paid_at = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

        with pytest.raises(MissingDeveloperPayoutProfileError) as exc_info:
            await service.mark_paid_and_ensure_artifacts(created.invoice.invoice_id, paid_at)

        assert exc_info.value.developer_user_id == game_without_profile.developer_user_id
        purchase = await service.get_by_invoice(created.invoice.invoice_id)
        assert purchase.status == PurchaseStatus.PAID
        assert purchase.paid_at.replace(tzinfo=None) == paid_at.replace(tzinfo=None)
        purchase_id = created.purchase.purchase_id
        assert await _rows(db_session, Entitlement, purchase_id) == []
        assert await _rows(db_session, Payout, purchase_id) == []
        types = await _ledger_types(db_session, purchase_id)
        assert types == Counter({LedgerEntryType.INVOICE_CREATED: 1})

    @pytest.mark.asyncio
    async def test_blank_profile_counts_as_missing(self, db_session, game_without_profile):
        """A whitespace-only destination is no destination."""
        db_session.add(
            DeveloperProfile(user_id=game_without_profile.developer_user_id, payout_ln_address="  ")
        )
        await db_session.commit()
        service = PurchaseService(db_session)
        created = await service.create_purchase(game_without_profile.game_id, 5000)

        with pytest.raises(MissingDeveloperPayoutProfileError):
            await service.mark_paid_and_ensure_artifacts(created.invoice.invoice_id)

    @pytest.mark.asyncio
    async def test_profile_added_later_repairs(self, db_session, game_without_profile):
        """Once the developer sets a destination, a redelivery repairs the artifacts."""
        service = PurchaseService(db_session)
        created = await service.create_purchase(game_without_profile.game_id, 5000)
        paid_at = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        with pytest.raises(MissingDeveloperPayoutProfileError):
            await service.mark_paid_and_ensure_artifacts(created.invoice.invoice_id, paid_at)

        db_session.add(
            DeveloperProfile(
                user_id=game_without_profile.developer_user_id,
                payout_ln_address="late@ln.example.com",
            )
        )
        await db_session.commit()

        result = await service.mark_paid_and_ensure_artifacts(created.invoice.invoice_id)
        assert result.already is True
        assert result.repaired is True
        assert result.artifacts.payout_created is True
        assert set(result.artifacts.created_ledger_types) == {
            LedgerEntryType.INVOICE_PAID,
            LedgerEntryType.PLATFORM_FEE,
            LedgerEntryType.DEVELOPER_NET,
        }

        purchase = await service.get_by_invoice(created.invoice.invoice_id)
        assert purchase.paid_at.replace(tzinfo=None) == paid_at.replace(tzinfo=None)
        paid_entry = next(
            e
            for e in await LedgerService(db_session).list_for_purchase(purchase.purchase_id)
            if e.entry_type == LedgerEntryType.INVOICE_PAID
        )
        assert paid_entry.meta["paidAt"].startswith("2026-01-01T12:00")

    @pytest.mark.asyncio
    async def test_custom_fee_bps(self, db_session, guest_purchase):
        """The platform fee follows the configured basis points."""
        result = await PurchaseService(db_session, fee_bps=250).mark_paid_and_ensure_artifacts(
            guest_purchase.invoice.invoice_id
        )
        assert result.artifacts.fee_split.platform_fee_msat == 2_500
        assert result.artifacts.fee_split.developer_net_msat == 97_500

    @pytest.mark.asyncio
    async def test_concurrent_style_duplicates_from_two_sessions(
        self, session_factory, guest_purchase
    ):
        """Deliveries through separate sessions still leave one set of artifacts."""
        invoice_id = guest_purchase.invoice.invoice_id
        purchase_id = guest_purchase.purchase.purchase_id

        async with session_factory() as first:
            await PurchaseService(first).mark_paid_and_ensure_artifacts(invoice_id)
        async with session_factory() as second:
            result = await PurchaseService(second).mark_paid_and_ensure_artifacts(invoice_id)
            assert result.already is True
            types = await _ledger_types(second, purchase_id)
            assert all(count == 1 for count in types.values())

    @pytest.mark.asyncio
    async def test_concurrent_notifications(self, session_factory, guest_purchase):
        """Two simultaneous deliveries both succeed and share one set of artifacts."""
        invoice_id = guest_purchase.invoice.invoice_id
        purchase_id = guest_purchase.purchase.purchase_id

        async def deliver():
            async with session_factory() as session:
                return await PurchaseService(session).mark_paid_and_ensure_artifacts(invoice_id)

        first, second = await asyncio.gather(deliver(), deliver())

        assert first.artifacts.entitlement_id == second.artifacts.entitlement_id
        assert first.artifacts.payout_id == second.artifacts.payout_id
        async with session_factory() as session:
            types = await _ledger_types(session, purchase_id)
            assert types == Counter(
                {
                    LedgerEntryType.INVOICE_CREATED: 1,
                    LedgerEntryType.INVOICE_PAID: 1,
                    LedgerEntryType.PLATFORM_FEE: 1,
                    LedgerEntryType.DEVELOPER_NET: 1,
                }
            )
            assert len(await _rows(session, Payout, purchase_id)) == 1
            assert len(await _rows(session, Entitlement, purchase_id)) == 1
            purchase = await PurchaseService(session).get_by_invoice(invoice_id)
            assert purchase.status == PurchaseStatus.PAID
