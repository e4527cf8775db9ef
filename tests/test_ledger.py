"""
Tests for the append-only ledger.
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from bitindie.db.models import LedgerEntry
from bitindie.exceptions import InvalidAmountError
from bitindie.models.api import LedgerEntryType
from bitindie.services.ledger import PAID_LEDGER_TYPES, LedgerService, dedupe_key_for


async def _count(session, purchase_id, entry_type=None) -> int:
    stmt = select(func.count()).select_from(LedgerEntry).where(LedgerEntry.purchase_id == purchase_id)
    if entry_type is not None:
        stmt = stmt.where(LedgerEntry.type == entry_type)
    return (await session.execute(stmt)).scalar_one()


class TestDedupeKey:
    """Tests for dedupe_key_for."""

    def test_format(self):
        """Key is the lowercased type and the purchase id."""
        purchase_id = uuid4()
        assert dedupe_key_for(LedgerEntryType.PAYOUT_SENT, purchase_id) == f"payout_sent:{purchase_id}"

    def test_distinct_per_type(self):
        """Each once-per-purchase type gets its own key."""
        purchase_id = uuid4()
        keys = {dedupe_key_for(t, purchase_id) for t in PAID_LEDGER_TYPES}
        assert len(keys) == len(PAID_LEDGER_TYPES)


class TestLedgerAppend:
    """Tests for LedgerService.append."""

    @pytest.mark.asyncio
    async def test_append_without_dedupe_key(self, db_session, guest_purchase):
        """Plain appends always write a row."""
        ledger = LedgerService(db_session)
        purchase_id = guest_purchase.purchase.purchase_id

        entry = await ledger.append(purchase_id, LedgerEntryType.PAYOUT_FAILED, 0, {"note": "x"})
        await db_session.commit()

        assert entry.entry_type == LedgerEntryType.PAYOUT_FAILED
        assert entry.meta == {"note": "x"}
        assert entry.dedupe_key is None
        assert entry.deduplicated is False
        assert await _count(db_session, purchase_id, LedgerEntryType.PAYOUT_FAILED) == 1

    @pytest.mark.asyncio
    async def test_dedupe_key_collision_returns_existing(self, db_session, guest_purchase):
        """A second append with the same key is absorbed and returns the first row."""
        ledger = LedgerService(db_session)
        purchase_id = guest_purchase.purchase.purchase_id
        key = dedupe_key_for(LedgerEntryType.PAYOUT_SENT, purchase_id)

        first = await ledger.append(
            purchase_id, LedgerEntryType.PAYOUT_SENT, 90_000, {"attempt": 1}, dedupe_key=key
        )
        second = await ledger.append(
            purchase_id, LedgerEntryType.PAYOUT_SENT, 90_000, {"attempt": 2}, dedupe_key=key
        )
        await db_session.commit()

        assert first.deduplicated is False
        assert second.deduplicated is True
        assert second.entry_id == first.entry_id
        assert second.meta == {"attempt": 1}
        assert await _count(db_session, purchase_id, LedgerEntryType.PAYOUT_SENT) == 1

    @pytest.mark.asyncio
    async def test_dedupe_across_sessions(self, session_factory, guest_purchase):
        """The unique key holds across independent transactions."""
        purchase_id = guest_purchase.purchase.purchase_id
        key = dedupe_key_for(LedgerEntryType.INVOICE_PAID, purchase_id)

        async with session_factory() as first_session:
            await LedgerService(first_session).append(
                purchase_id, LedgerEntryType.INVOICE_PAID, 100_000, dedupe_key=key
            )
            await first_session.commit()

        async with session_factory() as second_session:
            entry = await LedgerService(second_session).append(
                purchase_id, LedgerEntryType.INVOICE_PAID, 100_000, dedupe_key=key
            )
            await second_session.commit()
            assert entry.deduplicated is True
            assert await _count(second_session, purchase_id, LedgerEntryType.INVOICE_PAID) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [-1, 1.5, True])
    async def test_rejects_bad_amounts(self, db_session, guest_purchase, amount):
        """Ledger amounts are non-negative ints."""
        with pytest.raises(InvalidAmountError):
            await LedgerService(db_session).append(
                guest_purchase.purchase.purchase_id, LedgerEntryType.PLATFORM_FEE, amount
            )

    @pytest.mark.asyncio
    async def test_zero_amount_allowed(self, db_session, guest_purchase):
        """A zero fee is still recorded."""
        entry = await LedgerService(db_session).append(
            guest_purchase.purchase.purchase_id, LedgerEntryType.PLATFORM_FEE, 0
        )
        assert entry.amount_msat == 0


class TestLedgerQueries:
    """Tests for list_types and list_for_purchase."""

    @pytest.mark.asyncio
    async def test_checkout_writes_invoice_created(self, db_session, guest_purchase):
        """Checkout leaves exactly one INVOICE_CREATED entry."""
        entries = await LedgerService(db_session).list_for_purchase(
            guest_purchase.purchase.purchase_id
        )
        assert [e.entry_type for e in entries] == [LedgerEntryType.INVOICE_CREATED]
        assert entries[0].amount_msat == 100_000
        assert entries[0].meta["invoiceId"] == guest_purchase.invoice.invoice_id

    @pytest.mark.asyncio
    async def test_list_types_filters(self, db_session, guest_purchase):
        """Only the asked-for types that exist are returned."""
        ledger = LedgerService(db_session)
        purchase_id = guest_purchase.purchase.purchase_id
        await ledger.append(purchase_id, LedgerEntryType.PLATFORM_FEE, 10)

        found = await ledger.list_types(purchase_id, PAID_LEDGER_TYPES)
        assert found == {LedgerEntryType.PLATFORM_FEE}

    @pytest.mark.asyncio
    async def test_list_types_empty_request(self, db_session, guest_purchase):
        """Asking for nothing returns nothing without a query."""
        assert await LedgerService(db_session).list_types(guest_purchase.purchase.purchase_id, []) == set()
