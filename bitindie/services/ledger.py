"""
Ledger Service - append-only record of monetary events per purchase.

NO DICTIONARIES - Entries are returned as LedgerEntryData snapshots.
The service never commits; appends join the caller's transaction.
"""

from collections.abc import Iterable
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.db.dml import insert_or_ignore
from bitindie.db.models import LedgerEntry, utc_now
from bitindie.exceptions import InvalidAmountError, WriteVerificationError
from bitindie.models.api import LedgerEntryType
from bitindie.models.domain import LedgerEntryData
from bitindie.observability.metrics import metrics

logger = get_logger(__name__)

# Types written by ensure-paid-artifacts; each appears at most once per purchase
PAID_LEDGER_TYPES: tuple[LedgerEntryType, ...] = (
    LedgerEntryType.INVOICE_PAID,
    LedgerEntryType.PLATFORM_FEE,
    LedgerEntryType.DEVELOPER_NET,
)


def dedupe_key_for(entry_type: LedgerEntryType, purchase_id: UUID) -> str:
    """Dedupe key for a once-per-purchase entry, e.g. payout_sent:<purchase_id>."""
    return f"{entry_type.value.lower()}:{purchase_id}"


def _to_data(entry: LedgerEntry, deduplicated: bool = False) -> LedgerEntryData:
    return LedgerEntryData(
        entry_id=entry.id,
        purchase_id=entry.purchase_id,
        entry_type=LedgerEntryType(entry.type),
        amount_msat=entry.amount_msat,
        dedupe_key=entry.dedupe_key,
        meta=dict(entry.meta_json or {}),
        created_at=entry.created_at,
        deduplicated=deduplicated,
    )


class LedgerService:
    """
    Ledger store.

    Appends are immutable. A dedupe key collision means the event was already
    recorded; the existing row is returned instead of raising.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger service with database session."""
        self.session = session

    async def append(
        self,
        purchase_id: UUID,
        entry_type: LedgerEntryType,
        amount_msat: int,
        meta: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> LedgerEntryData:
        """
        Append one ledger entry.

        With a dedupe key the insert is INSERT ... ON CONFLICT DO NOTHING, so
        concurrent writers race safely without pre-checking.

        Raises:
            InvalidAmountError: amount is negative
            WriteVerificationError: row could not be read back
        """
        if isinstance(amount_msat, bool) or not isinstance(amount_msat, int) or amount_msat < 0:
            raise InvalidAmountError(f"Ledger amount must be a non-negative integer: {amount_msat}")

        values = {
            "purchase_id": purchase_id,
            "type": entry_type,
            "amount_msat": amount_msat,
            "dedupe_key": dedupe_key,
            "meta_json": dict(meta or {}),
            "created_at": utc_now(),
        }

        if dedupe_key is None:
            entry = LedgerEntry(**values)
            self.session.add(entry)
            await self.session.flush()
            metrics.record_ledger_entry(entry_type.value, deduplicated=False)
            return _to_data(entry)

        entry_id = await insert_or_ignore(self.session, LedgerEntry, values, ["dedupe_key"])

        if entry_id is None:
            existing = await self._get_by_dedupe_key(dedupe_key)
            if existing is None:
                raise WriteVerificationError(f"Ledger dedupe key {dedupe_key} conflicted but no row found")
            logger.info(
                "ledger_append_deduplicated",
                purchase_id=str(purchase_id),
                entry_type=entry_type.value,
                dedupe_key=dedupe_key,
            )
            metrics.record_ledger_entry(entry_type.value, deduplicated=True)
            return _to_data(existing, deduplicated=True)

        created = await self.session.get(LedgerEntry, entry_id)
        if created is None:
            raise WriteVerificationError(f"Ledger entry {entry_id} not found after insert")

        metrics.record_ledger_entry(entry_type.value, deduplicated=False)
        return _to_data(created)

    async def list_types(
        self, purchase_id: UUID, types: Iterable[LedgerEntryType]
    ) -> set[LedgerEntryType]:
        """Which of the given entry types already exist for a purchase."""
        wanted = list(types)
        if not wanted:
            return set()

        stmt = (
            select(LedgerEntry.type)
            .where(LedgerEntry.purchase_id == purchase_id, LedgerEntry.type.in_(wanted))
            .distinct()
        )
        result = await self.session.execute(stmt)
        return {LedgerEntryType(row) for row in result.scalars().all()}

    async def list_for_purchase(self, purchase_id: UUID) -> list[LedgerEntryData]:
        """All entries for a purchase, oldest first."""
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.purchase_id == purchase_id)
            .order_by(LedgerEntry.created_at, LedgerEntry.id)
        )
        result = await self.session.execute(stmt)
        return [_to_data(entry) for entry in result.scalars().all()]

    async def _get_by_dedupe_key(self, dedupe_key: str) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(LedgerEntry.dedupe_key == dedupe_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
