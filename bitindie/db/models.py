"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
The JSON audit columns are the exception: they hold provider payloads as received.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from bitindie.models.api import LedgerEntryType, PayoutStatus, PurchaseStatus

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_column(enum_cls: type, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class User(Base):
    """
    ORM model for users table.

    A user is identified by their public key.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    pubkey: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, pubkey={self.pubkey[:12]}...)>"


class DeveloperProfile(Base):
    """
    ORM model for developer_profiles table.

    Payout destination for a developer. No row means payouts cannot be scheduled.
    """

    __tablename__ = "developer_profiles"

    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    payout_ln_address: Mapped[str] = mapped_column(String(320), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class Game(Base):
    """ORM model for games table."""

    __tablename__ = "games"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    developer_user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<Game(id={self.id}, slug={self.slug})>"


class ApiSession(Base):
    """
    ORM model for api_sessions table.

    Bearer sessions live in the database with an expiry, never in process memory.
    """

    __tablename__ = "api_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    origin: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_api_sessions_expires_at", "expires_at"),)


class Purchase(Base):
    """
    ORM model for purchases table.

    Created PENDING at checkout, flipped to PAID once. Exactly one of
    buyer_user_id / guest_receipt_code is set at creation; a claim later sets
    buyer_user_id and keeps the code for audit.
    """

    __tablename__ = "purchases"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    buyer_user_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True, index=True
    )
    guest_receipt_code: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True
    )
    game_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("games.id"), nullable=False, index=True)

    invoice_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)

    status: Mapped[PurchaseStatus] = mapped_column(
        _enum_column(PurchaseStatus, "purchase_status"),
        nullable=False,
        default=PurchaseStatus.PENDING,
    )
    amount_msat: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_msat >= 0", name="ck_purchase_amount_non_negative"),
        Index("idx_purchases_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Purchase(id={self.id}, invoice_id={self.invoice_id}, "
            f"status={self.status}, amount_msat={self.amount_msat})>"
        )


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only record of monetary events. Rows are never updated.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    purchase_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("purchases.id"), nullable=False, index=True
    )
    type: Mapped[LedgerEntryType] = mapped_column(
        _enum_column(LedgerEntryType, "ledger_entry_type"), nullable=False
    )
    amount_msat: Mapped[int] = mapped_column(BigInteger, nullable=False)
    dedupe_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    meta_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_msat >= 0", name="ck_ledger_amount_non_negative"),
        Index("idx_ledger_entries_purchase_type", "purchase_id", "type"),
        Index("idx_ledger_entries_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(id={self.id}, purchase_id={self.purchase_id}, "
            f"type={self.type}, amount_msat={self.amount_msat})>"
        )


class Entitlement(Base):
    """
    ORM model for entitlements table.

    One access grant per purchase.
    """

    __tablename__ = "entitlements"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    purchase_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("purchases.id"), nullable=False, unique=True
    )
    buyer_user_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True, index=True
    )
    guest_receipt_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    game_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("games.id"), nullable=False, index=True)

    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Entitlement(id={self.id}, purchase_id={self.purchase_id}, "
            f"buyer_user_id={self.buyer_user_id})>"
        )


class Payout(Base):
    """
    ORM model for payouts table.

    One payout per purchase. provider_meta_json keeps the last webhook receipt.
    """

    __tablename__ = "payouts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    purchase_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("purchases.id"), nullable=False, unique=True
    )
    developer_user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    destination_ln_address: Mapped[str] = mapped_column(String(320), nullable=False)
    amount_msat: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[PayoutStatus] = mapped_column(
        _enum_column(PayoutStatus, "payout_status"),
        nullable=False,
        default=PayoutStatus.SCHEDULED,
    )

    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    provider_withdrawal_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True
    )
    provider_meta_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_msat >= 0", name="ck_payout_amount_non_negative"),
        CheckConstraint("attempt_count >= 0", name="ck_payout_attempts_non_negative"),
        Index("idx_payouts_status", "status"),
        Index("idx_payouts_provider_withdrawal", "provider", "provider_withdrawal_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payout(id={self.id}, purchase_id={self.purchase_id}, "
            f"status={self.status}, amount_msat={self.amount_msat})>"
        )
