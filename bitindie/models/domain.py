"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from bitindie.models.api import LedgerEntryType, PayoutStatus, PurchaseStatus
from bitindie.services.money import FeeSplit

PUBKEY_MIN_LENGTH = 32
PUBKEY_MAX_LENGTH = 128


@dataclass(frozen=True)
class BuyerIdentity:
    """Immutable buyer identity - a public key, optionally with a display name."""

    pubkey: str
    display_name: str | None = None

    def __post_init__(self) -> None:
        """Validate buyer identity fields."""
        if not isinstance(self.pubkey, str):
            raise ValueError("pubkey must be a string")
        pubkey = self.pubkey.strip()
        if not PUBKEY_MIN_LENGTH <= len(pubkey) <= PUBKEY_MAX_LENGTH:
            raise ValueError(
                f"pubkey must be {PUBKEY_MIN_LENGTH}-{PUBKEY_MAX_LENGTH} characters: {len(pubkey)}"
            )
        object.__setattr__(self, "pubkey", pubkey)


@dataclass(frozen=True)
class PurchaseData:
    """Immutable purchase snapshot."""

    purchase_id: UUID
    buyer_user_id: UUID | None
    guest_receipt_code: str | None
    game_id: UUID
    invoice_provider: str
    invoice_id: str
    status: PurchaseStatus
    amount_msat: int
    paid_at: datetime | None
    created_at: datetime

    def __post_init__(self) -> None:
        """Validate purchase constraints."""
        if self.amount_msat < 0:
            raise ValueError(f"Purchase amount cannot be negative: {self.amount_msat}")


@dataclass(frozen=True)
class InvoiceStub:
    """Invoice handle returned at checkout (bolt11 is None until invoicing lands)."""

    provider: str
    invoice_id: str
    bolt11: str | None = None


@dataclass(frozen=True)
class CreatedPurchase:
    """Result of checkout."""

    purchase: PurchaseData
    invoice: InvoiceStub
    guest_receipt_code: str | None


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry snapshot."""

    entry_id: UUID
    purchase_id: UUID
    entry_type: LedgerEntryType
    amount_msat: int
    dedupe_key: str | None
    meta: dict[str, Any]
    created_at: datetime
    deduplicated: bool = False


@dataclass(frozen=True)
class EntitlementData:
    """Immutable entitlement snapshot."""

    entitlement_id: UUID
    purchase_id: UUID
    buyer_user_id: UUID | None
    guest_receipt_code: str | None
    game_id: UUID
    granted_at: datetime
    revoked_at: datetime | None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


@dataclass(frozen=True)
class PaidArtifacts:
    """What ensure-paid-artifacts left in place for one PAID purchase."""

    entitlement_id: UUID
    payout_id: UUID
    payout_status: PayoutStatus
    payout_created: bool
    fee_split: FeeSplit
    created_ledger_types: tuple[LedgerEntryType, ...] = ()


@dataclass(frozen=True)
class PaidArtifactsResult:
    """Result of a payment notification."""

    purchase_id: UUID
    already: bool
    repaired: bool
    artifacts: PaidArtifacts


@dataclass(frozen=True)
class ClaimResult:
    """Result of a successful guest receipt claim."""

    purchase_id: UUID
    entitlement_id: UUID
    game_id: UUID
    buyer_user_id: UUID
    already_claimed: bool


@dataclass(frozen=True)
class PayoutReceipt:
    """
    Audit record of the last payout webhook delivery.

    Stored under provider_meta_json["webhook"] on the payout row.
    """

    received_at: datetime
    withdrawal_id: str
    status: str
    raw_status: str
    processed_at: datetime | None
    processed_at_raw: str | None
    fee: Decimal | None
    fee_raw: str | None
    amount: Decimal | None
    error: str | None
    event_type: str | None
    reference: str | None
    anomalies: tuple[str, ...] = field(default_factory=tuple)

    def to_json(self) -> dict[str, Any]:
        """JSON-safe form for the audit column."""
        return {
            "receivedAt": self.received_at.isoformat(),
            "withdrawalId": self.withdrawal_id,
            "status": self.status,
            "rawStatus": self.raw_status,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "processedAtRaw": self.processed_at_raw,
            "fee": str(self.fee) if self.fee is not None else None,
            "feeRaw": self.fee_raw,
            "amount": str(self.amount) if self.amount is not None else None,
            "error": self.error,
            "type": self.event_type,
            "reference": self.reference,
            "anomalies": list(self.anomalies),
        }
