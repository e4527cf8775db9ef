"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire format is camelCase; money is serialized as a decimal string.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from bitindie.services.money import parse_amount_msat
from bitindie.services.receipt_codes import normalize_receipt_code


class PurchaseStatus(str, Enum):
    """Purchase status enumeration."""

    PENDING = "PENDING"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class LedgerEntryType(str, Enum):
    """Ledger entry type enumeration."""

    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_PAID = "INVOICE_PAID"
    PLATFORM_FEE = "PLATFORM_FEE"
    DEVELOPER_NET = "DEVELOPER_NET"
    PAYOUT_SENT = "PAYOUT_SENT"
    PAYOUT_FAILED = "PAYOUT_FAILED"


class PayoutStatus(str, Enum):
    """Payout status enumeration."""

    SCHEDULED = "SCHEDULED"
    SUBMITTED = "SUBMITTED"
    SENT = "SENT"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    CANCELED = "CANCELED"


class WireModel(BaseModel):
    """Base model with camelCase aliases on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Purchase Models
# ============================================================================


class CreatePurchaseRequest(WireModel):
    """POST /v1/purchases request body."""

    game_id: UUID
    amount_msat: int = Field(..., description="Millisatoshis as integer or decimal string")
    buyer_pubkey: str | None = Field(None, min_length=32, max_length=128)

    @field_validator("amount_msat", mode="before")
    @classmethod
    def validate_amount_msat(cls, v: Any) -> int:
        """Accept string/number/big-integer, never coerce fractions."""
        return parse_amount_msat(v)


class PurchaseView(WireModel):
    """Serialized purchase."""

    id: UUID
    buyer_user_id: UUID | None
    guest_receipt_code: str | None
    game_id: UUID
    invoice_provider: str
    invoice_id: str
    status: PurchaseStatus
    amount_msat: int
    paid_at: datetime | None
    created_at: datetime

    @field_serializer("amount_msat")
    def serialize_amount_msat(self, value: int) -> str:
        return str(value)


class InvoiceView(WireModel):
    """Invoice placeholder until a real provider is wired in."""

    provider: str
    id: str
    bolt11: str | None = None


class CreatePurchaseResponse(WireModel):
    """POST /v1/purchases response."""

    ok: bool = True
    purchase: PurchaseView
    invoice: InvoiceView
    guest_receipt_code: str | None


# ============================================================================
# Invoice Paid Notification Models
# ============================================================================


class InvoicePaidRequest(WireModel):
    """POST /v1/webhooks/invoice-paid request body."""

    invoice_id: str = Field(..., min_length=1, max_length=256)
    paid_at: datetime | None = None


class InvoicePaidResponse(WireModel):
    """POST /v1/webhooks/invoice-paid response."""

    ok: bool = True
    purchase_id: UUID
    entitlement_id: UUID
    payout_id: UUID
    already: bool
    repaired: bool
    created_ledger_types: list[LedgerEntryType] = Field(default_factory=list)


# ============================================================================
# Claim Models
# ============================================================================


class ClaimRequest(WireModel):
    """POST /v1/purchases/claim request body."""

    receipt_code: str = Field(..., min_length=6, max_length=128)
    buyer_pubkey: str = Field(..., min_length=32, max_length=128)

    @field_validator("receipt_code")
    @classmethod
    def validate_receipt_code(cls, v: str) -> str:
        """Canonicalize to the stored uppercase form."""
        return normalize_receipt_code(v)


class ClaimResponse(WireModel):
    """POST /v1/purchases/claim response."""

    ok: bool = True
    purchase_id: UUID
    entitlement_id: UUID
    game_id: UUID
    buyer_user_id: UUID


# ============================================================================
# Entitlement Models
# ============================================================================


class EntitlementItem(WireModel):
    """Single entitlement in a buyer's library."""

    id: UUID
    purchase_id: UUID
    game_id: UUID
    granted_at: datetime


class EntitlementListResponse(WireModel):
    """GET /v1/me/entitlements response."""

    ok: bool = True
    entitlements: list[EntitlementItem]


# ============================================================================
# Error / Ack Models
# ============================================================================


class ConflictDetail(WireModel):
    """Structured 409 detail for operator and retry decisions."""

    error: str
    reason: str
    purchase_id: UUID | None = None
    status: str | None = None


class WebhookAck(WireModel):
    """Minimal acknowledgement body for payout webhooks."""

    ok: bool = True


# ============================================================================
# Ops Models
# ============================================================================


class UrlCheck(WireModel):
    """Readiness check for a configured URL."""

    configured: bool
    valid: bool
    value: str | None


class PayoutReadinessResponse(WireModel):
    """GET /v1/ops/payouts/readiness response."""

    ok: bool = True
    payout_ready: bool
    provider_mode: str
    has_webhook_secret: bool
    callback_url: UrlCheck
    base_url: UrlCheck
    reasons: list[str]


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: datetime
