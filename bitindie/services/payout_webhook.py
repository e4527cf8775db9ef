"""
Payout Webhook Processor - authenticate and apply withdrawal confirmations.

NO DICTIONARIES - Inbound form fields are parsed into a PayoutWebhookEvent.

Authentication is HMAC-SHA256 over the withdrawal id, keyed by the provider
API key, sent hex-encoded as hashed_order. Every handled outcome after
authentication is acknowledged so the provider stops redelivering.
Anomaly detection is audit only; it never changes which branch runs.
"""

import hashlib
import hmac
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from bitindie.exceptions import (
    WebhookMisconfiguredError,
    WebhookValidationError,
    WebhookVerificationError,
)
from bitindie.models.api import LedgerEntryType
from bitindie.models.domain import PayoutReceipt
from bitindie.observability.logging import log_context
from bitindie.observability.metrics import metrics
from bitindie.observability.tracing import add_span_attributes, trace_operation
from bitindie.services.ledger import LedgerService, dedupe_key_for
from bitindie.services.payouts import PayoutScheduler

logger = get_logger(__name__)

CONFIRMED_STATUSES = frozenset({"confirmed"})
FAILURE_STATUSES = frozenset({"error", "failed"})
KNOWN_EVENT_TYPES = frozenset({"withdrawal"})

SIGNATURE_PREFIX = "sha256="
MAX_WITHDRAWAL_ID_LENGTH = 128
MAX_ERROR_LENGTH = 500
MAX_REFERENCE_LENGTH = 200
STALE_AFTER = timedelta(days=30)

_EPOCH_RE = re.compile(r"^[0-9]+(\.[0-9]+)?$")


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class StatusKind(str, Enum):
    """How a reported withdrawal status is handled."""

    CONFIRMED = "confirmed"
    FAILURE = "failure"
    UNKNOWN = "unknown"


class WebhookOutcome(str, Enum):
    """Acknowledged outcomes of a payout webhook."""

    UNMATCHED = "unmatched"
    CONFIRMED = "confirmed"
    DUPLICATE_CONFIRMATION = "duplicate_confirmation"
    FAILED = "failed"
    FAILURE_IGNORED = "failure_ignored"
    RECORDED = "recorded"


# ============================================================================
# Inbound event
# ============================================================================


def _form_text(form: Mapping[str, Any], name: str) -> str:
    value = form.get(name)
    if value is None:
        return ""
    return str(value)


def _truncate(value: str, limit: int) -> tuple[str, bool]:
    if len(value) > limit:
        return value[:limit], True
    return value, False


def _parse_decimal(raw: str) -> Decimal | None:
    if not raw:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def _parse_processed_at(raw: str) -> datetime | None:
    """Epoch seconds or ISO-8601; naive values are taken as UTC."""
    if not raw:
        return None
    try:
        if _EPOCH_RE.match(raw):
            return datetime.fromtimestamp(float(raw), tz=UTC)
        parsed = datetime.fromisoformat(raw)
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class PayoutWebhookEvent:
    """
    One withdrawal webhook delivery, normalized.

    Required: withdrawal_id, status, hashed_order. Everything else is optional
    and parsed best effort; unparseable values keep their raw text.
    """

    withdrawal_id: str
    status: str
    raw_status: str
    hashed_order: str
    signature_had_prefix: bool = False
    processed_at: datetime | None = None
    processed_at_raw: str | None = None
    fee: Decimal | None = None
    fee_raw: str | None = None
    amount: Decimal | None = None
    amount_raw: str | None = None
    error: str | None = None
    error_truncated: bool = False
    event_type: str | None = None
    reference: str | None = None
    reference_truncated: bool = False

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "PayoutWebhookEvent":
        """Parse a form-encoded delivery. Missing fields become empty strings."""
        raw_status = _form_text(form, "status").strip()

        hashed_order = _form_text(form, "hashed_order").strip()
        had_prefix = hashed_order.lower().startswith(SIGNATURE_PREFIX)
        if had_prefix:
            hashed_order = hashed_order[len(SIGNATURE_PREFIX) :].strip()

        processed_at_raw = _form_text(form, "processed_at").strip()
        fee_raw = _form_text(form, "fee").strip()
        amount_raw = _form_text(form, "amount").strip()
        error, error_truncated = _truncate(_form_text(form, "error").strip(), MAX_ERROR_LENGTH)
        reference, reference_truncated = _truncate(
            _form_text(form, "reference").strip(), MAX_REFERENCE_LENGTH
        )
        event_type = _form_text(form, "type").strip().lower()

        return cls(
            withdrawal_id=_form_text(form, "id").strip(),
            status=raw_status.lower(),
            raw_status=raw_status,
            hashed_order=hashed_order,
            signature_had_prefix=had_prefix,
            processed_at=_parse_processed_at(processed_at_raw),
            processed_at_raw=processed_at_raw or None,
            fee=_parse_decimal(fee_raw),
            fee_raw=fee_raw or None,
            amount=_parse_decimal(amount_raw),
            amount_raw=amount_raw or None,
            error=error or None,
            error_truncated=error_truncated,
            event_type=event_type or None,
            reference=reference or None,
            reference_truncated=reference_truncated,
        )

    @property
    def status_kind(self) -> StatusKind:
        if self.status in CONFIRMED_STATUSES:
            return StatusKind.CONFIRMED
        if self.status in FAILURE_STATUSES:
            return StatusKind.FAILURE
        return StatusKind.UNKNOWN

    @property
    def audit_withdrawal_id(self) -> str:
        """Withdrawal id bounded for storage."""
        return self.withdrawal_id[:MAX_WITHDRAWAL_ID_LENGTH]

    def to_receipt(self, received_at: datetime, anomalies: list["WebhookAnomaly"]) -> PayoutReceipt:
        """Audit record for the payout row."""
        return PayoutReceipt(
            received_at=received_at,
            withdrawal_id=self.audit_withdrawal_id,
            status=self.status,
            raw_status=self.raw_status,
            processed_at=self.processed_at,
            processed_at_raw=self.processed_at_raw,
            fee=self.fee,
            fee_raw=self.fee_raw,
            amount=self.amount,
            error=self.error,
            event_type=self.event_type,
            reference=self.reference,
            anomalies=tuple(a.kind for a in anomalies),
        )


# ============================================================================
# Signatures
# ============================================================================


def compute_webhook_signature(secret: str, withdrawal_id: str) -> str:
    """HMAC-SHA256 hex digest of the withdrawal id."""
    return hmac.new(
        secret.encode("utf-8"), withdrawal_id.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_webhook_signature(secret: str, withdrawal_id: str, signature: str) -> bool:
    """Constant-time check of a hex signature (case-insensitive)."""
    expected = compute_webhook_signature(secret, withdrawal_id)
    received = signature.strip().lower()
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


# ============================================================================
# Anomalies
# ============================================================================


@dataclass(frozen=True)
class WebhookAnomaly:
    """Something odd about a delivery, worth an operator's look."""

    kind: str
    detail: str


def detect_anomalies(event: PayoutWebhookEvent, now: datetime) -> list[WebhookAnomaly]:
    """Audit a delivery. Pure; the result never drives control flow."""
    anomalies: list[WebhookAnomaly] = []

    def flag(kind: str, detail: str) -> None:
        anomalies.append(WebhookAnomaly(kind=kind, detail=detail))

    if event.processed_at_raw and event.processed_at is None:
        flag("processed_at_invalid", f"unparseable processed_at {event.processed_at_raw!r}")
    elif event.processed_at is not None:
        if event.processed_at > now:
            flag("processed_at_in_future", f"processed_at {event.processed_at.isoformat()}")
        elif now - event.processed_at > STALE_AFTER:
            flag("processed_at_stale", f"processed_at {event.processed_at.isoformat()}")

    if event.fee_raw and event.fee is None:
        flag("fee_invalid", f"unparseable fee {event.fee_raw!r}")
    if event.fee is not None and event.fee < 0:
        flag("fee_negative", f"fee {event.fee}")
    if event.amount_raw and event.amount is None:
        flag("amount_invalid", f"unparseable amount {event.amount_raw!r}")

    kind = event.status_kind
    if (
        kind == StatusKind.CONFIRMED
        and event.fee is not None
        and event.amount is not None
        and event.fee >= event.amount
    ):
        flag("fee_not_below_amount", f"fee {event.fee} >= amount {event.amount}")

    if kind == StatusKind.CONFIRMED and event.error:
        flag("error_on_confirmed", "confirmed delivery carries an error")
    if kind == StatusKind.FAILURE and not event.error:
        flag("error_missing_on_failure", f"status {event.status} without error")
    if kind == StatusKind.UNKNOWN:
        flag("status_unknown", f"status {event.raw_status!r}")

    if event.event_type and event.event_type not in KNOWN_EVENT_TYPES:
        flag("type_unknown", f"type {event.event_type!r}")

    if event.signature_had_prefix:
        flag("signature_prefixed", "hashed_order carried a sha256= prefix")

    if len(event.withdrawal_id) > MAX_WITHDRAWAL_ID_LENGTH:
        flag("withdrawal_id_truncated", f"id length {len(event.withdrawal_id)}")
    if event.error_truncated:
        flag("error_truncated", f"error truncated to {MAX_ERROR_LENGTH}")
    if event.reference_truncated:
        flag("reference_truncated", f"reference truncated to {MAX_REFERENCE_LENGTH}")

    return anomalies


# ============================================================================
# Processor
# ============================================================================


class PayoutWebhookProcessor:
    """
    Applies authenticated withdrawal webhooks to payouts.

    Steps:
    1. Reject when the shared secret is not configured
    2. Validate required fields (no database access)
    3. Verify the HMAC
    4. Match the payout; unmatched deliveries are acknowledged
    5. Confirm, fail or record the receipt in one transaction
    """

    def __init__(self, session: AsyncSession, secret: str, provider: str = "opennode") -> None:
        """Initialize processor with database session and webhook secret."""
        self.session = session
        self.secret = secret.strip()
        self.provider = provider
        self.payouts = PayoutScheduler(session)
        self.ledger = LedgerService(session)

    async def process(self, form: Mapping[str, Any]) -> WebhookOutcome:
        """
        Handle one delivery.

        Raises:
            WebhookMisconfiguredError: no shared secret configured
            WebhookValidationError: id, hashed_order or status missing
            WebhookVerificationError: signature mismatch
        """
        if not self.secret:
            logger.warning("payout_webhook_misconfigured", provider=self.provider)
            metrics.record_payout_webhook("misconfigured")
            raise WebhookMisconfiguredError(self.provider)

        event = PayoutWebhookEvent.from_form(form)

        if not event.withdrawal_id or not event.hashed_order:
            logger.warning(
                "payout_webhook_invalid",
                reason="missing_id_or_hashed_order",
                has_id=bool(event.withdrawal_id),
                has_hashed_order=bool(event.hashed_order),
            )
            metrics.record_payout_webhook("invalid")
            raise WebhookValidationError("missing id/hashed_order")

        if not event.status:
            logger.warning(
                "payout_webhook_invalid",
                reason="missing_status",
                withdrawal_id=event.audit_withdrawal_id,
            )
            metrics.record_payout_webhook("invalid")
            raise WebhookValidationError("missing status")

        if not verify_webhook_signature(self.secret, event.withdrawal_id, event.hashed_order):
            logger.warning(
                "payout_webhook_auth_failed",
                withdrawal_id=event.audit_withdrawal_id,
                status=event.status,
                signature_length=len(event.hashed_order),
                signature_prefixed=event.signature_had_prefix,
            )
            metrics.record_payout_webhook("unauthorized")
            raise WebhookVerificationError("Unauthorized")

        now = _utc_now()
        anomalies = detect_anomalies(event, now)

        with log_context(withdrawal_id=event.audit_withdrawal_id, payout_provider=self.provider):
            self._emit_anomalies(anomalies)

            with trace_operation(
                "payout_webhook", withdrawal_id=event.audit_withdrawal_id, status=event.status
            ) as span:
                outcome = await self._apply(event, event.to_receipt(now, anomalies))
                add_span_attributes(span, outcome=outcome)

            logger.info("payout_webhook_processed", outcome=outcome.value, status=event.status)

        metrics.record_payout_webhook(outcome.value)
        return outcome

    async def _apply(self, event: PayoutWebhookEvent, receipt: PayoutReceipt) -> WebhookOutcome:
        payout = await self.payouts.find_by_provider_withdrawal_id(
            self.provider, event.withdrawal_id
        )
        if payout is None:
            logger.warning("payout_webhook_unmatched", status=event.status)
            return WebhookOutcome.UNMATCHED

        try:
            # Re-read under lock; a concurrent delivery may have moved it
            fresh = await self.payouts.get(payout.id, for_update=True)
            if fresh is None:
                await self.session.rollback()
                return WebhookOutcome.UNMATCHED

            kind = event.status_kind
            if kind == StatusKind.CONFIRMED:
                transitioned = await self.payouts.mark_sent(fresh, receipt)
                await self.ledger.append(
                    fresh.purchase_id,
                    LedgerEntryType.PAYOUT_SENT,
                    fresh.amount_msat,
                    {
                        "payoutId": str(fresh.id),
                        "provider": fresh.provider,
                        "providerWithdrawalId": fresh.provider_withdrawal_id,
                    },
                    dedupe_key=dedupe_key_for(LedgerEntryType.PAYOUT_SENT, fresh.purchase_id),
                )
                outcome = (
                    WebhookOutcome.CONFIRMED
                    if transitioned
                    else WebhookOutcome.DUPLICATE_CONFIRMATION
                )
            elif kind == StatusKind.FAILURE:
                error = event.error or (
                    f"{self.provider} withdrawal {event.audit_withdrawal_id} status={event.status}"
                )
                failed = await self.payouts.mark_failed(fresh, error, receipt)
                outcome = WebhookOutcome.FAILED if failed else WebhookOutcome.FAILURE_IGNORED
            else:
                await self.payouts.record_receipt(fresh, receipt)
                outcome = WebhookOutcome.RECORDED

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        return outcome

    def _emit_anomalies(self, anomalies: list[WebhookAnomaly]) -> None:
        for anomaly in anomalies:
            logger.warning("payout_webhook_anomaly", kind=anomaly.kind, detail=anomaly.detail)
            metrics.record_webhook_anomaly(anomaly.kind)
