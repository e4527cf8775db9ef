"""
Tests for exception classes.

Covers typed attributes and string representations.
"""

from uuid import uuid4

import pytest

from bitindie.exceptions import (
    AuthenticationError,
    DatabaseError,
    EntitlementNotFoundError,
    GameNotFoundError,
    InvalidAmountError,
    InvalidPayoutTransitionError,
    InvalidPurchaseStatusError,
    InvalidReceiptCodeError,
    MarketplaceError,
    MissingDeveloperPayoutProfileError,
    PurchaseNotFoundError,
    PurchaseNotPaidError,
    ReceiptClaimedByOtherError,
    ReceiptCodeExhaustedError,
    ReceiptNotFoundError,
    WebhookMisconfiguredError,
    WebhookValidationError,
    WebhookVerificationError,
    WriteVerificationError,
)


class TestMarketplaceError:
    """Tests for base MarketplaceError."""

    def test_is_exception(self):
        """MarketplaceError is a subclass of Exception."""
        assert issubclass(MarketplaceError, Exception)

    def test_can_be_raised(self):
        """MarketplaceError can be raised and caught."""
        with pytest.raises(MarketplaceError):
            raise MarketplaceError("test error")


class TestInputErrors:
    """Input errors are also ValueErrors so Pydantic validators can raise them."""

    @pytest.mark.parametrize("exc_class", [InvalidAmountError, InvalidReceiptCodeError])
    def test_is_value_error(self, exc_class):
        """Raised from a validator, they become 422s."""
        exc = exc_class("bad input")
        assert isinstance(exc, ValueError)
        assert isinstance(exc, MarketplaceError)
        assert exc.message == "bad input"
        assert str(exc) == "bad input"


class TestLookupErrors:
    """Tests for not-found errors."""

    def test_game_not_found(self):
        """Carries the game id."""
        game_id = uuid4()
        exc = GameNotFoundError(game_id)
        assert exc.game_id == game_id
        assert str(game_id) in str(exc)

    def test_purchase_not_found(self):
        """Carries the invoice id."""
        exc = PurchaseNotFoundError("inv_1")
        assert exc.invoice_id == "inv_1"
        assert "inv_1" in str(exc)

    def test_receipt_not_found(self):
        """Never echoes the code back."""
        assert str(ReceiptNotFoundError()) == "Receipt code not found"

    def test_entitlement_not_found(self):
        """Carries the purchase id."""
        purchase_id = uuid4()
        assert EntitlementNotFoundError(purchase_id).purchase_id == purchase_id


class TestConflictErrors:
    """Tests for state conflicts."""

    def test_invalid_purchase_status(self):
        """Carries purchase id and current status."""
        purchase_id = uuid4()
        exc = InvalidPurchaseStatusError(purchase_id, "EXPIRED")
        assert exc.purchase_id == purchase_id
        assert exc.status == "EXPIRED"
        assert "EXPIRED" in str(exc)

    def test_missing_payout_profile(self):
        """Carries purchase and developer."""
        purchase_id, developer_id = uuid4(), uuid4()
        exc = MissingDeveloperPayoutProfileError(purchase_id, developer_id)
        assert exc.purchase_id == purchase_id
        assert exc.developer_user_id == developer_id
        assert "no payout profile" in str(exc)

    def test_purchase_not_paid(self):
        """Carries the current status."""
        exc = PurchaseNotPaidError(uuid4(), "PENDING")
        assert exc.status == "PENDING"
        assert "not paid" in str(exc)

    def test_claimed_by_other(self):
        """Carries the purchase id."""
        purchase_id = uuid4()
        assert ReceiptClaimedByOtherError(purchase_id).purchase_id == purchase_id

    def test_invalid_transition(self):
        """Names both ends of the rejected edge."""
        exc = InvalidPayoutTransitionError(uuid4(), "SENT", "FAILED")
        assert exc.from_status == "SENT"
        assert exc.to_status == "FAILED"
        assert "SENT" in str(exc) and "FAILED" in str(exc)


class TestInfrastructureErrors:
    """Tests for infrastructure errors."""

    def test_receipt_code_exhausted(self):
        """Carries the attempt count."""
        exc = ReceiptCodeExhaustedError(5)
        assert exc.attempts == 5
        assert "5 attempts" in str(exc)

    def test_write_verification(self):
        """Prefixes the message."""
        exc = WriteVerificationError("row missing")
        assert exc.message == "row missing"
        assert str(exc) == "Write verification failed: row missing"

    def test_database_error(self):
        """Prefixes the message."""
        assert str(DatabaseError("timeout")) == "Database error: timeout"


class TestWebhookErrors:
    """Tests for webhook errors."""

    def test_misconfigured(self):
        """Names the provider."""
        exc = WebhookMisconfiguredError("opennode")
        assert exc.provider == "opennode"
        assert str(exc) == "opennode webhook misconfigured"

    def test_validation(self):
        """Carries the reason verbatim."""
        exc = WebhookValidationError("missing status")
        assert exc.reason == "missing status"

    def test_verification(self):
        """Carries the message."""
        exc = WebhookVerificationError("Unauthorized")
        assert exc.message == "Unauthorized"
        assert "Unauthorized" in str(exc)

    def test_authentication(self):
        """Carries the message."""
        exc = AuthenticationError("session expired")
        assert exc.message == "session expired"
        assert str(exc) == "Authentication failed: session expired"
