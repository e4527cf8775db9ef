"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class MarketplaceError(Exception):
    """Base exception for all purchase, entitlement and payout errors."""

    pass


# ============================================================================
# Client input errors
# ============================================================================


class InvalidAmountError(MarketplaceError, ValueError):
    """Raised when an amount is not an exact non-negative integer."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidReceiptCodeError(MarketplaceError, ValueError):
    """Raised when a receipt code is malformed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Lookup errors
# ============================================================================


class GameNotFoundError(MarketplaceError):
    """Raised when a purchase references an unknown game."""

    def __init__(self, game_id: UUID) -> None:
        self.game_id = game_id
        super().__init__(f"Game not found: {game_id}")


class PurchaseNotFoundError(MarketplaceError):
    """Raised when no purchase matches an invoice id."""

    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Purchase not found for invoice {invoice_id}")


class ReceiptNotFoundError(MarketplaceError):
    """Raised when no purchase matches a guest receipt code."""

    def __init__(self) -> None:
        super().__init__("Receipt code not found")


class EntitlementNotFoundError(MarketplaceError):
    """Raised when a purchase has no entitlement."""

    def __init__(self, purchase_id: UUID) -> None:
        self.purchase_id = purchase_id
        super().__init__(f"Entitlement not found for purchase {purchase_id}")


# ============================================================================
# State conflicts
# ============================================================================


class InvalidPurchaseStatusError(MarketplaceError):
    """Raised when a purchase is neither PENDING nor PAID on payment notification."""

    def __init__(self, purchase_id: UUID, status: str) -> None:
        self.purchase_id = purchase_id
        self.status = status
        super().__init__(f"Purchase {purchase_id} not in PENDING state (status={status})")


class MissingDeveloperPayoutProfileError(MarketplaceError):
    """Raised when the game's developer has no payout destination yet."""

    def __init__(self, purchase_id: UUID, developer_user_id: UUID) -> None:
        self.purchase_id = purchase_id
        self.developer_user_id = developer_user_id
        super().__init__(
            f"Developer {developer_user_id} has no payout profile (purchase {purchase_id})"
        )


class PurchaseNotPaidError(MarketplaceError):
    """Raised when a guest receipt is claimed before payment."""

    def __init__(self, purchase_id: UUID, status: str) -> None:
        self.purchase_id = purchase_id
        self.status = status
        super().__init__(f"Purchase {purchase_id} is not paid yet (status={status})")


class ReceiptClaimedByOtherError(MarketplaceError):
    """Raised when a guest receipt was already claimed by another user."""

    def __init__(self, purchase_id: UUID) -> None:
        self.purchase_id = purchase_id
        super().__init__(f"Receipt for purchase {purchase_id} already claimed")


class InvalidPayoutTransitionError(MarketplaceError):
    """Raised when a payout status change is not allowed by the state machine."""

    def __init__(self, payout_id: UUID, from_status: str, to_status: str) -> None:
        self.payout_id = payout_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Payout {payout_id} cannot move from {from_status} to {to_status}")


# ============================================================================
# Infrastructure errors
# ============================================================================


class ReceiptCodeExhaustedError(MarketplaceError):
    """Raised when no unique guest receipt code could be allocated."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Could not allocate a unique receipt code after {attempts} attempts")


class WriteVerificationError(MarketplaceError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DatabaseError(MarketplaceError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


# ============================================================================
# Webhook errors
# ============================================================================


class WebhookMisconfiguredError(MarketplaceError):
    """Raised when the webhook shared secret is not configured."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"{provider} webhook misconfigured")


class WebhookValidationError(MarketplaceError):
    """Raised when a webhook payload is missing required fields."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Webhook validation failed: {reason}")


class WebhookVerificationError(MarketplaceError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class AuthenticationError(MarketplaceError):
    """Raised when a bearer session is missing, unknown or expired."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
