"""
Billing exceptions.

Each exception carries the HTTP status the API layer answers with, so the
taxonomy is decided where the error is raised rather than where it is caught.
"""

from typing import Any


class BillingError(Exception):
    """Base exception for all billing errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, details={self.details})"


class BillingConfigError(BillingError):
    """Payment provider credentials or settings are missing or invalid."""

    status_code = 500


class BillingValidationError(BillingError):
    """A required request field is missing or malformed."""

    status_code = 400


class BillingNotFoundError(BillingError):
    """The referenced session, subscription or customer does not exist."""

    status_code = 404


class MetricsAggregationError(BillingError):
    """A dashboard pagination pass failed; no partial metrics are returned."""

    status_code = 500


class StripeError(BillingError):
    """Base exception for errors reported by (or while reaching) Stripe."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
        http_status: int | None = None,
    ):
        super().__init__(message, details=details, original_error=original_error)
        if http_status is None and original_error is not None:
            http_status = getattr(original_error, "http_status", None)
        self.http_status = http_status

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.http_status and 400 <= self.http_status < 500:
            return self.http_status
        return 500

    @property
    def is_client_error(self) -> bool:
        return self.status_code < 500


class StripeCustomerError(StripeError):
    """Customer operation failed (search, list, create, get, update)."""

    pass


class StripePaymentError(StripeError):
    """Checkout or billing portal operation failed."""

    pass


class StripeSubscriptionError(StripeError):
    """Subscription operation failed (list, retrieve, update, cancel)."""

    pass


class StripeInvoiceError(StripeError):
    """Invoice listing failed."""

    pass


class StripeConnectionError(StripeError):
    """Unable to reach the Stripe API, or the call timed out."""

    retryable = True
