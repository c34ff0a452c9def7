"""
Billing errors and HTTP exception factories.

Services raise the domain errors below; routes translate them to
HTTPException through APIExceptions so status codes stay consistent.

Usage:
    from src.utils.exceptions import APIExceptions, BillingValidationError

    try:
        service.create_checkout(user, price_id)
    except BillingError as e:
        raise APIExceptions.from_billing_error(e) from e
"""

from fastapi import HTTPException


class BillingError(Exception):
    """Base class for every error the billing flow reports to callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationRequired(BillingError):
    status_code = 401


class BillingValidationError(BillingError):
    """Malformed input or a request the caller's state cannot satisfy."""

    status_code = 400


class NoBillingCustomer(BillingValidationError):
    def __init__(self, message: str = "No Stripe customer found"):
        super().__init__(message)


class CheckoutSessionForbidden(BillingError):
    status_code = 403


class CheckoutSessionIncomplete(BillingError):
    """The checkout session exists but has not produced a subscription yet."""

    status_code = 409

    def __init__(self, message: str = "No subscription on session yet"):
        super().__init__(message)


class SignatureVerificationError(BillingError):
    status_code = 400


class UpstreamProviderError(BillingError):
    """The payment provider rejected or failed a call."""

    status_code = 500

    def __init__(self, message: str, *, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class SubscriptionStoreError(BillingError):
    """A read or write against the subscriptions table failed."""

    status_code = 500


class ReconciliationDriftError(BillingError):
    """
    The local record did not reach the provider's state in time.

    Reported by the sync poller as a timeout outcome, never sent as an HTTP error.
    """

    status_code = 504


class APIExceptions:
    """Factory class for creating standardized HTTP exceptions."""

    @staticmethod
    def unauthorized(detail: str = "Unauthorized") -> HTTPException:
        """401 Unauthorized - Authentication failed."""
        return HTTPException(status_code=401, detail=detail)

    @staticmethod
    def bad_request(detail: str = "Bad request") -> HTTPException:
        """400 Bad Request - Invalid input."""
        return HTTPException(status_code=400, detail=detail)

    @staticmethod
    def forbidden(detail: str = "Access forbidden") -> HTTPException:
        """403 Forbidden - Caller does not own the resource."""
        return HTTPException(status_code=403, detail=detail)

    @staticmethod
    def conflict(detail: str = "Resource not ready") -> HTTPException:
        """409 Conflict - Resource exists but is not in the required state yet."""
        return HTTPException(status_code=409, detail=detail)

    @staticmethod
    def internal_error(operation: str = "operation") -> HTTPException:
        """
        500 Internal Server Error.

        Args:
            operation: Description of the operation that failed

        Returns:
            HTTPException with status 500
        """
        return HTTPException(status_code=500, detail=f"Failed to {operation}")

    @classmethod
    def from_billing_error(cls, error: BillingError) -> HTTPException:
        """Map a billing domain error to its HTTP status, keeping the message."""
        factory = {
            401: cls.unauthorized,
            400: cls.bad_request,
            403: cls.forbidden,
            409: cls.conflict,
        }.get(error.status_code)
        if factory is not None:
            return factory(error.message)
        # Provider failures keep their message so callers see why Stripe refused
        return HTTPException(status_code=error.status_code, detail=error.message)
