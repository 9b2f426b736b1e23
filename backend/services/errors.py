"""Error types raised by the subscription lifecycle services.

Each error carries a stable ``error_code`` (returned to API callers) and the
HTTP status the route layer should answer with.
"""
from typing import Any, Dict, Optional


class SubscriptionError(Exception):
    """Base class for all subscription lifecycle errors."""

    status_code = 400

    def __init__(
        self,
        message: str,
        error_code: str = "SUBSCRIPTION_ERROR",
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(SubscriptionError):
    """Unknown plan/addon, invalid proration mode and similar. Raised before any external call."""

    status_code = 400


class NotFound(SubscriptionError):
    status_code = 404


class Conflict(SubscriptionError):
    status_code = 409


class ConcurrentUpdateError(Conflict):
    """The record changed between load and save (version mismatch)."""

    def __init__(self, user_id: str, expected_version: int):
        super().__init__(
            f"Subscription for user {user_id} was modified concurrently",
            error_code="CONCURRENT_UPDATE",
            details={"user_id": user_id, "expected_version": expected_version},
        )
        self.user_id = user_id
        self.expected_version = expected_version


class BillingProviderError(SubscriptionError):
    """A call to the payment processor failed."""

    status_code = 502

    def __init__(self, message: str, operation: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="BILLING_PROVIDER_ERROR", details=details)
        self.operation = operation


class EntitlementServiceError(SubscriptionError):
    """A call to the entitlement (SPACE) service failed."""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, error_code="ENTITLEMENT_SERVICE_ERROR", details={"status": status} if status else None)
        self.status = status


class WebhookVerificationError(SubscriptionError):
    """Webhook payload could not be verified or parsed."""

    def __init__(self, message: str):
        super().__init__(message, error_code="INVALID_WEBHOOK")
