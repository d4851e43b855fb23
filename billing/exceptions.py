# src/billing/exceptions.py
from fastapi import HTTPException, status


class BillingError(HTTPException):
    """Base class for billing failures surfaced to API callers."""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Billing request failed"

    def __init__(self, detail: str = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class SignatureInvalid(BillingError):
    """Webhook payload could not be authenticated."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid webhook signature"


class NotFoundFailure(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class ConflictFailure(BillingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Request conflicts with current billing state"


class UpstreamFailure(BillingError):
    """Billing provider failed or answered with an unexpected shape."""
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Billing provider request failed"


class PersistenceFailure(BillingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Could not save billing data"
