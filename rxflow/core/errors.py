"""rxflow — Error kinds surfaced by the fulfillment core.

Every rejected operation raises one of these. The API layer maps them onto the
standard error envelope; see ``rxflow.main``.
"""


class FulfillmentError(Exception):
    """Base error: stable ``code`` plus a human-readable message."""

    code = "FULFILLMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(FulfillmentError):
    """Bad input shape (missing reason, invalid amount, unknown line status...)."""

    code = "VALIDATION_ERROR"
    status_code = 422


class AuthorizationError(FulfillmentError):
    """Role, ownership or anti-forgery check failed."""

    code = "AUTHORIZATION_ERROR"
    status_code = 403


class NotFoundError(FulfillmentError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(FulfillmentError):
    """Rejected after a consistency check (inactive status key, refund over balance)."""

    code = "CONFLICT"
    status_code = 409


class ExternalServiceError(FulfillmentError):
    """Payment processor, audit sink or data-store failure. Always an incident."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502


class RoutingFailed(ExternalServiceError):
    """Pharmacy data could not be fetched; distinct from "no pharmacy matched"."""

    code = "ROUTING_FAILED"
