"""
Error taxonomy for donation operations.

Every failed create/accept/complete surfaces as one of these; views map
``status`` onto the HTTP response and ``code`` onto the error body.
"""


class DonationError(Exception):
    code = "donation_error"
    status = 500
    retryable = False

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class ValidationError(DonationError):
    """Malformed or missing input. Surfaced verbatim, never retried."""

    code = "validation_error"
    status = 400

    def __init__(self, detail: str = "", fields=None):
        super().__init__(detail)
        self.fields = dict(fields or {})


class AuthenticationError(DonationError):
    code = "unauthenticated"
    status = 401


class NotFoundError(DonationError):
    code = "not_found"
    status = 404


class ConflictError(DonationError):
    """Lost an optimistic race: the record changed between read and write."""

    code = "conflict"
    status = 409


class InvalidTransitionError(DonationError):
    """Role/state pair that can never succeed. Permanent rejection."""

    code = "invalid_transition"
    status = 422


class UnavailableError(DonationError):
    """Ledger or feed did not answer in time. Safe to retry with backoff."""

    code = "unavailable"
    status = 503
    retryable = True
