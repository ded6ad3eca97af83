"""Error taxonomy for the checkout pipeline.

Each error carries the HTTP status it maps to; the handlers in
``storefront.main`` render them as ``{"success": false, "message": ...}``.
"""


class CheckoutError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(CheckoutError):
    """Missing or malformed request fields."""
    status_code = 400


class AuthError(CheckoutError):
    status_code = 401


class NotFoundError(CheckoutError):
    status_code = 404


class ConflictError(CheckoutError):
    status_code = 409


class UpstreamError(CheckoutError):
    """A payment gateway or carrier call failed."""
    status_code = 500


class InternalError(CheckoutError):
    status_code = 500
