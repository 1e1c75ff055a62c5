# errors.py


class PromoServiceError(Exception):
    """Base error; carries the HTTP status and the message shown to callers."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidInput(PromoServiceError):
    status_code = 400
    message = "Invalid input"


class DuplicateCode(PromoServiceError):
    status_code = 409
    message = "Promo code already exists"


class NotFound(PromoServiceError):
    status_code = 404
    message = "Not found"


class CodeNotFound(NotFound):
    message = "Promo code not found"


class TokenNotFound(NotFound):
    message = "Invalid token"


class AlreadyUsed(PromoServiceError):
    status_code = 400
    message = "Token has already been used"


class StoreUnavailable(PromoServiceError):
    # Raised by the durable store; callers fall back to the overlay for writes.
    message = "Store unavailable"


class TokenCollision(PromoServiceError):
    message = "Token already exists"


class StoreReadOnly(StoreUnavailable):
    # The durable store is configured unwritable; nothing was attempted.
    message = "Durable store is read-only"
