class PaymentError(Exception):
    """Base for errors surfaced by the payment API.

    `public_message` is what the caller sees; `str(exc)` may carry more detail
    and is only written to the server log.
    """

    status_code = 500
    default_public_message = "Internal server error"

    def __init__(self, message: str = "", public_message: str | None = None):
        super().__init__(message or self.default_public_message)
        self.public_message = public_message or message or self.default_public_message


class ValidationError(PaymentError):
    status_code = 400
    default_public_message = "Invalid request"


class NotFoundError(PaymentError):
    status_code = 404
    default_public_message = "Not found"


class ProviderError(PaymentError):
    status_code = 500
    default_public_message = "Payment provider error. Please try again later."

    def __init__(self, message: str = "", public_message: str | None = None):
        # Upstream details stay in the log.
        super().__init__(message, public_message or self.default_public_message)


class ProviderConfigurationError(ProviderError):
    default_public_message = "Payment processing not configured"


class ProviderDeclinedError(ProviderError):
    status_code = 400
    default_public_message = "Payment was declined"

    def __init__(self, message: str = ""):
        PaymentError.__init__(self, message, message or self.default_public_message)


class AuthenticationError(PaymentError):
    status_code = 400
    default_public_message = "Invalid webhook signature"

    def __init__(self, message: str = ""):
        super().__init__(message, self.default_public_message)


class StoreError(PaymentError):
    status_code = 500
    default_public_message = "Internal server error"

    def __init__(self, message: str = ""):
        super().__init__(message, self.default_public_message)
