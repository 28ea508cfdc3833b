"""Exceptions raised by the order and payment services.

Each error knows the HTTP status it maps to; ``main.py`` renders them as
``{"error": ..., "reason": ..., "retryable": ...}``.
"""


class OrderServiceError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message, reason=None):
        super().__init__(message)
        self.message = message
        self.reason = reason


class NotFoundError(OrderServiceError):
    """Referenced row does not exist or is not visible in the caller's scope."""
    status_code = 404


class ValidationError(OrderServiceError):
    """Input breaks a business rule with a known cause."""
    status_code = 400


class ForbiddenError(OrderServiceError):
    status_code = 403


class AuthenticationError(OrderServiceError):
    status_code = 401


class PaymentSetupError(OrderServiceError):
    """The merchant cannot accept online payments."""
    status_code = 412


class TransientProviderError(OrderServiceError):
    """A payment provider call failed for reasons unrelated to the payment itself.

    Never turned into a failed/cancelled order; the caller may retry.
    """
    status_code = 503
    retryable = True

    def __init__(self, message, provider=None, reason="provider_unavailable"):
        super().__init__(message, reason=reason)
        self.provider = provider
