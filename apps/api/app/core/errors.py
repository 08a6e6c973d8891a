class ConfigurationMissing(RuntimeError):
    """A required process-wide setting is absent."""


class AuthenticationError(Exception):
    """Base class for credentials that must be treated as unauthenticated."""


class InvalidToken(AuthenticationError):
    pass


class ExpiredToken(AuthenticationError):
    pass


class RevokedToken(AuthenticationError):
    pass


class RefreshTokenNotFound(InvalidToken):
    pass


class RefreshTokenExpired(ExpiredToken):
    pass


class InvalidSubscription(ValueError):
    """Push registration payload is missing or carries malformed keys."""


class DeliveryFailure(Exception):
    def __init__(self, detail: str, status_code=None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class PermanentDeliveryFailure(DeliveryFailure):
    """Gateway reports the endpoint as gone; it must be retired."""


class TransientDeliveryFailure(DeliveryFailure):
    """Timeout, rate limit or gateway error; the endpoint stays active."""
