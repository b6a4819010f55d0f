class StorefrontError(Exception):
    """Base error; ``status`` is the HTTP status the server answers with."""

    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    status = 400


class AuthError(StorefrontError):
    status = 401


class SignatureError(StorefrontError):
    status = 401


class NotFoundError(StorefrontError):
    status = 404


class ConflictError(StorefrontError):
    status = 409


class ConfigurationError(StorefrontError):
    status = 500


class PersistenceError(StorefrontError):
    status = 500


class UpstreamProviderError(StorefrontError):
    status = 502


class ProviderRequestError(Exception):
    """Raised by the hosted-invoice client when the provider call fails."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.message = message
        self.status = status
