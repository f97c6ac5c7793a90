"""Error taxonomy for token registration and notification delivery."""


class PushlinkError(Exception):
    """Base class for all service errors."""


class ValidationError(PushlinkError):
    """Malformed input. The call is rejected and no state changes."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class TransientDeliveryError(PushlinkError):
    """Network, timeout or rate-limit failure. Retryable by the caller."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentDeliveryError(PushlinkError):
    """Provider rejected the request for good (invalid/expired address, bad request)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
