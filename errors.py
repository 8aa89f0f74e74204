class MpesaError(Exception):
    """Base error for the processor. Handlers turn it into a JSON response."""

    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(MpesaError):
    """Required request fields are missing or malformed."""

    status_code = 400


class ConfigError(MpesaError):
    """Server-side credentials are not configured."""


class UpstreamError(MpesaError):
    """Daraja could not be reached or answered with an error."""
