# errors.py
from typing import Optional


class GatewayError(Exception):
    """Base for errors that map onto a JSON `{"error": ...}` response."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(GatewayError):
    status_code = 400


class PayloadTooLargeError(GatewayError):
    status_code = 413


class FileProcessingError(GatewayError):
    """Raised by a parser; the extractor turns it into a placeholder string."""


class ConfigurationError(GatewayError):
    pass


class UpstreamError(GatewayError):
    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status
