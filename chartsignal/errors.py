"""
Error taxonomy shared by the request handlers.

Each error carries the HTTP status it maps to. main.py registers a handler
that renders them as {"error": ..., "message": ...}.
"""

from typing import Any, Dict, Optional


class ChartSignalError(Exception):
    status_code = 500
    default_error = "Internal server error"

    def __init__(
        self,
        error: Optional[str] = None,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
    ):
        self.error = error or self.default_error
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.error if not message else f"{self.error}: {message}")

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.message:
            body["message"] = self.message
        return body


class ValidationError(ChartSignalError):
    """A required request field is missing or malformed."""

    status_code = 400
    default_error = "Invalid request"


class AuthenticationError(ChartSignalError):
    status_code = 401
    default_error = "Not authenticated"


class NotFoundError(ChartSignalError):
    status_code = 404
    default_error = "Not found"


class ConfigurationError(ChartSignalError):
    """A credential the operation needs is not configured."""

    status_code = 500
    default_error = "Service not configured"


class UpstreamError(ChartSignalError):
    """A third-party call failed or answered with a non-success status.

    The upstream status is passed through when it is an error status.
    """

    status_code = 500
    default_error = "Upstream service error"

    def __init__(
        self,
        error: Optional[str] = None,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
    ):
        if status_code is not None and not 400 <= status_code <= 599:
            status_code = 500
        super().__init__(error, message, status_code=status_code)


class InsufficientResource(ChartSignalError):
    """Credit or wallet balance shortfall."""

    status_code = 402
    default_error = "Insufficient credits"
