# src/pharmacy_webapp/errors.py

from typing import Optional

import httpx

DEFAULT_FORBIDDEN_MESSAGE = "You do not have permission to perform this action"


class ApiError(Exception):
    """Base class for every failure surfaced by the API client."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[httpx.Response] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(message)


class AuthExpiredError(ApiError):
    """401 whose message says the token is expired, invalid or missing."""


class AuthInvalidError(ApiError):
    """401 that a token refresh cannot fix. The session has been terminated."""


class ForbiddenError(ApiError):
    """403: the user is signed in but lacks the role for this action."""

    def __init__(self, message: str = DEFAULT_FORBIDDEN_MESSAGE, response: Optional[httpx.Response] = None):
        super().__init__(message or DEFAULT_FORBIDDEN_MESSAGE, status_code=403, response=response)


class RefreshFailedError(ApiError):
    """The refresh call itself failed (network error or unsuccessful response)."""


class NetworkError(ApiError):
    """The request never produced a response."""

    def __init__(self, cause: httpx.RequestError):
        self.cause = cause
        super().__init__(f"Network error: {cause}")


class HttpError(ApiError):
    """Any other non-2xx response, passed through for the caller to handle."""


class EnvelopeError(ApiError):
    """A 2xx response whose envelope reports `success: false`."""
