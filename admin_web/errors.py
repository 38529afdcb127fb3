"""
Authentication errors raised by the login call, token renewal and authenticated requests.
Only login (and an explicit refresh) surface these to callers; everything else turns a
lost session into a redirect.
"""
from enum import Enum

import httpx


class AuthErrorKind(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    NETWORK_ERROR = "NETWORK_ERROR"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    UNKNOWN = "UNKNOWN"


class AuthError(Exception):
    """Base auth error with a kind for the login view to branch on."""

    def __init__(self, message: str, kind: AuthErrorKind = AuthErrorKind.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.kind = kind


class LoginError(AuthError):
    """External login call rejected (bad credentials, server or network error)."""

    def __init__(
        self,
        message: str,
        kind: AuthErrorKind = AuthErrorKind.UNKNOWN,
        status_code: int | None = None,
    ):
        super().__init__(message, kind)
        self.status_code = status_code


class RefreshError(AuthError):
    def __init__(self, message: str = "Token renewal failed"):
        super().__init__(message, AuthErrorKind.SESSION_EXPIRED)


class NotAuthenticatedError(AuthError):
    def __init__(self, message: str = "No valid session"):
        super().__init__(message, AuthErrorKind.UNAUTHORIZED)


MESSAGES = {
    AuthErrorKind.UNAUTHORIZED: "Not authorized. Please sign in again.",
    AuthErrorKind.NETWORK_ERROR: "Connection error. Please check your internet connection.",
    AuthErrorKind.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
    AuthErrorKind.UNKNOWN: "An unexpected error occurred. Please try again later.",
}


def describe_auth_error(error: BaseException) -> tuple[str, AuthErrorKind]:
    """Map any error from the auth path to (human-readable message, kind)."""
    if isinstance(error, AuthError):
        kind = error.kind
    elif isinstance(error, httpx.TransportError):
        kind = AuthErrorKind.NETWORK_ERROR
    elif isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 401:
        kind = AuthErrorKind.UNAUTHORIZED
    else:
        kind = AuthErrorKind.UNKNOWN
    return MESSAGES[kind], kind
