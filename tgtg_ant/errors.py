"""Exception hierarchy for the API client.

Everything the client raises on purpose derives from :class:`TgtgError`.
Network failures are left as ``requests.RequestException`` and bubble up
to the caller untouched.
"""

from __future__ import annotations

from typing import Optional


class TgtgError(Exception):
    """Base exception for client errors."""


class UnsupportedEncoding(TgtgError):
    """Raised when a response uses a content-encoding we cannot undo."""

    def __init__(self, token: str) -> None:
        super().__init__(f"unsupported content-encoding {token!r}")
        self.token = token


class AuthenticationError(TgtgError):
    """Permanent authentication failure; retrying will not help."""


class UnknownAccountError(AuthenticationError):
    """The email is not associated with an account (login state TERMS)."""


class UnexpectedLoginStateError(AuthenticationError):
    """The login endpoint answered with a state we do not know."""


class LoginTimeoutError(AuthenticationError):
    """The verification email was not approved in time."""


class TokenRefreshError(AuthenticationError):
    """Exchanging the refresh token failed."""


class RepeatedUnauthorizedError(AuthenticationError):
    """A fresh login was still answered with HTTP 401."""


class HTTPStatusError(TgtgError):
    """Raised for any non-2xx status other than 401."""

    def __init__(self, status_code: int, body: bytes = b"", path: str = "") -> None:
        super().__init__(f"http status {status_code} received for {path or 'request'}")
        self.status_code = status_code
        self.body = body
        self.path = path


class ResponseParseError(TgtgError):
    """A response body could not be decoded into the expected shape."""


class OrderError(TgtgError):
    """An order could not be reserved."""


class Cancelled(TgtgError):
    """A stop was requested while the client was waiting."""


# ---- Internal pipeline signals ----------------------------------------------

class Unauthorized(TgtgError):
    """HTTP 401 from a single request. Consumed by the query pipeline."""


class VerificationChallenge(TgtgError):
    """The remote service asked for a human verification (captcha)."""

    def __init__(self, url: str, account: Optional[str] = None) -> None:
        super().__init__(f"verification challenge {url}")
        self.url = url
        self.account = account


__all__ = [
    "TgtgError",
    "UnsupportedEncoding",
    "AuthenticationError",
    "UnknownAccountError",
    "UnexpectedLoginStateError",
    "LoginTimeoutError",
    "TokenRefreshError",
    "RepeatedUnauthorizedError",
    "HTTPStatusError",
    "ResponseParseError",
    "OrderError",
    "Cancelled",
    "Unauthorized",
    "VerificationChallenge",
]
