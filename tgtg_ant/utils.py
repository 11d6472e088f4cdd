"""Helper utilities.

This module centralises common helper functions such as creating a
configured HTTP session and applying retry policies to network calls.
"""

from __future__ import annotations

import logging
import webbrowser
from http.cookiejar import DefaultCookiePolicy
from typing import Any, Callable, Dict

import requests
from requests import Response
from tenacity import (after_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)


logger = logging.getLogger(__name__)


def get_http_session() -> requests.Session:
    """Return a new HTTP session with sensible defaults.

    Caller is responsible for closing the session or letting it be
    garbage collected.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                          "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
            "Accept": "text/html,application/json;q=0.9,*/*;q=0.8",
        }
    )
    return session


def get_api_session() -> requests.Session:
    """Return a session for the mobile API.

    Cookies are tracked per account by the client and sent explicitly, so
    the session's own cookie jar accepts nothing.
    """
    session = requests.Session()
    session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
    return session


def open_browser(url: str) -> bool:
    """Open ``url`` for the operator. Returns False when no browser is available."""
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error:
        logger.exception("Failed to open %s", url)
        return False
    if not opened:
        logger.warning("No browser available, open %s manually", url)
    return opened


class HTTPError(Exception):
    """Raised when an HTTP request fails after retries."""


def _raise_for_status(resp: Response) -> None:
    try:
        resp.raise_for_status()
    except requests.RequestException as e:
        raise HTTPError(str(e)) from e


def retryable_request(method: Callable[[requests.Session, str, Dict[str, Any]], Response]) -> Callable[..., Response]:
    """Decorator factory to apply retry logic to HTTP calls.

    The decorated function must accept a `requests.Session` as its first
    argument, followed by URL and optional kwargs, and return a
    `requests.Response`.  Retries are attempted for network errors or
    HTTP errors (status >= 500).  A maximum of 5 attempts are made with
    exponential back‑off between 1 and 10 seconds.

    Only used for side channels (webhooks, Play Store); calls to the
    mobile API are never retried implicitly.
    """

    @retry(
        reraise=True,
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=(
            retry_if_exception_type(requests.RequestException)
            | retry_if_exception_type(HTTPError)
        ),
        after=after_log(logger, logging.WARNING),
    )
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        response = method(session, url, **kwargs)
        # If server returned >= 500, raise to trigger retry
        if response.status_code >= 500:
            raise HTTPError(f"Server returned status {response.status_code}")
        _raise_for_status(response)
        return response

    return wrapper


__all__ = ["get_http_session", "get_api_session", "open_browser", "retryable_request", "HTTPError"]
