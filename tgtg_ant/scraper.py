"""Device signatures sent as User-Agent.

The API expects the user agent of a recent Android build of the app, so the
current app version is scraped from its Play Store page and plugged into a
small pool of device strings.
"""

from __future__ import annotations

import json
import logging
import random
import re
from typing import List, Optional

import requests
from bs4 import BeautifulSoup

from .config import APK_VERSION, Account
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)

PLAY_STORE_URL = "https://play.google.com/store/apps/details?id=com.app.tgtg&hl=en&gl=US"

# Used when the Play Store page cannot be parsed.
DEFAULT_APK_VERSION = "24.11.0"

DALVIK_VERSION = "2.1.0"

_DEVICES = (
    "Linux; Android 12; SM-G973F Build/SP1A.210812.016; wv",
    "Linux; Android 12; SM-G975U1 Build/SP1A.210812.016; wv",
    "Linux; Android 13; SAMSUNG SM-G991U1",
)

_DS5_RE = re.compile(r"AF_initDataCallback\(\{key:\s*'ds:5'.*?data:([\s\S]*?), sideChannel:")


@retryable_request
def _get(session: requests.Session, url: str, **kwargs: dict) -> requests.Response:
    """Thin wrapper around session.get with retry policy from utils.retryable_request."""
    return session.get(url, **kwargs)


def parse_apk_version(html: str) -> Optional[str]:
    """Extract the app version from a Play Store details page."""
    soup = BeautifulSoup(html, "html.parser")
    for script in soup.find_all("script"):
        text = script.string or script.get_text() or ""
        if "ds:5" not in text:
            continue
        match = _DS5_RE.search(text)
        if not match:
            continue
        try:
            data = json.loads(match.group(1))
            version = data[1][2][140][0][0][0]
        except (ValueError, IndexError, KeyError, TypeError):
            logger.debug("Play Store ds:5 payload has an unexpected shape")
            return None
        if isinstance(version, str) and version:
            return version
    return None


def fetch_last_apk_version(session: Optional[requests.Session] = None) -> str:
    """Return the latest app version, or DEFAULT_APK_VERSION when it cannot be scraped."""
    if APK_VERSION:
        return APK_VERSION

    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True
    try:
        resp = _get(session, PLAY_STORE_URL, timeout=20)
        version = parse_apk_version(resp.text)
    except (requests.RequestException, HTTPError):
        logger.exception("Failed to fetch the Play Store page")
        version = None
    finally:
        if close_session:
            session.close()

    if not version:
        logger.warning("Could not parse last apk version, using %s", DEFAULT_APK_VERSION)
        return DEFAULT_APK_VERSION
    logger.info("Parsed last apk version %s", version)
    return version


def user_agent_pool(apk_version: str) -> List[str]:
    return [f"TGTG/{apk_version} Dalvik/{DALVIK_VERSION} ({device})" for device in _DEVICES]


def pick_user_agent(account: Account, pool: List[str], rng: Optional[random.Random] = None) -> str:
    """The account's fixed signature if it has one, otherwise a random pool entry."""
    if account.user_agent:
        return account.user_agent
    return (rng or random).choice(pool)


__all__ = [
    "DEFAULT_APK_VERSION",
    "parse_apk_version",
    "fetch_last_apk_version",
    "user_agent_pool",
    "pick_user_agent",
]
