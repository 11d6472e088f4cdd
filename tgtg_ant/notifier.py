"""Discord webhook notifier.

Sends the list of stores with available bags to a Discord channel via
webhook.  Dispatches to the email sender when SEND_ACTION=email.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import requests

from . import config
from . import emailer
from .models import Store
from .utils import get_http_session, retryable_request

logger = logging.getLogger(__name__)

# Discord caps an embed description at 4096 characters.
_MAX_DESCRIPTION = 4000


@retryable_request
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


def format_stores(stores: Iterable[Store]) -> str:
    """One line per store, as sent in every channel."""
    return "".join(f"{store}\n" for store in stores)


def _build_embed(stores: List[Store]) -> dict:
    lines: list[str] = []
    for store in stores:
        line = f"**{store.name or store.id}** rated {store.rating:g}, price {store.price}"
        if store.available_bags:
            line += f" ({store.available_bags} left)"
        lines.append(line)

    description = "\n".join(lines)
    if len(description) > _MAX_DESCRIPTION:
        description = description[: _MAX_DESCRIPTION - 1] + "…"

    return {
        "title": f"Available bags in {len(stores)} store(s)",
        "description": description,
    }


def send_stores_discord(
    stores: Iterable[Store],
    webhook_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> None:
    if webhook_url is None:
        webhook_url = config.DISCORD_WEBHOOK_URL
    if not webhook_url:
        logger.error("Discord webhook URL is not configured. Cannot send notification.")
        return

    stores = list(stores)
    if not stores:
        return

    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True

    try:
        payload = {"embeds": [_build_embed(stores)]}
        logger.info("Sending Discord notification for %d store(s)", len(stores))
        _post(session, webhook_url, json=payload, timeout=20)
    finally:
        if close_session:
            session.close()


def send_stores(stores: Iterable[Store], action: Optional[str] = None) -> None:
    """Send the store list through the configured channel (SEND_ACTION)."""
    action = config.SEND_ACTION if action is None else action
    if action == "discord":
        send_stores_discord(stores)
    elif action == "email":
        emailer.send_stores(stores)
    elif action:
        logger.error("Unknown send action %r, notification dropped", action)


__all__ = ["format_stores", "send_stores", "send_stores_discord"]
