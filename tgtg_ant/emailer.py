"""Email notifier via SMTP.

Sends the list of stores with available bags to one or more recipients.
Supports STARTTLS (587) or SSL (465). Keep bodies short.
"""

from __future__ import annotations

import html as _html
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Iterable, List

from . import config
from .models import Store

logger = logging.getLogger(__name__)


def _build_bodies(stores: List[Store]) -> tuple[str, str]:
    """Return (plain_text, html) bodies."""
    plain = "".join(f"{store}\n" for store in stores)

    li_html = "".join("<li>{}</li>".format(_html.escape(str(s))) for s in stores)
    html = (
        "<html>"
        "<body>"
        "<h3>Available bags</h3>"
        "<ul>{lis}</ul>"
        "</body>"
        "</html>"
    ).format(lis=li_html)

    return plain, html


def _send(msg: EmailMessage) -> None:
    required = (config.EMAIL_USERNAME, config.EMAIL_PASSWORD, config.EMAIL_TO)
    if not all(required):
        logger.error("Email config incomplete; set EMAIL_USERNAME, EMAIL_PASSWORD, EMAIL_TO")
        return

    host, port = config.EMAIL_SMTP_HOST, int(config.EMAIL_SMTP_PORT)
    try:
        if config.EMAIL_USE_TLS and port == 587:
            with smtplib.SMTP(host, port, timeout=20) as s:
                s.ehlo()
                s.starttls(context=ssl.create_default_context())
                s.login(config.EMAIL_USERNAME, config.EMAIL_PASSWORD)
                s.send_message(msg)
        else:
            with smtplib.SMTP_SSL(host, port, context=ssl.create_default_context(), timeout=20) as s:
                s.login(config.EMAIL_USERNAME, config.EMAIL_PASSWORD)
                s.send_message(msg)
        logger.info("Email sent to %s (subject=%s)", ", ".join(config.EMAIL_TO), msg.get("Subject"))
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to send email")


def build_message(stores: Iterable[Store]) -> EmailMessage:
    stores = list(stores)
    plain, html = _build_bodies(stores)

    msg = EmailMessage()
    msg["Subject"] = config.EMAIL_SUBJECT
    msg["From"] = config.EMAIL_FROM or (config.EMAIL_USERNAME or "")
    msg["To"] = ", ".join(config.EMAIL_TO)
    msg.set_content(plain)
    msg.add_alternative(html, subtype="html")
    return msg


def send_stores(stores: Iterable[Store]) -> None:
    stores = list(stores)
    if not stores or not config.EMAIL_TO:
        return
    _send(build_message(stores))


__all__ = ["build_message", "send_stores"]
