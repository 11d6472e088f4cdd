"""Authentication state for one account.

A session moves from unauthenticated, through waiting for the user to
approve the login email, to authenticated.  Once authenticated two windows
expire independently: the login window (how long a login can be reused
after a restart) and the token window (when the access token has to be
refreshed).  Every successful login or refresh is persisted as a JSON
snapshot so a restart does not require a new email approval.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import Account, ClientConfig
from .errors import (HTTPStatusError, LoginTimeoutError, ResponseParseError,
                     TokenRefreshError, Unauthorized, UnexpectedLoginStateError,
                     UnknownAccountError)
from .rotation import Sleep, stoppable_sleep

logger = logging.getLogger(__name__)


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _format_time(value: Optional[_dt.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_time(value: Optional[str]) -> Optional[_dt.datetime]:
    if not value:
        return None
    parsed = _dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed


def _json_object(body: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(body)
    except ValueError as e:
        raise ResponseParseError(f"expected a JSON object, got {body[:200]!r}") from e
    if not isinstance(data, dict):
        raise ResponseParseError(f"expected a JSON object, got {body[:200]!r}")
    return data


@dataclass
class Session:
    """Mutable per-account authentication state."""

    access_token: str = ""
    refresh_token: str = ""
    cookies: List[str] = field(default_factory=list)
    user_id: str = ""
    user_agent: str = ""
    login_time: Optional[_dt.datetime] = None
    token_refresh_time: Optional[_dt.datetime] = None

    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.refresh_token and self.user_id)

    def reset(self) -> None:
        """Forget credentials and cookies. The device signature is kept."""
        self.access_token = ""
        self.refresh_token = ""
        self.cookies = []
        self.user_id = ""
        self.login_time = None
        self.token_refresh_time = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "cookie": list(self.cookies),
            "userId": self.user_id,
            "userAgent": self.user_agent,
            "lastLogInRefreshedTime": _format_time(self.login_time),
            "lastTokenRefreshedTime": _format_time(self.token_refresh_time),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Session":
        if not isinstance(data, dict):
            raise ValueError("session snapshot must be a JSON object")
        cookies = data.get("cookie") or []
        if not isinstance(cookies, list):
            raise ValueError("cookie must be a list")
        return cls(
            access_token=str(data.get("accessToken") or ""),
            refresh_token=str(data.get("refreshToken") or ""),
            cookies=[str(c) for c in cookies],
            user_id=str(data.get("userId") or ""),
            user_agent=str(data.get("userAgent") or ""),
            login_time=_parse_time(data.get("lastLogInRefreshedTime")),
            token_refresh_time=_parse_time(data.get("lastTokenRefreshedTime")),
        )


class SnapshotStore:
    """One JSON file per account under ``directory``."""

    def __init__(self, directory, *, logger: Optional[logging.Logger] = None) -> None:
        self.directory = Path(directory)
        self._logger = logger or logging.getLogger(__name__)

    def path_for(self, email: str) -> Path:
        return self.directory / f"tgtg_client.{email}.latest.json"

    def save(self, email: str, session: Session) -> Path:
        """Write the snapshot atomically (temporary file + rename)."""
        path = self.path_for(email)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(session.to_json(), fh, indent=1)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self._logger.info("Wrote authorization data to %s", path)
        return path

    def load(self, email: str) -> Optional[Session]:
        """Return the stored session, or None when absent or unreadable.

        An unreadable snapshot is deleted so it is not read again.
        """
        path = self.path_for(email)
        if not path.exists():
            return None
        try:
            session = Session.from_json(json.loads(path.read_text(encoding="utf-8")))
            if not session.is_authenticated():
                raise ValueError("snapshot is missing credentials")
        except (OSError, ValueError, TypeError) as e:
            self._logger.warning("Discarding unreadable session snapshot %s: %s", path, e)
            self.delete(email)
            return None
        self._logger.info("Read authorization data from %s", path)
        return session

    def delete(self, email: str) -> None:
        path = self.path_for(email)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError:
            self._logger.exception("Failed to delete %s", path)
            return
        self._logger.info("Deleted file %s", path)


# send(path, payload, allow_sleep) -> QueryResult
Sender = Callable[[str, Any, bool], Any]


class SessionManager:
    """Keeps one account authenticated against the API."""

    def __init__(
        self,
        account: Account,
        config: ClientConfig,
        send: Sender,
        store: SnapshotStore,
        *,
        user_agent: str = "",
        now: Callable[[], _dt.datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Sleep] = None,
        stop: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.account = account
        self.config = config
        self.session = Session(user_agent=user_agent)
        self._send = send
        self._store = store
        self._now = now
        self._clock = clock
        self._sleep = stoppable_sleep(stop or threading.Event(), sleep)
        self._logger = logger or logging.getLogger(__name__)

    @property
    def email(self) -> str:
        return self.account.email

    # ---- Validity ------------------------------------------------------------

    def is_authenticated(self) -> bool:
        return self.session.is_authenticated()

    def is_login_valid(self, session: Optional[Session] = None) -> bool:
        session = session or self.session
        if session.login_time is None:
            return False
        return self._now() < session.login_time + self.config.login_validity_duration

    def is_token_valid(self, session: Optional[Session] = None) -> bool:
        session = session or self.session
        if session.token_refresh_time is None:
            return False
        return self._now() < session.token_refresh_time + self.config.token_validity_duration

    # ---- Entry point ---------------------------------------------------------

    def ensure_valid(self) -> None:
        """Make sure the next request can be sent with valid credentials."""
        if self.is_authenticated():
            if not self.is_token_valid():
                self.refresh()
            return

        snapshot = self._store.load(self.email)
        if snapshot is not None:
            if self.is_login_valid(snapshot):
                self._adopt(snapshot)
                if not self.is_token_valid():
                    self.refresh()
                return
            self._logger.info("Authorization data of %s has expired", self.email)
            self._store.delete(self.email)
            self.session.reset()

        self.login()

    def _adopt(self, snapshot: Session) -> None:
        user_agent = snapshot.user_agent or self.session.user_agent
        self.session = snapshot
        self.session.user_agent = user_agent

    # ---- Token refresh -------------------------------------------------------

    def refresh(self) -> None:
        """Exchange the refresh token for a new token pair. Failures are fatal."""
        payload = {"refresh_token": self.session.refresh_token}
        try:
            result = self._send(self.config.endpoints.refresh_token, payload, True)
            self._set_tokens(result.body)
        except (Unauthorized, HTTPStatusError, ResponseParseError) as e:
            raise TokenRefreshError(f"token refresh failed for {self.email}: {e}") from e
        self._logger.info("Refreshed token for %s", self.email)
        self.save()

    def _set_tokens(self, body: bytes) -> None:
        data = _json_object(body)
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            raise ResponseParseError("response carries no access_token/refresh_token")
        self.session.access_token = str(access_token)
        self.session.refresh_token = str(refresh_token)
        self.session.token_refresh_time = self._now()

    # ---- Login ---------------------------------------------------------------

    def login(self) -> None:
        """Log in by email and wait for the user to approve the login link."""
        self._logger.info("Log in for %s...", self.email)
        self.session.reset()

        credentials = {"device_type": self.config.device_type, "email": self.email}
        result = self._send(self.config.endpoints.auth_by_email, credentials, True)
        data = _json_object(result.body)

        state = data.get("state")
        if state == "TERMS":
            raise UnknownAccountError(
                f"email {self.email} does not seem to be associated with an account, "
                "retry with another email"
            )
        if state != "WAIT":
            raise UnexpectedLoginStateError(f"unexpected state {state!r} in log in response {data}")

        polling_id = data.get("polling_id")
        if not polling_id:
            raise UnexpectedLoginStateError(f"expected field 'polling_id' in response {data}")

        self._wait_for_approval({**credentials, "request_polling_id": polling_id})
        self._logger.info("Logged in successfully as %s", self.email)

    def _wait_for_approval(self, payload: Dict[str, Any]) -> None:
        timeout = self.config.login_email_validation_timeout
        period = self.config.login_email_validation_requests_period.total_seconds()
        deadline = self._clock() + timeout.total_seconds()
        self._logger.warning(
            "Check %s inbox and validate the log in email link before %s",
            self.email,
            (self._now() + timeout).isoformat(timespec="seconds"),
        )

        while True:
            result = self._send(self.config.endpoints.auth_by_polling_id, payload, True)
            if result.body and result.body.strip():
                self._set_tokens(result.body)
                self.session.login_time = self._now()
                self._resolve_user_id()
                self.save()
                return
            if self._clock() + period >= deadline:
                raise LoginTimeoutError(f"log in email of {self.email} was not validated in time")
            self._sleep(period)

    def _resolve_user_id(self) -> None:
        result = self._send(self.config.endpoints.user_information, None, False)
        user_id = _json_object(result.body).get("user_id")
        if not user_id:
            raise ResponseParseError("user information carries no user_id")
        self.session.user_id = str(user_id)

    # ---- Persistence ---------------------------------------------------------

    def invalidate(self) -> None:
        """Drop the session and its snapshot so the next call logs in again."""
        self._store.delete(self.email)
        self.session.reset()

    def save(self) -> None:
        try:
            self._store.save(self.email, self.session)
        except OSError:
            self._logger.exception("Failed to write authorization data of %s", self.email)

    def flush(self) -> None:
        if self.is_authenticated():
            self.save()


__all__ = ["Session", "SnapshotStore", "SessionManager", "utcnow"]
