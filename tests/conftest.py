"""Shared test helpers: a fake clock and a fake HTTP session."""

from __future__ import annotations

import datetime as _dt
import io
import json
from collections import defaultdict, deque
from pathlib import Path
from types import SimpleNamespace

import pytest
import requests
from requests.structures import CaseInsensitiveDict
from urllib3.response import HTTPResponse

from tgtg_ant.config import Account, ClientConfig
from tgtg_ant.session import Session, SnapshotStore

BASE_URL = "https://api.test/api/"
CAPTCHA_URL = "https://geo.captcha-delivery.com/captcha/?initialCid=abc"


class FakeClock:
    """Monotonic clock, wall clock and sleep that only move when told to."""

    def __init__(self, start: _dt.datetime = _dt.datetime(2026, 1, 1, tzinfo=_dt.timezone.utc)):
        self.start = start
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return 1000.0 + self.elapsed

    def now(self) -> _dt.datetime:
        return self.start + _dt.timedelta(seconds=self.elapsed)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.elapsed += seconds

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds


def make_response(status: int = 200, body=b"", headers=()) -> requests.Response:
    """A real requests.Response backed by an unread urllib3 body."""
    if isinstance(body, (dict, list)):
        body = json.dumps(body).encode()
    raw = HTTPResponse(
        body=body if hasattr(body, "read") else io.BytesIO(body),
        headers=list(headers),
        status=status,
        preload_content=False,
        decode_content=False,
    )
    response = requests.Response()
    response.status_code = status
    response.raw = raw
    response.headers = CaseInsensitiveDict(raw.headers)
    return response


class FakeApi:
    """Stands in for requests.Session: canned responses queued per API path."""

    def __init__(self) -> None:
        self.routes: dict[str, deque] = defaultdict(deque)
        self.requests: list[SimpleNamespace] = []
        self.closed = False

    def add(self, path: str, *responses: requests.Response) -> "FakeApi":
        self.routes[path].extend(responses)
        return self

    def add_json(self, path: str, *bodies, status: int = 200) -> "FakeApi":
        for body in bodies:
            self.add(path, make_response(status, body))
        return self

    def post(self, url, data=None, headers=None, timeout=None, stream=False):
        assert url.startswith(BASE_URL), url
        path = url[len(BASE_URL):]
        self.requests.append(
            SimpleNamespace(
                path=path,
                payload=json.loads(data) if data else None,
                headers=dict(headers or {}),
                timeout=timeout,
            )
        )
        queue = self.routes[path]
        if not queue:
            raise AssertionError(f"unexpected request to {path}")
        return queue.popleft()

    def paths(self) -> list[str]:
        return [r.path for r in self.requests]

    def close(self) -> None:
        self.closed = True


def login_responses(api: FakeApi, *, user_id: str = "user-1", token: str = "access-1",
                    empty_polls: int = 0) -> FakeApi:
    """Queue a complete email login: WAIT, empty polls, tokens, user info."""
    api.add_json("auth/v4/authByEmail", {"state": "WAIT", "polling_id": "poll-1"})
    for _ in range(empty_polls):
        api.add("auth/v4/authByRequestPollingId", make_response(202, b""))
    api.add_json(
        "auth/v4/authByRequestPollingId",
        {"access_token": token, "refresh_token": "refresh-1", "access_token_ttl_seconds": 172800},
    )
    api.add_json("user/v2", {"user_id": user_id})
    return api


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def client_config(tmp_path) -> ClientConfig:
    return ClientConfig(
        accounts=(Account("first@example.com", "UA-first"),),
        base_url=BASE_URL,
        session_dir=str(tmp_path / "secrets"),
    )


def config_with_accounts(tmp_path, *emails: str) -> ClientConfig:
    return ClientConfig(
        accounts=tuple(Account(email, f"UA-{email}") for email in emails),
        base_url=BASE_URL,
        session_dir=str(tmp_path / "secrets"),
    )


FIXTURES = Path(__file__).parent / "fixtures"


def load_fixture(name: str) -> bytes:
    return (FIXTURES / name).read_bytes()


class ResetBody(io.BytesIO):
    """Response body whose connection drops on the first read."""

    def read(self, *args, **kwargs):
        raise ConnectionResetError(104, "Connection reset by peer")


def save_snapshot(cfg: ClientConfig, email: str, clock: FakeClock, token: str = "saved-access",
                  age: _dt.timedelta = _dt.timedelta(hours=1)) -> None:
    """Persist an authenticated session for ``email`` so no log in is needed."""
    when = clock.now() - age
    SnapshotStore(cfg.session_dir).save(
        email,
        Session(
            access_token=token,
            refresh_token="saved-refresh",
            user_id=f"id-{email}",
            user_agent=f"UA-{email}",
            login_time=when,
            token_refresh_time=when,
        ),
    )
