"""Query pipeline and API operations.

Every API call goes through :meth:`TgtgClient.call`, which

1. makes sure the active account holds a valid session,
2. paces the request for that account,
3. sends it and decodes the body,
4. recovers from an HTTP 401 by logging in again (once) and from a
   verification challenge by rotating to the next account,
5. keeps the cookies the server sets for the next calls.

Network errors (``requests.RequestException``) are not caught here.  Setting
the ``stop`` event interrupts any wait and aborts the call with
:class:`~tgtg_ant.errors.Cancelled`.
"""

from __future__ import annotations

import datetime as _dt
import functools
import json
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urljoin

import requests
from urllib3.exceptions import ProtocolError, ReadTimeoutError, SSLError

from .codec import decode_body
from .config import ClientConfig
from .errors import (Cancelled, HTTPStatusError, OrderError,
                     RepeatedUnauthorizedError, ResponseParseError, TgtgError,
                     Unauthorized, VerificationChallenge)
from .models import (Order, OrderPayment, PaymentMethod, PaymentProvider,
                     PaymentType, ReservedOrder, Store,
                     order_payment_from_response, orders_from_response,
                     payment_methods_from_response,
                     reserved_order_from_response, stores_from_response)
from .rotation import AccountRotator, RateLimiter, ReminderGate
from .scraper import fetch_last_apk_version, pick_user_agent, user_agent_pool
from .session import Session, SessionManager, SnapshotStore, utcnow
from .utils import get_api_session, open_browser

logger = logging.getLogger(__name__)

Payload = Any  # JSON-serialisable value, None, or a callable building it from the Session


@dataclass(frozen=True)
class QueryResult:
    body: bytes
    status_code: int


class TgtgClient:
    """Client for the mobile API, rotating over a pool of accounts."""

    # Fresh logins attempted per call after an HTTP 401.
    MAX_RELOGINS = 1

    def __init__(
        self,
        config: ClientConfig,
        *,
        store: Optional[SnapshotStore] = None,
        user_agents: Optional[Sequence[str]] = None,
        session_factory: Callable[[], requests.Session] = get_api_session,
        open_challenge: Callable[[str], Any] = open_browser,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        now: Callable[[], _dt.datetime] = utcnow,
        rng: Optional[random.Random] = None,
        stop: Optional[threading.Event] = None,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.verbose = verbose
        self._logger = logger or logging.getLogger(__name__)
        self._open_challenge = open_challenge
        self._rng = rng or random.Random()
        # set from outside to abort waits and calls in progress
        self.stop = stop or threading.Event()

        if user_agents is None:
            if all(account.user_agent for account in config.accounts):
                user_agents = []
            else:
                user_agents = user_agent_pool(fetch_last_apk_version())
        pool = list(user_agents)

        self.limiter = RateLimiter(
            config.average_requests_period,
            len(config.accounts),
            clock=clock,
            sleep=sleep,
            rng=self._rng,
            stop=self.stop,
            logger=self._logger,
        )
        self.rotator = AccountRotator(
            config.accounts,
            self.limiter,
            config.too_many_requests_pause_period,
            logger=self._logger,
        )
        self.orders_gate = ReminderGate(config.active_orders_reminder_period, clock=clock)

        store = store or SnapshotStore(config.session_dir, logger=self._logger)
        self.sessions: List[SessionManager] = [
            SessionManager(
                account,
                config,
                functools.partial(self._execute, index),
                store,
                user_agent=pick_user_agent(account, pool, self._rng),
                now=now,
                clock=clock,
                sleep=sleep,
                stop=self.stop,
                logger=self._logger,
            )
            for index, account in enumerate(config.accounts)
        ]
        self._http: List[requests.Session] = [session_factory() for _ in config.accounts]

    # ---- Pipeline ------------------------------------------------------------

    @property
    def manager(self) -> SessionManager:
        """Session manager of the active account."""
        return self.sessions[self.rotator.current]

    def call(self, path: str, payload: Payload = None, allow_sleep: bool = True) -> QueryResult:
        """Send one API request, recovering from expired logins and challenges."""
        relogins = 0
        while True:
            if self.stop.is_set():
                raise Cancelled(f"stop requested before calling {path}")
            manager = self.manager
            try:
                manager.ensure_valid()
                body = payload(manager.session) if callable(payload) else payload
                return self._execute(self.rotator.current, path, body, allow_sleep)
            except Unauthorized:
                if relogins >= self.MAX_RELOGINS:
                    raise RepeatedUnauthorizedError(
                        f"http status 401 received for {path} again after a fresh log in"
                    )
                relogins += 1
                self._logger.warning("HTTP 401 received for %s, log in again", path)
                manager.invalidate()
            except VerificationChallenge as challenge:
                self._handle_challenge(challenge)
                # never retry a challenged call without pacing
                allow_sleep = True
                # the next account gets its own fresh log in
                relogins = 0

    def _handle_challenge(self, challenge: VerificationChallenge) -> None:
        self._logger.warning(
            "Captcha detected for %s, solve it at %s", challenge.account, challenge.url
        )
        self._open_challenge(challenge.url)
        self.rotator.rotate()

    def _execute(self, index: int, path: str, payload: Any, allow_sleep: bool) -> QueryResult:
        """Send a single request for account ``index``; no session checks, no retries."""
        manager = self.sessions[index]
        url = urljoin(self.config.base_url, path.lstrip("/"))
        data = json.dumps(payload).encode("utf-8") if payload is not None else b""
        headers = self._headers(manager.session)

        if allow_sleep:
            self.limiter.pace(index)
        else:
            self.limiter.stamp(index)

        if self.verbose:
            self._log_headers(url, "request", headers)
        self._logger.info("POST %s", url)
        response = self._http[index].post(
            url,
            data=data,
            headers=headers,
            timeout=self.config.http_timeout.total_seconds(),
            stream=True,
        )
        with response:
            if self.verbose:
                self._log_headers(url, "response", response.headers)

            if response.status_code == 401:
                raise Unauthorized(f"http status 401 received for {path}")

            raw = self._read_raw(response)
            body = decode_body(response.headers.get("Content-Encoding"), raw)

            challenge_url = self._challenge_url(body)
            if challenge_url:
                raise VerificationChallenge(challenge_url, manager.email)

            if not 200 <= response.status_code < 300:
                raise HTTPStatusError(response.status_code, body, path)

            cookies = response.raw.headers.getlist("Set-Cookie")
            if cookies:
                manager.session.cookies = [c.split(";", 1)[0].strip() for c in cookies]

            return QueryResult(body=body, status_code=response.status_code)

    @staticmethod
    def _read_raw(response: requests.Response) -> bytes:
        """Read the undecoded body, raising requests exceptions like ``iter_content``."""
        try:
            return response.raw.read(decode_content=False)
        except ProtocolError as e:
            raise requests.exceptions.ChunkedEncodingError(e) from e
        except ReadTimeoutError as e:
            raise requests.exceptions.ConnectionError(e) from e
        except SSLError as e:
            raise requests.exceptions.SSLError(e) from e

    def _headers(self, session: Session) -> Dict[str, str]:
        h = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip",
            "Accept-Language": self.config.language,
            "Content-Type": "application/json; charset=utf-8",
            "User-Agent": session.user_agent,
        }
        if session.cookies:
            h["Cookie"] = "; ".join(session.cookies)
        if session.access_token:
            h["Authorization"] = f"Bearer {session.access_token}"
        return h

    def _challenge_url(self, body: bytes) -> Optional[str]:
        try:
            parsed = json.loads(body)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        url = parsed.get("url")
        if isinstance(url, str) and url.startswith(self.config.captcha_url_prefix):
            return url
        return None

    def _log_headers(self, url: str, title: str, headers) -> None:
        self._logger.debug("  %s %s headers:", url, title)
        for name, value in headers.items():
            if name.lower() == "authorization":
                value = "Bearer <redacted>"
            self._logger.debug("  - %s: %s", name, value)

    # ---- Operations ----------------------------------------------------------

    def list_stores(self) -> List[Store]:
        """Search stores around the configured origin."""
        search = self.config.search

        def params(session: Session) -> Dict[str, Any]:
            return {
                "user_id": session.user_id,
                "origin": {"latitude": search.latitude, "longitude": search.longitude},
                "radius": search.radius_km,
                "page_size": search.max_results,
                "page": 1,
                "discover": False,
                "favorites_only": search.favorites_only,
                "with_stock_only": search.with_stock_only,
            }

        result = self.call(self.config.endpoints.items, params)
        stores = stores_from_response(result.body)
        if stores:
            self._logger.info("Found %d store(s)", len(stores))
        return stores

    def list_opened_orders(self) -> List[Order]:
        """List orders waiting for pickup, at most once per reminder period."""
        if not self.orders_gate.ready():
            return []

        result = self.call(
            self.config.endpoints.active_orders,
            lambda session: {"user_id": session.user_id},
        )
        orders = orders_from_response(result.body)
        if orders:
            self._logger.info("You have %d order(s) to pickup, don't forget them:", len(orders))
            for pos, order in enumerate(orders, 1):
                self._logger.info("- Order %d - %s", pos, order)
        return orders

    def payment_methods(self, provider: PaymentProvider = PaymentProvider.ADYEN) -> List[PaymentMethod]:
        payload = {
            "supported_types": [
                {
                    "provider": provider.value,
                    "payment_types": [
                        PaymentType.CREDITCARD.value,
                        PaymentType.PAYPAL.value,
                        PaymentType.GOOGLEPAY.value,
                    ],
                }
            ]
        }
        result = self.call(self.config.endpoints.payment_methods, payload)
        methods = payment_methods_from_response(result.body)
        for pos, method in enumerate(methods, 1):
            self._logger.info("- Payment method %d: %s", pos, method)
        return methods

    def reserve_order(self, store: Store, nb_bags: int) -> ReservedOrder:
        """Reserve bags in ``store``. Not paced: availability does not wait."""
        if store.available_bags < nb_bags:
            raise OrderError(f"not enough available bags for {store}")
        result = self.call(
            f"{self.config.endpoints.create_order}/{store.id}",
            {"item_count": nb_bags},
            allow_sleep=False,
        )
        reserved = reserved_order_from_response(result.body)
        self._logger.info("Reserved %s", reserved)
        return reserved

    def cancel_order(self, order_id: str) -> None:
        self.call(f"{self.config.endpoints.order}/{order_id}/abort", {"cancel_reason_id": 1})
        self._logger.info("Cancelled order %s", order_id)

    def pay_order(self, order_id: str, payment_method: PaymentMethod) -> OrderPayment:
        provider = payment_method.payment_provider
        authorization_payload = {
            "type": provider.authorization_payload_type,
            "payment_type": payment_method.payment_type.value,
            # only known to work with Adyen payment methods
            "payload": payment_method.adyen_api_payload,
        }
        if payment_method.save_payment_method:
            authorization_payload["save_payment_method"] = payment_method.save_payment_method
        payload = {
            "authorization": {
                "authorization_payload": authorization_payload,
                "payment_provider": provider.value,
                "return_url": "adyencheckout://com.app.tgtg.itemview",
            }
        }

        result = self.call(f"{self.config.endpoints.order}/{order_id}/pay", payload)
        payment = order_payment_from_response(result.body)
        self._logger.info("Order payment %s created", payment.id)

        try:
            status = self.payment_status(payment.id)
        except Cancelled:
            raise
        except (TgtgError, requests.RequestException) as e:
            self._logger.warning("Could not fetch payment %s status: %s", payment.id, e)
        else:
            self._logger.info("Payment information of %s: %s", payment.id, status)
        return payment

    def payment_status(self, payment_id: str) -> Dict[str, Any]:
        result = self.call(f"{self.config.endpoints.payment}/{payment_id}")
        if not result.body:
            return {}
        try:
            data = json.loads(result.body)
        except ValueError as e:
            raise ResponseParseError(f"payment status is not valid JSON: {e}") from e
        return data if isinstance(data, dict) else {"payment": data}

    # ---- Lifecycle -----------------------------------------------------------

    def close(self) -> None:
        """Persist every authenticated session and release HTTP connections."""
        for manager in self.sessions:
            manager.flush()
        for http in self._http:
            http.close()

    def __enter__(self) -> "TgtgClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


__all__ = ["QueryResult", "TgtgClient"]
