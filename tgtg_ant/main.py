from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Callable, Iterable, List, Optional

import requests

from . import config, notifier
from .client import TgtgClient
from .errors import Cancelled, TgtgError
from .models import Store, same_records
from .utils import HTTPError


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def install_stop_handler(stop: threading.Event) -> None:
    """Set ``stop`` on SIGINT/SIGTERM so the loop can finish its current cycle."""
    logger = logging.getLogger(__name__)

    def _handler(signum, frame) -> None:
        if not stop.is_set():
            logger.info("%s signal received, will shut down soon...", signal.Signals(signum).name)
            stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def poll_once(
    client: TgtgClient,
    last_sent: List[Store],
    send: Callable[[Iterable[Store]], None] = notifier.send_stores,
) -> List[Store]:
    """Run one poll cycle and return the store list last notified."""
    logger = logging.getLogger(__name__)
    stores = client.list_stores()

    if stores and not same_records(last_sent, stores):
        logger.info("Available bags:\n%s", notifier.format_stores(stores).rstrip())
        try:
            send(stores)
        except (requests.RequestException, HTTPError):
            logger.exception("Failed to send store notification")
        last_sent = stores

    client.list_opened_orders()
    return last_sent


def poll_loop(
    client: TgtgClient,
    stop: threading.Event,
    send: Callable[[Iterable[Store]], None] = notifier.send_stores,
) -> None:
    """Poll until ``stop`` is set. Permanent client errors propagate."""
    logger = logging.getLogger(__name__)
    last_sent: List[Store] = []
    while not stop.is_set():
        try:
            last_sent = poll_once(client, last_sent, send)
        except Cancelled:
            logger.info("Poll cycle interrupted by shutdown")
            return
        except requests.RequestException:
            logger.exception("Network error during poll cycle, retrying next cycle")


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch stores for available bags.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("-v", dest="verbose", action="store_true", default=None,
                       help="Trace requests information for debugging")
    group.add_argument("-q", dest="verbose", action="store_false", default=None,
                       help="Quiet: force verbose deactivation")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Initialise and run the polling loop."""
    args = _parse_args(argv)
    config.validate()
    setup_logging()
    logger = logging.getLogger(__name__)

    verbose = config.VERBOSE if args.verbose is None else args.verbose
    if verbose:
        logging.getLogger("tgtg_ant").setLevel(logging.DEBUG)

    stop = threading.Event()
    install_stop_handler(stop)

    client_config = config.load_client_config()
    logger.info("Starting too good to go ant for %d account(s)", len(client_config.accounts))

    client = TgtgClient(client_config, stop=stop, verbose=verbose)
    try:
        poll_loop(client, stop)
    except TgtgError as e:
        logger.error("Stopping: %s", e)
        return 1
    finally:
        client.close()

    logger.info("Exiting too good to go ant")
    return 0


if __name__ == "__main__":
    sys.exit(main())
