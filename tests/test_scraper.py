import json
import random
from unittest.mock import MagicMock

import requests

from tgtg_ant import scraper
from tgtg_ant.config import Account


def play_store_page(version: str) -> str:
    details = [None] * 141
    details[140] = [[[version]]]
    data = [None, [None, None, details]]
    return (
        "<html><head>"
        "<script>AF_initDataCallback({key: 'ds:4', hash: '1', data:[], sideChannel: {}});</script>"
        "<script>AF_initDataCallback({key: 'ds:5', hash: '2', data:"
        + json.dumps(data)
        + ", sideChannel: {}});</script>"
        "</head><body></body></html>"
    )


class TestParseApkVersion:
    def test_version_found(self):
        assert scraper.parse_apk_version(play_store_page("24.12.1")) == "24.12.1"

    def test_no_data_block(self):
        assert scraper.parse_apk_version("<html><script>var x = 1;</script></html>") is None

    def test_unexpected_shape(self):
        html = "<script>AF_initDataCallback({key: 'ds:5', hash: '2', data:[1, 2], sideChannel: {}});</script>"
        assert scraper.parse_apk_version(html) is None


class TestFetchLastApkVersion:
    def test_override(self, monkeypatch):
        monkeypatch.setattr(scraper, "APK_VERSION", "1.2.3")
        assert scraper.fetch_last_apk_version(MagicMock()) == "1.2.3"

    def test_scraped(self, monkeypatch):
        monkeypatch.setattr(scraper, "APK_VERSION", None)
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200, text=play_store_page("24.12.1"))

        assert scraper.fetch_last_apk_version(session) == "24.12.1"
        session.close.assert_not_called()

    def test_fallback_on_network_error(self, monkeypatch):
        monkeypatch.setattr(scraper, "APK_VERSION", None)
        monkeypatch.setattr(scraper, "_get", MagicMock(side_effect=requests.ConnectionError("offline")))

        assert scraper.fetch_last_apk_version(MagicMock()) == scraper.DEFAULT_APK_VERSION


class TestUserAgents:
    def test_pool(self):
        pool = scraper.user_agent_pool("24.12.1")
        assert len(pool) == 3
        assert all(ua.startswith("TGTG/24.12.1 Dalvik/2.1.0 (") for ua in pool)

    def test_fixed_user_agent_wins(self):
        account = Account("a@example.com", "Custom UA")
        assert scraper.pick_user_agent(account, ["pooled"]) == "Custom UA"

    def test_random_pick(self):
        pool = scraper.user_agent_pool("24.12.1")
        assert scraper.pick_user_agent(Account("a@example.com"), pool, random.Random(0)) in pool
