from unittest.mock import MagicMock, patch

import pytest
import requests
from pydantic import ValidationError

from trade_mirror.alerts import AlertRouter
from trade_mirror.settings import Settings


def test_live_broker_mode_needs_unlock():
    with pytest.raises(ValidationError, match="LIVE_MODE_UNLOCK"):
        Settings(_env_file=None, tradovate_env="live")
    assert Settings(_env_file=None, tradovate_env="live", live_mode_unlock=True).tradovate_env == "live"


def test_market_window_must_close_after_open():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, market_open_hour=16, market_close_hour=9)


def test_alerts_need_a_webhook():
    with patch("requests.post") as post:
        assert AlertRouter(webhook_url="").send("trade_closed", "closed", {}) is False
    post.assert_not_called()


def test_alerts_post_allowed_events():
    router = AlertRouter(webhook_url="https://hooks.example.test/alerts")
    with patch("requests.post", return_value=MagicMock()) as post:
        assert router.send("policy_rejected", "bot-1 rejected", {"rule": "maxConcurrentTrades"}) is True
        assert router.send("something_else", "ignored", {}) is False

    post.assert_called_once()
    assert post.call_args.kwargs["json"]["metadata"] == {"rule": "maxConcurrentTrades"}


def test_alert_webhook_failure_is_reported_not_raised():
    router = AlertRouter(webhook_url="https://hooks.example.test/alerts")
    with patch("requests.post", side_effect=requests.ConnectionError("down")):
        assert router.send("trade_closed", "closed", {}) is False
