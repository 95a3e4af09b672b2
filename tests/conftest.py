import os
import tempfile

# Settings are read once at import, so the environment has to be pinned before
# anything from trade_mirror is imported by the test modules.
_TMP_DIR = tempfile.mkdtemp(prefix="trade-mirror-tests-")
os.environ.update(
    {
        "APP_ENV": "development",
        "DB_PATH": os.path.join(_TMP_DIR, "trade_mirror.sqlite3"),
        "QUOTA_STORE": "memory",
        "CHANNELS_CONFIG_PATH": os.path.join(_TMP_DIR, "channels.yaml"),
        "BOTS_CONFIG_PATH": os.path.join(_TMP_DIR, "bots.yaml"),
        "YOUTUBE_API_KEY": "test-youtube-key",
        "OPENAI_API_KEY": "",
        "TRANSCRIPTION_API_KEY": "",
        "CAPTURE_SERVICE_URL": "",
        "ALERT_WEBHOOK_URL": "",
        "INTER_CHANNEL_DELAY_SECONDS": "0",
        "POLL_IN_PROCESS": "false",
        "TRADOVATE_ENV": "demo",
        "TRADOVATE_RETRY_BASE_DELAY_SECONDS": "0",
    }
)

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from trade_mirror.executor import RiskGatedExecutor  # noqa: E402
from trade_mirror.models import BotRiskPolicy, TraderCopySettings  # noqa: E402
from trade_mirror.tradovate_client import OrderResult  # noqa: E402
from trade_mirror.youtube_client import VideoStatus  # noqa: E402


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeBroker:
    def __init__(self) -> None:
        self.orders: list[dict] = []
        self.contract_lookups: list[str] = []
        self.fail_with: Exception | None = None
        self.fail_stops_with: Exception | None = None
        self._next_id = 1000

    def get_contract_by_name(self, name: str) -> dict | None:
        self.contract_lookups.append(name)
        return {"id": 42, "name": name}

    def place_market_order(self, contract_id, action, quantity, account_id=None) -> OrderResult:
        if self.fail_with is not None:
            raise self.fail_with
        return self._record("Market", action, quantity)

    def place_stop_order(self, contract_id, action, quantity, stop_price, account_id=None) -> OrderResult:
        if self.fail_stops_with is not None:
            raise self.fail_stops_with
        return self._record("Stop", action, quantity, stop_price=stop_price)

    def _record(self, order_type: str, action: str, quantity: int, **extra) -> OrderResult:
        self._next_id += 1
        self.orders.append({"type": order_type, "action": action, "quantity": quantity, **extra})
        return OrderResult(order_id=self._next_id, raw={"orderId": self._next_id})


class FakeYouTube:
    """Feed and videos.list responses keyed by channel and video id."""

    def __init__(self) -> None:
        self.feeds: dict[str, list[str]] = {}
        self.videos: dict[str, VideoStatus] = {}
        self.handles: dict[str, str] = {}
        self.feed_calls: list[str] = []
        self.list_calls: list[list[str]] = []
        self.search_calls: list[str] = []
        self.feed_errors: dict[str, Exception] = {}

    def fetch_feed_video_ids(self, channel_id: str) -> list[str]:
        self.feed_calls.append(channel_id)
        if channel_id in self.feed_errors:
            raise self.feed_errors[channel_id]
        return list(self.feeds.get(channel_id, []))

    def list_videos(self, video_ids: list[str]) -> list[VideoStatus]:
        self.list_calls.append(list(video_ids))
        return [self.videos[video_id] for video_id in video_ids if video_id in self.videos]

    def search_channel_id(self, handle: str) -> str | None:
        self.search_calls.append(handle)
        return self.handles.get(handle)

    def get_live_chat_id(self, video_id: str) -> str | None:
        video = self.videos.get(video_id)
        return video.active_live_chat_id if video else None


# 10:00 America/New_York on Wednesday 2026-10-14.
MARKET_MORNING = datetime(2026, 10, 14, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(MARKET_MORNING)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def youtube() -> FakeYouTube:
    return FakeYouTube()


@pytest.fixture
def policy() -> BotRiskPolicy:
    return BotRiskPolicy(
        bot_id="bot-1",
        max_daily_loss=500.0,
        max_position_size=5,
        max_concurrent_trades=3,
        max_daily_trades=10,
        trader_settings=[TraderCopySettings(trader_id="trader-a")],
    )


@pytest.fixture
def executor(policy, broker, clock) -> RiskGatedExecutor:
    return RiskGatedExecutor(policy, broker, account_id=7, clock=clock)
