from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from trade_mirror.correlator import SignalCorrelator
from trade_mirror.errors import QuotaExhausted, UpstreamUnavailable
from trade_mirror.models import LiveStatus, MonitoredChannel, VerbalKind
from trade_mirror.monitor import ChatPoller, LivenessScheduler
from trade_mirror.quota import InMemoryQuotaStore, MarketWindow, QuotaLedger
from trade_mirror.storage import InMemoryTradeRepository
from trade_mirror.youtube_client import ChatMessage, ChatPage, VideoStatus


def channel(channel_id: str, external_id: str | None = None, handle: str = "") -> MonitoredChannel:
    return MonitoredChannel(id=channel_id, name=channel_id.title(), handle=handle, external_id=external_id)


@pytest.fixture
def ledger(clock):
    return QuotaLedger(InMemoryQuotaStore(), daily_limit=10_000, clock=clock)


def make_scheduler(ledger, youtube, clock, channels, repository=None):
    return LivenessScheduler(
        ledger,
        youtube,
        channels,
        repository=repository,
        window=MarketWindow(),
        clock=clock,
        sleep=lambda seconds: None,
    )


def test_live_channel_found_through_one_videos_lookup(ledger, youtube, clock):
    youtube.feeds["UC_a"] = ["v1", "v2"]
    youtube.videos["v1"] = VideoStatus("v1", is_live=True, title="Morning session", concurrent_viewers=420)
    youtube.videos["v2"] = VideoStatus("v2", is_live=False, title="Recap")
    repository = InMemoryTradeRepository()
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")], repository)

    report = scheduler.poll()

    [check] = report.results
    assert check.status is LiveStatus.LIVE
    assert check.method == "api"
    assert check.stream_id == "v1"
    assert check.viewers == 420
    assert check.units_used == 1
    assert report.units_used == 1
    assert report.newly_live == ["a"]
    assert youtube.list_calls == [["v1", "v2"]]
    stored = repository.list_channels()[0]
    assert stored.is_live and stored.current_stream_id == "v1"


def test_fresh_cache_answers_without_quota(ledger, youtube, clock):
    youtube.feeds["UC_a"] = ["v1"]
    youtube.videos["v1"] = VideoStatus("v1", is_live=True)
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])
    scheduler.poll()

    clock.advance(seconds=60)
    report = scheduler.poll()

    assert report.results[0].method == "cache"
    assert report.results[0].status is LiveStatus.LIVE
    assert report.units_used == 0
    assert report.newly_live == []
    assert youtube.feed_calls == ["UC_a"]
    assert ledger.used() == 1


def test_stale_cache_is_rechecked(ledger, youtube, clock):
    youtube.feeds["UC_a"] = ["v1"]
    youtube.videos["v1"] = VideoStatus("v1", is_live=True)
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])
    scheduler.poll()

    clock.advance(minutes=6)
    youtube.videos["v1"] = VideoStatus("v1", is_live=False)
    report = scheduler.poll()

    assert report.results[0].status is LiveStatus.NOT_LIVE
    assert report.results[0].method == "api"
    assert ledger.used() == 2
    assert scheduler.channel("a").current_stream_id is None


def test_cached_not_live_candidates_cost_nothing(ledger, youtube, clock):
    youtube.feeds["UC_a"] = ["v1"]
    youtube.videos["v1"] = VideoStatus("v1", is_live=False)
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])
    scheduler.poll()
    report = scheduler.poll()

    assert report.results[0].status is LiveStatus.NOT_LIVE
    assert report.results[0].method == "cache"
    assert ledger.used() == 1


def test_empty_feed_is_not_live_for_free(ledger, youtube, clock):
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])
    report = scheduler.poll()
    assert report.results[0].status is LiveStatus.NOT_LIVE
    assert report.results[0].method == "feed"
    assert ledger.used() == 0


def test_failed_channel_does_not_abort_batch(ledger, youtube, clock):
    youtube.feed_errors["UC_a"] = UpstreamUnavailable("youtube_feed", "timed out")
    youtube.feeds["UC_b"] = ["v9"]
    youtube.videos["v9"] = VideoStatus("v9", is_live=True)
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a"), channel("b", "UC_b")])

    report = scheduler.poll()

    first, second = report.results
    assert first.status is LiveStatus.UNKNOWN
    assert "timed out" in first.error
    assert first.units_used == 0
    assert second.status is LiveStatus.LIVE
    assert report.errors == [{"channel_id": "a", "error": first.error}]


def test_unaffordable_lookup_is_unknown(clock, youtube):
    ledger = QuotaLedger(InMemoryQuotaStore(), daily_limit=100, clock=clock)
    ledger.record_usage("videos", count=100)
    youtube.feeds["UC_a"] = ["v1"]
    youtube.videos["v1"] = VideoStatus("v1", is_live=True)
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])

    report = scheduler.poll(force=True)

    assert report.results[0].status is LiveStatus.UNKNOWN
    assert report.results[0].method == "skipped"
    assert youtube.list_calls == []
    assert ledger.used() == 100


def test_poll_skipped_when_quota_low(ledger, youtube, clock):
    ledger.record_usage("videos", count=9_960)
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])

    report = scheduler.poll()
    assert report.skipped
    assert report.reason == "quota_exhausted"
    assert report.results == []
    assert youtube.feed_calls == []

    forced = scheduler.poll(force=True)
    assert not forced.skipped
    assert youtube.feed_calls == ["UC_a"]


def test_safety_floor_raises(ledger, youtube, clock):
    ledger.record_usage("videos", count=9_995)
    scheduler = make_scheduler(ledger, youtube, clock, [])
    with pytest.raises(QuotaExhausted):
        scheduler.ensure_pollable()


def test_handle_is_resolved_with_search(ledger, youtube, clock):
    youtube.handles["@trader"] = "UC_resolved"
    youtube.feeds["UC_resolved"] = []
    monitored = channel("t", handle="@trader")
    scheduler = make_scheduler(ledger, youtube, clock, [monitored])

    report = scheduler.poll()

    assert youtube.search_calls == ["@trader"]
    assert monitored.external_id == "UC_resolved"
    assert report.results[0].status is LiveStatus.NOT_LIVE
    assert ledger.used() == 100


def test_only_selected_channels_are_polled(ledger, youtube, clock):
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a"), channel("b", "UC_b")])
    report = scheduler.poll(channel_ids=["b"])
    assert [result.channel_id for result in report.results] == ["b"]


def test_deactivated_channels_are_not_polled(ledger, youtube, clock):
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a"), channel("b", "UC_b")])
    assert scheduler.deactivate_channel("a")
    report = scheduler.poll()
    assert [result.channel_id for result in report.results] == ["b"]
    assert scheduler.channel("a") is not None


def test_recommendation_outside_market_hours(ledger, youtube, clock):
    clock.now = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)  # Saturday
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])
    budget = scheduler.recommended_interval()
    assert budget.poll_interval_minutes == 30
    assert not budget.market_open


def test_recommendation_before_open_uses_fallback(ledger, youtube, clock):
    clock.now = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)  # 08:00 ET
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])
    assert scheduler.recommended_interval().poll_interval_minutes == 30


class ChatYouTube:
    def __init__(self, youtube, pages):
        self.inner = youtube
        self.pages = list(pages)
        self.tokens = []

    def get_live_chat_id(self, video_id):
        return "chat-1"

    def fetch_chat_messages(self, live_chat_id, page_token=None):
        self.tokens.append(page_token)
        return self.pages.pop(0)


def test_chat_poller_feeds_correlator(ledger, youtube, clock):
    message = ChatMessage(
        id="m1",
        author_channel_id="UC_a",
        author_name="Trader",
        text="Going long ES at 5880",
        published_at=clock.now,
        is_owner=True,
    )
    client = ChatYouTube(youtube, [ChatPage(messages=[message], next_page_token="p2"), ChatPage(ended=True, error="liveChatEnded")])
    correlator = SignalCorrelator(clock=clock)
    poller = ChatPoller(ledger, client, correlator, clock=clock)
    live = MonitoredChannel(id="a", name="A", is_live=True, current_stream_id="v1")

    signals = poller.poll_stream(live)

    assert [signal.kind for signal in signals] == [VerbalKind.ENTRY]
    assert signals[0].confidence == 0.9
    assert signals[0].source == "chat"
    assert ledger.used() == 1 + 5
    state = correlator.stream_state("v1")
    assert len(state.pending) == 1
    assert state.channel_id == "a"

    assert poller.poll_stream(live) == []
    assert client.tokens == [None, "p2"]
    # The chat id is cached and the ended chat is not fetched again.
    assert poller.poll_stream(live) == []
    assert ledger.used() == 1 + 5 + 5


def test_ids_missing_from_lookup_are_cached_as_not_live(ledger, youtube, clock):
    youtube.feeds["UC_a"] = ["v1", "private"]
    youtube.videos["v1"] = VideoStatus("v1", is_live=False)
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])

    scheduler.poll()
    clock.advance(minutes=1)
    report = scheduler.poll()

    assert report.results[0].status is LiveStatus.NOT_LIVE
    assert report.results[0].method == "cache"
    assert youtube.list_calls == [["v1", "private"]]
    assert ledger.used() == 1


def test_failed_lookup_hands_back_its_units(ledger, youtube, clock):
    youtube.feeds["UC_a"] = ["v1"]
    youtube.list_videos = MagicMock(side_effect=UpstreamUnavailable("youtube", "HTTP 503"))
    scheduler = make_scheduler(ledger, youtube, clock, [channel("a", "UC_a")])

    report = scheduler.poll()

    assert report.results[0].status is LiveStatus.UNKNOWN
    assert report.results[0].units_used == 0
    assert ledger.used() == 0
