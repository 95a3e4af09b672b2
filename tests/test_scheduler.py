import pytest

from trade_mirror.models import MonitoredChannel
from trade_mirror.monitor import LivenessScheduler
from trade_mirror.quota import InMemoryQuotaStore, MarketWindow, QuotaLedger
from trade_mirror.scheduler import POLL_JOB_ID, PollScheduler
from trade_mirror.settings import settings
from trade_mirror.youtube_client import VideoStatus


class RecordingChat:
    def __init__(self):
        self.polled = []

    def poll_stream(self, channel):
        self.polled.append(channel.current_stream_id)
        return []


@pytest.fixture
def liveness(clock, youtube):
    ledger = QuotaLedger(InMemoryQuotaStore(), daily_limit=10_000, clock=clock)
    channels = [MonitoredChannel(id="a", name="A", external_id="UC_a"), MonitoredChannel(id="b", name="B", external_id="UC_b")]
    youtube.feeds["UC_a"] = ["v1"]
    youtube.videos["v1"] = VideoStatus("v1", is_live=True)
    return LivenessScheduler(ledger, youtube, channels, window=MarketWindow(), clock=clock, sleep=lambda seconds: None)


def test_cycle_polls_chat_of_live_streams(monkeypatch, liveness):
    monkeypatch.setattr(settings, "chat_polling_enabled", True)
    chat = RecordingChat()
    scheduler = PollScheduler(liveness, chat)

    report = scheduler.run_cycle()

    assert [check.channel_id for check in report.live_streams] == ["a"]
    assert chat.polled == ["v1"]
    assert scheduler.interval_minutes == liveness.recommended_interval().poll_interval_minutes


def test_chat_polling_disabled_by_default(liveness):
    chat = RecordingChat()
    PollScheduler(liveness, chat).run_cycle()
    assert chat.polled == []


def test_start_registers_single_job(liveness):
    scheduler = PollScheduler(liveness)
    scheduler.start()
    try:
        job = scheduler.scheduler.get_job(POLL_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
    finally:
        scheduler.stop()
    assert not scheduler.scheduler.running
