import json
from datetime import datetime, timedelta, timezone

import pytest

from trade_mirror.db import get_connection
from trade_mirror.executor import ExecutionResult
from trade_mirror.models import (
    BotRiskPolicy,
    CorrelatedSignal,
    Direction,
    MonitoredChannel,
    SignalKind,
    Trade,
    TradeResult,
    TraderCopySettings,
)
from trade_mirror.storage import InMemoryTradeRepository, SqliteTradeRepository


ENTRY_TIME = datetime(2026, 10, 14, 14, 0, tzinfo=timezone.utc)


def sample_trade(trade_id="t1", channel_id="trader-a", minutes=0) -> Trade:
    entry_time = ENTRY_TIME + timedelta(minutes=minutes)
    signal = CorrelatedSignal(
        id=f"{trade_id}-entry",
        stream_id="s1",
        symbol="ES",
        direction=Direction.LONG,
        kind=SignalKind.ENTRY,
        size=1.0,
        overall_confidence=0.9,
        created_at=entry_time,
        entry_price=5880.0,
        vision_confidence=0.9,
    )
    return Trade(
        id=trade_id,
        stream_id="s1",
        channel_id=channel_id,
        symbol="ES",
        direction=Direction.LONG,
        entry_time=entry_time,
        entry_price=5880.0,
        size=1.0,
        signals=[signal],
    )


@pytest.fixture
def sqlite_repository(tmp_path):
    return SqliteTradeRepository(tmp_path / "mirror.sqlite3")


def test_trade_upsert_keeps_one_row(sqlite_repository):
    trade = sample_trade()
    sqlite_repository.save(trade)
    trade.close(ENTRY_TIME + timedelta(minutes=5), 5892.0, 600.0)
    sqlite_repository.save(trade)

    [stored] = sqlite_repository.load("trader-a")
    assert stored.result is TradeResult.WIN
    assert stored.pnl == 600.0
    assert stored.exit_time == ENTRY_TIME + timedelta(minutes=5)
    assert stored.signals[0].vision_confidence == 0.9
    assert sqlite_repository.load("someone-else") == []


def test_recent_trades_newest_first(sqlite_repository):
    for index in range(3):
        sqlite_repository.save(sample_trade(trade_id=f"t{index}", minutes=index))
    assert [trade.id for trade in sqlite_repository.recent(limit=2)] == ["t2", "t1"]


def test_policy_round_trip(sqlite_repository):
    policy = BotRiskPolicy(
        bot_id="bot-1",
        allowed_symbols=["ES", "MES"],
        trader_settings=[TraderCopySettings(trader_id="trader-a", copy_multiplier=2.0)],
    )
    sqlite_repository.save_policy(policy)
    assert sqlite_repository.load_policy("bot-1") == policy
    assert sqlite_repository.load_policy("missing") is None


def test_channel_state_is_persisted(sqlite_repository):
    channel = MonitoredChannel(id="a", name="Alpha", handle="@alpha", external_id="UC_a")
    sqlite_repository.upsert_channel(channel)
    channel.is_live = True
    channel.current_stream_id = "v1"
    channel.last_live_at = ENTRY_TIME
    sqlite_repository.upsert_channel(channel)
    sqlite_repository.upsert_channel(MonitoredChannel(id="b", name="Beta", active=False))

    [stored] = sqlite_repository.list_channels()
    assert stored.is_live
    assert stored.current_stream_id == "v1"
    assert stored.last_live_at == ENTRY_TIME
    assert len(sqlite_repository.list_channels(active_only=False)) == 2


def test_executions_and_events_are_written(sqlite_repository):
    result = ExecutionResult(
        success=False,
        status="rejected",
        bot_id="bot-1",
        trade_id="t1",
        trader_id="trader-a",
        symbol="ES",
        rejection={"rule": "maxDailyTrades"},
        error="Daily trade limit reached",
    )
    sqlite_repository.record_execution(result)
    sqlite_repository.record_event("policy_rejected", "Bot bot-1 rejected ES", {"rule": "maxDailyTrades"})

    with get_connection(sqlite_repository.db_path) as conn:
        execution = conn.execute("SELECT status, error, result_json FROM executions").fetchone()
        event = conn.execute("SELECT event_type, metadata_json FROM system_events").fetchone()
    assert execution["status"] == "rejected"
    assert execution["error"] == "Daily trade limit reached"
    assert json.loads(execution["result_json"])["rejection"] == {"rule": "maxDailyTrades"}
    assert event["event_type"] == "policy_rejected"
    assert json.loads(event["metadata_json"]) == {"rule": "maxDailyTrades"}


def test_in_memory_repository_copies_trades():
    repository = InMemoryTradeRepository()
    trade = sample_trade()
    repository.save(trade)
    trade.close(ENTRY_TIME, 5880.0, 0.0)

    [stored] = repository.load("trader-a")
    assert stored.is_open
    repository.record_event("trade_closed", "closed")
    assert repository.events[0]["event_type"] == "trade_closed"
