import threading
import time
from datetime import datetime, timezone

import pytest

from trade_mirror.quota import (
    InMemoryQuotaStore,
    MarketWindow,
    QuotaLedger,
    SqliteQuotaStore,
    operation_cost,
    polling_strategy,
)


def make_ledger(clock, store=None, limit=10_000):
    return QuotaLedger(store or InMemoryQuotaStore(), daily_limit=limit, reset_timezone="America/Los_Angeles", clock=clock)


def test_operation_costs():
    assert operation_cost("search") == 100
    assert operation_cost("videos") == 1
    assert operation_cost("live_chat") == 5
    with pytest.raises(ValueError):
        operation_cost("unknown")


def test_usage_only_grows_within_a_day(clock):
    ledger = make_ledger(clock)
    seen = []
    for operation in ["videos", "search", "live_chat", "channels", "videos"]:
        ledger.record_usage(operation)
        seen.append(ledger.used())
    assert seen == sorted(seen)
    assert ledger.used() == 1 + 100 + 5 + 1 + 1
    assert ledger.remaining() == 10_000 - 108


def test_record_usage_never_refuses_past_the_limit(clock):
    ledger = make_ledger(clock, limit=150)
    ledger.record_usage("search")
    ledger.record_usage("search")
    assert ledger.used() == 200
    assert ledger.remaining() == 0
    assert not ledger.has_capacity("videos")


def test_has_capacity_is_inclusive(clock):
    ledger = make_ledger(clock, limit=101)
    ledger.record_usage("videos")
    assert ledger.has_capacity("search")
    ledger.record_usage("videos")
    assert not ledger.has_capacity("search")
    assert ledger.has_capacity("videos", count=0)


def test_resets_on_pacific_day_boundary(clock):
    clock.now = datetime(2026, 10, 14, 23, 30, tzinfo=timezone.utc)  # 16:30 Pacific
    ledger = make_ledger(clock)
    ledger.record_usage("videos", count=9_999)
    assert ledger.used() == 9_999

    clock.now = datetime(2026, 10, 15, 6, 59, tzinfo=timezone.utc)  # 23:59 Pacific, same day
    assert ledger.used() == 9_999

    clock.now = datetime(2026, 10, 15, 7, 1, tzinfo=timezone.utc)  # 00:01 Pacific, next day
    assert ledger.used() == 0
    assert ledger.remaining() == 10_000


def test_status_reports_next_pacific_midnight(clock):
    ledger = make_ledger(clock)
    ledger.record_usage("videos", count=2_500)
    status = ledger.status()
    assert status.used == 2_500
    assert status.remaining == 7_500
    assert status.percent_used == pytest.approx(25.0)
    # 10:00 ET on Oct 14 is 07:00 PDT; the next reset is Oct 15 00:00 PDT.
    assert status.reset_at == datetime(2026, 10, 15, 7, 0, tzinfo=timezone.utc)


def test_sqlite_store_is_keyed_by_day(tmp_path, clock):
    store = SqliteQuotaStore(tmp_path / "quota.sqlite3")
    ledger = make_ledger(clock, store=store)
    ledger.record_usage("search")
    ledger.record_usage("videos", count=3)
    assert make_ledger(clock, store=SqliteQuotaStore(tmp_path / "quota.sqlite3")).used() == 103

    clock.advance(days=1)
    assert ledger.used() == 0


def test_market_window(clock):
    window = MarketWindow("America/New_York", 9, 16, True)
    assert window.is_open(clock.now)
    assert window.minutes_remaining(clock.now) == 360

    saturday = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)
    assert not window.is_open(saturday)
    assert window.minutes_remaining(saturday) == 0

    before_open = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)  # 08:00 ET
    assert not window.is_open(before_open)
    assert window.minutes_remaining(before_open) == 420


def test_fresh_budget_during_market_hours_is_aggressive(clock):
    ledger = make_ledger(clock)
    budget = polling_strategy(ledger, channel_count=5, window=MarketWindow(), now=clock.now)
    assert budget.strategy == "aggressive"
    assert budget.poll_interval_minutes <= 1
    assert budget.checks_remaining == 2_000
    assert budget.market_open


@pytest.mark.parametrize(
    "used, strategy, floor",
    [
        (4_000, "normal", 2),
        (6_000, "conservative", 5),
        (8_000, "minimal", 15),
    ],
)
def test_strategy_tiers_apply_floors(clock, used, strategy, floor):
    ledger = make_ledger(clock)
    ledger.record_usage("videos", count=used)
    budget = polling_strategy(ledger, channel_count=5, window=MarketWindow(), now=clock.now)
    assert budget.strategy == strategy
    assert budget.poll_interval_minutes >= floor


def test_exhausted_budget_waits_for_reset(clock):
    ledger = make_ledger(clock)
    ledger.record_usage("videos", count=10_000)
    budget = polling_strategy(ledger, channel_count=5, window=MarketWindow(), now=clock.now)
    assert budget.reason == "quota_exhausted"
    assert budget.poll_interval_minutes == ledger.minutes_until_reset()


def test_after_close_falls_back(clock):
    ledger = make_ledger(clock)
    evening = datetime(2026, 10, 14, 22, 0, tzinfo=timezone.utc)  # 18:00 ET
    budget = polling_strategy(ledger, channel_count=5, window=MarketWindow(), now=evening, off_hours_minutes=30)
    assert budget.poll_interval_minutes == 30
    assert budget.reason == "outside_market_window"


class SlowReadStore(InMemoryQuotaStore):
    def get_units(self, day):
        units = super().get_units(day)
        time.sleep(0.01)
        return units


def test_concurrent_reservations_never_pass_the_limit(clock):
    ledger = make_ledger(clock, store=SlowReadStore(), limit=100)
    ledger.record_usage("videos", count=99)
    granted = []

    def worker():
        granted.append(ledger.reserve("videos"))

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert granted.count(True) == 1
    assert ledger.used() == 100


def test_release_returns_reserved_units(clock):
    ledger = make_ledger(clock, limit=150)
    assert ledger.reserve("search")
    assert not ledger.reserve("search")
    ledger.release("search")
    assert ledger.used() == 0
    assert ledger.reserve("search")


def test_sqlite_reservation_respects_limit(tmp_path, clock):
    ledger = make_ledger(clock, store=SqliteQuotaStore(tmp_path / "quota.sqlite3"), limit=101)
    assert ledger.reserve("search")
    assert ledger.reserve("videos")
    assert not ledger.reserve("videos")
    assert ledger.used() == 101

    ledger.release("videos")
    assert ledger.used() == 100
