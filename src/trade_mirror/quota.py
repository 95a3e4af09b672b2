"""Daily unit budget for the video platform API and the polling cadence derived from it."""

from __future__ import annotations

import math
import sqlite3
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Callable, Protocol
from zoneinfo import ZoneInfo

from loguru import logger

from .db import get_connection, initialize_database
from .models import QuotaState, QuotaStatus
from .settings import settings


API_COSTS: dict[str, int] = {
    "search": 100,
    "videos": 1,
    "channels": 1,
    "playlist_items": 1,
    "live_chat": 5,
}

# Floors (minutes) applied per tier, keyed by the lowest percent-remaining that qualifies.
STRATEGY_TIERS: list[tuple[float, str, int]] = [
    (75.0, "aggressive", 1),
    (50.0, "normal", 2),
    (25.0, "conservative", 5),
]
MINIMAL_FLOOR_MINUTES = 15

Clock = Callable[[], datetime]


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def operation_cost(operation: str) -> int:
    try:
        return API_COSTS[operation]
    except KeyError as exc:
        raise ValueError(f"Unknown quota operation: {operation}") from exc


class QuotaStore(Protocol):
    def get_units(self, day: date) -> int: ...

    def add_units(self, day: date, units: int) -> int: ...

    def try_consume(self, day: date, units: int, limit: int) -> bool: ...

    def release(self, day: date, units: int) -> None: ...


class InMemoryQuotaStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: QuotaState | None = None

    def _state_for(self, day: date) -> QuotaState:
        if self._state is None or self._state.date != day:
            self._state = QuotaState(date=day)
        return self._state

    def get_units(self, day: date) -> int:
        with self._lock:
            state = self._state
            return state.units_used if state is not None and state.date == day else 0

    def add_units(self, day: date, units: int) -> int:
        with self._lock:
            state = self._state_for(day)
            state.units_used += units
            return state.units_used

    def try_consume(self, day: date, units: int, limit: int) -> bool:
        with self._lock:
            state = self._state_for(day)
            if state.units_used + units > limit:
                return False
            state.units_used += units
            return True

    def release(self, day: date, units: int) -> None:
        with self._lock:
            state = self._state
            if state is not None and state.date == day:
                state.units_used = max(0, state.units_used - units)


class SqliteQuotaStore:
    """Quota rows keyed by reset-zone date; increments are a single upsert statement."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or settings.db_path)
        initialize_database(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    def get_units(self, day: date) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT units_used FROM quota_usage WHERE quota_date = ?",
                (day.isoformat(),),
            ).fetchone()
        return int(row["units_used"]) if row else 0

    def add_units(self, day: date, units: int) -> int:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO quota_usage (quota_date, units_used, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(quota_date) DO UPDATE SET
                    units_used = units_used + excluded.units_used,
                    updated_at = excluded.updated_at
                """,
                (day.isoformat(), units, now),
            )
            row = conn.execute(
                "SELECT units_used FROM quota_usage WHERE quota_date = ?",
                (day.isoformat(),),
            ).fetchone()
            conn.commit()
        return int(row["units_used"]) if row else units

    def try_consume(self, day: date, units: int, limit: int) -> bool:
        """Add `units` only if the day stays within `limit`; the check and the add are one statement."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO quota_usage (quota_date, units_used, updated_at) VALUES (?, 0, ?)",
                (day.isoformat(), now),
            )
            cursor = conn.execute(
                """
                UPDATE quota_usage
                SET units_used = units_used + ?, updated_at = ?
                WHERE quota_date = ? AND units_used + ? <= ?
                """,
                (units, now, day.isoformat(), units, limit),
            )
            conn.commit()
        return cursor.rowcount == 1

    def release(self, day: date, units: int) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                "UPDATE quota_usage SET units_used = MAX(0, units_used - ?), updated_at = ? WHERE quota_date = ?",
                (units, now, day.isoformat()),
            )
            conn.commit()


def build_quota_store() -> QuotaStore:
    if settings.quota_store == "sqlite":
        return SqliteQuotaStore(settings.db_path)
    return InMemoryQuotaStore()


class QuotaLedger:
    def __init__(
        self,
        store: QuotaStore | None = None,
        daily_limit: int | None = None,
        reset_timezone: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store or InMemoryQuotaStore()
        self.daily_limit = daily_limit if daily_limit is not None else settings.quota_daily_limit
        self.reset_zone = ZoneInfo(reset_timezone or settings.quota_reset_timezone)
        self.clock = clock or _utc_clock
        self._exhausted_logged_for: date | None = None

    def _today(self) -> date:
        return self.clock().astimezone(self.reset_zone).date()

    def used(self) -> int:
        return self.store.get_units(self._today())

    def remaining(self) -> int:
        return max(0, self.daily_limit - self.used())

    def record_usage(self, operation: str, count: int = 1) -> int:
        """Add the cost of a completed call. Never refuses, even past the limit."""
        units = operation_cost(operation) * max(0, count)
        if units == 0:
            return self.used()
        today = self._today()
        used = self.store.add_units(today, units)
        self._note_exhausted(today, used)
        return used

    def reserve(self, operation: str, count: int = 1) -> bool:
        """Claim the units for a paid call before making it. False when they would pass the limit."""
        units = operation_cost(operation) * max(0, count)
        today = self._today()
        if not self.store.try_consume(today, units, self.daily_limit):
            return False
        if units:
            self._note_exhausted(today, self.store.get_units(today))
        return True

    def release(self, operation: str, count: int = 1) -> None:
        """Hand back a reservation whose call failed."""
        units = operation_cost(operation) * max(0, count)
        if units:
            self.store.release(self._today(), units)

    def _note_exhausted(self, today: date, used: int) -> None:
        if used >= self.daily_limit and self._exhausted_logged_for != today:
            self._exhausted_logged_for = today
            logger.warning("Daily quota exhausted: used={} limit={}", used, self.daily_limit)

    def has_capacity(self, operation: str, count: int = 1) -> bool:
        return self.used() + operation_cost(operation) * count <= self.daily_limit

    def reset_at(self) -> datetime:
        local_now = self.clock().astimezone(self.reset_zone)
        next_day = local_now.date() + timedelta(days=1)
        return datetime.combine(next_day, time.min, tzinfo=self.reset_zone).astimezone(timezone.utc)

    def status(self) -> QuotaStatus:
        used = self.used()
        return QuotaStatus(
            used=used,
            remaining=max(0, self.daily_limit - used),
            percent_used=(used / self.daily_limit) * 100 if self.daily_limit else 100.0,
            reset_at=self.reset_at(),
            daily_limit=self.daily_limit,
        )

    def minutes_until_reset(self) -> int:
        delta = self.reset_at() - self.clock().astimezone(timezone.utc)
        return max(1, math.ceil(delta.total_seconds() / 60))


@dataclass(frozen=True)
class MarketWindow:
    timezone_name: str = "America/New_York"
    open_hour: int = 9
    close_hour: int = 16
    market_hours_only: bool = True

    @classmethod
    def from_settings(cls) -> "MarketWindow":
        return cls(
            timezone_name=settings.market_timezone,
            open_hour=settings.market_open_hour,
            close_hour=settings.market_close_hour,
            market_hours_only=settings.market_hours_only,
        )

    def _local(self, now: datetime) -> datetime:
        return now.astimezone(ZoneInfo(self.timezone_name))

    def is_open(self, now: datetime) -> bool:
        if not self.market_hours_only:
            return True
        local = self._local(now)
        if local.weekday() >= 5:
            return False
        return self.open_hour <= local.hour < self.close_hour

    def minutes_remaining(self, now: datetime) -> int:
        """Minutes of polling window left today; a weekday before the open counts the full window."""
        local = self._local(now)
        if not self.market_hours_only:
            midnight = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=local.tzinfo)
            return max(0, math.ceil((midnight - local).total_seconds() / 60))
        if local.weekday() >= 5:
            return 0
        minute_of_day = local.hour * 60 + local.minute
        open_minute = self.open_hour * 60
        close_minute = self.close_hour * 60
        if minute_of_day < open_minute:
            return close_minute - open_minute
        if minute_of_day < close_minute:
            return close_minute - minute_of_day
        return 0


@dataclass(frozen=True)
class PollingBudget:
    total_daily: int
    used: int
    remaining: int
    checks_remaining: int
    poll_interval_minutes: int
    strategy: str
    minutes_remaining: int
    market_open: bool
    reason: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "total_daily": self.total_daily,
            "used": self.used,
            "remaining": self.remaining,
            "checks_remaining": self.checks_remaining,
            "poll_interval_minutes": self.poll_interval_minutes,
            "strategy": self.strategy,
            "minutes_remaining": self.minutes_remaining,
            "market_open": self.market_open,
            "reason": self.reason,
        }


def polling_strategy(
    ledger: QuotaLedger,
    channel_count: int,
    window: MarketWindow | None = None,
    now: datetime | None = None,
    off_hours_minutes: int | None = None,
) -> PollingBudget:
    """Spread the remaining units evenly over what is left of the polling window."""
    window = window or MarketWindow.from_settings()
    now = now or ledger.clock()
    fallback = off_hours_minutes if off_hours_minutes is not None else settings.off_hours_poll_minutes
    status = ledger.status()
    remaining = status.remaining
    units_per_poll = max(1, channel_count) * API_COSTS["videos"]
    checks_remaining = remaining // units_per_poll
    minutes_remaining = window.minutes_remaining(now)
    market_open = window.is_open(now)

    def budget(interval: int, strategy: str, reason: str = "") -> PollingBudget:
        return PollingBudget(
            total_daily=status.daily_limit,
            used=status.used,
            remaining=remaining,
            checks_remaining=checks_remaining,
            poll_interval_minutes=interval,
            strategy=strategy,
            minutes_remaining=minutes_remaining,
            market_open=market_open,
            reason=reason,
        )

    if checks_remaining <= 0:
        return budget(ledger.minutes_until_reset(), "minimal", "quota_exhausted")
    if minutes_remaining <= 0:
        return budget(fallback, "minimal", "outside_market_window")

    interval = math.ceil(minutes_remaining / checks_remaining)
    percent_remaining = (remaining / status.daily_limit) * 100
    for threshold, name, floor in STRATEGY_TIERS:
        if percent_remaining > threshold:
            return budget(max(floor, interval), name)
    return budget(max(MINIMAL_FLOOR_MINUTES, interval), "minimal")
