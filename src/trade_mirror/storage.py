"""Repositories for trades, bot policies, monitored channels and execution results."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .db import get_connection, initialize_database
from .executor import ExecutionResult
from .models import BotRiskPolicy, MonitoredChannel, Trade


class TradeRepository(Protocol):
    def save(self, trade: Trade) -> None: ...

    def load(self, channel_id: str) -> list[Trade]: ...

    def recent(self, limit: int = 100) -> list[Trade]: ...

    def load_policy(self, bot_id: str) -> BotRiskPolicy | None: ...

    def save_policy(self, policy: BotRiskPolicy) -> None: ...

    def upsert_channel(self, channel: MonitoredChannel) -> None: ...

    def list_channels(self, active_only: bool = True) -> list[MonitoredChannel]: ...

    def record_execution(self, result: ExecutionResult) -> None: ...

    def record_event(self, event_type: str, message: str, metadata: dict | None = None) -> None: ...

class InMemoryTradeRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._trades: dict[str, Trade] = {}
        self._policies: dict[str, BotRiskPolicy] = {}
        self._channels: dict[str, MonitoredChannel] = {}
        self.executions: list[ExecutionResult] = []
        self.events: list[dict] = []

    def save(self, trade: Trade) -> None:
        with self._lock:
            self._trades[trade.id] = Trade.from_dict(trade.to_dict())

    def load(self, channel_id: str) -> list[Trade]:
        with self._lock:
            trades = [trade for trade in self._trades.values() if trade.channel_id == channel_id]
        return sorted(trades, key=lambda trade: trade.entry_time)

    def recent(self, limit: int = 100) -> list[Trade]:
        with self._lock:
            trades = sorted(self._trades.values(), key=lambda trade: trade.entry_time, reverse=True)
        return trades[:limit]

    def load_policy(self, bot_id: str) -> BotRiskPolicy | None:
        with self._lock:
            return self._policies.get(bot_id)

    def save_policy(self, policy: BotRiskPolicy) -> None:
        with self._lock:
            self._policies[policy.bot_id] = policy

    def upsert_channel(self, channel: MonitoredChannel) -> None:
        with self._lock:
            self._channels[channel.id] = channel

    def list_channels(self, active_only: bool = True) -> list[MonitoredChannel]:
        with self._lock:
            channels = list(self._channels.values())
        return [channel for channel in channels if channel.active or not active_only]

    def record_execution(self, result: ExecutionResult) -> None:
        with self._lock:
            self.executions.append(result)

    def record_event(self, event_type: str, message: str, metadata: dict | None = None) -> None:
        with self._lock:
            self.events.append({"event_type": event_type, "message": message, "metadata": metadata or {}, "created_at": _now()})


class SqliteTradeRepository:
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path
        initialize_database(db_path)

    def save(self, trade: Trade) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO trades (
                    id, stream_id, channel_id, symbol, direction, entry_time, entry_price,
                    exit_time, exit_price, size, pnl, result, trade_json, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    exit_time = excluded.exit_time,
                    exit_price = excluded.exit_price,
                    size = excluded.size,
                    pnl = excluded.pnl,
                    result = excluded.result,
                    trade_json = excluded.trade_json,
                    updated_at = excluded.updated_at
                """,
                (
                    trade.id,
                    trade.stream_id,
                    trade.channel_id,
                    trade.symbol,
                    trade.direction.value,
                    trade.entry_time.isoformat(),
                    trade.entry_price,
                    trade.exit_time.isoformat() if trade.exit_time else None,
                    trade.exit_price,
                    trade.size,
                    trade.pnl,
                    trade.result.value,
                    json.dumps(trade.to_dict()),
                    _now(),
                ),
            )
            conn.commit()

    def load(self, channel_id: str) -> list[Trade]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT trade_json FROM trades WHERE channel_id = ? ORDER BY entry_time ASC",
                (channel_id,),
            ).fetchall()
        return [Trade.from_dict(json.loads(row["trade_json"])) for row in rows]

    def recent(self, limit: int = 100) -> list[Trade]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT trade_json FROM trades ORDER BY entry_time DESC LIMIT ?",
                (max(1, limit),),
            ).fetchall()
        return [Trade.from_dict(json.loads(row["trade_json"])) for row in rows]

    def load_policy(self, bot_id: str) -> BotRiskPolicy | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT policy_json FROM bot_policies WHERE bot_id = ?", (bot_id,)).fetchone()
        if row is None:
            return None
        return BotRiskPolicy.from_dict(json.loads(row["policy_json"]))

    def save_policy(self, policy: BotRiskPolicy) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO bot_policies (bot_id, policy_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(bot_id) DO UPDATE SET policy_json = excluded.policy_json, updated_at = excluded.updated_at
                """,
                (policy.bot_id, json.dumps(policy.to_dict()), _now()),
            )
            conn.commit()

    def upsert_channel(self, channel: MonitoredChannel) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO channels (
                    id, name, handle, external_id, platform, is_live, current_stream_id,
                    last_checked_at, last_live_at, active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    handle = excluded.handle,
                    external_id = excluded.external_id,
                    platform = excluded.platform,
                    is_live = excluded.is_live,
                    current_stream_id = excluded.current_stream_id,
                    last_checked_at = excluded.last_checked_at,
                    last_live_at = excluded.last_live_at,
                    active = excluded.active
                """,
                (
                    channel.id,
                    channel.name,
                    channel.handle,
                    channel.external_id,
                    channel.platform,
                    int(channel.is_live),
                    channel.current_stream_id,
                    channel.last_checked_at.isoformat() if channel.last_checked_at else None,
                    channel.last_live_at.isoformat() if channel.last_live_at else None,
                    int(channel.active),
                ),
            )
            conn.commit()

    def list_channels(self, active_only: bool = True) -> list[MonitoredChannel]:
        query = "SELECT * FROM channels"
        if active_only:
            query += " WHERE active = 1"
        with get_connection(self.db_path) as conn:
            rows = conn.execute(query + " ORDER BY name ASC").fetchall()
        return [
            MonitoredChannel(
                id=row["id"],
                name=row["name"],
                handle=row["handle"] or "",
                external_id=row["external_id"],
                platform=row["platform"] or "unknown",
                is_live=bool(row["is_live"]),
                current_stream_id=row["current_stream_id"],
                last_checked_at=_parse(row["last_checked_at"]),
                last_live_at=_parse(row["last_live_at"]),
                active=bool(row["active"]),
            )
            for row in rows
        ]

    def record_execution(self, result: ExecutionResult) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO executions (
                    bot_id, trade_id, trader_id, symbol, status, action, quantity, order_id,
                    result_json, created_at, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.bot_id,
                    result.trade_id,
                    result.trader_id,
                    result.symbol,
                    result.status,
                    result.action,
                    result.quantity,
                    result.order_id,
                    json.dumps(result.to_dict()),
                    result.timestamp.isoformat(),
                    result.error,
                ),
            )
            conn.commit()

    def record_event(self, event_type: str, message: str, metadata: dict | None = None) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "INSERT INTO system_events (event_type, message, metadata_json, created_at) VALUES (?, ?, ?, ?)",
                (event_type, message, json.dumps(metadata or {}), _now()),
            )
            conn.commit()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
