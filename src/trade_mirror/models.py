"""Domain records that flow between the poller, the correlator and the executor."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @classmethod
    def parse(cls, value: Any) -> "Direction | None":
        text = str(value or "").strip().upper()
        if text in {"LONG", "BUY", "BOUGHT"}:
            return cls.LONG
        if text in {"SHORT", "SELL", "SOLD"}:
            return cls.SHORT
        return None


class VerbalKind(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    STOP = "STOP"
    TARGET = "TARGET"
    ALERT = "ALERT"


class SignalKind(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    ADJUSTMENT = "ADJUSTMENT"


class TradeResult(str, Enum):
    OPEN = "OPEN"
    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"

    @classmethod
    def from_pnl(cls, pnl: float) -> "TradeResult":
        if pnl > 0:
            return cls.WIN
        if pnl < 0:
            return cls.LOSS
        return cls.BREAKEVEN


class LiveStatus(str, Enum):
    LIVE = "LIVE"
    NOT_LIVE = "NOT_LIVE"
    UNKNOWN = "UNKNOWN"


class TradeEventKind(str, Enum):
    OPENED = "OPENED"
    CLOSED = "CLOSED"
    MODIFIED = "MODIFIED"
    PARTIAL = "PARTIAL"


@dataclass
class QuotaState:
    date: date
    units_used: int = 0


@dataclass(frozen=True)
class QuotaStatus:
    used: int
    remaining: int
    percent_used: float
    reset_at: datetime
    daily_limit: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "remaining": self.remaining,
            "percent_used": round(self.percent_used, 1),
            "reset_at": self.reset_at.isoformat(),
            "daily_limit": self.daily_limit,
        }


@dataclass
class MonitoredChannel:
    id: str
    name: str
    handle: str = ""
    external_id: str | None = None
    platform: str = "unknown"
    is_live: bool = False
    current_stream_id: str | None = None
    last_checked_at: datetime | None = None
    last_live_at: datetime | None = None
    active: bool = True

    def deactivate(self) -> None:
        self.active = False
        self.is_live = False
        self.current_stream_id = None


@dataclass
class PositionObservation:
    stream_id: str
    symbol: str
    direction: Direction
    size: float
    entry_price: float
    current_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    realized_pnl: float | None = None
    unrealized_pnl: float | None = None
    observed_at: datetime = field(default_factory=utc_now)
    confidence: float | None = None

    @property
    def key(self) -> tuple[str, Direction]:
        return (self.symbol, self.direction)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["direction"] = self.direction.value
        payload["observed_at"] = self.observed_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, stream_id: str, raw: dict[str, Any], observed_at: datetime | None = None) -> "PositionObservation | None":
        direction = Direction.parse(raw.get("direction"))
        symbol = str(raw.get("symbol") or "").strip().upper()
        if direction is None or not symbol:
            return None
        try:
            entry_price = float(raw.get("entryPrice", raw.get("entry_price")) or 0.0)
            size = float(raw.get("size") or 1)
        except (TypeError, ValueError):
            return None
        return cls(
            stream_id=stream_id,
            symbol=symbol,
            direction=direction,
            size=size,
            entry_price=entry_price,
            current_price=_optional_float(raw.get("currentPrice", raw.get("current_price"))),
            stop_loss=_optional_float(raw.get("stopLoss", raw.get("stop_loss"))),
            take_profit=_optional_float(raw.get("takeProfit", raw.get("take_profit"))),
            realized_pnl=_optional_float(raw.get("realizedPnl", raw.get("realized_pnl"))),
            unrealized_pnl=_optional_float(raw.get("unrealizedPnl", raw.get("unrealized_pnl"))),
            observed_at=observed_at or utc_now(),
        )


@dataclass
class VerbalSignal:
    stream_id: str
    kind: VerbalKind
    confidence: float
    symbol: str | None = None
    direction: Direction | None = None
    price: float | None = None
    size: float | None = None
    observed_at: datetime = field(default_factory=utc_now)
    raw_text: str = ""
    source: str = "transcript"

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "kind": self.kind.value,
            "confidence": self.confidence,
            "symbol": self.symbol,
            "direction": self.direction.value if self.direction else None,
            "price": self.price,
            "size": self.size,
            "observed_at": self.observed_at.isoformat(),
            "raw_text": self.raw_text,
            "source": self.source,
        }


@dataclass(frozen=True)
class CorrelatedSignal:
    id: str
    stream_id: str
    symbol: str
    direction: Direction
    kind: SignalKind
    size: float
    overall_confidence: float
    created_at: datetime
    entry_price: float | None = None
    exit_price: float | None = None
    current_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    realized_pnl: float | None = None
    vision_confidence: float | None = None
    audio_confidence: float | None = None
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["direction"] = self.direction.value
        payload["kind"] = self.kind.value
        payload["created_at"] = self.created_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CorrelatedSignal":
        return cls(
            id=str(raw["id"]),
            stream_id=str(raw["stream_id"]),
            symbol=str(raw["symbol"]),
            direction=Direction(raw["direction"]),
            kind=SignalKind(raw["kind"]),
            size=float(raw.get("size") or 0.0),
            overall_confidence=float(raw.get("overall_confidence") or 0.0),
            created_at=datetime.fromisoformat(raw["created_at"]),
            entry_price=_optional_float(raw.get("entry_price")),
            exit_price=_optional_float(raw.get("exit_price")),
            current_price=_optional_float(raw.get("current_price")),
            stop_loss=_optional_float(raw.get("stop_loss")),
            take_profit=_optional_float(raw.get("take_profit")),
            realized_pnl=_optional_float(raw.get("realized_pnl")),
            vision_confidence=_optional_float(raw.get("vision_confidence")),
            audio_confidence=_optional_float(raw.get("audio_confidence")),
            notes=str(raw.get("notes") or ""),
        )


class TradeClosedError(RuntimeError):
    pass


@dataclass
class Trade:
    id: str
    stream_id: str
    channel_id: str
    symbol: str
    direction: Direction
    entry_time: datetime
    entry_price: float
    size: float
    exit_time: datetime | None = None
    exit_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    pnl: float | None = None
    result: TradeResult = TradeResult.OPEN
    signals: list[CorrelatedSignal] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.result is TradeResult.OPEN

    @property
    def duration_seconds(self) -> int | None:
        if self.exit_time is None:
            return None
        return int(round((self.exit_time - self.entry_time).total_seconds()))

    @property
    def latest_stop_loss(self) -> float | None:
        for signal in reversed(self.signals):
            if signal.stop_loss is not None:
                return signal.stop_loss
        return self.stop_loss

    def attach(self, signal: CorrelatedSignal) -> None:
        if not self.is_open:
            raise TradeClosedError(f"Trade {self.id} is already {self.result.value}")
        self.signals.append(signal)

    def close(self, exit_time: datetime, exit_price: float, pnl: float, signal: CorrelatedSignal | None = None) -> None:
        if not self.is_open:
            raise TradeClosedError(f"Trade {self.id} is already {self.result.value}")
        if signal is not None:
            self.signals.append(signal)
        self.exit_time = exit_time
        self.exit_price = exit_price
        self.pnl = pnl
        self.result = TradeResult.from_pnl(pnl)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stream_id": self.stream_id,
            "channel_id": self.channel_id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "entry_time": self.entry_time.isoformat(),
            "entry_price": self.entry_price,
            "exit_time": self.exit_time.isoformat() if self.exit_time else None,
            "exit_price": self.exit_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "size": self.size,
            "pnl": self.pnl,
            "result": self.result.value,
            "duration_seconds": self.duration_seconds,
            "signals": [signal.to_dict() for signal in self.signals],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Trade":
        exit_time = raw.get("exit_time")
        return cls(
            id=str(raw["id"]),
            stream_id=str(raw["stream_id"]),
            channel_id=str(raw["channel_id"]),
            symbol=str(raw["symbol"]),
            direction=Direction(raw["direction"]),
            entry_time=datetime.fromisoformat(raw["entry_time"]),
            entry_price=float(raw["entry_price"]),
            size=float(raw["size"]),
            exit_time=datetime.fromisoformat(exit_time) if exit_time else None,
            exit_price=_optional_float(raw.get("exit_price")),
            stop_loss=_optional_float(raw.get("stop_loss")),
            take_profit=_optional_float(raw.get("take_profit")),
            pnl=_optional_float(raw.get("pnl")),
            result=TradeResult(raw.get("result") or "OPEN"),
            signals=[CorrelatedSignal.from_dict(item) for item in raw.get("signals") or []],
        )


@dataclass(frozen=True)
class TradeEvent:
    kind: TradeEventKind
    trade: Trade
    signal: CorrelatedSignal | None = None
    closed_size: float | None = None
    # Set on the CLOSED event of a split-off portion; the paired PARTIAL carries the reduction.
    split_portion: bool = False

    @property
    def trader_id(self) -> str:
        return self.trade.channel_id


@dataclass
class TraderCopySettings:
    trader_id: str
    enabled: bool = True
    allocation_weight: float = 100.0
    copy_multiplier: float = 1.0
    max_loss_per_trade: float = 0.0
    only_primary_instruments: bool = False
    primary_instruments: list[str] = field(default_factory=list)
    copy_scale_outs: bool = True
    use_trader_stops: bool = True


@dataclass
class BotRiskPolicy:
    bot_id: str
    enabled: bool = True
    auto_execute: bool = True
    max_daily_loss: float = 500.0
    max_position_size: int = 1
    max_concurrent_trades: int = 5
    max_daily_trades: int = 10
    allowed_symbols: list[str] = field(default_factory=list)
    allow_longs: bool = True
    allow_shorts: bool = True
    trading_timezone: str = "America/New_York"
    trader_settings: list[TraderCopySettings] = field(default_factory=list)

    def settings_for(self, trader_id: str) -> TraderCopySettings | None:
        for item in self.trader_settings:
            if item.trader_id == trader_id:
                return item
        return None

    @property
    def followed_trader_ids(self) -> list[str]:
        return [item.trader_id for item in self.trader_settings if item.enabled]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "BotRiskPolicy":
        traders = [TraderCopySettings(**item) for item in raw.get("trader_settings") or []]
        fields = {key: value for key, value in raw.items() if key != "trader_settings"}
        return cls(**fields, trader_settings=traders)


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
