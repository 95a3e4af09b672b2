"""Merges screen and verbal detections for a stream into one authoritative trade ledger.

Vision is authoritative for positions: a trade opens and closes only on screen
evidence. Verbal signals either confirm an open trade or wait in a short FIFO
window for a screen change to corroborate them, which blends the confidence of
both sources into the emitted evidence.
"""

from __future__ import annotations

import copy
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from loguru import logger

from .contracts import compute_pnl
from .errors import TradeMirrorError
from .models import (
    CorrelatedSignal,
    Direction,
    PositionObservation,
    SignalKind,
    Trade,
    TradeEvent,
    TradeEventKind,
    TradeResult,
    VerbalKind,
    VerbalSignal,
    new_id,
    utc_now,
)
from .settings import settings
from .vision import detect_position_changes


CORRELATION_AMBIGUOUS = "CorrelationAmbiguous"
CONFIRMED = "Confirmed"
AUDIO_CONFIRMATION_CONFIDENCE = 0.95
MIN_CONFIDENCE = 0.5
CLOSED_TRADES_KEPT_PER_STREAM = 500
CAS_ATTEMPTS = 3

# Which verbal kinds can corroborate which screen change.
MATCHING_KINDS: dict[SignalKind, tuple[VerbalKind, ...]] = {
    SignalKind.ENTRY: (VerbalKind.ENTRY,),
    SignalKind.EXIT: (VerbalKind.EXIT,),
    SignalKind.ADJUSTMENT: (VerbalKind.STOP, VerbalKind.TARGET),
}

TradeSubscriber = Callable[[TradeEvent], None]


class TradeSink(Protocol):
    def save(self, trade: Trade) -> None: ...


@dataclass
class PendingVerbal:
    signal: VerbalSignal
    overall_confidence: float
    id: str = field(default_factory=new_id)
    status: str = CORRELATION_AMBIGUOUS

    @property
    def actionable(self) -> bool:
        return self.overall_confidence >= MIN_CONFIDENCE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "overall_confidence": round(self.overall_confidence, 4),
            "actionable": self.actionable,
            "signal": self.signal.to_dict(),
        }


@dataclass
class StreamState:
    stream_id: str
    channel_id: str
    pending: deque[PendingVerbal] = field(default_factory=deque)
    open_trades: dict[tuple[str, Direction], Trade] = field(default_factory=dict)
    closed_trades: deque[Trade] = field(default_factory=lambda: deque(maxlen=CLOSED_TRADES_KEPT_PER_STREAM))
    positions: list[PositionObservation] = field(default_factory=list)
    last_analyzed_at: datetime | None = None
    version: int = 0

    @property
    def trades(self) -> list[Trade]:
        return list(self.closed_trades) + list(self.open_trades.values())


class CorrelationStore(Protocol):
    def get(self, stream_id: str) -> StreamState | None: ...

    def put(self, state: StreamState) -> None: ...

    def compare_and_swap(self, state: StreamState, expected_version: int) -> bool: ...

    def stream_ids(self) -> list[str]: ...


class InMemoryCorrelationStore:
    """Hands out copies, so a writer only publishes its state through compare_and_swap."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, StreamState] = {}

    def get(self, stream_id: str) -> StreamState | None:
        with self._lock:
            state = self._states.get(stream_id)
            return copy.deepcopy(state) if state is not None else None

    def put(self, state: StreamState) -> None:
        with self._lock:
            self._states[state.stream_id] = copy.deepcopy(state)

    def compare_and_swap(self, state: StreamState, expected_version: int) -> bool:
        with self._lock:
            current = self._states.get(state.stream_id)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                return False
            state.version = expected_version + 1
            self._states[state.stream_id] = copy.deepcopy(state)
            return True

    def stream_ids(self) -> list[str]:
        with self._lock:
            return list(self._states)


@dataclass
class CorrelationResult:
    stream_id: str
    opened: list[Trade] = field(default_factory=list)
    closed: list[Trade] = field(default_factory=list)
    modified: list[Trade] = field(default_factory=list)
    signals: list[CorrelatedSignal] = field(default_factory=list)
    pending: list[PendingVerbal] = field(default_factory=list)
    events: list[TradeEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "opened": [trade.to_dict() for trade in self.opened],
            "closed": [trade.to_dict() for trade in self.closed],
            "modified": [trade.to_dict() for trade in self.modified],
            "signals": [signal.to_dict() for signal in self.signals],
            "pending": [item.to_dict() for item in self.pending],
        }


@dataclass(frozen=True)
class TradeStats:
    total_trades: int
    open_trades: int
    wins: int
    losses: int
    breakeven: int
    win_rate: float
    total_pnl: float
    avg_win: float
    avg_loss: float
    profit_factor: float | None
    largest_win: float
    largest_loss: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def summarize_trades(trades: list[Trade]) -> TradeStats:
    closed = [trade for trade in trades if not trade.is_open]
    wins = [trade.pnl or 0.0 for trade in closed if trade.result is TradeResult.WIN]
    losses = [trade.pnl or 0.0 for trade in closed if trade.result is TradeResult.LOSS]
    breakeven = sum(1 for trade in closed if trade.result is TradeResult.BREAKEVEN)
    gross_win = sum(wins)
    gross_loss = abs(sum(losses))
    profit_factor = round(gross_win / gross_loss, 2) if gross_loss > 0 else None
    return TradeStats(
        total_trades=len(closed),
        open_trades=len(trades) - len(closed),
        wins=len(wins),
        losses=len(losses),
        breakeven=breakeven,
        win_rate=round(len(wins) / len(closed) * 100, 1) if closed else 0.0,
        total_pnl=round(sum(trade.pnl or 0.0 for trade in closed), 2),
        avg_win=round(gross_win / len(wins), 2) if wins else 0.0,
        avg_loss=round(sum(losses) / len(losses), 2) if losses else 0.0,
        profit_factor=profit_factor,
        largest_win=max(wins, default=0.0),
        largest_loss=min(losses, default=0.0),
    )


class SignalCorrelator:
    def __init__(
        self,
        store: CorrelationStore | None = None,
        trade_sink: TradeSink | None = None,
        window_seconds: float | None = None,
        scale_out_policy: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store or InMemoryCorrelationStore()
        self.trade_sink = trade_sink
        self.window = timedelta(seconds=window_seconds or settings.correlation_window_seconds)
        self.scale_out_policy = scale_out_policy or settings.scale_out_policy
        self.vision_confidence = settings.vision_confidence
        self.verbal_discount = settings.unconfirmed_verbal_discount
        self.max_pending = settings.max_pending_signals_per_stream
        self.clock = clock or utc_now
        self._subscribers: list[TradeSubscriber] = []
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def subscribe(self, callback: TradeSubscriber) -> None:
        self._subscribers.append(callback)

    def _lock_for(self, stream_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(stream_id, threading.Lock())

    # Public operations -------------------------------------------------

    def correlate(
        self,
        stream_id: str,
        opened: list[PositionObservation],
        closed: list[PositionObservation],
        modified: list[tuple[PositionObservation, PositionObservation]],
        channel_id: str = "",
        observed_at: datetime | None = None,
    ) -> CorrelationResult:
        """Apply one screen diff to the stream's open trades."""
        observed_at = observed_at or self.clock()

        def apply(state: StreamState, result: CorrelationResult) -> None:
            for position in opened:
                self._open(state, position, result)
            for position in closed:
                self._close(state, position, observed_at, result)
            for previous, current in modified:
                self._modify(state, previous, current, observed_at, result)

        return self._mutate(stream_id, channel_id, apply)

    def ingest_snapshot(
        self,
        stream_id: str,
        positions: list[PositionObservation],
        channel_id: str = "",
        observed_at: datetime | None = None,
    ) -> tuple[CorrelationResult, list[PositionObservation]]:
        """Diff a full screen snapshot against the last one for the stream and correlate the changes."""
        observed_at = observed_at or self.clock()
        previous: list[PositionObservation] = []

        def apply(state: StreamState, result: CorrelationResult) -> None:
            previous[:] = state.positions
            changes = detect_position_changes(state.positions, positions)
            for position in changes.opened:
                self._open(state, position, result)
            for position in changes.closed:
                self._close(state, position, observed_at, result)
            for before, after in changes.modified:
                self._modify(state, before, after, observed_at, result)
            state.positions = list(positions)
            state.last_analyzed_at = observed_at

        result = self._mutate(stream_id, channel_id, apply)
        return result, previous

    def ingest_verbal(self, signal: VerbalSignal, channel_id: str = "") -> CorrelationResult:
        def apply(state: StreamState, result: CorrelationResult) -> None:
            self._verbal(state, signal, result)

        return self._mutate(signal.stream_id, channel_id, apply)

    def ingest_verbal_batch(self, stream_id: str, signals: list[VerbalSignal], channel_id: str = "") -> CorrelationResult:
        def apply(state: StreamState, result: CorrelationResult) -> None:
            for signal in signals:
                self._verbal(state, signal, result)

        return self._mutate(stream_id, channel_id, apply)

    def stream_state(self, stream_id: str) -> StreamState | None:
        return self.store.get(stream_id)

    def stream_ids(self) -> list[str]:
        return self.store.stream_ids()

    def trades(self, stream_id: str | None = None, channel_id: str | None = None) -> list[Trade]:
        stream_ids = [stream_id] if stream_id else self.store.stream_ids()
        collected: list[Trade] = []
        for item in stream_ids:
            state = self.store.get(item)
            if state is None:
                continue
            if channel_id and state.channel_id != channel_id:
                continue
            collected.extend(state.trades)
        return sorted(collected, key=lambda trade: trade.entry_time)

    # State transitions -------------------------------------------------

    def _mutate(
        self,
        stream_id: str,
        channel_id: str,
        apply: Callable[[StreamState, CorrelationResult], None],
    ) -> CorrelationResult:
        with self._lock_for(stream_id):
            for _ in range(CAS_ATTEMPTS):
                state = self.store.get(stream_id) or StreamState(stream_id=stream_id, channel_id=channel_id)
                if channel_id and not state.channel_id:
                    state.channel_id = channel_id
                expected = state.version
                result = CorrelationResult(stream_id=stream_id)
                apply(state, result)
                if self.store.compare_and_swap(state, expected):
                    break
                logger.warning("Correlation state for {} changed concurrently; retrying", stream_id)
            else:
                raise TradeMirrorError(f"Could not commit correlation state for stream {stream_id}")

            # Persisted and published under the stream lock, in commit order.
            self._persist(result)
            self._publish(result.events)
        return result

    def _persist(self, result: CorrelationResult) -> None:
        if self.trade_sink is None:
            return
        seen: set[str] = set()
        for trade in result.opened + result.modified + result.closed:
            if trade.id in seen:
                continue
            seen.add(trade.id)
            self.trade_sink.save(trade)

    def _publish(self, events: list[TradeEvent]) -> None:
        for event in events:
            for subscriber in self._subscribers:
                try:
                    subscriber(event)
                except Exception:
                    logger.exception("Trade event subscriber failed for trade {}", event.trade.id)

    def _evict(self, state: StreamState, reference: datetime) -> None:
        cutoff = reference - self.window * 2
        state.pending = deque(item for item in state.pending if item.signal.observed_at >= cutoff)

    def _take_pending(
        self,
        state: StreamState,
        kind: SignalKind,
        symbol: str,
        direction: Direction,
        observed_at: datetime,
    ) -> PendingVerbal | None:
        self._evict(state, observed_at)
        window_start = observed_at - self.window
        for item in state.pending:
            signal = item.signal
            if signal.kind not in MATCHING_KINDS[kind]:
                continue
            if signal.observed_at < window_start:
                continue
            if signal.symbol and signal.symbol != symbol:
                continue
            if signal.direction and signal.direction != direction:
                continue
            state.pending.remove(item)
            return item
        return None

    def _blend(self, audio_confidence: float | None) -> float:
        if audio_confidence is None:
            return self.vision_confidence
        return min(1.0, self.vision_confidence * 0.6 + audio_confidence * 0.4 + 0.1)

    def _screen_signal(
        self,
        state: StreamState,
        kind: SignalKind,
        position: PositionObservation,
        created_at: datetime,
        matched: PendingVerbal | None,
        **overrides: Any,
    ) -> CorrelatedSignal:
        audio_confidence = matched.signal.confidence if matched else None
        values: dict[str, Any] = {
            "id": new_id(),
            "stream_id": state.stream_id,
            "symbol": position.symbol,
            "direction": position.direction,
            "kind": kind,
            "size": position.size,
            "overall_confidence": round(self._blend(audio_confidence), 4),
            "created_at": created_at,
            "current_price": position.current_price,
            "stop_loss": position.stop_loss,
            "take_profit": position.take_profit,
            "realized_pnl": position.realized_pnl,
            "vision_confidence": self.vision_confidence,
            "audio_confidence": audio_confidence,
            "notes": f"confirmed by {matched.signal.source}: {matched.signal.raw_text}" if matched else "",
        }
        values.update(overrides)
        return CorrelatedSignal(**values)

    def _open(self, state: StreamState, position: PositionObservation, result: CorrelationResult) -> None:
        matched = self._take_pending(state, SignalKind.ENTRY, position.symbol, position.direction, position.observed_at)
        signal = self._screen_signal(
            state, SignalKind.ENTRY, position, position.observed_at, matched, entry_price=position.entry_price
        )
        result.signals.append(signal)

        existing = state.open_trades.get(position.key)
        if existing is not None:
            existing.attach(signal)
            result.modified.append(existing)
            logger.info("Duplicate open for {} {} on {}; recorded as evidence", position.direction.value, position.symbol, state.stream_id)
            return

        trade = Trade(
            id=new_id(),
            stream_id=state.stream_id,
            channel_id=state.channel_id,
            symbol=position.symbol,
            direction=position.direction,
            entry_time=position.observed_at,
            entry_price=position.entry_price,
            size=position.size,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            signals=[signal],
        )
        state.open_trades[position.key] = trade
        result.opened.append(trade)
        result.events.append(TradeEvent(TradeEventKind.OPENED, trade, signal))
        logger.info(
            "Trade opened {} {} {} @ {} on {} (confidence {:.2f})",
            trade.direction.value,
            trade.size,
            trade.symbol,
            trade.entry_price,
            state.stream_id,
            signal.overall_confidence,
        )

    def _close(
        self,
        state: StreamState,
        position: PositionObservation,
        observed_at: datetime,
        result: CorrelationResult,
    ) -> None:
        trade = state.open_trades.get(position.key)
        if trade is None:
            # Replay of a close that was already applied, or a position we never saw open.
            logger.debug("No open trade for closed {} {} on {}", position.direction.value, position.symbol, state.stream_id)
            return

        matched = self._take_pending(state, SignalKind.EXIT, position.symbol, position.direction, observed_at)
        exit_price = position.current_price
        if exit_price is None and matched is not None:
            exit_price = matched.signal.price
        if exit_price is None:
            exit_price = position.entry_price
        if position.realized_pnl is not None:
            pnl = round(position.realized_pnl, 2)
        else:
            pnl = compute_pnl(trade.direction, trade.entry_price, exit_price, trade.size, trade.symbol)

        signal = self._screen_signal(
            state, SignalKind.EXIT, position, observed_at, matched, exit_price=exit_price, realized_pnl=pnl
        )
        trade.close(observed_at, exit_price, pnl, signal)
        del state.open_trades[position.key]
        state.closed_trades.append(trade)
        result.signals.append(signal)
        result.closed.append(trade)
        result.events.append(TradeEvent(TradeEventKind.CLOSED, trade, signal))
        logger.info("Trade closed {} {} on {} | P&L: ${:.2f} ({})", trade.direction.value, trade.symbol, state.stream_id, pnl, trade.result.value)

    def _modify(
        self,
        state: StreamState,
        previous: PositionObservation,
        current: PositionObservation,
        observed_at: datetime,
        result: CorrelationResult,
    ) -> None:
        trade = state.open_trades.get(current.key)
        if trade is None:
            # Screen shows a position we have no record of; treat it as a fresh open.
            self._open(state, current, result)
            return

        matched = self._take_pending(state, SignalKind.ADJUSTMENT, current.symbol, current.direction, observed_at)
        notes = f"size {previous.size:g} -> {current.size:g}" if previous.size != current.size else "levels changed"
        if matched is not None:
            notes = f"{notes}; confirmed by {matched.signal.source}: {matched.signal.raw_text}"
        signal = self._screen_signal(
            state, SignalKind.ADJUSTMENT, current, observed_at, matched, entry_price=current.entry_price, notes=notes
        )
        trade.attach(signal)
        result.signals.append(signal)
        if current.stop_loss is not None:
            trade.stop_loss = current.stop_loss
        if current.take_profit is not None:
            trade.take_profit = current.take_profit

        reduced = previous.size - current.size
        if reduced > 0:
            self._scale_out(state, trade, current, reduced, observed_at, signal, result)
            return
        result.modified.append(trade)
        result.events.append(TradeEvent(TradeEventKind.MODIFIED, trade, signal))

    def _scale_out(
        self,
        state: StreamState,
        trade: Trade,
        current: PositionObservation,
        reduced: float,
        observed_at: datetime,
        signal: CorrelatedSignal,
        result: CorrelationResult,
    ) -> None:
        if self.scale_out_policy != "split":
            result.modified.append(trade)
            result.events.append(TradeEvent(TradeEventKind.PARTIAL, trade, signal, closed_size=reduced))
            logger.info("Partial close of {} {} recorded as evidence on {}", reduced, trade.symbol, state.stream_id)
            return

        exit_price = current.current_price if current.current_price is not None else trade.entry_price
        pnl = compute_pnl(trade.direction, trade.entry_price, exit_price, reduced, trade.symbol)
        portion = Trade(
            id=new_id(),
            stream_id=trade.stream_id,
            channel_id=trade.channel_id,
            symbol=trade.symbol,
            direction=trade.direction,
            entry_time=trade.entry_time,
            entry_price=trade.entry_price,
            size=reduced,
            stop_loss=trade.stop_loss,
            take_profit=trade.take_profit,
            signals=list(trade.signals),
        )
        portion.close(observed_at, exit_price, pnl)
        trade.size = current.size
        state.closed_trades.append(portion)
        result.closed.append(portion)
        result.modified.append(trade)
        result.events.append(TradeEvent(TradeEventKind.PARTIAL, trade, signal, closed_size=reduced))
        result.events.append(TradeEvent(TradeEventKind.CLOSED, portion, signal, split_portion=True))
        logger.info("Split partial close {} {} | P&L: ${:.2f}", reduced, trade.symbol, pnl)

    def _verbal(self, state: StreamState, signal: VerbalSignal, result: CorrelationResult) -> None:
        self._evict(state, signal.observed_at)
        trade = self._confirmable_trade(state, signal)
        if trade is not None:
            kind = SignalKind.ENTRY if signal.kind is VerbalKind.ENTRY else SignalKind.ADJUSTMENT
            confirmation = CorrelatedSignal(
                id=new_id(),
                stream_id=state.stream_id,
                symbol=trade.symbol,
                direction=trade.direction,
                kind=kind,
                size=trade.size,
                overall_confidence=AUDIO_CONFIRMATION_CONFIDENCE,
                created_at=signal.observed_at,
                entry_price=trade.entry_price,
                stop_loss=signal.price if signal.kind is VerbalKind.STOP else None,
                take_profit=signal.price if signal.kind is VerbalKind.TARGET else None,
                vision_confidence=self.vision_confidence,
                audio_confidence=signal.confidence,
                notes=f"{signal.source}: {signal.raw_text}",
            )
            trade.attach(confirmation)
            result.signals.append(confirmation)
            result.modified.append(trade)
            result.pending.append(
                PendingVerbal(signal=signal, overall_confidence=AUDIO_CONFIRMATION_CONFIDENCE, status=CONFIRMED)
            )
            return

        item = PendingVerbal(signal=signal, overall_confidence=signal.confidence * self.verbal_discount)
        state.pending.append(item)
        while len(state.pending) > self.max_pending:
            state.pending.popleft()
        result.pending.append(item)

    @staticmethod
    def _confirmable_trade(state: StreamState, signal: VerbalSignal) -> Trade | None:
        # Exits wait for the screen; alerts never confirm anything.
        if signal.kind in (VerbalKind.EXIT, VerbalKind.ALERT):
            return None
        for trade in state.open_trades.values():
            if signal.symbol and signal.symbol != trade.symbol:
                continue
            if signal.direction and signal.direction != trade.direction:
                continue
            return trade
        return None
