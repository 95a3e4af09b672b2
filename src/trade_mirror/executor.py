from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Protocol
from zoneinfo import ZoneInfo

from loguru import logger

from .contracts import contract_spec, front_month_symbol, root_symbol
from .errors import BrokerRejected, ConfigurationMissing, PolicyRejected
from .models import BotRiskPolicy, Direction, TradeEvent, TradeEventKind, TraderCopySettings, utc_now
from .tradovate_client import OrderResult


class Broker(Protocol):
    def get_contract_by_name(self, name: str) -> dict | None: ...

    def place_market_order(self, contract_id: int, action: str, quantity: int, account_id: int | None = None) -> OrderResult: ...

    def place_stop_order(
        self, contract_id: int, action: str, quantity: int, stop_price: float, account_id: int | None = None
    ) -> OrderResult: ...


class ExposureStore(Protocol):
    def get(self, symbol: str) -> int: ...

    def set(self, symbol: str, quantity: int) -> None: ...

    def snapshot(self) -> dict[str, int]: ...


class InMemoryExposureStore:
    def __init__(self) -> None:
        self._positions: dict[str, int] = {}

    def get(self, symbol: str) -> int:
        return self._positions.get(symbol, 0)

    def set(self, symbol: str, quantity: int) -> None:
        if quantity == 0:
            self._positions.pop(symbol, None)
        else:
            self._positions[symbol] = quantity

    def snapshot(self) -> dict[str, int]:
        return dict(self._positions)


@dataclass
class ExecutionResult:
    success: bool
    status: str
    bot_id: str
    trade_id: str
    trader_id: str
    symbol: str
    action: str | None = None
    quantity: int | None = None
    contract: str | None = None
    order_id: int | None = None
    stop_order_id: int | None = None
    rejection: dict | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "bot_id": self.bot_id,
            "trade_id": self.trade_id,
            "trader_id": self.trader_id,
            "symbol": self.symbol,
            "action": self.action,
            "quantity": self.quantity,
            "contract": self.contract,
            "order_id": self.order_id,
            "stop_order_id": self.stop_order_id,
            "rejection": self.rejection,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class RiskGatedExecutor:
    """Mirrors one followed trader's trade events onto a brokerage account under a bot's risk policy."""

    def __init__(
        self,
        policy: BotRiskPolicy,
        broker: Broker | None,
        account_id: int | None = None,
        exposure: ExposureStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.policy = policy
        self.broker = broker
        self.account_id = account_id
        self.exposure = exposure or InMemoryExposureStore()
        self.clock = clock or utc_now
        self.zone = ZoneInfo(policy.trading_timezone)
        self._lock = threading.Lock()
        self._loss_day: date | None = None
        self._daily_loss = 0.0
        self._entries_day: date | None = None
        self._entries_today = 0

    # Daily accounting ---------------------------------------------------

    def _trading_day(self, moment: datetime) -> date:
        return moment.astimezone(self.zone).date()

    @property
    def daily_loss(self) -> float:
        today = self._trading_day(self.clock())
        if self._loss_day != today:
            return 0.0
        return self._daily_loss

    @property
    def entries_today(self) -> int:
        today = self._trading_day(self.clock())
        if self._entries_day != today:
            return 0
        return self._entries_today

    def record_realized_pnl(self, pnl: float, closed_at: datetime) -> float:
        """Count a closed trade's loss toward the bot's day, keyed by close time in the trading timezone."""
        with self._lock:
            today = self._trading_day(self.clock())
            if self._loss_day != today:
                self._loss_day = today
                self._daily_loss = 0.0
            if pnl < 0 and self._trading_day(closed_at) == today:
                self._daily_loss += abs(pnl)
            return self._daily_loss

    def _count_entry(self) -> None:
        today = self._trading_day(self.clock())
        if self._entries_day != today:
            self._entries_day = today
            self._entries_today = 0
        self._entries_today += 1

    # Event handling -----------------------------------------------------

    def on_trade_event(self, event: TradeEvent, trader_id: str | None = None) -> ExecutionResult:
        trader_id = trader_id or event.trader_id
        trade = event.trade
        symbol = root_symbol(trade.symbol)
        result = ExecutionResult(
            success=False,
            status="rejected",
            bot_id=self.policy.bot_id,
            trade_id=trade.id,
            trader_id=trader_id,
            symbol=symbol,
        )

        if event.kind is TradeEventKind.MODIFIED:
            result.status = "skipped"
            result.error = "Position modifications are not mirrored"
            return result
        if event.split_portion:
            result.status = "skipped"
            result.error = "Split-off portion already mirrored as a scale-out"
            return result

        with self._lock:
            try:
                trader = self._check_policy(event, trader_id, symbol)
                if event.kind is TradeEventKind.OPENED:
                    self._enter(event, trader, symbol, result)
                elif event.kind is TradeEventKind.CLOSED:
                    self._exit(symbol, result)
                else:
                    self._scale_out(event, trader, symbol, result)
            except PolicyRejected as exc:
                result.status = "rejected"
                result.rejection = exc.to_dict()
                result.error = str(exc)
                logger.info("Bot {} rejected {} for {}: {}", self.policy.bot_id, event.kind.value, symbol, exc)
            except (BrokerRejected, ConfigurationMissing) as exc:
                result.status = "failed"
                result.error = str(exc)
                logger.warning("Bot {} order failed for {}: {}", self.policy.bot_id, symbol, exc)
        return result

    def _check_policy(self, event: TradeEvent, trader_id: str, symbol: str) -> TraderCopySettings:
        policy = self.policy
        is_entry = event.kind is TradeEventKind.OPENED
        direction = event.trade.direction

        if self.broker is None:
            raise PolicyRejected("notInitialized", "Executor not initialized")
        if not policy.enabled:
            raise PolicyRejected("botDisabled", "Bot is disabled")
        if not policy.auto_execute:
            raise PolicyRejected("autoExecuteDisabled", "Auto-execute is disabled")

        trader = policy.settings_for(trader_id)
        if trader is None or not trader.enabled:
            raise PolicyRejected("traderNotEnabled", f"Trader {trader_id} is not enabled for copying")

        if is_entry and direction is Direction.LONG and not policy.allow_longs:
            raise PolicyRejected("allowLongs", "Long trades are disabled", limit=False, current="LONG")
        if is_entry and direction is Direction.SHORT and not policy.allow_shorts:
            raise PolicyRejected("allowShorts", "Short trades are disabled", limit=False, current="SHORT")

        if trader.only_primary_instruments and symbol not in {root_symbol(item) for item in trader.primary_instruments}:
            raise PolicyRejected(
                "primaryInstruments",
                f"Instrument {symbol} not in allowed list for trader",
                limit=list(trader.primary_instruments),
                current=symbol,
            )
        if policy.allowed_symbols and symbol not in {root_symbol(item) for item in policy.allowed_symbols}:
            raise PolicyRejected(
                "allowedSymbols",
                f"Instrument {symbol} not allowed for bot",
                limit=list(policy.allowed_symbols),
                current=symbol,
            )

        if is_entry:
            daily_loss = self.daily_loss
            if daily_loss >= policy.max_daily_loss:
                raise PolicyRejected(
                    "maxDailyLoss", "Daily loss limit reached", limit=policy.max_daily_loss, current=round(daily_loss, 2)
                )
            open_count = len(self.exposure.snapshot())
            if open_count >= policy.max_concurrent_trades:
                raise PolicyRejected(
                    "maxConcurrentTrades",
                    "Max concurrent trades reached",
                    limit=policy.max_concurrent_trades,
                    current=open_count,
                )
            if self.entries_today >= policy.max_daily_trades:
                raise PolicyRejected(
                    "maxDailyTrades",
                    "Max daily trades reached",
                    limit=policy.max_daily_trades,
                    current=self.entries_today,
                )
        return trader

    def _quantity(self, size: float, trader: TraderCopySettings) -> int:
        quantity = math.floor(size * trader.copy_multiplier)
        quantity = min(quantity, self.policy.max_position_size)
        return max(quantity, 1)

    def _resolve_contract(self, symbol: str) -> tuple[str, int]:
        name = front_month_symbol(symbol, self._trading_day(self.clock()))
        contract = self.broker.get_contract_by_name(name)
        if not contract:
            raise BrokerRejected(f"Contract not found for symbol {symbol} ({name})")
        return name, int(contract["id"])

    def _enter(self, event: TradeEvent, trader: TraderCopySettings, symbol: str, result: ExecutionResult) -> None:
        trade = event.trade
        quantity = self._quantity(trade.size, trader)
        stop_loss = trade.latest_stop_loss

        if trader.max_loss_per_trade > 0 and stop_loss is not None:
            spec = contract_spec(symbol)
            risk = abs(trade.entry_price - stop_loss) / spec.tick_size * spec.tick_value * quantity
            if risk > trader.max_loss_per_trade:
                raise PolicyRejected(
                    "maxLossPerTrade",
                    f"Stop distance risks ${risk:.2f} on {quantity} {symbol}",
                    limit=trader.max_loss_per_trade,
                    current=round(risk, 2),
                )

        action = "Buy" if trade.direction is Direction.LONG else "Sell"
        contract_name, contract_id = self._resolve_contract(symbol)
        order = self.broker.place_market_order(contract_id, action, quantity, self.account_id)

        signed = quantity if trade.direction is Direction.LONG else -quantity
        self.exposure.set(symbol, self.exposure.get(symbol) + signed)
        self._count_entry()
        result.success = True
        result.status = "executed"
        result.action = action
        result.quantity = quantity
        result.contract = contract_name
        result.order_id = order.order_id
        logger.info("Bot {} entered {} {} {} (order {})", self.policy.bot_id, action, quantity, contract_name, order.order_id)

        if trader.use_trader_stops and stop_loss is not None:
            stop_action = "Sell" if action == "Buy" else "Buy"
            try:
                stop_order = self.broker.place_stop_order(contract_id, stop_action, quantity, stop_loss, self.account_id)
                result.stop_order_id = stop_order.order_id
            except BrokerRejected as exc:
                result.error = f"Protective stop not placed: {exc}"
                logger.warning("Bot {} protective stop failed for {}: {}", self.policy.bot_id, contract_name, exc)

    def _exit(self, symbol: str, result: ExecutionResult) -> None:
        current = self.exposure.get(symbol)
        if current == 0:
            raise PolicyRejected("noOpenExposure", f"No open position in {symbol} to exit", limit=None, current=0)
        action = "Sell" if current > 0 else "Buy"
        contract_name, contract_id = self._resolve_contract(symbol)
        order = self.broker.place_market_order(contract_id, action, abs(current), self.account_id)

        self.exposure.set(symbol, 0)
        result.success = True
        result.status = "executed"
        result.action = action
        result.quantity = abs(current)
        result.contract = contract_name
        result.order_id = order.order_id
        logger.info("Bot {} exited {} {} {} (order {})", self.policy.bot_id, action, abs(current), contract_name, order.order_id)

    def _scale_out(self, event: TradeEvent, trader: TraderCopySettings, symbol: str, result: ExecutionResult) -> None:
        if not trader.copy_scale_outs:
            result.status = "skipped"
            result.error = "Scale-outs are not copied for this trader"
            return
        current = self.exposure.get(symbol)
        if current == 0:
            raise PolicyRejected("noOpenExposure", f"No open position in {symbol} to scale out", limit=None, current=0)

        closed = event.closed_size or 0.0
        remaining = event.signal.size if event.signal is not None else event.trade.size
        total = closed + remaining
        quantity = min(abs(current), math.floor(abs(current) * closed / total)) if total > 0 else 0
        if quantity < 1:
            result.status = "skipped"
            result.error = f"Scale-out of {closed:g}/{total:g} rounds to zero contracts"
            return

        action = "Sell" if current > 0 else "Buy"
        contract_name, contract_id = self._resolve_contract(symbol)
        order = self.broker.place_market_order(contract_id, action, quantity, self.account_id)

        self.exposure.set(symbol, current - quantity if current > 0 else current + quantity)
        result.success = True
        result.status = "executed"
        result.action = action
        result.quantity = quantity
        result.contract = contract_name
        result.order_id = order.order_id

    def status(self) -> dict[str, Any]:
        return {
            "bot_id": self.policy.bot_id,
            "enabled": self.policy.enabled,
            "auto_execute": self.policy.auto_execute,
            "daily_loss": round(self.daily_loss, 2),
            "max_daily_loss": self.policy.max_daily_loss,
            "entries_today": self.entries_today,
            "max_daily_trades": self.policy.max_daily_trades,
            "open_exposure": self.exposure.snapshot(),
            "max_concurrent_trades": self.policy.max_concurrent_trades,
            "followed_traders": self.policy.followed_trader_ids,
        }
