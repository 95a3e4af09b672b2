from __future__ import annotations

import threading

from loguru import logger

from .alerts import AlertRouter
from .executor import ExecutionResult, RiskGatedExecutor
from .models import TradeEvent, TradeEventKind
from .storage import TradeRepository


class CopyRouter:
    """Fans trade lifecycle events out to every bot that follows the trade's channel."""

    def __init__(
        self,
        executors: list[RiskGatedExecutor] | None = None,
        repository: TradeRepository | None = None,
        alerts: AlertRouter | None = None,
    ) -> None:
        self._executors: dict[str, RiskGatedExecutor] = {}
        self.repository = repository
        self.alerts = alerts or AlertRouter()
        self._lock = threading.Lock()
        self._recent: list[ExecutionResult] = []
        self.execution_count = 0
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: RiskGatedExecutor) -> None:
        self._executors[executor.policy.bot_id] = executor

    def executor(self, bot_id: str) -> RiskGatedExecutor | None:
        return self._executors.get(bot_id)

    def executors(self) -> list[RiskGatedExecutor]:
        return list(self._executors.values())

    def recent_executions(self, limit: int = 50) -> list[ExecutionResult]:
        with self._lock:
            return list(self._recent[-limit:])

    def executions_since(self, mark: int) -> list[ExecutionResult]:
        """Results recorded after `execution_count` read `mark`."""
        with self._lock:
            missed = self.execution_count - mark
            return list(self._recent[-missed:]) if missed > 0 else []

    def __call__(self, event: TradeEvent) -> list[ExecutionResult]:
        return self.route(event)

    def route(self, event: TradeEvent) -> list[ExecutionResult]:
        trade = event.trade
        if event.kind is TradeEventKind.CLOSED:
            self._emit(
                "trade_closed",
                f"{trade.channel_id} closed {trade.direction.value} {trade.symbol} for {trade.pnl}",
                {"trade": trade.to_dict()},
            )

        results: list[ExecutionResult] = []
        for executor in self.executors():
            if event.trader_id not in executor.policy.followed_trader_ids:
                continue
            result = executor.on_trade_event(event)
            # Loss counts only after the exit is mirrored.
            if event.kind is TradeEventKind.CLOSED and trade.pnl is not None and trade.exit_time is not None:
                executor.record_realized_pnl(trade.pnl, trade.exit_time)
            results.append(result)
            self._record(result)
        return results

    def _record(self, result: ExecutionResult) -> None:
        with self._lock:
            self._recent.append(result)
            self.execution_count += 1
            del self._recent[:-200]
        if self.repository is not None:
            self.repository.record_execution(result)

        if result.status == "rejected" and result.rejection:
            self._emit("policy_rejected", f"Bot {result.bot_id} rejected {result.symbol}: {result.error}", result.to_dict())
        elif result.status == "failed":
            self._emit("broker_rejected", f"Bot {result.bot_id} order failed for {result.symbol}: {result.error}", result.to_dict())
        elif result.success:
            logger.info(
                "Bot {} mirrored {} {} x{} ({})",
                result.bot_id,
                result.action,
                result.contract or result.symbol,
                result.quantity,
                result.status,
            )

    def _emit(self, event_type: str, message: str, metadata: dict) -> None:
        if self.repository is not None:
            self.repository.record_event(event_type, message, metadata)
        try:
            self.alerts.send(event_type, message, metadata)
        except Exception as exc:
            logger.warning("Alert routing failed for {}: {}", event_type, exc)
