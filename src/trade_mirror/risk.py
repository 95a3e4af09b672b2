from pathlib import Path

import yaml

from .models import BotRiskPolicy, MonitoredChannel, TraderCopySettings
from .settings import settings


DEFAULT_CHANNELS = [
    MonitoredChannel(id="patrick-wieland", name="Patrick Wieland", handle="@PatrickWieland", platform="tradovate"),
    MonitoredChannel(id="lu-smooth-trader", name="Lu Smooth Trader", handle="@LuSmoothTrader", platform="tradovate"),
    MonitoredChannel(id="pasha-irl", name="Pasha IRL", handle="@pashairl", platform="tradovate"),
    MonitoredChannel(id="roensch-capital", name="Roensch Capital", handle="@RoenschCapital", platform="tradingview"),
    MonitoredChannel(id="ninjatrader", name="NinjaTrader", handle="@NinjaTrader", platform="ninjatrader"),
]



def default_bot_policy(bot_id: str) -> BotRiskPolicy:
    return BotRiskPolicy(
        bot_id=bot_id,
        max_daily_loss=settings.default_max_daily_loss,
        max_position_size=settings.default_max_position_size,
        max_concurrent_trades=settings.default_max_concurrent_trades,
        max_daily_trades=settings.default_max_daily_trades,
        trading_timezone=settings.default_trading_timezone,
    )



def load_bot_policies(file_path: Path | None = None) -> list[BotRiskPolicy]:
    file_path = Path(file_path or settings.bots_config_path)
    if not file_path.exists():
        return []

    raw = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    policies: list[BotRiskPolicy] = []
    for bot_id, body in (raw.get("bots") or {}).items():
        body = body or {}
        limits = body.get("limits", {})
        directions = body.get("directions", {})
        policies.append(
            BotRiskPolicy(
                bot_id=str(bot_id),
                enabled=bool(body.get("enabled", True)),
                auto_execute=bool(body.get("auto_execute", True)),
                max_daily_loss=float(limits.get("max_daily_loss", settings.default_max_daily_loss)),
                max_position_size=int(limits.get("max_position_size", settings.default_max_position_size)),
                max_concurrent_trades=int(limits.get("max_concurrent_trades", settings.default_max_concurrent_trades)),
                max_daily_trades=int(limits.get("max_daily_trades", settings.default_max_daily_trades)),
                allowed_symbols=[str(item).upper() for item in body.get("allowed_symbols") or []],
                allow_longs=bool(directions.get("allow_longs", True)),
                allow_shorts=bool(directions.get("allow_shorts", True)),
                trading_timezone=str(body.get("trading_timezone", settings.default_trading_timezone)),
                trader_settings=[_trader_settings(item) for item in body.get("traders") or []],
            )
        )
    return policies


def _trader_settings(raw: dict) -> TraderCopySettings:
    return TraderCopySettings(
        trader_id=str(raw["trader_id"]),
        enabled=bool(raw.get("enabled", True)),
        allocation_weight=float(raw.get("allocation_weight", 100.0)),
        copy_multiplier=float(raw.get("copy_multiplier", 1.0)),
        max_loss_per_trade=float(raw.get("max_loss_per_trade", 0.0)),
        only_primary_instruments=bool(raw.get("only_primary_instruments", False)),
        primary_instruments=[str(item).upper() for item in raw.get("primary_instruments") or []],
        copy_scale_outs=bool(raw.get("copy_scale_outs", True)),
        use_trader_stops=bool(raw.get("use_trader_stops", True)),
    )



def load_channels(file_path: Path | None = None) -> list[MonitoredChannel]:
    file_path = Path(file_path or settings.channels_config_path)
    if not file_path.exists():
        return [MonitoredChannel(**channel.__dict__) for channel in DEFAULT_CHANNELS]

    raw = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    return [
        MonitoredChannel(
            id=str(item["id"]),
            name=str(item.get("name", item["id"])),
            handle=str(item.get("handle", "")),
            external_id=item.get("external_id"),
            platform=str(item.get("platform", "unknown")),
            active=bool(item.get("active", True)),
        )
        for item in raw.get("channels") or []
    ]
