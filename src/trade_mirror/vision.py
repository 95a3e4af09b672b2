from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger
import requests

from .errors import UpstreamUnavailable
from .models import Direction, PositionObservation, utc_now
from .settings import settings


ANALYSIS_PROMPT = """You are a trading platform screen analyzer. Analyze this screenshot from a live trading stream and extract all visible trading data.

Look for:
1. Trading platform: Tradovate, NinjaTrader, TradingView, ThinkorSwim, or another platform
2. Open positions: symbol (ES, NQ, CL, GC, ...), direction (Long/Short, Buy/Sell, or green/red), size in contracts, entry price, current price, unrealized P&L
3. Account info: balance, daily P&L
4. Working orders: stop losses and take profits

Return a JSON object with this exact structure:
{
  "platform": "tradovate|ninjatrader|tradingview|thinkorswim|unknown",
  "confidence": 0.0-1.0,
  "positions": [
    {"symbol": "ES", "direction": "LONG|SHORT", "size": 1, "entryPrice": 5890.50, "currentPrice": 5892.00,
     "stopLoss": 5885.00, "takeProfit": 5900.00, "unrealizedPnl": 75.00}
  ],
  "accountBalance": 50000.00,
  "dailyPnl": 250.00,
  "notes": "Any relevant observations"
}

If no platform or positions are visible return platform "unknown", confidence 0 and an empty positions list.
Only return valid JSON."""

FUTURES_SYMBOLS = ["MES", "MNQ", "MCL", "MGC", "M2K", "MYM", "RTY", "ES", "NQ", "CL", "GC", "SI", "ZB", "YM"]
STOCK_SYMBOLS = ["SPY", "QQQ", "IWM", "DIA", "AAPL", "TSLA", "NVDA", "AMZN", "GOOGL", "META"]
LONG_INDICATORS = re.compile(r"\b(long|buy|bought)\b|[▲↑]", re.I)
SHORT_INDICATORS = re.compile(r"\b(short|sell|sold)\b|[▼↓]", re.I)
NUMBER_PATTERN = re.compile(r"(?<![\w.])([+-])?\$?(\d{1,3}(?:,\d{3})+(?:\.\d{1,4})?|\d+(?:\.\d{1,4})?)(?![\w])")
SIZE_PATTERN = re.compile(r"(?<![\d.,$+-])\b([1-9]\d?|100)\b(?![.,]\d)")
PNL_PATTERNS = [
    re.compile(r"P[&/]?L[:\s]*([+-]?\$?\d+(?:,\d{3})*(?:\.\d{2})?)", re.I),
    re.compile(r"(?:profit|loss)[:\s]*([+-]?\$?\d+(?:,\d{3})*(?:\.\d{2})?)", re.I),
    re.compile(r"(?<![\w.])([+-]\$?\d+(?:,\d{3})*(?:\.\d{2})?)"),
]
BALANCE_PATTERN = re.compile(r"(?:balance|equity)[:\s]*\$?(\d{1,3}(?:,\d{3})*(?:\.\d{2})?|\d+(?:\.\d{2})?)", re.I)
DAILY_PNL_PATTERN = re.compile(
    r"(?:daily|today|day)['\s]*(?:p[&/]?l|profit|loss)[:\s]*([+-]?\$?\d+(?:,\d{3})*(?:\.\d{2})?)", re.I
)
PLATFORM_HINTS = [
    ("tradovate", ("tradovate",)),
    ("ninjatrader", ("ninjatrader", "ninja trader")),
    ("tradingview", ("tradingview", "trading view")),
    ("thinkorswim", ("thinkorswim",)),
]


@dataclass
class VisionAnalysis:
    platform: str = "unknown"
    confidence: float = 0.0
    positions: list[PositionObservation] = field(default_factory=list)
    account_balance: float | None = None
    daily_pnl: float | None = None
    notes: str = ""
    error: str | None = None
    raw_text: str = ""
    analyzed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "confidence": self.confidence,
            "positions": [position.to_dict() for position in self.positions],
            "account_balance": self.account_balance,
            "daily_pnl": self.daily_pnl,
            "notes": self.notes,
            "error": self.error,
            "analyzed_at": self.analyzed_at.isoformat(),
        }


@dataclass
class PositionChanges:
    opened: list[PositionObservation] = field(default_factory=list)
    closed: list[PositionObservation] = field(default_factory=list)
    modified: list[tuple[PositionObservation, PositionObservation]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.opened or self.closed or self.modified)

    def to_dict(self) -> dict[str, Any]:
        return {
            "opened": [position.to_dict() for position in self.opened],
            "closed": [position.to_dict() for position in self.closed],
            "modified": [
                {"previous": previous.to_dict(), "current": current.to_dict()} for previous, current in self.modified
            ],
        }


def detect_position_changes(
    previous: list[PositionObservation],
    current: list[PositionObservation],
) -> PositionChanges:
    """Diff two screen snapshots keyed by (symbol, direction)."""
    changes = PositionChanges()
    previous_by_key = {position.key: position for position in previous}
    current_keys = {position.key for position in current}

    for position in current:
        before = previous_by_key.get(position.key)
        if before is None:
            changes.opened.append(position)
        elif (
            before.size != position.size
            or before.entry_price != position.entry_price
            or before.stop_loss != position.stop_loss
            or before.take_profit != position.take_profit
        ):
            changes.modified.append((before, position))

    for position in previous:
        if position.key not in current_keys:
            changes.closed.append(position)
    return changes


class VisionAnalyzer:
    """Screen reader backed by an OpenAI-compatible chat completions vision model."""

    def __init__(self) -> None:
        self.base_url = settings.openai_base_url.rstrip("/")
        self.timeout_seconds = settings.openai_timeout_seconds

    def is_configured(self) -> bool:
        return bool(settings.openai_api_key.strip())

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    def analyze(
        self,
        stream_id: str,
        image_url: str | None = None,
        image_base64: str | None = None,
        previous_positions: list[PositionObservation] | None = None,
    ) -> VisionAnalysis:
        if not self.is_configured():
            return VisionAnalysis(error="OPENAI_API_KEY not configured")
        if image_base64:
            image_ref = f"data:image/jpeg;base64,{image_base64}"
        elif image_url:
            image_ref = image_url
        else:
            return VisionAnalysis(error="No image provided")

        prompt = ANALYSIS_PROMPT
        if previous_positions:
            snapshot = json.dumps([position.to_dict() for position in previous_positions], indent=2)
            prompt += f"\n\nPreviously detected positions (for context):\n{snapshot}"

        payload = {
            "model": settings.openai_vision_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_ref, "detail": "high"}},
                    ],
                }
            ],
            "max_tokens": settings.openai_max_output_tokens,
        }

        start = time.perf_counter()
        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamUnavailable("vision", str(exc)) from exc
        logger.debug("Vision analysis for {} took {:.2f}s", stream_id, time.perf_counter() - start)

        content = self._extract_text_response(response.json() or {})
        return self._parse_content(stream_id, content)

    @staticmethod
    def _extract_text_response(payload: dict) -> str:
        choices = payload.get("choices", [])
        if not choices:
            return ""
        content = choices[0].get("message", {}).get("content", "")
        if isinstance(content, list):
            return "\n".join(str(part.get("text", "")) for part in content if isinstance(part, dict))
        return str(content or "")

    @staticmethod
    def _parse_content(stream_id: str, content: str) -> VisionAnalysis:
        if not content:
            return VisionAnalysis(error="No response from vision model")
        match = re.search(r"\{[\s\S]*\}", content)
        if not match:
            return VisionAnalysis(raw_text=content, error="No JSON found in response")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            return VisionAnalysis(raw_text=content, error=f"Failed to parse response: {exc}")

        observed_at = utc_now()
        confidence = float(parsed.get("confidence") or 0.0)
        positions = []
        for raw in parsed.get("positions") or []:
            if not isinstance(raw, dict):
                continue
            position = PositionObservation.from_dict(stream_id, raw, observed_at=observed_at)
            if position is not None:
                position.confidence = confidence
                positions.append(position)
        return VisionAnalysis(
            platform=str(parsed.get("platform") or "unknown"),
            confidence=confidence,
            positions=positions,
            account_balance=_to_float(parsed.get("accountBalance")),
            daily_pnl=_to_float(parsed.get("dailyPnl")),
            notes=str(parsed.get("notes") or ""),
            raw_text=content,
            analyzed_at=observed_at,
        )


class OcrTextParser:
    """Pulls positions out of text that an OCR engine already extracted from a platform screenshot."""

    def __init__(self, min_confidence: float | None = None) -> None:
        self.min_confidence = settings.ocr_min_confidence if min_confidence is None else min_confidence

    def parse(
        self,
        stream_id: str,
        text: str,
        confidence: float = 1.0,
        platform_hint: str | None = None,
    ) -> VisionAnalysis:
        if confidence < self.min_confidence:
            return VisionAnalysis(
                confidence=confidence,
                raw_text=text,
                error=f"Low OCR confidence: {confidence * 100:.0f}%",
            )

        observed_at = utc_now()
        positions = []
        for line in (line for line in text.splitlines() if line.strip()):
            symbol = self._find_symbol(line)
            if symbol is None:
                continue
            position = self._parse_line(stream_id, line, symbol, observed_at)
            if position is not None:
                position.confidence = confidence
                positions.append(position)

        return VisionAnalysis(
            platform=platform_hint or self._detect_platform(text),
            confidence=confidence,
            positions=positions,
            account_balance=self._account_balance(text),
            daily_pnl=self._daily_pnl(text),
            raw_text=text,
            analyzed_at=observed_at,
        )

    @staticmethod
    def _find_symbol(line: str) -> str | None:
        upper = line.upper()
        for symbol in FUTURES_SYMBOLS + STOCK_SYMBOLS:
            if re.search(rf"\b{symbol}(?:[FGHJKMNQUVXZ]\d{{1,2}})?\b", upper):
                return symbol
        return None

    @staticmethod
    def _parse_line(stream_id: str, line: str, symbol: str, observed_at: datetime) -> PositionObservation | None:
        if LONG_INDICATORS.search(line):
            direction = Direction.LONG
        elif SHORT_INDICATORS.search(line):
            direction = Direction.SHORT
        else:
            direction = Direction.LONG

        size_match = SIZE_PATTERN.search(line)
        size_token = size_match.group(1) if size_match else None
        size = float(size_token) if size_token else 1.0

        prices: list[float] = []
        size_consumed = False
        for match in NUMBER_PATTERN.finditer(line):
            sign, number = match.group(1), match.group(2)
            if sign:
                continue
            if not size_consumed and number == size_token:
                size_consumed = True
                continue
            value = float(number.replace(",", ""))
            if value > 0:
                prices.append(value)
        if not prices:
            return None

        prices.sort()
        return PositionObservation(
            stream_id=stream_id,
            symbol=symbol,
            direction=direction,
            size=size,
            entry_price=prices[0],
            current_price=prices[-1],
            unrealized_pnl=_line_pnl(line),
            observed_at=observed_at,
        )

    @staticmethod
    def _detect_platform(text: str) -> str:
        lowered = text.lower()
        for platform, needles in PLATFORM_HINTS:
            if any(needle in lowered for needle in needles):
                return platform
        return "unknown"

    @staticmethod
    def _account_balance(text: str) -> float | None:
        match = BALANCE_PATTERN.search(text)
        if not match:
            return None
        value = float(match.group(1).replace(",", ""))
        return value if value > 1000 else None

    @staticmethod
    def _daily_pnl(text: str) -> float | None:
        match = DAILY_PNL_PATTERN.search(text)
        return _to_float(match.group(1).replace("$", "").replace(",", "")) if match else None


def _line_pnl(line: str) -> float | None:
    for pattern in PNL_PATTERNS:
        match = pattern.search(line)
        if match:
            value = _to_float(match.group(1).replace("$", "").replace(",", ""))
            if value is not None:
                return value
    return None


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
