"""Keyword detectors that turn speech transcripts and chat lines into VerbalSignals."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from .models import Direction, VerbalKind, VerbalSignal, utc_now
from .youtube_client import ChatMessage


CHAT_OWNER_CONFIDENCE = 0.9
CHAT_VIEWER_CONFIDENCE = 0.6

KIND_PATTERNS: dict[VerbalKind, list[re.Pattern[str]]] = {
    VerbalKind.ENTRY: [
        re.compile(r"\b(going|went|entering|entered|buying|bought|taking|took)\s+(long|short|a position)", re.I),
        re.compile(r"\b(long|short)\s+(here|now|at)\b", re.I),
        re.compile(r"\b(filled|got filled|in at)\s*\$?(\d+\.?\d*)", re.I),
        re.compile(r"\b(entry|entered)\s*(at|price)?\s*\$?(\d+\.?\d*)", re.I),
    ],
    VerbalKind.EXIT: [
        re.compile(r"\b(closing|closed|exiting|exited|out of|getting out|flattening|flat)\b", re.I),
        re.compile(r"\b(took profits?|taking profits?|profit target hit)", re.I),
        re.compile(r"\b(stopped out|hit (my )?stop|stop loss hit)", re.I),
        re.compile(r"\b(out at|closed at|exited at)\s*\$?(\d+\.?\d*)", re.I),
    ],
    VerbalKind.STOP: [
        re.compile(r"\b(stop loss|stop)\s*(at|is|set to)?\s*\$?(\d+\.?\d*)", re.I),
        re.compile(r"\b(protect(ing|ed)?|risk(ing)?)\s*(at)?\s*\$?(\d+\.?\d*)", re.I),
    ],
    VerbalKind.TARGET: [
        re.compile(r"\b(target|tp|take profit)\s*(at|is)?\s*\$?(\d+\.?\d*)", re.I),
        re.compile(r"\b(looking for|expecting)\s*\$?(\d+\.?\d*)", re.I),
    ],
    VerbalKind.ALERT: [
        re.compile(r"\b(watch(ing)?|alert|heads up|pay attention)\b", re.I),
        re.compile(r"\b(breaking|broke)\s+(above|below|through)", re.I),
        re.compile(r"\b(resistance|support)\s+(at|near|around)", re.I),
    ],
}

SYMBOL_PATTERNS = [
    re.compile(r"\b(MES|MNQ|MCL|ES|NQ|CL|GC|SI|ZB|RTY|YM)\b", re.I),
    re.compile(r"\b(SPY|QQQ|IWM|DIA|AAPL|TSLA|NVDA|AMZN|GOOGL|META)\b", re.I),
    re.compile(r"\b(EUR/USD|GBP/USD|USD/JPY|EURUSD|GBPUSD|USDJPY)\b", re.I),
]

PRICE_PATTERNS = [
    re.compile(r"\$(\d+(?:,\d{3})*(?:\.\d{1,4})?)"),
    re.compile(r"(\d+(?:,\d{3})*(?:\.\d{1,4})?)\s*dollars?", re.I),
    re.compile(r"(\d{4,5}(?:\.\d{1,4})?)"),
]

SIZE_PATTERN = re.compile(r"\b(\d{1,3})\s*(contracts?|lots?|cars?)\b", re.I)
LONG_WORDS = re.compile(r"\b(long|buy|buying|bought)\b", re.I)
SHORT_WORDS = re.compile(r"\b(short|sell|selling|sold)\b", re.I)


@dataclass
class TextSegment:
    text: str
    confidence: float = 0.8
    observed_at: datetime = field(default_factory=utc_now)
    source: str = "transcript"


class Detector(Protocol):
    def detect(self, stream_id: str, segments: list[TextSegment]) -> list[VerbalSignal]: ...


def extract_direction(text: str) -> Direction | None:
    if LONG_WORDS.search(text):
        return Direction.LONG
    if SHORT_WORDS.search(text):
        return Direction.SHORT
    return None


def extract_symbol(text: str) -> str | None:
    for pattern in SYMBOL_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).upper()
    return None


def extract_price(text: str) -> float | None:
    for pattern in PRICE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            price = float(match.group(1).replace(",", ""))
        except ValueError:
            continue
        if price > 0:
            return price
    return None


def extract_size(text: str) -> float | None:
    match = SIZE_PATTERN.search(text)
    return float(match.group(1)) if match else None


class PatternSignalDetector:
    """At most one signal per kind per segment; ALERT only when nothing more specific fired."""

    def detect(self, stream_id: str, segments: list[TextSegment]) -> list[VerbalSignal]:
        signals: list[VerbalSignal] = []
        for segment in segments:
            text = segment.text.strip()
            if not text:
                continue
            kinds = [kind for kind in KIND_PATTERNS if _first_match(kind, text) is not None]
            if len(kinds) > 1 and VerbalKind.ALERT in kinds:
                kinds.remove(VerbalKind.ALERT)
            for kind in kinds:
                signals.append(
                    VerbalSignal(
                        stream_id=stream_id,
                        kind=kind,
                        confidence=max(0.0, min(1.0, segment.confidence)),
                        symbol=extract_symbol(text),
                        direction=extract_direction(text) if kind is VerbalKind.ENTRY else None,
                        price=_kind_price(kind, text),
                        size=extract_size(text) if kind in (VerbalKind.ENTRY, VerbalKind.EXIT) else None,
                        observed_at=segment.observed_at,
                        raw_text=text,
                        source=segment.source,
                    )
                )
        return signals


class ChatSignalDetector:
    """Chat lines weighted by author trust: the channel owner and moderators count more than viewers."""

    def __init__(self, inner: Detector | None = None) -> None:
        self.inner = inner or PatternSignalDetector()

    def detect_messages(self, stream_id: str, messages: list[ChatMessage]) -> list[VerbalSignal]:
        segments = [
            TextSegment(
                text=message.text,
                confidence=CHAT_OWNER_CONFIDENCE if message.is_owner or message.is_moderator else CHAT_VIEWER_CONFIDENCE,
                observed_at=message.published_at,
                source="chat",
            )
            for message in messages
        ]
        return self.detect(stream_id, segments)

    def detect(self, stream_id: str, segments: list[TextSegment]) -> list[VerbalSignal]:
        return self.inner.detect(stream_id, segments)


def _first_match(kind: VerbalKind, text: str) -> re.Match[str] | None:
    for pattern in KIND_PATTERNS[kind]:
        match = pattern.search(text)
        if match:
            return match
    return None


def _kind_price(kind: VerbalKind, text: str) -> float | None:
    # Stop and target phrases carry their own level; "long at 5880, stop 5870" must not give the stop 5880.
    match = _first_match(kind, text)
    if match is not None and match.groups():
        try:
            return float(match.groups()[-1])
        except (TypeError, ValueError):
            pass
    if kind in (VerbalKind.STOP, VerbalKind.TARGET):
        return None
    return extract_price(text)
