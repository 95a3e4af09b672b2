"""Quota-aware liveness polling of monitored channels, plus optional live-chat polling."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger

from .correlator import SignalCorrelator
from .detectors import ChatSignalDetector
from .errors import ConfigurationMissing, QuotaExhausted, UpstreamUnavailable
from .models import LiveStatus, MonitoredChannel, QuotaStatus, VerbalSignal, utc_now
from .quota import MarketWindow, PollingBudget, QuotaLedger, polling_strategy
from .settings import settings
from .storage import TradeRepository
from .youtube_client import VideoStatus, YouTubeClient, thumbnail_url, watch_url


@dataclass
class CachedStatus:
    is_live: bool
    checked_at: datetime
    title: str = ""


class VideoStatusCache:
    def __init__(self, ttl_seconds: int | None = None, clock: Callable[[], datetime] | None = None) -> None:
        self.ttl = timedelta(seconds=ttl_seconds or settings.video_status_cache_seconds)
        self.clock = clock or utc_now
        self._lock = threading.Lock()
        self._entries: dict[str, CachedStatus] = {}

    def get(self, video_id: str) -> CachedStatus | None:
        """Fresh entry for the video, or None when it was never checked or has gone stale."""
        with self._lock:
            entry = self._entries.get(video_id)
        if entry is None or self.clock() - entry.checked_at >= self.ttl:
            return None
        return entry

    def put(self, video_id: str, is_live: bool, title: str = "") -> None:
        with self._lock:
            self._entries[video_id] = CachedStatus(is_live=is_live, checked_at=self.clock(), title=title)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass
class ChannelCheck:
    channel_id: str
    channel_name: str
    status: LiveStatus
    method: str
    units_used: int = 0
    stream_id: str | None = None
    title: str = ""
    viewers: int | None = None
    error: str | None = None
    checked_at: datetime = field(default_factory=utc_now)

    @property
    def is_live(self) -> bool:
        return self.status is LiveStatus.LIVE

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "channel_id": self.channel_id,
            "channel_name": self.channel_name,
            "status": self.status.value,
            "method": self.method,
            "units_used": self.units_used,
            "stream_id": self.stream_id,
            "title": self.title,
            "viewers": self.viewers,
            "error": self.error,
            "checked_at": self.checked_at.isoformat(),
        }
        if self.stream_id:
            payload["watch_url"] = watch_url(self.stream_id)
            payload["thumbnail_url"] = thumbnail_url(self.stream_id)
        return payload


@dataclass
class PollReport:
    results: list[ChannelCheck]
    units_used: int
    quota: QuotaStatus
    recommendation: PollingBudget
    newly_live: list[str] = field(default_factory=list)
    skipped: bool = False
    reason: str = ""
    polled_at: datetime = field(default_factory=utc_now)
    duration_ms: int = 0

    @property
    def live_streams(self) -> list[ChannelCheck]:
        return [result for result in self.results if result.is_live]

    @property
    def errors(self) -> list[dict[str, str]]:
        return [{"channel_id": result.channel_id, "error": result.error} for result in self.results if result.error]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": not self.skipped,
            "skipped": self.skipped,
            "reason": self.reason,
            "polled_at": self.polled_at.isoformat(),
            "duration_ms": self.duration_ms,
            "channels_polled": len(self.results),
            "units_used": self.units_used,
            "quota": self.quota.to_dict(),
            "recommendation": self.recommendation.to_dict(),
            "results": [result.to_dict() for result in self.results],
            "live_streams": [result.to_dict() for result in self.live_streams],
            "newly_live": self.newly_live,
            "errors": self.errors,
        }


class LivenessScheduler:
    """Decides, per channel, the cheapest way to learn whether it is live right now."""

    def __init__(
        self,
        ledger: QuotaLedger,
        youtube: YouTubeClient,
        channels: list[MonitoredChannel] | None = None,
        repository: TradeRepository | None = None,
        window: MarketWindow | None = None,
        cache: VideoStatusCache | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.youtube = youtube
        self.repository = repository
        self.window = window or MarketWindow.from_settings()
        self.clock = clock or utc_now
        self.cache = cache or VideoStatusCache(clock=self.clock)
        self.sleep = sleep
        self.inter_channel_delay = settings.inter_channel_delay_seconds
        self._channels: dict[str, MonitoredChannel] = {channel.id: channel for channel in channels or []}
        self._poll_lock = threading.Lock()

    # Channel registry ---------------------------------------------------

    def channels(self, active_only: bool = True) -> list[MonitoredChannel]:
        return [channel for channel in self._channels.values() if channel.active or not active_only]

    def channel(self, channel_id: str) -> MonitoredChannel | None:
        return self._channels.get(channel_id)

    def add_channel(self, channel: MonitoredChannel) -> None:
        self._channels[channel.id] = channel
        self._save(channel)

    def deactivate_channel(self, channel_id: str) -> bool:
        channel = self._channels.get(channel_id)
        if channel is None:
            return False
        channel.deactivate()
        self._save(channel)
        return True

    def _save(self, channel: MonitoredChannel) -> None:
        if self.repository is not None:
            self.repository.upsert_channel(channel)

    # Checks ---------------------------------------------------------------

    def recommended_interval(self) -> PollingBudget:
        now = self.clock()
        budget = polling_strategy(self.ledger, len(self.channels()), self.window, now)
        if budget.reason or self.window.is_open(now):
            return budget
        return replace(budget, poll_interval_minutes=settings.off_hours_poll_minutes, reason="outside_market_window")

    def check_channel(self, channel: MonitoredChannel) -> ChannelCheck:
        units_before = self.ledger.used()
        try:
            check = self._check(channel)
        except UpstreamUnavailable as exc:
            logger.warning("Liveness check failed for {}: {}", channel.id, exc)
            check = ChannelCheck(channel.id, channel.name, LiveStatus.UNKNOWN, "error", error=str(exc))
        except ConfigurationMissing as exc:
            check = ChannelCheck(channel.id, channel.name, LiveStatus.UNKNOWN, "unconfigured", error=str(exc))
        check.units_used = max(0, self.ledger.used() - units_before)
        check.checked_at = self.clock()
        self._apply(channel, check)
        return check

    def _check(self, channel: MonitoredChannel) -> ChannelCheck:
        if channel.current_stream_id:
            cached = self.cache.get(channel.current_stream_id)
            if cached is not None and cached.is_live:
                return ChannelCheck(
                    channel.id, channel.name, LiveStatus.LIVE, "cache", stream_id=channel.current_stream_id, title=cached.title
                )

        external_id = channel.external_id or self._resolve_external_id(channel)
        if external_id is None:
            return ChannelCheck(
                channel.id, channel.name, LiveStatus.UNKNOWN, "skipped", error="Could not resolve channel ID"
            )

        candidates = self.youtube.fetch_feed_video_ids(external_id)
        if not candidates:
            return ChannelCheck(channel.id, channel.name, LiveStatus.NOT_LIVE, "feed")

        unchecked: list[str] = []
        for video_id in candidates:
            cached = self.cache.get(video_id)
            if cached is None:
                unchecked.append(video_id)
            elif cached.is_live:
                return ChannelCheck(channel.id, channel.name, LiveStatus.LIVE, "cache", stream_id=video_id, title=cached.title)
        if not unchecked:
            return ChannelCheck(channel.id, channel.name, LiveStatus.NOT_LIVE, "cache")

        if not self.ledger.reserve("videos"):
            return ChannelCheck(
                channel.id, channel.name, LiveStatus.UNKNOWN, "skipped", error="Insufficient quota for videos lookup"
            )
        try:
            videos = self.youtube.list_videos(unchecked)
        except Exception:
            self.ledger.release("videos")
            raise

        # Ids the lookup did not return (private, deleted) are cached as not live too.
        returned = {video.video_id: video for video in videos}
        live: VideoStatus | None = None
        for video_id in unchecked:
            video = returned.get(video_id)
            if video is None:
                self.cache.put(video_id, False)
                continue
            self.cache.put(video_id, video.is_live, video.title)
            if video.is_live and live is None:
                live = video
        if live is None:
            return ChannelCheck(channel.id, channel.name, LiveStatus.NOT_LIVE, "api")
        return ChannelCheck(
            channel.id,
            channel.name,
            LiveStatus.LIVE,
            "api",
            stream_id=live.video_id,
            title=live.title,
            viewers=live.concurrent_viewers,
        )

    def _resolve_external_id(self, channel: MonitoredChannel) -> str | None:
        if not channel.handle or not self.ledger.reserve("search"):
            return None
        try:
            resolved = self.youtube.search_channel_id(channel.handle)
        except Exception:
            self.ledger.release("search")
            raise
        if resolved:
            channel.external_id = resolved
            logger.info("Resolved {} to channel id {}", channel.handle, resolved)
        return resolved

    def _apply(self, channel: MonitoredChannel, check: ChannelCheck) -> None:
        if check.status is LiveStatus.UNKNOWN:
            return
        channel.last_checked_at = check.checked_at
        channel.is_live = check.is_live
        if check.is_live:
            channel.current_stream_id = check.stream_id
            channel.last_live_at = check.checked_at
        else:
            channel.current_stream_id = None
        self._save(channel)

    def poll(self, channel_ids: list[str] | None = None, force: bool = False) -> PollReport:
        """One sequential pass over the active channels."""
        with self._poll_lock:
            started = time.perf_counter()
            channels = self.channels()
            if channel_ids:
                wanted = set(channel_ids)
                channels = [channel for channel in channels if channel.id in wanted]

            units_before = self.ledger.used()
            status = self.ledger.status()
            if not force and status.remaining < settings.quota_skip_poll_below_units:
                logger.warning("Skipping poll: only {} quota units remaining", status.remaining)
                return PollReport(
                    results=[],
                    units_used=0,
                    quota=status,
                    recommendation=self.recommended_interval(),
                    skipped=True,
                    reason="quota_exhausted",
                )

            results: list[ChannelCheck] = []
            newly_live: list[str] = []
            for index, channel in enumerate(channels):
                if index and self.inter_channel_delay:
                    self.sleep(self.inter_channel_delay)
                previous_stream = channel.current_stream_id if channel.is_live else None
                check = self.check_channel(channel)
                results.append(check)
                if check.is_live and check.stream_id != previous_stream:
                    newly_live.append(channel.id)

            report = PollReport(
                results=results,
                units_used=max(0, self.ledger.used() - units_before),
                quota=self.ledger.status(),
                recommendation=self.recommended_interval(),
                newly_live=newly_live,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            logger.info(
                "Poll complete: {} channels, {} live, {} errors, {} units used, next in {} min ({})",
                len(results),
                len(report.live_streams),
                len(report.errors),
                report.units_used,
                report.recommendation.poll_interval_minutes,
                report.recommendation.strategy,
            )
            return report

    def ensure_pollable(self) -> None:
        status = self.ledger.status()
        if status.remaining < settings.quota_safety_floor_units:
            raise QuotaExhausted("Quota limit reached", remaining=status.remaining)


class ChatPoller:
    """Reads new live-chat messages for live streams and feeds detected signals to the correlator."""

    def __init__(
        self,
        ledger: QuotaLedger,
        youtube: YouTubeClient,
        correlator: SignalCorrelator,
        detector: ChatSignalDetector | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.youtube = youtube
        self.correlator = correlator
        self.detector = detector or ChatSignalDetector()
        self.clock = clock or utc_now
        self.chat_id_ttl = timedelta(seconds=settings.live_chat_id_cache_seconds)
        self._chat_ids: dict[str, tuple[str | None, datetime]] = {}
        self._page_tokens: dict[str, str | None] = {}
        self._ended: set[str] = set()

    def live_chat_id(self, stream_id: str) -> str | None:
        cached = self._chat_ids.get(stream_id)
        if cached is not None and self.clock() - cached[1] < self.chat_id_ttl:
            return cached[0]
        if not self.ledger.reserve("videos"):
            return None
        try:
            chat_id = self.youtube.get_live_chat_id(stream_id)
        except Exception:
            self.ledger.release("videos")
            raise
        self._chat_ids[stream_id] = (chat_id, self.clock())
        return chat_id

    def poll_stream(self, channel: MonitoredChannel) -> list[VerbalSignal]:
        stream_id = channel.current_stream_id
        if not stream_id or stream_id in self._ended:
            return []
        try:
            chat_id = self.live_chat_id(stream_id)
            if chat_id is None or not self.ledger.reserve("live_chat"):
                return []
        except (UpstreamUnavailable, ConfigurationMissing) as exc:
            logger.warning("Chat id lookup failed for {}: {}", stream_id, exc)
            return []
        try:
            page = self.youtube.fetch_chat_messages(chat_id, self._page_tokens.get(stream_id))
        except (UpstreamUnavailable, ConfigurationMissing) as exc:
            self.ledger.release("live_chat")
            logger.warning("Chat poll failed for {}: {}", stream_id, exc)
            return []

        if page.ended:
            logger.info("Live chat for {} is no longer available ({})", stream_id, page.error)
            self._ended.add(stream_id)
            return []
        self._page_tokens[stream_id] = page.next_page_token
        signals = self.detector.detect_messages(stream_id, page.messages)
        if signals:
            self.correlator.ingest_verbal_batch(stream_id, signals, channel_id=channel.id)
        return signals
