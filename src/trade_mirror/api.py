from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from .alerts import AlertRouter
from .capture_client import CaptureClient
from .correlator import SignalCorrelator, summarize_trades
from .detectors import ChatSignalDetector, TextSegment
from .errors import QuotaExhausted, UpstreamUnavailable
from .executor import RiskGatedExecutor
from .models import BotRiskPolicy, MonitoredChannel, utc_now
from .monitor import ChatPoller, LivenessScheduler
from .quota import QuotaLedger, build_quota_store
from .risk import load_bot_policies, load_channels
from .router import CopyRouter
from .scheduler import PollScheduler
from .settings import settings
from .storage import SqliteTradeRepository, TradeRepository
from .tradovate_client import TradovateClient
from .transcription import TranscriptionClient
from .vision import OcrTextParser, VisionAnalyzer, detect_position_changes
from .youtube_client import ChatMessage, YouTubeClient


class PollPayload(BaseModel):
    channel_ids: list[str] | None = None
    force: bool = False


class AnalyzePayload(BaseModel):
    stream_id: str = Field(..., min_length=1)
    channel_id: str = Field(..., min_length=1)
    image_url: str | None = None
    image_base64: str | None = None
    ocr_text: str | None = None
    ocr_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    use_vision: bool = True


class SegmentPayload(BaseModel):
    text: str
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    observed_at: datetime | None = None


class ChatMessagePayload(BaseModel):
    text: str
    author_name: str = ""
    author_channel_id: str = ""
    is_owner: bool = False
    is_moderator: bool = False
    published_at: datetime | None = None


class VerbalPayload(BaseModel):
    stream_id: str = Field(..., min_length=1)
    channel_id: str = ""
    segments: list[SegmentPayload] = Field(default_factory=list)
    messages: list[ChatMessagePayload] = Field(default_factory=list)
    audio_base64: str | None = None


class MirrorController:
    """Wires the poller, correlator and copy executors together behind the HTTP surface."""

    def __init__(
        self,
        repository: TradeRepository | None = None,
        ledger: QuotaLedger | None = None,
        youtube: YouTubeClient | None = None,
        channels: list[MonitoredChannel] | None = None,
        policies: list[BotRiskPolicy] | None = None,
        broker: Any = None,
        vision: VisionAnalyzer | None = None,
        ocr: OcrTextParser | None = None,
        capture: CaptureClient | None = None,
        transcription: TranscriptionClient | None = None,
        alerts: AlertRouter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.clock = clock or utc_now
        self.repository = repository or SqliteTradeRepository(settings.db_path)
        self.ledger = ledger or QuotaLedger(build_quota_store(), clock=self.clock)
        self.youtube = youtube or YouTubeClient()
        self.liveness = LivenessScheduler(
            self.ledger,
            self.youtube,
            channels if channels is not None else self._load_channels(),
            repository=self.repository,
            clock=self.clock,
        )
        self.correlator = SignalCorrelator(trade_sink=self.repository, clock=self.clock)
        self.broker = broker if broker is not None else TradovateClient()
        account_id = settings.tradovate_account_id or None
        executors = [
            RiskGatedExecutor(policy, self.broker, account_id=account_id, clock=self.clock)
            for policy in (policies if policies is not None else self._load_policies())
        ]
        self.router = CopyRouter(executors, repository=self.repository, alerts=alerts)
        self.correlator.subscribe(self.router)
        self.vision = vision or VisionAnalyzer()
        self.ocr = ocr or OcrTextParser()
        self.capture = capture or CaptureClient()
        self.transcription = transcription or TranscriptionClient()
        self.detector = ChatSignalDetector()
        self.chat = ChatPoller(self.ledger, self.youtube, self.correlator, self.detector, clock=self.clock)
        self.poll_scheduler = PollScheduler(self.liveness, self.chat)
        self._started = False

    def _load_channels(self) -> list[MonitoredChannel]:
        persisted = {channel.id: channel for channel in self.repository.list_channels(active_only=False)}
        channels = []
        for channel in load_channels():
            stored = persisted.pop(channel.id, None)
            if stored is not None:
                channel.external_id = channel.external_id or stored.external_id
                channel.is_live = stored.is_live
                channel.current_stream_id = stored.current_stream_id
                channel.last_checked_at = stored.last_checked_at
                channel.last_live_at = stored.last_live_at
                channel.active = channel.active and stored.active
            channels.append(channel)
        return channels + list(persisted.values())

    def _load_policies(self) -> list[BotRiskPolicy]:
        policies = load_bot_policies()
        for policy in policies:
            self.repository.save_policy(policy)
        return policies

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if settings.poll_in_process:
            self.poll_scheduler.start()
        logger.info(
            "Mirror controller started: {} channels, {} bots",
            len(self.liveness.channels()),
            len(self.router.executors()),
        )

    def stop(self) -> None:
        self.poll_scheduler.stop()
        self._started = False

    # Liveness -----------------------------------------------------------

    def poll(self, channel_ids: list[str] | None = None, force: bool = False) -> dict[str, Any]:
        if not force:
            self.liveness.ensure_pollable()
        return self.liveness.poll(channel_ids=channel_ids, force=force).to_dict()

    def quota(self) -> dict[str, Any]:
        return {
            "quota": self.ledger.status().to_dict(),
            "recommendation": self.liveness.recommended_interval().to_dict(),
            "channels": len(self.liveness.channels()),
        }

    # Screen analysis ----------------------------------------------------

    def analyze(self, payload: AnalyzePayload) -> dict[str, Any]:
        state = self.correlator.stream_state(payload.stream_id)
        cached_positions = list(state.positions) if state is not None else []
        source = "ocr"

        if payload.ocr_text is not None:
            analysis = self.ocr.parse(payload.stream_id, payload.ocr_text, confidence=payload.ocr_confidence)
        elif payload.use_vision:
            image_url = payload.image_url
            if not image_url and not payload.image_base64:
                image_url = self.capture.capture_frame(payload.stream_id).image_url
            analysis = self.vision.analyze(
                payload.stream_id,
                image_url=image_url,
                image_base64=payload.image_base64,
                previous_positions=cached_positions,
            )
            source = "vision"
        else:
            raise HTTPException(status_code=400, detail="ocr_text is required when use_vision is false")

        body: dict[str, Any] = {
            "success": analysis.error is None,
            "stream_id": payload.stream_id,
            "channel_id": payload.channel_id,
            "source": source,
            "analysis": analysis.to_dict(),
        }
        if analysis.error is not None:
            # A failed read says nothing about the screen, so the cached positions stand.
            logger.warning("Analysis of {} failed: {}", payload.stream_id, analysis.error)
            body.update(self._stream_summary(payload.stream_id))
            body["changes"] = None
            body["executions"] = []
            return body

        mark = self.router.execution_count
        result, previous = self.correlator.ingest_snapshot(
            payload.stream_id,
            analysis.positions,
            channel_id=payload.channel_id,
            observed_at=analysis.analyzed_at,
        )
        executions = [item.to_dict() for item in self.router.executions_since(mark)]
        body.update(self._stream_summary(payload.stream_id))
        body["changes"] = detect_position_changes(previous, analysis.positions).to_dict()
        body["correlation"] = result.to_dict()
        body["executions"] = executions
        return body

    def _stream_summary(self, stream_id: str) -> dict[str, Any]:
        state = self.correlator.stream_state(stream_id)
        trades = state.trades if state is not None else []
        return {
            "positions": [position.to_dict() for position in state.positions] if state is not None else [],
            "last_analyzed_at": state.last_analyzed_at.isoformat() if state and state.last_analyzed_at else None,
            "trades": [trade.to_dict() for trade in trades],
            "stats": summarize_trades(trades).to_dict(),
        }

    def analysis(self, stream_id: str | None = None, channel_id: str | None = None) -> dict[str, Any]:
        if stream_id:
            if self.correlator.stream_state(stream_id) is None:
                raise HTTPException(status_code=404, detail=f"No analysis for stream {stream_id}")
            return {"stream_id": stream_id, **self._stream_summary(stream_id)}

        streams = []
        for item in self.correlator.stream_ids():
            state = self.correlator.stream_state(item)
            if state is None or (channel_id and state.channel_id != channel_id):
                continue
            streams.append({"stream_id": item, "channel_id": state.channel_id, **self._stream_summary(item)})
        trades = self.correlator.trades(channel_id=channel_id)
        return {"streams": streams, "stats": summarize_trades(trades).to_dict()}

    # Verbal signals -----------------------------------------------------

    def ingest_verbal(self, payload: VerbalPayload) -> dict[str, Any]:
        now = self.clock()
        segments = [
            TextSegment(text=item.text, confidence=item.confidence, observed_at=item.observed_at or now)
            for item in payload.segments
        ]
        if payload.audio_base64:
            try:
                audio = base64.b64decode(payload.audio_base64, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise HTTPException(status_code=400, detail="audio_base64 is not valid base64") from exc
            segments.extend(self.transcription.transcribe(audio, started_at=now))

        signals = self.detector.detect(payload.stream_id, segments)
        messages = [
            ChatMessage(
                id=f"api-{index}",
                author_channel_id=item.author_channel_id,
                author_name=item.author_name,
                text=item.text,
                published_at=item.published_at or now,
                is_owner=item.is_owner,
                is_moderator=item.is_moderator,
            )
            for index, item in enumerate(payload.messages)
        ]
        signals.extend(self.detector.detect_messages(payload.stream_id, messages))

        result = self.correlator.ingest_verbal_batch(payload.stream_id, signals, channel_id=payload.channel_id)
        return {
            "stream_id": payload.stream_id,
            "signals": [signal.to_dict() for signal in signals],
            "correlation": result.to_dict(),
        }

    # Ledger and bots ----------------------------------------------------

    def trades(self, stream_id: str | None = None, channel_id: str | None = None, limit: int = 100) -> dict[str, Any]:
        if stream_id:
            trades = self.correlator.trades(stream_id=stream_id)
        elif channel_id:
            trades = self.repository.load(channel_id)
        else:
            trades = self.repository.recent(limit)
        trades = trades[-limit:] if stream_id or channel_id else trades
        return {"trades": [trade.to_dict() for trade in trades], "stats": summarize_trades(trades).to_dict()}

    def bot(self, bot_id: str) -> dict[str, Any]:
        executor = self.router.executor(bot_id)
        if executor is not None:
            return {"policy": executor.policy.to_dict(), "status": executor.status()}
        policy = self.repository.load_policy(bot_id)
        if policy is None:
            raise HTTPException(status_code=404, detail=f"Bot {bot_id} not found")
        return {"policy": policy.to_dict(), "status": None}


controller = MirrorController()


app = FastAPI(title="Trade Mirror API", version="1.0.0")


@app.on_event("startup")
def on_startup() -> None:
    controller.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    controller.stop()


def _check_cron_secret(authorization: str | None) -> None:
    if settings.app_env != "production":
        return
    if not settings.cron_secret or authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def _quota_limited(exc: QuotaExhausted) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "Quota limit reached",
            "remaining": exc.remaining,
            "quota": controller.ledger.status().to_dict(),
            "suggestion": "Wait for the daily quota reset or use force=true",
        },
    )


def _upstream_failed(exc: UpstreamUnavailable) -> HTTPException:
    return HTTPException(status_code=502, detail={"provider": exc.provider, "error": str(exc)})


@app.get("/poll", response_model=None)
def get_poll(authorization: str | None = Header(default=None)) -> dict[str, Any] | JSONResponse:
    _check_cron_secret(authorization)
    return controller.liveness.poll().to_dict()


@app.post("/poll", response_model=None)
def post_poll(payload: PollPayload) -> dict[str, Any] | JSONResponse:
    try:
        return controller.poll(channel_ids=payload.channel_ids, force=payload.force)
    except QuotaExhausted as exc:
        return _quota_limited(exc)


@app.post("/analyze")
def post_analyze(payload: AnalyzePayload) -> dict[str, Any]:
    try:
        return controller.analyze(payload)
    except UpstreamUnavailable as exc:
        raise _upstream_failed(exc) from exc


@app.get("/analyze")
def get_analyze(
    stream_id: str = Query(default=""),
    channel_id: str = Query(default=""),
) -> dict[str, Any]:
    return controller.analysis(stream_id=stream_id or None, channel_id=channel_id or None)


@app.post("/signals/verbal")
def post_verbal(payload: VerbalPayload) -> dict[str, Any]:
    if not (payload.segments or payload.messages or payload.audio_base64):
        raise HTTPException(status_code=400, detail="segments, messages or audio_base64 is required")
    try:
        return controller.ingest_verbal(payload)
    except UpstreamUnavailable as exc:
        raise _upstream_failed(exc) from exc


@app.get("/quota")
def get_quota() -> dict[str, Any]:
    return controller.quota()


@app.get("/trades")
def get_trades(
    stream_id: str = Query(default=""),
    channel_id: str = Query(default=""),
    limit: int = Query(default=100, ge=1, le=1000),
) -> dict[str, Any]:
    return controller.trades(stream_id=stream_id or None, channel_id=channel_id or None, limit=limit)


@app.get("/bots/{bot_id}")
def get_bot(bot_id: str) -> dict[str, Any]:
    return controller.bot(bot_id)


@app.get("/healthz")
def healthz() -> JSONResponse:
    return JSONResponse({"ok": True, "time": datetime.now(timezone.utc).isoformat()})
