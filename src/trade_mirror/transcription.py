from __future__ import annotations

import math
from datetime import datetime, timedelta

from loguru import logger
import requests

from .detectors import TextSegment
from .errors import UpstreamUnavailable
from .models import utc_now
from .settings import settings


DEFAULT_SEGMENT_CONFIDENCE = 0.8


class TranscriptionClient:
    """Speech-to-text through a Whisper-compatible ``/audio/transcriptions`` endpoint."""

    def __init__(self) -> None:
        self.base_url = settings.transcription_base_url.rstrip("/")
        self.timeout_seconds = settings.transcription_timeout_seconds

    def is_configured(self) -> bool:
        return bool(settings.transcription_api_key.strip())

    def transcribe(
        self,
        audio: bytes,
        started_at: datetime | None = None,
        filename: str = "audio.wav",
    ) -> list[TextSegment]:
        if not self.is_configured():
            logger.warning("TRANSCRIPTION_API_KEY not configured; skipping audio chunk")
            return []

        started_at = started_at or utc_now()
        try:
            response = requests.post(
                f"{self.base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {settings.transcription_api_key}"},
                files={"file": (filename, audio, "audio/wav")},
                data={
                    "model": settings.transcription_model,
                    "response_format": "verbose_json",
                    "timestamp_granularities[]": "segment",
                },
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json() or {}
        except (requests.RequestException, ValueError) as exc:
            raise UpstreamUnavailable("transcription", str(exc)) from exc

        segments: list[TextSegment] = []
        for item in payload.get("segments") or []:
            text = str(item.get("text") or "").strip()
            if not text:
                continue
            logprob = item.get("avg_logprob")
            confidence = math.exp(logprob) if logprob is not None else DEFAULT_SEGMENT_CONFIDENCE
            segments.append(
                TextSegment(
                    text=text,
                    confidence=max(0.0, min(1.0, confidence)),
                    observed_at=started_at + timedelta(seconds=float(item.get("start") or 0.0)),
                    source="transcript",
                )
            )
        if not segments and payload.get("text"):
            segments.append(TextSegment(text=str(payload["text"]).strip(), observed_at=started_at))
        return segments
