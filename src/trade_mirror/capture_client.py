from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger
import requests

from .errors import UpstreamUnavailable
from .settings import settings
from .youtube_client import thumbnail_url


@dataclass
class CapturedFrame:
    stream_id: str
    image_url: str
    captured_at: datetime
    source: str


class CaptureClient:
    """Gets a recent frame of a live stream from the capture service, else the live thumbnail."""

    def __init__(self) -> None:
        self.service_url = settings.capture_service_url.strip()
        self.timeout = settings.capture_timeout_seconds

    def is_configured(self) -> bool:
        return bool(self.service_url)

    def capture_frame(self, stream_id: str, timestamp: float | None = None) -> CapturedFrame:
        if not self.is_configured():
            return self._thumbnail(stream_id)

        try:
            response = requests.post(
                self.service_url,
                json={"streamId": stream_id, "timestamp": timestamp, "format": "jpeg", "quality": 80},
                headers={"Authorization": f"Bearer {settings.capture_service_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json() or {}
        except (requests.RequestException, ValueError) as exc:
            raise UpstreamUnavailable("capture", str(exc)) from exc

        image_url = data.get("imageUrl")
        if not image_url:
            logger.warning("Capture service returned no image for {}; using live thumbnail", stream_id)
            return self._thumbnail(stream_id)
        captured_at = data.get("capturedAt")
        return CapturedFrame(
            stream_id=stream_id,
            image_url=str(image_url),
            captured_at=_parse(captured_at),
            source="capture_service",
        )

    @staticmethod
    def _thumbnail(stream_id: str) -> CapturedFrame:
        return CapturedFrame(
            stream_id=stream_id,
            image_url=thumbnail_url(stream_id),
            captured_at=datetime.now(timezone.utc),
            source="thumbnail",
        )


def _parse(value: object) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
