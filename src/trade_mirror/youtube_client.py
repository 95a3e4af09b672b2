from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
import xml.etree.ElementTree as ET

from loguru import logger
import requests

from .errors import ConfigurationMissing, UpstreamUnavailable
from .settings import settings


ATOM_NS = "{http://www.w3.org/2005/Atom}"
YT_NS = "{http://www.youtube.com/xml/schemas/2015}"
CHAT_TERMINAL_REASONS = {"liveChatEnded", "liveChatNotFound", "liveChatDisabled"}


@dataclass
class VideoStatus:
    video_id: str
    is_live: bool
    title: str = ""
    channel_id: str = ""
    actual_start_time: str | None = None
    concurrent_viewers: int | None = None
    active_live_chat_id: str | None = None


@dataclass
class ChatMessage:
    id: str
    author_channel_id: str
    author_name: str
    text: str
    published_at: datetime
    is_owner: bool = False
    is_moderator: bool = False


@dataclass
class ChatPage:
    messages: list[ChatMessage] = field(default_factory=list)
    next_page_token: str | None = None
    ended: bool = False
    error: str | None = None


class YouTubeClient:
    """Thin wrapper over the public feed and the Data API v3. Quota is accounted by the caller."""

    def __init__(self, api_key: str | None = None, session: requests.Session | None = None) -> None:
        self.api_key = api_key if api_key is not None else settings.youtube_api_key
        self.base_url = settings.youtube_api_base_url.rstrip("/")
        self.timeout = settings.youtube_request_timeout_seconds
        self.http = session or requests

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def fetch_feed_video_ids(self, channel_id: str) -> list[str]:
        """Most recent upload ids from the channel's public Atom feed. Costs no quota."""
        try:
            response = self.http.get(
                settings.youtube_feed_base_url,
                params={"channel_id": channel_id},
                timeout=self.timeout,
            )
            response.raise_for_status()
            root = ET.fromstring(response.text)
        except (requests.RequestException, ET.ParseError) as exc:
            raise UpstreamUnavailable("youtube_feed", str(exc)) from exc

        video_ids: list[str] = []
        for entry in root.findall(f"{ATOM_NS}entry"):
            node = entry.find(f"{YT_NS}videoId")
            if node is not None and node.text:
                video_ids.append(node.text.strip())
        return video_ids[: settings.youtube_feed_max_videos]

    def list_videos(self, video_ids: list[str]) -> list[VideoStatus]:
        if not video_ids:
            return []
        payload = self._get(
            "videos",
            {"part": "snippet,liveStreamingDetails", "id": ",".join(video_ids)},
        )
        return [self._parse_video(item) for item in payload.get("items") or []]

    def search_channel_id(self, handle: str) -> str | None:
        query = handle.strip().lstrip("@")
        payload = self._get(
            "search",
            {"part": "snippet", "type": "channel", "q": query, "maxResults": 1},
        )
        items = payload.get("items") or []
        if not items:
            return None
        snippet = items[0].get("snippet") or {}
        return (items[0].get("id") or {}).get("channelId") or snippet.get("channelId")

    def get_live_chat_id(self, video_id: str) -> str | None:
        payload = self._get("videos", {"part": "liveStreamingDetails", "id": video_id})
        items = payload.get("items") or []
        if not items:
            return None
        return (items[0].get("liveStreamingDetails") or {}).get("activeLiveChatId")

    def fetch_chat_messages(self, live_chat_id: str, page_token: str | None = None) -> ChatPage:
        params: dict[str, Any] = {
            "liveChatId": live_chat_id,
            "part": "snippet,authorDetails",
            "maxResults": 200,
        }
        if page_token:
            params["pageToken"] = page_token
        try:
            payload = self._get("liveChat/messages", params)
        except UpstreamUnavailable as exc:
            if exc.reason in CHAT_TERMINAL_REASONS:
                return ChatPage(ended=True, error=exc.reason)
            raise

        messages: list[ChatMessage] = []
        for item in payload.get("items") or []:
            snippet = item.get("snippet") or {}
            author = item.get("authorDetails") or {}
            text = snippet.get("displayMessage") or (snippet.get("textMessageDetails") or {}).get("messageText") or ""
            messages.append(
                ChatMessage(
                    id=str(item.get("id") or ""),
                    author_channel_id=str(author.get("channelId") or ""),
                    author_name=str(author.get("displayName") or "Anonymous"),
                    text=text,
                    published_at=_parse_timestamp(snippet.get("publishedAt")),
                    is_owner=bool(author.get("isChatOwner")),
                    is_moderator=bool(author.get("isChatModerator")),
                )
            )
        return ChatPage(messages=messages, next_page_token=payload.get("nextPageToken"))

    def _get(self, path: str, params: dict[str, Any]) -> dict:
        if not self.api_key:
            raise ConfigurationMissing("YOUTUBE_API_KEY")
        try:
            response = self.http.get(
                f"{self.base_url}/{path}",
                params={**params, "key": self.api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamUnavailable("youtube_api", str(exc)) from exc

        if response.status_code >= 400:
            reason, message = _error_reason(response)
            logger.warning("YouTube API {} failed status={} reason={}", path, response.status_code, reason)
            raise UpstreamUnavailable("youtube_api", message or f"HTTP {response.status_code}", reason=reason)
        return response.json()

    @staticmethod
    def _parse_video(item: dict) -> VideoStatus:
        snippet = item.get("snippet") or {}
        details = item.get("liveStreamingDetails") or {}
        viewers = details.get("concurrentViewers")
        is_live = snippet.get("liveBroadcastContent") == "live" or (
            bool(details.get("actualStartTime")) and not details.get("actualEndTime")
        )
        return VideoStatus(
            video_id=str(item.get("id") or ""),
            is_live=is_live,
            title=str(snippet.get("title") or ""),
            channel_id=str(snippet.get("channelId") or ""),
            actual_start_time=details.get("actualStartTime"),
            concurrent_viewers=int(viewers) if viewers not in (None, "") else None,
            active_live_chat_id=details.get("activeLiveChatId"),
        )


def thumbnail_url(video_id: str) -> str:
    return f"https://i.ytimg.com/vi/{video_id}/maxresdefault_live.jpg"


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _error_reason(response: requests.Response) -> tuple[str, str]:
    try:
        body = response.json()
    except ValueError:
        return "", response.text[:200]
    error = body.get("error") or {}
    errors = error.get("errors") or [{}]
    return str(errors[0].get("reason") or ""), str(error.get("message") or "")


def _parse_timestamp(value: Any) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
