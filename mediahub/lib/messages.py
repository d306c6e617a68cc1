"""
Wire vocabulary for Media Hub.

Message types, command names and channel roles live here so the hub, page
agents and observers never hard-code strings.  Also defines the typed
records that flow through the hub:

    UpdatePayload   what an agent reports (everything but elementId optional)
    PageContext     who sent it (page id, page URL/title, frame URL, command URL)
    Session         the fully-populated record the registry stores

``normalize()`` is the only way an UpdatePayload becomes a Session, so
partially-populated input never reaches the registry.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import urlparse

# Message types
MEDIA_UPDATE = "MEDIA_UPDATE"          # agent -> hub: element state changed
MEDIA_REMOVED = "MEDIA_REMOVED"        # agent -> hub: element no longer reportable
MEDIA_COMMAND = "MEDIA_COMMAND"        # observer -> hub -> agent: control command
SESSIONS_UPDATED = "SESSIONS_UPDATED"  # hub -> observer: full snapshot

# Commands an observer may issue
TOGGLE_PLAY = "toggle-play"
SEEK_RELATIVE = "seek-relative"
SEEK_ABSOLUTE = "seek-absolute"

# Channel roles (the only one the hub accepts today)
ROLE_POPUP = "popup-panel"

UNKNOWN_SITE = "Unknown site"


def build_session_id(page_id, element_id: str) -> str:
    return f"{page_id}:{element_id}"


def _finite(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _text(value) -> str | None:
    if value is None:
        return None
    value = str(value)
    return value or None


@dataclass
class UpdatePayload:
    """State report for one element, as sent by an agent."""

    element_id: str
    title: str | None = None
    artist: str | None = None
    artwork: str | None = None
    origin: str | None = None
    site_name: str | None = None
    page_title: str | None = None
    favicon: str | None = None
    media_kind: str | None = None
    source_url: str | None = None
    is_playing: bool = False
    is_ended: bool = False
    muted: bool = False
    volume: float = 1.0
    playback_rate: float = 1.0
    duration: float | None = None
    current_time: float = 0.0
    pip_active: bool = False
    can_play: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "UpdatePayload | None":
        """Parse a camelCase wire payload. Returns None without an elementId."""
        if not isinstance(data, dict):
            return None
        element_id = _text(data.get("elementId"))
        if not element_id:
            return None
        duration = _finite(data.get("duration"))
        current_time = _finite(data.get("currentTime"))
        volume = _finite(data.get("volume"))
        rate = _finite(data.get("playbackRate"))
        return cls(
            element_id=element_id,
            title=_text(data.get("title")),
            artist=_text(data.get("artist")),
            artwork=_text(data.get("artwork")),
            origin=_text(data.get("origin")),
            site_name=_text(data.get("siteName")),
            page_title=_text(data.get("pageTitle")),
            favicon=_text(data.get("favIcon")),
            media_kind=_text(data.get("mediaKind")),
            source_url=_text(data.get("sourceUrl")),
            is_playing=bool(data.get("isPlaying")),
            is_ended=bool(data.get("isEnded")),
            muted=bool(data.get("muted")),
            volume=volume if volume is not None else 1.0,
            playback_rate=rate if rate is not None else 1.0,
            duration=duration if duration and duration > 0 else None,
            current_time=current_time if current_time and current_time > 0 else 0.0,
            pip_active=bool(data.get("pipActive")),
            can_play=bool(data.get("canPlay")),
        )


@dataclass(frozen=True)
class PageContext:
    """Sender identity attached to every agent report."""

    page_id: str | None
    url: str | None = None
    title: str | None = None
    frame_url: str | None = None
    command_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "PageContext":
        data = data if isinstance(data, dict) else {}
        page_id = data.get("id")
        return cls(
            page_id=str(page_id) if page_id not in (None, "") else None,
            url=_text(data.get("url")),
            title=_text(data.get("title")),
            frame_url=_text(data.get("frameUrl")),
            command_url=_text(data.get("commandUrl")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.page_id,
            "url": self.url,
            "title": self.title,
            "frameUrl": self.frame_url,
            "commandUrl": self.command_url,
        }


# snake_case attribute -> camelCase wire key, where they differ
_WIRE_KEYS = {
    "session_id": "sessionId",
    "page_id": "pageId",
    "element_id": "elementId",
    "site_name": "siteName",
    "page_title": "pageTitle",
    "favicon": "favIcon",
    "media_kind": "mediaKind",
    "source_url": "sourceUrl",
    "is_playing": "isPlaying",
    "is_ended": "isEnded",
    "playback_rate": "playbackRate",
    "current_time": "currentTime",
    "pip_active": "pipActive",
    "can_play": "canPlay",
    "last_updated": "lastUpdated",
}


@dataclass
class Session:
    """Canonical registry record for one page's active element."""

    session_id: str
    page_id: str
    element_id: str
    title: str | None
    artist: str | None
    artwork: str | None
    origin: str | None
    site_name: str
    page_title: str | None
    favicon: str | None
    media_kind: str | None
    source_url: str | None
    is_playing: bool
    is_ended: bool
    muted: bool
    volume: float
    playback_rate: float
    duration: float | None
    current_time: float
    pip_active: bool
    can_play: bool
    last_updated: int = field(default=0)

    def to_dict(self) -> dict[str, Any]:
        return {_WIRE_KEYS.get(k, k): v for k, v in asdict(self).items()}


def _hostname(url: str | None) -> str | None:
    if not url:
        return None
    try:
        return urlparse(url).hostname or None
    except ValueError:
        return None


def normalize(payload: UpdatePayload, page: PageContext, last_updated: int) -> Session:
    """Fill the presentation fields an agent may have left empty.

    sourceUrl: payload, else the reporting frame's URL, else the page URL.
    origin:    payload, else hostname of the resolved source (or page) URL.
    siteName:  payload, else page title, else origin, else "Unknown site".
    """
    source_url = payload.source_url or page.frame_url or page.url or None
    origin = payload.origin or _hostname(source_url or page.url)
    site_name = payload.site_name or page.title or origin or UNKNOWN_SITE
    return Session(
        session_id=build_session_id(page.page_id, payload.element_id),
        page_id=page.page_id,
        element_id=payload.element_id,
        title=payload.title,
        artist=payload.artist,
        artwork=payload.artwork,
        origin=origin,
        site_name=site_name,
        page_title=payload.page_title or page.title,
        favicon=payload.favicon,
        media_kind=payload.media_kind,
        source_url=source_url,
        is_playing=payload.is_playing,
        is_ended=payload.is_ended,
        muted=payload.muted,
        volume=payload.volume,
        playback_rate=payload.playback_rate,
        duration=payload.duration,
        current_time=payload.current_time,
        pip_active=payload.pip_active,
        can_play=payload.can_play,
        last_updated=last_updated,
    )
