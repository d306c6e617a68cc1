# Media Hub
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
MediaAgent — per-page tracking, arbitration and reporting.

One agent lives in each page.  It tracks every playable element it is told
about, but only one of them (the *active* element) is ever reported to the
hub, so the outside world sees at most one session per page.

Election:
    - an element registered while nothing is active becomes active
    - an element registered while already playing (autoplay) takes over
    - any tracked element firing "play" takes over, last play wins

Takeover always runs: cancel the outgoing element's pending flush, send
MEDIA_REMOVED for it, switch the active id, flush the new element at once.

Scheduling:
    "timeupdate" is deferred: at most one pending flush per element, run on
    the next frame boundary and reading state at that moment.  Every other
    event is immediate: it cancels the pending flush and sends right away.

The agent is synchronous and single-threaded: every event handler runs to
completion before the next starts.  Only ``handle_command`` awaits (for
``play()``).
"""

import logging
import math
import uuid
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

from .lib.errors import PlaybackRejected, UnknownElement
from .lib.messages import (
    MEDIA_REMOVED, MEDIA_UPDATE, SEEK_ABSOLUTE, SEEK_RELATIVE, TOGGLE_PLAY,
)
from .media import HAVE_CURRENT_DATA, FrameScheduler

log = logging.getLogger(__name__)

ID_ATTR = "mediahubId"

MEDIA_EVENTS = (
    "play",
    "pause",
    "timeupdate",
    "durationchange",
    "volumechange",
    "ratechange",
    "ended",
    "loadeddata",
    "loadedmetadata",
    "seeked",
    "enterpictureinpicture",
    "leavepictureinpicture",
)

# High-frequency events, coalesced onto the next frame
DEFERRED_EVENTS = frozenset({"timeupdate"})


def ensure_element_id(element) -> str:
    """Return the element's stable id, assigning one on first sight."""
    element_id = element.dataset.get(ID_ATTR)
    if not element_id:
        element_id = uuid.uuid4().hex
        element.dataset[ID_ATTR] = element_id
    return element_id


def _finite(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def known_duration(element) -> float | None:
    """Duration when it is a finite positive number, else None (live/unloaded)."""
    duration = _finite(element.duration)
    return duration if duration is not None and duration > 0 else None


def clamp_seek(target: float, duration: float | None) -> float:
    if duration is not None:
        return min(max(0.0, target), duration)
    return max(0.0, target)


def _hostname(url: str | None) -> str | None:
    if not url:
        return None
    try:
        return urlparse(url).hostname or None
    except ValueError:
        return None


@dataclass
class TrackedElement:
    element: object
    listener: object


class MediaAgent:
    """Tracks a page's elements and reports the active one through *send*.

    *send* is a plain callable taking one message dict; it must not block
    (an OrderedSender's ``send`` in production, a list's ``append`` in tests).
    """

    def __init__(self, send, scheduler: FrameScheduler | None = None, document=None):
        self._send = send
        self._scheduler = scheduler or FrameScheduler()
        self._document = document
        self._tracked: dict[str, TrackedElement] = {}
        self._pending: dict[str, object] = {}   # element id -> scheduler handle
        self._active_id: str | None = None
        self._commands = {
            TOGGLE_PLAY: self._toggle_play,
            SEEK_RELATIVE: self._seek_relative,
            SEEK_ABSOLUTE: self._seek_absolute,
        }

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def tracked_ids(self) -> list[str]:
        return list(self._tracked)

    def has_pending(self, element_id: str) -> bool:
        return element_id in self._pending

    # ── Page wiring ──

    def attach(self, document):
        """Start following *document*: initial scan, mutations, unload."""
        self._document = document
        document.observe(self.handle_mutation)
        document.on_unload(self.teardown)
        self.scan(document.elements)

    def scan(self, elements):
        for element in list(elements):
            self.register(element)

    def handle_mutation(self, added=(), removed=()):
        for element in removed:
            self.unregister(element)
        for element in added:
            self.register(element)

    # ── Tracking ──

    def register(self, element) -> bool:
        element_id = ensure_element_id(element)
        if element_id in self._tracked:
            return False

        def listener(event, _element=element):
            self._on_event(_element, event)

        element.add_listener(listener)
        self._tracked[element_id] = TrackedElement(element, listener)
        log.debug("Tracking %s (%d tracked)", element_id, len(self._tracked))

        if self._active_id is None or (not element.paused and not element.ended):
            self._set_active(element)
        return True

    def unregister(self, element) -> bool:
        element_id = element.dataset.get(ID_ATTR)
        if not element_id:
            return False
        tracked = self._tracked.get(element_id)
        if tracked is None:
            return False

        element.remove_listener(tracked.listener)
        self._cancel_pending(element_id)
        del self._tracked[element_id]
        element.dataset.pop(ID_ATTR, None)

        if self._active_id == element_id:
            self._active_id = None
            self._send({"type": MEDIA_REMOVED, "payload": {"elementId": element_id}})
            log.info("Active element %s removed", element_id)
        return True

    def teardown(self):
        """Page unload: drop every tracked element. Safe to call repeatedly."""
        for tracked in list(self._tracked.values()):
            self.unregister(tracked.element)

    # ── Arbitration ──

    def _on_event(self, element, event: str):
        if event == "play" and self._set_active(element):
            return
        self.schedule_update(element, immediate=event not in DEFERRED_EVENTS)

    def _set_active(self, element) -> bool:
        new_id = ensure_element_id(element)
        if new_id == self._active_id:
            return False

        old_id = self._active_id
        if old_id is not None:
            self._cancel_pending(old_id)
            self._send({"type": MEDIA_REMOVED, "payload": {"elementId": old_id}})

        self._active_id = new_id
        log.info("Active element: %s (was %s)", new_id, old_id)
        self.schedule_update(element, immediate=True)
        return True

    # ── Scheduling ──

    def schedule_update(self, element, immediate: bool = False):
        element_id = ensure_element_id(element)

        if immediate:
            self._cancel_pending(element_id)
            self.flush(element)
            return

        if element_id in self._pending:
            return

        def fire():
            self._pending.pop(element_id, None)
            self.flush(element)

        self._pending[element_id] = self._scheduler.request(fire)

    def _cancel_pending(self, element_id: str):
        handle = self._pending.pop(element_id, None)
        if handle is not None:
            self._scheduler.cancel(handle)

    def flush(self, element) -> bool:
        """Serialize and send *element*'s state if it is the active one."""
        element_id = element.dataset.get(ID_ATTR)
        if not element_id or element_id != self._active_id:
            return False
        self._send({"type": MEDIA_UPDATE, "payload": self.serialize(element)})
        return True

    # ── Serialization ──

    def serialize(self, element) -> dict:
        doc = self._document
        page_url = getattr(doc, "url", None)
        page_title = getattr(doc, "title", None)
        duration = known_duration(element)
        current_time = _finite(element.current_time)
        volume = _finite(element.volume)
        return {
            "elementId": ensure_element_id(element),
            "title": self._title(element),
            "artist": element.artist or "",
            "artwork": element.artwork or element.poster or None,
            "origin": _hostname(page_url),
            "siteName": getattr(doc, "site_name", None) or page_title or _hostname(page_url),
            "pageTitle": page_title,
            "favIcon": getattr(doc, "favicon", None),
            "mediaKind": element.kind,
            "sourceUrl": element.current_src or element.src or page_url,
            "isPlaying": not element.paused and not element.ended,
            "isEnded": bool(element.ended),
            "muted": bool(element.muted),
            "volume": volume if volume is not None else 1.0,
            "duration": duration,
            "currentTime": current_time if current_time is not None and current_time >= 0 else 0.0,
            "playbackRate": element.playback_rate,
            "pipActive": bool(element.pip_active),
            "canPlay": element.ready_state >= HAVE_CURRENT_DATA,
        }

    def _title(self, element) -> str | None:
        if element.title:
            return element.title
        doc = self._document
        src = element.current_src or element.src
        if not src:
            return getattr(doc, "title", None) or _hostname(getattr(doc, "url", None))
        try:
            parsed = urlparse(src)
        except ValueError:
            return src
        segments = [s for s in parsed.path.split("/") if s]
        if segments:
            return unquote(segments[-1])
        return parsed.netloc or src

    # ── Commands ──

    async def handle_command(self, message: dict) -> dict:
        """Execute an addressed command, return ``{"ok": bool, "error"?: str}``."""
        element_id = message.get("elementId")
        command = message.get("command")
        tracked = self._tracked.get(element_id) if element_id else None
        handler = self._commands.get(command)
        if tracked is None or handler is None:
            log.debug("Command %s for unknown element %s", command, element_id)
            return {"ok": False, "error": UnknownElement.code}

        params = message.get("params")
        params = dict(params) if isinstance(params, dict) else {}
        for key in ("delta", "time"):
            if key not in params and key in message:
                params[key] = message[key]

        element = tracked.element
        ack = {"ok": True}
        try:
            await handler(element, params)
        except PlaybackRejected as e:
            log.info("Playback rejected for %s: %s", element_id, e)
            ack = {"ok": False, "error": e.code}
        except Exception as e:
            log.exception("Command %s failed for %s", command, element_id)
            ack = {"ok": False, "error": str(e) or "command-failed"}

        # Element may have been torn down while play() was pending
        if element_id in self._tracked:
            self.schedule_update(element, immediate=True)
        return ack

    async def _toggle_play(self, element, params: dict):
        if element.paused or element.ended:
            await element.play()
        else:
            element.pause()

    async def _seek_relative(self, element, params: dict):
        delta = _finite(params.get("delta", 0))
        if delta is None:
            return
        self._seek_to(element, element.current_time + delta)

    async def _seek_absolute(self, element, params: dict):
        target = _finite(params.get("time", 0))
        if target is None:
            return
        self._seek_to(element, target)

    def _seek_to(self, element, target: float):
        element.current_time = clamp_seek(target, known_duration(element))
