"""
Host-environment primitives a page agent runs against.

MediaElement   a playable resource that fires media events to listeners
Document       the page: tracked structure, mutation and unload notifications
FrameScheduler coalesces deferred work onto the next frame boundary

The agent only relies on the attribute/method surface used here, so an
embedding that wraps real players (mpv, a browser bridge...) only needs to
provide objects with the same shape.
"""

import asyncio
import math

from .lib.config import cfg
from .lib.errors import PlaybackRejected


# HTMLMediaElement.readyState values the agent cares about
HAVE_NOTHING = 0
HAVE_METADATA = 1
HAVE_CURRENT_DATA = 2
HAVE_ENOUGH_DATA = 4

DEFAULT_FRAME_INTERVAL = 1 / 60


class MediaElement:
    """An audio/video element.

    Events are dispatched synchronously to every listener as a plain event
    name ("play", "timeupdate", ...), in the order a browser would fire them.
    """

    def __init__(self, src: str | None = None, kind: str = "video", *,
                 duration: float | None = None, title: str | None = None,
                 artist: str | None = None, artwork: str | None = None,
                 poster: str | None = None, autoplay_allowed: bool = True):
        self.kind = kind
        self.src = src
        self.current_src = src
        self.title = title
        self.artist = artist
        self.artwork = artwork
        self.poster = poster
        self.dataset: dict[str, str] = {}
        self.autoplay_allowed = autoplay_allowed

        self.paused = True
        self.ended = False
        self.muted = False
        self.volume = 1.0
        self.playback_rate = 1.0
        self.pip_active = False
        self.ready_state = HAVE_NOTHING
        self._duration = float("nan") if duration is None else float(duration)
        self._current_time = 0.0
        self._listeners: list = []
        if duration is not None:
            self.ready_state = HAVE_ENOUGH_DATA

    def __repr__(self):
        return f"<MediaElement {self.kind} src={self.src!r} id={self.dataset.get('mediahubId')}>"

    # ── Listeners ──

    def add_listener(self, callback):
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def dispatch(self, event: str):
        for callback in list(self._listeners):
            callback(event)

    # ── State ──

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def current_time(self) -> float:
        return self._current_time

    @current_time.setter
    def current_time(self, value: float):
        self._current_time = float(value)
        if self.ended and (math.isnan(self._duration) or self._current_time < self._duration):
            self.ended = False
        self.dispatch("seeked")

    @property
    def is_playing(self) -> bool:
        return not self.paused and not self.ended

    # ── Playback ──

    async def play(self):
        """Start playback; raises PlaybackRejected when the host refuses."""
        if not self.autoplay_allowed:
            raise PlaybackRejected("play() rejected by autoplay policy")
        if self.ended:
            self._current_time = 0.0
            self.ended = False
        if self.paused:
            self.paused = False
            self.dispatch("play")

    def pause(self):
        if not self.paused:
            self.paused = True
            self.dispatch("pause")

    def load(self, duration: float | None = None):
        """Finish loading: metadata, duration and first frame become available."""
        self._duration = float("nan") if duration is None else float(duration)
        self.ready_state = HAVE_METADATA
        self.dispatch("loadedmetadata")
        self.dispatch("durationchange")
        self.ready_state = HAVE_ENOUGH_DATA
        self.dispatch("loadeddata")

    def advance(self, seconds: float):
        """Progress playback by *seconds* of wall time."""
        if not self.is_playing:
            return
        self._current_time += seconds * self.playback_rate
        finished = math.isfinite(self._duration) and self._current_time >= self._duration
        if finished:
            self._current_time = self._duration
        self.dispatch("timeupdate")
        if finished:
            self.paused = True
            self.ended = True
            self.dispatch("pause")
            self.dispatch("ended")

    def set_volume(self, volume: float | None = None, muted: bool | None = None):
        if volume is not None:
            self.volume = max(0.0, min(1.0, float(volume)))
        if muted is not None:
            self.muted = bool(muted)
        self.dispatch("volumechange")

    def set_playback_rate(self, rate: float):
        self.playback_rate = float(rate)
        self.dispatch("ratechange")

    def enter_picture_in_picture(self):
        self.pip_active = True
        self.dispatch("enterpictureinpicture")

    def leave_picture_in_picture(self):
        self.pip_active = False
        self.dispatch("leavepictureinpicture")


class Document:
    """A page: holds elements and reports structural changes and unload."""

    def __init__(self, url: str | None = None, title: str | None = None, *,
                 site_name: str | None = None, favicon: str | None = None):
        self.url = url
        self.title = title
        self.site_name = site_name
        self.favicon = favicon
        self.elements: list[MediaElement] = []
        self._mutation_observers: list = []
        self._unload_handlers: list = []
        self.unloaded = False

    def observe(self, callback):
        """callback(added: list, removed: list) on every structural change."""
        self._mutation_observers.append(callback)

    def on_unload(self, callback):
        """Run *callback* once when the page is hidden for good."""
        self._unload_handlers.append(callback)

    def append(self, *elements: MediaElement):
        added = [el for el in elements if el not in self.elements]
        self.elements.extend(added)
        if added:
            self._notify(added, [])

    def remove(self, *elements: MediaElement):
        removed = [el for el in elements if el in self.elements]
        for el in removed:
            self.elements.remove(el)
        if removed:
            self._notify([], removed)

    def unload(self):
        if self.unloaded:
            return
        self.unloaded = True
        handlers, self._unload_handlers = self._unload_handlers, []
        for handler in handlers:
            handler()

    def _notify(self, added, removed):
        for callback in list(self._mutation_observers):
            callback(added, removed)


class FrameScheduler:
    """Runs requested callbacks at the next frame boundary of the event loop."""

    def __init__(self, interval: float | None = None):
        if interval is None:
            interval = float(cfg("agent", "frame_interval", default=DEFAULT_FRAME_INTERVAL))
        self.interval = interval

    def request(self, callback):
        loop = asyncio.get_running_loop()
        delay = self.interval - (loop.time() % self.interval)
        return loop.call_later(delay, callback)

    def cancel(self, handle):
        handle.cancel()
