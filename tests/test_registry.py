"""Tests for the hub's session registry: normalization, lifecycle, ordering, routing."""

import pytest

from mediahub.agent import ID_ATTR, MediaAgent
from mediahub.hub import MediaHub
from mediahub.lib.errors import DispatchUnreachable
from mediahub.lib.messages import UNKNOWN_SITE, PageContext, TOGGLE_PLAY
from mediahub.media import Document, MediaElement
from mediahub.registry import SessionRegistry


class FakeClock:
    def __init__(self, start=1000):
        self.now = start

    def __call__(self):
        return self.now


class Recorder:
    """Collects broadcasts and dispatched commands."""

    def __init__(self, ack=None, fail=None):
        self.broadcasts = []
        self.dispatched = []
        self.ack = ack if ack is not None else {"ok": True}
        self.fail = fail

    async def broadcast(self, sessions):
        self.broadcasts.append(sessions)

    async def dispatch(self, page_id, message):
        if self.fail:
            raise self.fail
        self.dispatched.append((page_id, message))
        return self.ack


@pytest.fixture
def rec():
    return Recorder()


@pytest.fixture
def registry(rec):
    return SessionRegistry(broadcast=rec.broadcast, dispatch=rec.dispatch, clock=FakeClock())


def page(page_id="7", **kwargs):
    return PageContext(page_id=page_id, **kwargs)


# ============================================================================
# Updates
# ============================================================================


class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_without_page_id_is_dropped(self, registry, rec):
        assert await registry.apply_update({"elementId": "e1"}, page(None)) is None
        assert len(registry) == 0
        assert rec.broadcasts == []

    @pytest.mark.asyncio
    async def test_update_without_element_id_is_dropped(self, registry, rec):
        assert await registry.apply_update({"title": "x"}, page()) is None
        assert rec.broadcasts == []

    @pytest.mark.asyncio
    async def test_session_id_joins_page_and_element(self, registry):
        session = await registry.apply_update({"elementId": "e1"}, page("7"))
        assert session.session_id == "7:e1"
        assert "7:e1" in registry

    @pytest.mark.asyncio
    async def test_source_url_falls_back_to_frame_then_page(self, registry):
        framed = page("1", url="https://page.example/", frame_url="https://frame.example/embed")
        s = await registry.apply_update({"elementId": "a"}, framed)
        assert s.source_url == "https://frame.example/embed"
        assert s.origin == "frame.example"

        s = await registry.apply_update({"elementId": "b"}, page("1", url="https://page.example/x"))
        assert s.source_url == "https://page.example/x"
        assert s.origin == "page.example"

    @pytest.mark.asyncio
    async def test_site_name_fallbacks(self, registry):
        s = await registry.apply_update({"elementId": "a", "siteName": "Tube"},
                                        page("1", title="Title"))
        assert s.site_name == "Tube"

        s = await registry.apply_update({"elementId": "b"}, page("1", title="Title"))
        assert s.site_name == "Title"

        s = await registry.apply_update({"elementId": "c"}, page("1", url="https://radio.example/"))
        assert s.site_name == "radio.example"

        s = await registry.apply_update({"elementId": "d"}, page("1"))
        assert s.site_name == UNKNOWN_SITE

    @pytest.mark.asyncio
    async def test_non_finite_numbers_are_normalized(self, registry):
        s = await registry.apply_update(
            {"elementId": "a", "duration": float("inf"), "currentTime": -4}, page())
        assert s.duration is None
        assert s.current_time == 0.0

    @pytest.mark.asyncio
    async def test_update_replaces_the_whole_record(self, registry):
        await registry.apply_update({"elementId": "a", "title": "Song", "artist": "Band"}, page())
        s = await registry.apply_update({"elementId": "a", "title": "Other"}, page())

        assert len(registry) == 1
        assert s.title == "Other"
        assert s.artist is None

    @pytest.mark.asyncio
    async def test_every_update_broadcasts_snapshot(self, registry, rec):
        await registry.apply_update({"elementId": "a"}, page())
        await registry.apply_update({"elementId": "a", "isPlaying": True}, page())

        assert len(rec.broadcasts) == 2
        assert rec.broadcasts[-1][0]["sessionId"] == "7:a"
        assert rec.broadcasts[-1][0]["isPlaying"] is True

    @pytest.mark.asyncio
    async def test_last_updated_strictly_increases(self, registry):
        first = await registry.apply_update({"elementId": "a"}, page())
        second = await registry.apply_update({"elementId": "b"}, page())
        assert second.last_updated > first.last_updated

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_undo_update(self):
        async def broken(sessions):
            raise RuntimeError("boom")

        registry = SessionRegistry(broadcast=broken)
        assert await registry.apply_update({"elementId": "a"}, page()) is not None
        assert "7:a" in registry


# ============================================================================
# Removal and eviction
# ============================================================================


class TestRemoval:
    @pytest.mark.asyncio
    async def test_removal_deletes_and_broadcasts(self, registry, rec):
        await registry.apply_update({"elementId": "a"}, page())
        rec.broadcasts.clear()

        assert await registry.apply_removal("a", page())

        assert len(registry) == 0
        assert rec.broadcasts == [[]]

    @pytest.mark.asyncio
    async def test_removal_of_unknown_session_is_silent(self, registry, rec):
        assert not await registry.apply_removal("ghost", page())
        assert not await registry.apply_removal(None, page())
        assert not await registry.apply_removal("a", page(None))
        assert rec.broadcasts == []

    @pytest.mark.asyncio
    async def test_evict_page_broadcasts_once(self, registry, rec):
        await registry.apply_update({"elementId": "a"}, page("1"))
        await registry.apply_update({"elementId": "b"}, page("1"))
        await registry.apply_update({"elementId": "c"}, page("2"))
        rec.broadcasts.clear()

        assert await registry.evict_page("1") == 2

        assert len(rec.broadcasts) == 1
        assert [s["sessionId"] for s in rec.broadcasts[0]] == ["2:c"]

    @pytest.mark.asyncio
    async def test_evict_page_is_idempotent(self, registry, rec):
        await registry.apply_update({"elementId": "a"}, page("1"))
        await registry.evict_page("1")
        rec.broadcasts.clear()

        assert await registry.evict_page("1") == 0
        assert await registry.evict_page(1) == 0
        assert rec.broadcasts == []


# ============================================================================
# Snapshot ordering
# ============================================================================


class TestOrdering:
    @pytest.mark.asyncio
    async def test_playing_first_then_most_recent(self, rec):
        clock = FakeClock()
        registry = SessionRegistry(broadcast=rec.broadcast, clock=clock)

        for element_id, playing in (("p-old", True), ("s-old", False),
                                    ("p-new", True), ("s-new", False)):
            clock.now += 100
            await registry.apply_update({"elementId": element_id, "isPlaying": playing}, page())

        assert [s.element_id for s in registry.snapshot()] == ["p-new", "p-old", "s-new", "s-old"]
        assert [s["elementId"] for s in rec.broadcasts[-1]] == ["p-new", "p-old", "s-new", "s-old"]

    @pytest.mark.asyncio
    async def test_frozen_clock_still_orders_by_arrival(self, rec):
        registry = SessionRegistry(broadcast=rec.broadcast, clock=lambda: 5)

        await registry.apply_update({"elementId": "a"}, page())
        await registry.apply_update({"elementId": "b"}, page())
        await registry.apply_update({"elementId": "c"}, page())

        assert [s.element_id for s in registry.snapshot()] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_serialized_sessions_use_wire_keys(self, registry):
        await registry.apply_update({"elementId": "a", "favIcon": "https://x/f.ico"}, page())
        wire = registry.serialize()[0]
        assert wire["favIcon"] == "https://x/f.ico"
        assert wire["pageId"] == "7"
        assert wire["elementId"] == "a"
        assert "lastUpdated" in wire


# ============================================================================
# Command routing
# ============================================================================


class TestRouting:
    @pytest.mark.asyncio
    async def test_unknown_session_is_dropped(self, registry, rec):
        assert not await registry.route_command("7:ghost", TOGGLE_PLAY)
        assert not await registry.route_command(None, TOGGLE_PLAY)
        assert rec.dispatched == []

    @pytest.mark.asyncio
    async def test_command_goes_to_owning_page(self, registry, rec):
        await registry.apply_update({"elementId": "a"}, page("7"))

        assert await registry.route_command("7:a", "seek-relative", {"delta": 10})

        assert rec.dispatched == [
            ("7", {"elementId": "a", "command": "seek-relative", "params": {"delta": 10}}),
        ]

    @pytest.mark.asyncio
    async def test_unreachable_page_is_absorbed(self):
        rec = Recorder(fail=DispatchUnreachable("gone"))
        registry = SessionRegistry(broadcast=rec.broadcast, dispatch=rec.dispatch)
        await registry.apply_update({"elementId": "a"}, page("7"))

        assert not await registry.route_command("7:a", TOGGLE_PLAY)
        assert "7:a" in registry

    @pytest.mark.asyncio
    async def test_rejected_ack_still_counts_as_delivered(self):
        rec = Recorder(ack={"ok": False, "error": "playback-rejected"})
        registry = SessionRegistry(dispatch=rec.dispatch)
        await registry.apply_update({"elementId": "a"}, page("7"))

        assert await registry.route_command("7:a", TOGGLE_PLAY)

    @pytest.mark.asyncio
    async def test_without_dispatcher_nothing_is_routed(self):
        registry = SessionRegistry()
        await registry.apply_update({"elementId": "a"}, page("7"))
        assert not await registry.route_command("7:a", TOGGLE_PLAY)


# ============================================================================
# Agent -> hub
# ============================================================================


class TestAgentToHub:
    @pytest.mark.asyncio
    async def test_switching_elements_leaves_one_session(self, scheduler):
        """Two elements on one page, the second starts playing: one session survives."""
        hub = MediaHub(dispatch_timeout=0.5)
        context = PageContext(page_id="7", url="https://video.example/watch", title="Watch")
        outbox = []

        def send(message):
            outbox.append({**message, "page": context.to_dict()})

        doc = Document(url=context.url, title=context.title)
        a = MediaElement("https://video.example/a.mp4", duration=60)
        b = MediaElement("https://video.example/b.mp4", duration=60)
        doc.append(a, b)
        agent = MediaAgent(send, scheduler=scheduler)
        agent.attach(doc)
        await a.play()
        await b.play()

        for message in outbox:
            await hub.handle_report(message)

        sessions = hub.registry.serialize()
        assert [s["sessionId"] for s in sessions] == [f"7:{b.dataset[ID_ATTR]}"]
        assert sessions[0]["isPlaying"] is True
        assert sessions[0]["siteName"] == "Watch"
        assert hub.pages.page_ids == ["7"]

    @pytest.mark.asyncio
    async def test_report_with_unknown_type_is_ignored(self):
        hub = MediaHub(dispatch_timeout=0.5)
        applied = await hub.handle_report({"type": "MEDIA_PING", "page": {"id": "7"}})
        assert applied is False
        assert len(hub.registry) == 0
