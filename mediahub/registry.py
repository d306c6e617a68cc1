# Media Hub
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
SessionRegistry — the hub's single source of truth for media sessions.

Every mutation goes through one of four operations, and each runs to
completion before it awaits anything, so mutations never interleave:

    apply_update(payload, page)   upsert  "<pageId>:<elementId>", broadcast
    apply_removal(element, page)  delete, broadcast only if something went
    evict_page(page_id)           delete a page's sessions, one broadcast
    route_command(...)            look up a session, hand off to its page

Collaborators are injected, there is no module-level instance:

    broadcast(sessions: list[dict])            async, pushes to observers
    dispatch(page_id, message) -> ack dict     async, reaches one page agent
"""

import logging
import time

from .lib.errors import UnknownSession, UnresolvableIdentity
from .lib.messages import PageContext, Session, UpdatePayload, build_session_id, normalize

logger = logging.getLogger(__name__)


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class SessionRegistry:
    """Manages media sessions and their lifecycle."""

    def __init__(self, broadcast=None, dispatch=None, clock=_monotonic_ms):
        self._sessions: dict[str, Session] = {}
        self._broadcast = broadcast
        self._dispatch = dispatch
        self._clock = clock
        self._last_stamp = 0

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session_id: str):
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def _stamp(self) -> int:
        """Coordinator time, strictly increasing so ordering never ties."""
        stamp = max(int(self._clock()), self._last_stamp + 1)
        self._last_stamp = stamp
        return stamp

    # ── Mutations ──

    async def apply_update(self, payload: dict | UpdatePayload, page: PageContext) -> Session | None:
        """Upsert the reporting element's session. Returns it, or None if dropped."""
        try:
            update = self._resolve_update(payload, page)
        except UnresolvableIdentity as e:
            logger.debug("Update dropped: %s", e)
            return None

        session = normalize(update, page, self._stamp())
        is_new = session.session_id not in self._sessions
        self._sessions[session.session_id] = session
        if is_new:
            logger.info("Session added: %s (%s)", session.session_id, session.site_name)
        else:
            logger.debug("Session updated: %s playing=%s t=%.1f",
                         session.session_id, session.is_playing, session.current_time)
        await self._notify()
        return session

    async def apply_removal(self, element_id: str | None, page: PageContext) -> bool:
        if not page.page_id or not element_id:
            logger.debug("Removal dropped: page=%s element=%s", page.page_id, element_id)
            return False
        session_id = build_session_id(page.page_id, element_id)
        if self._sessions.pop(session_id, None) is None:
            return False
        logger.info("Session removed: %s", session_id)
        await self._notify()
        return True

    async def evict_page(self, page_id) -> int:
        """Drop every session belonging to *page_id*. Returns how many went."""
        page_id = str(page_id)
        doomed = [sid for sid, s in self._sessions.items() if s.page_id == page_id]
        for sid in doomed:
            del self._sessions[sid]
        if doomed:
            logger.info("Page %s closed, evicted %d session(s)", page_id, len(doomed))
            await self._notify()
        return len(doomed)

    def _resolve_update(self, payload, page: PageContext) -> UpdatePayload:
        if not page.page_id:
            raise UnresolvableIdentity("no page id")
        if isinstance(payload, UpdatePayload):
            return payload
        update = UpdatePayload.from_dict(payload)
        if update is None:
            raise UnresolvableIdentity(f"no elementId from page {page.page_id}")
        return update

    # ── Snapshot & broadcast ──

    def snapshot(self) -> list[Session]:
        """Playing sessions first, most recently updated first within each group."""
        return sorted(
            self._sessions.values(),
            key=lambda s: (not s.is_playing, -s.last_updated),
        )

    def serialize(self) -> list[dict]:
        return [s.to_dict() for s in self.snapshot()]

    async def _notify(self):
        if self._broadcast is None:
            return
        try:
            await self._broadcast(self.serialize())
        except Exception as e:
            logger.warning("Broadcast failed: %s", e)

    # ── Command routing ──

    def _target(self, session_id) -> Session:
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            raise UnknownSession(session_id)
        return session

    async def route_command(self, session_id: str, command: str, params: dict | None = None) -> bool:
        """Forward a command to the page owning *session_id*.

        Unknown sessions are dropped silently; delivery failures are logged.
        At most once, no retries, nothing reported back to the observer.
        Returns True when the message was handed to the page.
        """
        try:
            session = self._target(session_id)
        except UnknownSession:
            logger.debug("Command %s for unknown session %s dropped", command, session_id)
            return False
        if self._dispatch is None:
            logger.warning("No dispatcher, cannot route %s to %s", command, session_id)
            return False

        message = {
            "elementId": session.element_id,
            "command": command,
            "params": dict(params or {}),
        }
        logger.info("-> page %s: %s %s", session.page_id, command, message["params"] or "")
        try:
            ack = await self._dispatch(session.page_id, message)
        except Exception as e:
            logger.warning("Page %s unreachable for %s: %s", session.page_id, command, e)
            return False
        if isinstance(ack, dict) and not ack.get("ok", False):
            logger.info("Page %s rejected %s: %s", session.page_id, command, ack.get("error"))
        return True
