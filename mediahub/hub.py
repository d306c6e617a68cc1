#!/usr/bin/env python3
# Media Hub
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Media Hub coordinator (mediahub-hub)

Sits between page agents (producers of media state) and observers (UI
panels).  Agents report over plain HTTP; observers hold a websocket
channel.  Every registry change is pushed to every open channel, and
commands arriving on a channel are routed to the page that owns the
session.

Port: 8780

    POST /hub/media          agent report: MEDIA_UPDATE / MEDIA_REMOVED
    POST /hub/pages/closed   page went away: evict its sessions
    GET  /hub/sessions       current snapshot
    GET  /hub/status         hub state
    GET  /ws?name=<role>     observer channel
"""

import asyncio
import json
import logging

import aiohttp
from aiohttp import web

from mediahub.lib.config import cfg
from mediahub.lib.errors import DispatchUnreachable
from mediahub.lib.messages import (
    MEDIA_COMMAND, MEDIA_REMOVED, MEDIA_UPDATE, ROLE_POPUP, SESSIONS_UPDATED, PageContext,
)
from mediahub.lib.transport import ChannelTransport, HttpTransport, OrderedSender, Transport
from mediahub.registry import SessionRegistry

logger = logging.getLogger("mediahub-hub")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
HUB_PORT = 8780
ACCEPTED_ROLES = {ROLE_POPUP}


# ---------------------------------------------------------------------------
# Observer channels
# ---------------------------------------------------------------------------
class Channel:
    """One observer connection.

    Pushes go out in order; a snapshot still queued when a newer one arrives
    is replaced, since each push carries the full session list.
    """

    def __init__(self, ws, role: str):
        self.ws = ws
        self.role = role
        self.sender = OrderedSender(ChannelTransport(ws), name=f"channel:{role}", latest_only=True)

    def push(self, sessions: list[dict]):
        self.sender.send({"type": SESSIONS_UPDATED, "sessions": sessions})


class ChannelManager:
    """Tracks live observer channels and fans snapshots out to them.

    A channel leaves the set only through ``disconnect`` (its own close
    notification); a failed push is logged by the channel's sender and the
    channel stays put.
    """

    def __init__(self):
        self._channels: set[Channel] = set()

    def __len__(self):
        return len(self._channels)

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels)

    def connect(self, ws, role: str, sessions: list[dict]) -> Channel:
        channel = Channel(ws, role)
        channel.sender.start()
        self._channels.add(channel)
        logger.info("Observer connected: %s (%d total)", role, len(self._channels))
        channel.push(sessions)
        return channel

    async def disconnect(self, channel: Channel):
        if channel not in self._channels:
            return
        self._channels.discard(channel)
        await channel.sender.stop(timeout=0.5)
        logger.info("Observer disconnected: %s (%d remaining)", channel.role, len(self._channels))

    async def broadcast(self, sessions: list[dict]):
        for channel in list(self._channels):
            channel.push(sessions)
        if self._channels:
            logger.debug("Broadcast %d session(s) to %d observer(s)",
                         len(sessions), len(self._channels))

    async def flush(self):
        """Wait for every queued push to be attempted."""
        await asyncio.gather(*(c.sender.flush() for c in list(self._channels)))

    async def handle_message(self, channel: Channel, raw: str, registry: SessionRegistry):
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON from %s observer: %.80s", channel.role, raw)
            return
        if not isinstance(msg, dict) or msg.get("type") != MEDIA_COMMAND:
            return
        params = msg.get("params")
        if not isinstance(params, dict):
            # Older panels send seek arguments at the top level
            params = {k: msg[k] for k in ("delta", "time") if k in msg}
        await registry.route_command(msg.get("sessionId"), msg.get("command"), params)

    async def close_all(self):
        for channel in list(self._channels):
            await channel.ws.close()
            await self.disconnect(channel)


# ---------------------------------------------------------------------------
# Page directory
# ---------------------------------------------------------------------------
class PageDirectory:
    """Knows how to reach each page's agent for addressed commands."""

    def __init__(self, session: aiohttp.ClientSession | None = None, timeout: float = 1.0):
        self.session = session
        self.timeout = timeout
        self._pages: dict[str, PageContext] = {}
        self._transports: dict[str, Transport] = {}

    def __contains__(self, page_id):
        return str(page_id) in self._transports

    @property
    def page_ids(self) -> list[str]:
        return list(self._pages)

    async def remember(self, page: PageContext):
        """Record the reporting page; (re)build its transport if the URL moved."""
        if not page.page_id:
            return
        known = self._pages.get(page.page_id)
        self._pages[page.page_id] = page
        if page.command_url and (known is None or known.command_url != page.command_url):
            await self._replace(page.page_id, HttpTransport(
                page.command_url, session=self.session, timeout=self.timeout,
            ))
            logger.info("Page %s reachable at %s", page.page_id, page.command_url)

    def attach(self, page_id, transport: Transport):
        """Reach *page_id* through an explicit transport (in-process agents)."""
        self._transports[str(page_id)] = transport

    async def forget(self, page_id):
        self._pages.pop(str(page_id), None)
        await self._replace(str(page_id), None)

    async def close(self):
        for page_id in list(self._transports):
            await self._replace(page_id, None)

    async def _replace(self, page_id: str, transport: Transport | None):
        old = self._transports.pop(page_id, None)
        if transport is not None:
            self._transports[page_id] = transport
        if old is not None and old is not transport:
            await old.close()

    async def dispatch(self, page_id, message: dict) -> dict:
        transport = self._transports.get(str(page_id))
        if transport is None:
            raise DispatchUnreachable(f"no route to page {page_id}")
        try:
            ack = await transport.deliver({"type": MEDIA_COMMAND, **message})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DispatchUnreachable(f"page {page_id}: {e}") from e
        if not isinstance(ack, dict):
            return {"ok": False, "error": "no-ack"}
        return ack


# ---------------------------------------------------------------------------
# Hub
# ---------------------------------------------------------------------------
class MediaHub:
    def __init__(self, dispatch_timeout: float | None = None):
        if dispatch_timeout is None:
            dispatch_timeout = float(cfg("hub", "dispatch_timeout", default=1.0))
        self.channels = ChannelManager()
        self.pages = PageDirectory(timeout=dispatch_timeout)
        self.registry = SessionRegistry(
            broadcast=self.channels.broadcast,
            dispatch=self.pages.dispatch,
        )
        self._session: aiohttp.ClientSession | None = None

    async def start(self):
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.pages.timeout),
        )
        self.pages.session = self._session
        logger.info("Hub started (dispatch timeout %.1fs)", self.pages.timeout)

    async def stop(self):
        await self.channels.close_all()
        await self.pages.close()
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Hub stopped")

    async def handle_report(self, message: dict) -> bool:
        """Apply one agent report. Returns False when it was dropped."""
        page = PageContext.from_dict(message.get("page"))
        payload = message.get("payload") or {}
        msg_type = message.get("type")
        await self.pages.remember(page)
        if msg_type == MEDIA_UPDATE:
            return await self.registry.apply_update(payload, page) is not None
        if msg_type == MEDIA_REMOVED:
            element_id = payload.get("elementId") if isinstance(payload, dict) else None
            return await self.registry.apply_removal(element_id, page)
        logger.debug("Ignoring report type %r", msg_type)
        return False

    async def page_closed(self, page_id) -> int:
        evicted = await self.registry.evict_page(page_id)
        await self.pages.forget(page_id)
        return evicted

    def status(self) -> dict:
        return {
            "sessions": len(self.registry),
            "observers": [c.role for c in self.channels.channels],
            "pages": self.pages.page_ids,
        }


HUB_KEY = web.AppKey("hub", MediaHub)


# ---------------------------------------------------------------------------
# HTTP / WebSocket handlers
# ---------------------------------------------------------------------------
async def handle_media(request: web.Request) -> web.Response:
    """POST /hub/media — agent reports a state change or removal."""
    try:
        message = await request.json()
    except (json.JSONDecodeError, Exception):
        return web.json_response({"error": "invalid json"}, status=400)
    if not isinstance(message, dict):
        return web.json_response({"error": "invalid message"}, status=400)

    applied = await request.app[HUB_KEY].handle_report(message)
    return web.json_response({"status": "ok", "applied": applied})


async def handle_page_closed(request: web.Request) -> web.Response:
    """POST /hub/pages/closed — host says a page is gone."""
    try:
        data = await request.json()
    except (json.JSONDecodeError, Exception):
        return web.json_response({"error": "invalid json"}, status=400)

    page_id = data.get("pageId") if isinstance(data, dict) else None
    if page_id in (None, ""):
        return web.json_response({"error": "pageId required"}, status=400)

    evicted = await request.app[HUB_KEY].page_closed(page_id)
    return web.json_response({"status": "ok", "evicted": evicted})


async def handle_sessions(request: web.Request) -> web.Response:
    """GET /hub/sessions — current snapshot."""
    return web.json_response({"sessions": request.app[HUB_KEY].registry.serialize()})


async def handle_status(request: web.Request) -> web.Response:
    """GET /hub/status — return current hub state."""
    return web.json_response(request.app[HUB_KEY].status())


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    """GET /ws?name=<role> — observer channel."""
    hub = request.app[HUB_KEY]
    role = request.query.get("name", "")
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    if role not in ACCEPTED_ROLES:
        logger.info("Rejecting channel with role %r", role)
        await ws.close()
        return ws

    channel = hub.channels.connect(ws, role, hub.registry.serialize())
    try:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await hub.channels.handle_message(channel, msg.data, hub.registry)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Channel %s error: %s", role, ws.exception())
    finally:
        await hub.channels.disconnect(channel)
    return ws


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
async def on_startup(app: web.Application):
    await app[HUB_KEY].start()


async def on_shutdown(app: web.Application):
    # Channels must be closed before the runner waits on open handlers
    await app[HUB_KEY].channels.close_all()


async def on_cleanup(app: web.Application):
    await app[HUB_KEY].stop()


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    if not isinstance(resp, web.WebSocketResponse):
        resp.headers["Access-Control-Allow-Origin"] = "*"
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


def create_app(hub: MediaHub | None = None) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[HUB_KEY] = hub or MediaHub()
    app.router.add_post("/hub/media", handle_media)
    app.router.add_post("/hub/pages/closed", handle_page_closed)
    app.router.add_get("/hub/sessions", handle_sessions)
    app.router.add_get("/hub/status", handle_status)
    app.router.add_get("/ws", handle_ws)
    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)
    app.on_cleanup.append(on_cleanup)
    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    web.run_app(
        create_app(),
        host=cfg("hub", "host", default="0.0.0.0"),
        port=int(cfg("hub", "port", default=HUB_PORT)),
        print=lambda msg: logger.info(msg),
    )
