#!/usr/bin/env python3
# Media Hub
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
PageHost — runs one MediaAgent inside a page and wires it to the hub.

    agent reports   → OrderedSender → POST {hub}/hub/media     (FIFO, fire-and-forget)
    hub commands    → POST /command on this host → agent.handle_command → ack
    page unload     → agent.teardown() → drain → POST {hub}/hub/pages/closed

Usage:
    doc = Document(url="https://radio.example/live", title="Live Radio")
    host = PageHost("tab-7", doc, port=8781)
    await host.start()
    doc.append(MediaElement("https://radio.example/stream.mp3", kind="audio"))
    ...
    await host.stop()

Running this module starts a demo page with two simulated players.
Port: 8781
"""

import asyncio
import json
import logging
import signal

import aiohttp
from aiohttp import web

from mediahub.agent import MediaAgent
from mediahub.lib.config import cfg
from mediahub.lib.messages import MEDIA_COMMAND, PageContext
from mediahub.lib.transport import HttpTransport, OrderedSender
from mediahub.media import Document, FrameScheduler, MediaElement

log = logging.getLogger("mediahub-page")

PAGE_PORT = 8781
HUB_URL = "http://localhost:8780"


class PageHost:
    def __init__(self, page_id, document: Document, *, port: int | None = None,
                 hub_url: str | None = None, scheduler: FrameScheduler | None = None):
        self.page_id = str(page_id)
        self.document = document
        self.port = port if port is not None else int(cfg("page", "port", default=PAGE_PORT))
        self.hub_url = (hub_url or cfg("hub", "url", default=HUB_URL)).rstrip("/")
        self._scheduler = scheduler
        self._http_session: aiohttp.ClientSession | None = None
        self._runner: web.AppRunner | None = None
        self._sender: OrderedSender | None = None
        self.agent: MediaAgent | None = None

    @property
    def command_url(self) -> str:
        return f"http://localhost:{self.port}/command"

    def context(self) -> PageContext:
        return PageContext(
            page_id=self.page_id,
            url=self.document.url,
            title=self.document.title,
            frame_url=self.document.url,
            command_url=self.command_url,
        )

    # ── Outbound ──

    def report(self, message: dict):
        """Agent send hook: stamp the page context and queue for the hub."""
        if self._sender is None:
            log.warning("Page %s not started, dropping %s", self.page_id, message.get("type"))
            return
        self._sender.send({**message, "page": self.context().to_dict()})

    async def notify_closed(self):
        try:
            async with self._http_session.post(
                f"{self.hub_url}/hub/pages/closed",
                json={"pageId": self.page_id},
                timeout=aiohttp.ClientTimeout(total=2.0),
            ) as resp:
                log.info("Hub page closed -> HTTP %d", resp.status)
        except Exception as e:
            log.warning("Hub unreachable for page close: %s", e)

    # ── HTTP server ──

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/command", self._handle_command_route)
        app.router.add_get("/status", self._handle_status_route)
        return app

    async def start(self):
        self._http_session = aiohttp.ClientSession()
        self._sender = OrderedSender(
            HttpTransport(f"{self.hub_url}/hub/media", session=self._http_session),
            name=f"page:{self.page_id}",
        )
        self._sender.start()

        self.agent = MediaAgent(self.report, scheduler=self._scheduler)
        self.agent.attach(self.document)

        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        log.info("Page %s: HTTP API on port %d", self.page_id, self.port)

    async def stop(self):
        """Unload the page: tear the agent down, drain reports, tell the hub."""
        self.document.unload()
        if self._sender:
            await self._sender.stop()
            self._sender = None
        if self._http_session:
            await self.notify_closed()
            await self._http_session.close()
            self._http_session = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── Route handlers ──

    async def _handle_command_route(self, request):
        try:
            data = await request.json()
        except (json.JSONDecodeError, Exception):
            return web.json_response({"ok": False, "error": "invalid json"}, status=400)
        if not isinstance(data, dict) or data.get("type") != MEDIA_COMMAND:
            return web.json_response({"ok": False, "error": "not a command"}, status=400)
        if self.agent is None:
            return web.json_response({"ok": False, "error": "not-ready"}, status=503)
        ack = await self.agent.handle_command(data)
        return web.json_response(ack)

    async def _handle_status_route(self, request):
        agent = self.agent
        return web.json_response({
            "page": self.page_id,
            "url": self.document.url,
            "active": agent.active_id if agent else None,
            "tracked": agent.tracked_ids if agent else [],
        })


async def _demo():
    doc = Document(url="https://radio.example/live", title="Live Radio",
                   site_name="Radio Example")
    host = PageHost("demo", doc)
    await host.start()

    podcast = MediaElement("https://radio.example/episodes/ep-42.mp3", kind="audio",
                           duration=1800, title="Episode 42", artist="Radio Example")
    stream = MediaElement("https://radio.example/stream", kind="audio", title="Live stream")
    doc.append(podcast, stream)
    await podcast.play()

    async def tick():
        while True:
            await asyncio.sleep(0.25)
            for element in list(doc.elements):
                element.advance(0.25)

    ticker = asyncio.create_task(tick())
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        ticker.cancel()
        await host.stop()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(_demo())
