#!/usr/bin/env python3
# Media Hub
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Observer — a UI client's end of the hub channel.

Opens a websocket to the hub, mirrors every SESSIONS_UPDATED snapshot into a
local cache (full replacement) and sends commands for sessions it can see.

Reconnect policy:
    - a failed first open() gives up; nothing retries it
    - once a channel was open, every disconnect schedules one reconnect
      after ``reconnect_delay`` (0.6s); a reconnect the hub refuses (it is
      restarting) schedules the next one, for as long as the observer lives

The cache check in send_command() only avoids obviously stale commands;
the hub re-validates every session id on its own.

Running this module prints snapshots as they arrive.
"""

import argparse
import asyncio
import json
import logging

import websockets

from mediahub.lib.config import cfg
from mediahub.lib.messages import MEDIA_COMMAND, ROLE_POPUP, SESSIONS_UPDATED

log = logging.getLogger("mediahub-observer")

RECONNECT_DELAY = 0.6
HUB_URL = "http://localhost:8780"


def channel_url(hub_url: str, role: str) -> str:
    base = hub_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws?name={role}"


class Observer:
    def __init__(self, url: str | None = None, *, role: str | None = None,
                 reconnect_delay: float | None = None, on_sessions=None):
        role = role or cfg("observer", "role", default=ROLE_POPUP)
        self.url = url or channel_url(cfg("hub", "url", default=HUB_URL), role)
        if reconnect_delay is None:
            reconnect_delay = float(cfg("observer", "reconnect_delay", default=RECONNECT_DELAY))
        self.reconnect_delay = reconnect_delay
        self.on_sessions = on_sessions

        self._ws = None
        self._reader: asyncio.Task | None = None
        self._retry: asyncio.TimerHandle | None = None
        self._reopen_task: asyncio.Task | None = None
        self._closing = False
        self._sessions: list[dict] = []
        self._cache: dict[str, dict] = {}
        self.connects = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def sessions(self) -> list[dict]:
        """Last snapshot, in hub order."""
        return list(self._sessions)

    def get(self, session_id: str) -> dict | None:
        return self._cache.get(session_id)

    def __contains__(self, session_id: str):
        return session_id in self._cache

    # ── Channel lifecycle ──

    async def open(self) -> bool:
        """One connect attempt. On failure log and give up (no retry)."""
        try:
            ws = await websockets.connect(self.url)
        except Exception as e:
            log.error("Unable to open channel to %s: %s", self.url, e)
            return False
        self._attach(ws)
        return True

    async def _reconnect(self):
        try:
            ws = await websockets.connect(self.url)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.InvalidHandshake) as e:
            log.warning("Hub unreachable (%s), retrying in %.1fs", e, self.reconnect_delay)
            self._schedule_reopen()
            return
        except Exception as e:
            log.error("Unable to reopen channel to %s: %s", self.url, e)
            return
        if self._closing:
            await ws.close()
            return
        self._attach(ws)

    def _attach(self, ws):
        self._ws = ws
        self.connects += 1
        log.info("Channel open: %s", self.url)
        self._reader = asyncio.create_task(self._read(ws))

    async def _read(self, ws):
        try:
            async for raw in ws:
                self._handle_message(raw)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._on_disconnect(ws)

    def _on_disconnect(self, ws):
        if self._ws is ws:
            self._ws = None
        if self._closing:
            return
        log.warning("Channel closed, reconnecting in %.1fs", self.reconnect_delay)
        self._schedule_reopen()

    def _schedule_reopen(self):
        if self._closing:
            return
        loop = asyncio.get_running_loop()
        self._retry = loop.call_later(self.reconnect_delay, self._reopen)

    def _reopen(self):
        self._retry = None
        if not self._closing:
            self._reopen_task = asyncio.create_task(self._reconnect())

    async def close(self):
        self._closing = True
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        if self._reopen_task is not None:
            await asyncio.gather(self._reopen_task, return_exceptions=True)
            self._reopen_task = None
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None

    # ── Inbound ──

    def _handle_message(self, raw):
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Invalid JSON from hub: %.80s", raw)
            return
        if isinstance(msg, dict) and msg.get("type") == SESSIONS_UPDATED:
            self._apply_snapshot(msg.get("sessions") or [])

    def _apply_snapshot(self, sessions: list[dict]):
        self._sessions = [s for s in sessions if isinstance(s, dict) and s.get("sessionId")]
        self._cache = {s["sessionId"]: s for s in self._sessions}
        log.debug("Snapshot: %d session(s)", len(self._sessions))
        if self.on_sessions:
            self.on_sessions(self.sessions)

    # ── Outbound ──

    async def send_command(self, session_id: str, command: str, **params) -> bool:
        """Send a command if the channel is open and the session is cached."""
        ws = self._ws
        if ws is None or session_id not in self._cache:
            return False
        msg = {"type": MEDIA_COMMAND, "sessionId": session_id, "command": command}
        if params:
            msg["params"] = params
        try:
            await ws.send(json.dumps(msg))
        except websockets.exceptions.ConnectionClosed as e:
            log.warning("Command %s not sent, channel closed: %s", command, e)
            return False
        return True


def _print_sessions(sessions: list[dict]):
    if not sessions:
        print("-- no media --")
        return
    for s in sessions:
        state = "▶" if s.get("isPlaying") else "⏸"
        duration = s.get("duration")
        total = f"{duration:.0f}s" if duration else "live"
        print(f"{state} {s.get('sessionId')}  {s.get('title') or '?'} — {s.get('siteName')} "
              f"[{s.get('currentTime', 0):.0f}s / {total}]")
    print()


async def _main(args):
    observer = Observer(channel_url(args.hub, args.role), role=args.role,
                        on_sessions=_print_sessions)
    if not await observer.open():
        return
    try:
        await asyncio.Event().wait()
    finally:
        await observer.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Print hub session snapshots")
    parser.add_argument("--hub", default=cfg("hub", "url", default=HUB_URL))
    parser.add_argument("--role", default=ROLE_POPUP)
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(_main(parser.parse_args()))
    except KeyboardInterrupt:
        pass
