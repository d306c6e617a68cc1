"""
Transport abstraction for Media Hub messaging.

Two ways to move a message, one capability:

    HttpTransport     one-shot request/response (agent reports, addressed
                      commands to a page's /command endpoint)
    ChannelTransport  an already-open, ordered duplex websocket (observer
                      channels, either aiohttp or websockets flavoured)

Both expose ``await transport.deliver(message)``.  Callers that must not
block (page agents run synchronously inside event callbacks) wrap a
transport in an OrderedSender, which queues messages and delivers them one
at a time so a single producer's messages arrive in send order.

Usage:
    transport = HttpTransport("http://localhost:8780/hub/media")
    sender = OrderedSender(transport, name="page-1")
    sender.start()
    sender.send({"type": "MEDIA_UPDATE", "payload": {...}})
    await sender.stop()
"""

import asyncio
import json
import logging

import aiohttp

from .errors import ChannelClosed, MediaHubError

logger = logging.getLogger(__name__)


class Transport:
    """Common deliver capability."""

    mode = "base"

    async def deliver(self, message: dict):
        raise NotImplementedError

    async def close(self):
        """Release any resources held by the transport."""


class HttpTransport(Transport):
    """POST each message as JSON and return the decoded JSON reply (or None)."""

    mode = "http"

    def __init__(self, url: str, session: aiohttp.ClientSession | None = None,
                 timeout: float = 2.0):
        self.url = url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": "MediaHub-Transport/1.0"},
            )
            self._owns_session = True
        return self._session

    async def deliver(self, message: dict):
        session = await self._get_session()
        async with session.post(
            self.url,
            json=message,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            raise_for_status=True,
        ) as resp:
            logger.debug("HTTP %s -> %s (HTTP %d)", message.get("type"), self.url, resp.status)
            if resp.content_type == "application/json":
                return await resp.json()
            return None

    async def close(self):
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None


class ChannelTransport(Transport):
    """Push JSON text frames over an open websocket."""

    mode = "channel"

    def __init__(self, ws):
        self.ws = ws

    @property
    def closed(self) -> bool:
        closed = getattr(self.ws, "closed", None)
        if closed is not None:
            return bool(closed)
        # websockets >= 13 exposes .state instead of .closed
        state = getattr(self.ws, "state", None)
        return state is not None and getattr(state, "name", "") in ("CLOSING", "CLOSED")

    async def deliver(self, message: dict):
        if self.closed:
            raise ChannelClosed("channel already closed")
        text = json.dumps(message)
        if hasattr(self.ws, "send_str"):
            await self.ws.send_str(text)   # aiohttp WebSocketResponse
        else:
            await self.ws.send(text)       # websockets client connection
        return None

    async def close(self):
        if not self.closed:
            await self.ws.close()


class OrderedSender:
    """Fire-and-forget, FIFO delivery over a transport.

    ``send()`` never blocks and never raises; delivery failures are logged
    and the message is dropped (no retries).

    With ``latest_only`` a new message replaces whatever is still queued, so
    a slow consumer of full-state snapshots holds at most one pending.
    """

    def __init__(self, transport: Transport, name: str = "sender", latest_only: bool = False):
        self.transport = transport
        self.name = name
        self.latest_only = latest_only
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._drain())

    def send(self, message: dict):
        if self.latest_only:
            superseded = 0
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
                superseded += 1
            if superseded:
                logger.debug("%s: %d queued message(s) superseded", self.name, superseded)
        self._queue.put_nowait(message)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def flush(self):
        """Wait until every queued message has been attempted."""
        if self._task is None:
            return
        await self._queue.join()

    async def stop(self, timeout: float = 2.0):
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self.flush(), timeout)
        except asyncio.TimeoutError:
            logger.warning("%s: dropping %d undelivered messages", self.name, self.pending)
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _drain(self):
        while True:
            message = await self._queue.get()
            try:
                await self.transport.deliver(message)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                logger.warning("%s: timeout delivering %s", self.name, message.get("type"))
            except aiohttp.ClientError as e:
                logger.warning("%s: transport error: %s", self.name, e)
            except MediaHubError as e:
                logger.warning("%s: %s", self.name, e)
            except Exception as e:
                logger.error("%s: unexpected delivery error: %s", self.name, e)
            finally:
                self._queue.task_done()
