import asyncio

import pytest

from mediahub.agent import MediaAgent
from mediahub.lib import config


class ManualFrameScheduler:
    """Frame scheduler driven by the test: callbacks run on tick()."""

    def __init__(self):
        self._next = 0
        self._callbacks = {}
        self.frames = 0

    def request(self, callback):
        self._next += 1
        self._callbacks[self._next] = callback
        return self._next

    def cancel(self, handle):
        self._callbacks.pop(handle, None)

    @property
    def pending(self) -> int:
        return len(self._callbacks)

    def tick(self):
        self.frames += 1
        callbacks, self._callbacks = self._callbacks, {}
        for callback in callbacks.values():
            callback()


@pytest.fixture(autouse=True)
def empty_config(monkeypatch):
    """Never pick up a config.json from the machine running the tests."""
    monkeypatch.setattr(config, "_config", {})


@pytest.fixture
def scheduler():
    return ManualFrameScheduler()


@pytest.fixture
def sent():
    return []


@pytest.fixture
def agent(sent, scheduler):
    return MediaAgent(sent.append, scheduler=scheduler)


def types(messages):
    return [m["type"] for m in messages]


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
