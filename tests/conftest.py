"""Shared fixtures: temporary config store, fake session transport and probes."""
import asyncio
import json
import os
from typing import Optional

import pytest

from cybershield_agent.services.auth import CredentialService
from cybershield_agent.services.config_store import ConfigStore
from cybershield_agent.services.session import SessionManager
from cybershield_agent.services.state import AgentIdentity, AgentState
from cybershield_agent.services.task_runner import PIPELINES

PROBES = sorted({method for steps, _ in PIPELINES.values() for _, method in steps})


class FakeTransport:
    """In-memory stand-in for a websocket connection."""

    def __init__(self, fail_send: bool = False):
        self.sent = []
        self.closed = False
        self.fail_send = fail_send
        self._inbox = asyncio.Queue()

    async def send(self, message: str):
        if self.closed or self.fail_send:
            raise ConnectionError("transport closed")
        self.sent.append(json.loads(message))

    async def close(self):
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def feed(self, message_type: str, data: Optional[dict] = None):
        self.feed_raw(json.dumps({"type": message_type, "data": data or {}, "timestamp": "2024-01-01T00:00:00Z"}))

    def feed_raw(self, raw: str):
        self._inbox.put_nowait(raw)

    def messages(self, message_type: str) -> list:
        return [m for m in self.sent if m["type"] == message_type]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Returns the queued outcomes in order (exceptions are raised), then fresh transports."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls = []
        self.transports = []

    async def __call__(self, url: str):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else FakeTransport()
        if isinstance(outcome, Exception):
            raise outcome
        self.transports.append(outcome)
        return outcome

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


class FakeScanners:
    """Probe suite returning canned sections; can block on a gate or fail one probe."""

    def __init__(self, fail_on: Optional[str] = None, gate: Optional[asyncio.Event] = None):
        self.fail_on = fail_on
        self.gate = gate
        self.calls = []

    def __getattr__(self, name):
        if name not in PROBES:
            raise AttributeError(name)

        async def probe(previous: dict, deep: bool = False) -> dict:
            self.calls.append((name, deep))
            if self.gate is not None:
                await self.gate.wait()
            if name == self.fail_on:
                raise RuntimeError(f"{name} exploded")
            return {"probe": name, "findings": []}

        return probe


async def wait_until(predicate, timeout: float = 2.0):
    """Poll ``predicate`` while letting background tasks run."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def snapshot_tree(root: str) -> dict:
    """Relative path -> file bytes (None for directories)."""
    tree = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            tree[os.path.relpath(os.path.join(dirpath, name), root)] = None
        for name in filenames:
            path = os.path.join(dirpath, name)
            with open(path, "rb") as f:
                tree[os.path.relpath(path, root)] = f.read()
    return tree


@pytest.fixture
async def store(tmp_path):
    config_store = ConfigStore(str(tmp_path / "data" / "agent-config.db"))
    await config_store.open()
    yield config_store
    await config_store.close()


@pytest.fixture
def identity():
    return AgentIdentity(
        agent_id="agent-1",
        client_id="client-1",
        hostname="host-1",
        platform="linux",
        arch="x86_64",
        version="1.0.0",
    )


@pytest.fixture
def state(identity):
    return AgentState(identity=identity)


@pytest.fixture
def credentials(store):
    return CredentialService(store)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
async def session(state, store, credentials, connector):
    manager = SessionManager(
        state,
        store,
        credentials,
        "ws://server.test",
        heartbeat_interval=3600,
        reconnect_interval=0.01,
        reconnect_max_interval=0.02,
        connector=connector,
    )
    yield manager
    await manager.shutdown("test")
