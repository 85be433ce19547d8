"""Shared fixtures for the MCP Toolbox tests."""

import asyncio
from collections import Counter
from typing import Any

import pytest


@pytest.fixture
def anyio_backend():
    """The index yields with asyncio.sleep, so tests run on asyncio only."""
    return "asyncio"


class FakeToolSource:
    """In-memory tool source with scripted connection behaviour."""

    def __init__(self, name, tools, *, fail=False, gate=None, hang=False):
        self.name = name
        self.tools = tools
        self.fail = fail
        self.gate = gate
        self.hang = hang
        self.connected = False
        self.closed = False
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.call_delay = 0.0
        self.call_error: Exception | None = None

    async def connect(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.hang:
            await asyncio.sleep(10)
        if self.fail:
            raise ConnectionError("connection refused")
        self.connected = True

    async def list_tools(self):
        return self.tools

    async def call_tool(self, name, arguments):
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        if self.call_error is not None:
            raise self.call_error
        self.calls.append((name, arguments))
        return {"content": [{"type": "text", "text": f"{self.name}:{name}"}]}

    async def close(self):
        self.closed = True


class FakeSourceFactory:
    """Creates a fresh FakeToolSource per connection attempt."""

    def __init__(self):
        self.behaviours: dict[str, dict[str, Any]] = {}
        self.attempts: Counter[str] = Counter()
        self.created: list[FakeToolSource] = []

    def script(self, name, tools=(), *, fail_times=0, gate=None, hang=False):
        self.behaviours[name] = {
            "tools": list(tools),
            "fail_times": fail_times,
            "gate": gate,
            "hang": hang,
        }

    def __call__(self, name, config):
        self.attempts[name] += 1
        behaviour = self.behaviours.get(name, {})
        source = FakeToolSource(
            name,
            behaviour.get("tools", []),
            fail=self.attempts[name] <= behaviour.get("fail_times", 0),
            gate=behaviour.get("gate"),
            hang=behaviour.get("hang", False),
        )
        self.created.append(source)
        return source

    def latest(self, name):
        return [s for s in self.created if s.name == name][-1]



@pytest.fixture
def factory():
    return FakeSourceFactory()
