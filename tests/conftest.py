"""Shared test doubles: an in-memory filesystem and a scripted provider"""

from __future__ import annotations

import asyncio

import pytest

from pair_agent.errors import FileSystemError
from pair_agent.services.config_manager import AgentSettings
from pair_agent.services.conversation_engine import ConversationEngine

# Marker inside a provider script: block until `release` is set
PAUSE = "pause"


class InMemoryFileSystem:
    """FileSystem double; paths listed in fail_writes / fail_deletes raise FileSystemError"""

    def __init__(self, files=None, fail_writes=(), fail_deletes=()):
        self.files = dict(files or {})
        self.fail_writes = set(fail_writes)
        self.fail_deletes = set(fail_deletes)
        self.writes = []
        self.deletes = []

    def read(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write(self, path, content):
        if path in self.fail_writes:
            raise FileSystemError(path, "disk full")
        self.files[path] = content
        self.writes.append(path)

    def delete(self, path):
        if path in self.fail_deletes or path not in self.files:
            raise FileSystemError(path, "cannot delete")
        del self.files[path]
        self.deletes.append(path)

    def exists(self, path):
        return path in self.files


class ScriptedProvider:
    """Replays one script per stream() call; the last script repeats.

    A script item is a StreamEvent to yield, an exception to raise, or PAUSE.
    """

    provider = "scripted"
    model = "test-model"

    def __init__(self, *scripts):
        self.scripts = [list(script) for script in scripts]
        self.requests = []
        self.yielded = 0
        self.paused = asyncio.Event()
        self.release = asyncio.Event()

    @property
    def calls(self):
        return len(self.requests)

    async def stream(self, request):
        self.requests.append(request)
        script = self.scripts[min(len(self.requests), len(self.scripts)) - 1]
        for item in script:
            if item == PAUSE:
                self.paused.set()
                await self.release.wait()
                continue
            if isinstance(item, BaseException):
                raise item
            self.yielded += 1
            yield item
            await asyncio.sleep(0)


class FakeToolExecutor:
    schemas = []

    def __init__(self, result="TOOL RESULT"):
        self.result = result
        self.calls = []

    def execute(self, call):
        self.calls.append(call)
        return self.result


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def fs():
    return InMemoryFileSystem({"src/app.py": "def main():\n    print('hi')\n"})


@pytest.fixture
def make_engine(fs):
    """Build an engine around a provider with fixed rules and fast polling"""

    def _make(provider, filesystem=None, tool_executor=None, **settings):
        settings.setdefault("poll_interval", 0.01)
        return ConversationEngine(
            provider,
            filesystem if filesystem is not None else fs,
            settings=AgentSettings(**settings),
            rules_provider=lambda: "RULES",
            tool_executor=tool_executor,
        )

    return _make
