"""Shared fakes for the page agent, inference backend and clock."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from sitepipe.automation import ActionExecutor, AutomationScheduler
from sitepipe.clock import ManualClock
from sitepipe.integrations.inference import InferenceError
from sitepipe.integrations.page_agent import PageHandle
from sitepipe.pipeline import EngineSettings, PipelineEngine
from sitepipe.registry import Registry
from sitepipe.storage import MemoryStore


class FakePageAgent:
    """Scripted page agent.

    ``pages`` maps a URL to the list of record batches returned by successive
    ``extract`` calls on that site; ``paginate_next`` reports a next page while
    batches remain. A URL listed in ``failing`` raises on ``open``. When
    ``gate`` is set, ``extract`` blocks until the event is set.
    """

    def __init__(
        self,
        pages: Mapping[str, list[list[dict[str, Any]]]] | None = None,
        *,
        failing: Mapping[str, Exception] | None = None,
        content: Mapping[str, str] | None = None,
    ) -> None:
        self.pages = {url: list(batches) for url, batches in (pages or {}).items()}
        self.failing = dict(failing or {})
        self.content = dict(content or {"title": "Example", "text": "Example body"})
        self.calls: list[tuple[str, Any]] = []
        self.open_handles: set[int] = set()
        self.gate: asyncio.Event | None = None
        self.script_result: Any = None
        self._cursor: dict[int, int] = {}

    async def open(self, url, *, headers=None, cookies=None):
        self.calls.append(("open", url))
        if url in self.failing:
            raise self.failing[url]
        handle = PageHandle.create(url)
        self.open_handles.add(handle.id)
        self._cursor[handle.id] = 0
        return handle

    async def await_load(self, handle):
        self.calls.append(("await_load", handle.url))

    async def extract(self, handle, selectors, schema=None):
        self.calls.append(("extract", handle.url))
        if self.gate is not None:
            await self.gate.wait()
        batches = self.pages.get(handle.url, [])
        index = self._cursor[handle.id]
        return [dict(record) for record in batches[index]] if index < len(batches) else []

    async def paginate_next(self, handle, config):
        self.calls.append(("paginate_next", handle.url))
        self._cursor[handle.id] += 1
        return self._cursor[handle.id] < len(self.pages.get(handle.url, []))

    async def click(self, handle, selector, wait_ms=1000):
        self.calls.append(("click", selector))

    async def fill_form(self, handle, fields, submit=False):
        self.calls.append(("fill_form", dict(fields)))

    async def screenshot(self, handle):
        self.calls.append(("screenshot", handle.url))
        return b"\x89PNG"

    async def run_script(self, handle, code):
        self.calls.append(("run_script", code))
        return self.script_result

    async def get_content(self, handle):
        self.calls.append(("get_content", handle.url))
        return dict(self.content)

    async def close(self, handle):
        self.calls.append(("close", handle.url))
        self.open_handles.discard(handle.id)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)


class FakeInference:
    """Inference backend that returns canned text or fails on demand."""

    def __init__(self, reply: str = "insight", *, fail_on: set[int] | None = None) -> None:
        self.reply = reply
        self.fail_on = fail_on or set()
        self.calls: list[dict[str, Any]] = []

    def complete(self, prompt, system_prompt=None, temperature=0.7, max_tokens=1000):
        self.calls.append({
            "prompt": prompt,
            "system_prompt": system_prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if len(self.calls) in self.fail_on:
            raise InferenceError("backend unavailable")
        return self.reply


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def registry(store) -> Registry:
    return Registry(store)


@pytest.fixture
def agent() -> FakePageAgent:
    return FakePageAgent()


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(page_timeout=5.0, default_wait_ms=0)


@pytest.fixture
def engine(registry, agent, clock, inference, settings) -> PipelineEngine:
    return PipelineEngine(registry, agent, clock=clock, inference=inference, settings=settings)


@pytest.fixture
def executor(agent, store, clock, inference, settings) -> ActionExecutor:
    return ActionExecutor(agent, store, clock=clock, inference=inference, settings=settings)


@pytest.fixture
def notifications() -> list:
    return []


@pytest.fixture
def scheduler(registry, engine, executor, clock, notifications) -> AutomationScheduler:
    return AutomationScheduler(
        registry,
        engine=engine,
        executor=executor,
        clock=clock,
        notify=notifications.append,
    )
