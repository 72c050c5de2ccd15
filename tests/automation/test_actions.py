"""Tests for automation action execution."""

from __future__ import annotations

import asyncio
import base64

import pytest

from sitepipe.automation.actions import ActionExecutor, TaskActionError
from sitepipe.pipeline.config import EngineSettings
from sitepipe.registry import Task

URL = "https://portal.example.com"


def _task(*actions) -> Task:
    return Task(id="task_1", name="t", type="interval", schedule_value=60, actions=list(actions))


class TestActionExecutor:
    """Tests for ActionExecutor.run."""

    def test_runs_actions_in_order(self, executor, agent, clock) -> None:
        task = _task(
            {"type": "navigate", "url": URL},
            {"type": "fill_form", "fields": {"#q": "shoes"}, "submit": True},
            {"type": "click", "selector": "button.go"},
            {"type": "wait", "duration": 2500},
        )

        completed = asyncio.run(executor.run(task))

        assert completed == 4
        assert [name for name, _ in agent.calls] == [
            "open", "await_load", "fill_form", "click", "close",
        ]
        assert clock.sleeps == [2.5]

    def test_extract_data_persists_records(self, executor, agent, store, clock) -> None:
        agent.pages = {URL: [[{"title": "A"}]]}
        task = _task({"type": "navigate", "url": URL}, {"type": "extract_data", "selectors": {}})

        asyncio.run(executor.run(task))

        key = f"task_data_task_1_{int(clock.now().timestamp() * 1000)}_1"
        assert store.get(key) == [{"title": "A"}]

    def test_same_millisecond_actions_keep_separate_keys(self, executor, agent, store) -> None:
        agent.pages = {URL: [[{"title": "A"}]]}
        task = _task(
            {"type": "navigate", "url": URL},
            {"type": "extract_data", "selectors": {}},
            {"type": "screenshot"},
            {"type": "extract_data", "selectors": {}, "format": "csv"},
        )

        asyncio.run(executor.run(task))

        keys = sorted(store.keys("task_data_task_1_"))
        assert len(keys) == 2
        assert [key.rsplit("_", 1)[1] for key in keys] == ["1", "3"]
        assert store.get(keys[0]) == [{"title": "A"}]
        assert store.get(keys[1]) == "title\nA\n"

    def test_extract_data_as_csv(self, executor, agent, store) -> None:
        agent.pages = {URL: [[{"title": "A"}]]}
        task = _task(
            {"type": "navigate", "url": URL},
            {"type": "extract_data", "selectors": {}, "format": "csv"},
        )

        asyncio.run(executor.run(task))

        [key] = store.keys("task_data_")
        assert store.get(key) == "title\nA\n"

    def test_screenshot_stored_as_data_url(self, executor, store) -> None:
        task = _task({"type": "navigate", "url": URL}, {"type": "screenshot"})

        asyncio.run(executor.run(task))

        [key] = store.keys("task_screenshot_task_1_")
        assert store.get(key) == "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()

    def test_ai_analysis_stores_content_and_analysis(self, executor, store, inference) -> None:
        task = _task({"type": "navigate", "url": URL}, {"type": "ai_analysis"})

        asyncio.run(executor.run(task))

        [key] = store.keys("task_analysis_")
        assert store.get(key)["analysis"] == "insight"
        assert inference.calls[0]["prompt"] == "Page Title: Example\n\nContent: Example body"
        assert inference.calls[0]["system_prompt"] == (
            "Analyze the following web page content and provide insights."
        )

    def test_failure_stops_remaining_actions(self, executor, agent) -> None:
        agent.failing = {URL: RuntimeError("net::ERR_NAME_NOT_RESOLVED")}
        task = _task({"type": "navigate", "url": URL}, {"type": "click", "selector": "a"})

        with pytest.raises(TaskActionError) as excinfo:
            asyncio.run(executor.run(task))

        assert excinfo.value.index == 0
        assert excinfo.value.action_type == "navigate"
        assert agent.count("click") == 0

    def test_page_action_without_navigate_fails(self, executor) -> None:
        with pytest.raises(TaskActionError) as excinfo:
            asyncio.run(executor.run(_task({"type": "click", "selector": "a"})))

        assert "navigate" in str(excinfo.value)

    def test_script_requires_opt_in(self, executor, agent) -> None:
        task = _task({"type": "navigate", "url": URL}, {"type": "script", "code": "1 + 1"})

        with pytest.raises(TaskActionError):
            asyncio.run(executor.run(task))
        assert agent.count("run_script") == 0

    def test_script_runs_when_allowed(self, agent, store, clock) -> None:
        executor = ActionExecutor(agent, store, clock=clock, settings=EngineSettings(allow_scripts=True))
        agent.script_result = 2
        task = _task({"type": "navigate", "url": URL}, {"type": "script", "code": "1 + 1"})

        assert asyncio.run(executor.run(task)) == 2
        assert ("run_script", "1 + 1") in agent.calls

    def test_unknown_action_is_skipped(self, executor, agent) -> None:
        task = _task({"type": "teleport"}, {"type": "navigate", "url": URL})

        assert asyncio.run(executor.run(task)) == 2
        assert agent.count("open") == 1

    def test_navigate_replaces_previous_page(self, executor, agent) -> None:
        task = _task({"type": "navigate", "url": URL}, {"type": "navigate", "url": URL + "/next"})

        asyncio.run(executor.run(task))

        assert agent.count("close") == 2
        assert agent.open_handles == set()
