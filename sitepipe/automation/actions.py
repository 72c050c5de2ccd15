"""Action execution for automation tasks.

A task run owns one :class:`ActionSession`. ``navigate`` replaces the
session's page; every other page action works on that page. The session's
page is closed when the run ends, whether it succeeded or not.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Mapping, TypeVar

from sitepipe.pipeline.config import EngineSettings
from sitepipe.pipeline.outputs import encode_csv

if TYPE_CHECKING:
    from sitepipe.clock import Clock
    from sitepipe.integrations.inference import InferenceBackend
    from sitepipe.integrations.page_agent import PageAgent, PageHandle
    from sitepipe.registry import Task
    from sitepipe.storage import PersistenceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTION_TYPES = (
    "navigate",
    "click",
    "extract_data",
    "fill_form",
    "screenshot",
    "wait",
    "script",
    "ai_analysis",
)

DEFAULT_CLICK_WAIT_MS = 1000
DEFAULT_WAIT_MS = 1000
DEFAULT_PAGE_ANALYSIS_PROMPT = "Analyze the following web page content and provide insights."
PAGE_ANALYSIS_TEMPERATURE = 0.7
PAGE_ANALYSIS_MAX_TOKENS = 1000


class TaskActionError(Exception):
    """An action failed; the rest of this run's actions are skipped."""

    def __init__(self, task_id: str, index: int, action_type: str | None, message: str) -> None:
        super().__init__(f"task {task_id} action #{index} ({action_type}): {message}")
        self.task_id = task_id
        self.index = index
        self.action_type = action_type


class ActionSession:
    """The page a task run is currently working on."""

    def __init__(self, agent: "PageAgent", timeout: float) -> None:
        self.agent = agent
        self.timeout = timeout
        self.handle: "PageHandle | None" = None

    def require_page(self) -> "PageHandle":
        if self.handle is None:
            raise RuntimeError("no page is open; add a navigate action first")
        return self.handle

    async def replace(self, handle: "PageHandle") -> None:
        await self.close()
        self.handle = handle

    async def close(self) -> None:
        handle, self.handle = self.handle, None
        if handle is None:
            return
        try:
            await asyncio.wait_for(self.agent.close(handle), timeout=self.timeout)
        except Exception as exc:
            logger.warning("Failed to close page %s: %s", handle.url, exc)


class ActionExecutor:
    """Runs a task's actions in order against the Page Agent."""

    def __init__(
        self,
        agent: "PageAgent",
        store: "PersistenceStore",
        *,
        clock: "Clock",
        inference: "InferenceBackend | None" = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.agent = agent
        self.store = store
        self.clock = clock
        self.inference = inference
        self.settings = settings or EngineSettings()

    def _storage_key(self, kind: str, task: "Task", index: int) -> str:
        return f"task_{kind}_{task.id}_{int(self.clock.now().timestamp() * 1000)}_{index}"

    async def _bounded(self, awaitable: Awaitable[T], extra_seconds: float = 0.0) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.settings.page_timeout + extra_seconds)

    async def run(self, task: "Task") -> int:
        """Execute every action of ``task`` sequentially.

        Returns:
            The number of actions that ran.

        Raises:
            TaskActionError: For the first action that fails.
        """
        session = ActionSession(self.agent, self.settings.page_timeout)
        completed = 0
        try:
            for index, action in enumerate(task.actions):
                action_type = action.get("type")
                try:
                    await self.execute_action(action, task, session, index=index)
                except asyncio.TimeoutError as exc:
                    raise TaskActionError(task.id, index, action_type, "timed out") from exc
                except Exception as exc:
                    raise TaskActionError(task.id, index, action_type, str(exc)) from exc
                completed += 1
        finally:
            await session.close()
        return completed

    async def execute_action(
        self,
        action: Mapping[str, Any],
        task: "Task",
        session: ActionSession,
        *,
        index: int = 0,
    ) -> Any:
        action_type = action.get("type")
        logger.debug("Task %s: running %s action", task.id, action_type)

        if action_type == "navigate":
            return await self._navigate(action, session)
        if action_type == "click":
            wait_ms = int(action.get("waitFor", DEFAULT_CLICK_WAIT_MS))
            await self._bounded(
                self.agent.click(session.require_page(), action["selector"], wait_ms),
                extra_seconds=wait_ms / 1000,
            )
            return None
        if action_type == "extract_data":
            return await self._extract_data(action, task, session, index)
        if action_type == "fill_form":
            await self._bounded(
                self.agent.fill_form(session.require_page(), action.get("fields") or {}, action.get("submit", False))
            )
            return None
        if action_type == "screenshot":
            return await self._screenshot(task, session, index)
        if action_type == "wait":
            await self.clock.sleep(int(action.get("duration", DEFAULT_WAIT_MS)) / 1000)
            return None
        if action_type == "script":
            return await self._run_script(action, session)
        if action_type == "ai_analysis":
            return await self._analyze_page(action, task, session, index)

        logger.warning("Unknown action type %r in task %s; skipped", action_type, task.id)
        return None

    async def _navigate(self, action: Mapping[str, Any], session: ActionSession) -> "PageHandle":
        url = action.get("url")
        if not url:
            raise ValueError("navigate requires a 'url'")
        handle = await self._bounded(self.agent.open(url))
        await session.replace(handle)
        await self._bounded(self.agent.await_load(handle))
        return handle

    async def _extract_data(
        self, action: Mapping[str, Any], task: "Task", session: ActionSession, index: int
    ) -> Any:
        records = await self._bounded(
            self.agent.extract(session.require_page(), action.get("selectors") or {}, action.get("schema"))
        )
        data_format = action.get("format", "json")
        data: Any = encode_csv(records).decode("utf-8") if data_format == "csv" else records
        key = self._storage_key("data", task, index)
        self.store.set(key, data)
        logger.info("Task %s extracted %d records into %s", task.id, len(records), key)
        return data

    async def _screenshot(self, task: "Task", session: ActionSession, index: int) -> str:
        image = await self._bounded(self.agent.screenshot(session.require_page()))
        data_url = "data:image/png;base64," + base64.b64encode(image).decode("ascii")
        self.store.set(self._storage_key("screenshot", task, index), data_url)
        return data_url

    async def _run_script(self, action: Mapping[str, Any], session: ActionSession) -> Any:
        if not self.settings.allow_scripts:
            raise PermissionError("script actions are disabled; enable allow_scripts to run them")
        code = action.get("code")
        if not code:
            raise ValueError("script requires 'code'")
        return await self._bounded(self.agent.run_script(session.require_page(), code))

    async def _analyze_page(
        self, action: Mapping[str, Any], task: "Task", session: ActionSession, index: int
    ) -> str:
        if self.inference is None:
            raise RuntimeError("no inference backend configured")
        content = await self._bounded(self.agent.get_content(session.require_page()))
        prompt = f"Page Title: {content.get('title', '')}\n\nContent: {content.get('text', '')}"
        analysis = await asyncio.to_thread(
            self.inference.complete,
            prompt,
            action.get("prompt") or DEFAULT_PAGE_ANALYSIS_PROMPT,
            PAGE_ANALYSIS_TEMPERATURE,
            PAGE_ANALYSIS_MAX_TOKENS,
        )
        self.store.set(self._storage_key("analysis", task, index), {"content": content, "analysis": analysis})
        return analysis
