"""Automation scheduler: definitions, timers and run bookkeeping.

All tasks and scheduled pipelines share one min-heap of due times. Heap
entries carry a generation number; disabling, deleting or rearming an entity
bumps its generation so stale entries are discarded when they surface
instead of being searched for and removed.

Each entity has at most one run in flight. A timer that fires while the
previous run is still working is suppressed and simply rearmed for the next
occurrence.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Mapping

from sitepipe.registry import Pipeline, SiteConfig, StageSpec, Task

from .actions import ACTION_TYPES, TaskActionError
from .schedule import Schedule, SchedulingError

if TYPE_CHECKING:
    from sitepipe.clock import Clock
    from sitepipe.pipeline.runner import PipelineEngine, PipelineRunResult
    from sitepipe.registry import Registry

    from .actions import ActionExecutor

logger = logging.getLogger(__name__)

TASK = "task"
PIPELINE = "pipeline"

DEFAULT_POLL_SECONDS = 60.0


@dataclass(frozen=True)
class TaskNotification:
    """Emitted after every task run, successful or not."""

    task_id: str
    name: str
    status: str  # "success" | "error"
    message: str = ""


@dataclass
class TaskRunResult:
    task_id: str
    started_at: datetime
    completed_at: datetime | None = None
    status: str = "running"
    actions_completed: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status,
            "actions_completed": self.actions_completed,
            "error": self.error,
        }


@dataclass(order=True)
class _TimerEntry:
    due: datetime
    sequence: int
    kind: str = field(compare=False)
    entity_id: str = field(compare=False)
    generation: int = field(compare=False)


def log_notification(notification: TaskNotification) -> None:
    if notification.status == "success":
        logger.info("Automation task completed: %s: %s", notification.name, notification.message)
    else:
        logger.error("Automation task failed: %s: %s", notification.name, notification.message)


class AutomationScheduler:
    """Owns task and pipeline definitions and triggers their runs.

    Usage:
        scheduler = AutomationScheduler(registry, engine=engine, executor=executor, clock=clock)
        scheduler.start()
        await scheduler.run_forever()
    """

    def __init__(
        self,
        registry: "Registry",
        *,
        engine: "PipelineEngine",
        executor: "ActionExecutor",
        clock: "Clock",
        notify: Callable[[TaskNotification], None] | None = None,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.executor = executor
        self.clock = clock
        self.notify = notify or log_notification
        self.poll_seconds = poll_seconds

        self._heap: list[_TimerEntry] = []
        self._sequence = itertools.count()
        self._generations: dict[tuple[str, str], int] = {}
        self._armed: dict[tuple[str, str], datetime] = {}
        self._running_tasks: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._wakeup: asyncio.Event | None = None
        self._stopped = False

    # Timers

    def _arm(self, kind: str, entity_id: str, due: datetime) -> None:
        key = (kind, entity_id)
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        self._armed[key] = due
        heapq.heappush(self._heap, _TimerEntry(due, next(self._sequence), kind, entity_id, generation))
        if self._wakeup is not None:
            self._wakeup.set()
        logger.debug("Armed %s %s for %s", kind, entity_id, due.isoformat())

    def _disarm(self, kind: str, entity_id: str) -> None:
        key = (kind, entity_id)
        self._generations[key] = self._generations.get(key, 0) + 1
        self._armed.pop(key, None)

    def next_due(self, kind: str, entity_id: str) -> datetime | None:
        """When the entity's timer will next fire, or None if not armed."""
        return self._armed.get((kind, entity_id))

    def _arm_pipeline(self, pipeline: Pipeline, after: datetime) -> None:
        if pipeline.enabled and pipeline.schedule:
            self._arm(PIPELINE, pipeline.id, Schedule.from_dict(pipeline.schedule).next_run(after))
        else:
            self._disarm(PIPELINE, pipeline.id)

    def start(self) -> None:
        """Arm every enabled task and scheduled pipeline in the registry.

        Runs missed while the scheduler was down are not replayed; a stale
        ``next_run`` is recomputed from now.
        """
        now = self.clock.now()
        for task in self.registry.list_tasks():
            if not task.enabled:
                continue
            try:
                schedule = Schedule.parse(task.type, task.schedule_value)
            except SchedulingError as exc:
                logger.error("Not arming task %s: %s", task.id, exc)
                continue
            if task.next_run is None or task.next_run <= now:
                task.next_run = schedule.next_run(now)
                self.registry.save_task(task)
            self._arm(TASK, task.id, task.next_run)
        for pipeline in self.registry.list_pipelines():
            try:
                self._arm_pipeline(pipeline, now)
            except SchedulingError as exc:
                logger.error("Not arming pipeline %s: %s", pipeline.id, exc)
        logger.info("Scheduler started with %d armed timers", len(self._armed))

    # Task definitions

    def create_task(self, config: Mapping[str, Any]) -> Task:
        """Register a new task and arm it if enabled.

        Raises:
            SchedulingError: If the schedule is malformed.
            ValueError: If the rest of the definition is invalid.
        """
        name = config.get("name")
        if not name:
            raise ValueError("Task requires a 'name'")
        schedule_value = config.get("scheduleValue", config.get("schedule"))
        schedule = Schedule.parse(config.get("type"), schedule_value)
        actions = list(config.get("actions") or [])
        self._check_actions(actions)
        max_runs = config.get("maxRuns")
        if max_runs is not None and (isinstance(max_runs, bool) or not isinstance(max_runs, int) or max_runs < 1):
            raise ValueError(f"maxRuns must be a positive integer, got {max_runs!r}")

        now = self.clock.now()
        task = Task(
            id=self.registry.new_task_id(),
            name=name,
            description=config.get("description", ""),
            type=schedule.type,
            schedule_value=schedule.value,
            actions=actions,
            enabled=config.get("enabled", True) is not False,
            created_at=now,
            next_run=schedule.next_run(now),
            max_runs=max_runs,
            tags=list(config.get("tags") or []),
            metadata=dict(config.get("metadata") or {}),
        )
        self.registry.add_task(task)
        if task.enabled:
            self._arm(TASK, task.id, task.next_run)
        logger.info("Created automation task: %s (%s)", task.name, task.id)
        return task

    def _check_actions(self, actions: list[Any]) -> None:
        for index, action in enumerate(actions):
            if not isinstance(action, Mapping) or not action.get("type"):
                raise ValueError(f"Action #{index} must be an object with a 'type'")
            if action["type"] not in ACTION_TYPES:
                logger.warning("Action #%d has unknown type %r; it will be skipped", index, action["type"])
            if action["type"] == "script" and not self.executor.settings.allow_scripts:
                raise ValueError(f"Action #{index} is a script action but allow_scripts is disabled")

    def update_task_schedule(self, task_id: str, schedule_type: str, value: Any) -> Task | None:
        task = self.registry.get_task(task_id)
        if task is None:
            return None
        schedule = Schedule.parse(schedule_type, value)
        task.type, task.schedule_value = schedule.type, schedule.value
        task.next_run = schedule.next_run(self.clock.now())
        self.registry.save_task(task)
        if task.enabled:
            self._arm(TASK, task.id, task.next_run)
        return task

    def enable_task(self, task_id: str) -> Task | None:
        task = self.registry.get_task(task_id)
        if task is None:
            return None
        task.enabled = True
        task.next_run = Schedule.parse(task.type, task.schedule_value).next_run(self.clock.now())
        self.registry.save_task(task)
        self._arm(TASK, task.id, task.next_run)
        return task

    def disable_task(self, task_id: str) -> Task | None:
        """Disable a task and cancel its timer. A run in flight still completes."""
        task = self.registry.get_task(task_id)
        if task is None:
            return None
        task.enabled = False
        self._disarm(TASK, task_id)
        self.registry.save_task(task)
        logger.info("Disabled automation task: %s (%s)", task.name, task_id)
        return task

    def delete_task(self, task_id: str) -> bool:
        self._disarm(TASK, task_id)
        return self.registry.delete_task(task_id)

    def get_task(self, task_id: str) -> Task | None:
        return self.registry.get_task(task_id)

    def list_tasks(self, tag: str | None = None) -> list[Task]:
        return self.registry.list_tasks(tag)

    # Pipeline definitions

    def create_pipeline(self, config: Mapping[str, Any]) -> Pipeline:
        """Register a new pipeline. Identical configs still get distinct ids.

        Raises:
            SchedulingError: If the schedule is malformed.
            ValueError: If the rest of the definition is invalid.
        """
        name = config.get("name")
        if not name:
            raise ValueError("Pipeline requires a 'name'")
        schedule = config.get("schedule") or None
        if schedule is not None:
            Schedule.from_dict(schedule)

        settings = self.engine.settings
        site_defaults = {"waitTimeMs": settings.default_wait_ms, "maxPages": settings.default_max_pages}
        sites = [
            SiteConfig.from_dict({**site_defaults, **site})
            for site in config.get("sites") or []
        ]
        pipeline = Pipeline(
            id=self.registry.new_pipeline_id(),
            name=name,
            description=config.get("description", ""),
            sites=sites,
            processors=[StageSpec.from_dict(p) for p in config.get("processors") or []],
            outputs=[StageSpec.from_dict(o) for o in config.get("outputs") or []],
            schedule=dict(schedule) if schedule else None,
            data_schema=dict(config.get("dataSchema") or {}),
            enabled=config.get("enabled", True) is not False,
            created_at=self.clock.now(),
            metadata=dict(config.get("metadata") or {}),
        )
        self.registry.add_pipeline(pipeline)
        self._arm_pipeline(pipeline, self.clock.now())
        logger.info("Created data collection pipeline: %s (%s)", pipeline.name, pipeline.id)
        return pipeline

    def enable_pipeline(self, pipeline_id: str) -> Pipeline | None:
        pipeline = self.registry.get_pipeline(pipeline_id)
        if pipeline is None:
            return None
        pipeline.enabled = True
        self.registry.save_pipeline(pipeline)
        self._arm_pipeline(pipeline, self.clock.now())
        return pipeline

    def disable_pipeline(self, pipeline_id: str) -> Pipeline | None:
        pipeline = self.registry.get_pipeline(pipeline_id)
        if pipeline is None:
            return None
        pipeline.enabled = False
        self.registry.save_pipeline(pipeline)
        self._disarm(PIPELINE, pipeline_id)
        return pipeline

    def delete_pipeline(self, pipeline_id: str) -> bool:
        self._disarm(PIPELINE, pipeline_id)
        return self.registry.delete_pipeline(pipeline_id)

    def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        return self.registry.get_pipeline(pipeline_id)

    def list_pipelines(self) -> list[Pipeline]:
        return self.registry.list_pipelines()

    # Execution

    def is_running(self, kind: str, entity_id: str) -> bool:
        if kind == TASK:
            return entity_id in self._running_tasks
        return self.engine.is_running(entity_id)

    def _begin_task_run(self, task_id: str) -> Task | None:
        """Check eligibility and record the start of a run.

        Returns the task when a run should proceed. Reaching ``max_runs``
        disables the task instead.
        """
        task = self.registry.get_task(task_id)
        if task is None or not task.enabled:
            return None
        if task_id in self._running_tasks:
            logger.warning("Task %s is still running; execution suppressed", task_id)
            return None
        if task.max_runs_reached:
            logger.info("Task %s reached max runs (%d); disabling", task_id, task.max_runs)
            self.disable_task(task_id)
            return None

        now = self.clock.now()
        task.last_run = now
        task.run_count += 1
        task.next_run = Schedule.parse(task.type, task.schedule_value).next_run(now)
        self.registry.save_task(task)
        self._arm(TASK, task.id, task.next_run)
        self._running_tasks.add(task_id)
        return task

    async def _run_task(self, task: Task) -> TaskRunResult:
        started_at = task.last_run or self.clock.now()
        result = TaskRunResult(task_id=task.id, started_at=started_at)
        run = self.registry.start_run(task.id, TASK, started_at)
        logger.info("Executing automation task: %s (%s)", task.name, task.id)
        try:
            result.actions_completed = await self.executor.run(task)
            result.status = "success"
        except TaskActionError as exc:
            result.status = "failed"
            result.error = str(exc)
            logger.error("Failed to execute task %s: %s", task.name, exc)
        finally:
            self._running_tasks.discard(task.id)
            result.completed_at = self.clock.now()
            if result.status == "running":
                result.status, result.error = "failed", "run interrupted"
            run.finish(result.status, result.completed_at, result.error)
            self.registry.record_run(run)

        if result.succeeded:
            self.notify(TaskNotification(task.id, task.name, "success", "Executed successfully"))
        else:
            self.notify(TaskNotification(task.id, task.name, "error", result.error or "Execution failed"))

        current = self.registry.get_task(task.id)
        if current is not None and current.enabled and current.max_runs_reached:
            logger.info("Task %s completed its final run; disabling", task.id)
            self.disable_task(task.id)
        return result

    async def execute_task(self, task_id: str) -> TaskRunResult | None:
        """Run a task now.

        Returns:
            The run result, or None when the task is missing, disabled,
            already running, or has exhausted ``max_runs``.
        """
        task = self._begin_task_run(task_id)
        if task is None:
            return None
        return await self._run_task(task)

    async def execute_pipeline(self, pipeline_id: str) -> "PipelineRunResult | None":
        return await self.engine.execute_pipeline(pipeline_id)

    def _spawn(self, coro: Any, label: str) -> None:
        background = asyncio.get_running_loop().create_task(coro, name=label)
        self._background.add(background)
        background.add_done_callback(self._finished)

    def _finished(self, background: "asyncio.Task[Any]") -> None:
        self._background.discard(background)
        if background.cancelled():
            return
        exc = background.exception()
        if exc is not None:
            logger.error("Background run %s crashed: %r", background.get_name(), exc)

    def fire(self, kind: str, entity_id: str) -> bool:
        """Start a run in the background as a timer would.

        Must be called from within the event loop. Returns False when the
        firing was suppressed because a run is already in flight or the
        entity is not runnable.
        """
        if kind == TASK:
            task = self._begin_task_run(entity_id)
            if task is None:
                self._rearm_task_after_suppression(entity_id)
                return False
            self._spawn(self._run_task(task), f"task:{entity_id}")
            return True

        pipeline = self.registry.get_pipeline(entity_id)
        if pipeline is None or not pipeline.enabled:
            self._disarm(PIPELINE, entity_id)
            return False
        self._arm_pipeline(pipeline, self.clock.now())
        if self.engine.is_running(entity_id):
            logger.warning("Pipeline %s is still running; firing suppressed", entity_id)
            return False
        self._spawn(self.engine.execute_pipeline(entity_id), f"pipeline:{entity_id}")
        return True

    def _rearm_task_after_suppression(self, task_id: str) -> None:
        task = self.registry.get_task(task_id)
        if task is None or not task.enabled:
            self._disarm(TASK, task_id)
            return
        if (TASK, task_id) not in self._armed or self._armed[(TASK, task_id)] <= self.clock.now():
            task.next_run = Schedule.parse(task.type, task.schedule_value).next_run(self.clock.now())
            self.registry.save_task(task)
            self._arm(TASK, task_id, task.next_run)

    async def tick(self) -> list[tuple[str, str]]:
        """Fire every timer that is due. Returns the (kind, id) pairs fired."""
        now = self.clock.now()
        fired: list[tuple[str, str]] = []
        while self._heap and self._heap[0].due <= now:
            entry = heapq.heappop(self._heap)
            key = (entry.kind, entry.entity_id)
            if self._generations.get(key) != entry.generation:
                continue
            self._armed.pop(key, None)
            if self.fire(entry.kind, entry.entity_id):
                fired.append(key)
        # Let freshly spawned runs reach their first suspension point
        await asyncio.sleep(0)
        return fired

    def seconds_until_next(self) -> float | None:
        now = self.clock.now()
        while self._heap:
            entry = self._heap[0]
            if self._generations.get((entry.kind, entry.entity_id)) == entry.generation:
                return max(0.0, (entry.due - now).total_seconds())
            heapq.heappop(self._heap)
        return None

    async def run_forever(self) -> None:
        """Tick whenever a timer comes due until :meth:`stop` is called."""
        self._stopped = False
        self._wakeup = asyncio.Event()
        logger.info("Scheduler loop running")
        try:
            while not self._stopped:
                await self.tick()
                delay = self.seconds_until_next()
                delay = self.poll_seconds if delay is None else min(delay, self.poll_seconds)
                self._wakeup.clear()
                sleeper = asyncio.ensure_future(self.clock.sleep(delay))
                waker = asyncio.ensure_future(self._wakeup.wait())
                done, pending = await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
                for waiter in pending:
                    waiter.cancel()
        finally:
            self._wakeup = None
            logger.info("Scheduler loop stopped")

    def stop(self) -> None:
        self._stopped = True
        if self._wakeup is not None:
            self._wakeup.set()

    async def drain(self) -> None:
        """Wait for every background run to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
