"""Pipeline, task and run definitions plus the repository that owns them.

Definitions are persisted through a :class:`PersistenceStore` under the keys
``data_collection_pipelines`` and ``automation_tasks``. The dictionary form
uses camelCase keys (``waitTimeMs``, ``totalRecords``, ``maxRuns``) so that
definition files and stored state share one vocabulary; free-form processor,
output and action configs are kept exactly as supplied.
"""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List

from .storage import PersistenceStore

logger = logging.getLogger(__name__)

PIPELINES_KEY = "data_collection_pipelines"
TASKS_KEY = "automation_tasks"
RUNS_KEY = "run_history"

DEFAULT_WAIT_MS = 2000
DEFAULT_RUN_HISTORY = 50

_ID_ALPHABET = string.digits + string.ascii_lowercase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _int_field(payload: dict[str, Any], key: str, default: int, *, minimum: int) -> int:
    if key not in payload:
        return default
    raw = payload[key]
    if raw is None or isinstance(raw, bool):
        raise ValueError(f"{key} must be an integer, got {raw!r}")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}, got {value}")
    return value


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def generate_id(prefix: str) -> str:
    """Return ``<prefix>_<epoch-ms>_<9 base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


@dataclass(slots=True)
class PaginationConfig:
    """How to advance to the next page: by CSS selector or by button text."""

    next_selector: str | None = None
    next_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.next_selector:
            payload["nextSelector"] = self.next_selector
        if self.next_text:
            payload["nextText"] = self.next_text
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "PaginationConfig | None":
        if not payload:
            return None
        next_selector = payload.get("nextSelector")
        next_text = payload.get("nextText")
        if not next_selector and not next_text:
            raise ValueError("Pagination requires 'nextSelector' or 'nextText'")
        return cls(next_selector=next_selector, next_text=next_text)


@dataclass(slots=True)
class SiteConfig:
    """One external source of records."""

    url: str
    selectors: dict[str, Any] = field(default_factory=dict)
    pagination: PaginationConfig | None = None
    wait_time_ms: int = DEFAULT_WAIT_MS
    max_pages: int = 1
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "selectors": self.selectors,
            "pagination": self.pagination.to_dict() if self.pagination else None,
            "waitTimeMs": self.wait_time_ms,
            "maxPages": self.max_pages,
            "headers": self.headers,
            "cookies": self.cookies,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SiteConfig":
        if not payload.get("url"):
            raise ValueError("Site config requires a 'url'")
        wait_time_ms = _int_field(payload, "waitTimeMs", DEFAULT_WAIT_MS, minimum=0)
        max_pages = _int_field(payload, "maxPages", 1, minimum=1)
        return cls(
            url=payload["url"],
            selectors=payload.get("selectors") or {},
            pagination=PaginationConfig.from_dict(payload.get("pagination")),
            wait_time_ms=wait_time_ms,
            max_pages=max_pages,
            headers=payload.get("headers") or {},
            cookies=payload.get("cookies") or {},
        )


@dataclass(slots=True)
class StageSpec:
    """A processor or output declaration: ``{type, config}``."""

    type: str
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "config": self.config}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StageSpec":
        if not payload.get("type"):
            raise ValueError(f"Stage declaration is missing 'type': {payload!r}")
        return cls(type=payload["type"], config=payload.get("config") or {})


@dataclass(slots=True)
class Pipeline:
    """Schedulable definition of sites, processors and outputs."""

    id: str
    name: str
    description: str = ""
    sites: List[SiteConfig] = field(default_factory=list)
    processors: List[StageSpec] = field(default_factory=list)
    outputs: List[StageSpec] = field(default_factory=list)
    schedule: dict[str, Any] | None = None
    data_schema: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    last_run: datetime | None = None
    total_records: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "sites": [site.to_dict() for site in self.sites],
            "processors": [stage.to_dict() for stage in self.processors],
            "outputs": [output.to_dict() for output in self.outputs],
            "schedule": self.schedule,
            "dataSchema": self.data_schema,
            "enabled": self.enabled,
            "createdAt": self.created_at.isoformat(),
            "lastRun": _iso(self.last_run),
            "totalRecords": self.total_records,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Pipeline":
        return cls(
            id=payload["id"],
            name=payload["name"],
            description=payload.get("description", ""),
            sites=[SiteConfig.from_dict(site) for site in payload.get("sites", [])],
            processors=[StageSpec.from_dict(p) for p in payload.get("processors", [])],
            outputs=[StageSpec.from_dict(o) for o in payload.get("outputs", [])],
            schedule=payload.get("schedule"),
            data_schema=payload.get("dataSchema", {}),
            enabled=payload.get("enabled", True),
            created_at=_parse_dt(payload.get("createdAt")) or _utcnow(),
            last_run=_parse_dt(payload.get("lastRun")),
            total_records=payload.get("totalRecords", 0),
            metadata=payload.get("metadata", {}),
        )


@dataclass(slots=True)
class Task:
    """Schedulable ordered list of automation actions."""

    id: str
    name: str
    type: str  # "interval" | "daily" | "weekly" | "monthly"
    schedule_value: Any = None
    actions: List[dict[str, Any]] = field(default_factory=list)
    description: str = ""
    enabled: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    last_run: datetime | None = None
    next_run: datetime | None = None
    run_count: int = 0
    max_runs: int | None = None
    tags: List[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def max_runs_reached(self) -> bool:
        return self.max_runs is not None and self.run_count >= self.max_runs

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "scheduleValue": self.schedule_value,
            "actions": self.actions,
            "enabled": self.enabled,
            "createdAt": self.created_at.isoformat(),
            "lastRun": _iso(self.last_run),
            "nextRun": _iso(self.next_run),
            "runCount": self.run_count,
            "maxRuns": self.max_runs,
            "tags": self.tags,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Task":
        return cls(
            id=payload["id"],
            name=payload["name"],
            type=payload["type"],
            schedule_value=payload.get("scheduleValue"),
            actions=payload.get("actions", []),
            description=payload.get("description", ""),
            enabled=payload.get("enabled", True),
            created_at=_parse_dt(payload.get("createdAt")) or _utcnow(),
            last_run=_parse_dt(payload.get("lastRun")),
            next_run=_parse_dt(payload.get("nextRun")),
            run_count=payload.get("runCount", 0),
            max_runs=payload.get("maxRuns"),
            tags=payload.get("tags", []),
            metadata=payload.get("metadata", {}),
        )


@dataclass(slots=True)
class Run:
    """Outcome of one pipeline or task execution."""

    id: str
    parent_id: str
    kind: str  # "pipeline" | "task"
    started_at: datetime
    ended_at: datetime | None = None
    status: str = "running"  # "running" | "success" | "failed"
    error: str | None = None
    records: int = 0

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    def finish(self, status: str, ended_at: datetime, error: str | None = None) -> None:
        self.status = status
        self.ended_at = ended_at
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "kind": self.kind,
            "startedAt": self.started_at.isoformat(),
            "endedAt": _iso(self.ended_at),
            "status": self.status,
            "error": self.error,
            "records": self.records,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Run":
        return cls(
            id=payload["id"],
            parent_id=payload["parentId"],
            kind=payload["kind"],
            started_at=datetime.fromisoformat(payload["startedAt"]),
            ended_at=_parse_dt(payload.get("endedAt")),
            status=payload.get("status", "running"),
            error=payload.get("error"),
            records=payload.get("records", 0),
        )


class Registry:
    """Repository of pipeline and task definitions.

    Every mutation is written through to the store immediately, so the
    in-memory view and the persisted view never diverge.
    """

    def __init__(
        self,
        store: PersistenceStore,
        *,
        run_history: int = DEFAULT_RUN_HISTORY,
    ) -> None:
        self.store = store
        self._run_history = run_history
        self._pipelines: dict[str, Pipeline] = {}
        self._tasks: dict[str, Task] = {}
        self._runs: dict[str, list[Run]] = {}
        self._load()

    def _load(self) -> None:
        for payload in self.store.get(PIPELINES_KEY, []) or []:
            try:
                pipeline = Pipeline.from_dict(payload)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Skipping malformed pipeline definition %r: %s", payload.get("id"), exc)
                continue
            self._pipelines[pipeline.id] = pipeline

        for payload in self.store.get(TASKS_KEY, []) or []:
            try:
                task = Task.from_dict(payload)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Skipping malformed task definition %r: %s", payload.get("id"), exc)
                continue
            self._tasks[task.id] = task

        for parent_id, runs in (self.store.get(RUNS_KEY, {}) or {}).items():
            try:
                self._runs[parent_id] = [Run.from_dict(run) for run in runs]
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Skipping malformed run history for %s: %s", parent_id, exc)

        logger.debug(
            "Loaded %d pipelines and %d tasks from store",
            len(self._pipelines),
            len(self._tasks),
        )

    def _save_pipelines(self) -> None:
        self.store.set(PIPELINES_KEY, [p.to_dict() for p in self._pipelines.values()])

    def _save_tasks(self) -> None:
        self.store.set(TASKS_KEY, [t.to_dict() for t in self._tasks.values()])

    def _new_id(self, prefix: str) -> str:
        while True:
            candidate = generate_id(prefix)
            if candidate not in self._pipelines and candidate not in self._tasks:
                return candidate

    # Pipelines

    def new_pipeline_id(self) -> str:
        return self._new_id("pipeline")

    def add_pipeline(self, pipeline: Pipeline) -> Pipeline:
        self._pipelines[pipeline.id] = pipeline
        self._save_pipelines()
        return pipeline

    def save_pipeline(self, pipeline: Pipeline) -> None:
        """Persist the current state of a registered pipeline."""
        if pipeline.id not in self._pipelines:
            raise KeyError(f"Unknown pipeline: {pipeline.id}")
        self._pipelines[pipeline.id] = pipeline
        self._save_pipelines()

    def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        return self._pipelines.get(pipeline_id)

    def list_pipelines(self) -> List[Pipeline]:
        return list(self._pipelines.values())

    def delete_pipeline(self, pipeline_id: str) -> bool:
        if self._pipelines.pop(pipeline_id, None) is None:
            return False
        self._save_pipelines()
        return True

    # Tasks

    def new_task_id(self) -> str:
        return self._new_id("task")

    def add_task(self, task: Task) -> Task:
        self._tasks[task.id] = task
        self._save_tasks()
        return task

    def save_task(self, task: Task) -> None:
        if task.id not in self._tasks:
            raise KeyError(f"Unknown task: {task.id}")
        self._tasks[task.id] = task
        self._save_tasks()

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def list_tasks(self, tag: str | None = None) -> List[Task]:
        tasks = list(self._tasks.values())
        if tag is not None:
            tasks = [task for task in tasks if tag in task.tags]
        return tasks

    def delete_task(self, task_id: str) -> bool:
        if self._tasks.pop(task_id, None) is None:
            return False
        self._save_tasks()
        return True

    # Runs

    def start_run(self, parent_id: str, kind: str, started_at: datetime) -> Run:
        return Run(id=generate_id("run"), parent_id=parent_id, kind=kind, started_at=started_at)

    def record_run(self, run: Run) -> None:
        """Append a finished run to its parent's bounded history."""
        history = self._runs.setdefault(run.parent_id, [])
        history.append(run)
        del history[: max(0, len(history) - self._run_history)]
        self.store.set(
            RUNS_KEY,
            {parent: [r.to_dict() for r in runs] for parent, runs in self._runs.items()},
        )

    def list_runs(self, parent_id: str) -> List[Run]:
        return list(self._runs.get(parent_id, []))
