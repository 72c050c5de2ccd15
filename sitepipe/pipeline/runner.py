"""Pipeline execution: collect from every site, process, then deliver.

Failure boundaries per run:
1. Site collection: a failing site is logged and skipped; the other sites
   still contribute records.
2. Processing: the first failing processor aborts the run. Nothing is
   delivered and ``total_records`` is left untouched.
3. Output: every sink is attempted independently; sink failures are
   reported but the run still succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from .collector import SiteCollection, collect_from_site
from .config import EngineSettings
from .outputs import OutputDispatcher, SinkResult
from .processors import Enricher, ProcessingContext, ProcessorError, run_processors

if TYPE_CHECKING:
    from sitepipe.clock import Clock
    from sitepipe.integrations.inference import InferenceBackend
    from sitepipe.integrations.page_agent import PageAgent
    from sitepipe.registry import Registry

logger = logging.getLogger(__name__)


@dataclass
class PipelineRunResult:
    """Result of one pipeline execution.

    Attributes:
        pipeline_id: The pipeline that ran.
        started_at: When the run started.
        completed_at: When the run finished.
        status: "success" or "failed".
        sites: Per-site collection outcomes, in declared order.
        records: The final processed batch (empty on failure).
        sinks: Per-output delivery outcomes.
        error: Processor failure that aborted the run, if any.
    """

    pipeline_id: str
    started_at: datetime
    completed_at: datetime | None = None
    status: str = "running"
    sites: list[SiteCollection] = field(default_factory=list)
    records: list[dict[str, Any]] = field(default_factory=list)
    sinks: list[SinkResult] = field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def collected_total(self) -> int:
        return sum(len(site.records) for site in self.sites)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "status": self.status,
            "collected": self.collected_total,
            "records": len(self.records),
            "sites": [site.to_dict() for site in self.sites],
            "sinks": [sink.to_dict() for sink in self.sinks],
            "error": self.error,
        }

    def summary(self) -> str:
        """Generate a human-readable summary."""
        lines = [
            f"Pipeline {self.pipeline_id} {self.status} in {self.duration_seconds:.1f}s",
            f"  Collected: {self.collected_total} records from {len(self.sites)} sites",
        ]
        for site in self.sites:
            if site.error:
                lines.append(f"    - {site.url}: {site.error}")
        if self.error:
            lines.append(f"  Error: {self.error}")
        else:
            lines.append(f"  Final batch: {len(self.records)} records")
            for sink in self.sinks:
                state = "ok" if sink.ok else "FAILED"
                lines.append(f"    - {sink.type}: {state} {sink.detail}".rstrip())
        return "\n".join(lines)


class PipelineEngine:
    """Runs registered pipelines against a Page Agent.

    A pipeline never has two runs in flight: a trigger that arrives while
    the previous run is still working is ignored.
    """

    def __init__(
        self,
        registry: "Registry",
        agent: "PageAgent",
        *,
        clock: "Clock",
        inference: "InferenceBackend | None" = None,
        settings: EngineSettings | None = None,
        enrichers: Mapping[str, Enricher] | None = None,
        export_dir: Path | None = None,
    ) -> None:
        self.registry = registry
        self.agent = agent
        self.clock = clock
        self.inference = inference
        self.settings = settings or EngineSettings()
        self.enrichers = dict(enrichers or {})
        self.dispatcher = OutputDispatcher(
            registry.store,
            clock=clock,
            settings=self.settings,
            export_dir=export_dir,
        )
        self._in_flight: set[str] = set()

    def is_running(self, pipeline_id: str) -> bool:
        return pipeline_id in self._in_flight

    async def execute_pipeline(self, pipeline_id: str) -> PipelineRunResult | None:
        """Execute one pipeline run.

        Returns:
            The run result, or None when the pipeline is missing, disabled,
            or already running.
        """
        pipeline = self.registry.get_pipeline(pipeline_id)
        if pipeline is None or not pipeline.enabled:
            logger.debug("Pipeline %s is missing or disabled; not running", pipeline_id)
            return None
        if pipeline_id in self._in_flight:
            logger.warning("Pipeline %s is already running; trigger ignored", pipeline_id)
            return None

        self._in_flight.add(pipeline_id)
        started_at = self.clock.now()
        result = PipelineRunResult(pipeline_id=pipeline_id, started_at=started_at)
        run = self.registry.start_run(pipeline_id, "pipeline", started_at)
        try:
            logger.info("Executing pipeline: %s (%s)", pipeline.name, pipeline_id)
            pipeline.last_run = started_at
            self.registry.save_pipeline(pipeline)

            collected: list[dict[str, Any]] = []
            for index, site in enumerate(pipeline.sites):
                try:
                    collection = await collect_from_site(
                        site,
                        pipeline,
                        self.agent,
                        clock=self.clock,
                        settings=self.settings,
                    )
                except Exception as exc:
                    logger.exception("Site #%d (%s) of pipeline %s failed", index, site.url, pipeline_id)
                    collection = SiteCollection(url=site.url, error=str(exc))
                result.sites.append(collection)
                collected.extend(collection.records)

            context = ProcessingContext(
                pipeline=pipeline,
                inference=self.inference,
                settings=self.settings,
                enrichers=self.enrichers,
            )
            try:
                processed = await run_processors(collected, pipeline.processors, context)
            except ProcessorError as exc:
                result.status = "failed"
                result.error = str(exc)
                logger.error("Pipeline %s failed: %s", pipeline_id, exc)
                return result

            result.records = processed
            result.sinks = await self.dispatcher.dispatch(processed, pipeline.outputs, pipeline)

            current = self.registry.get_pipeline(pipeline_id)
            if current is None:
                logger.warning("Pipeline %s was deleted during its run; stats not saved", pipeline_id)
            else:
                current.total_records += len(processed)
                self.registry.save_pipeline(current)

            result.status = "success"
            logger.info("Pipeline completed: %d records collected", len(processed))
            return result
        finally:
            self._in_flight.discard(pipeline_id)
            result.completed_at = self.clock.now()
            if result.status == "running":
                result.status = "failed"
                result.error = result.error or "run interrupted"
            run.records = len(result.records)
            run.finish(result.status, result.completed_at, result.error)
            self.registry.record_run(run)
