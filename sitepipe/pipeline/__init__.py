"""Data collection pipelines.

A pipeline collects records from one or more sites through the Page Agent,
runs them through an ordered list of processors and delivers the final batch
to every configured output.

Usage:
    from sitepipe.pipeline import PipelineEngine

    engine = PipelineEngine(registry, agent, clock=SystemClock())
    result = await engine.execute_pipeline(pipeline_id)
"""

from .collector import CollectionError, SiteCollection, collect_from_site
from .config import EngineSettings
from .formula import FormulaError, compile_formula
from .outputs import OutputDispatcher, OutputError, SinkResult
from .processors import PROCESSOR_TYPES, ProcessingContext, ProcessorError, run_processors
from .runner import PipelineEngine, PipelineRunResult

__all__ = [
    # Config
    "EngineSettings",
    # Collection
    "CollectionError",
    "SiteCollection",
    "collect_from_site",
    # Processing
    "FormulaError",
    "PROCESSOR_TYPES",
    "ProcessingContext",
    "ProcessorError",
    "compile_formula",
    "run_processors",
    # Outputs
    "OutputDispatcher",
    "OutputError",
    "SinkResult",
    # Runner
    "PipelineEngine",
    "PipelineRunResult",
]
