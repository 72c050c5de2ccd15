"""Wiring of the default collaborators used by CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sitepipe import paths
from sitepipe.automation import ActionExecutor, AutomationScheduler
from sitepipe.clock import SystemClock
from sitepipe.config import ProjectConfig, get_config
from sitepipe.integrations import InferenceClient, PlaywrightPageAgent
from sitepipe.pipeline import EngineSettings, PipelineEngine
from sitepipe.registry import Registry
from sitepipe.storage import JsonFileStore

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


@dataclass
class Runtime:
    registry: Registry
    scheduler: AutomationScheduler
    agent: PlaywrightPageAgent

    async def aclose(self) -> None:
        await self.agent.aclose()


def build_runtime(config: ProjectConfig | None = None) -> Runtime:
    """Assemble a scheduler backed by the on-disk store, Playwright and the inference server."""
    config = config or get_config()
    settings = EngineSettings.from_config(config)
    store = JsonFileStore(paths.get_store_file())
    registry = Registry(store)
    clock = SystemClock()

    agent = PlaywrightPageAgent(
        headless=config.headless,
        timeout=int(settings.page_timeout * 1000),
    )
    inference = InferenceClient(
        api_url=config.inference_url,
        model=config.inference_model,
        api_key=config.get("inference_api_key"),
    )
    engine = PipelineEngine(
        registry,
        agent,
        clock=clock,
        inference=inference,
        settings=settings,
        export_dir=paths.get_export_root(),
    )
    executor = ActionExecutor(agent, store, clock=clock, inference=inference, settings=settings)
    scheduler = AutomationScheduler(registry, engine=engine, executor=executor, clock=clock)
    return Runtime(registry=registry, scheduler=scheduler, agent=agent)


def load_definition(path: Path) -> dict[str, Any]:
    """Read a JSON definition file.

    Raises:
        ValueError: If the file cannot be read or is not a JSON object.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Cannot read definition {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Definition {path} must be a JSON object")
    return payload
