"""Runtime settings shared by the pipeline engine and the action executor."""

from __future__ import annotations

from dataclasses import dataclass

from sitepipe.config import ProjectConfig, get_config


@dataclass(frozen=True)
class EngineSettings:
    """Limits and defaults applied to every run.

    Attributes:
        page_timeout: Upper bound in seconds for any single Page Agent call.
            The agent itself enforces none, so this keeps a hung page from
            stalling its pipeline forever.
        default_wait_ms: Settle delay used when a site does not set one.
        default_max_pages: Page limit used when a site does not set one.
        ai_batch_size: Records sent per inference call by ``ai_analysis``.
        allow_scripts: Enables the privileged ``script`` action.
        webhook_timeout: Seconds before a webhook POST is abandoned.
        enrichment_timeout: Seconds before an HTTP enrichment lookup is abandoned.
    """

    page_timeout: float = 30.0
    default_wait_ms: int = 2000
    default_max_pages: int = 1
    ai_batch_size: int = 10
    allow_scripts: bool = False
    webhook_timeout: float = 30.0
    enrichment_timeout: float = 15.0

    def __post_init__(self) -> None:
        if self.page_timeout <= 0:
            raise ValueError(f"page_timeout must be positive, got {self.page_timeout}")
        if self.default_max_pages < 1:
            raise ValueError(f"default_max_pages must be >= 1, got {self.default_max_pages}")
        if self.ai_batch_size < 1:
            raise ValueError(f"ai_batch_size must be >= 1, got {self.ai_batch_size}")

    @classmethod
    def from_config(cls, config: ProjectConfig | None = None) -> "EngineSettings":
        config = config or get_config()
        return cls(
            page_timeout=config.page_timeout_seconds,
            default_wait_ms=config.default_wait_ms,
            default_max_pages=int(config.get("default_max_pages", 1)),
            ai_batch_size=int(config.get("ai_batch_size", 10)),
            allow_scripts=config.allow_scripts,
            webhook_timeout=float(config.get("webhook_timeout", 30.0)),
            enrichment_timeout=float(config.get("enrichment_timeout", 15.0)),
        )
