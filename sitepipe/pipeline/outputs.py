"""Output sinks for processed batches.

Every configured output gets exactly one delivery attempt. A failing sink is
logged and reported in its :class:`SinkResult`; it never prevents the other
sinks from running and never fails the pipeline run.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import requests

from .config import EngineSettings
from .records import stringify

if TYPE_CHECKING:
    from sitepipe.clock import Clock
    from sitepipe.registry import Pipeline, StageSpec
    from sitepipe.storage import PersistenceStore

logger = logging.getLogger(__name__)


class OutputError(Exception):
    """Delivery to one sink failed."""


@dataclass
class SinkResult:
    """Outcome of delivering a batch to one output.

    Attributes:
        type: The output type.
        ok: Whether delivery succeeded.
        detail: Storage key, file path, webhook URL, or the failure reason.
        payload: Encoded bytes for csv/json exports.
    """

    type: str
    ok: bool
    detail: str = ""
    payload: bytes | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "ok": self.ok, "detail": self.detail}


def encode_csv(records: Sequence[Mapping[str, Any]]) -> bytes:
    """Encode records as CSV using the first record's keys as the header.

    Records with other keys are written against that header regardless, so
    heterogeneous batches lose or misalign columns.
    """
    if not records:
        return b""
    headers = list(records[0].keys())
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for record in records:
        writer.writerow([stringify(record.get(header)) for header in headers])
    return buffer.getvalue().encode("utf-8")


def encode_json(records: Sequence[Mapping[str, Any]]) -> bytes:
    return json.dumps(list(records), indent=2, default=str).encode("utf-8")


class OutputDispatcher:
    """Delivers processed batches to storage, file and webhook sinks."""

    def __init__(
        self,
        store: "PersistenceStore",
        *,
        clock: "Clock",
        settings: EngineSettings | None = None,
        export_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.settings = settings or EngineSettings()
        self.export_dir = export_dir

    def _timestamp_ms(self) -> int:
        return int(self.clock.now().timestamp() * 1000)

    async def dispatch(
        self,
        records: list[dict[str, Any]],
        outputs: Sequence["StageSpec"],
        pipeline: "Pipeline",
    ) -> list[SinkResult]:
        """Deliver ``records`` to every output independently."""
        results: list[SinkResult] = []
        for index, output in enumerate(outputs):
            try:
                result = await self._deliver(records, output, pipeline)
            except Exception as exc:
                logger.error(
                    "Output #%d (%s) failed for pipeline %s: %s",
                    index,
                    output.type,
                    pipeline.id,
                    exc,
                )
                result = SinkResult(type=output.type, ok=False, detail=str(exc))
            results.append(result)
        return results

    async def _deliver(
        self,
        records: list[dict[str, Any]],
        output: "StageSpec",
        pipeline: "Pipeline",
    ) -> SinkResult:
        config = output.config
        if output.type == "storage":
            return self._save_to_storage(records, config, pipeline)
        if output.type == "csv":
            return self._export_file(encode_csv(records), "csv", records, config, pipeline)
        if output.type == "json":
            return self._export_file(encode_json(records), "json", records, config, pipeline)
        if output.type == "webhook":
            return await self._send_to_webhook(records, config, pipeline)
        if output.type == "email":
            raise OutputError("Email delivery is not implemented")

        logger.warning("Unknown output type %r for pipeline %s", output.type, pipeline.id)
        return SinkResult(type=output.type, ok=False, detail=f"unknown output type {output.type!r}")

    def _save_to_storage(
        self,
        records: list[dict[str, Any]],
        config: Mapping[str, Any],
        pipeline: "Pipeline",
    ) -> SinkResult:
        key = config.get("key") or f"pipeline_{pipeline.id}_{self._timestamp_ms()}"
        self.store.set(key, records)
        logger.info("Saved %d records to storage: %s", len(records), key)
        return SinkResult(type="storage", ok=True, detail=key)

    def _export_file(
        self,
        payload: bytes,
        extension: str,
        records: list[dict[str, Any]],
        config: Mapping[str, Any],
        pipeline: "Pipeline",
    ) -> SinkResult:
        if extension == "csv" and not records:
            return SinkResult(type="csv", ok=True, detail="empty batch, nothing exported")

        filename = config.get("filename") or f"{pipeline.name}_{self._timestamp_ms()}.{extension}"
        directory = config.get("directory") or self.export_dir
        if directory is None:
            return SinkResult(type=extension, ok=True, detail=filename, payload=payload)

        path = Path(directory) / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
        logger.info("Exported %d records to %s: %s", len(records), extension.upper(), path)
        return SinkResult(type=extension, ok=True, detail=str(path), payload=payload)

    async def _send_to_webhook(
        self,
        records: list[dict[str, Any]],
        config: Mapping[str, Any],
        pipeline: "Pipeline",
    ) -> SinkResult:
        url = config.get("url")
        if not url:
            raise OutputError("Webhook output requires a 'url'")

        body = {
            "pipeline": pipeline.name,
            "timestamp": self.clock.now().isoformat(),
            "data": records,
        }
        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
        try:
            response = await asyncio.to_thread(
                requests.post,
                url,
                data=json.dumps(body, default=str),
                headers=headers,
                timeout=self.settings.webhook_timeout,
            )
        except requests.RequestException as exc:
            raise OutputError(f"Webhook delivery to {url} failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise OutputError(f"Webhook failed: {response.status_code}")

        logger.info("Sent %d records to webhook: %s", len(records), url)
        return SinkResult(type="webhook", ok=True, detail=url)
