"""Processing stage chain.

Each stage takes the full output of the previous stage and returns a new
batch; input records are never mutated. Stages run in declared order, and a
stage that raises aborts the rest of the chain with :class:`ProcessorError`.
Enrichment and AI analysis are the exceptions that absorb their own
collaborator failures, since a missing lookup should not cost the whole run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Sequence, Union
from urllib.parse import quote

import requests

from sitepipe.integrations.inference import InferenceError

from .config import EngineSettings
from .formula import FormulaError, FormulaEvaluationError, compile_formula
from .records import get_nested_value, normalize_number, stringify, to_number

if TYPE_CHECKING:
    from sitepipe.integrations.inference import InferenceBackend
    from sitepipe.registry import Pipeline, StageSpec

logger = logging.getLogger(__name__)

Record = dict[str, Any]
Enricher = Callable[[Record, Mapping[str, Any]], Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]]

PROCESSOR_TYPES = ("filter", "transform", "deduplicate", "enrich", "ai_analysis", "validate")

DEFAULT_ANALYSIS_PROMPT = "Analyze this data and extract insights"
ANALYSIS_TEMPERATURE = 0.3
ANALYSIS_MAX_TOKENS = 1000

_FIELD_PLACEHOLDER = re.compile(r"\{([A-Za-z0-9_.]+)\}")


class ProcessorError(Exception):
    """A stage failed; the remaining stages are skipped and the run fails."""

    def __init__(self, message: str, *, stage_index: int | None = None, stage_type: str | None = None) -> None:
        super().__init__(message)
        self.stage_index = stage_index
        self.stage_type = stage_type

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage_index is None:
            return message
        return f"processor #{self.stage_index} ({self.stage_type}): {message}"


@dataclass
class ProcessingContext:
    """Collaborators available to stages that need more than the batch."""

    pipeline: "Pipeline"
    inference: "InferenceBackend | None" = None
    settings: EngineSettings = field(default_factory=EngineSettings)
    enrichers: Mapping[str, Enricher] = field(default_factory=dict)


# filter


def _condition_holds(record: Record, condition: Mapping[str, Any], patterns: dict[str, re.Pattern[str]]) -> bool:
    value = get_nested_value(record, condition.get("field", ""))
    operator = condition.get("operator")
    expected = condition.get("value")

    if operator == "equals":
        if isinstance(value, bool) != isinstance(expected, bool):
            return False
        return value == expected
    if operator == "contains":
        if value is None:
            return False
        return stringify(expected) in stringify(value)
    if operator in ("greater_than", "less_than"):
        left, right = to_number(value), to_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "exists":
        return value is not None
    if operator == "regex":
        pattern = patterns.get(str(expected))
        if pattern is None:
            pattern = patterns[str(expected)] = re.compile(str(expected))
        return pattern.search(stringify(value)) is not None

    logger.warning("Unknown filter operator %r treated as satisfied", operator)
    return True


def filter_records(records: Sequence[Record], config: Mapping[str, Any]) -> list[Record]:
    """Keep records for which every condition holds."""
    conditions = config.get("conditions")
    if not conditions:
        return list(records)
    patterns: dict[str, re.Pattern[str]] = {}
    return [
        record for record in records
        if all(_condition_holds(record, condition, patterns) for condition in conditions)
    ]


# transform


def _to_date(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Numeric dates are epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).isoformat()
    except ValueError:
        return None


def convert_type(value: Any, target_type: str | None) -> Any:
    if target_type == "number":
        number = to_number(value)
        return None if number is None else normalize_number(number)
    if target_type == "string":
        return stringify(value)
    if target_type == "boolean":
        return value not in (None, "", 0, False)
    if target_type == "date":
        return _to_date(value)
    return value


def _apply_transformation(record: Record, op: Mapping[str, Any], formulas: dict[str, Any]) -> None:
    op_type = op.get("type")
    source = op.get("source", "")
    target = op.get("target")

    if op_type == "rename":
        record[target] = get_nested_value(record, source)
        record.pop(source, None)
    elif op_type == "convert_type":
        record[target or source] = convert_type(get_nested_value(record, source), op.get("targetType"))
    elif op_type == "extract_regex":
        value = get_nested_value(record, source)
        match = re.search(op["pattern"], stringify(value)) if value is not None else None
        if match is None:
            record[target] = None
        elif match.re.groups and match.group(1) is not None:
            record[target] = match.group(1)
        else:
            record[target] = match.group(0)
    elif op_type == "calculate":
        formula_text = op.get("formula", "")
        formula = formulas.get(formula_text)
        if formula is None:
            formula = formulas[formula_text] = compile_formula(formula_text)
        try:
            record[target] = formula.evaluate(record)
        except FormulaEvaluationError as exc:
            logger.debug("Formula %r not computable for record: %s", formula_text, exc)
            record[target] = None
    else:
        logger.warning("Unknown transformation type %r ignored", op_type)


def transform_records(records: Sequence[Record], config: Mapping[str, Any]) -> list[Record]:
    """Apply the configured transformations to a copy of every record.

    Operations run in order against the record being built, so a later
    operation sees the fields an earlier one renamed or derived.
    """
    transformations = config.get("transformations")
    if not transformations:
        return list(records)

    formulas: dict[str, Any] = {}
    for op in transformations:
        if op.get("type") == "calculate":
            try:
                formulas[op.get("formula", "")] = compile_formula(op.get("formula", ""))
            except FormulaError as exc:
                raise ProcessorError(f"Rejected formula for '{op.get('target')}': {exc}") from exc

    transformed: list[Record] = []
    for record in records:
        copy = dict(record)
        for op in transformations:
            _apply_transformation(copy, op, formulas)
        transformed.append(copy)
    return transformed


# deduplicate


def _hashable(key: Any) -> Any:
    if isinstance(key, (dict, list)):
        return json.dumps(key, sort_keys=True)
    if isinstance(key, bool):
        # True == 1 as a set member
        return (bool, key)
    return key


def deduplicate_records(records: Sequence[Record], config: Mapping[str, Any]) -> list[Record]:
    """Keep the first record seen for each key, preserving order."""
    unique_field = config.get("uniqueField") or "id"
    seen: set[Any] = set()
    unique: list[Record] = []
    for record in records:
        key = _hashable(get_nested_value(record, unique_field))
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


# enrich


def _render_url(template: str, record: Record) -> str:
    return _FIELD_PLACEHOLDER.sub(
        lambda match: quote(stringify(get_nested_value(record, match.group(1))), safe=""),
        template,
    )


def _fetch_http_enrichment(record: Record, source: Mapping[str, Any], timeout: float) -> Mapping[str, Any]:
    url = _render_url(source["url"], record)
    response = requests.get(url, headers=source.get("headers") or {}, timeout=timeout)
    response.raise_for_status()
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"Enrichment response from {url} is not a JSON object")
    return data


async def _lookup(record: Record, source: Mapping[str, Any], context: ProcessingContext) -> Mapping[str, Any]:
    source_type = source.get("type")
    if source_type == "static":
        return source.get("values") or {}
    if source_type == "http":
        return await asyncio.to_thread(
            _fetch_http_enrichment, record, source, context.settings.enrichment_timeout
        )
    enricher = context.enrichers.get(source_type or "")
    if enricher is None:
        raise ValueError(f"No enricher registered for type {source_type!r}")
    result = enricher(record, source)
    if asyncio.iscoroutine(result):
        result = await result
    return result or {}


async def enrich_records(records: Sequence[Record], config: Mapping[str, Any], context: ProcessingContext) -> list[Record]:
    """Shallow-merge data from each enrichment source into every record.

    Sources are queried one after another; a failing source is logged and
    skipped for that record.
    """
    sources = config.get("sources") or []
    enriched: list[Record] = []
    for record in records:
        merged = dict(record)
        for source in sources:
            try:
                merged.update(await _lookup(record, source, context))
            except Exception as exc:
                logger.warning(
                    "Enrichment source %r failed for pipeline %s: %s",
                    source.get("name") or source.get("type"),
                    context.pipeline.id,
                    exc,
                )
        enriched.append(merged)
    return enriched


# ai_analysis


async def analyze_records(records: Sequence[Record], config: Mapping[str, Any], context: ProcessingContext) -> list[Record]:
    """Attach one inference result per batch as ``_ai_analysis``.

    Every record in a batch shares the same analysis text. A batch whose
    inference call fails passes through unannotated.
    """
    if context.inference is None:
        logger.warning("ai_analysis skipped for pipeline %s: no inference backend", context.pipeline.id)
        return list(records)

    prompt = config.get("prompt") or DEFAULT_ANALYSIS_PROMPT
    batch_size = context.settings.ai_batch_size
    analyzed: list[Record] = []

    for start in range(0, len(records), batch_size):
        batch = records[start:start + batch_size]
        data_string = json.dumps(list(batch), indent=2, default=str)
        try:
            analysis = await asyncio.to_thread(
                context.inference.complete,
                f"Data to analyze:\n{data_string}",
                prompt,
                ANALYSIS_TEMPERATURE,
                ANALYSIS_MAX_TOKENS,
            )
        except InferenceError as exc:
            logger.error(
                "AI analysis failed for records %d-%d of pipeline %s: %s",
                start,
                start + len(batch) - 1,
                context.pipeline.id,
                exc,
            )
            analyzed.extend(dict(record) for record in batch)
            continue
        analyzed.extend({**record, "_ai_analysis": analysis} for record in batch)

    return analyzed


# validate

_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


def _passes_rules(value: Any, rules: Mapping[str, Any]) -> bool:
    if rules.get("required") and value is None:
        return False
    expected_type = rules.get("type")
    if expected_type:
        check = _TYPE_CHECKS.get(expected_type)
        if check is None:
            raise ValueError(f"Unknown validation type {expected_type!r}")
        if not check(value):
            return False
    min_length = rules.get("minLength")
    if min_length and len(stringify(value)) < min_length:
        return False
    pattern = rules.get("pattern")
    if pattern and re.search(pattern, stringify(value)) is None:
        return False
    return True


def validate_records(records: Sequence[Record], config: Mapping[str, Any]) -> list[Record]:
    """Drop every record that fails any field rule."""
    schema: Mapping[str, Mapping[str, Any]] = config.get("schema") or {}
    if not schema:
        return list(records)
    return [
        record for record in records
        if all(_passes_rules(get_nested_value(record, name), rules) for name, rules in schema.items())
    ]


# chain


async def apply_processor(records: list[Record], stage: "StageSpec", context: ProcessingContext) -> list[Record]:
    config = stage.config
    if stage.type == "filter":
        return filter_records(records, config)
    if stage.type == "transform":
        return transform_records(records, config)
    if stage.type == "deduplicate":
        return deduplicate_records(records, config)
    if stage.type == "enrich":
        return await enrich_records(records, config, context)
    if stage.type == "ai_analysis":
        return await analyze_records(records, config, context)
    if stage.type == "validate":
        return validate_records(records, config)

    logger.warning("Unknown processor type %r; passing batch through", stage.type)
    return records


async def run_processors(
    records: list[Record],
    stages: Sequence["StageSpec"],
    context: ProcessingContext,
) -> list[Record]:
    """Run the batch through every stage in declared order.

    Raises:
        ProcessorError: Identifying the first failing stage.
    """
    batch = records
    for index, stage in enumerate(stages):
        before = len(batch)
        try:
            batch = await apply_processor(batch, stage, context)
        except ProcessorError as exc:
            exc.stage_index, exc.stage_type = index, stage.type
            raise
        except Exception as exc:
            raise ProcessorError(str(exc), stage_index=index, stage_type=stage.type) from exc
        logger.debug(
            "Processor #%d (%s) for pipeline %s: %d -> %d records",
            index,
            stage.type,
            context.pipeline.id,
            before,
            len(batch),
        )
    return batch
