"""Tests for the processing stage chain."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from sitepipe.pipeline.config import EngineSettings
from sitepipe.pipeline.processors import (
    ProcessingContext,
    ProcessorError,
    analyze_records,
    convert_type,
    deduplicate_records,
    enrich_records,
    filter_records,
    run_processors,
    transform_records,
    validate_records,
)
from sitepipe.registry import Pipeline, StageSpec


def _context(**kwargs) -> ProcessingContext:
    return ProcessingContext(pipeline=Pipeline(id="pipeline_1", name="Test"), **kwargs)


class TestFilter:
    """Tests for filter conditions."""

    def test_greater_than_keeps_numeric_strings(self) -> None:
        records = [{"price": 5}, {"price": 15}, {"price": "20"}]
        config = {"conditions": [{"field": "price", "operator": "greater_than", "value": 10}]}

        assert filter_records(records, config) == [{"price": 15}, {"price": "20"}]

    def test_greater_than_coerces_strings(self) -> None:
        """Numeric strings compare as numbers; non-numeric values never match."""
        records = [{"price": "10"}, {"price": 3}, {"price": "abc"}]
        config = {"conditions": [{"field": "price", "operator": "greater_than", "value": 5}]}

        assert filter_records(records, config) == [{"price": "10"}]

    def test_all_conditions_must_hold(self) -> None:
        records = [
            {"title": "Red shoe", "price": 20},
            {"title": "Red hat", "price": 5},
            {"title": "Blue shoe", "price": 30},
        ]
        config = {
            "conditions": [
                {"field": "title", "operator": "contains", "value": "Red"},
                {"field": "price", "operator": "less_than", "value": 10},
            ]
        }

        assert filter_records(records, config) == [{"title": "Red hat", "price": 5}]

    def test_exists_and_nested_fields(self) -> None:
        records = [{"seller": {"rating": 4}}, {"seller": {}}, {"other": 1}]
        config = {"conditions": [{"field": "seller.rating", "operator": "exists"}]}

        assert filter_records(records, config) == [{"seller": {"rating": 4}}]

    def test_equals_is_strict(self) -> None:
        """Equality does not coerce between strings, numbers and booleans."""
        records = [{"v": 1}, {"v": "1"}, {"v": True}]
        config = {"conditions": [{"field": "v", "operator": "equals", "value": 1}]}

        assert filter_records(records, config) == [{"v": 1}]

    def test_regex_matches_stringified_value(self) -> None:
        records = [{"sku": "AB-123"}, {"sku": "XY-9"}, {"sku": 42}]
        config = {"conditions": [{"field": "sku", "operator": "regex", "value": r"^AB-\d+$"}]}

        assert filter_records(records, config) == [{"sku": "AB-123"}]

    def test_contains_on_missing_field_is_false(self) -> None:
        config = {"conditions": [{"field": "title", "operator": "contains", "value": ""}]}
        assert filter_records([{"price": 1}], config) == []

    def test_no_conditions_passes_everything(self) -> None:
        records = [{"a": 1}, {"a": 2}]
        assert filter_records(records, {}) == records


class TestTransform:
    """Tests for record transformations."""

    def test_rename(self) -> None:
        config = {"transformations": [{"type": "rename", "source": "cost", "target": "price"}]}

        assert transform_records([{"cost": 5, "id": 1}], config) == [{"id": 1, "price": 5}]

    def test_convert_type_in_place(self) -> None:
        config = {"transformations": [{"type": "convert_type", "source": "price", "targetType": "number"}]}

        assert transform_records([{"price": " 12.50 "}], config) == [{"price": 12.5}]

    def test_extract_regex_prefers_first_group(self) -> None:
        config = {
            "transformations": [
                {"type": "extract_regex", "source": "label", "target": "amount", "pattern": r"\$(\d+)"},
                {"type": "extract_regex", "source": "label", "target": "whole", "pattern": r"\d+"},
                {"type": "extract_regex", "source": "label", "target": "none", "pattern": r"EUR"},
            ]
        }

        result = transform_records([{"label": "Now $42 only"}], config)[0]

        assert result["amount"] == "42"
        assert result["whole"] == "42"
        assert result["none"] is None

    def test_calculate_uses_numeric_fields(self) -> None:
        config = {
            "transformations": [
                {"type": "calculate", "target": "total", "formula": "{price} * {qty}"},
            ]
        }

        records = transform_records([{"price": "2.5", "qty": 4}, {"price": "x", "qty": 1}], config)

        assert records[0]["total"] == 10
        assert records[1]["total"] is None

    def test_operations_apply_in_order(self) -> None:
        """A later operation sees the output of an earlier one."""
        config = {
            "transformations": [
                {"type": "rename", "source": "cost", "target": "price"},
                {"type": "calculate", "target": "doubled", "formula": "{price} * 2"},
            ]
        }

        assert transform_records([{"cost": 3}], config) == [{"price": 3, "doubled": 6}]

    def test_rejected_formula_raises(self) -> None:
        config = {"transformations": [{"type": "calculate", "target": "x", "formula": "__import__('os')"}]}

        with pytest.raises(ProcessorError):
            transform_records([{"a": 1}], config)

    def test_input_records_not_mutated(self) -> None:
        original = {"cost": 1}
        transform_records([original], {"transformations": [{"type": "rename", "source": "cost", "target": "price"}]})
        assert original == {"cost": 1}


class TestConvertType:
    """Tests for type conversion."""

    def test_number(self) -> None:
        assert convert_type("7", "number") == 7
        assert convert_type("abc", "number") is None

    def test_string(self) -> None:
        assert convert_type(None, "string") == ""
        assert convert_type(True, "string") == "true"

    def test_boolean(self) -> None:
        assert convert_type("yes", "boolean") is True
        assert convert_type("", "boolean") is False
        assert convert_type(0, "boolean") is False

    def test_date(self) -> None:
        assert convert_type("2024-03-01T10:00:00Z", "date") == "2024-03-01T10:00:00+00:00"
        assert convert_type(0, "date") == "1970-01-01T00:00:00+00:00"
        assert convert_type("not a date", "date") is None


class TestDeduplicate:
    """Tests for deduplication."""

    def test_first_seen_wins(self) -> None:
        records = [{"id": 1, "v": "a"}, {"id": 1, "v": "b"}, {"id": 2, "v": "c"}]

        assert deduplicate_records(records, {"uniqueField": "id"}) == [
            {"id": 1, "v": "a"},
            {"id": 2, "v": "c"},
        ]

    def test_keeps_first_occurrence(self) -> None:
        records = [{"id": 1, "v": "a"}, {"id": 2, "v": "b"}, {"id": 1, "v": "c"}]

        assert deduplicate_records(records, {"uniqueField": "id"}) == [
            {"id": 1, "v": "a"},
            {"id": 2, "v": "b"},
        ]

    def test_boolean_and_integer_keys_are_distinct(self) -> None:
        records = [{"id": 1, "v": "a"}, {"id": True, "v": "b"}, {"id": 0}, {"id": False}, {"id": True}]

        assert deduplicate_records(records, {"uniqueField": "id"}) == records[:4]

    def test_missing_keys_collapse_to_one(self) -> None:
        records = [{"v": 1}, {"v": 2}, {"id": 3}]
        assert deduplicate_records(records, {}) == [{"v": 1}, {"id": 3}]


class TestEnrich:
    """Tests for enrichment sources."""

    def test_static_values_merge(self) -> None:
        config = {"sources": [{"type": "static", "values": {"region": "eu"}}]}

        result = asyncio.run(enrich_records([{"id": 1}], config, _context()))

        assert result == [{"id": 1, "region": "eu"}]

    def test_http_source_renders_url(self) -> None:
        response = MagicMock()
        response.json.return_value = {"rating": 5}
        response.raise_for_status.return_value = None
        config = {"sources": [{"type": "http", "url": "https://api.example.com/items/{id}"}]}

        with patch("sitepipe.pipeline.processors.requests.get", return_value=response) as mock_get:
            result = asyncio.run(enrich_records([{"id": "a b"}], config, _context()))

        assert result == [{"id": "a b", "rating": 5}]
        assert mock_get.call_args[0][0] == "https://api.example.com/items/a%20b"

    def test_failing_source_is_skipped(self) -> None:
        def broken(record, source):
            raise RuntimeError("lookup down")

        config = {"sources": [{"type": "lookup"}, {"type": "static", "values": {"ok": True}}]}

        result = asyncio.run(enrich_records([{"id": 1}], config, _context(enrichers={"lookup": broken})))

        assert result == [{"id": 1, "ok": True}]

    def test_async_enricher(self) -> None:
        async def lookup(record, source):
            return {"double": record["id"] * 2}

        config = {"sources": [{"type": "lookup"}]}

        result = asyncio.run(enrich_records([{"id": 4}], config, _context(enrichers={"lookup": lookup})))

        assert result == [{"id": 4, "double": 8}]


class TestAnalyze:
    """Tests for AI analysis batches."""

    def test_batches_share_analysis(self, inference) -> None:
        records = [{"id": i} for i in range(12)]
        context = _context(inference=inference, settings=EngineSettings(ai_batch_size=5))

        result = asyncio.run(analyze_records(records, {"prompt": "Summarize"}, context))

        assert len(inference.calls) == 3
        assert all(record["_ai_analysis"] == "insight" for record in result)
        assert inference.calls[0]["system_prompt"] == "Summarize"
        assert inference.calls[0]["temperature"] == 0.3
        assert inference.calls[0]["prompt"].startswith("Data to analyze:\n")

    def test_failed_batch_passes_through(self, inference) -> None:
        """A failing batch is kept without analysis; other batches still run."""
        inference.fail_on = {1}
        records = [{"id": i} for i in range(4)]
        context = _context(inference=inference, settings=EngineSettings(ai_batch_size=2))

        result = asyncio.run(analyze_records(records, {}, context))

        assert result[:2] == [{"id": 0}, {"id": 1}]
        assert [r["_ai_analysis"] for r in result[2:]] == ["insight", "insight"]
        assert inference.calls[0]["system_prompt"] == "Analyze this data and extract insights"

    def test_without_backend_passes_through(self) -> None:
        records = [{"id": 1}]
        assert asyncio.run(analyze_records(records, {}, _context())) == records


@pytest.mark.parametrize("rules, value, keep", [
    ({"required": True}, None, False),
    ({"type": "number"}, "5", False),
    ({"type": "number"}, 5, True),
    ({"minLength": 3}, "ab", False),
    ({"minLength": 0}, "", True),
    ({"pattern": r"^\d+$"}, "123", True),
])
def test_validate_rules(rules, value, keep) -> None:
    records = [{"field": value}]
    result = validate_records(records, {"schema": {"field": rules}})
    assert (result == records) is keep


class TestRunProcessors:
    """Tests for the stage chain."""

    def test_stages_run_in_order(self) -> None:
        stages = [
            StageSpec("deduplicate", {"uniqueField": "id"}),
            StageSpec("filter", {"conditions": [{"field": "price", "operator": "greater_than", "value": 5}]}),
        ]
        records = [{"id": 1, "price": 10}, {"id": 1, "price": 1}, {"id": 2, "price": 3}]

        result = asyncio.run(run_processors(records, stages, _context()))

        assert result == [{"id": 1, "price": 10}]

    def test_failure_identifies_stage(self) -> None:
        stages = [
            StageSpec("filter", {}),
            StageSpec("validate", {"schema": {"x": {"type": "uuid"}}}),
        ]

        with pytest.raises(ProcessorError) as excinfo:
            asyncio.run(run_processors([{"x": 1}], stages, _context()))

        assert excinfo.value.stage_index == 1
        assert excinfo.value.stage_type == "validate"
        assert str(excinfo.value).startswith("processor #1 (validate)")

    def test_unknown_stage_passes_through(self) -> None:
        records = [{"id": 1}]
        result = asyncio.run(run_processors(records, [StageSpec("mystery", {})], _context()))
        assert result == records
