"""Tests for HTML record extraction used by the Playwright page agent."""

from __future__ import annotations

import pytest

from sitepipe.integrations.page_agent import coerce_field, extract_records

HTML = """
<ul>
  <li class="item" data-sku="A1">
    <a href="/p/1"><span class="name">Desk lamp</span></a>
    <span class="price">$1,299.50</span>
    <span class="stock">yes</span>
  </li>
  <li class="item" data-sku="B2">
    <a href="/p/2"><span class="name">Chair</span></a>
    <span class="price">n/a</span>
  </li>
  <li class="item"></li>
</ul>
"""

SELECTORS = {
    "container": "li.item",
    "fields": {
        "name": ".name",
        "price": ".price",
        "link": "a@href",
        "sku": "@data-sku",
        "in_stock": ".stock",
    },
}


class TestExtractRecords:
    """Tests for extract_records."""

    def test_extracts_one_record_per_container(self) -> None:
        records = extract_records(HTML, SELECTORS, {"price": "number", "in_stock": "boolean"})

        assert records == [
            {"name": "Desk lamp", "price": 1299.5, "link": "/p/1", "sku": "A1", "in_stock": True},
            {"name": "Chair", "price": None, "link": "/p/2", "sku": "B2", "in_stock": None},
        ]

    def test_without_container_reads_whole_document(self) -> None:
        records = extract_records(HTML, {"fields": {"first": ".name"}})
        assert records == [{"first": "Desk lamp"}]

    def test_no_matches(self) -> None:
        assert extract_records("<p>empty</p>", SELECTORS) == []


@pytest.mark.parametrize("value, field_type, expected", [
    (" text ", None, "text"),
    ("1,024", "integer", 1024),
    ("€3.5", "number", 3.5),
    ("abc", "number", None),
    ("On", "boolean", True),
    ("no", "boolean", False),
    (None, "number", None),
])
def test_coerce_field(value, field_type, expected) -> None:
    assert coerce_field(value, field_type) == expected
