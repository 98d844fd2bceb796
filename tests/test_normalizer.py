import pytest

from pipeline.models import MergeType, SourceConfiguration
from pipeline.normalizer import (
    ConfigShape,
    TargetFormat,
    convert_from_standard,
    detect_shape,
    normalize,
    normalize_multiple,
    validate_standard_format,
)

CANONICAL = {
    "componentId": "comp1",
    "dataSources": [
        {
            "sourceId": "dataSource1",
            "dataItems": [
                {
                    "item": {"type": "json", "config": {"jsonString": '{"a": 1}'}},
                    "processing": {"filterPath": "$"},
                }
            ],
            "mergeStrategy": {"type": "object"},
        }
    ],
    "createdAt": 1700000000000,
    "updatedAt": 1700000000000,
}


# ── 规范形态 ──────────────────────────────────────────

def test_canonical_model_is_returned_as_is():
    config = SourceConfiguration.model_validate(CANONICAL)
    assert normalize(config, "other") is config


def test_canonical_dict_is_idempotent():
    first = normalize(CANONICAL, "ignored")
    assert first == SourceConfiguration.model_validate(CANONICAL)
    assert normalize(first) == first
    assert normalize(first.to_dict(), "ignored") == first
    assert first.component_id == "comp1"


@pytest.mark.parametrize(
    "raw",
    [
        None,
        42,
        "plain text",
        [1, 2, 3],
        {},
        {"foo": "bar"},
        {"dataSources": []},
        {"componentId": 5, "dataSources": [{"sourceId": "x", "dataItems": [{"item": {"type": 1}, "processing": {}}]}]},
        {"dataSources": [{"sourceId": "s", "dataItems": [{"item": {"type": "static", "config": "oops"}, "processing": {}}]}]},
    ],
)
def test_normalize_is_total(raw):
    result = normalize(raw, "c9")
    assert isinstance(result, SourceConfiguration)
    assert len(result.data_sources) >= 1
    assert validate_standard_format(result) == []


# ── 形态识别与转换 ────────────────────────────────────

def test_simple_editor_shape():
    raw = {
        "dataSources": [
            {
                "sourceId": "s1",
                "dataItems": [{"type": "static", "config": {"data": {"v": 1}}, "filterPath": "$.v"}],
            }
        ]
    }
    assert detect_shape(raw) == ConfigShape.SIMPLE_EDITOR

    result = normalize(raw, "c1")
    assert result.component_id == "c1"
    source = result.data_sources[0]
    assert source.source_id == "s1"
    assert source.merge_strategy.type == MergeType.OBJECT
    item = source.data_items[0]
    assert item.item.type == "static"
    assert item.item.config == {"data": {"v": 1}}
    assert item.processing.filter_path == "$.v"


def test_item_with_null_processing_keeps_source_id():
    raw = {
        "componentId": "c1",
        "dataSources": [{
            "sourceId": "s1",
            "dataItems": [{"item": {"type": "static", "config": {"data": {"a": 1}}}, "processing": None}],
        }],
    }
    assert detect_shape(raw) == ConfigShape.SIMPLE_EDITOR

    result = normalize(raw, "c1")
    source = result.data_sources[0]
    assert source.source_id == "s1"
    assert source.data_items[0].item.type == "static"
    assert source.data_items[0].item.config == {"data": {"a": 1}}


def test_failed_canonical_conversion_tries_lower_priority_shapes():
    raw = dict(CANONICAL, createdAt="yesterday")
    assert detect_shape(raw) == ConfigShape.CANONICAL

    result = normalize(raw, "ignored")
    assert result.component_id == "comp1"
    assert [s.source_id for s in result.data_sources] == ["dataSource1"]
    assert result.data_sources[0].data_items[0].item.type == "json"


def test_import_export_shape():
    raw = {"dataSourceConfig": {"dataItems": [{"type": "json", "config": {"jsonString": "[]"}}]}}
    assert detect_shape(raw) == ConfigShape.IMPORT_EXPORT

    result = normalize(raw, "c1")
    assert [s.source_id for s in result.data_sources] == ["main"]
    assert result.data_sources[0].data_items[0].item.config == {"jsonString": "[]"}


def test_keyed_result_shape():
    raw = {
        "temperature": {"type": "static", "data": {"t": 20}, "metadata": {}},
        "api": {"type": "http", "data": {"url": "/api/x"}, "metadata": {}},
    }
    assert detect_shape(raw) == ConfigShape.KEYED_RESULT

    result = normalize(raw, "c1")
    by_id = {s.source_id: s for s in result.data_sources}
    assert by_id["temperature"].data_items[0].item.config == {"data": {"t": 20}}
    assert by_id["api"].data_items[0].item.type == "http"
    assert by_id["api"].data_items[0].item.config == {"url": "/api/x"}


def test_single_item_shape():
    raw = {"type": "http", "config": {"url": "/api/x"}, "filterPath": "$.data", "processScript": "result = data"}
    assert detect_shape(raw) == ConfigShape.SINGLE_ITEM

    result = normalize(raw, "c1")
    item = result.data_sources[0].data_items[0]
    assert result.data_sources[0].source_id == "main"
    assert item.item.type == "http"
    assert item.processing.filter_path == "$.data"
    assert item.processing.custom_script == "result = data"


def test_generic_fallback_wraps_input_as_static():
    result = normalize([1, 2, 3], "c1")
    item = result.data_sources[0].data_items[0]
    assert detect_shape([1, 2, 3]) == ConfigShape.GENERIC
    assert item.item.type == "static"
    assert item.item.config == {"data": [1, 2, 3]}


def test_canonical_wins_over_simple_editor():
    assert detect_shape(CANONICAL) == ConfigShape.CANONICAL


def test_normalize_multiple():
    result = normalize_multiple({"a": CANONICAL, "b": 1})
    assert result["a"].component_id == "comp1"
    assert result["b"].component_id == "b"


# ── 反向转换 / 校验 ───────────────────────────────────

def test_convert_to_import_export_drops_processing():
    config = normalize(CANONICAL)
    exported = convert_from_standard(config, TargetFormat.IMPORT_EXPORT)
    items = exported["dataSourceConfig"]["dataItems"]
    assert items == [{"type": "json", "config": {"jsonString": '{"a": 1}'}}]


def test_convert_to_keyed_result_uses_index_suffix():
    raw = {
        "componentId": "c1",
        "dataSources": [
            {
                "sourceId": "s1",
                "dataItems": [
                    {"item": {"type": "static", "config": {"data": 1}}, "processing": {}},
                    {"item": {"type": "static", "config": {"data": 2}}, "processing": {}},
                ],
            }
        ],
    }
    keyed = convert_from_standard(normalize(raw), "keyed_result")
    assert set(keyed) == {"s1_0", "s1_1"}
    assert keyed["s1_1"]["data"] == 2


def test_convert_to_simple_editor_keeps_items():
    config = normalize(CANONICAL)
    simple = convert_from_standard(config, TargetFormat.SIMPLE_EDITOR)
    assert normalize(simple, "comp1").data_sources == config.data_sources


def test_validate_standard_format_errors():
    errors = validate_standard_format({"dataSources": [{"dataItems": [{"type": "static"}]}]})
    assert "Missing componentId" in errors
    assert "dataSources[0] missing sourceId" in errors
    assert "dataSources[0].dataItems[0] must contain item and processing" in errors

    assert validate_standard_format({}) == ["Missing componentId", "dataSources must be an array"]
    assert validate_standard_format(CANONICAL) == []
