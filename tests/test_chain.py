import asyncio

import httpx

from pipeline.chain import ExecutionChain, ItemOutcome, merge_items, recommend_strategy, validate_merge_strategy
from pipeline.executors import SourceExecutor, create_default_registry
from pipeline.models import (
    DataItem,
    DataSourceEntry,
    ExecutionResult,
    ItemSpec,
    MergeStrategy,
    MergeType,
    ProcessingConfig,
    SourceConfiguration,
)
from tests.helpers import json_item, mock_transport, single_source, static_item


def make_chain(transport=None) -> ExecutionChain:
    return ExecutionChain(create_default_registry(transport=transport))


def execute(config, chain=None):
    return asyncio.run((chain or make_chain()).execute_data_processing_chain(config))


# ── 合并策略 ──────────────────────────────────────────

def test_object_merge_combines_dicts():
    result = execute(single_source([json_item({"a": 1}), json_item({"b": 2})]))
    assert result.success
    assert result.component_data == {"s1": {"a": 1, "b": 2}}


def test_object_merge_keys_non_dict_items_by_index():
    merged = merge_items(
        [ItemOutcome(success=True, value={"a": 1}), ItemOutcome(success=True, value=5)],
        MergeStrategy(type="object"),
    )
    assert merged == {"a": 1, "item_1": 5}
    assert merge_items([ItemOutcome(success=True, value=[1])], MergeStrategy()) == [1]


def test_array_merge_keeps_objects_as_elements():
    result = execute(single_source([json_item({"a": 1}), json_item({"b": 2})], merge="array"))
    assert result.component_data == {"s1": [{"a": 1}, {"b": 2}]}


def test_array_merge_flattens():
    result = execute(single_source([json_item([1, 2]), json_item(3), static_item(None)], merge="array"))
    assert result.component_data["s1"] == [1, 2, 3]


def test_replace_merge_takes_last_successful():
    broken = DataItem(item=ItemSpec(type="json", config={"jsonString": "{bad"}))
    result = execute(single_source([json_item({"v": 1}), json_item({"v": 2}), broken], merge="replace"))
    assert result.component_data["s1"] == {"v": 2}


def test_select_merge():
    config = single_source([json_item("a"), json_item("b")])
    config.data_sources[0].merge_strategy = MergeStrategy(type="select", selected_index=1)
    assert execute(config).component_data["s1"] == "b"

    config.data_sources[0].merge_strategy = MergeStrategy(type="select", selected_index=9)
    assert execute(config).component_data["s1"] == "a"


def test_script_merge_and_fallback():
    config = single_source([json_item({"n": 1}), json_item({"n": 2})])
    config.data_sources[0].merge_strategy = MergeStrategy(type="script", script="result = sum(i['n'] for i in items)")
    assert execute(config).component_data["s1"] == 3

    config.data_sources[0].merge_strategy = MergeStrategy(type="script", script="result = items[5]")
    assert execute(config).component_data["s1"] == {"n": 2}


def test_unknown_merge_type_defaults_to_object():
    assert MergeStrategy.model_validate({"type": "zip"}).type == MergeType.OBJECT
    assert MergeStrategy.model_validate("array").type == MergeType.ARRAY


def test_merge_strategy_validation_and_recommendation():
    assert validate_merge_strategy(MergeStrategy(type="select"), 2) == ["select strategy requires selectedIndex"]
    assert validate_merge_strategy(MergeStrategy(type="select", selected_index=3), 2)
    assert validate_merge_strategy(MergeStrategy(type="script"), 1) == ["script strategy requires script"]
    assert recommend_strategy([{"a": 1}]) == MergeType.REPLACE
    assert recommend_strategy([{"a": 1}, {"b": 2}]) == MergeType.OBJECT
    assert recommend_strategy([[1], 2]) == MergeType.ARRAY


# ── 数据项处理 ────────────────────────────────────────

def test_filter_path_projection():
    payload = {"data": {"items": [{"v": 1}, {"v": 2}]}}
    result = execute(single_source([json_item(payload, filter_path="$.data.items[1].v")]))
    assert result.component_data["s1"] == 2

    bare = execute(single_source([json_item(payload, filter_path="data.items")]))
    assert bare.component_data["s1"] == [{"v": 1}, {"v": 2}]


def test_filter_path_without_match_uses_default():
    result = execute(single_source([json_item({"a": 1}, filter_path="$.missing", default_value={"fallback": True})]))
    assert result.component_data["s1"] == {"fallback": True}


def test_custom_script_and_failed_script_keeps_data():
    ok = execute(single_source([json_item({"t": 20}, custom_script="result = {'f': data['t'] * 9 / 5 + 32}")]))
    assert ok.component_data["s1"] == {"f": 68.0}

    failed = execute(single_source([json_item({"t": 20}, custom_script="result = data['nope']")]))
    assert failed.component_data["s1"] == {"t": 20}


def test_failed_item_contributes_default_and_chain_still_succeeds():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    http_item = DataItem(
        item=ItemSpec(type="http", config={"url": "http://api.test/x"}),
        processing=ProcessingConfig(default_value={"offline": True}),
    )
    config = SourceConfiguration(
        component_id="c1",
        data_sources=[
            DataSourceEntry(source_id="remote", data_items=[http_item]),
            DataSourceEntry(source_id="local", data_items=[static_item({"ok": 1})]),
        ],
    )
    result = execute(config, make_chain(mock_transport(refuse)))

    assert result.success
    assert result.component_data == {"remote": {"offline": True}, "local": {"ok": 1}}
    remote = result.source_results[0]
    assert remote.failed_items == 1 and not remote.success
    assert result.source_results[1].success


def test_unsupported_type_yields_none():
    config = single_source([DataItem(item=ItemSpec(type="ftp", config={}))])
    chain = make_chain()
    assert any("unsupported type" in w for w in chain.validate_configuration(config))
    result = execute(config, chain)
    assert result.success
    assert result.component_data == {"s1": None}


def test_sources_keep_declaration_order():
    config = SourceConfiguration(
        component_id="c1",
        data_sources=[DataSourceEntry(source_id=sid, data_items=[static_item(sid)]) for sid in ("z", "a", "m")],
    )
    assert list(execute(config).component_data) == ["z", "a", "m"]


# ── 并发 ──────────────────────────────────────────────

class SlowExecutor(SourceExecutor):
    type = "slow"

    def __init__(self):
        self.active = 0
        self.max_active = 0

    async def _execute(self, config, context):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return ExecutionResult.ok(config.get("value"))


def test_items_across_sources_run_concurrently():
    slow = SlowExecutor()
    chain = make_chain()
    chain.registry.register(slow)

    def item(v):
        return DataItem(item=ItemSpec(type="slow", config={"value": v}))

    config = SourceConfiguration(
        component_id="c1",
        data_sources=[
            DataSourceEntry(source_id="a", data_items=[item(1), item(2)], merge_strategy=MergeStrategy(type="array")),
            DataSourceEntry(source_id="b", data_items=[item(3)]),
        ],
    )
    result = execute(config, chain)
    assert slow.max_active == 3
    assert result.component_data == {"a": [1, 2], "b": 3}
