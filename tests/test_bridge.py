import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx

from pipeline.bridge import DataBridge, config_hash
from pipeline.chain import ExecutionChain
from pipeline.config_store import ConfigurationStore, PropertyResolver
from pipeline.executors import create_default_registry
from pipeline.models import ChainResult, ComponentRequirement
from pipeline.warehouse import DataWarehouse
from tests.helpers import mock_transport, single_source, static_item


def make_bridge(store=None, transport=None):
    store = store if store is not None else ConfigurationStore()
    chain = ExecutionChain(create_default_registry(transport=transport), PropertyResolver(store))
    return DataBridge(chain, DataWarehouse(), store)


def execute(bridge, requirement):
    return asyncio.run(bridge.execute_component(requirement))


SENSOR = {"temperature": 25, "humidity": 60}


def test_execute_component_end_to_end():
    bridge = make_bridge()
    requirement = ComponentRequirement(
        component_id="comp1",
        data_sources=[{
            "id": "dataSource1",
            "type": "json",
            "config": {"jsonString": '{"temperature": 25, "humidity": 60}'},
            "filterPath": "$",
        }],
    )
    result = execute(bridge, requirement)

    assert result.success
    assert result.data == {"dataSource1": SENSOR}
    assert bridge.get_component_data("comp1") == {"dataSource1": SENSOR}
    assert bridge.warehouse.get_data_source_data("comp1", "dataSource1") == SENSOR


def test_execute_accepts_source_configuration_and_dict():
    bridge = make_bridge()
    config = single_source([static_item({"a": 1})], component_id="c9")
    assert execute(bridge, config).data == {"s1": {"a": 1}}

    as_dict = {"componentId": "c10", "dataSources": [{"id": "x", "type": "json", "config": {"jsonString": "[1]"}}]}
    assert execute(bridge, as_dict).data == {"x": [1]}


def test_simple_source_filter_path_and_script():
    bridge = make_bridge()
    requirement = ComponentRequirement(
        component_id="c1",
        data_sources=[{
            "id": "s",
            "type": "static",
            "config": {"data": {"payload": {"v": 4}}},
            "filterPath": "payload.v",
            "processScript": "result = data * 2",
        }],
    )
    assert execute(bridge, requirement).data == {"s": 8}


def test_failed_source_is_isolated():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    bridge = make_bridge(transport=mock_transport(refuse))
    requirement = ComponentRequirement(
        component_id="c1",
        data_sources=[
            {
                "sourceId": "remote",
                "dataItems": [{
                    "item": {"type": "http", "config": {"url": "http://api.test/x"}},
                    "processing": {"filterPath": "$", "defaultValue": []},
                }],
            },
            {
                "sourceId": "local",
                "dataItems": [{"item": {"type": "static", "config": {"data": {"ok": True}}}, "processing": {}}],
            },
        ],
    )
    result = execute(bridge, requirement)
    assert result.success
    assert result.data == {"remote": [], "local": {"ok": True}}


def test_store_snapshot_overrides_requirement():
    store = ConfigurationStore()
    store.set_configuration("c1", {
        "componentType": "chart",
        "dataSource": {"dataSources": [{"id": "live", "type": "static", "config": {"data": 2}}]},
    })
    bridge = make_bridge(store)
    stale = ComponentRequirement(
        component_id="c1",
        data_sources=[{"id": "old", "type": "static", "config": {"data": 1}}],
    )
    assert execute(bridge, stale).data == {"live": 2}


def test_empty_snapshot_keeps_requirement():
    store = ConfigurationStore()
    store.set_configuration("c1", {"base": {"title": "t"}})
    bridge = make_bridge(store)
    requirement = ComponentRequirement(component_id="c1", data_sources=[{"id": "s", "type": "static", "config": {"data": 1}}])
    assert execute(bridge, requirement).data == {"s": 1}


def test_double_nested_sources_are_unwrapped():
    bridge = make_bridge()
    inner = [{
        "sourceId": "inner",
        "dataItems": [{"item": {"type": "static", "config": {"data": "v"}}, "processing": {}}],
    }]
    requirement = ComponentRequirement(component_id="c1", data_sources=[{"dataSources": inner}])
    assert execute(bridge, requirement).data == {"inner": "v"}


def test_source_named_complete_is_not_overwritten():
    bridge = make_bridge()
    requirement = ComponentRequirement(
        component_id="c1",
        data_sources=[
            {"id": "complete", "type": "static", "config": {"data": "user"}},
            {"id": "other", "type": "static", "config": {"data": 2}},
        ],
    )
    result = execute(bridge, requirement)
    assert result.data == {"complete": "user", "other": 2}
    assert bridge.get_component_data("c1") == {"complete": "user", "other": 2}

    config = bridge.to_source_configuration(requirement)
    assert any("collides" in w for w in bridge.chain.validate_configuration(config))


def test_callbacks_are_isolated():
    bridge = make_bridge()
    received = []

    def broken(component_id, data):
        raise RuntimeError("listener failure")

    bridge.on_data_update(broken)
    unsubscribe = bridge.on_data_update(lambda cid, data: received.append((cid, data)))

    requirement = ComponentRequirement(component_id="c1", data_sources=[{"id": "s", "type": "static", "config": {"data": 1}}])
    assert execute(bridge, requirement).success
    assert received == [("c1", {"s": 1})]

    unsubscribe()
    execute(bridge, requirement)
    assert len(received) == 1


def test_chain_failure_is_not_cached():
    warehouse = DataWarehouse()
    warehouse.store_component_data("c1", "s", "stale")
    chain = MagicMock()
    chain.execute_data_processing_chain = AsyncMock(return_value=ChainResult(success=False, error="boom"))
    bridge = DataBridge(chain, warehouse)

    result = execute(bridge, ComponentRequirement(component_id="c1", data_sources=[]))
    assert not result.success
    assert result.error == "boom"
    assert bridge.get_component_data("c1") is None


def test_chain_exception_never_escapes():
    chain = MagicMock()
    chain.execute_data_processing_chain = AsyncMock(side_effect=RuntimeError("exploded"))
    bridge = DataBridge(chain, DataWarehouse())

    result = execute(bridge, {"componentId": "c1", "dataSources": []})
    assert not result.success
    assert "exploded" in result.error
    assert bridge.get_stats()["failures"] == 1


def test_config_hash_ignores_timestamps():
    a = single_source([static_item(1)])
    b = a.model_copy(update={"created_at": 1, "updated_at": 2})
    assert config_hash(a) == config_hash(b)
    assert config_hash(a) != config_hash(single_source([static_item(2)]))


def test_destroy_clears_warehouse():
    bridge = make_bridge()
    execute(bridge, ComponentRequirement(component_id="c1", data_sources=[{"id": "s", "type": "static", "config": {"data": 1}}]))
    bridge.destroy()
    assert bridge.get_component_data("c1") is None
    assert bridge.get_stats()["callbacks"] == 0
