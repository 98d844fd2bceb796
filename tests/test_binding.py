from datetime import datetime

import pytest

from pipeline.binding import (
    AutoBindConfig,
    BindingConfig,
    BindingRule,
    ComponentBindingConfig,
    TriggerRule,
)
from pipeline.errors import MissingBindingError
from pipeline.processing import MISSING
from pipeline.settings import BindingRuleSettings, BindingSettings, TriggerRuleSettings


CONFIG = {
    "base": {"deviceId": "dev-1", "metricsList": ["cpu", "mem"]},
    "component": {
        "startTime": datetime(2024, 1, 2, 3, 4, 5),
        "refreshInterval": "30",
        "title": "ignored",
    },
}


def test_default_rules_build_params():
    params = BindingConfig().build_http_params(CONFIG)
    assert params == {
        "deviceId": "dev-1",
        "metrics": "cpu,mem",
        "startTime": "2024-01-02T03:04:05",
        "refreshInterval": 30,
    }


def test_default_triggers():
    binding = BindingConfig()
    assert binding.should_trigger_data_source("base.deviceId")
    assert not binding.should_trigger_data_source("component.refreshInterval")
    assert not binding.should_trigger_data_source("component.title")
    assert "component.refreshInterval" not in [r.property_path for r in binding.get_all_trigger_rules()]


def test_failed_transform_keeps_raw_value():
    binding = BindingConfig(register_defaults=False)
    binding.register_binding_rule(BindingRule(property_path="component.size", param_name="size", transform="int"))
    assert binding.build_http_params({"component": {"size": "large"}}) == {"size": "large"}


def test_callable_and_unknown_transform():
    binding = BindingConfig(register_defaults=False)
    binding.register_binding_rule(BindingRule(property_path="base.name", param_name="name", transform=str.upper))
    binding.register_binding_rule(BindingRule(property_path="base.kind", param_name="kind", transform="nope"))
    assert binding.build_http_params({"base": {"name": "abc", "kind": "k"}}) == {"name": "ABC", "kind": "k"}


def test_required_binding_missing_raises():
    binding = BindingConfig(register_defaults=False)
    binding.register_binding_rule(BindingRule(property_path="base.siteId", param_name="siteId", required=True))

    with pytest.raises(MissingBindingError) as exc_info:
        binding.build_http_params({"base": {}}, component_type="map")
    assert exc_info.value.property_path == "base.siteId"
    assert exc_info.value.param_name == "siteId"

    assert binding.build_http_params({"base": {"siteId": 0}}) == {"siteId": 0}


def test_fallback_supplies_missing_values():
    binding = BindingConfig(register_defaults=False)
    binding.register_binding_rule(BindingRule(property_path="base.deviceId", param_name="deviceId", required=True))

    def fallback(path):
        return "from-node" if path == "base.deviceId" else MISSING

    assert binding.build_http_params({}, fallback=fallback) == {"deviceId": "from-node"}


def test_component_type_rules():
    binding = BindingConfig()
    binding.set_component_config("chart", {
        "additionalBindings": [{"propertyPath": "component.chartType", "paramName": "chart"}],
        "additionalTriggers": [{"propertyPath": "component.chartType"}, {"propertyPath": "component.theme", "enabled": False}],
    })

    assert binding.should_trigger_data_source("component.chartType", "chart")
    assert not binding.should_trigger_data_source("component.chartType", "table")
    assert not binding.should_trigger_data_source("component.theme", "chart")
    params = binding.build_http_params({"component": {"chartType": "bar"}}, "chart")
    assert params["chart"] == "bar"
    assert isinstance(binding.get_component_config("chart"), ComponentBindingConfig)


def test_global_trigger_rule_takes_precedence():
    binding = BindingConfig()
    binding.register_trigger_rule(TriggerRule(property_path="component.theme", enabled=False))
    binding.set_component_config("chart", ComponentBindingConfig(
        component_type="chart",
        additional_triggers=[TriggerRule(property_path="component.theme")],
    ))
    assert not binding.should_trigger_data_source("component.theme", "chart")


def test_clear_all_rules():
    binding = BindingConfig()
    binding.set_component_config("chart", {"additionalTriggers": [{"propertyPath": "component.x"}]})
    binding.clear_all_rules()

    assert binding.get_all_binding_rules("chart") == []
    assert binding.get_all_trigger_rules("chart") == []
    assert not binding.should_trigger_data_source("base.deviceId")
    assert binding.build_http_params(CONFIG) == {}


def test_remove_rules():
    binding = BindingConfig()
    assert binding.remove_trigger_rule("base.deviceId")
    assert not binding.remove_trigger_rule("base.deviceId")
    assert binding.remove_binding_rule("base.deviceId")
    assert "deviceId" not in binding.build_http_params(CONFIG)


def test_auto_bind_modes():
    binding = BindingConfig()
    strict = AutoBindConfig(mode="strict", include_properties=["base.deviceId"])
    assert binding.build_auto_bind_params(CONFIG, strict) == {"deviceId": "dev-1"}

    loose = AutoBindConfig(mode="loose", exclude_properties=["base.metricsList", "component.startTime"])
    assert binding.build_auto_bind_params(CONFIG, loose) == {"deviceId": "dev-1", "refreshInterval": 30}

    custom = AutoBindConfig(mode="custom", custom_rules=[BindingRule(property_path="component.title", param_name="t")])
    assert binding.build_auto_bind_params(CONFIG, custom) == {"t": "ignored"}

    assert binding.build_auto_bind_params(CONFIG, AutoBindConfig(enabled=False)) == {}


def test_from_settings():
    settings = BindingSettings(
        use_defaults=False,
        binding_rules=[BindingRuleSettings(property_path="base.tenantId", param_name="tenant", transform="str")],
        trigger_rules=[TriggerRuleSettings(property_path="base.tenantId")],
    )
    binding = BindingConfig.from_settings(settings)
    assert binding.build_http_params({"base": {"tenantId": 7}}) == {"tenant": "7"}
    assert binding.should_trigger_data_source("base.tenantId")
    assert not binding.should_trigger_data_source("base.deviceId")


def test_debug_info_lists_whitelist():
    info = BindingConfig().get_debug_info()
    assert "base.deviceId" in info["triggerWhitelist"]
    assert "component.refreshInterval" not in info["triggerWhitelist"]
    assert info["componentConfig"] is None
    assert all("transform" not in rule for rule in info["bindingRules"])
