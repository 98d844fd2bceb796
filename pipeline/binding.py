"""
绑定 / 触发规则配置。

- 绑定规则：组件属性路径 -> 执行参数名（可带转换）；
- 触发规则：哪些属性路径变化需要重新执行数据源（白名单）。

注册表可在运行时完全清空和重配，默认规则只是预先注册的普通规则。
"""

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import Field

from pipeline.errors import MissingBindingError
from pipeline.models import CamelModel
from pipeline.processing import MISSING, resolve_path
from pipeline.settings import BindingSettings

logger = logging.getLogger(__name__)


# ── 命名转换 ──────────────────────────────────────────

def _join_comma(value: Any) -> Any:
    return ",".join(str(v) for v in value) if isinstance(value, (list, tuple)) else value


def _isoformat(value: Any) -> Any:
    return value.isoformat() if isinstance(value, (date, datetime)) else value


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "join_comma": _join_comma,
    "isoformat": _isoformat,
    "int": lambda v: int(float(v)),
    "float": float,
    "str": str,
    "bool": lambda v: v if isinstance(v, bool) else str(v).lower() in ("true", "1", "yes"),
}


# ── 规则模型 ──────────────────────────────────────────

class BindingRule(CamelModel):
    property_path: str
    param_name: str
    transform: Optional[Union[str, Callable[[Any], Any]]] = Field(default=None, exclude=True)
    required: bool = False
    description: str = ""

    def apply_transform(self, value: Any) -> Any:
        if self.transform is None:
            return value
        fn = TRANSFORMS.get(self.transform) if isinstance(self.transform, str) else self.transform
        if fn is None:
            logger.warning(f"未知的转换 '{self.transform}' ({self.property_path})")
            return value
        return fn(value)


class TriggerRule(CamelModel):
    property_path: str
    enabled: bool = True
    debounce_ms: int = 100
    description: str = ""


class ComponentBindingConfig(CamelModel):
    """按组件类型追加的规则。"""
    component_type: str
    additional_bindings: List[BindingRule] = Field(default_factory=list)
    additional_triggers: List[TriggerRule] = Field(default_factory=list)
    auto_bind_enabled: bool = False


class AutoBindMode(str, Enum):
    STRICT = "strict"  # 只绑定 include_properties
    LOOSE = "loose"  # 绑定全部规则，排除 exclude_properties
    CUSTOM = "custom"  # 只使用 custom_rules


class AutoBindConfig(CamelModel):
    enabled: bool = True
    mode: AutoBindMode = AutoBindMode.LOOSE
    include_properties: List[str] = Field(default_factory=list)
    exclude_properties: List[str] = Field(default_factory=list)
    custom_rules: List[BindingRule] = Field(default_factory=list)


def default_binding_rules() -> List[BindingRule]:
    return [
        BindingRule(property_path="base.deviceId", param_name="deviceId", description="设备 ID"),
        BindingRule(property_path="base.metricsList", param_name="metrics", transform="join_comma", description="指标列表"),
        BindingRule(property_path="component.startTime", param_name="startTime", transform="isoformat", description="开始时间"),
        BindingRule(property_path="component.endTime", param_name="endTime", transform="isoformat", description="结束时间"),
        BindingRule(property_path="component.dataType", param_name="dataType", description="数据类型"),
        BindingRule(property_path="component.refreshInterval", param_name="refreshInterval", transform="int", description="刷新间隔"),
        BindingRule(property_path="component.filterCondition", param_name="filter", description="过滤条件"),
    ]


def default_trigger_rules() -> List[TriggerRule]:
    return [
        TriggerRule(property_path="base.deviceId", debounce_ms=100, description="设备切换"),
        TriggerRule(property_path="base.metricsList", debounce_ms=200, description="指标变化"),
        TriggerRule(property_path="component.startTime", debounce_ms=300, description="时间范围"),
        TriggerRule(property_path="component.endTime", debounce_ms=300, description="时间范围"),
        TriggerRule(property_path="component.dataType", debounce_ms=150, description="数据类型"),
        TriggerRule(property_path="component.refreshInterval", enabled=False, description="刷新间隔不触发重新执行"),
        TriggerRule(property_path="component.filterCondition", debounce_ms=250, description="过滤条件"),
    ]


# ── 规则注册表 ────────────────────────────────────────

class BindingConfig:
    def __init__(self, register_defaults: bool = True):
        self._bindings: Dict[str, BindingRule] = {}
        self._triggers: Dict[str, TriggerRule] = {}
        self._component_configs: Dict[str, ComponentBindingConfig] = {}
        if register_defaults:
            for rule in default_binding_rules():
                self.register_binding_rule(rule)
            for rule in default_trigger_rules():
                self.register_trigger_rule(rule)

    @classmethod
    def from_settings(cls, settings: BindingSettings) -> "BindingConfig":
        config = cls(register_defaults=settings.use_defaults)
        for rule in settings.binding_rules:
            config.register_binding_rule(BindingRule(**rule.model_dump()))
        for rule in settings.trigger_rules:
            config.register_trigger_rule(TriggerRule(**rule.model_dump()))
        return config

    # ── 注册 / 移除 ──────────────────────────────────────

    def register_binding_rule(self, rule: BindingRule):
        self._bindings[rule.property_path] = rule

    def remove_binding_rule(self, property_path: str) -> bool:
        return self._bindings.pop(property_path, None) is not None

    def register_trigger_rule(self, rule: TriggerRule):
        self._triggers[rule.property_path] = rule

    def remove_trigger_rule(self, property_path: str) -> bool:
        return self._triggers.pop(property_path, None) is not None

    def clear_all_rules(self):
        self._bindings.clear()
        self._triggers.clear()
        self._component_configs.clear()
        logger.info("已清空全部绑定 / 触发规则")

    def set_component_config(self, component_type: str, overrides: ComponentBindingConfig | Dict[str, Any]):
        if not isinstance(overrides, ComponentBindingConfig):
            overrides = ComponentBindingConfig(component_type=component_type, **overrides)
        self._component_configs[component_type] = overrides

    def get_component_config(self, component_type: str | None) -> Optional[ComponentBindingConfig]:
        if not component_type:
            return None
        return self._component_configs.get(component_type)

    # ── 查询 ─────────────────────────────────────────────

    def get_binding_rule(self, property_path: str) -> Optional[BindingRule]:
        return self._bindings.get(property_path)

    def get_trigger_rule(self, property_path: str) -> Optional[TriggerRule]:
        return self._triggers.get(property_path)

    def get_all_binding_rules(self, component_type: str | None = None) -> List[BindingRule]:
        rules = list(self._bindings.values())
        component = self.get_component_config(component_type)
        if component:
            rules.extend(component.additional_bindings)
        return rules

    def get_all_trigger_rules(self, component_type: str | None = None) -> List[TriggerRule]:
        """只返回启用的触发规则。"""
        rules = [r for r in self._triggers.values() if r.enabled]
        component = self.get_component_config(component_type)
        if component:
            rules.extend(r for r in component.additional_triggers if r.enabled)
        return rules

    def should_trigger_data_source(self, property_path: str, component_type: str | None = None) -> bool:
        """先查全局规则，再查组件类型追加规则；不在任何启用规则中的属性不触发。"""
        rule = self._triggers.get(property_path)
        if rule is not None:
            return rule.enabled
        component = self.get_component_config(component_type)
        if component:
            for extra in component.additional_triggers:
                if extra.property_path == property_path:
                    return extra.enabled
        return False

    # ── 参数构建 ─────────────────────────────────────────

    def _resolve(
        self,
        rule: BindingRule,
        config: Dict[str, Any],
        fallback: Callable[[str], Any] | None,
        component_type: str | None,
    ) -> Any:
        value = resolve_path(config, rule.property_path)
        if value is MISSING and fallback is not None:
            value = fallback(rule.property_path)
        if value is MISSING or value is None:
            if rule.required:
                raise MissingBindingError(rule.property_path, rule.param_name, component_type)
            return MISSING
        try:
            return rule.apply_transform(value)
        except Exception as e:
            logger.warning(f"绑定转换失败 {rule.property_path}: {e}，使用原值")
            return value

    def _build(
        self,
        rules: List[BindingRule],
        config: Dict[str, Any],
        fallback: Callable[[str], Any] | None,
        component_type: str | None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for rule in rules:
            value = self._resolve(rule, config, fallback, component_type)
            if value is not MISSING:
                params[rule.param_name] = value
        return params

    def build_http_params(
        self,
        config: Dict[str, Any],
        component_type: str | None = None,
        fallback: Callable[[str], Any] | None = None,
    ) -> Dict[str, Any]:
        """
        按全部绑定规则从组件配置中取值，组装平铺参数表。
        fallback(property_path) 在配置缺值时提供兜底（如编辑器节点属性），返回 MISSING 表示仍缺失。
        required 规则缺值时抛出 MissingBindingError。
        """
        return self._build(self.get_all_binding_rules(component_type), config, fallback, component_type)

    def build_auto_bind_params(
        self,
        config: Dict[str, Any],
        auto_bind: AutoBindConfig,
        component_type: str | None = None,
        fallback: Callable[[str], Any] | None = None,
    ) -> Dict[str, Any]:
        if not auto_bind.enabled:
            return {}
        if auto_bind.mode == AutoBindMode.CUSTOM:
            rules = list(auto_bind.custom_rules)
        elif auto_bind.mode == AutoBindMode.STRICT:
            include = set(auto_bind.include_properties)
            rules = [r for r in self.get_all_binding_rules(component_type) if r.property_path in include]
        else:
            exclude = set(auto_bind.exclude_properties)
            rules = [r for r in self.get_all_binding_rules(component_type) if r.property_path not in exclude]
        return self._build(rules, config, fallback, component_type)

    def get_debug_info(self, component_type: str | None = None) -> Dict[str, Any]:
        component = self.get_component_config(component_type)
        return {
            "componentType": component_type,
            "bindingRules": [r.model_dump() for r in self.get_all_binding_rules(component_type)],
            "triggerRules": [r.model_dump() for r in self.get_all_trigger_rules(component_type)],
            "componentConfig": component.model_dump() if component else None,
            "triggerWhitelist": [r.property_path for r in self.get_all_trigger_rules(component_type)],
        }
