"""
FastAPI 路由：暴露组件注册、配置变更、执行与缓存查询接口。
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from pipeline.binding import BindingRule, TriggerRule
from pipeline.event_bus import ConfigChangeEvent, ConfigSection, EventContext, EventSource
from pipeline.models import ComponentRequirement, WidgetConfiguration
from pipeline.normalizer import normalize, validate_standard_format
from pipeline.validator import check_component_requirement, check_http_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# 这些全局引用会在 main.py 中注入
_bridge = None
_flow = None
_bus = None
_binding = None
_store = None


def init_api(bridge, flow, bus, binding, store):
    """注入全局依赖（由 main.py 调用）。"""
    global _bridge, _flow, _bus, _binding, _store
    _bridge = bridge
    _flow = flow
    _bus = bus
    _binding = binding
    _store = store


class SectionUpdate(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)
    source: EventSource = EventSource.USER
    should_trigger_execution: Optional[bool] = None


class BindingRuleRequest(BaseModel):
    property_path: str
    param_name: str
    transform: Optional[str] = None  # 命名转换
    required: bool = False
    description: str = ""


class NormalizeRequest(BaseModel):
    component_id: str = "unknown"
    config: Any = None


def _require_component(component_id: str):
    if not _flow.is_registered(component_id):
        raise HTTPException(status_code=404, detail=f"Component {component_id} not registered")


# ── 组件注册 ──────────────────────────────────────────

@router.post("/components/{component_id}")
async def register_component(component_id: str, config: WidgetConfiguration) -> dict:
    _store.set_configuration(component_id, config)
    state = _flow.register_component(component_id, config)
    return state.model_dump()


@router.get("/components/{component_id}")
async def get_component(component_id: str) -> dict:
    _require_component(component_id)
    return {
        "state": _flow.get_state(component_id).model_dump(),
        "config": _flow.get_component_config(component_id),
    }


@router.delete("/components/{component_id}")
async def unregister_component(component_id: str) -> dict:
    _require_component(component_id)
    _flow.unregister_component(component_id)
    _store.remove(component_id)
    _bridge.clear_component_cache(component_id)
    return {"message": "Component unregistered", "component_id": component_id}


@router.put("/components/{component_id}/config/{section}")
async def update_component_section(component_id: str, section: ConfigSection, update: SectionUpdate) -> dict:
    """更新组件配置的一个 section，并通过事件总线通知变更流程。"""
    _require_component(component_id)
    old = _store.get_configuration(component_id)
    old_section = old.to_dict().get(section.value) if old else None

    event = ConfigChangeEvent(
        component_id=component_id,
        component_type=old.component_type if old else None,
        section=section,
        old_config=old_section,
        new_config=update.values,
        source=update.source,
        context=EventContext(
            trigger_component=component_id,
            should_trigger_execution=update.should_trigger_execution,
            changed_fields=list(update.values.keys()),
        ),
    )
    await _bus.emit_before_change(event)
    _store.update_section(component_id, section.value, update.values)
    await _bus.emit_config_change(event)
    await _bus.emit_after_change(event)
    return _flow.get_state(component_id).model_dump()


# ── 执行 / 数据 ───────────────────────────────────────

@router.post("/components/{component_id}/execute")
async def execute_component(component_id: str, requirement: Optional[ComponentRequirement] = None) -> dict:
    if requirement is None:
        _require_component(component_id)
        result = await _flow.trigger_data_source(component_id, reason="api")
        if result is None:
            return {"success": False, "skipped": True}
        return result.model_dump(by_alias=True)
    requirement = requirement.model_copy(update={"component_id": component_id})
    result = await _bridge.execute_component(requirement)
    return result.model_dump(by_alias=True)


@router.get("/components/{component_id}/data")
async def get_component_data(component_id: str) -> dict:
    data = _bridge.get_component_data(component_id)
    return {"component_id": component_id, "data": data, "cached": data is not None}


@router.delete("/components/{component_id}/cache")
async def clear_component_cache(component_id: str) -> dict:
    _bridge.clear_component_cache(component_id)
    return {"message": "Cache cleared", "component_id": component_id}


@router.delete("/cache")
async def clear_all_cache() -> dict:
    _bridge.clear_all_cache()
    return {"message": "All cache cleared"}


@router.get("/metrics")
async def get_metrics() -> dict:
    return {
        "warehouse": _bridge.get_warehouse_metrics().model_dump(),
        "storage": _bridge.get_storage_stats().model_dump(),
        "bridge": _bridge.get_stats(),
        "events": _bus.get_statistics().model_dump(),
    }


# ── 规范化 / 校验 ─────────────────────────────────────

@router.post("/normalize")
async def normalize_config(request: NormalizeRequest) -> dict:
    config = normalize(request.config, request.component_id)
    return {"config": config.to_dict(), "errors": validate_standard_format(config)}


@router.post("/validate/http")
async def validate_http(config: Dict[str, Any]) -> dict:
    return check_http_config(config).model_dump()


@router.post("/validate/component")
async def validate_component(requirement: Dict[str, Any]) -> dict:
    return check_component_requirement(requirement).model_dump()


# ── 绑定 / 触发规则 ───────────────────────────────────

@router.get("/bindings")
async def get_binding_rules(component_type: Optional[str] = None) -> dict:
    return _binding.get_debug_info(component_type)


@router.post("/bindings/rules")
async def register_binding_rule(request: BindingRuleRequest) -> dict:
    _binding.register_binding_rule(BindingRule(**request.model_dump()))
    return request.model_dump()


@router.post("/bindings/triggers")
async def register_trigger_rule(rule: TriggerRule) -> dict:
    _binding.register_trigger_rule(rule)
    return rule.model_dump()


@router.delete("/bindings/triggers")
async def remove_trigger_rule(property_path: str) -> dict:
    if not _binding.remove_trigger_rule(property_path):
        raise HTTPException(status_code=404, detail=f"Trigger rule {property_path} not found")
    return {"message": "Trigger rule removed", "property_path": property_path}


@router.get("/bindings/whitelist")
async def get_trigger_whitelist(component_type: Optional[str] = None) -> List[str]:
    return _flow.get_trigger_whitelist(component_type)
