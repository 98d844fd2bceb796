"""
变更传播流程：监听组件配置变更，按触发规则防抖后调用 DataBridge 重新执行。

每个组件一个状态机（见 pipeline.state.ComponentPhase）：
- 只有命中启用触发规则的属性变化才会排期执行；
- 同一组件的多次变更在防抖窗口内合并为一次执行，新变更重置定时器；
- 执行中再次触发直接跳过（不排队），保证同一组件最多一个执行在进行。
"""

import asyncio
import copy
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pipeline.binding import AutoBindConfig, AutoBindMode, BindingConfig, BindingRule, TriggerRule
from pipeline.config_store import NodeStore
from pipeline.errors import MissingBindingError
from pipeline.event_bus import ConfigChangeEvent, ConfigEventBus, ConfigSection, EventType
from pipeline.models import ComponentRequirement, DataResult, WidgetConfiguration
from pipeline.processing import MISSING
from pipeline.settings import FlowSettings
from pipeline.state import ComponentPhase, ComponentState, PropertyChange

logger = logging.getLogger(__name__)

PropertyWatcher = Callable[[PropertyChange], None]


class DebounceTimer:
    """可取消的一次性定时器；到期后在事件循环中启动回调协程。"""

    def __init__(self, delay_s: float, callback: Callable[[], Awaitable[Any]]):
        self.delay_s = delay_s
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def start(self):
        """启动或重置定时器。"""
        self.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.delay_s, self._fire)

    def _fire(self):
        self._handle = None
        self.task = asyncio.get_running_loop().create_task(self._callback())

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class _Registration:
    def __init__(self, component_id: str, config: WidgetConfiguration):
        self.component_id = component_id
        self.config: Dict[str, Any] = config.to_dict()
        self.state = ComponentState(
            component_id=component_id,
            component_type=config.component_type,
            last_updated=time.time(),
        )
        self.timer: Optional[DebounceTimer] = None
        self.executing = False


def _flatten(prefix: str, value: Any, out: Dict[str, Any]):
    if isinstance(value, dict) and value:
        for k, v in value.items():
            _flatten(f"{prefix}.{k}", v, out)
    else:
        out[prefix] = value


def diff_leaf_paths(section: str, old: Dict[str, Any], new: Dict[str, Any]) -> List[tuple]:
    """比较 section 前后配置，返回变化的叶子属性 (path, old, new)。"""
    old_flat: Dict[str, Any] = {}
    new_flat: Dict[str, Any] = {}
    for k, v in (old or {}).items():
        _flatten(f"{section}.{k}", v, old_flat)
    for k, v in (new or {}).items():
        _flatten(f"{section}.{k}", v, new_flat)

    changes = []
    for path in list(old_flat.keys()) + [p for p in new_flat if p not in old_flat]:
        before = old_flat.get(path, MISSING)
        after = new_flat.get(path, MISSING)
        if before is MISSING or after is MISSING or before != after:
            changes.append((path, None if before is MISSING else before, None if after is MISSING else after))
    return changes


class ChangeFlow:
    def __init__(
        self,
        bridge,
        binding: BindingConfig,
        nodes: NodeStore | None = None,
        settings: FlowSettings | None = None,
    ):
        self.bridge = bridge
        self.binding = binding
        self.nodes = nodes
        self.settings = settings or FlowSettings()
        self._registrations: Dict[str, _Registration] = {}
        self._watchers: List[PropertyWatcher] = []

    # ── 注册 ─────────────────────────────────────────────

    def register_component(self, component_id: str, config: WidgetConfiguration | Dict[str, Any]) -> ComponentState:
        if not isinstance(config, WidgetConfiguration):
            config = WidgetConfiguration.model_validate(config)
        existing = self._registrations.get(component_id)
        if existing is not None:
            # 重复注册沿用原登记，进行中的执行标记随之保留
            if existing.timer:
                existing.timer.cancel()
            existing.config = config.to_dict()
            existing.state.component_type = config.component_type
            if existing.executing:
                logger.info(f"[{component_id}] 重新注册时已有执行进行中，沿用执行状态")
            else:
                self._set_phase(existing, ComponentPhase.REGISTERED, "re-registered")
            return existing.state
        reg = _Registration(component_id, config)
        self._registrations[component_id] = reg
        self._set_phase(reg, ComponentPhase.REGISTERED, "registered")
        return reg.state

    def unregister_component(self, component_id: str) -> bool:
        reg = self._registrations.pop(component_id, None)
        if reg is None:
            return False
        if reg.timer:
            reg.timer.cancel()
        reg.state.phase = ComponentPhase.UNREGISTERED
        logger.info(f"[{component_id}] State -> {ComponentPhase.UNREGISTERED.value}")
        return True

    def is_registered(self, component_id: str) -> bool:
        return component_id in self._registrations

    def get_state(self, component_id: str) -> Optional[ComponentState]:
        reg = self._registrations.get(component_id)
        return reg.state.model_copy() if reg else None

    def get_component_config(self, component_id: str) -> Optional[Dict[str, Any]]:
        reg = self._registrations.get(component_id)
        return copy.deepcopy(reg.config) if reg else None

    def _set_phase(self, reg: _Registration, phase: ComponentPhase, message: str | None = None):
        reg.state.phase = phase
        reg.state.message = message
        reg.state.last_updated = time.time()
        logger.info(f"[{reg.component_id}] State -> {phase.value}: {message}")

    def _idle_phase(self, reg: _Registration):
        if self._registrations.get(reg.component_id) is not reg:
            return
        if reg.executing:
            self._set_phase(reg, ComponentPhase.EXECUTING, "execution in flight")
        elif reg.timer and reg.timer.pending:
            self._set_phase(reg, ComponentPhase.DEBOUNCING, "waiting for debounce window")
        else:
            self._set_phase(reg, ComponentPhase.REGISTERED, "idle")

    # ── 配置变更 ─────────────────────────────────────────

    def _should_trigger(self, path: str, component_type: str | None) -> bool:
        # 叶子路径及其祖先路径（不含 section 本身）任一命中即触发
        parts = path.split(".")
        for end in range(len(parts), 1, -1):
            if self.binding.should_trigger_data_source(".".join(parts[:end]), component_type):
                return True
        return False

    def _notify_watchers(self, change: PropertyChange):
        for watcher in list(self._watchers):
            try:
                watcher(change)
            except Exception as e:
                logger.error(f"[{change.component_id}] 属性监听器异常: {e}", exc_info=True)

    def update_component_config(
        self,
        component_id: str,
        section: ConfigSection | str,
        new_config: Dict[str, Any],
    ) -> List[str]:
        """合并 section 配置，返回命中触发规则的属性路径（非空时已排期执行）。"""
        reg = self._registrations.get(component_id)
        if reg is None:
            logger.warning(f"[{component_id}] 组件未注册，忽略配置更新")
            return []

        section = ConfigSection(section).value
        self._set_phase(reg, ComponentPhase.CONFIGURING, f"updating {section}")

        old_section = reg.config.get(section) or {}
        merged = {**old_section, **copy.deepcopy(new_config or {})}
        reg.config[section] = merged

        now = time.time()
        component_type = reg.state.component_type
        triggered = []
        for path, before, after in diff_leaf_paths(section, old_section, merged):
            self._notify_watchers(PropertyChange(
                component_id=component_id,
                property_path=path,
                old_value=before,
                new_value=after,
                timestamp=now,
            ))
            if self._should_trigger(path, component_type):
                triggered.append(path)

        if triggered:
            self.schedule_execution(component_id, triggered)
        else:
            logger.debug(f"[{component_id}] {section} 变更未命中触发规则")
            self._idle_phase(reg)
        return triggered

    def schedule_execution(self, component_id: str, paths: List[str] | None = None):
        """防抖排期：新的排期会重置定时器，窗口内只执行最后一次。"""
        reg = self._registrations.get(component_id)
        if reg is None:
            return
        for path in paths or []:
            if path not in reg.state.pending_paths:
                reg.state.pending_paths.append(path)
        if reg.timer is None:
            reg.timer = DebounceTimer(
                self.settings.debounce_ms / 1000,
                lambda: self._run_scheduled(component_id),
            )
        reg.timer.start()
        self._set_phase(reg, ComponentPhase.DEBOUNCING, f"scheduled by {reg.state.pending_paths}")

    async def _run_scheduled(self, component_id: str):
        reg = self._registrations.get(component_id)
        if reg is None:
            return
        paths = reg.state.pending_paths
        reg.state.pending_paths = []
        await self.execute_data_source(component_id, paths)

    # ── 执行 ─────────────────────────────────────────────

    def _auto_bind_config(self, reg: _Registration) -> Optional[AutoBindConfig]:
        data_source = reg.config.get("dataSource") or {}
        component = reg.config.get("component") or {}
        raw = data_source.get("autoBind") or component.get("autoBind")
        if isinstance(raw, dict):
            return AutoBindConfig.model_validate(raw)
        component_config = self.binding.get_component_config(reg.state.component_type)
        if component_config and component_config.auto_bind_enabled:
            return AutoBindConfig(mode=AutoBindMode.LOOSE)
        return None

    def build_params(self, component_id: str) -> Dict[str, Any]:
        """按绑定规则构建执行参数；required 缺值时抛出 MissingBindingError。"""
        reg = self._registrations[component_id]
        component_type = reg.state.component_type
        fallback = None
        if self.nodes is not None:
            def fallback(path: str) -> Any:
                return self.nodes.get_property(component_id, path)

        auto_bind = self._auto_bind_config(reg)
        if auto_bind is not None:
            return self.binding.build_auto_bind_params(reg.config, auto_bind, component_type, fallback)
        return self.binding.build_http_params(reg.config, component_type, fallback)

    async def execute_data_source(self, component_id: str, trigger_paths: List[str] | None = None) -> Optional[DataResult]:
        """执行组件数据源；已有执行进行中时跳过并返回 None。"""
        reg = self._registrations.get(component_id)
        if reg is None:
            logger.warning(f"[{component_id}] 组件未注册，无法执行")
            return None
        if reg.executing:
            reg.state.skipped_executions += 1
            logger.info(f"[{component_id}] 已有执行进行中，跳过本次触发 {trigger_paths or []}")
            return None

        reg.executing = True
        self._set_phase(reg, ComponentPhase.EXECUTING, f"triggered by {trigger_paths or ['manual']}")
        try:
            data_source = reg.config.get("dataSource")
            if not data_source:
                logger.info(f"[{component_id}] 没有数据源配置，跳过执行")
                return None

            params = self.build_params(component_id)
            requirement = ComponentRequirement(
                component_id=component_id,
                component_type=reg.state.component_type,
                data_sources=copy.deepcopy(data_source),
                params=params,
            )
            result = await self.bridge.execute_component(requirement)
            reg.state.executions += 1
            reg.state.last_error = None if result.success else result.error
            return result
        except MissingBindingError as e:
            logger.error(f"[{component_id}] 绑定参数缺失，未执行: {e}")
            reg.state.last_error = str(e)
            return DataResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f"[{component_id}] 执行失败: {e}", exc_info=True)
            reg.state.last_error = str(e)
            return DataResult(success=False, error=str(e))
        finally:
            reg.executing = False
            self._idle_phase(reg)

    async def trigger_data_source(self, component_id: str, reason: str = "manual") -> Optional[DataResult]:
        """手动触发，绕过触发规则和防抖。"""
        logger.info(f"[{component_id}] 手动触发执行: {reason}")
        return await self.execute_data_source(component_id, [reason])

    async def wait_idle(self):
        """等待已启动的排期执行全部完成。"""
        tasks = [
            reg.timer.task for reg in self._registrations.values()
            if reg.timer and reg.timer.task and not reg.timer.task.done()
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def shutdown(self):
        for reg in self._registrations.values():
            if reg.timer:
                reg.timer.cancel()

    # ── 监听器 / 规则辅助 ─────────────────────────────────

    def add_property_watcher(self, watcher: PropertyWatcher) -> Callable[[], None]:
        self._watchers.append(watcher)

        def remove():
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return remove

    def get_trigger_whitelist(self, component_type: str | None = None) -> List[str]:
        return [r.property_path for r in self.binding.get_all_trigger_rules(component_type)]

    def add_trigger_property(self, property_path: str, debounce_ms: int = 100, description: str = ""):
        self.binding.register_trigger_rule(
            TriggerRule(property_path=property_path, debounce_ms=debounce_ms, description=description)
        )

    def add_binding_rule(self, property_path: str, param_name: str, transform=None, required: bool = False):
        self.binding.register_binding_rule(
            BindingRule(property_path=property_path, param_name=param_name, transform=transform, required=required)
        )

    # ── 事件总线接入 ─────────────────────────────────────

    def attach_event_bus(self, bus: ConfigEventBus) -> Callable[[], None]:
        """
        订阅 config-changed：应用配置变更；
        dataSource 变更或事件明确要求执行时，无论触发规则都排期执行。
        """

        def on_config_changed(event: ConfigChangeEvent):
            if not self.is_registered(event.component_id):
                return
            self.update_component_config(event.component_id, event.section, event.new_config)
            if event.section == ConfigSection.DATA_SOURCE or event.context.should_trigger_execution:
                self.schedule_execution(event.component_id, [event.section.value])

        return bus.on_config_change(EventType.CONFIG_CHANGED, on_config_changed)
