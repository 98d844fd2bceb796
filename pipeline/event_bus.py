"""
配置变更事件总线：纯粹的发布 / 订阅分发。

- 每个事件总会触发 `config-changed`，再按 section 追加派生类型；
- 全局过滤器按优先级从高到低执行，任一返回 False 即取消本次分发，过滤器自身异常视为放行；
- 匹配到的处理器并发执行（all-settled），单个处理器失败只计入统计。
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, Field

from pipeline.models import CamelModel, now_ms

logger = logging.getLogger(__name__)


# ── 事件定义 ──────────────────────────────────────────

class ConfigSection(str, Enum):
    BASE = "base"
    COMPONENT = "component"
    DATA_SOURCE = "dataSource"
    INTERACTION = "interaction"


class EventSource(str, Enum):
    USER = "user"
    SYSTEM = "system"
    API = "api"
    IMPORT = "import"


class EventType(str, Enum):
    CONFIG_CHANGED = "config-changed"
    DATA_SOURCE_CHANGED = "data-source-changed"
    COMPONENT_PROPS_CHANGED = "component-props-changed"
    BASE_CONFIG_CHANGED = "base-config-changed"
    INTERACTION_CHANGED = "interaction-changed"
    BEFORE_CONFIG_CHANGE = "before-config-change"
    AFTER_CONFIG_CHANGE = "after-config-change"


SECTION_EVENT_TYPES: Dict[ConfigSection, EventType] = {
    ConfigSection.DATA_SOURCE: EventType.DATA_SOURCE_CHANGED,
    ConfigSection.COMPONENT: EventType.COMPONENT_PROPS_CHANGED,
    ConfigSection.BASE: EventType.BASE_CONFIG_CHANGED,
    ConfigSection.INTERACTION: EventType.INTERACTION_CHANGED,
}


class EventContext(CamelModel):
    trigger_component: Optional[str] = None
    should_trigger_execution: Optional[bool] = None
    changed_fields: List[str] = Field(default_factory=list)


class ConfigChangeEvent(CamelModel):
    component_id: str
    component_type: Optional[str] = None
    section: ConfigSection
    old_config: Optional[Dict[str, Any]] = None
    new_config: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_ms)
    source: EventSource = EventSource.USER
    context: EventContext = Field(default_factory=EventContext)


Handler = Callable[[ConfigChangeEvent], Union[None, Awaitable[None]]]
Predicate = Callable[[ConfigChangeEvent], bool]


class EventFilter(BaseModel):
    name: str
    predicate: Predicate
    priority: int = 0


class BusStatistics(BaseModel):
    events_emitted: int = 0
    events_filtered: int = 0
    handlers_executed: int = 0
    errors: int = 0


def ignore_system_updates(event: ConfigChangeEvent) -> bool:
    """系统自身发出且明确不需要执行的更新不再分发，防止回环。"""
    return event.source != EventSource.SYSTEM or event.context.should_trigger_execution is not False


# ── 事件总线 ──────────────────────────────────────────

class ConfigEventBus:
    def __init__(self, install_default_filters: bool = True):
        self._handlers: Dict[str, Set[Handler]] = {}
        self._filters: List[EventFilter] = []
        self.stats = BusStatistics()
        if install_default_filters:
            self.add_filter("ignore-system-updates", ignore_system_updates, priority=100)

    def on_config_change(self, event_type: EventType | str, handler: Handler) -> Callable[[], None]:
        """订阅事件类型，返回取消订阅函数。"""
        key = EventType(event_type).value
        self._handlers.setdefault(key, set()).add(handler)

        def unsubscribe():
            handlers = self._handlers.get(key)
            if handlers is None:
                return
            handlers.discard(handler)
            if not handlers:
                del self._handlers[key]

        return unsubscribe

    def add_filter(self, name: str, predicate: Predicate, priority: int = 0):
        self.remove_filter(name)
        self._filters.append(EventFilter(name=name, predicate=predicate, priority=priority))
        self._filters.sort(key=lambda f: f.priority, reverse=True)

    def remove_filter(self, name: str) -> bool:
        before = len(self._filters)
        self._filters = [f for f in self._filters if f.name != name]
        return len(self._filters) < before

    def handler_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(EventType(event_type).value, ()))

    # ── 分发 ─────────────────────────────────────────────

    def _passes_filters(self, event: ConfigChangeEvent) -> bool:
        for f in self._filters:
            try:
                if f.predicate(event) is False:
                    logger.debug(f"[{event.component_id}] 事件被过滤器 {f.name} 拦截")
                    return False
            except Exception as e:
                logger.warning(f"事件过滤器 {f.name} 异常，放行: {e}")
        return True

    @staticmethod
    def event_types_for(event: ConfigChangeEvent) -> List[EventType]:
        types = [EventType.CONFIG_CHANGED]
        derived = SECTION_EVENT_TYPES.get(event.section)
        if derived:
            types.append(derived)
        return types

    async def _run_handler(self, handler: Handler, event: ConfigChangeEvent, event_type: EventType):
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
            self.stats.handlers_executed += 1
        except Exception as e:
            self.stats.errors += 1
            logger.error(f"[{event.component_id}] {event_type.value} 处理器异常: {e}", exc_info=True)

    async def _dispatch(self, event: ConfigChangeEvent, event_types: List[EventType]):
        self.stats.events_emitted += 1
        if not self._passes_filters(event):
            self.stats.events_filtered += 1
            return

        jobs = [
            self._run_handler(handler, event, event_type)
            for event_type in event_types
            for handler in list(self._handlers.get(event_type.value, ()))
        ]
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)

    async def emit_config_change(self, event: ConfigChangeEvent):
        await self._dispatch(event, self.event_types_for(event))

    async def emit_before_change(self, event: ConfigChangeEvent):
        await self._dispatch(event, [EventType.BEFORE_CONFIG_CHANGE])

    async def emit_after_change(self, event: ConfigChangeEvent):
        await self._dispatch(event, [EventType.AFTER_CONFIG_CHANGE])

    def get_statistics(self) -> BusStatistics:
        return self.stats.model_copy()

    def clear(self):
        """移除全部处理器和过滤器，统计清零。"""
        self._handlers.clear()
        self._filters.clear()
        self.stats = BusStatistics()
