"""
组件运行时状态定义。
变更传播流程中每个组件的状态机：
    UNREGISTERED -> REGISTERED -> (CONFIGURING <-> DEBOUNCING -> EXECUTING) -> REGISTERED
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class ComponentPhase(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    CONFIGURING = "configuring"  # 正在应用配置变更
    DEBOUNCING = "debouncing"  # 已排期，等待防抖窗口结束
    EXECUTING = "executing"  # 数据源执行中


class PropertyChange(BaseModel):
    """一次属性变更，供属性监听器使用。"""
    component_id: str
    property_path: str
    old_value: Any = None
    new_value: Any = None
    timestamp: float = 0.0


class ComponentState(BaseModel):
    """组件的运行时状态。"""
    component_id: str
    component_type: Optional[str] = None
    phase: ComponentPhase = ComponentPhase.REGISTERED
    message: Optional[str] = None
    last_updated: float = 0.0

    # 等待执行的触发属性
    pending_paths: List[str] = Field(default_factory=list)
    executions: int = 0
    skipped_executions: int = 0
    last_error: Optional[str] = None
