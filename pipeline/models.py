"""
管线数据模型：规范化数据源配置、执行结果、组件配置快照。

字段在 Python 侧使用 snake_case，序列化时按 camelCase 别名输出，
以兼容编辑器保存的历史配置（componentId / dataSources / filterPath ...）。
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """当前时间戳（毫秒）。"""
    return int(time.time() * 1000)


# ── 枚举 ──────────────────────────────────────────────

class SourceType(str, Enum):
    STATIC = "static"
    HTTP = "http"
    JSON = "json"
    WEBSOCKET = "websocket"
    FILE = "file"
    SCRIPT = "script"
    DATA_SOURCE_BINDINGS = "data-source-bindings"


class MergeType(str, Enum):
    OBJECT = "object"
    ARRAY = "array"
    REPLACE = "replace"
    SELECT = "select"  # 按 selected_index 取一项
    SCRIPT = "script"  # 自定义 Python 合并脚本


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ── 规范化数据源配置 ──────────────────────────────────

class ItemSpec(CamelModel):
    type: str = SourceType.STATIC.value
    config: Dict[str, Any] = Field(default_factory=dict)


class ProcessingConfig(CamelModel):
    filter_path: str = "$"
    custom_script: Optional[str] = None
    default_value: Any = None


class DataItem(CamelModel):
    item: ItemSpec
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)


class MergeStrategy(CamelModel):
    type: MergeType = MergeType.OBJECT
    selected_index: Optional[int] = None
    script: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def coerce_shorthand(cls, data: Any) -> Any:
        # 历史配置里 mergeStrategy 可能直接是字符串，未知类型回退到 object
        if data is None:
            return {}
        if isinstance(data, str):
            data = {"type": data}
        if isinstance(data, dict):
            known = {m.value for m in MergeType}
            if data.get("type") not in known:
                data = {**data, "type": MergeType.OBJECT.value}
        return data


class DataSourceEntry(CamelModel):
    source_id: str
    data_items: List[DataItem] = Field(default_factory=list)
    merge_strategy: MergeStrategy = Field(default_factory=MergeStrategy)


class SourceConfiguration(CamelModel):
    """规范化后的组件数据源配置，执行链只处理这一种形态。"""
    component_id: str
    data_sources: List[DataSourceEntry] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    def get_source(self, source_id: str) -> Optional[DataSourceEntry]:
        for s in self.data_sources:
            if s.source_id == source_id:
                return s
        return None


# ── 执行结果 ──────────────────────────────────────────

class ExecutionResult(CamelModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)
    source_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_exclusive(self) -> "ExecutionResult":
        # 失败时 data 置空，成功时不带 error
        if self.success:
            self.error = None
            self.error_code = None
        else:
            self.data = None
        return self

    @classmethod
    def ok(cls, data: Any, source_id: str | None = None, **metadata) -> "ExecutionResult":
        return cls(success=True, data=data, source_id=source_id, metadata=metadata)

    @classmethod
    def fail(cls, error: str, error_code: str, source_id: str | None = None, **metadata) -> "ExecutionResult":
        return cls(success=False, error=error, error_code=error_code, source_id=source_id, metadata=metadata)


class SourceResult(CamelModel):
    """单个数据源合并后的结果。"""
    source_id: str
    success: bool
    data: Any = None
    item_count: int = 0
    failed_items: int = 0
    errors: List[str] = Field(default_factory=list)


class ChainResult(CamelModel):
    success: bool
    component_data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    source_results: List[SourceResult] = Field(default_factory=list)
    execution_time_ms: float = 0.0
    timestamp: int = Field(default_factory=now_ms)


class DataResult(CamelModel):
    """Bridge 对外返回的结果。"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)


# ── 组件需求 / 配置快照 ───────────────────────────────

class SimpleDataSource(CamelModel):
    """编辑器面板里的简化数据源写法。"""
    id: str
    type: str = SourceType.STATIC.value
    config: Dict[str, Any] = Field(default_factory=dict)
    filter_path: Optional[str] = None
    process_script: Optional[str] = None


class ComponentRequirement(CamelModel):
    component_id: str
    component_type: Optional[str] = None
    # 任意形态：简化列表 / 规范化列表 / 双层嵌套 / 历史格式，由 Bridge 识别
    data_sources: Any = Field(default_factory=list)
    # 绑定规则构建出来的运行时参数
    params: Dict[str, Any] = Field(default_factory=dict)


class WidgetConfiguration(CamelModel):
    """配置存储中的组件完整配置。"""
    component_type: Optional[str] = None
    base: Dict[str, Any] = Field(default_factory=dict)
    component: Dict[str, Any] = Field(default_factory=dict)
    data_source: Dict[str, Any] = Field(default_factory=dict)
    interaction: Dict[str, Any] = Field(default_factory=dict)


class EditorNode(CamelModel):
    id: str
    type: str = ""
    properties: Dict[str, Any] = Field(default_factory=dict)
