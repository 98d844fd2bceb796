"""
配置加载器：将 YAML 配置文件解析为 PipelineSettings。
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ── 缓存配置 ──────────────────────────────────────────

class WarehouseSettings(BaseModel):
    cache_expiry_ms: int = 5 * 60 * 1000
    max_memory_mb: float = 100
    max_items: int = 1000
    cleanup_interval_s: float = 60


# ── 变更传播配置 ──────────────────────────────────────

class FlowSettings(BaseModel):
    debounce_ms: int = 100


# ── HTTP 配置 ─────────────────────────────────────────

class HttpSettings(BaseModel):
    timeout_ms: int = 5000
    base_url: str = ""
    request_cache_ttl_ms: int = 2000
    headers: Dict[str, str] = Field(default_factory=dict)


# ── 绑定规则配置 ──────────────────────────────────────

class BindingRuleSettings(BaseModel):
    property_path: str
    param_name: str
    transform: Optional[str] = None  # 命名转换: join_comma / isoformat / int ...
    required: bool = False
    description: str = ""


class TriggerRuleSettings(BaseModel):
    property_path: str
    enabled: bool = True
    debounce_ms: int = 100
    description: str = ""


class BindingSettings(BaseModel):
    use_defaults: bool = True
    binding_rules: List[BindingRuleSettings] = Field(default_factory=list)
    trigger_rules: List[TriggerRuleSettings] = Field(default_factory=list)


# ── 顶层配置 ──────────────────────────────────────────

class PipelineSettings(BaseModel):
    warehouse: WarehouseSettings = Field(default_factory=WarehouseSettings)
    flow: FlowSettings = Field(default_factory=FlowSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    bindings: BindingSettings = Field(default_factory=BindingSettings)


# ── Loading ───────────────────────────────────────────

_CONFIG_SEARCH_PATHS = [
    "config/pipeline.yaml",
    "pipeline.yaml",
]


def find_settings_file() -> Optional[Path]:
    """按 WIDGET_PIPELINE_ROOT 查找配置文件，找不到返回 None。"""
    base = Path(os.getenv("WIDGET_PIPELINE_ROOT", "."))
    for p in _CONFIG_SEARCH_PATHS:
        path = base / p
        if path.is_file():
            return path
    return None


def deep_merge_dict(base: dict, update: dict) -> dict:
    """Deep merge two dictionaries; lists in update replace lists in base."""
    for k, v in update.items():
        if isinstance(v, dict) and k in base and isinstance(base[k], dict):
            base[k] = deep_merge_dict(base[k], v)
        else:
            base[k] = v
    return base


def load_settings(path: Optional[str | Path] = None) -> PipelineSettings:
    """
    加载配置：默认值 <- YAML 文件。
    文件不存在或为空时返回默认配置。
    """
    if path is None:
        path = find_settings_file()
    if path is None:
        logger.info("未找到管线配置文件，使用默认配置")
        return PipelineSettings()

    path = Path(path)
    with open(path, "r", encoding="utf-8") as fp:
        content: Dict[str, Any] = yaml.safe_load(fp) or {}

    raw = deep_merge_dict(copy.deepcopy(PipelineSettings().model_dump()), content)
    settings = PipelineSettings.model_validate(raw)
    logger.info(
        f"已加载管线配置 {path} "
        f"(binding_rules={len(settings.bindings.binding_rules)}, "
        f"trigger_rules={len(settings.bindings.trigger_rules)})"
    )
    return settings
