"""
类型 / 兼容性校验：在执行前检查 HTTP 配置、组件数据需求、数据类型映射。
与执行无关，只返回结构化结果，由调用方决定是否继续。
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from pipeline.models import now_ms

logger = logging.getLogger(__name__)


class CompatibilityLevel(str, Enum):
    COMPATIBLE = "compatible"
    WARNING = "warning"
    INCOMPATIBLE = "incompatible"


class CompatibilityResult(BaseModel):
    valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    level: CompatibilityLevel = CompatibilityLevel.COMPATIBLE
    check_type: str = ""
    affected_items: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)

    def finalize(self) -> "CompatibilityResult":
        """根据 errors / warnings 计算 level：错误总是优先于警告。"""
        self.valid = not self.errors
        if self.errors:
            self.level = CompatibilityLevel.INCOMPATIBLE
        elif self.warnings:
            self.level = CompatibilityLevel.WARNING
        else:
            self.level = CompatibilityLevel.COMPATIBLE
        return self


HTTP_METHODS = {"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"}
PARAM_DATA_TYPES = {"string", "number", "boolean", "json"}
VALUE_MODES = {"manual", "dropdown", "property", "component"}
MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 300000

# 源类型 -> 可兼容的目标类型
TYPE_COMPATIBILITY: Dict[str, List[str]] = {
    "string": ["string", "json", "any"],
    "number": ["number", "string", "any"],
    "boolean": ["boolean", "string", "any"],
    "json": ["json", "object", "array", "string", "any"],
    "object": ["object", "json", "any"],
    "array": ["array", "json", "any"],
    "any": ["string", "number", "boolean", "json", "object", "array", "any"],
}

_PLACEHOLDER_RE = re.compile(r"\{[^{}]+\}")


def _is_valid_url(url: str) -> bool:
    return url.startswith("/") or url.startswith("http://") or url.startswith("https://")


def _as_param_list(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, dict):
        return [{"key": k, "value": v} for k, v in value.items()]
    if isinstance(value, list):
        return [p for p in value if isinstance(p, dict)]
    return []


# ── HTTP 配置校验 ─────────────────────────────────────

def _check_params(
    result: CompatibilityResult,
    params: List[Dict[str, Any]],
    label: str,
    expected_channel: str,
):
    for i, param in enumerate(params):
        name = f"{label}[{i}]"
        if not param.get("key"):
            result.errors.append(f"{name}: parameter key is required")
            result.affected_items.append(name)
            continue
        name = f"{label}.{param['key']}"

        data_type = param.get("dataType", "string")
        if data_type not in PARAM_DATA_TYPES:
            result.errors.append(f"{name}: unsupported dataType '{data_type}'")
            result.affected_items.append(name)

        param_type = param.get("paramType")
        if param_type and param_type != expected_channel:
            result.warnings.append(f"{name}: paramType '{param_type}' used as {expected_channel} parameter")
            result.affected_items.append(name)

        if param.get("isDynamic") and not param.get("variableName"):
            result.errors.append(f"{name}: dynamic parameter requires variableName")
            result.affected_items.append(name)
            result.suggestions.append(f"Set variableName for {name} or disable isDynamic")

        value_mode = param.get("valueMode")
        if value_mode and value_mode not in VALUE_MODES:
            result.errors.append(f"{name}: unsupported valueMode '{value_mode}'")
            result.affected_items.append(name)


def check_http_config(config: Dict[str, Any]) -> CompatibilityResult:
    result = CompatibilityResult(check_type="http_config")
    if not isinstance(config, dict):
        result.errors.append("HTTP configuration must be an object")
        return result.finalize()

    url = config.get("url")
    if not url:
        result.errors.append("url is required")
        result.affected_items.append("url")
    elif not isinstance(url, str) or not _is_valid_url(url):
        result.errors.append(f"url must be a relative path or http(s) URL: {url!r}")
        result.affected_items.append("url")
        result.suggestions.append("Use '/api/...' or 'https://...'")

    method = config.get("method", "GET")
    if not isinstance(method, str) or method.upper() not in HTTP_METHODS:
        result.errors.append(f"unsupported HTTP method: {method!r}")
        result.affected_items.append("method")

    _check_params(result, _as_param_list(config.get("params")), "params", "query")
    _check_params(result, _as_param_list(config.get("headers")), "headers", "header")

    path_param = config.get("pathParameter")
    if isinstance(path_param, dict) and path_param.get("isDynamic"):
        if isinstance(url, str) and not _PLACEHOLDER_RE.search(url):
            result.warnings.append("pathParameter is dynamic but url has no {placeholder}")
            result.affected_items.append("pathParameter")
            result.suggestions.append("Add a {placeholder} segment to the url")

    timeout = config.get("timeout")
    if timeout is not None:
        if not isinstance(timeout, (int, float)) or not MIN_TIMEOUT_MS <= timeout <= MAX_TIMEOUT_MS:
            result.warnings.append(f"timeout should be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS} ms")
            result.affected_items.append("timeout")

    return result.finalize()


# ── 组件数据需求校验 ──────────────────────────────────

def check_component_requirement(requirement: Dict[str, Any]) -> CompatibilityResult:
    """
    requirement 形如:
        {componentId, staticParams: [{key, name, type}], dataSources: [{key, supportedTypes}]}
    """
    result = CompatibilityResult(check_type="component_requirement")
    if not isinstance(requirement, dict):
        result.errors.append("requirement must be an object")
        return result.finalize()

    if not requirement.get("componentId"):
        result.errors.append("componentId is required")
        result.affected_items.append("componentId")

    for i, param in enumerate(requirement.get("staticParams") or []):
        for field in ("key", "name", "type"):
            if not isinstance(param, dict) or not param.get(field):
                result.errors.append(f"staticParams[{i}] missing {field}")
                result.affected_items.append(f"staticParams[{i}]")

    sources = requirement.get("dataSources") or []
    if not sources:
        result.warnings.append("component declares no dataSources")
        result.suggestions.append("Declare at least one data source for components that render data")

    seen = set()
    for i, ds in enumerate(sources):
        if not isinstance(ds, dict) or not ds.get("key"):
            result.errors.append(f"dataSources[{i}] missing key")
            result.affected_items.append(f"dataSources[{i}]")
            continue
        if ds["key"] in seen:
            result.errors.append(f"duplicate data source key '{ds['key']}'")
            result.affected_items.append(f"dataSources.{ds['key']}")
        seen.add(ds["key"])
        if not ds.get("supportedTypes"):
            result.errors.append(f"dataSources.{ds['key']} missing supportedTypes")
            result.affected_items.append(f"dataSources.{ds['key']}")

    return result.finalize()


# ── 数据类型兼容性 ────────────────────────────────────

def check_data_type_compatibility(source_type: str, target_type: str) -> CompatibilityResult:
    result = CompatibilityResult(check_type="data_type")
    compatible = TYPE_COMPATIBILITY.get(source_type)
    if compatible is None:
        result.warnings.append(f"unknown source data type '{source_type}'")
    elif target_type not in compatible:
        result.errors.append(f"'{source_type}' cannot be used as '{target_type}'")
        result.suggestions.append(f"Compatible targets: {', '.join(compatible)}")
    return result.finalize()


def batch_check(items: List[Dict[str, Any]]) -> Dict[str, CompatibilityResult]:
    """
    批量校验。items: [{id, checkType: http|component|dataType, config | source/target}]
    """
    results: Dict[str, CompatibilityResult] = {}
    for index, entry in enumerate(items):
        key = str(entry.get("id", index))
        check_type = entry.get("checkType")
        if check_type == "http":
            results[key] = check_http_config(entry.get("config"))
        elif check_type == "component":
            results[key] = check_component_requirement(entry.get("config"))
        elif check_type == "dataType":
            results[key] = check_data_type_compatibility(entry.get("source", ""), entry.get("target", ""))
        else:
            r = CompatibilityResult(check_type=str(check_type))
            r.errors.append(f"unknown checkType: {check_type!r}")
            results[key] = r.finalize()
    invalid = sum(1 for r in results.values() if not r.valid)
    if invalid:
        logger.info(f"批量校验完成: {len(results)} 项, {invalid} 项不兼容")
    return results
