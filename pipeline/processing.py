"""
数据处理：路径提取 / JSONPath 过滤 / 字段映射 / 自定义脚本。
执行器拿到原始数据后，按数据项的 processing 配置在这里做投影和转换。
"""

import json
import logging
import math
import re
from functools import lru_cache
from typing import Any, Dict

from jsonpath_ng.ext import parse as jp_parse

from pipeline.errors import ScriptExecutionError
from pipeline.models import ProcessingConfig

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


# 区分 "路径不存在" 和 "值为 None"
MISSING = _Missing()

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def convert_value(value: Any, data_type: str | None) -> Any:
    """将参数值按 dataType 转换（string / number / boolean / json）。"""
    if value is None or not data_type:
        return value
    try:
        if data_type == "number":
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value
            num = float(str(value))
            return int(num) if num.is_integer() else num
        elif data_type == "boolean":
            if isinstance(value, bool):
                return value
            return str(value).lower() in ("true", "1", "yes")
        elif data_type == "json":
            return json.loads(value) if isinstance(value, str) else value
        return value if isinstance(value, str) else str(value)
    except (ValueError, TypeError):
        logger.warning(f"类型转换失败: {value!r} -> {data_type}")
        return value


# ── 路径提取 ──────────────────────────────────────────

def resolve_path(data: Any, path: str, default: Any = MISSING) -> Any:
    """
    按点路径取值，支持 a.b[0].c。
    任一段不存在时返回 default（默认 MISSING）。
    """
    if not path:
        return data
    current = data
    for name, index in _SEGMENT_RE.findall(path):
        if index:
            if not isinstance(current, list):
                return default
            i = int(index)
            if i >= len(current):
                return default
            current = current[i]
        elif isinstance(current, dict):
            if name not in current:
                return default
            current = current[name]
        elif isinstance(current, list) and name.isdigit() and int(name) < len(current):
            current = current[int(name)]
        else:
            return default
    return current


def extract_by_path(data: Any, path: str) -> Any:
    """点路径取值，缺失返回 None。"""
    return resolve_path(data, path, default=None)


# ── JSONPath 过滤 ─────────────────────────────────────

@lru_cache(maxsize=256)
def _compile_jsonpath(expr: str):
    return jp_parse(expr)


def _normalize_filter_path(filter_path: str) -> str:
    path = filter_path.strip()
    if path.startswith("$"):
        return path
    return "$." + path.lstrip(".")


def apply_filter_path(data: Any, filter_path: str | None) -> Any:
    """
    应用 filterPath 投影。'$' 或空为原样返回；无匹配返回 None；
    多个匹配（通配符）返回值列表。
    """
    if not filter_path or filter_path.strip() == "$":
        return data
    if data is None:
        return None
    try:
        matches = _compile_jsonpath(_normalize_filter_path(filter_path)).find(data)
    except Exception as e:
        logger.warning(f"filterPath 解析错误 '{filter_path}': {e}")
        return None
    if not matches:
        logger.debug(f"filterPath '{filter_path}' 无匹配")
        return None
    if len(matches) == 1:
        return matches[0].value
    return [m.value for m in matches]


def validate_filter_path(filter_path: str) -> bool:
    if not filter_path or filter_path.strip() == "$":
        return True
    try:
        _compile_jsonpath(_normalize_filter_path(filter_path))
        return True
    except Exception:
        return False


# ── 字段转换 (path -> mapping -> filter) ──────────────

def _apply_mapping(data: Any, mapping: Dict[str, str]) -> Any:
    if isinstance(data, list):
        return [_apply_mapping(row, mapping) for row in data]
    if not isinstance(data, dict):
        return data
    return {target: extract_by_path(data, source) for target, source in mapping.items()}


def _apply_filter(data: Any, conditions: Dict[str, Any]) -> Any:
    if not isinstance(data, list):
        return data
    return [
        row for row in data
        if isinstance(row, dict) and all(row.get(k) == v for k, v in conditions.items())
    ]


def apply_transform(data: Any, transform: Dict[str, Any] | None) -> Any:
    """按固定顺序应用 transform：path → mapping → filter。"""
    if not transform:
        return data
    result = data
    if transform.get("path"):
        result = extract_by_path(result, transform["path"])
    if transform.get("mapping"):
        result = _apply_mapping(result, transform["mapping"])
    if transform.get("filter"):
        result = _apply_filter(result, transform["filter"])
    return result


# ── Script ────────────────────────────────────────────

def run_script(code: str, variables: Dict[str, Any], name: str = "script") -> Any:
    """
    执行用户 Python 脚本。
    variables 作为脚本可见变量注入；脚本通过给 `result` 赋值输出结果，
    未赋值时返回 None。
    """
    namespace: Dict[str, Any] = {"json": json, "math": math, **variables}
    try:
        compiled = compile(code, f"<{name}>", "exec")
        exec(compiled, namespace)
    except Exception as e:
        logger.error(f"Error executing script {name}:\n{code}")
        raise ScriptExecutionError(name, e) from e
    return namespace.get("result")


# ── 数据项处理入口 ────────────────────────────────────

def process_item(raw: Any, processing: ProcessingConfig, name: str = "item") -> Any:
    """
    对单个数据项的原始结果做 filterPath + customScript 处理。
    空结果回退到 defaultValue；脚本失败时保留脚本前的数据。
    """
    if raw is None or raw == {}:
        return processing.default_value if processing.default_value is not None else raw

    data = apply_filter_path(raw, processing.filter_path)

    if processing.custom_script:
        try:
            scripted = run_script(processing.custom_script, {"data": data}, name=f"{name}_script")
            if scripted is not None:
                data = scripted
        except ScriptExecutionError as e:
            logger.warning(f"[{name}] customScript 失败，保留原数据: {e.cause}")

    if data is None:
        return processing.default_value
    return data
