"""
配置格式规范化：把各种历史 / 变体形态的数据源配置统一为 SourceConfiguration。

识别顺序固定：
    1. CANONICAL      已是规范形态（dataItems[].item + processing）
    2. SIMPLE_EDITOR  dataSources[].sourceId + dataItems，但数据项没有 item/processing 包装
    3. IMPORT_EXPORT  dataSourceConfig.dataItems 平铺数组
    4. KEYED_RESULT   {key: {type, data, metadata}} 执行器结果形态
    5. SINGLE_ITEM    顶层 {type, config}
    6. GENERIC        兜底：整个输入作为一个 static 数据项
"""

import logging
from enum import Enum
from typing import Any, Dict, List

from pydantic import ValidationError

from pipeline.models import (
    DataItem,
    DataSourceEntry,
    ItemSpec,
    MergeStrategy,
    ProcessingConfig,
    SourceConfiguration,
    SourceType,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_ID = "main"


class ConfigShape(str, Enum):
    CANONICAL = "canonical"
    SIMPLE_EDITOR = "simple_editor"
    IMPORT_EXPORT = "import_export"
    KEYED_RESULT = "keyed_result"
    SINGLE_ITEM = "single_item"
    GENERIC = "generic"


class TargetFormat(str, Enum):
    SIMPLE_EDITOR = "simple_editor"
    IMPORT_EXPORT = "import_export"
    KEYED_RESULT = "keyed_result"


# ── 形态识别 ──────────────────────────────────────────

def _is_wrapped_item(item: Any) -> bool:
    return isinstance(item, dict) and isinstance(item.get("item"), dict) and isinstance(item.get("processing"), dict)


def _looks_canonical(data: dict) -> bool:
    sources = data.get("dataSources")
    if not data.get("componentId") or not isinstance(sources, list) or not sources:
        return False
    for ds in sources:
        if not isinstance(ds, dict) or not ds.get("sourceId"):
            return False
        items = ds.get("dataItems")
        if not isinstance(items, list) or not all(_is_wrapped_item(i) for i in items):
            return False
    return True


def _looks_simple_editor(data: dict) -> bool:
    sources = data.get("dataSources")
    if not isinstance(sources, list):
        return False
    return any(
        isinstance(ds, dict) and ds.get("sourceId") and isinstance(ds.get("dataItems"), list)
        for ds in sources
    )


def _looks_import_export(data: dict) -> bool:
    ds_config = data.get("dataSourceConfig")
    if not isinstance(ds_config, dict):
        return False
    items = ds_config.get("dataItems")
    return isinstance(items, list) and any(not _is_wrapped_item(i) for i in items)


def _looks_keyed_result(data: dict) -> bool:
    return any(
        isinstance(v, dict) and "type" in v and "data" in v and "metadata" in v
        for v in data.values()
    )


def _looks_single_item(data: dict) -> bool:
    return isinstance(data.get("type"), str) and "config" in data


def detect_shape(data: Any) -> ConfigShape:
    """结构探测，按固定优先级返回配置形态。"""
    if isinstance(data, SourceConfiguration):
        return ConfigShape.CANONICAL
    if not isinstance(data, dict):
        return ConfigShape.GENERIC
    for shape, matches, _ in _SHAPES:
        if matches(data):
            return shape
    return ConfigShape.GENERIC


# ── 各形态转换 ────────────────────────────────────────

def _static_config(value: Any) -> Dict[str, Any]:
    return {"data": value}


def _convert_simple_item(raw: Any) -> DataItem:
    """把未包装的数据项转换为 DataItem。"""
    if not isinstance(raw, dict):
        return DataItem(item=ItemSpec(type=SourceType.STATIC.value, config=_static_config(raw)))
    if _is_wrapped_item(raw):
        return DataItem.model_validate(raw)

    body = raw["item"] if isinstance(raw.get("item"), dict) else raw
    item_type = body.get("type") if isinstance(body.get("type"), str) else SourceType.STATIC.value
    config = body.get("config") if isinstance(body.get("config"), dict) else body
    processing = raw.get("processing") if isinstance(raw.get("processing"), dict) else {}
    return DataItem(
        item=ItemSpec(type=item_type, config=config),
        processing=ProcessingConfig(
            filter_path=processing.get("filterPath") or raw.get("filterPath") or "$",
            custom_script=processing.get("customScript") or raw.get("processScript"),
            default_value=processing.get("defaultValue"),
        ),
    )


def _from_simple_editor(data: dict, component_id: str) -> SourceConfiguration:
    sources = []
    for ds in data["dataSources"]:
        if not isinstance(ds, dict):
            continue
        items = ds.get("dataItems") if isinstance(ds.get("dataItems"), list) else []
        sources.append(DataSourceEntry(
            source_id=str(ds.get("sourceId") or "default"),
            data_items=[_convert_simple_item(i) for i in items],
            merge_strategy=MergeStrategy.model_validate(ds.get("mergeStrategy")),
        ))
    return SourceConfiguration(component_id=data.get("componentId") or component_id, data_sources=sources)


def _from_import_export(data: dict, component_id: str) -> SourceConfiguration:
    ds_config = data["dataSourceConfig"]
    items = [_convert_simple_item(i) for i in ds_config["dataItems"]]
    source = DataSourceEntry(
        source_id=DEFAULT_SOURCE_ID,
        data_items=items,
        merge_strategy=MergeStrategy.model_validate(ds_config.get("mergeStrategy")),
    )
    return SourceConfiguration(component_id=component_id, data_sources=[source])


def _from_keyed_result(data: dict, component_id: str) -> SourceConfiguration:
    sources = []
    for key, value in data.items():
        if isinstance(value, dict) and isinstance(value.get("type"), str):
            item_type = value["type"]
            payload = value.get("data")
        else:
            item_type = SourceType.STATIC.value
            payload = value
        if item_type == SourceType.STATIC.value or not isinstance(payload, dict):
            config = _static_config(payload)
        else:
            config = payload
        sources.append(DataSourceEntry(
            source_id=str(key),
            data_items=[DataItem(item=ItemSpec(type=item_type, config=config))],
        ))
    return SourceConfiguration(component_id=component_id, data_sources=sources)


def _from_single_item(data: dict, component_id: str) -> SourceConfiguration:
    config = data["config"] if isinstance(data["config"], dict) else _static_config(data["config"])
    item = DataItem(
        item=ItemSpec(type=data["type"], config=config),
        processing=ProcessingConfig(
            filter_path=data.get("filterPath") or "$",
            custom_script=data.get("processScript"),
            default_value=data.get("defaultValue"),
        ),
    )
    return SourceConfiguration(
        component_id=component_id,
        data_sources=[DataSourceEntry(source_id=DEFAULT_SOURCE_ID, data_items=[item])],
    )


def _from_generic(data: Any, component_id: str) -> SourceConfiguration:
    item = DataItem(item=ItemSpec(type=SourceType.STATIC.value, config=_static_config(data)))
    return SourceConfiguration(
        component_id=component_id,
        data_sources=[DataSourceEntry(source_id=DEFAULT_SOURCE_ID, data_items=[item])],
    )


# ── 统一入口 ──────────────────────────────────────────

def _from_canonical(data: dict, component_id: str) -> SourceConfiguration:
    return SourceConfiguration.model_validate(data)


# 优先级顺序即识别顺序
_SHAPES = [
    (ConfigShape.CANONICAL, _looks_canonical, _from_canonical),
    (ConfigShape.SIMPLE_EDITOR, _looks_simple_editor, _from_simple_editor),
    (ConfigShape.IMPORT_EXPORT, _looks_import_export, _from_import_export),
    (ConfigShape.KEYED_RESULT, _looks_keyed_result, _from_keyed_result),
    (ConfigShape.SINGLE_ITEM, _looks_single_item, _from_single_item),
]


# ── 统一入口 ──────────────────────────────────────────

def normalize(data: Any, component_id: str = "unknown") -> SourceConfiguration:
    """
    任意形态 -> SourceConfiguration。
    不抛异常：某个形态转换失败时按优先级尝试后续形态，最后退回 GENERIC 包装。
    """
    if isinstance(data, SourceConfiguration):
        return data
    if not isinstance(data, dict):
        logger.debug(f"[{component_id}] 未识别的配置形态，按 static 包装")
        return _from_generic(data, component_id)

    for shape, matches, convert in _SHAPES:
        if not matches(data):
            continue
        try:
            result = convert(data, component_id)
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning(f"[{component_id}] 按 {shape.value} 转换失败，尝试下一种形态: {e}")
            continue
        if result.data_sources:
            return result
        logger.warning(f"[{component_id}] {shape.value} 转换结果没有数据源，尝试下一种形态")

    logger.debug(f"[{component_id}] 没有可用的配置形态，按 static 包装")
    return _from_generic(data, component_id)


def normalize_multiple(configs: Dict[str, Any]) -> Dict[str, SourceConfiguration]:
    """批量规范化，key 为 componentId。"""
    return {component_id: normalize(cfg, component_id) for component_id, cfg in configs.items()}


# ── 反向转换 ──────────────────────────────────────────

def convert_from_standard(config: SourceConfiguration, target: TargetFormat | str) -> Dict[str, Any]:
    """
    规范形态 -> 指定历史形态。
    import_export / keyed_result 会丢失 processing（脚本、过滤路径），属于已知的有损转换。
    """
    target = TargetFormat(target)

    if target == TargetFormat.SIMPLE_EDITOR:
        return {
            "componentId": config.component_id,
            "dataSources": [
                {
                    "sourceId": ds.source_id,
                    "dataItems": [i.to_dict() for i in ds.data_items],
                    "mergeStrategy": ds.merge_strategy.to_dict(),
                }
                for ds in config.data_sources
            ],
        }

    if target == TargetFormat.IMPORT_EXPORT:
        items = [i.item.to_dict() for ds in config.data_sources for i in ds.data_items]
        merge = config.data_sources[0].merge_strategy.to_dict() if config.data_sources else {"type": "object"}
        return {"dataSourceConfig": {"dataItems": items, "mergeStrategy": merge}}

    result: Dict[str, Any] = {}
    for ds in config.data_sources:
        many = len(ds.data_items) > 1
        for index, data_item in enumerate(ds.data_items):
            key = f"{ds.source_id}_{index}" if many else ds.source_id
            cfg = data_item.item.config
            data = cfg.get("data") if data_item.item.type == SourceType.STATIC.value else cfg
            result[key] = {
                "type": data_item.item.type,
                "data": data,
                "metadata": {"sourceId": ds.source_id, "index": index, "convertedAt": now_ms()},
            }
    return result


# ── 结构校验 ──────────────────────────────────────────

def validate_standard_format(data: Any) -> List[str]:
    """检查规范形态的必填键，返回可读错误列表（空列表表示通过）。不校验各类型 config。"""
    if isinstance(data, SourceConfiguration):
        data = data.to_dict()
    if not isinstance(data, dict):
        return ["Configuration must be an object"]

    errors = []
    if not data.get("componentId"):
        errors.append("Missing componentId")
    sources = data.get("dataSources")
    if not isinstance(sources, list):
        errors.append("dataSources must be an array")
        return errors

    for i, ds in enumerate(sources):
        if not isinstance(ds, dict):
            errors.append(f"dataSources[{i}] must be an object")
            continue
        if not ds.get("sourceId"):
            errors.append(f"dataSources[{i}] missing sourceId")
        items = ds.get("dataItems")
        if not isinstance(items, list):
            errors.append(f"dataSources[{i}].dataItems must be an array")
            continue
        for j, item in enumerate(items):
            if not _is_wrapped_item(item):
                errors.append(f"dataSources[{i}].dataItems[{j}] must contain item and processing")
    return errors
