"""
执行链：对规范化配置中的每个数据项调用执行器，处理后按合并策略聚合。

所有数据源的所有数据项并发执行（all-settled），全部完成后按声明顺序合并。
失败的数据项贡献 defaultValue，不会中断所属数据源或整个组件。
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from pipeline.config_store import PropertyResolver
from pipeline.errors import ScriptExecutionError
from pipeline.executors import ExecutionContext, ExecutorRegistry, SourceItem
from pipeline.models import (
    ChainResult,
    DataItem,
    DataSourceEntry,
    MergeStrategy,
    MergeType,
    SourceConfiguration,
    SourceResult,
)
from pipeline.processing import process_item, run_script, validate_filter_path
from pipeline.warehouse import COMPLETE_KEY

logger = logging.getLogger(__name__)


class ItemOutcome(BaseModel):
    success: bool
    value: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None


# ── 合并策略 ──────────────────────────────────────────

def _merge_object(values: List[Any]) -> Any:
    present = [v for v in values if v is not None]
    if not present:
        return None
    if len(present) == 1 and not isinstance(present[0], dict):
        return present[0]
    merged: Dict[str, Any] = {}
    for index, value in enumerate(values):
        if value is None:
            continue
        if isinstance(value, dict):
            merged.update(value)
        else:
            merged[f"item_{index}"] = value
    return merged


def _merge_array(values: List[Any]) -> Any:
    merged: List[Any] = []
    for value in values:
        if value is None:
            continue
        if isinstance(value, list):
            merged.extend(value)
        else:
            merged.append(value)
    return merged


def merge_items(outcomes: List[ItemOutcome], strategy: MergeStrategy, source_id: str = "") -> Any:
    """按合并策略聚合同一数据源下各数据项的处理结果。"""
    if not outcomes:
        return None
    values = [o.value for o in outcomes]

    if strategy.type == MergeType.ARRAY:
        return _merge_array(values)

    if strategy.type == MergeType.REPLACE:
        for outcome in reversed(outcomes):
            if outcome.success and outcome.value is not None:
                return outcome.value
        for value in reversed(values):
            if value is not None:
                return value
        return None

    if strategy.type == MergeType.SELECT:
        index = strategy.selected_index or 0
        if 0 <= index < len(values):
            return values[index]
        logger.warning(f"[{source_id}] selectedIndex {index} 越界，使用第一项")
        return values[0]

    if strategy.type == MergeType.SCRIPT and strategy.script:
        try:
            return run_script(strategy.script, {"items": values}, name=f"{source_id}_merge")
        except ScriptExecutionError as e:
            logger.warning(f"[{source_id}] 合并脚本失败，回退到 object 合并: {e.cause}")

    return _merge_object(values)


def validate_merge_strategy(strategy: MergeStrategy, item_count: int) -> List[str]:
    errors = []
    if strategy.type == MergeType.SELECT:
        if strategy.selected_index is None:
            errors.append("select strategy requires selectedIndex")
        elif not 0 <= strategy.selected_index < item_count:
            errors.append(f"selectedIndex {strategy.selected_index} out of range (0..{item_count - 1})")
    if strategy.type == MergeType.SCRIPT and not strategy.script:
        errors.append("script strategy requires script")
    return errors


def recommend_strategy(values: List[Any]) -> MergeType:
    """根据数据项结果形态推荐合并策略。"""
    present = [v for v in values if v is not None]
    if len(present) <= 1:
        return MergeType.REPLACE
    if all(isinstance(v, dict) for v in present):
        return MergeType.OBJECT
    return MergeType.ARRAY


# ── 执行链 ────────────────────────────────────────────

class ExecutionChain:
    def __init__(self, registry: ExecutorRegistry, resolver: PropertyResolver | None = None):
        self.registry = registry
        self.resolver = resolver

    async def _run_item(
        self,
        source_id: str,
        index: int,
        data_item: DataItem,
        context: ExecutionContext,
    ) -> ItemOutcome:
        item_id = f"{source_id}_item_{index}"
        result = await self.registry.execute(
            SourceItem(id=item_id, type=data_item.item.type, config=data_item.item.config),
            context,
        )
        if not result.success:
            logger.warning(f"[{context.component_id}] 数据项 {item_id} 失败 ({result.error_code}): {result.error}")
            return ItemOutcome(
                success=False,
                value=data_item.processing.default_value,
                error=result.error,
                error_code=result.error_code,
            )
        try:
            value = process_item(result.data, data_item.processing, name=item_id)
        except Exception as e:
            logger.error(f"[{context.component_id}] 数据项 {item_id} 处理失败: {e}", exc_info=True)
            return ItemOutcome(success=False, value=data_item.processing.default_value, error=str(e))
        return ItemOutcome(success=True, value=value)

    def validate_configuration(self, config: SourceConfiguration) -> List[str]:
        """执行前检查，只产生警告，不阻止执行。"""
        warnings = []
        seen = set()
        for ds in config.data_sources:
            if ds.source_id in seen:
                warnings.append(f"duplicate sourceId '{ds.source_id}', later source wins")
            seen.add(ds.source_id)
            if ds.source_id == COMPLETE_KEY:
                warnings.append(f"sourceId '{COMPLETE_KEY}' collides with the merged snapshot key")
            if not ds.data_items:
                warnings.append(f"source '{ds.source_id}' has no data items")
            warnings.extend(f"source '{ds.source_id}': {e}" for e in validate_merge_strategy(ds.merge_strategy, len(ds.data_items)))
            for index, data_item in enumerate(ds.data_items):
                if data_item.item.type not in self.registry.supported_types():
                    warnings.append(f"source '{ds.source_id}' item {index}: unsupported type '{data_item.item.type}'")
                if not validate_filter_path(data_item.processing.filter_path):
                    warnings.append(f"source '{ds.source_id}' item {index}: invalid filterPath")
        return warnings

    async def execute_data_processing_chain(
        self,
        config: SourceConfiguration,
        force_refresh: bool = False,
        params: Dict[str, Any] | None = None,
    ) -> ChainResult:
        start = time.perf_counter()
        component_id = config.component_id
        try:
            for warning in self.validate_configuration(config):
                logger.warning(f"[{component_id}] {warning}")

            context = ExecutionContext(
                component_id=component_id,
                params=params,
                resolver=self.resolver,
                force_refresh=force_refresh,
            )

            # 所有数据源的所有数据项一起并发
            jobs = [
                (ds_index, self._run_item(ds.source_id, index, data_item, context))
                for ds_index, ds in enumerate(config.data_sources)
                for index, data_item in enumerate(ds.data_items)
            ]
            settled = await asyncio.gather(*(job for _, job in jobs), return_exceptions=True)

            per_source: Dict[int, List[ItemOutcome]] = {i: [] for i in range(len(config.data_sources))}
            for (ds_index, _), outcome in zip(jobs, settled):
                if isinstance(outcome, BaseException):
                    outcome = ItemOutcome(success=False, value=None, error=str(outcome))
                per_source[ds_index].append(outcome)

            component_data: Dict[str, Any] = {}
            source_results: List[SourceResult] = []
            for ds_index, ds in enumerate(config.data_sources):
                outcomes = per_source[ds_index]
                merged = merge_items(outcomes, ds.merge_strategy, ds.source_id)
                component_data[ds.source_id] = merged
                source_results.append(self._source_result(ds, outcomes, merged))

            elapsed = round((time.perf_counter() - start) * 1000, 2)
            logger.info(f"[{component_id}] 执行链完成: {len(config.data_sources)} 个数据源, {elapsed}ms")
            return ChainResult(
                success=True,
                component_data=component_data,
                source_results=source_results,
                execution_time_ms=elapsed,
            )
        except Exception as e:
            logger.error(f"[{component_id}] 执行链失败: {e}", exc_info=True)
            return ChainResult(
                success=False,
                error=str(e),
                execution_time_ms=round((time.perf_counter() - start) * 1000, 2),
            )

    @staticmethod
    def _source_result(ds: DataSourceEntry, outcomes: List[ItemOutcome], merged: Any) -> SourceResult:
        failed = [o for o in outcomes if not o.success]
        return SourceResult(
            source_id=ds.source_id,
            success=len(failed) < len(outcomes),
            data=merged,
            item_count=len(outcomes),
            failed_items=len(failed),
            errors=[o.error for o in failed if o.error],
        )
