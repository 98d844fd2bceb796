"""
Data Bridge：组件数据需求的统一入口。

execute_component 的步骤：
    1. 清除该组件缓存；
    2. 从配置存储取最新快照；
    3. 快照中有数据源配置时用它重建需求；
    4. 识别需求形态（规范 / 双层嵌套 / 简化列表 / 历史格式）并规范化；
    5. 调用执行链；
    6. 成功时按数据源和 complete 键写缓存，并同步通知订阅者。

该方法从不抛异常，调用方只需检查 success。
"""

import hashlib
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from pipeline.chain import ExecutionChain
from pipeline.config_store import ConfigurationStore
from pipeline.models import (
    ComponentRequirement,
    DataItem,
    DataResult,
    DataSourceEntry,
    ItemSpec,
    ProcessingConfig,
    SimpleDataSource,
    SourceConfiguration,
    WidgetConfiguration,
)
from pipeline.normalizer import normalize
from pipeline.warehouse import COMPLETE_KEY, DataWarehouse, StorageStats, WarehouseMetrics

logger = logging.getLogger(__name__)

DataUpdateCallback = Callable[[str, Dict[str, Any]], None]


def config_hash(config: SourceConfiguration) -> str:
    """配置内容哈希（忽略时间戳），用于识别配置是否变化。"""
    payload = config.model_dump(by_alias=True, exclude={"created_at", "updated_at"})
    return hashlib.sha1(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()[:12]


def _is_simple_source(raw: Any) -> bool:
    return isinstance(raw, dict) and "id" in raw and "sourceId" not in raw and "dataItems" not in raw


class DataBridge:
    def __init__(
        self,
        chain: ExecutionChain,
        warehouse: DataWarehouse,
        store: ConfigurationStore | None = None,
    ):
        self.chain = chain
        self.warehouse = warehouse
        self.store = store
        self._callbacks: List[DataUpdateCallback] = []
        self._executions = 0
        self._failures = 0
        self._last_hashes: Dict[str, str] = {}

    # ── 需求重建 / 形态识别 ──────────────────────────────

    def _capture_snapshot(self, component_id: str) -> Optional[WidgetConfiguration]:
        if self.store is None:
            return None
        try:
            return self.store.get_configuration(component_id)
        except Exception as e:
            logger.warning(f"[{component_id}] 读取配置快照失败: {e}")
            return None

    @staticmethod
    def _reconstruct(requirement: ComponentRequirement, snapshot: WidgetConfiguration) -> ComponentRequirement:
        if not snapshot.data_source:
            return requirement
        return requirement.model_copy(update={
            "data_sources": snapshot.data_source,
            "component_type": requirement.component_type or snapshot.component_type,
        })

    @staticmethod
    def _from_simple_sources(component_id: str, sources: List[Dict[str, Any]]) -> SourceConfiguration:
        entries = []
        for raw in sources:
            simple = SimpleDataSource.model_validate(raw)
            entries.append(DataSourceEntry(
                source_id=simple.id,
                data_items=[DataItem(
                    item=ItemSpec(type=simple.type, config=simple.config),
                    processing=ProcessingConfig(
                        filter_path=simple.filter_path or "$",
                        custom_script=simple.process_script,
                    ),
                )],
            ))
        return SourceConfiguration(component_id=component_id, data_sources=entries)

    def to_source_configuration(self, requirement: ComponentRequirement) -> SourceConfiguration:
        component_id = requirement.component_id
        payload = requirement.data_sources

        if isinstance(payload, SourceConfiguration):
            return payload

        if isinstance(payload, dict) and isinstance(payload.get("dataSources"), list):
            payload = payload["dataSources"]

        if isinstance(payload, list):
            first = payload[0] if payload else None
            if isinstance(first, dict) and isinstance(first.get("dataSources"), list):
                # 双层嵌套：取内层真实配置
                return normalize({"componentId": component_id, "dataSources": first["dataSources"]}, component_id)
            if payload and all(_is_simple_source(s) for s in payload):
                return self._from_simple_sources(component_id, payload)
            return normalize({"componentId": component_id, "dataSources": payload}, component_id)

        return normalize(payload, component_id)

    # ── 执行 ─────────────────────────────────────────────

    async def execute_component(self, requirement: ComponentRequirement | SourceConfiguration | Dict[str, Any]) -> DataResult:
        component_id = "unknown"
        try:
            if isinstance(requirement, SourceConfiguration):
                requirement = ComponentRequirement(component_id=requirement.component_id, data_sources=requirement)
            elif not isinstance(requirement, ComponentRequirement):
                requirement = ComponentRequirement.model_validate(requirement)
            component_id = requirement.component_id
            self._executions += 1

            self.warehouse.clear_component_cache(component_id)

            snapshot = self._capture_snapshot(component_id)
            if snapshot is not None:
                requirement = self._reconstruct(requirement, snapshot)

            config = self.to_source_configuration(requirement)
            digest = config_hash(config)
            if self._last_hashes.get(component_id) not in (None, digest):
                logger.info(f"[{component_id}] 数据源配置已变化 ({digest})")
            self._last_hashes[component_id] = digest

            result = await self.chain.execute_data_processing_chain(config, force_refresh=True, params=requirement.params)
            if not result.success:
                self._failures += 1
                return DataResult(success=False, error=result.error or "Execution failed")

            # 执行期间可能有其他写入，先清后写
            self.warehouse.clear_component_cache(component_id)
            for source_id, data in result.component_data.items():
                if source_id == COMPLETE_KEY:
                    # 与汇总键同名，只保留在汇总快照里
                    logger.warning(f"[{component_id}] 数据源 ID '{COMPLETE_KEY}' 与汇总键冲突，不单独缓存")
                    continue
                self.warehouse.store_component_data(component_id, source_id, data, "multi-source")
            self.warehouse.store_component_data(component_id, COMPLETE_KEY, result.component_data, "multi-source")

            self._notify(component_id, result.component_data)
            return DataResult(success=True, data=result.component_data)
        except Exception as e:
            self._failures += 1
            logger.error(f"[{component_id}] 组件执行失败: {e}", exc_info=True)
            return DataResult(success=False, error=str(e))

    # ── 订阅 ─────────────────────────────────────────────

    def on_data_update(self, callback: DataUpdateCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _notify(self, component_id: str, data: Dict[str, Any]):
        for callback in list(self._callbacks):
            try:
                callback(component_id, data)
            except Exception as e:
                logger.error(f"[{component_id}] 数据更新回调异常: {e}", exc_info=True)

    # ── 缓存代理 ─────────────────────────────────────────

    def get_component_data(self, component_id: str) -> Optional[Dict[str, Any]]:
        return self.warehouse.get_component_data(component_id)

    def clear_component_cache(self, component_id: str):
        self.warehouse.clear_component_cache(component_id)

    def clear_all_cache(self):
        self.warehouse.clear_all_cache()

    def set_cache_expiry(self, expiry_ms: int):
        self.warehouse.set_cache_expiry(expiry_ms)

    def get_warehouse_metrics(self) -> WarehouseMetrics:
        return self.warehouse.get_performance_metrics()

    def get_storage_stats(self) -> StorageStats:
        return self.warehouse.get_storage_stats()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "callbacks": len(self._callbacks),
            "executions": self._executions,
            "failures": self._failures,
            "supportedTypes": self.chain.registry.supported_types(),
            "configHashes": dict(self._last_hashes),
            "warehouse": self.get_warehouse_metrics().model_dump(),
        }

    def destroy(self):
        self._callbacks.clear()
        self._last_hashes.clear()
        self.warehouse.destroy()
