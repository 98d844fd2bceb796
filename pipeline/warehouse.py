"""
Data Warehouse: 按组件隔离的数据缓存。

- 键为 (componentId, sourceId)，读取时按当前过期时间判定是否过期；
- 每次读取计入 totalRequests，命中 / 未命中分别计数；
- 内存占用为估算值（JSON 长度 * 2），无法序列化时记为 0；
- 周期性维护：清理过期条目，内存超过阈值 80% 时按 LRU 淘汰。
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from pipeline.settings import WarehouseSettings

logger = logging.getLogger(__name__)

COMPLETE_KEY = "complete"
_EVICTION_THRESHOLD = 0.8


def estimate_size(data: Any) -> int:
    """估算数据大小（字节）；循环引用等无法序列化的值返回 0。"""
    try:
        return len(json.dumps(data, default=str)) * 2
    except (TypeError, ValueError, RecursionError):
        return 0


class CacheEntry(BaseModel):
    data: Any = None
    source_type: str = "unknown"
    stored_at: float
    size: int = 0
    access_count: int = 0
    last_accessed: float = 0.0


class WarehouseMetrics(BaseModel):
    cache_hit_rate: float = 0.0
    average_response_time: float = 0.0
    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0


class ComponentStats(BaseModel):
    data_sources: int = 0
    size: int = 0
    last_updated: float = 0.0


class StorageStats(BaseModel):
    total_components: int = 0
    total_data_sources: int = 0
    total_size: int = 0
    memory_usage_mb: float = 0.0
    component_stats: Dict[str, ComponentStats] = Field(default_factory=dict)


class DataWarehouse:
    """进程内共享的数据缓存。"""

    def __init__(self, settings: WarehouseSettings | None = None, clock: Callable[[], float] = time.time):
        self.settings = settings or WarehouseSettings()
        self._clock = clock
        self._expiry_ms = self.settings.cache_expiry_ms
        # componentId -> sourceId -> CacheEntry
        self._storage: Dict[str, Dict[str, CacheEntry]] = {}
        self._hits = 0
        self._misses = 0
        self._total_requests = 0
        self._total_response_ms = 0.0
        self._maintenance_task: Optional[asyncio.Task] = None

    # ── 写入 ─────────────────────────────────────────────

    def _memory_usage(self) -> int:
        return sum(e.size for entries in self._storage.values() for e in entries.values())

    def _item_count(self) -> int:
        return sum(len(entries) for entries in self._storage.values())

    def _should_reject(self, component_id: str, source_id: str, size: int) -> bool:
        replacing = source_id in self._storage.get(component_id, {})
        if not replacing and self._item_count() >= self.settings.max_items:
            logger.warning(f"[{component_id}] 缓存条目已达上限 {self.settings.max_items}，拒绝写入 {source_id}")
            return True
        if self._memory_usage() + size > self.settings.max_memory_mb * 1024 * 1024:
            logger.warning(f"[{component_id}] 缓存内存已达上限，拒绝写入 {source_id}")
            return True
        return False

    def store_component_data(self, component_id: str, source_id: str, data: Any, source_type: str = "unknown") -> bool:
        """写入 (componentId, sourceId)，覆盖旧值。空 ID 直接忽略。"""
        if not component_id or not source_id:
            logger.debug(f"忽略空键写入: component={component_id!r} source={source_id!r}")
            return False

        size = estimate_size(data)
        if self._should_reject(component_id, source_id, size):
            return False

        now = self._clock()
        entries = self._storage.setdefault(component_id, {})
        # 单源写入后旧的 complete 快照不再准确
        if source_id != COMPLETE_KEY:
            entries.pop(COMPLETE_KEY, None)
        entries[source_id] = CacheEntry(
            data=data,
            source_type=source_type,
            stored_at=now,
            size=size,
            last_accessed=now,
        )
        logger.debug(f"[{component_id}] 缓存写入 {source_id} ({size} bytes)")
        return True

    # ── 读取 ─────────────────────────────────────────────

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return (now - entry.stored_at) * 1000 > self._expiry_ms

    def _record(self, hit: bool, started: float):
        self._total_requests += 1
        if hit:
            self._hits += 1
        else:
            self._misses += 1
        self._total_response_ms += (time.perf_counter() - started) * 1000

    def get_component_data(self, component_id: str) -> Optional[Dict[str, Any]]:
        """
        读取组件数据 {sourceId: data}；存在 complete 键时直接返回其内容。
        未知组件或全部过期返回 None。
        """
        started = time.perf_counter()
        entries = self._storage.get(component_id)
        if not entries:
            self._record(False, started)
            logger.debug(f"[{component_id}] 缓存未命中")
            return None

        now = self._clock()
        for source_id in [sid for sid, e in entries.items() if self._is_expired(e, now)]:
            del entries[source_id]
        if not entries:
            del self._storage[component_id]
            self._record(False, started)
            logger.debug(f"[{component_id}] 缓存已过期")
            return None

        for entry in entries.values():
            entry.access_count += 1
            entry.last_accessed = now
        self._record(True, started)

        complete = entries.get(COMPLETE_KEY)
        if complete is not None and isinstance(complete.data, dict):
            return dict(complete.data)
        return {sid: e.data for sid, e in entries.items() if sid != COMPLETE_KEY}

    def get_data_source_data(self, component_id: str, source_id: str) -> Any:
        started = time.perf_counter()
        entry = self._storage.get(component_id, {}).get(source_id)
        now = self._clock()
        if entry is None or self._is_expired(entry, now):
            if entry is not None:
                del self._storage[component_id][source_id]
            self._record(False, started)
            return None
        entry.access_count += 1
        entry.last_accessed = now
        self._record(True, started)
        return entry.data

    # ── 清理 ─────────────────────────────────────────────

    def clear_component_cache(self, component_id: str):
        if self._storage.pop(component_id, None) is not None:
            logger.debug(f"[{component_id}] 组件缓存已清除")

    def clear_data_source_cache(self, component_id: str, source_id: str):
        entries = self._storage.get(component_id)
        if entries and entries.pop(source_id, None) is not None:
            entries.pop(COMPLETE_KEY, None)
            if not entries:
                del self._storage[component_id]

    def clear_all_cache(self):
        self._storage.clear()
        logger.info("已清除全部缓存")

    def set_cache_expiry(self, expiry_ms: int):
        self._expiry_ms = max(0, int(expiry_ms))
        logger.info(f"缓存过期时间 -> {self._expiry_ms}ms")

    def perform_maintenance(self) -> int:
        """清理过期条目，并在内存超过阈值时按 LRU 淘汰，返回移除的条目数。"""
        now = self._clock()
        removed = 0
        for component_id in list(self._storage.keys()):
            entries = self._storage[component_id]
            for source_id in [sid for sid, e in entries.items() if self._is_expired(e, now)]:
                del entries[source_id]
                removed += 1
            if not entries:
                del self._storage[component_id]

        limit = self.settings.max_memory_mb * 1024 * 1024 * _EVICTION_THRESHOLD
        if self._memory_usage() > limit:
            candidates = sorted(
                ((e.last_accessed, cid, sid) for cid, entries in self._storage.items() for sid, e in entries.items()),
            )
            for _, cid, sid in candidates:
                if self._memory_usage() <= limit:
                    break
                self._storage[cid].pop(sid, None)
                if not self._storage[cid]:
                    del self._storage[cid]
                removed += 1

        if removed:
            logger.info(f"缓存维护: 移除 {removed} 个条目")
        return removed

    # ── 统计 ─────────────────────────────────────────────

    def get_performance_metrics(self) -> WarehouseMetrics:
        total = self._total_requests
        return WarehouseMetrics(
            cache_hit_rate=self._hits / total if total else 0.0,
            average_response_time=self._total_response_ms / total if total else 0.0,
            total_requests=total,
            cache_hits=self._hits,
            cache_misses=self._misses,
        )

    def get_storage_stats(self) -> StorageStats:
        component_stats = {
            cid: ComponentStats(
                data_sources=len([sid for sid in entries if sid != COMPLETE_KEY]),
                size=sum(e.size for e in entries.values()),
                last_updated=max((e.stored_at for e in entries.values()), default=0.0),
            )
            for cid, entries in self._storage.items()
        }
        total_size = sum(s.size for s in component_stats.values())
        return StorageStats(
            total_components=len(component_stats),
            total_data_sources=sum(s.data_sources for s in component_stats.values()),
            total_size=total_size,
            memory_usage_mb=round(total_size / (1024 * 1024), 4),
            component_stats=component_stats,
        )

    # ── 生命周期 ─────────────────────────────────────────

    async def _maintenance_loop(self, interval_s: float):
        while True:
            await asyncio.sleep(interval_s)
            try:
                self.perform_maintenance()
            except Exception as e:
                logger.error(f"缓存维护失败: {e}", exc_info=True)

    def start_maintenance(self, interval_s: float | None = None):
        if self._maintenance_task and not self._maintenance_task.done():
            return
        interval = interval_s or self.settings.cleanup_interval_s
        self._maintenance_task = asyncio.get_running_loop().create_task(self._maintenance_loop(interval))

    def stop_maintenance(self):
        if self._maintenance_task and not self._maintenance_task.done():
            self._maintenance_task.cancel()
        self._maintenance_task = None

    def destroy(self):
        """清空全部状态，可重复调用。"""
        self.stop_maintenance()
        self._storage.clear()
        self._hits = 0
        self._misses = 0
        self._total_requests = 0
        self._total_response_ms = 0.0
