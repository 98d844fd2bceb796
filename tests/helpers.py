"""测试辅助：构造数据项 / 配置 / 假时钟。"""

import json

import httpx

from pipeline.executors import HttpTransport
from pipeline.models import DataItem, DataSourceEntry, ItemSpec, MergeStrategy, ProcessingConfig, SourceConfiguration


def json_item(obj, **processing) -> DataItem:
    return DataItem(
        item=ItemSpec(type="json", config={"jsonString": json.dumps(obj)}),
        processing=ProcessingConfig(**processing),
    )


def static_item(data, **processing) -> DataItem:
    return DataItem(item=ItemSpec(type="static", config={"data": data}), processing=ProcessingConfig(**processing))


def single_source(items, merge="object", component_id="c1", source_id="s1") -> SourceConfiguration:
    return SourceConfiguration(
        component_id=component_id,
        data_sources=[DataSourceEntry(source_id=source_id, data_items=items, merge_strategy=MergeStrategy(type=merge))],
    )


def mock_transport(handler) -> HttpTransport:
    return HttpTransport(transport=httpx.MockTransport(handler))


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
