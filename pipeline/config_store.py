"""
Configuration Store: in-memory widget configurations and editor nodes.

管线只读取这里的配置（每次执行都重新取快照），不负责持久化；
load_file 只用于启动时从 JSON / YAML 文件预置配置。
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from pipeline.models import EditorNode, WidgetConfiguration
from pipeline.processing import MISSING, resolve_path

logger = logging.getLogger(__name__)

CURRENT_COMPONENT = "__CURRENT_COMPONENT__"
SECTIONS = ("base", "component", "dataSource", "interaction")


class ConfigurationStore:
    """Holds the latest WidgetConfiguration per component."""

    def __init__(self):
        self._configs: Dict[str, WidgetConfiguration] = {}

    # ── Configurations ───────────────────────────────────

    def get_configuration(self, component_id: str) -> Optional[WidgetConfiguration]:
        """Return a deep-copied snapshot, or None for unknown components."""
        config = self._configs.get(component_id)
        return config.model_copy(deep=True) if config else None

    def set_configuration(self, component_id: str, config: WidgetConfiguration | Dict[str, Any]) -> WidgetConfiguration:
        if not isinstance(config, WidgetConfiguration):
            config = WidgetConfiguration.model_validate(config)
        self._configs[component_id] = config.model_copy(deep=True)
        return config

    def update_section(self, component_id: str, section: str, values: Dict[str, Any]) -> WidgetConfiguration:
        """Shallow-merge values into one section, creating the component if needed."""
        if section not in SECTIONS:
            raise ValueError(f"Unknown configuration section: {section}")
        current = self._configs.get(component_id) or WidgetConfiguration()
        data = current.to_dict()
        data[section] = {**(data.get(section) or {}), **copy.deepcopy(values)}
        updated = WidgetConfiguration.model_validate(data)
        self._configs[component_id] = updated
        return updated.model_copy(deep=True)

    def remove(self, component_id: str) -> bool:
        return self._configs.pop(component_id, None) is not None

    def list_ids(self) -> List[str]:
        return list(self._configs.keys())

    def load_file(self, path: str | Path) -> int:
        """Seed configurations from a JSON/YAML file shaped {componentId: WidgetConfiguration}."""
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        for component_id, config in data.items():
            self.set_configuration(component_id, config)
        logger.info(f"Loaded {len(data)} component configurations from {path}")
        return len(data)


class NodeStore:
    """Read-only view of editor nodes {id, type, properties}."""

    def __init__(self, nodes: List[EditorNode | Dict[str, Any]] | None = None):
        self._nodes: Dict[str, EditorNode] = {}
        for node in nodes or []:
            self.upsert(node)

    def upsert(self, node: EditorNode | Dict[str, Any]) -> EditorNode:
        if not isinstance(node, EditorNode):
            node = EditorNode.model_validate(node)
        self._nodes[node.id] = node
        return node

    def remove(self, node_id: str):
        self._nodes.pop(node_id, None)

    def get_node(self, node_id: str) -> Optional[EditorNode]:
        return self._nodes.get(node_id)

    def get_property(self, node_id: str, path: str) -> Any:
        """Look up a property path on a node; returns MISSING when absent."""
        node = self._nodes.get(node_id)
        if node is None:
            return MISSING
        value = resolve_path(node.properties, path)
        if value is MISSING and "." in path:
            # 节点属性通常不带 section 前缀
            value = resolve_path(node.properties, path.split(".", 1)[1])
        return value


class PropertyResolver:
    """
    解析绑定路径 `componentId.section.prop`。
    先查配置存储，再查编辑器节点。
    """

    def __init__(self, store: ConfigurationStore | None = None, nodes: NodeStore | None = None):
        self.store = store
        self.nodes = nodes

    def resolve(self, binding_path: str, current_component_id: str | None = None) -> Any:
        if not binding_path or "." not in binding_path:
            return None
        component_id, prop_path = binding_path.split(".", 1)
        if component_id == CURRENT_COMPONENT:
            component_id = current_component_id
        if not component_id:
            return None

        value = self.lookup(component_id, prop_path)
        return None if value is MISSING else value

    def lookup(self, component_id: str, prop_path: str) -> Any:
        """Resolve a section-relative path; MISSING when neither store has it."""
        if self.store is not None:
            config = self.store.get_configuration(component_id)
            if config is not None:
                value = resolve_path(config.to_dict(), prop_path)
                if value is not MISSING:
                    return value
        if self.nodes is not None:
            return self.nodes.get_property(component_id, prop_path)
        return MISSING
