"""
数据源执行器：每种数据项类型一个执行器，负责拿到原始数据。

约定：
- 执行器不写缓存；
- 执行器从不向外抛异常，一律返回 ExecutionResult（失败时带 error_code）；
- responseTime / dataSize 由执行器自己测量，写入 metadata。
"""

import asyncio
import copy
import csv
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from pipeline.config_store import PropertyResolver
from pipeline.errors import ScriptExecutionError
from pipeline.models import ExecutionResult, SourceType
from pipeline.processing import apply_transform, convert_value, run_script
from pipeline.settings import HttpSettings

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")
_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _estimate_size(data: Any) -> int:
    try:
        return len(json.dumps(data, default=str))
    except (TypeError, ValueError):
        return 0


class SourceItem(BaseModel):
    """交给执行器注册表的单个数据项。"""
    id: str
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class ExecutionContext:
    """单次执行的运行时上下文：组件 ID、绑定参数、属性解析器。"""

    def __init__(
        self,
        component_id: str | None = None,
        params: Dict[str, Any] | None = None,
        resolver: PropertyResolver | None = None,
        force_refresh: bool = False,
    ):
        self.component_id = component_id
        self.params = params or {}
        self.resolver = resolver
        self.force_refresh = force_refresh

    def resolve_binding(self, binding_path: str) -> Any:
        if not binding_path or self.resolver is None:
            return None
        return self.resolver.resolve(binding_path, self.component_id)


# ── 执行器基类 ────────────────────────────────────────

class SourceExecutor:
    type: str = ""
    # 未预期异常时使用的错误码
    error_code: str = "EXECUTOR_EXCEPTION"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext | None = None) -> ExecutionResult:
        start = time.perf_counter()
        try:
            result = await self._execute(config or {}, context or ExecutionContext())
        except Exception as e:
            logger.warning(f"[{self.type}] 执行失败: {e}")
            result = ExecutionResult.fail(str(e), self.error_code)
        result.metadata["responseTime"] = round((time.perf_counter() - start) * 1000, 2)
        if result.success:
            result.metadata.setdefault("dataSize", _estimate_size(result.data))
        return result

    async def _execute(self, config: Dict[str, Any], context: ExecutionContext) -> ExecutionResult:
        raise NotImplementedError

    def validate(self, config: Dict[str, Any]) -> bool:
        return isinstance(config, dict)

    async def cleanup(self):
        pass


# ── Static ────────────────────────────────────────────

class StaticExecutor(SourceExecutor):
    type = SourceType.STATIC.value
    error_code = "STATIC_DATA_ERROR"

    async def _execute(self, config, context):
        data = copy.deepcopy(config.get("data"))
        return ExecutionResult.ok(apply_transform(data, config.get("transform")))

    def validate(self, config):
        return isinstance(config, dict) and "data" in config


# ── JSON ──────────────────────────────────────────────

class JsonExecutor(SourceExecutor):
    type = SourceType.JSON.value
    error_code = "JSON_PARSE_ERROR"

    @staticmethod
    def _content(config: Dict[str, Any]) -> Any:
        content = config.get("jsonString")
        if content is None:
            content = config.get("jsonContent")
        return content

    async def _execute(self, config, context):
        content = self._content(config)
        if content is None or (isinstance(content, str) and not content.strip()):
            return ExecutionResult.fail("JSON content is empty", "JSON_NO_CONTENT")
        data = json.loads(content) if isinstance(content, str) else copy.deepcopy(content)
        return ExecutionResult.ok(apply_transform(data, config.get("transform")))

    def validate(self, config):
        return isinstance(config, dict) and self._content(config) is not None


# ── HTTP ──────────────────────────────────────────────

class HttpTransport:
    """httpx 请求函数的薄封装，返回 {data, status, headers}。"""

    def __init__(
        self,
        base_url: str = "",
        headers: Dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.headers = headers or {}
        self._transport = transport

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Dict[str, str] | None = None,
        params: Dict[str, Any] | None = None,
        data: Any = None,
        timeout: float = 5.0,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"headers": {**self.headers, **(headers or {})}, "params": params or None}
        if data is not None:
            if isinstance(data, (str, bytes)):
                kwargs["content"] = data
            else:
                kwargs["json"] = data

        async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport, timeout=timeout) as client:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            try:
                body = response.json()
            except ValueError:
                body = response.text
            return {"data": body, "status": response.status_code, "headers": dict(response.headers)}


class HttpExecutor(SourceExecutor):
    type = SourceType.HTTP.value
    error_code = "HTTP_REQUEST_FAILED"

    def __init__(self, transport: HttpTransport | None = None, settings: HttpSettings | None = None):
        self.settings = settings or HttpSettings()
        self.transport = transport or HttpTransport(self.settings.base_url, self.settings.headers)
        # 请求去重: key -> (创建时间, Task)
        self._recent: Dict[str, Tuple[float, asyncio.Task]] = {}

    # ── 参数解析 ─────────────────────────────────────────

    def _resolve_param(self, param: Dict[str, Any], context: ExecutionContext) -> Optional[Tuple[str, Any]]:
        key = param.get("key")
        if not key or param.get("enabled") is False:
            return None
        value = param.get("value")

        if param.get("isDynamic"):
            variable = param.get("variableName")
            if variable and variable in context.params:
                value = context.params[variable]
            else:
                binding_path = param.get("bindingPath") or (value if isinstance(value, str) else None)
                resolved = context.resolve_binding(binding_path) if binding_path and "." in binding_path else None
                value = resolved

        if value is None or value == "":
            default = param.get("defaultValue")
            if default is None or default == "":
                logger.debug(f"[{context.component_id}] 参数 {key} 无值，跳过")
                return None
            value = default
        return key, convert_value(value, param.get("dataType"))

    def _collect(self, raw: Any, context: ExecutionContext) -> List[Tuple[str, Any, str | None]]:
        """参数可以是 dict 或参数对象列表，返回 (key, value, paramType)。"""
        if isinstance(raw, dict):
            return [(str(k), v, None) for k, v in raw.items()]
        collected = []
        for param in raw or []:
            if not isinstance(param, dict):
                continue
            resolved = self._resolve_param(param, context)
            if resolved:
                collected.append((resolved[0], resolved[1], param.get("paramType")))
        return collected

    @staticmethod
    def _apply_path_params(url: str, path_values: List[Tuple[str, Any]], runtime: Dict[str, Any]) -> str:
        for key, value in path_values:
            encoded = quote(str(value), safe="")
            if "{" + key + "}" in url:
                url = url.replace("{" + key + "}", encoded)
            else:
                url = _PLACEHOLDER_RE.sub(encoded, url, count=1)

        def _fill(match: re.Match) -> str:
            name = match.group(1)
            return quote(str(runtime[name]), safe="") if name in runtime else match.group(0)

        return _PLACEHOLDER_RE.sub(_fill, url)

    def build_request(self, config: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        method = str(config.get("method", "GET")).upper()
        headers: Dict[str, Any] = {}
        params: Dict[str, Any] = {}
        path_values: List[Tuple[str, Any]] = []

        for key, value, _ in self._collect(config.get("headers"), context):
            headers[key] = str(value)
        for key, value, _ in self._collect(config.get("params"), context):
            params[key] = value
        for key, value, _ in self._collect(config.get("pathParams"), context):
            path_values.append((key, value))
        if isinstance(config.get("pathParameter"), dict):
            path_values.extend((k, v) for k, v, _ in self._collect([config["pathParameter"]], context))

        for key, value, param_type in self._collect(config.get("parameters"), context):
            if param_type == "header":
                headers[key] = str(value)
            elif param_type == "path":
                path_values.append((key, value))
            else:
                params[key] = value

        body = config.get("body")
        if method not in _BODY_METHODS:
            body = None
        elif isinstance(body, str) and body.strip():
            try:
                body = json.loads(body)
            except json.JSONDecodeError:
                pass
        elif isinstance(body, str):
            body = None

        timeout_ms = config.get("timeout") or self.settings.timeout_ms
        return {
            "url": self._apply_path_params(config["url"], path_values, context.params),
            "method": method,
            "headers": headers,
            "params": params,
            "data": body,
            "timeout": timeout_ms / 1000,
        }

    # ── 请求 + 去重 ──────────────────────────────────────

    async def _send(self, request: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        if context.force_refresh:
            return await self.transport.request(**request)

        now = time.monotonic()
        ttl = self.settings.request_cache_ttl_ms / 1000
        for key in [k for k, (created, _) in self._recent.items() if now - created > ttl]:
            del self._recent[key]

        key = json.dumps(
            [request["method"], request["url"], request["params"], request["headers"], request["data"]],
            sort_keys=True, default=str,
        )
        cached = self._recent.get(key)
        if cached is None:
            task = asyncio.ensure_future(self.transport.request(**request))
            self._recent[key] = (now, task)
        else:
            logger.debug(f"[{context.component_id}] 复用请求 {request['method']} {request['url']}")
            task = cached[1]
        try:
            return copy.deepcopy(await asyncio.shield(task))
        except Exception:
            self._recent.pop(key, None)
            raise

    async def _execute(self, config, context):
        if not config.get("url"):
            return ExecutionResult.fail("HTTP url is not configured", "HTTP_NO_URL")

        request = self.build_request(config, context)
        try:
            if config.get("preRequestScript"):
                modified = run_script(
                    config["preRequestScript"],
                    {"request": request, "params": context.params},
                    name="preRequestScript",
                )
                if isinstance(modified, dict):
                    request = {**request, **modified}

            response = await self._send(request, context)
            data = response.get("data")

            if config.get("postResponseScript"):
                processed = run_script(
                    config["postResponseScript"],
                    {"data": data, "response": response},
                    name="postResponseScript",
                )
                if processed is not None:
                    data = processed
        except ScriptExecutionError as e:
            return ExecutionResult.fail(str(e), "SCRIPT_EXECUTION_ERROR")

        data = apply_transform(data, config.get("transform"))
        return ExecutionResult.ok(
            data,
            statusCode=response.get("status"),
            url=request["url"],
            method=request["method"],
        )

    def validate(self, config):
        return isinstance(config, dict) and bool(config.get("url"))

    async def cleanup(self):
        for _, task in self._recent.values():
            if not task.done():
                task.cancel()
        self._recent.clear()


# ── WebSocket ─────────────────────────────────────────

class WebSocketExecutor(SourceExecutor):
    """只返回连接意图，实际订阅不在管线内完成。"""
    type = SourceType.WEBSOCKET.value
    error_code = "WS_CONNECTION_ERROR"

    async def _execute(self, config, context):
        url = config.get("url") or config.get("wsUrl")
        if not url:
            return ExecutionResult.fail("WebSocket url is not configured", "WS_NO_URL")
        if not str(url).startswith(("ws://", "wss://")):
            return ExecutionResult.fail(f"Unsupported WebSocket url: {url}", "WS_CONNECTION_ERROR")
        return ExecutionResult.ok({"status": "connecting", "url": url})

    def validate(self, config):
        return isinstance(config, dict) and bool(config.get("url") or config.get("wsUrl"))


# ── File ──────────────────────────────────────────────

class FileExecutor(SourceExecutor):
    type = SourceType.FILE.value
    error_code = "FILE_READ_ERROR"

    @staticmethod
    def _read(path: Path, file_type: str, encoding: str) -> Any:
        with open(path, "r", encoding=encoding, newline="") as f:
            if file_type == "json":
                return json.load(f)
            if file_type == "csv":
                return list(csv.DictReader(f))
            return f.read()

    async def _execute(self, config, context):
        file_path = config.get("filePath") or config.get("path")
        if not file_path:
            return ExecutionResult.fail("File path is not configured", "FILE_NO_PATH")
        path = Path(file_path)
        file_type = (config.get("fileType") or path.suffix.lstrip(".") or "text").lower()
        data = await asyncio.to_thread(self._read, path, file_type, config.get("encoding", "utf-8"))
        return ExecutionResult.ok(apply_transform(data, config.get("transform")), fileType=file_type)

    def validate(self, config):
        return isinstance(config, dict) and bool(config.get("filePath") or config.get("path"))


# ── Script ────────────────────────────────────────────

class ScriptExecutor(SourceExecutor):
    type = SourceType.SCRIPT.value
    error_code = "SCRIPT_EXECUTION_ERROR"

    async def _execute(self, config, context):
        code = config.get("script") or config.get("code")
        if not code:
            return ExecutionResult.fail("Script is empty", "SCRIPT_NO_CODE")
        variables = {
            "context": config.get("context") or {},
            "params": context.params,
            "component_id": context.component_id,
        }
        return ExecutionResult.ok(run_script(code, variables, name=f"script_{context.component_id}"))

    def validate(self, config):
        return isinstance(config, dict) and bool(config.get("script") or config.get("code"))


# ── 设备绑定聚合 ──────────────────────────────────────

class BindingsExecutor(SourceExecutor):
    """
    从绑定对象中取数据：第一个绑定的 rawData（尝试 JSON 解析）或 finalResult，
    否则整个绑定对象作为数据。多个绑定时只取第一个。
    """
    type = SourceType.DATA_SOURCE_BINDINGS.value
    error_code = "BINDINGS_CONFIG_ERROR"

    async def _execute(self, config, context):
        bindings = config.get("dataSourceBindings", config)
        if isinstance(bindings, str):
            bindings = json.loads(bindings)
        if not isinstance(bindings, dict):
            return ExecutionResult.fail("dataSourceBindings must be an object", "BINDINGS_CONFIG_ERROR")

        keys = list(bindings.keys())
        data: Any = bindings
        if keys:
            if len(keys) > 1:
                logger.warning(f"[{context.component_id}] 存在 {len(keys)} 个绑定，只使用第一个 '{keys[0]}'")
            first = bindings[keys[0]]
            if isinstance(first, dict) and first.get("rawData") is not None:
                raw = first["rawData"]
                if isinstance(raw, str):
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError:
                        data = raw
                else:
                    data = raw
            elif isinstance(first, dict) and "finalResult" in first:
                data = first["finalResult"]
        return ExecutionResult.ok(copy.deepcopy(data), bindingKeys=keys)


# ── 执行器注册表 ──────────────────────────────────────

class ExecutorRegistry:
    """按类型分发数据项到执行器。"""

    def __init__(self):
        self._executors: Dict[str, SourceExecutor] = {}

    def register(self, executor: SourceExecutor):
        self._executors[executor.type] = executor
        logger.debug(f"注册执行器: {executor.type}")

    def unregister(self, type_name: str):
        self._executors.pop(type_name, None)

    def get(self, type_name: str) -> Optional[SourceExecutor]:
        return self._executors.get(type_name)

    def supported_types(self) -> List[str]:
        return list(self._executors.keys())

    def validate_config(self, type_name: str, config: Dict[str, Any]) -> bool:
        executor = self._executors.get(type_name)
        return bool(executor and executor.validate(config))

    async def execute(self, item: SourceItem, context: ExecutionContext | None = None) -> ExecutionResult:
        if not item.enabled:
            return ExecutionResult.fail(f"Data source {item.id} is disabled", "DATA_SOURCE_DISABLED", item.id)

        executor = self._executors.get(item.type)
        if executor is None:
            return ExecutionResult.fail(f"Unsupported data source type: {item.type}", "UNSUPPORTED_DATA_SOURCE", item.id)

        try:
            result = await executor.execute(item.config, context)
        except Exception as e:
            logger.error(f"[{item.id}] 执行器 {item.type} 抛出异常: {e}", exc_info=True)
            result = ExecutionResult.fail(str(e), "EXECUTOR_EXCEPTION")
        result.source_id = item.id
        result.metadata.setdefault("executorType", item.type)
        return result

    async def execute_many(self, items: List[SourceItem], context: ExecutionContext | None = None) -> List[ExecutionResult]:
        settled = await asyncio.gather(*(self.execute(i, context) for i in items), return_exceptions=True)
        results = []
        for item, outcome in zip(items, settled):
            if isinstance(outcome, BaseException):
                results.append(ExecutionResult.fail(str(outcome), "BATCH_EXECUTION_ERROR", item.id))
            else:
                results.append(outcome)
        return results

    async def cleanup(self):
        for executor in self._executors.values():
            try:
                await executor.cleanup()
            except Exception as e:
                logger.error(f"执行器 {executor.type} 清理失败: {e}")


def create_default_registry(
    settings: HttpSettings | None = None,
    transport: HttpTransport | None = None,
) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(StaticExecutor())
    registry.register(HttpExecutor(transport=transport, settings=settings))
    registry.register(JsonExecutor())
    registry.register(WebSocketExecutor())
    registry.register(FileExecutor())
    registry.register(ScriptExecutor())
    registry.register(BindingsExecutor())
    return registry
