"""
Widget Data Pipeline 主入口：启动 FastAPI 后端服务。
"""

import logging
import os
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pipeline import api
from pipeline.binding import BindingConfig
from pipeline.bridge import DataBridge
from pipeline.chain import ExecutionChain
from pipeline.config_store import ConfigurationStore, NodeStore, PropertyResolver
from pipeline.event_bus import ConfigEventBus
from pipeline.executors import HttpTransport, create_default_registry
from pipeline.flow import ChangeFlow
from pipeline.settings import PipelineSettings, load_settings
from pipeline.warehouse import DataWarehouse

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan 事件处理：启动时和关闭时的逻辑。"""

    # 启动时：开始周期性缓存维护
    warehouse: DataWarehouse = app.state.warehouse
    warehouse.start_maintenance()
    logger.info(f"缓存维护已启动 (interval={warehouse.settings.cleanup_interval_s}s)")

    yield  # 应用运行中

    # 关闭时：取消排期、清理执行器和缓存
    logger.info("正在关闭...")
    app.state.flow.shutdown()
    await app.state.registry.cleanup()
    app.state.bridge.destroy()


def create_app(settings: PipelineSettings | None = None, transport: HttpTransport | None = None) -> FastAPI:
    """创建并配置 FastAPI 应用。"""
    app = FastAPI(
        title="Widget Data Pipeline API",
        description="Configuration-to-data pipeline for dashboard widgets",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── 初始化核心组件 ────────────────────────────────────────
    logger.info("正在加载配置...")
    settings = settings or load_settings()

    # 外部配置存储 / 编辑器节点
    store = ConfigurationStore()
    seed_file = os.getenv("WIDGET_PIPELINE_SEED")
    if seed_file:
        store.load_file(seed_file)
    nodes = NodeStore()
    resolver = PropertyResolver(store, nodes)

    # 执行器与执行链
    registry = create_default_registry(settings.http, transport)
    chain = ExecutionChain(registry, resolver)

    # 缓存与 Bridge
    warehouse = DataWarehouse(settings.warehouse)
    bridge = DataBridge(chain, warehouse, store)

    # 绑定规则、变更流程、事件总线
    binding = BindingConfig.from_settings(settings.bindings)
    flow = ChangeFlow(bridge, binding, nodes, settings.flow)
    bus = ConfigEventBus()
    flow.attach_event_bus(bus)

    # 注入依赖到 API 模块
    api.init_api(bridge=bridge, flow=flow, bus=bus, binding=binding, store=store)

    # 注册 API 路由
    app.include_router(api.router)

    # 将组件存到 app.state，供 lifespan 访问
    app.state.settings = settings
    app.state.registry = registry
    app.state.warehouse = warehouse
    app.state.bridge = bridge
    app.state.flow = flow
    app.state.bus = bus
    app.state.nodes = nodes

    return app


def main():
    """主入口。"""
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 8400

    logger.info(f"🚀 启动 Widget Data Pipeline 后端 (port={port})...")

    app = create_app()

    uvicorn.run(
        app,
        host="127.0.0.1",
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
