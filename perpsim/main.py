"""
perpsim 入口

配置日志并组装 Toolkit 注册表。直接运行时从 stdin 读取一个 JSON 请求：

    {"tool": "perp_simulator", "action": "simulate_liquidation", ...}

执行后把 ToolkitResult 以 JSON 输出到 stdout。
"""

import asyncio
import json
import logging
import sys
from typing import Optional

from .config import Settings, get_settings
from .toolkits import ForensicsToolkit, SimulationToolkit, ToolkitRegistry, ToolkitResult


# =============================================================================
# Logging Configuration
# =============================================================================

def setup_logging(level: str = "INFO", stream=sys.stdout):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=stream,
    )


# =============================================================================
# Registry
# =============================================================================

def create_registry(settings: Optional[Settings] = None, **deps) -> ToolkitRegistry:
    """
    创建并注册所有 Toolkit

    Args:
        settings: 配置（默认全局配置）
        **deps: 注入到各 Toolkit 的依赖（client_factory / fork_launcher）
    """
    config = {"settings": settings or get_settings(), **deps}
    registry = ToolkitRegistry()
    registry.register(SimulationToolkit(config))
    registry.register(ForensicsToolkit(config))
    return registry


async def run_request(request: dict, registry: Optional[ToolkitRegistry] = None) -> ToolkitResult:
    """执行一个 {"tool": ..., "action": ..., ...} 请求"""
    registry = registry or create_registry()
    params = dict(request)
    tool_name = params.pop("tool", "")
    return await registry.execute(tool_name, **params)


# =============================================================================
# Main
# =============================================================================

def main():
    """主入口"""
    settings = get_settings()
    # 结果写 stdout，日志改走 stderr
    setup_logging(settings.log_level, stream=sys.stderr)

    request = json.load(sys.stdin)
    result = asyncio.run(run_request(request, create_registry(settings)))
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
