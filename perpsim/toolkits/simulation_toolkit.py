"""
SimulationToolkit - 交易预演与清算分析工具集

将 TradeSimulator 与清算求解器封装为统一的 Toolkit 接口。
"""

import logging
from typing import Any, Dict, Optional

from .base import BaseToolkit, ToolkitResult
from ..config import get_settings
from ..simulation.anvil import AnvilForkLauncher
from ..simulation.dry_run import TradeSimulator
from ..simulation.fork_liquidation import run_fork_liquidation
from ..simulation.liquidation import simulate_liquidation
from ..simulation.models import (
    ForkLiquidationConfig,
    LiquidationConfig,
    MarketSnapshot,
    OrderIntent,
    Position,
)


logger = logging.getLogger(__name__)

REQUIRED_PARAMS = {
    "simulate_trade": ["order"],
    "simulate_liquidation": ["position", "market"],
    "simulate_fork_liquidation": ["position"],
    "check_tooling": [],
}


class SimulationToolkit(BaseToolkit):
    """
    交易预演与清算分析工具集

    功能：
    - simulate_trade: eth_call + Anvil 分叉双路径预演订单
    - simulate_liquidation: 闭式清算价格、价格扫描与资金费预测
    - simulate_fork_liquidation: 分叉验证的清算价格二分搜索
    - check_tooling: 检查 anvil 是否可用
    """

    tool_name = "perp_simulator"
    description = (
        "永续合约交易预演与清算分析工具，支持 eth_call 预演、Anvil 分叉重放、"
        "清算价格推导与分叉验证。"
    )
    actions = list(REQUIRED_PARAMS)

    def _initialize(self) -> None:
        """初始化依赖，config 中可注入 settings / client_factory / fork_launcher"""
        self.settings = self.config.get("settings") or get_settings()
        self.client_factory = self.config.get("client_factory")
        self.fork_launcher = self.config.get("fork_launcher") or AnvilForkLauncher.from_settings(self.settings)

    async def validate_input(self, **kwargs) -> tuple[bool, Optional[str]]:
        """验证输入参数"""
        action = kwargs.get("action")
        if action not in REQUIRED_PARAMS:
            return False, f"未知的操作类型: {action}"
        for field in REQUIRED_PARAMS[action]:
            if field not in kwargs:
                return False, f"缺少必需参数: {field}"
        return True, None

    def _merge_config(self, model, overrides: Optional[Dict[str, Any]]):
        """以 Settings 推导的配置为基础，叠加调用方传入的字段"""
        base = model.from_settings(self.settings)
        if not overrides:
            return base
        return model.model_validate({**base.model_dump(), **overrides})

    async def _handle_simulate_trade(self, order: Dict[str, Any], **kwargs) -> ToolkitResult:
        intent = OrderIntent.model_validate(order)
        simulator = TradeSimulator(
            self.settings,
            client_factory=self.client_factory,
            fork_launcher=self.fork_launcher,
        )
        result = await simulator.simulate_trade(intent)
        return self._ok(
            result.model_dump(mode="json"),
            fork_status=result.fork_status.value,
        )

    async def _handle_simulate_liquidation(
        self,
        position: Dict[str, Any],
        market: Dict[str, Any],
        config: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> ToolkitResult:
        liquidation_config = self._merge_config(LiquidationConfig, config)
        result = simulate_liquidation(
            Position.model_validate(position),
            MarketSnapshot.model_validate(market),
            liquidation_config,
        )
        return self._ok(
            result.model_dump(mode="json"),
            already_liquidatable=result.already_liquidatable,
        )

    async def _handle_simulate_fork_liquidation(
        self,
        position: Dict[str, Any],
        market: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> ToolkitResult:
        fork_config = self._merge_config(ForkLiquidationConfig, config)
        result = await run_fork_liquidation(
            Position.model_validate(position),
            MarketSnapshot.model_validate(market) if market else None,
            settings=self.settings,
            config=fork_config,
            client_factory=self.client_factory,
            fork_launcher=self.fork_launcher,
        )
        return self._ok(
            result.model_dump(mode="json"),
            converged=result.converged,
        )

    async def _handle_check_tooling(self, **kwargs) -> ToolkitResult:
        available = await self.fork_launcher.is_available()
        return self._ok({
            "anvil_installed": available,
            "anvil_path": self.settings.anvil_binary_path,
        })
