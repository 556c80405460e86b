"""
交易预演（Dry Run）

两条相互独立的预演路径：
1. eth_call：始终执行，开销小，给出成功与否、分配的订单 ID 与 gas 估算
2. Anvil 分叉：仅在 eth_call 成功且 anvil 可用时执行，真实上链后给出
   执行前后账户状态、事件与 gas 成本

分叉阶段的任何失败都降级为仅 eth_call 结果，不向调用方抛出。
"""

import logging
from typing import Callable, Optional

from eth_account import Account
from eth_utils import to_checksum_address

from ..config import Settings, get_settings
from ..errors import CallReverted, ForkRuntimeError, InvalidInputError, ToolingUnavailableError
from .anvil import AnvilFork, AnvilForkLauncher
from .exchange import ExchangeClient, decode_logs, encode_exec_order
from .models import (
    CallOnlyResult,
    ForkReplayResult,
    ForkStatus,
    OrderIntent,
    SimulationResult,
)
from .snapshot import diff_snapshots, snapshot_account

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], ExchangeClient]


def resolve_caller(settings: Settings) -> str:
    """调用者地址：优先 ACCOUNT_ADDRESS，否则由 OWNER_PRIVATE_KEY 推导"""
    if settings.account_address:
        try:
            return to_checksum_address(settings.account_address)
        except ValueError as e:
            raise InvalidInputError(f"无效的账户地址: {settings.account_address}") from e
    if settings.owner_private_key:
        try:
            return Account.from_key(settings.owner_private_key).address
        except ValueError as e:
            raise InvalidInputError("OWNER_PRIVATE_KEY 格式错误") from e
    raise InvalidInputError("未配置调用者身份：需要 ACCOUNT_ADDRESS 或 OWNER_PRIVATE_KEY")


class TradeSimulator:
    """
    交易预演器

    Args:
        settings: 配置
        client_factory: rpc_url -> ExchangeClient，测试时可替换
        fork_launcher: 分叉启动器，测试时可替换
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        fork_launcher: Optional[AnvilForkLauncher] = None,
    ):
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (
            lambda rpc_url: ExchangeClient.connect(rpc_url, self.settings.exchange_address)
        )
        self.fork_launcher = fork_launcher or AnvilForkLauncher.from_settings(self.settings)

    async def simulate_trade(self, order: OrderIntent) -> SimulationResult:
        """
        预演一笔订单

        Returns:
            SimulationResult: call_only 始终存在；fork_replay 仅在分叉成功时存在

        Raises:
            InvalidInputError: 调用者身份未配置
        """
        caller = resolve_caller(self.settings)
        client = self.client_factory(self.settings.rpc_url)

        call_only = await self._run_call_only(client, order, caller)
        if not call_only.success:
            logger.info(f"eth_call 预演 revert: {call_only.revert_reason}")
            return SimulationResult(
                caller=caller,
                order=order,
                call_only=call_only,
                fork_status=ForkStatus.SKIPPED_PREDICTED_REVERT,
            )

        if not await self.fork_launcher.is_available():
            logger.warning("Anvil 不可用，仅返回 eth_call 结果")
            return SimulationResult(
                caller=caller,
                order=order,
                call_only=call_only,
                fork_status=ForkStatus.TOOLING_UNAVAILABLE,
                fork_error="anvil not installed",
            )

        try:
            async with self.fork_launcher(self.settings.rpc_url) as fork:
                replay = await self._run_fork(fork, order, caller)
        except ToolingUnavailableError as e:
            logger.warning(f"Anvil 启动失败，仅返回 eth_call 结果: {e}")
            return SimulationResult(
                caller=caller,
                order=order,
                call_only=call_only,
                fork_status=ForkStatus.TOOLING_UNAVAILABLE,
                fork_error=str(e),
            )
        except Exception as e:
            logger.warning(f"Anvil 分叉模拟失败，仅返回 eth_call 结果: {e}", exc_info=True)
            return SimulationResult(
                caller=caller,
                order=order,
                call_only=call_only,
                fork_status=ForkStatus.FORK_FAILED,
                fork_error=str(e),
            )

        return SimulationResult(
            caller=caller,
            order=order,
            call_only=call_only,
            fork_status=ForkStatus.REPLAYED,
            fork_replay=replay,
        )

    # ==================== 阶段实现 ====================

    async def _run_call_only(self, client: ExchangeClient, order: OrderIntent, caller: str) -> CallOnlyResult:
        try:
            perp_id, order_id = await client.simulate_exec_order(order, caller)
        except CallReverted as e:
            return CallOnlyResult(success=False, revert_reason=e.reason)

        gas_estimate = None
        try:
            gas_estimate = await client.estimate_exec_order_gas(order, caller)
        except Exception as e:
            logger.debug(f"gas 估算失败（非关键）: {e}")

        return CallOnlyResult(
            success=True,
            perp_id=perp_id,
            order_id=order_id,
            gas_estimate=gas_estimate,
        )

    async def _run_fork(self, fork: AnvilFork, order: OrderIntent, caller: str) -> ForkReplayResult:
        client = self.client_factory(fork.rpc_url)

        pre = await snapshot_account(client, caller, order.perp_id)

        tx_hash = await client.send_transaction({
            "from": caller,
            "to": client.exchange_address,
            "data": encode_exec_order(order),
        })
        await fork.mine()
        receipt = await client.wait_for_receipt(tx_hash, timeout=self.settings.receipt_timeout_seconds)
        if receipt.get("status") != 1:
            raise ForkRuntimeError(f"分叉上的交易执行失败: {tx_hash.hex()}")

        post = await snapshot_account(client, caller, order.perp_id)
        events = decode_logs(receipt.get("logs", []), client.exchange_address)

        market = None
        try:
            market = await client.get_market_snapshot(order.perp_id)
        except Exception as e:
            logger.debug(f"获取市场信息失败（非关键）: {e}")

        gas_used = receipt.get("gasUsed", 0)
        gas_price = receipt.get("effectiveGasPrice", 0) or 0
        return ForkReplayResult(
            tx_hash="0x" + bytes(tx_hash).hex(),
            block_number=receipt.get("blockNumber", 0),
            gas_used=gas_used,
            effective_gas_price=gas_price,
            gas_cost_wei=gas_used * gas_price,
            pre=pre,
            post=post,
            diff=diff_snapshots(pre, post),
            events=events,
            market=market,
        )


async def simulate_trade(
    order: OrderIntent,
    settings: Optional[Settings] = None,
    client_factory: Optional[ClientFactory] = None,
    fork_launcher: Optional[AnvilForkLauncher] = None,
) -> SimulationResult:
    """预演一笔订单（TradeSimulator 的快捷入口）"""
    simulator = TradeSimulator(settings, client_factory=client_factory, fork_launcher=fork_launcher)
    return await simulator.simulate_trade(order)
