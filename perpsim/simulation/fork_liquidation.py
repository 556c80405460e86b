"""
分叉验证清算求解

在 Anvil 分叉上直接改写市场价格所在的存储槽，用 buyLiquidations 的 eth_call
判断仓位是否可被清算，并在整数价格（PNS）上二分查找清算边界。

探测逻辑抽象为 LiquidationProbe，求解器只依赖该接口，便于替换为测试桩。
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, List, Optional, Tuple

from eth_utils import to_checksum_address
from web3 import Web3

from ..config import Settings, get_settings
from ..contracts.abi import CASCADE_EVENT_NAMES
from ..errors import ForkRuntimeError, StorageSlotNotFoundError
from .anvil import AnvilFork, AnvilForkLauncher
from .dry_run import ClientFactory
from .exchange import ExchangeClient, decode_logs, encode_buy_liquidation
from .liquidation import liquidation_price, scaled, to_decimal
from .models import (
    DecodedEvent,
    ForkLiquidationConfig,
    ForkLiquidationResult,
    ForkPricePoint,
    ForkTimings,
    MarketSnapshot,
    Position,
    PositionSide,
)

logger = logging.getLogger(__name__)

# 存储槽扫描范围：mapping 基槽位 × 结构体内偏移
MAX_BASE_SLOT = 32
MAX_STRUCT_OFFSET = 40
LANE_WIDTHS = (256, 128, 64)


class LiquidationProbe(ABC):
    """在某个价格下探测仓位可清算性的接口"""

    @abstractmethod
    async def prepare(self) -> None:
        """准备探测环境（快照、定位存储槽等）"""

    @abstractmethod
    async def is_liquidatable_at(self, price_pns: int) -> bool:
        """在给定标记价格下仓位是否可被清算"""

    @abstractmethod
    async def liquidate_at(self, price_pns: int) -> List[DecodedEvent]:
        """在给定价格下真实执行清算，返回产生的事件"""

    @abstractmethod
    async def restore(self) -> None:
        """恢复探测前的状态"""


@dataclass(frozen=True)
class StorageLane:
    """存储槽中的一段位域"""
    slot: int
    shift: int
    width: int

    @property
    def mask(self) -> int:
        return ((1 << self.width) - 1) << self.shift

    def read(self, word: int) -> int:
        return (word & self.mask) >> self.shift

    def write(self, word: int, value: int) -> int:
        return (word & ~self.mask) | ((value << self.shift) & self.mask)


def _candidate_lanes(slot: int, word: int, target: int) -> List[StorageLane]:
    lanes = []
    for width in LANE_WIDTHS:
        for shift in range(0, 256, width):
            lane = StorageLane(slot, shift, width)
            if lane.read(word) == target:
                lanes.append(lane)
    return lanes


def mapping_slot(key: int, base: int) -> int:
    """mapping(uint256 => T) 在 base 槽位下 key 的起始槽位"""
    return int.from_bytes(Web3.solidity_keccak(["uint256", "uint256"], [key, base]), "big")


class AnvilLiquidationProbe(LiquidationProbe):
    """
    基于 Anvil 的清算探测

    功能：
    1. evm_snapshot 保存初始状态
    2. 扫描并验证标记价格（必需）与预言机价格（可选）所在的存储槽
    3. anvil_setStorageAt 改写价格，eth_call buyLiquidations 判断可清算性
    4. evm_revert 恢复
    """

    def __init__(self, fork: AnvilFork, client: ExchangeClient, position: Position, liquidator: str):
        self.fork = fork
        self.client = client
        self.position = position
        self.liquidator = to_checksum_address(liquidator)
        self.mark_lane: Optional[StorageLane] = None
        self.oracle_lane: Optional[StorageLane] = None
        self._snapshot_id: Optional[str] = None

    async def prepare(self) -> None:
        self._snapshot_id = await self.fork.snapshot()
        info = await self.client.get_perpetual_info(self.position.perp_id)
        self.mark_lane = await self._discover_lane("markPNS", info["markPNS"])
        if self.mark_lane is None:
            raise StorageSlotNotFoundError(f"无法定位市场 {self.position.perp_id} 的标记价格存储槽")
        if info["oraclePNS"]:
            self.oracle_lane = await self._discover_lane("oraclePNS", info["oraclePNS"], exclude=self.mark_lane)
        logger.info(f"价格存储槽: mark={self.mark_lane} oracle={self.oracle_lane}")

    async def _discover_lane(self, field: str, current: int,
                             exclude: Optional[StorageLane] = None) -> Optional[StorageLane]:
        address = self.client.exchange_address
        for base in range(MAX_BASE_SLOT):
            root = mapping_slot(self.position.perp_id, base)
            slots = [root + offset for offset in range(MAX_STRUCT_OFFSET)]
            words = await asyncio.gather(*(self.fork.get_storage_at(address, s) for s in slots))
            for slot, word in zip(slots, words):
                if word == 0:
                    continue
                for lane in _candidate_lanes(slot, word, current):
                    if lane != exclude and await self._verify_lane(lane, word, field, current):
                        return lane
        return None

    async def _verify_lane(self, lane: StorageLane, word: int, field: str, current: int) -> bool:
        """写入 current+1 后通过 getPerpetualInfo 读回校验，然后还原"""
        address = self.client.exchange_address
        probe_value = current + 1
        await self.fork.set_storage_at(address, lane.slot, lane.write(word, probe_value))
        try:
            info = await self.client.get_perpetual_info(self.position.perp_id)
            return info[field] == probe_value
        finally:
            await self.fork.set_storage_at(address, lane.slot, word)

    async def _set_price(self, price_pns: int) -> None:
        address = self.client.exchange_address
        for lane in (self.mark_lane, self.oracle_lane):
            if lane is None:
                continue
            word = await self.fork.get_storage_at(address, lane.slot)
            await self.fork.set_storage_at(address, lane.slot, lane.write(word, price_pns))

    def _liquidation_tx(self, price_pns: int) -> Dict:
        return {
            "from": self.liquidator,
            "to": self.client.exchange_address,
            "data": encode_buy_liquidation(
                self.position.perp_id,
                self.position.account_id,
                self.position.lot_lns,
                price_pns,
            ),
        }

    async def is_liquidatable_at(self, price_pns: int) -> bool:
        await self._set_price(price_pns)
        reason = await self.client.call_revert_reason(self._liquidation_tx(price_pns))
        if reason is not None:
            logger.debug(f"价格 {price_pns} 不可清算: {reason}")
        return reason is None

    async def liquidate_at(self, price_pns: int) -> List[DecodedEvent]:
        await self._set_price(price_pns)
        tx_hash = await self.client.send_transaction(self._liquidation_tx(price_pns))
        await self.fork.mine()
        receipt = await self.client.wait_for_receipt(tx_hash)
        if receipt.get("status") != 1:
            raise ForkRuntimeError(f"价格 {price_pns} 下清算交易执行失败")
        return decode_logs(receipt.get("logs", []), self.client.exchange_address)

    async def restore(self) -> None:
        if self._snapshot_id is not None:
            await self.fork.revert(self._snapshot_id)
            self._snapshot_id = None


class ForkLiquidationSolver:
    """
    分叉验证清算价格求解器

    多头向下、空头向上在 ±search_range_pct 内寻找可清算价格，
    然后在 [清算价, 安全价] 区间二分，直到区间宽度 ≤ 容差。
    多头在范围内找不到时扩展到最低价格 1。
    标记价格下已可清算时直接返回，不做扫描和搜索。
    """

    def __init__(self, probe: LiquidationProbe, config: Optional[ForkLiquidationConfig] = None):
        self.probe = probe
        self.config = config or ForkLiquidationConfig()

    async def solve(self, position: Position, market: MarketSnapshot) -> ForkLiquidationResult:
        config = self.config
        timings = ForkTimings()
        started = time.perf_counter()

        side = position.side
        mark_pns = market.mark_pns
        math_price = to_decimal(liquidation_price(
            side,
            scaled(position.price_pns, market.price_decimals),
            scaled(position.lot_lns, market.lot_decimals),
            scaled(position.deposit_cns, market.collateral_decimals),
            Fraction(config.maintenance_margin),
        ))

        step_start = time.perf_counter()
        await self.probe.prepare()
        timings.slot_discovery_ms = (time.perf_counter() - step_start) * 1000

        try:
            already = await self.probe.is_liquidatable_at(mark_pns)

            points: List[ForkPricePoint] = []
            fork_pns: Optional[int] = None
            iterations = 0
            cascade: List[DecodedEvent] = []
            if not already:
                step_start = time.perf_counter()
                points = await self._sweep(market)
                timings.sweep_ms = (time.perf_counter() - step_start) * 1000

                step_start = time.perf_counter()
                fork_pns, iterations = await self._binary_search(side, mark_pns)
                timings.binary_search_ms = (time.perf_counter() - step_start) * 1000

                if fork_pns is not None and config.capture_cascade:
                    events = await self.probe.liquidate_at(fork_pns)
                    cascade = [e for e in events if e.event_name in CASCADE_EVENT_NAMES]
        finally:
            await self.probe.restore()

        timings.total_ms = (time.perf_counter() - started) * 1000

        fork_price = market.price(fork_pns) if fork_pns is not None else None
        divergence_usd = divergence_pct = None
        if fork_price is not None:
            divergence_usd = fork_price - math_price
            if math_price != 0:
                divergence_pct = divergence_usd / math_price * 100

        if fork_pns is None and not already:
            logger.warning(f"在 ±{config.search_range_pct}% 范围内未找到清算边界 (perp={position.perp_id})")

        return ForkLiquidationResult(
            perp_id=position.perp_id,
            account_id=position.account_id,
            side=side,
            entry_price=market.price(position.price_pns),
            size=market.lot(position.lot_lns),
            collateral=market.collateral(position.deposit_cns),
            current_mark_price=market.price(mark_pns),
            already_liquidatable=already,
            converged=fork_pns is not None,
            iterations=iterations,
            fork_liquidation_price=fork_price,
            fork_liquidation_price_pns=fork_pns,
            math_liquidation_price=math_price,
            divergence_usd=divergence_usd,
            divergence_pct=divergence_pct,
            fork_price_points=points,
            cascade_events=cascade,
            timings=timings,
        )

    async def _sweep(self, market: MarketSnapshot) -> List[ForkPricePoint]:
        steps = self.config.sweep_steps
        if steps == 0:
            return []
        mark = Fraction(market.mark_pns)
        r = Fraction(self.config.search_range_pct) / 100
        low = max(Fraction(1), mark * (1 - r))
        high = mark * (1 + r)
        points = []
        for i in range(steps + 1):
            price_pns = max(1, round(low + (high - low) * i / steps))
            points.append(
                ForkPricePoint(
                    price=market.price(price_pns),
                    price_pns=price_pns,
                    is_liquidatable=await self.probe.is_liquidatable_at(price_pns),
                )
            )
        return points

    async def _binary_search(self, side: PositionSide, mark_pns: int) -> Tuple[Optional[int], int]:
        """
        Returns:
            (清算边界价格 PNS，未找到时为 None, 二分迭代次数)
        """
        r = Fraction(self.config.search_range_pct) / 100
        tolerance = max(1, int(mark_pns * Fraction(self.config.tolerance_pct) / 100))

        if side is PositionSide.LONG:
            far = max(1, math.floor(mark_pns * (1 - r)))
            if not await self.probe.is_liquidatable_at(far):
                if far == 1 or not await self.probe.is_liquidatable_at(1):
                    return None, 0
                far = 1
        else:
            far = math.ceil(mark_pns * (1 + r))
            if not await self.probe.is_liquidatable_at(far):
                return None, 0

        liquidatable, safe = far, mark_pns
        iterations = 0
        while abs(safe - liquidatable) > tolerance and iterations < self.config.max_iterations:
            mid = (safe + liquidatable) // 2
            if await self.probe.is_liquidatable_at(mid):
                liquidatable = mid
            else:
                safe = mid
            iterations += 1
        return liquidatable, iterations


async def simulate_fork_liquidation(
    position: Position,
    market: MarketSnapshot,
    probe: LiquidationProbe,
    config: Optional[ForkLiquidationConfig] = None,
) -> ForkLiquidationResult:
    """在给定探测器上求解分叉验证清算价格"""
    return await ForkLiquidationSolver(probe, config).solve(position, market)


async def run_fork_liquidation(
    position: Position,
    market: Optional[MarketSnapshot] = None,
    settings: Optional[Settings] = None,
    config: Optional[ForkLiquidationConfig] = None,
    client_factory: Optional[ClientFactory] = None,
    fork_launcher: Optional[AnvilForkLauncher] = None,
) -> ForkLiquidationResult:
    """
    启动分叉并求解清算价格

    market 为空时从分叉上读取。分叉启动或探测失败直接抛出。
    """
    settings = settings or get_settings()
    config = config or ForkLiquidationConfig.from_settings(settings)
    client_factory = client_factory or (
        lambda rpc_url: ExchangeClient.connect(rpc_url, settings.exchange_address)
    )
    fork_launcher = fork_launcher or AnvilForkLauncher.from_settings(settings)

    async with fork_launcher(settings.rpc_url) as fork:
        client = client_factory(fork.rpc_url)
        if market is None:
            market = await client.get_market_snapshot(position.perp_id)
        probe = AnvilLiquidationProbe(fork, client, position, settings.liquidator_address)
        return await simulate_fork_liquidation(position, market, probe, config)
