"""
清算价格求解（闭式公式）

记号：E 开仓价，S 数量，C 仓位保证金，m 维持保证金率。

    多头：L = (E·S − C) / (S·(1 − m))
    空头：L = (C + E·S) / (S·(1 + m))

结果下限为 0。内部全部使用 Fraction 精确计算，只在输出时转换为 Decimal。
公式不包含手续费与保险基金的影响，二者的偏差由分叉验证求解器度量。
"""

import logging
from decimal import Decimal
from fractions import Fraction
from typing import List, Optional

from ..errors import InvalidInputError
from .models import (
    FundingProjection,
    LiquidationConfig,
    LiquidationResult,
    MarketSnapshot,
    Position,
    PositionSide,
    PricePoint,
)

logger = logging.getLogger(__name__)


def to_decimal(value: Fraction) -> Decimal:
    return Decimal(value.numerator) / Decimal(value.denominator)


def scaled(value: int, decimals: int) -> Fraction:
    return Fraction(value, 10 ** decimals)


# ==================== 基础公式 ====================


def liquidation_price(side: PositionSide, entry: Fraction, size: Fraction,
                      collateral: Fraction, maintenance_margin: Fraction) -> Fraction:
    """闭式清算价格；size ≤ 0 时返回 0"""
    if size <= 0:
        return Fraction(0)
    if side is PositionSide.LONG:
        price = (entry * size - collateral) / (size * (1 - maintenance_margin))
    else:
        price = (collateral + entry * size) / (size * (1 + maintenance_margin))
    return max(price, Fraction(0))


def compute_pnl(side: PositionSide, entry: Fraction, price: Fraction, size: Fraction) -> Fraction:
    diff = price - entry if side is PositionSide.LONG else entry - price
    return diff * size


def margin_ratio(equity: Fraction, notional: Fraction) -> Fraction:
    return equity / notional if notional != 0 else Fraction(0)


def is_liquidatable(equity: Fraction, ratio: Fraction, maintenance_margin: Fraction) -> bool:
    """权益 ≤ 0 或保证金率 ≤ m 即可清算（边界包含在内）"""
    return equity <= 0 or ratio <= maintenance_margin


def price_point(side: PositionSide, entry: Fraction, size: Fraction, collateral: Fraction,
                price: Fraction, maintenance_margin: Fraction) -> PricePoint:
    pnl = compute_pnl(side, entry, price, size)
    equity = collateral + pnl
    notional = price * size
    ratio = margin_ratio(equity, notional)
    leverage = to_decimal(notional / equity) if equity > 0 else None
    return PricePoint(
        price=to_decimal(price),
        pnl=to_decimal(pnl),
        equity=to_decimal(equity),
        margin_ratio=to_decimal(ratio),
        leverage=leverage,
        is_liquidatable=is_liquidatable(equity, ratio, maintenance_margin),
    )


def price_sweep(side: PositionSide, entry: Fraction, size: Fraction, collateral: Fraction,
                mark: Fraction, range_pct: Fraction, steps: int,
                maintenance_margin: Fraction) -> List[PricePoint]:
    """在 [mark·(1−r%), mark·(1+r%)] 上等距取 steps+1 个点，价格升序"""
    low = mark * (1 - range_pct / 100)
    high = mark * (1 + range_pct / 100)
    step = (high - low) / steps
    return [
        price_point(side, entry, size, collateral, low + step * i, maintenance_margin)
        for i in range(steps + 1)
    ]


# ==================== 完整分析 ====================


def simulate_liquidation(
    position: Position,
    market: MarketSnapshot,
    config: Optional[LiquidationConfig] = None,
) -> LiquidationResult:
    """
    闭式清算分析

    Args:
        position: 仓位（链上定点整数）
        market: 市场快照（提供精度、标记价格、资金费率与持仓量）
        config: 分析参数

    Returns:
        LiquidationResult: 清算价格、距离、价格扫描与资金费预测

    Raises:
        InvalidInputError: 仓位数量 ≤ 0 或标记价格为 0
    """
    config = config or LiquidationConfig()
    if position.lot_lns <= 0:
        raise InvalidInputError("仓位数量必须大于 0")
    if market.mark_pns <= 0:
        raise InvalidInputError("标记价格必须大于 0")

    side = position.side
    m = Fraction(config.maintenance_margin)
    entry = scaled(position.price_pns, market.price_decimals)
    size = scaled(position.lot_lns, market.lot_decimals)
    collateral = scaled(position.deposit_cns, market.collateral_decimals)
    mark = scaled(market.mark_pns, market.price_decimals)

    current = price_point(side, entry, size, collateral, mark, m)
    already = current.is_liquidatable

    sweep = price_sweep(
        side, entry, size, collateral, mark,
        Fraction(config.price_range_pct), config.price_steps, m,
    )

    liq_price = distance_usd = distance_pct = None
    if not already:
        liq = liquidation_price(side, entry, size, collateral, m)
        distance = mark - liq if side is PositionSide.LONG else liq - mark
        liq_price = to_decimal(liq)
        distance_usd = to_decimal(distance)
        distance_pct = to_decimal(distance / mark * 100)

    # 资金费：费率为每个周期的百分比，正费率多头支付，负费率空头支付
    rate_pct = Fraction(market.funding_rate_pct100k, 100000)
    pays = rate_pct > 0 if side is PositionSide.LONG else rate_pct < 0
    notional = mark * size
    per_hour_abs = abs(rate_pct / 100) * notional / config.funding_period_hours
    per_hour = per_hour_abs if pays else -per_hour_abs

    projections: List[FundingProjection] = []
    if per_hour != 0 and not already:
        equity = collateral + compute_pnl(side, entry, mark, size)
        horizon = Fraction(config.funding_hours)
        for i in range(1, config.funding_steps + 1):
            hours = horizon * i / config.funding_steps
            accrued = per_hour * hours
            projections.append(
                FundingProjection(
                    hours=to_decimal(hours),
                    accrued_funding=to_decimal(accrued),
                    adjusted_collateral=to_decimal(collateral - accrued),
                    adjusted_equity=to_decimal(equity - accrued),
                    adjusted_liquidation_price=to_decimal(
                        liquidation_price(side, entry, size, collateral - accrued, m)
                    ),
                )
            )

    logger.debug(
        f"清算分析 perp={position.perp_id} side={side.value} "
        f"already={already} liq={liq_price}"
    )

    return LiquidationResult(
        perp_id=position.perp_id,
        market_name=market.name,
        side=side,
        entry_price=to_decimal(entry),
        size=to_decimal(size),
        collateral=to_decimal(collateral),
        mark_price=to_decimal(mark),
        oracle_price=market.price(market.oracle_pns),
        unrealized_pnl=current.pnl,
        equity=current.equity,
        margin_ratio=current.margin_ratio,
        leverage=current.leverage,
        maintenance_margin=config.maintenance_margin,
        already_liquidatable=already,
        liquidation_price=liq_price,
        distance_usd=distance_usd,
        distance_pct=distance_pct,
        price_sweep=sweep,
        funding_rate_pct=to_decimal(rate_pct),
        pays_funding=pays,
        funding_per_hour=to_decimal(per_hour),
        funding_projections=projections,
        long_open_interest=market.lot(market.long_open_interest_lns),
        short_open_interest=market.lot(market.short_open_interest_lns),
    )
