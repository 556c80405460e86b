"""
闭式清算求解测试
"""

from decimal import Decimal
from fractions import Fraction

import pytest

from perpsim.errors import InvalidInputError
from perpsim.simulation.liquidation import (
    compute_pnl,
    liquidation_price,
    price_sweep,
    simulate_liquidation,
)
from perpsim.simulation.models import LiquidationConfig, Position, PositionSide

from conftest import make_market


M = Fraction(1, 20)


def _position(side=PositionSide.LONG, entry=500000, lot=10000, deposit=250_000_000) -> Position:
    # price_decimals=1, lot_decimals=5, collateral_decimals=6
    return Position(perp_id=16, account_id=7, side=side, price_pns=entry, lot_lns=lot, deposit_cns=deposit)


class TestClosedForm:
    """测试闭式公式"""

    def test_long_reference_values(self):
        """测试多头：entry 100000, size 1, collateral 10000"""
        price = liquidation_price(PositionSide.LONG, Fraction(100000), Fraction(1), Fraction(10000), M)
        assert round(float(price), 2) == 94736.84

    def test_short_reference_values(self):
        """测试空头：entry 100000, size 1, collateral 10000"""
        price = liquidation_price(PositionSide.SHORT, Fraction(100000), Fraction(1), Fraction(10000), M)
        assert round(float(price), 2) == 104761.90

    def test_equity_equals_maintenance_at_liquidation_price(self):
        """测试在清算价上 equity = m · notional（精确）"""
        for side, entry, size, collateral in [
            (PositionSide.LONG, Fraction(100000), Fraction(1), Fraction(10000)),
            (PositionSide.SHORT, Fraction(100000), Fraction(1), Fraction(10000)),
            (PositionSide.LONG, Fraction(3000), Fraction(5, 2), Fraction(700)),
            (PositionSide.SHORT, Fraction(27, 10), Fraction(1000), Fraction(333)),
        ]:
            price = liquidation_price(side, entry, size, collateral, M)
            equity = collateral + compute_pnl(side, entry, price, size)
            assert equity == M * price * size

    def test_long_at_entry_boundary(self):
        """测试多头 entry 50000, size 0.1, collateral 250：清算价恰好等于开仓价"""
        price = liquidation_price(PositionSide.LONG, Fraction(50000), Fraction(1, 10), Fraction(250), M)
        assert price == 50000
        equity = Fraction(250) + compute_pnl(PositionSide.LONG, Fraction(50000), price, Fraction(1, 10))
        assert equity / (price * Fraction(1, 10)) == Fraction(1, 20)

    def test_floor_at_zero(self):
        """测试超额保证金的多头清算价下限为 0"""
        price = liquidation_price(PositionSide.LONG, Fraction(100), Fraction(1), Fraction(1000), M)
        assert price == 0

    def test_zero_size(self):
        """测试数量为 0 返回 0"""
        assert liquidation_price(PositionSide.LONG, Fraction(100), Fraction(0), Fraction(10), M) == 0


class TestPriceSweep:
    """测试价格扫描"""

    def test_sweep_endpoints_and_order(self):
        """测试扫描区间端点与升序"""
        points = price_sweep(
            PositionSide.LONG, Fraction(50000), Fraction(1, 10), Fraction(250),
            Fraction(51000), Fraction(30), 60, M,
        )
        assert len(points) == 61
        assert points[0].price == Decimal("35700")
        assert points[-1].price == Decimal("66300")
        prices = [p.price for p in points]
        assert prices == sorted(prices)

    def test_liquidatable_side_of_boundary(self):
        """测试清算价以下可清算、以上不可清算"""
        points = price_sweep(
            PositionSide.LONG, Fraction(50000), Fraction(1, 10), Fraction(250),
            Fraction(51000), Fraction(30), 60, M,
        )
        for point in points:
            assert point.is_liquidatable == (point.price <= 50000)

    @pytest.mark.parametrize("side", [PositionSide.LONG, PositionSide.SHORT])
    def test_boundary_away_from_entry(self, side):
        """测试清算价与开仓价不同：亏损侧越过清算价可清算，开仓价与清算价之间不可清算"""
        entry, size, collateral = Fraction(100000), Fraction(1), Fraction(10000)
        boundary = liquidation_price(side, entry, size, collateral, M)
        assert boundary != entry

        points = price_sweep(side, entry, size, collateral, entry, Fraction(30), 60, M)
        between = 0
        for point in points:
            price = Fraction(point.price)
            if side is PositionSide.LONG:
                expected = price <= boundary
                between += boundary < price < entry
            else:
                expected = price >= boundary
                between += entry < price < boundary
            assert point.is_liquidatable == expected
        assert between > 0

    def test_leverage_absent_when_equity_negative(self):
        """测试权益 ≤ 0 时杠杆为空"""
        points = price_sweep(
            PositionSide.SHORT, Fraction(3000), Fraction(1), Fraction(10),
            Fraction(3200), Fraction(10), 4, M,
        )
        assert all(p.leverage is None for p in points if p.equity <= 0)
        assert all(p.is_liquidatable for p in points if p.equity <= 0)


class TestSimulateLiquidation:
    """测试完整清算分析"""

    def test_long_position(self):
        """测试多头清算价与距离"""
        result = simulate_liquidation(_position(), make_market(mark_pns=510000))

        assert result.already_liquidatable is False
        assert result.liquidation_price == Decimal("50000")
        assert result.liquidation_price <= result.entry_price
        assert result.distance_usd == Decimal("1000")
        assert abs(result.distance_pct - Decimal("1.960784313725490196")) < Decimal("1e-12")
        assert result.unrealized_pnl == Decimal("100")
        assert result.equity == Decimal("350")
        assert len(result.price_sweep) == 61

    def test_short_already_liquidatable(self):
        """测试空头在标记价格下已可清算"""
        position = _position(side=PositionSide.SHORT, entry=30000, lot=100000, deposit=10_000_000)
        result = simulate_liquidation(position, make_market(mark_pns=32000))

        assert result.already_liquidatable is True
        assert result.liquidation_price is None
        assert result.distance_usd is None
        assert result.distance_pct is None
        assert result.funding_projections == []
        assert len(result.price_sweep) == 61
        assert result.leverage is None

    def test_funding_long_pays(self):
        """测试正资金费率下多头支付"""
        market = make_market(mark_pns=510000, funding_rate_pct100k=10)
        result = simulate_liquidation(_position(), market)

        assert result.pays_funding is True
        assert result.funding_rate_pct == Decimal("0.0001")
        assert result.funding_per_hour == Decimal("0.0006375")
        assert [p.hours for p in result.funding_projections] == [Decimal(h) for h in (4, 8, 12, 16, 20, 24)]
        last = result.funding_projections[-1]
        assert last.accrued_funding == Decimal("0.0153")
        assert last.adjusted_collateral == Decimal("249.9847")
        assert last.adjusted_liquidation_price > result.liquidation_price

    def test_funding_short_receives(self):
        """测试正资金费率下空头收取"""
        position = _position(side=PositionSide.SHORT, entry=500000, lot=10000, deposit=2_000_000_000)
        market = make_market(mark_pns=500000, funding_rate_pct100k=10)
        result = simulate_liquidation(position, market)

        assert result.pays_funding is False
        assert result.funding_per_hour < 0
        last = result.funding_projections[-1]
        assert last.adjusted_liquidation_price > result.liquidation_price

    def test_no_funding_no_projections(self):
        """测试零资金费率不生成预测"""
        result = simulate_liquidation(_position(), make_market(funding_rate_pct100k=0))
        assert result.funding_per_hour == 0
        assert result.funding_projections == []

    def test_custom_config(self):
        """测试自定义扫描参数"""
        config = LiquidationConfig(price_range_pct=Decimal("10"), price_steps=4, maintenance_margin=Decimal("0.1"))
        result = simulate_liquidation(_position(deposit=1_000_000_000), make_market(), config)
        assert len(result.price_sweep) == 5
        assert result.price_sweep[0].price == Decimal("45900")
        assert result.maintenance_margin == Decimal("0.1")

    def test_invalid_maintenance_margin(self):
        """测试非法维持保证金率"""
        with pytest.raises(ValueError):
            LiquidationConfig(maintenance_margin=Decimal("1.5"))

    def test_zero_mark_price(self):
        """测试标记价格为 0"""
        with pytest.raises(InvalidInputError):
            simulate_liquidation(_position(), make_market(mark_pns=0))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
