"""
交易预演测试
"""

import pytest

from perpsim.config import Settings
from perpsim.errors import AnvilStartupTimeoutError, InvalidInputError
from perpsim.simulation.dry_run import TradeSimulator, resolve_caller
from perpsim.simulation.models import ForkStatus, OrderIntent, OrderKind, PositionSide, PositionState

from conftest import (
    CALLER,
    EXCHANGE,
    LIVE_RPC,
    FakeExchangeClient,
    FakeForkLauncher,
    client_factory,
    make_log,
    make_market,
)


ORDER = OrderIntent(perp_id=16, kind=OrderKind.OPEN_LONG, price_pns=500000, lot_lns=10000, leverage_hdths=1000)

POSITION = PositionState(side=PositionSide.LONG, lot_lns=10000, price_pns=500000, deposit_cns=5_000_000, pnl_cns=0)


def _fork_client(**kwargs) -> FakeExchangeClient:
    states = [
        {"accountId": 7, "balanceCNS": 100_000_000, "lockedBalanceCNS": 0, "position": None, "eth": 10**18},
        {"accountId": 7, "balanceCNS": 95_000_000, "lockedBalanceCNS": 0, "position": POSITION.model_dump(), "eth": 10**18 - 300_000},
    ]
    logs = [
        make_log("OrderRequest", {"perpId": 16, "accountId": 7, "orderDescId": 0, "orderType": 0, "pricePNS": 500000, "lotLNS": 10000}, 0),
        make_log("MakerOrderFilled", {
            "perpId": 16, "accountId": 3, "orderId": 11, "pricePNS": 500000, "lotLNS": 10000,
            "feeCNS": 100, "lockedBalanceCNS": 0, "amountCNS": 0, "balanceCNS": 0,
        }, 1),
    ]
    receipt = {"status": 1, "gasUsed": 150_000, "effectiveGasPrice": 2, "blockNumber": 101, "logs": logs}
    return FakeExchangeClient(states=states, receipt=receipt, market=make_market(), **kwargs)


def _simulator(settings, live, fork_client=None, launcher=None) -> TradeSimulator:
    return TradeSimulator(
        settings,
        client_factory=client_factory(live, fork_client),
        fork_launcher=launcher or FakeForkLauncher(),
    )


class TestCallOnlyPhase:
    """测试 eth_call 阶段"""

    @pytest.mark.asyncio
    async def test_predicted_revert_skips_fork(self, settings):
        """测试 eth_call revert 时不启动分叉"""
        launcher = FakeForkLauncher()
        simulator = _simulator(settings, FakeExchangeClient(revert_reason="InsufficientBalance"), launcher=launcher)

        result = await simulator.simulate_trade(ORDER)

        assert result.call_only.success is False
        assert result.call_only.revert_reason == "InsufficientBalance"
        assert result.fork_status is ForkStatus.SKIPPED_PREDICTED_REVERT
        assert result.fork_replay is None
        assert launcher.starts == 0

    @pytest.mark.asyncio
    async def test_gas_estimate_failure_is_not_fatal(self, settings):
        """测试 gas 估算失败不影响结果"""
        launcher = FakeForkLauncher(available=False)
        simulator = _simulator(settings, FakeExchangeClient(gas_estimate=None), launcher=launcher)

        result = await simulator.simulate_trade(ORDER)

        assert result.call_only.success is True
        assert result.call_only.order_id == 42
        assert result.call_only.gas_estimate is None


class TestDegradation:
    """测试分叉阶段降级"""

    @pytest.mark.asyncio
    async def test_tooling_unavailable(self, settings):
        """测试 anvil 不可用时只返回 eth_call 结果"""
        launcher = FakeForkLauncher(available=False)
        simulator = _simulator(settings, FakeExchangeClient(), launcher=launcher)

        result = await simulator.simulate_trade(ORDER)

        assert result.call_only.success is True
        assert result.call_only.gas_estimate == 210_000
        assert result.fork_replay is None
        assert result.fork_status is ForkStatus.TOOLING_UNAVAILABLE
        assert launcher.starts == 0

    @pytest.mark.asyncio
    async def test_startup_failure(self, settings):
        """测试 anvil 启动超时降级"""
        launcher = FakeForkLauncher(start_error=AnvilStartupTimeoutError(30))
        simulator = _simulator(settings, FakeExchangeClient(), launcher=launcher)

        result = await simulator.simulate_trade(ORDER)

        assert result.fork_status is ForkStatus.TOOLING_UNAVAILABLE
        assert "timed out" in result.fork_error
        assert result.call_only.success is True

    @pytest.mark.asyncio
    async def test_fork_step_failure_stops_fork_once(self, settings):
        """测试分叉步骤抛错时降级且进程只停止一次"""
        launcher = FakeForkLauncher()
        fork_client = _fork_client(fail_on="send_transaction")
        simulator = _simulator(settings, FakeExchangeClient(), fork_client, launcher)

        result = await simulator.simulate_trade(ORDER)

        assert result.fork_status is ForkStatus.FORK_FAILED
        assert result.fork_replay is None
        assert "send_transaction failed" in result.fork_error
        assert launcher.starts == 1
        assert launcher.stops == 1

    @pytest.mark.asyncio
    async def test_reverted_replay_is_fork_failure(self, settings):
        """测试分叉上交易 revert 时降级"""
        launcher = FakeForkLauncher()
        fork_client = _fork_client()
        fork_client.receipt = {"status": 0, "gasUsed": 30_000, "effectiveGasPrice": 1, "blockNumber": 101, "logs": []}
        simulator = _simulator(settings, FakeExchangeClient(), fork_client, launcher)

        result = await simulator.simulate_trade(ORDER)

        assert result.fork_status is ForkStatus.FORK_FAILED
        assert launcher.stops == 1


class TestForkReplay:
    """测试分叉重放"""

    @pytest.mark.asyncio
    async def test_replay(self, settings):
        """测试完整的分叉重放结果"""
        launcher = FakeForkLauncher()
        fork_client = _fork_client()
        simulator = _simulator(settings, FakeExchangeClient(), fork_client, launcher)

        result = await simulator.simulate_trade(ORDER)

        assert result.fork_status is ForkStatus.REPLAYED
        replay = result.fork_replay
        assert replay is not None
        assert replay.gas_used == 150_000
        assert replay.gas_cost_wei == 300_000
        assert replay.pre.position is None
        assert replay.post.position == POSITION
        assert replay.diff.position_opened
        assert replay.diff.balance_delta_cns == -5_000_000
        assert [e.event_name for e in replay.events] == ["OrderRequest", "MakerOrderFilled"]
        assert replay.events[1].args["orderId"] == 11
        assert replay.market is not None and replay.market.name == "BTC"

        assert launcher.fork_blocks == [None]
        assert launcher.stops == 1
        assert launcher.fork.mined == 1

        sent = fork_client.sent[0]
        assert sent["from"] == CALLER
        assert sent["to"] == EXCHANGE

    @pytest.mark.asyncio
    async def test_market_lookup_failure_is_not_fatal(self, settings):
        """测试市场信息查询失败不影响重放结果"""
        fork_client = _fork_client()
        fork_client.market = None
        simulator = _simulator(settings, FakeExchangeClient(), fork_client)

        result = await simulator.simulate_trade(ORDER)

        assert result.fork_status is ForkStatus.REPLAYED
        assert result.fork_replay.market is None


class TestCallerIdentity:
    """测试调用者身份"""

    def test_private_key(self):
        """测试由私钥推导地址"""
        settings = Settings(
            _env_file=None,
            OWNER_PRIVATE_KEY="0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
        )
        assert resolve_caller(settings) == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

    @pytest.mark.asyncio
    async def test_missing_identity(self):
        """测试未配置调用者"""
        settings = Settings(_env_file=None, MONAD_RPC_URL=LIVE_RPC)
        simulator = _simulator(settings, FakeExchangeClient())
        with pytest.raises(InvalidInputError):
            await simulator.simulate_trade(ORDER)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
