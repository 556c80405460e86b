"""
测试公共夹具：Exchange 客户端、分叉启动器与分叉句柄的内存替身
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import Web3

from perpsim.config import Settings
from perpsim.contracts.abi import EXCHANGE_EVENTS
from perpsim.errors import CallReverted
from perpsim.simulation.models import MarketSnapshot, PositionState


EXCHANGE = "0x9C216D1Ab3e0407b3d6F1d5e9EfFe6d01C326ab7"
CALLER = "0x1234567890123456789012345678901234567890"
DELEGATED = "0x00000000000000000000000000000000000000De"
LIVE_RPC = "http://live.rpc"
FORK_RPC = "http://127.0.0.1:54321"

_codec = Web3().codec
_EVENT_ABIS = {abi["name"]: abi for abi in EXCHANGE_EVENTS}


def make_log(name: str, args: Dict[str, Any], log_index: int = 0, address: str = EXCHANGE) -> Dict[str, Any]:
    """按 Exchange 事件 ABI 编码一条日志"""
    abi = _EVENT_ABIS[name]
    indexed = [i for i in abi["inputs"] if i["indexed"]]
    plain = [i for i in abi["inputs"] if not i["indexed"]]
    topics = [HexBytes(event_abi_to_log_topic(abi))]
    topics += [HexBytes(_codec.encode([i["type"]], [args[i["name"]]])) for i in indexed]
    data = _codec.encode([i["type"] for i in plain], [args[i["name"]] for i in plain])
    return {
        "address": address,
        "topics": topics,
        "data": HexBytes(data),
        "blockHash": HexBytes(b"\x11" * 32),
        "blockNumber": 100,
        "transactionHash": HexBytes(b"\x22" * 32),
        "transactionIndex": 0,
        "logIndex": log_index,
    }


def make_market(**overrides) -> MarketSnapshot:
    values = dict(
        perp_id=16,
        name="BTC",
        symbol="BTC",
        price_decimals=1,
        lot_decimals=5,
        collateral_decimals=6,
        mark_pns=510000,
        oracle_pns=510000,
    )
    values.update(overrides)
    return MarketSnapshot(**values)


class FakeExchangeClient:
    """
    Exchange 客户端替身

    states[0] 为交易前账户状态，发送交易后切换到 states[1]。
    """

    def __init__(
        self,
        revert_reason: Optional[str] = None,
        gas_estimate: Optional[int] = 210_000,
        states: Optional[List[Dict[str, Any]]] = None,
        receipt: Optional[Dict[str, Any]] = None,
        market: Optional[MarketSnapshot] = None,
        tx: Optional[Dict[str, Any]] = None,
        delegated: bool = False,
        call_revert: Optional[str] = None,
        fail_on: Optional[str] = None,
    ):
        self.exchange_address = EXCHANGE
        self.revert_reason = revert_reason
        self.gas_estimate = gas_estimate
        self.states = states or [
            {"accountId": 7, "balanceCNS": 1_000_000_000, "lockedBalanceCNS": 0, "position": None, "eth": 10**18},
        ]
        self.receipt = receipt or {"status": 1, "gasUsed": 150_000, "effectiveGasPrice": 2, "blockNumber": 101, "logs": []}
        self.market = market
        self.tx = tx
        self.delegated = delegated
        self.call_revert = call_revert
        self.fail_on = fail_on
        self.sent: List[Dict[str, Any]] = []
        self.snapshot_addresses: List[str] = []

    def _maybe_fail(self, name: str) -> None:
        if self.fail_on == name:
            raise RuntimeError(f"{name} failed")

    @property
    def _state(self) -> Dict[str, Any]:
        return self.states[min(len(self.sent), len(self.states) - 1)]

    async def simulate_exec_order(self, order, caller):
        self._maybe_fail("simulate_exec_order")
        if self.revert_reason is not None:
            raise CallReverted(self.revert_reason)
        return order.perp_id, 42

    async def estimate_exec_order_gas(self, order, caller):
        if self.gas_estimate is None:
            raise RuntimeError("estimate failed")
        return self.gas_estimate

    async def get_account_by_addr(self, address):
        self._maybe_fail("get_account_by_addr")
        self.snapshot_addresses.append(address)
        state = self._state
        return {
            "accountId": state["accountId"],
            "balanceCNS": state["balanceCNS"],
            "lockedBalanceCNS": state["lockedBalanceCNS"],
        }

    async def get_eth_balance(self, address):
        return self._state["eth"]

    async def get_position(self, perp_id, account_id):
        position = self._state["position"]
        return (PositionState(**position) if position else None), 510000, True

    async def get_market_snapshot(self, perp_id, collateral_decimals=6):
        if self.market is None:
            raise RuntimeError("no market")
        return self.market

    async def send_transaction(self, tx):
        self._maybe_fail("send_transaction")
        self.sent.append(tx)
        return HexBytes(b"\xab" * 32)

    async def wait_for_receipt(self, tx_hash, timeout=30):
        return self.receipt

    async def get_transaction(self, tx_hash):
        return self.tx

    async def get_transaction_receipt(self, tx_hash):
        return self.receipt

    async def is_delegated_account(self, address):
        return self.delegated

    async def call_revert_reason(self, tx):
        return self.call_revert


class FakeFork:
    """Anvil 分叉句柄替身"""

    def __init__(self):
        self.rpc_url = FORK_RPC
        self.mined = 0

    async def mine(self, blocks: int = 1):
        self.mined += blocks


class FakeForkLauncher:
    """记录启动/停止次数的分叉启动器替身"""

    def __init__(self, available: bool = True, start_error: Optional[Exception] = None):
        self.available = available
        self.start_error = start_error
        self.starts = 0
        self.stops = 0
        self.fork_blocks: List[Optional[int]] = []
        self.fork = FakeFork()

    async def is_available(self) -> bool:
        return self.available

    @asynccontextmanager
    async def __call__(self, fork_url: str, fork_block: Optional[int] = None):
        self.fork_blocks.append(fork_block)
        if self.start_error is not None:
            raise self.start_error
        self.starts += 1
        try:
            yield self.fork
        finally:
            self.stops += 1


def client_factory(live: FakeExchangeClient, fork: Optional[FakeExchangeClient] = None):
    clients = {LIVE_RPC: live, FORK_RPC: fork or live}
    return lambda rpc_url: clients[rpc_url]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        MONAD_RPC_URL=LIVE_RPC,
        EXCHANGE_ADDRESS=EXCHANGE,
        ACCOUNT_ADDRESS=CALLER,
    )
