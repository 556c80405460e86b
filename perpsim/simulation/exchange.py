"""
Exchange 合约客户端

对 Exchange 合约的只读查询、eth_call 预演、交易发送与日志/calldata/revert 解码。
同一个客户端既可以指向真实 RPC，也可以指向 Anvil 分叉。
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from eth_utils import event_abi_to_log_topic, function_signature_to_4byte_selector, to_checksum_address
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractCustomError,
    ContractLogicError,
    MismatchedABI,
    TimeExhausted,
    Web3Exception,
)

from ..errors import CallReverted, ForkRuntimeError, TransactionLookupError
from .models import (
    DecodedEvent,
    DecodedTxInput,
    MarketSnapshot,
    OrderIntent,
    PositionSide,
    PositionState,
)
from ..contracts.abi import (
    ACCOUNT_INFO_COMPONENTS,
    DELEGATED_ACCOUNT_ABI,
    EXCHANGE_ABI,
    EXCHANGE_ERRORS,
    EXCHANGE_EVENTS,
    ORDER_DESC_COMPONENTS,
    PERPETUAL_INFO_COMPONENTS,
    POSITION_INFO_COMPONENTS,
)

logger = logging.getLogger(__name__)


# 离线解码器：不需要 provider
_offline = Web3()
_decoder = _offline.eth.contract(abi=EXCHANGE_ABI)

_EVENT_BY_TOPIC: Dict[bytes, str] = {
    bytes(event_abi_to_log_topic(abi)): abi["name"] for abi in EXCHANGE_EVENTS
}

_ERROR_BY_SELECTOR: Dict[str, str] = {
    "0x" + function_signature_to_4byte_selector(
        f"{abi['name']}({','.join(i['type'] for i in abi['inputs'])})"
    ).hex(): abi["name"]
    for abi in EXCHANGE_ERRORS
}


def _named(components: List[Dict[str, Any]], value: Any) -> Dict[str, Any]:
    """把 ABI tuple 解码结果转为 {字段名: 值}"""
    if isinstance(value, dict) or hasattr(value, "items"):
        return dict(value.items())
    return {c["name"]: v for c, v in zip(components, value)}


# ==================== 编解码 ====================


def encode_exec_order(order: OrderIntent) -> str:
    """编码 execOrder calldata"""
    return _decoder.encode_abi("execOrder", args=[order.to_abi_tuple()])


def encode_buy_liquidation(perp_id: int, account_id: int, lot_lns: int, limit_price_pns: int,
                           leverage_hdths: int = 100) -> str:
    """编码单笔 buyLiquidations calldata（revertOnFail=true）"""
    desc = (perp_id, account_id, lot_lns, leverage_hdths, limit_price_pns)
    return _decoder.encode_abi("buyLiquidations", args=[[desc], True])


def decode_exchange_calldata(data: Any) -> Optional[DecodedTxInput]:
    """
    解码 Exchange calldata

    Returns:
        无法识别的 selector 返回 None
    """
    if not data:
        return None
    try:
        func, params = _decoder.decode_function_input(HexBytes(data))
    except (ValueError, MismatchedABI, Web3Exception) as e:
        logger.debug(f"calldata 无法识别: {e}")
        return None

    name = func.fn_name
    orders: List[Dict[str, Any]] = []
    if name == "execOrder":
        orders = [_named(ORDER_DESC_COMPONENTS, params["orderDesc"])]
    elif name == "execOrders":
        orders = [_named(ORDER_DESC_COMPONENTS, o) for o in params["orderDescs"]]
    return DecodedTxInput(function_name=name, args=dict(params), orders=orders)


def decode_logs(logs: List[Any], exchange_address: Optional[str] = None) -> List[DecodedEvent]:
    """解码 Exchange 事件，无法识别的日志直接跳过"""
    events: List[DecodedEvent] = []
    for log in logs:
        topics = log.get("topics") or []
        if not topics:
            continue
        if exchange_address and log.get("address", "").lower() != exchange_address.lower():
            continue
        name = _EVENT_BY_TOPIC.get(bytes(HexBytes(topics[0])))
        if name is None:
            continue
        try:
            decoded = getattr(_decoder.events, name)().process_log(log)
        except (MismatchedABI, ValueError) as e:
            logger.debug(f"事件 {name} 解码失败: {e}")
            continue
        events.append(
            DecodedEvent(
                event_name=name,
                address=log.get("address", ""),
                log_index=log.get("logIndex", 0) or 0,
                args=dict(decoded["args"]),
            )
        )
    return events


def revert_reason_from_exception(exc: Exception) -> str:
    """从 web3 异常中提取 revert 原因，自定义错误解析为错误名"""
    if isinstance(exc, ContractCustomError):
        data = getattr(exc, "data", None) or (exc.args[0] if exc.args else "")
        if isinstance(data, (bytes, bytearray)):
            data = "0x" + bytes(data).hex()
        selector = str(data)[:10].lower()
        return _ERROR_BY_SELECTOR.get(selector, f"custom error {selector}")
    if isinstance(exc, ContractLogicError):
        message = getattr(exc, "message", None) or str(exc)
        prefix = "execution reverted: "
        if message.startswith(prefix):
            message = message[len(prefix):]
        return message
    return str(exc)


# ==================== 客户端 ====================


class ExchangeClient:
    """
    Exchange 合约异步客户端

    功能：
    - 账户、仓位、市场信息查询
    - execOrder 的 eth_call 预演与 gas 估算
    - 交易、收据查询与发送
    """

    def __init__(self, w3: AsyncWeb3, exchange_address: str):
        self.w3 = w3
        self.exchange_address = to_checksum_address(exchange_address)
        self.contract = w3.eth.contract(address=self.exchange_address, abi=EXCHANGE_ABI)

    @classmethod
    def connect(cls, rpc_url: str, exchange_address: str) -> "ExchangeClient":
        """基于 HTTP RPC 创建客户端"""
        return cls(AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url)), exchange_address)

    # ==================== 账户与仓位 ====================

    async def get_account_by_addr(self, address: str) -> Dict[str, Any]:
        raw = await self.contract.functions.getAccountByAddr(to_checksum_address(address)).call()
        return _named(ACCOUNT_INFO_COMPONENTS, raw)

    async def get_position(self, perp_id: int, account_id: int) -> Tuple[Optional[PositionState], int, bool]:
        """
        查询仓位

        Returns:
            (仓位（数量为 0 时为 None）, 标记价格 PNS, 标记价格是否有效)
        """
        info, mark_pns, mark_valid = await self.contract.functions.getPosition(perp_id, account_id).call()
        info = _named(POSITION_INFO_COMPONENTS, info)
        if info["lotLNS"] == 0:
            return None, mark_pns, mark_valid
        position = PositionState(
            side=PositionSide.from_chain(info["positionType"]),
            lot_lns=info["lotLNS"],
            price_pns=info["pricePNS"],
            deposit_cns=info["depositCNS"],
            pnl_cns=info["pnlCNS"],
        )
        return position, mark_pns, mark_valid

    async def get_eth_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(to_checksum_address(address))

    # ==================== 市场信息 ====================

    async def get_perpetual_info(self, perp_id: int) -> Dict[str, Any]:
        raw = await self.contract.functions.getPerpetualInfo(perp_id).call()
        return _named(PERPETUAL_INFO_COMPONENTS, raw)

    async def get_market_snapshot(self, perp_id: int, collateral_decimals: int = 6) -> MarketSnapshot:
        """并发查询市场信息与手续费，手续费查询失败不影响结果"""
        info, taker_fee, maker_fee = await asyncio.gather(
            self.get_perpetual_info(perp_id),
            self.contract.functions.getTakerFee(perp_id).call(),
            self.contract.functions.getMakerFee(perp_id).call(),
            return_exceptions=True,
        )
        if isinstance(info, BaseException):
            raise info
        if isinstance(taker_fee, BaseException):
            logger.debug(f"获取 taker 费率失败: {taker_fee}")
            taker_fee = None
        if isinstance(maker_fee, BaseException):
            logger.debug(f"获取 maker 费率失败: {maker_fee}")
            maker_fee = None
        return market_snapshot_from_info(perp_id, info, collateral_decimals, taker_fee, maker_fee)

    # ==================== 下单预演 ====================

    async def simulate_exec_order(self, order: OrderIntent, caller: str) -> Tuple[int, int]:
        """
        eth_call 预演 execOrder

        Returns:
            (perp_id, order_id)

        Raises:
            CallReverted: 合约 revert
        """
        try:
            result = await self.contract.functions.execOrder(order.to_abi_tuple()).call(
                {"from": to_checksum_address(caller)}
            )
        except (ContractLogicError, ContractCustomError) as e:
            raise CallReverted(revert_reason_from_exception(e)) from e
        signature = _named([{"name": "perpId"}, {"name": "orderId"}], result)
        return signature["perpId"], signature["orderId"]

    async def estimate_exec_order_gas(self, order: OrderIntent, caller: str) -> int:
        return await self.contract.functions.execOrder(order.to_abi_tuple()).estimate_gas(
            {"from": to_checksum_address(caller)}
        )

    async def call_revert_reason(self, tx: Dict[str, Any]) -> Optional[str]:
        """以 eth_call 重放交易载荷，成功返回 None，revert 返回原因"""
        try:
            await self.w3.eth.call(tx)
        except (ContractLogicError, ContractCustomError) as e:
            return revert_reason_from_exception(e)
        return None

    async def is_delegated_account(self, address: str) -> bool:
        """目标合约是否为绑定当前 Exchange 的 DelegatedAccount"""
        address = to_checksum_address(address)
        if address == self.exchange_address:
            return False
        delegated = self.w3.eth.contract(address=address, abi=DELEGATED_ACCOUNT_ABI)
        try:
            exchange = await delegated.functions.exchange().call()
        except (ContractLogicError, BadFunctionCallOutput, Web3Exception) as e:
            logger.debug(f"{address} 不是 DelegatedAccount: {e}")
            return False
        return str(exchange).lower() == self.exchange_address.lower()

    # ==================== 交易 ====================

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        try:
            return dict(await self.w3.eth.get_transaction(tx_hash))
        except Web3Exception as e:
            raise TransactionLookupError(f"交易不存在: {tx_hash}") from e

    async def get_transaction_receipt(self, tx_hash: Any) -> Dict[str, Any]:
        try:
            return dict(await self.w3.eth.get_transaction_receipt(tx_hash))
        except Web3Exception as e:
            raise TransactionLookupError(f"交易收据不存在: {HexBytes(tx_hash).hex()}") from e

    async def send_transaction(self, tx: Dict[str, Any]) -> HexBytes:
        return HexBytes(await self.w3.eth.send_transaction(tx))

    async def wait_for_receipt(self, tx_hash: Any, timeout: float = 30) -> Dict[str, Any]:
        try:
            return dict(await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout))
        except TimeExhausted as e:
            raise ForkRuntimeError(f"等待交易收据超时: {HexBytes(tx_hash).hex()}") from e


def market_snapshot_from_info(
    perp_id: int,
    info: Dict[str, Any],
    collateral_decimals: int = 6,
    taker_fee: Optional[int] = None,
    maker_fee: Optional[int] = None,
) -> MarketSnapshot:
    """getPerpetualInfo 结果转为 MarketSnapshot"""
    return MarketSnapshot(
        perp_id=perp_id,
        name=info["name"],
        symbol=info["symbol"],
        price_decimals=info["priceDecimals"],
        lot_decimals=info["lotDecimals"],
        collateral_decimals=collateral_decimals,
        mark_pns=info["markPNS"],
        mark_timestamp=info["markTimestamp"],
        oracle_pns=info["oraclePNS"],
        base_price_pns=info["basePricePNS"],
        funding_rate_pct100k=info["fundingRatePct100k"],
        funding_start_block=info["fundingStartBlock"],
        long_open_interest_lns=info["longOpenInterestLNS"],
        short_open_interest_lns=info["shortOpenInterestLNS"],
        paused=info["paused"],
        taker_fee=taker_fee,
        maker_fee=maker_fee,
    )
