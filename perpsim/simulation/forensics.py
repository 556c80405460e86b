"""
交易取证

在交易所在区块的父区块上分叉，模拟发送者重放历史交易，结合执行前后的账户
状态与解码后的事件，解释交易为何成功、部分成交或失败。
"""

import asyncio
import logging
import re
from fractions import Fraction
from typing import Any, Dict, List, Optional, Tuple

import httpx
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3.exceptions import Web3Exception

from ..config import Settings, get_settings
from ..errors import InvalidInputError, PerpSimError
from .anvil import AnvilForkLauncher
from .dry_run import ClientFactory
from .exchange import ExchangeClient, decode_exchange_calldata, decode_logs
from .liquidation import to_decimal
from .models import (
    DecodedEvent,
    FailureAnalysis,
    FailureCategory,
    ForensicsResult,
    MarketSnapshot,
    MatchRecord,
)
from .snapshot import diff_snapshots, snapshot_account

logger = logging.getLogger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")

# 市场 ID 到名称
PERP_NAMES: Dict[int, str] = {
    16: "BTC",
    32: "ETH",
    48: "SOL",
    64: "MON",
    256: "ZEC",
}

# (匹配模式, 分类, 解释, 建议, 是否撮合失败)
REVERT_REASONS: List[Tuple[re.Pattern, FailureCategory, str, Optional[str], bool]] = [
    (
        re.compile(r"InsufficientBalance", re.IGNORECASE),
        FailureCategory.INSUFFICIENT_BALANCE,
        "保证金不足，无法完成该笔交易",
        "交易前先存入更多保证金",
        False,
    ),
    (
        re.compile(r"PriceTolerance", re.IGNORECASE),
        FailureCategory.PRICE_TOLERANCE,
        "订单价格偏离参考价格超出允许范围",
        "调整限价，使其更接近标记价格",
        False,
    ),
    (
        re.compile(r"OrderNotFound", re.IGNORECASE),
        FailureCategory.ORDER_NOT_FOUND,
        "目标订单不存在（可能已成交或已撤销）",
        "撤单/改单前先确认订单仍在订单簿上",
        False,
    ),
    (
        re.compile(r"PostOnlyFailed", re.IGNORECASE),
        FailureCategory.POST_ONLY_FAILED,
        "Post-only 订单会立即成交",
        "去掉 post-only 标志或调整限价",
        True,
    ),
    (
        re.compile(r"FillOrKillFailed", re.IGNORECASE),
        FailureCategory.FILL_OR_KILL_FAILED,
        "订单无法全部成交",
        "改用 IOC，或买单提高限价、卖单降低限价",
        True,
    ),
    (
        re.compile(r"OrderExpired", re.IGNORECASE),
        FailureCategory.ORDER_EXPIRED,
        "订单在执行前已过期",
        "设置更晚的过期区块，或使用 0 表示不过期",
        False,
    ),
    (
        re.compile(r"InvalidOrder", re.IGNORECASE),
        FailureCategory.INVALID_ORDER,
        "订单参数无效",
        None,
        False,
    ),
    (
        re.compile(r"Paused", re.IGNORECASE),
        FailureCategory.PAUSED,
        "该永续合约市场当前处于暂停状态",
        "等待市场恢复",
        False,
    ),
]


# ==================== 纯函数 ====================


def classify_revert(reason: str) -> FailureAnalysis:
    """把 revert 原因映射为可读的失败分析"""
    for pattern, category, explanation, suggestion, matching in REVERT_REASONS:
        if pattern.search(reason):
            return FailureAnalysis(
                category=category,
                reason=reason,
                explanation=explanation,
                suggestion=suggestion,
                is_matching_failure=matching,
            )
    return FailureAnalysis(
        category=FailureCategory.UNKNOWN,
        reason=reason,
        explanation=f"Transaction reverted with: {reason}",
    )


def extract_matches(events: List[DecodedEvent], market: Optional[MarketSnapshot] = None) -> List[MatchRecord]:
    """从 MakerOrderFilled 事件中提取成交记录"""
    matches = []
    for event in events:
        if event.event_name != "MakerOrderFilled":
            continue
        args = event.args
        matches.append(
            MatchRecord(
                maker_account_id=args["accountId"],
                maker_order_id=args["orderId"],
                price_pns=args["pricePNS"],
                lot_lns=args["lotLNS"],
                fee_cns=args["feeCNS"],
                price=market.price(args["pricePNS"]) if market else None,
                lot=market.lot(args["lotLNS"]) if market else None,
            )
        )
    return matches


def average_fill_price(matches: List[MatchRecord]) -> Optional[Fraction]:
    """按数量加权的成交均价（PNS）；无成交返回 None"""
    total_lot = sum(m.lot_lns for m in matches)
    if total_lot == 0:
        return None
    return Fraction(sum(m.price_pns * m.lot_lns for m in matches), total_lot)


def resolve_perp_id(decoded_orders: List[Dict[str, Any]], events: List[DecodedEvent]) -> Optional[int]:
    """优先从 calldata 中取市场 ID，否则从 OrderRequest 事件中取"""
    for order in decoded_orders:
        if "perpId" in order:
            return int(order["perpId"])
    for event in events:
        if event.event_name == "OrderRequest":
            return int(event.args["perpId"])
    return None


# ==================== 取证流程 ====================


class TransactionForensics:
    """
    历史交易取证

    流程：
    1. 并发获取交易与收据，识别是否经由 DelegatedAccount 发起
    2. 解码 calldata 与原始事件
    3. 在父区块分叉，记录执行前状态；原交易失败时先用 eth_call 取回 revert 原因
    4. 模拟发送者以原 gas 上限重放，记录执行后状态与事件
    5. 失败分类、成交提取与均价计算
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

    async def analyze(self, tx_hash: str) -> ForensicsResult:
        """
        分析一笔历史交易

        Raises:
            InvalidInputError: 交易哈希格式错误或交易不存在
            ToolingUnavailableError: 无法启动分叉
        """
        if not TX_HASH_PATTERN.match(tx_hash or ""):
            raise InvalidInputError(f"无效的交易哈希: {tx_hash}")

        live = self.client_factory(self.settings.rpc_url)
        tx, receipt = await asyncio.gather(
            live.get_transaction(tx_hash),
            live.get_transaction_receipt(tx_hash),
        )

        tx_from = to_checksum_address(tx["from"])
        tx_to = to_checksum_address(tx["to"]) if tx.get("to") else None
        block_number = receipt["blockNumber"]
        original_success = receipt.get("status") == 1

        is_delegated = bool(tx_to) and await live.is_delegated_account(tx_to)
        # 经由 DelegatedAccount 时，Exchange 视角下的账户是代理合约本身
        account_address = tx_to if is_delegated else tx_from

        decoded_input = decode_exchange_calldata(tx.get("input"))
        original_events = decode_logs(receipt.get("logs", []), live.exchange_address)
        perp_id = resolve_perp_id(decoded_input.orders if decoded_input else [], original_events)

        logger.info(
            f"取证 {tx_hash}: block={block_number} success={original_success} "
            f"delegated={is_delegated} perp={perp_id}"
        )

        result = dict(
            tx_hash=tx_hash,
            block_number=block_number,
            tx_from=tx_from,
            tx_to=tx_to,
            is_delegated=is_delegated,
            account_address=account_address,
            decoded_input=decoded_input,
            perp_id=perp_id,
            perp_name=PERP_NAMES.get(perp_id) if perp_id is not None else None,
            original_success=original_success,
            original_gas_used=receipt.get("gasUsed", 0),
            original_events=original_events,
        )

        replay_tx = {
            "from": tx_from,
            "to": tx_to,
            "data": HexBytes(tx.get("input") or b"").hex(),
            "value": tx.get("value", 0),
            "gas": tx.get("gas"),
        }
        if not replay_tx["data"].startswith("0x"):
            replay_tx["data"] = "0x" + replay_tx["data"]

        async with self.fork_launcher(self.settings.rpc_url, fork_block=block_number - 1) as fork:
            client = self.client_factory(fork.rpc_url)

            pre = post = market = None
            if perp_id is not None:
                pre = await snapshot_account(client, account_address, perp_id)
                try:
                    market = await client.get_market_snapshot(perp_id)
                except Exception as e:
                    logger.debug(f"获取市场信息失败（非关键）: {e}")
                if market is not None and market.name:
                    result["perp_name"] = market.name

            failure = None
            if not original_success:
                reason = await client.call_revert_reason(replay_tx)
                failure = classify_revert(reason or "unknown revert")

            replay_success = False
            replay_gas_used = None
            replay_events: List[DecodedEvent] = []
            replay_error = None
            try:
                replay_hash = await client.send_transaction(replay_tx)
                await fork.mine()
                replay_receipt = await client.wait_for_receipt(
                    replay_hash, timeout=self.settings.receipt_timeout_seconds
                )
                replay_success = replay_receipt.get("status") == 1
                replay_gas_used = replay_receipt.get("gasUsed")
                replay_events = decode_logs(replay_receipt.get("logs", []), client.exchange_address)
            except (Web3Exception, PerpSimError, httpx.HTTPError) as e:
                logger.warning(f"分叉重放失败: {e}")
                replay_error = str(e)

            if perp_id is not None:
                post = await snapshot_account(client, account_address, perp_id)

        matches = extract_matches(original_events, market) if original_success else []
        avg = average_fill_price(matches)
        average_price = None
        if avg is not None and market is not None:
            average_price = market.price(1) * to_decimal(avg)

        return ForensicsResult(
            **result,
            replay_success=replay_success,
            replay_gas_used=replay_gas_used,
            replay_events=replay_events,
            replay_error=replay_error,
            pre=pre,
            post=post,
            diff=diff_snapshots(pre, post) if pre and post else None,
            market=market,
            matches=matches,
            total_filled_lns=sum(m.lot_lns for m in matches),
            average_fill_price=average_price,
            failure=failure,
        )


async def analyze_transaction(
    tx_hash: str,
    settings: Optional[Settings] = None,
    client_factory: Optional[ClientFactory] = None,
    fork_launcher: Optional[AnvilForkLauncher] = None,
) -> ForensicsResult:
    """分析一笔历史交易（TransactionForensics 的快捷入口）"""
    forensics = TransactionForensics(settings, client_factory=client_factory, fork_launcher=fork_launcher)
    return await forensics.analyze(tx_hash)
