"""
账户快照与差异计算
"""

import asyncio
import logging

from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from .exchange import ExchangeClient
from .models import AccountDiff, AccountSnapshot

logger = logging.getLogger(__name__)


async def snapshot_account(client: ExchangeClient, address: str, perp_id: int) -> AccountSnapshot:
    """
    读取账户在指定市场上的状态

    未注册账户（accountId 为 0）返回空仓位；仓位查询 revert 视为无仓位。
    """
    account, eth_balance = await asyncio.gather(
        client.get_account_by_addr(address),
        client.get_eth_balance(address),
    )
    account_id = account["accountId"]

    position = None
    if account_id > 0:
        try:
            position, _, _ = await client.get_position(perp_id, account_id)
        except (ContractLogicError, BadFunctionCallOutput) as e:
            logger.debug(f"账户 {account_id} 在市场 {perp_id} 无仓位: {e}")

    return AccountSnapshot(
        account_id=account_id,
        balance_cns=account["balanceCNS"],
        locked_balance_cns=account["lockedBalanceCNS"],
        position=position,
        eth_balance_wei=eth_balance,
    )


def diff_snapshots(pre: AccountSnapshot, post: AccountSnapshot) -> AccountDiff:
    """逐字段计算 post - pre"""
    before, after = pre.position, post.position
    pre_lot = before.signed_lot if before else 0
    post_lot = after.signed_lot if after else 0

    return AccountDiff(
        balance_delta_cns=post.balance_cns - pre.balance_cns,
        locked_balance_delta_cns=post.locked_balance_cns - pre.locked_balance_cns,
        eth_balance_delta_wei=post.eth_balance_wei - pre.eth_balance_wei,
        deposit_delta_cns=(after.deposit_cns if after else 0) - (before.deposit_cns if before else 0),
        lot_delta_lns=post_lot - pre_lot,
        pnl_delta_cns=(after.pnl_cns if after else 0) - (before.pnl_cns if before else 0),
        position_opened=before is None and after is not None,
        position_closed=before is not None and after is None,
        position_flipped=before is not None and after is not None and before.side != after.side,
    )
