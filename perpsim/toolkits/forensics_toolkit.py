"""
ForensicsToolkit - 交易取证工具集

提供历史交易重放分析、calldata 解码与 revert 原因分类。
"""

import logging
from typing import Optional

from .base import BaseToolkit, ToolkitResult
from ..config import get_settings
from ..simulation.anvil import AnvilForkLauncher
from ..simulation.exchange import decode_exchange_calldata
from ..simulation.forensics import TX_HASH_PATTERN, TransactionForensics, classify_revert


logger = logging.getLogger(__name__)


class ForensicsToolkit(BaseToolkit):
    """
    交易取证工具集

    功能：
    - analyze_tx: 在父区块分叉重放历史交易，给出成交明细与失败原因
    - decode_calldata: 解码 Exchange calldata
    - classify_revert: 解释 revert 原因
    """

    tool_name = "tx_forensics"
    description = (
        "永续合约交易取证工具，在历史区块上分叉重放交易，"
        "解释成交、部分成交与失败的原因。"
    )
    actions = ["analyze_tx", "decode_calldata", "classify_revert"]

    def _initialize(self) -> None:
        """初始化依赖，config 中可注入 settings / client_factory / fork_launcher"""
        self.settings = self.config.get("settings") or get_settings()
        self.client_factory = self.config.get("client_factory")
        self.fork_launcher = self.config.get("fork_launcher") or AnvilForkLauncher.from_settings(self.settings)

    async def validate_input(self, **kwargs) -> tuple[bool, Optional[str]]:
        """验证输入参数"""
        action = kwargs.get("action")
        if action == "analyze_tx":
            tx_hash = kwargs.get("tx_hash")
            if not tx_hash:
                return False, "缺少必需参数: tx_hash"
            if not TX_HASH_PATTERN.match(tx_hash):
                return False, f"无效的交易哈希: {tx_hash}"
        elif action == "decode_calldata":
            if "data" not in kwargs:
                return False, "缺少必需参数: data"
        elif action == "classify_revert":
            if "reason" not in kwargs:
                return False, "缺少必需参数: reason"
        else:
            return False, f"未知的操作类型: {action}"
        return True, None

    async def _handle_analyze_tx(self, tx_hash: str, **kwargs) -> ToolkitResult:
        forensics = TransactionForensics(
            self.settings,
            client_factory=self.client_factory,
            fork_launcher=self.fork_launcher,
        )
        result = await forensics.analyze(tx_hash)
        return self._ok(
            result.model_dump(mode="json"),
            original_success=result.original_success,
            match_count=len(result.matches),
        )

    async def _handle_decode_calldata(self, data: str, **kwargs) -> ToolkitResult:
        decoded = decode_exchange_calldata(data)
        if decoded is None:
            return self._fail("无法识别的 Exchange calldata", data={"selector": data[:10]})
        return self._ok(decoded.model_dump(mode="json"))

    async def _handle_classify_revert(self, reason: str, **kwargs) -> ToolkitResult:
        analysis = classify_revert(reason)
        return self._ok(analysis.model_dump(mode="json"))
