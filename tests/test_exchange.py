"""
Exchange 编解码测试（离线）
"""

from types import SimpleNamespace

import pytest
from eth_utils import function_signature_to_4byte_selector
from web3.exceptions import ContractCustomError, ContractLogicError, TimeExhausted

from perpsim.errors import ForkRuntimeError, InvalidInputError
from perpsim.simulation.exchange import (
    ExchangeClient,
    decode_exchange_calldata,
    decode_logs,
    encode_buy_liquidation,
    revert_reason_from_exception,
)

from conftest import EXCHANGE, make_log


OTHER = "0x000000000000000000000000000000000000dEaD"


class TestRevertReason:
    """测试 revert 原因提取"""

    def test_custom_error_selector(self):
        """测试自定义错误解析为错误名"""
        data = "0x" + function_signature_to_4byte_selector("InsufficientBalance()").hex()
        exc = ContractCustomError(data, data=data)
        assert revert_reason_from_exception(exc) == "InsufficientBalance"

    def test_unknown_custom_error(self):
        """测试未知自定义错误保留 selector"""
        exc = ContractCustomError("0x12345678", data="0x12345678")
        assert revert_reason_from_exception(exc) == "custom error 0x12345678"

    def test_revert_string(self):
        """测试去掉 execution reverted 前缀"""
        exc = ContractLogicError("execution reverted: Paused")
        assert revert_reason_from_exception(exc) == "Paused"

    def test_other_exception(self):
        """测试其他异常直接转字符串"""
        assert revert_reason_from_exception(RuntimeError("boom")) == "boom"


class TestDecodeLogs:
    """测试事件解码"""

    def test_skips_unknown_and_foreign_logs(self):
        """测试跳过无法识别的日志和其他合约的日志"""
        cancelled = make_log("OrderCancelled", {"perpId": 16, "accountId": 7, "orderId": 9}, 0)
        foreign = make_log("OrderCancelled", {"perpId": 16, "accountId": 7, "orderId": 10}, 1, address=OTHER)
        unknown = dict(cancelled, topics=[b"\x01" * 32], logIndex=2)
        no_topics = dict(cancelled, topics=[], logIndex=3)

        events = decode_logs([cancelled, foreign, unknown, no_topics], EXCHANGE)

        assert len(events) == 1
        assert events[0].event_name == "OrderCancelled"
        assert events[0].args == {"perpId": 16, "accountId": 7, "orderId": 9}

    def test_without_address_filter(self):
        """测试不限定合约地址"""
        foreign = make_log("FundingPaid", {"perpId": 16, "accountId": 7, "amountCNS": -42}, 1, address=OTHER)
        events = decode_logs([foreign])
        assert events[0].args["amountCNS"] == -42
        assert events[0].log_index == 1


class TestCalldata:
    """测试清算 calldata"""

    def test_buy_liquidation(self):
        """测试 buyLiquidations 编码"""
        decoded = decode_exchange_calldata(encode_buy_liquidation(16, 7, 10000, 495000))
        assert decoded.function_name == "buyLiquidations"
        assert decoded.args["revertOnFail"] is True
        assert len(decoded.args["liquidationDescs"]) == 1
        assert decoded.orders == []


class TestReceiptWait:
    """测试等待收据"""

    @pytest.mark.asyncio
    async def test_timeout_is_fork_runtime_error(self):
        """测试收据超时归为分叉运行错误而非输入错误"""
        async def never_mined(tx_hash, timeout):
            raise TimeExhausted("not mined")

        w3 = SimpleNamespace(eth=SimpleNamespace(
            contract=lambda **kwargs: None,
            wait_for_transaction_receipt=never_mined,
        ))
        client = ExchangeClient(w3, EXCHANGE)

        with pytest.raises(ForkRuntimeError) as exc_info:
            await client.wait_for_receipt(b"\xab" * 32, timeout=0.1)
        assert not isinstance(exc_info.value, InvalidInputError)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
