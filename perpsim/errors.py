"""
perpsim 异常定义

所有模块抛出的业务异常都继承自 PerpSimError。
"""

from typing import Optional


class PerpSimError(Exception):
    """perpsim 基础异常"""


class InvalidInputError(PerpSimError, ValueError):
    """输入非法（订单、仓位、交易哈希等），直接终止调用"""


class TransactionLookupError(InvalidInputError):
    """链上找不到对应交易"""


class CallReverted(PerpSimError):
    """eth_call 被合约 revert"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ToolingUnavailableError(PerpSimError):
    """分叉工具链不可用"""


class AnvilNotInstalledError(ToolingUnavailableError):
    """找不到 anvil 可执行文件"""

    def __init__(self, path: str = "anvil"):
        super().__init__(f"Anvil not found ({path}). Install Foundry: https://getfoundry.sh")
        self.path = path


class AnvilStartupError(ToolingUnavailableError):
    """Anvil 启动失败"""

    def __init__(self, message: str, stderr: str = ""):
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.stderr = stderr


class AnvilExitedError(AnvilStartupError):
    """Anvil 在输出监听端口之前退出"""

    def __init__(self, returncode: Optional[int], stderr: str = ""):
        super().__init__(f"Anvil exited with code {returncode}", stderr)
        self.returncode = returncode


class AnvilStartupTimeoutError(AnvilStartupError):
    """Anvil 启动超时"""

    def __init__(self, timeout: float, stderr: str = ""):
        super().__init__(f"Anvil startup timed out after {timeout}s", stderr)
        self.timeout = timeout


class ForkRuntimeError(PerpSimError):
    """分叉已启动，但在分叉上执行或探测失败"""


class StorageSlotNotFoundError(ForkRuntimeError):
    """无法定位市场价格所在的存储槽"""
