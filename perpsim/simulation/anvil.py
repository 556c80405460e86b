"""
Anvil 分叉进程管理

每次模拟启动一个独立的临时 Anvil 分叉节点，用完即销毁，不做复用。

启动参数：--port 0 由系统分配端口，从 stdout 的 "Listening on host:port" 中解析；
--no-mining 关闭自动出块，由调用方显式 evm_mine；--auto-impersonate 允许
以任意地址发送交易。
"""

import asyncio
import logging
import re
import shutil
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Deque, List, Optional

import httpx
from pydantic import BaseModel, Field

from ..errors import (
    AnvilExitedError,
    AnvilNotInstalledError,
    AnvilStartupError,
    AnvilStartupTimeoutError,
    ForkRuntimeError,
)

logger = logging.getLogger(__name__)

LISTENING_PATTERN = re.compile(r"Listening on [\d.]+:(\d+)")
STOP_TIMEOUT_SECONDS = 5
OUTPUT_TAIL_LINES = 50


class AnvilProcessInfo(BaseModel):
    """Anvil 进程信息"""
    pid: int = Field(..., description="进程 ID")
    port: int = Field(..., description="监听端口")
    rpc_url: str = Field(..., description="RPC URL")
    fork_url: str = Field(..., description="分叉源 URL")
    fork_block: Optional[int] = Field(None, description="分叉区块号（None 为最新）")
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


async def is_anvil_installed(anvil_path: str = "anvil") -> bool:
    """执行 anvil --version 检查工具链是否可用"""
    try:
        process = await asyncio.create_subprocess_exec(
            anvil_path,
            "--version",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except (FileNotFoundError, PermissionError):
        return False
    return await process.wait() == 0


class AnvilFork:
    """
    运行中的 Anvil 分叉节点句柄

    由 start_fork 创建；stop() 可重复调用。
    """

    def __init__(self, process: asyncio.subprocess.Process, info: AnvilProcessInfo):
        self.process = process
        self.info = info
        self._stdout_tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        self._stderr_tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        self._drain_tasks: List[asyncio.Task] = []
        self._http: Optional[httpx.AsyncClient] = None
        self._request_id = 0
        self._stopped = False

    @property
    def rpc_url(self) -> str:
        return self.info.rpc_url

    @property
    def is_running(self) -> bool:
        return not self._stopped and self.process.returncode is None

    @property
    def stderr_tail(self) -> str:
        return "".join(self._stderr_tail)

    def _start_draining(self) -> None:
        """持续读取输出，避免管道写满阻塞 Anvil"""
        for stream, tail in ((self.process.stdout, self._stdout_tail), (self.process.stderr, self._stderr_tail)):
            if stream is not None:
                self._drain_tasks.append(asyncio.create_task(_drain(stream, tail)))

    # ==================== JSON-RPC ====================

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        """发送原始 JSON-RPC 请求（主要用于 Anvil cheat code）"""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=30)
        self._request_id += 1
        response = await self._http.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "method": method,
                "params": params or [],
                "id": self._request_id,
            },
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("error"):
            raise ForkRuntimeError(f"{method} 失败: {payload['error']}")
        return payload.get("result")

    async def mine(self, blocks: int = 1) -> None:
        for _ in range(blocks):
            await self.request("evm_mine")

    async def snapshot(self) -> str:
        return await self.request("evm_snapshot")

    async def revert(self, snapshot_id: str) -> bool:
        return bool(await self.request("evm_revert", [snapshot_id]))

    async def get_storage_at(self, address: str, slot: int) -> int:
        result = await self.request("eth_getStorageAt", [address, hex(slot), "latest"])
        return int(result, 16)

    async def set_storage_at(self, address: str, slot: int, value: int) -> None:
        await self.request("anvil_setStorageAt", [address, hex(slot), "0x" + value.to_bytes(32, "big").hex()])

    # ==================== 生命周期 ====================

    async def stop(self) -> None:
        """停止 Anvil 进程；已停止时直接返回"""
        if self._stopped:
            return
        self._stopped = True

        if self._http is not None:
            await self._http.aclose()
            self._http = None

        await _terminate(self.process)

        for task in self._drain_tasks:
            task.cancel()
        await asyncio.gather(*self._drain_tasks, return_exceptions=True)
        self._drain_tasks.clear()

        logger.info(f"Anvil 进程已停止 (PID: {self.process.pid})")


async def _drain(stream: asyncio.StreamReader, tail: Deque[str]) -> None:
    while True:
        line = await stream.readline()
        if not line:
            return
        tail.append(line.decode(errors="replace"))


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """SIGTERM，5 秒内未退出则 SIGKILL；已退出的进程只做回收"""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        pass
    try:
        await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"Anvil (PID: {process.pid}) 未响应 SIGTERM，强制结束")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()


async def _wait_exited(process: asyncio.subprocess.Process) -> None:
    """stdout 已关闭：等待进程自行退出，超时再终止"""
    try:
        await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        await _terminate(process)


async def _read_stderr(process: asyncio.subprocess.Process) -> str:
    if process.stderr is None:
        return ""
    try:
        data = await asyncio.wait_for(process.stderr.read(), timeout=1)
    except asyncio.TimeoutError:
        return ""
    return data.decode(errors="replace")


async def start_fork(
    fork_url: str,
    timeout: float = 30,
    fork_block: Optional[int] = None,
    anvil_path: str = "anvil",
) -> AnvilFork:
    """
    启动 Anvil 分叉节点

    Args:
        fork_url: 分叉源 RPC URL
        timeout: 启动超时（秒）
        fork_block: 分叉区块号（None 为最新区块）
        anvil_path: anvil 可执行文件路径

    Returns:
        AnvilFork: 运行中的分叉句柄

    Raises:
        AnvilNotInstalledError: 找不到 anvil
        AnvilExitedError: 监听端口出现前进程退出
        AnvilStartupTimeoutError: 启动超时
    """
    cmd = [
        anvil_path,
        "--fork-url",
        fork_url,
        "--port",
        "0",
        "--no-mining",
        "--auto-impersonate",
        "--steps-tracing",
    ]
    if fork_block is not None:
        cmd.extend(["--fork-block-number", str(fork_block)])

    logger.info(f"启动 Anvil: {' '.join(cmd)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise AnvilNotInstalledError(anvil_path) from e

    try:
        port = await asyncio.wait_for(_wait_for_port(process), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(process)
        raise AnvilStartupTimeoutError(timeout, await _read_stderr(process)) from None
    except BaseException:
        await _terminate(process)
        raise

    if port is None:
        await _wait_exited(process)
        raise AnvilExitedError(process.returncode, await _read_stderr(process))

    info = AnvilProcessInfo(
        pid=process.pid,
        port=port,
        rpc_url=f"http://127.0.0.1:{port}",
        fork_url=fork_url,
        fork_block=fork_block,
    )
    fork = AnvilFork(process, info)
    fork._start_draining()
    logger.info(f"Anvil 已启动: {info.rpc_url} (PID: {process.pid})")
    return fork


async def _wait_for_port(process: asyncio.subprocess.Process) -> Optional[int]:
    """读取 stdout 直到出现监听端口；进程在此之前退出则返回 None"""
    if process.stdout is None:
        raise AnvilStartupError("Anvil stdout 未连接到管道")
    while True:
        line = await process.stdout.readline()
        if not line:
            return None
        match = LISTENING_PATTERN.search(line.decode(errors="replace"))
        if match:
            return int(match.group(1))


async def stop_fork(fork: AnvilFork) -> None:
    await fork.stop()


@asynccontextmanager
async def anvil_fork(
    fork_url: str,
    timeout: float = 30,
    fork_block: Optional[int] = None,
    anvil_path: str = "anvil",
) -> AsyncIterator[AnvilFork]:
    """分叉节点的作用域管理：退出时（包括异常与取消）一定停止进程"""
    fork = await start_fork(fork_url, timeout=timeout, fork_block=fork_block, anvil_path=anvil_path)
    try:
        yield fork
    finally:
        await stop_fork(fork)


class AnvilForkLauncher:
    """
    按配置启动分叉节点的工厂

    用法：
        async with launcher(rpc_url, fork_block=N) as fork:
            ...
    """

    def __init__(self, anvil_path: str = "anvil", timeout: float = 30):
        self.anvil_path = anvil_path
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "AnvilForkLauncher":
        return cls(anvil_path=settings.anvil_binary_path, timeout=settings.anvil_timeout_seconds)

    async def is_available(self) -> bool:
        if shutil.which(self.anvil_path) is None:
            return False
        return await is_anvil_installed(self.anvil_path)

    def __call__(self, fork_url: str, fork_block: Optional[int] = None):
        return anvil_fork(fork_url, timeout=self.timeout, fork_block=fork_block, anvil_path=self.anvil_path)
