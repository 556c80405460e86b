"""
Base Toolkit Interface

定义模拟工具的统一调用接口：按 action 分发、输入校验、计时，
并把结果封装为可 JSON 序列化的 ToolkitResult。
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ToolkitResult(BaseModel):
    """Toolkit 执行结果的标准格式"""
    success: bool = Field(..., description="执行是否成功")
    tool_name: str = Field(..., description="工具名称")
    execution_time: float = Field(..., description="执行时间（秒）")
    data: Dict[str, Any] = Field(default_factory=dict, description="返回数据")
    error: Optional[str] = Field(None, description="错误信息")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="元数据")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="执行时间戳",
    )

    def to_dict(self) -> Dict[str, Any]:
        """转换为可 JSON 序列化的字典"""
        return self.model_dump(mode="json")


class BaseToolkit(ABC):
    """
    Toolkit 基础类

    子类实现 execute，并通过 _handle_{action} 方法提供具体操作。
    """

    tool_name: str = "base_toolkit"
    description: str = "Base toolkit"
    actions: List[str] = []

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        初始化Toolkit

        Args:
            config: 工具配置字典
        """
        self.config = config or {}
        self._initialize()

    def _initialize(self) -> None:
        """子类可重写此方法进行自定义初始化"""
        pass

    async def execute(self, action: str = "", **kwargs) -> ToolkitResult:
        """按 action 分发到 _handle_{action}"""
        handler = getattr(self, f"_handle_{action}", None)
        if handler is None:
            return self._fail(f"未知的操作类型: {action}", data={"action": action})
        return await handler(**kwargs)

    @abstractmethod
    async def validate_input(self, **kwargs) -> tuple[bool, Optional[str]]:
        """
        验证输入参数

        Returns:
            (is_valid, error_message): 验证结果和错误信息
        """
        raise NotImplementedError

    def get_schema(self) -> Dict[str, Any]:
        """
        获取工具的参数schema

        Returns:
            JSON Schema格式的参数定义
        """
        return {
            "name": self.tool_name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {
                    "action": {"type": "string", "enum": list(self.actions)},
                },
                "required": ["action"],
            },
        }

    def _ok(self, data: Dict[str, Any], **metadata) -> ToolkitResult:
        return ToolkitResult(
            success=True,
            tool_name=self.tool_name,
            execution_time=0.0,
            data=data,
            metadata=metadata,
        )

    def _fail(self, error: str, data: Optional[Dict[str, Any]] = None) -> ToolkitResult:
        return ToolkitResult(
            success=False,
            tool_name=self.tool_name,
            execution_time=0.0,
            data=data or {},
            error=error,
        )

    async def __call__(self, **kwargs) -> ToolkitResult:
        """使Toolkit可被直接调用，任何异常都封装为失败结果"""
        start = time.perf_counter()

        # 验证输入
        is_valid, error = await self.validate_input(**kwargs)
        if not is_valid:
            result = self._fail(f"输入验证失败: {error}")
            result.execution_time = time.perf_counter() - start
            return result

        # 执行工具逻辑
        try:
            result = await self.execute(**kwargs)
        except Exception as e:
            logger.error(f"{self.tool_name} 执行失败: {e}", exc_info=True)
            result = self._fail(f"{type(e).__name__}: {e}")
        result.execution_time = time.perf_counter() - start
        return result


class ToolkitRegistry:
    """
    Toolkit注册表

    管理所有可用的Toolkit。
    """

    def __init__(self):
        self._tools: Dict[str, BaseToolkit] = {}

    def register(self, tool: BaseToolkit) -> None:
        """注册一个Toolkit"""
        self._tools[tool.tool_name] = tool

    def get(self, name: str) -> Optional[BaseToolkit]:
        """获取指定名称的Toolkit"""
        return self._tools.get(name)

    def list_tools(self) -> List[str]:
        """列出所有已注册的Toolkit名称"""
        return list(self._tools.keys())

    def get_all_schemas(self) -> List[Dict[str, Any]]:
        """获取所有Toolkit的Schema"""
        return [tool.get_schema() for tool in self._tools.values()]

    async def execute(self, tool_name: str, **kwargs) -> ToolkitResult:
        """
        执行指定的Toolkit

        Args:
            tool_name: 工具名称
            **kwargs: 执行参数

        Returns:
            ToolkitResult: 执行结果
        """
        tool = self.get(tool_name)
        if tool is None:
            return ToolkitResult(
                success=False,
                tool_name=tool_name,
                execution_time=0.0,
                error=f"工具 '{tool_name}' 未找到",
            )
        return await tool(**kwargs)
