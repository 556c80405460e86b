"""
Toolkits for perpsim

将交易预演、清算分析与交易取证封装为统一的 Toolkit 接口。
"""

from .base import BaseToolkit, ToolkitRegistry, ToolkitResult
from .simulation_toolkit import SimulationToolkit
from .forensics_toolkit import ForensicsToolkit

__all__ = [
    "BaseToolkit",
    "ToolkitRegistry",
    "ToolkitResult",
    "SimulationToolkit",
    "ForensicsToolkit",
]
