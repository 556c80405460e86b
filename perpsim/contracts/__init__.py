"""
Contracts - Exchange 合约 ABI 定义
"""

from .abi import (
    CASCADE_EVENT_NAMES,
    DELEGATED_ACCOUNT_ABI,
    EXCHANGE_ABI,
)

__all__ = [
    "CASCADE_EVENT_NAMES",
    "DELEGATED_ACCOUNT_ABI",
    "EXCHANGE_ABI",
]
