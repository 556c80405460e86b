"""
perpsim - 永续合约交易模拟与清算分析引擎

基于 Anvil 分叉节点对订单簿永续合约交易所进行交易预演、
清算价格推导以及历史交易取证。
"""

__version__ = "0.1.0"
