"""
Simulation Engine - 永续合约交易模拟模块

提供基于 Foundry Anvil 的交易预演、清算价格求解与交易取证功能。
"""

from .models import (
    AccountDiff,
    AccountSnapshot,
    CallOnlyResult,
    DecodedEvent,
    ForensicsResult,
    ForkLiquidationConfig,
    ForkLiquidationResult,
    ForkStatus,
    LiquidationConfig,
    LiquidationResult,
    MarketSnapshot,
    OrderIntent,
    OrderKind,
    Position,
    PositionSide,
    SimulationResult,
)
from .anvil import AnvilFork, AnvilForkLauncher, anvil_fork, is_anvil_installed, start_fork, stop_fork
from .exchange import ExchangeClient
from .snapshot import diff_snapshots, snapshot_account
from .dry_run import TradeSimulator, simulate_trade
from .liquidation import simulate_liquidation
from .fork_liquidation import (
    AnvilLiquidationProbe,
    ForkLiquidationSolver,
    LiquidationProbe,
    run_fork_liquidation,
    simulate_fork_liquidation,
)
from .forensics import TransactionForensics, analyze_transaction, classify_revert

__all__ = [
    # Models
    "AccountDiff",
    "AccountSnapshot",
    "CallOnlyResult",
    "DecodedEvent",
    "ForensicsResult",
    "ForkLiquidationConfig",
    "ForkLiquidationResult",
    "ForkStatus",
    "LiquidationConfig",
    "LiquidationResult",
    "MarketSnapshot",
    "OrderIntent",
    "OrderKind",
    "Position",
    "PositionSide",
    "SimulationResult",
    # Anvil
    "AnvilFork",
    "AnvilForkLauncher",
    "anvil_fork",
    "is_anvil_installed",
    "start_fork",
    "stop_fork",
    # Exchange
    "ExchangeClient",
    # Snapshot
    "diff_snapshots",
    "snapshot_account",
    # Dry run
    "TradeSimulator",
    "simulate_trade",
    # Liquidation
    "simulate_liquidation",
    "AnvilLiquidationProbe",
    "ForkLiquidationSolver",
    "LiquidationProbe",
    "run_fork_liquidation",
    "simulate_fork_liquidation",
    # Forensics
    "TransactionForensics",
    "analyze_transaction",
    "classify_revert",
]
