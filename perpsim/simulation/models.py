"""
Simulation Engine Data Models

定义交易预演、清算分析与交易取证过程中使用的数据结构。

链上数量一律使用定点整数：价格 PNS、数量 LNS、保证金 CNS、杠杆为百分之一倍
（100 = 1x）。面向人的数值只在结果边界处以 Decimal 表示。
"""

from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_serializer,
    field_validator,
    model_validator,
)


# JSON 中大整数统一序列化为字符串
BigInt = Annotated[int, PlainSerializer(lambda v: str(v), return_type=str, when_used="json")]


def to_json_safe(value: Any) -> Any:
    """把合约解码结果转换为可 JSON 序列化的结构（大整数转字符串，bytes 转 hex）"""
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict) or hasattr(value, "items"):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_safe(v) for v in value]
    return str(value)


def _validate_address(v: str) -> str:
    if not v.startswith("0x") or len(v) != 42:
        raise ValueError(f"无效的以太坊地址: {v}")
    try:
        int(v, 16)
    except ValueError:
        raise ValueError(f"无效的以太坊地址: {v}")
    return v


# ==================== 基础枚举 ====================


class PositionSide(str, Enum):
    """仓位方向"""
    LONG = "long"
    SHORT = "short"

    @property
    def on_chain(self) -> int:
        return 0 if self is PositionSide.LONG else 1

    @classmethod
    def from_chain(cls, position_type: int) -> "PositionSide":
        if position_type == 0:
            return cls.LONG
        if position_type == 1:
            return cls.SHORT
        raise ValueError(f"未知的仓位类型: {position_type}")


class OrderKind(int, Enum):
    """订单类型（与合约 orderType 一致）"""
    OPEN_LONG = 0
    OPEN_SHORT = 1
    CLOSE_LONG = 2
    CLOSE_SHORT = 3
    CANCEL = 4
    CHANGE = 5


# ==================== 仓位与市场 ====================


class Position(BaseModel):
    """待分析的仓位"""
    model_config = ConfigDict(frozen=True)

    perp_id: int = Field(..., ge=0, description="市场 ID")
    account_id: int = Field(default=0, ge=0, description="账户 ID")
    side: PositionSide = Field(..., description="方向")
    lot_lns: BigInt = Field(..., gt=0, description="仓位数量（LNS）")
    price_pns: BigInt = Field(..., gt=0, description="开仓均价（PNS）")
    deposit_cns: BigInt = Field(..., ge=0, description="仓位保证金（CNS）")
    entry_block: int = Field(default=0, ge=0, description="开仓区块")
    pnl_cns: BigInt = Field(default=0, description="链上记录的盈亏（CNS）")


class MarketSnapshot(BaseModel):
    """市场信息快照，每次调用时实时获取，不做缓存"""
    model_config = ConfigDict(frozen=True)

    perp_id: int = Field(..., ge=0, description="市场 ID")
    name: str = Field(default="", description="市场名称")
    symbol: str = Field(default="", description="市场符号")
    price_decimals: int = Field(..., ge=0, description="价格精度")
    lot_decimals: int = Field(..., ge=0, description="数量精度")
    collateral_decimals: int = Field(default=6, ge=0, description="保证金精度")
    mark_pns: BigInt = Field(..., ge=0, description="标记价格（PNS）")
    mark_timestamp: int = Field(default=0, description="标记价格时间戳")
    oracle_pns: BigInt = Field(default=0, ge=0, description="预言机价格（PNS）")
    base_price_pns: BigInt = Field(default=0, ge=0, description="基准价格（PNS）")
    funding_rate_pct100k: int = Field(default=0, description="资金费率（百分比 ×100000 / 8 小时）")
    funding_start_block: int = Field(default=0, description="资金费起始区块")
    long_open_interest_lns: BigInt = Field(default=0, ge=0, description="多头持仓量（LNS）")
    short_open_interest_lns: BigInt = Field(default=0, ge=0, description="空头持仓量（LNS）")
    paused: bool = Field(default=False, description="市场是否暂停")
    taker_fee: Optional[BigInt] = Field(None, description="Taker 费率（合约原始值）")
    maker_fee: Optional[BigInt] = Field(None, description="Maker 费率（合约原始值）")

    def price(self, pns: int) -> Decimal:
        """PNS 转为人类可读价格"""
        return Decimal(pns).scaleb(-self.price_decimals)

    def lot(self, lns: int) -> Decimal:
        """LNS 转为人类可读数量"""
        return Decimal(lns).scaleb(-self.lot_decimals)

    def collateral(self, cns: int) -> Decimal:
        """CNS 转为人类可读金额"""
        return Decimal(cns).scaleb(-self.collateral_decimals)


# ==================== 账户快照 ====================


class PositionState(BaseModel):
    """快照中的仓位状态"""
    model_config = ConfigDict(frozen=True)

    side: PositionSide
    lot_lns: BigInt
    price_pns: BigInt
    deposit_cns: BigInt
    pnl_cns: BigInt = 0

    @property
    def signed_lot(self) -> int:
        return self.lot_lns if self.side is PositionSide.LONG else -self.lot_lns


class AccountSnapshot(BaseModel):
    """某一时刻的账户状态"""
    model_config = ConfigDict(frozen=True)

    account_id: int = Field(default=0, description="账户 ID（0 表示未注册）")
    balance_cns: BigInt = Field(default=0, description="可用余额（CNS）")
    locked_balance_cns: BigInt = Field(default=0, description="锁定余额（CNS）")
    position: Optional[PositionState] = Field(None, description="目标市场上的仓位")
    eth_balance_wei: BigInt = Field(default=0, description="原生币余额（wei）")


class AccountDiff(BaseModel):
    """两次快照之间的逐字段差异"""
    model_config = ConfigDict(frozen=True)

    balance_delta_cns: BigInt = 0
    locked_balance_delta_cns: BigInt = 0
    eth_balance_delta_wei: BigInt = 0
    deposit_delta_cns: BigInt = 0
    lot_delta_lns: BigInt = Field(default=0, description="带方向的仓位变化（多为正，空为负）")
    pnl_delta_cns: BigInt = 0
    position_opened: bool = False
    position_closed: bool = False
    position_flipped: bool = False

    @property
    def is_zero(self) -> bool:
        return not any((
            self.balance_delta_cns,
            self.locked_balance_delta_cns,
            self.eth_balance_delta_wei,
            self.deposit_delta_cns,
            self.lot_delta_lns,
            self.pnl_delta_cns,
            self.position_opened,
            self.position_closed,
            self.position_flipped,
        ))


# ==================== 订单 ====================


class OrderIntent(BaseModel):
    """待预演的订单"""
    model_config = ConfigDict(frozen=True)

    order_desc_id: BigInt = Field(default=0, ge=0, description="客户端订单描述 ID")
    perp_id: int = Field(..., ge=0, description="市场 ID")
    kind: OrderKind = Field(..., description="订单类型")
    order_id: BigInt = Field(default=0, ge=0, description="目标订单 ID（撤单/改单）")
    price_pns: BigInt = Field(default=0, ge=0, description="限价（PNS）")
    lot_lns: BigInt = Field(default=0, ge=0, description="数量（LNS）")
    leverage_hdths: int = Field(default=100, ge=0, description="杠杆（百分之一倍）")
    post_only: bool = False
    fill_or_kill: bool = False
    immediate_or_cancel: bool = False
    max_matches: int = Field(default=0, ge=0, description="最大撮合笔数（0 为不限）")
    expiry_block: int = Field(default=0, ge=0, description="过期区块（0 为不过期）")
    last_execution_block: int = Field(default=0, ge=0)
    amount_cns: BigInt = Field(default=0, ge=0, description="附带保证金（CNS）")

    @model_validator(mode="after")
    def check_consistency(self) -> "OrderIntent":
        flags = [self.post_only, self.fill_or_kill, self.immediate_or_cancel]
        if sum(flags) > 1:
            raise ValueError("post_only / fill_or_kill / immediate_or_cancel 最多只能设置一个")
        if self.kind in (OrderKind.CANCEL, OrderKind.CHANGE):
            if self.order_id == 0:
                raise ValueError(f"{self.kind.name} 订单必须指定 order_id")
        elif self.lot_lns == 0:
            raise ValueError("开平仓订单数量必须大于 0")
        return self

    def to_abi_tuple(self) -> tuple:
        """按 execOrder 的 orderDesc 结构排列"""
        return (
            self.order_desc_id,
            self.perp_id,
            int(self.kind),
            self.order_id,
            self.price_pns,
            self.lot_lns,
            self.expiry_block,
            self.post_only,
            self.fill_or_kill,
            self.immediate_or_cancel,
            self.max_matches,
            self.leverage_hdths,
            self.last_execution_block,
            self.amount_cns,
        )


# ==================== 交易预演结果 ====================


class CallOnlyResult(BaseModel):
    """eth_call 预演结果"""
    success: bool = Field(..., description="调用是否成功")
    perp_id: Optional[int] = Field(None, description="返回的市场 ID")
    order_id: Optional[BigInt] = Field(None, description="分配的订单 ID")
    gas_estimate: Optional[BigInt] = Field(None, description="gas 估算（失败时为空）")
    revert_reason: Optional[str] = Field(None, description="revert 原因")


class DecodedEvent(BaseModel):
    """解码后的合约事件"""
    event_name: str = Field(..., description="事件名")
    address: str = Field(..., description="合约地址")
    log_index: int = Field(default=0, description="日志索引")
    args: Dict[str, Any] = Field(default_factory=dict, description="事件参数")

    @field_serializer("args", when_used="json")
    def serialize_args(self, value: Dict[str, Any]) -> Dict[str, Any]:
        return to_json_safe(value)


class ForkReplayResult(BaseModel):
    """Anvil 分叉上的执行结果"""
    tx_hash: str = Field(..., description="分叉上的交易哈希")
    block_number: int = Field(..., description="打包区块")
    gas_used: BigInt = Field(..., description="实际消耗 gas")
    effective_gas_price: BigInt = Field(default=0, description="实际 gas 价格（wei）")
    gas_cost_wei: BigInt = Field(default=0, description="gas 成本（wei）")
    pre: AccountSnapshot
    post: AccountSnapshot
    diff: AccountDiff
    events: List[DecodedEvent] = Field(default_factory=list)
    market: Optional[MarketSnapshot] = Field(None, description="执行后的市场信息")


class ForkStatus(str, Enum):
    """分叉阶段状态"""
    REPLAYED = "replayed"
    SKIPPED_PREDICTED_REVERT = "skipped_predicted_revert"
    TOOLING_UNAVAILABLE = "tooling_unavailable"
    FORK_FAILED = "fork_failed"


class SimulationResult(BaseModel):
    """交易预演结果：eth_call 结果始终存在，分叉结果可选"""
    caller: str = Field(..., description="调用者地址")
    order: OrderIntent
    call_only: CallOnlyResult
    fork_status: ForkStatus
    fork_replay: Optional[ForkReplayResult] = None
    fork_error: Optional[str] = Field(None, description="分叉阶段失败原因")

    @model_validator(mode="after")
    def check_fork_replay(self) -> "SimulationResult":
        if self.fork_replay is not None and not self.call_only.success:
            raise ValueError("eth_call 失败时不应存在分叉结果")
        if (self.fork_replay is not None) != (self.fork_status is ForkStatus.REPLAYED):
            raise ValueError("fork_status 与 fork_replay 不一致")
        return self


# ==================== 清算分析 ====================


class LiquidationConfig(BaseModel):
    """清算分析参数"""
    model_config = ConfigDict(frozen=True)

    price_range_pct: Decimal = Field(default=Decimal("30"), gt=0, lt=100, description="价格扫描范围（±%）")
    price_steps: int = Field(default=60, gt=0, description="价格扫描步数")
    funding_hours: Decimal = Field(default=Decimal("24"), gt=0, description="资金费预测时长（小时）")
    funding_steps: int = Field(default=6, gt=0, description="资金费预测点数")
    maintenance_margin: Decimal = Field(default=Decimal("0.05"), gt=0, lt=1, description="维持保证金率")
    funding_period_hours: int = Field(default=8, gt=0, description="资金费结算周期（小时）")

    @classmethod
    def from_settings(cls, settings) -> "LiquidationConfig":
        return cls(
            price_range_pct=Decimal(str(settings.liquidation_price_range_pct)),
            price_steps=settings.liquidation_price_steps,
            funding_hours=Decimal(str(settings.funding_hours)),
            funding_steps=settings.funding_steps,
            maintenance_margin=Decimal(str(settings.maintenance_margin)),
        )


class PricePoint(BaseModel):
    """价格扫描中的单个点"""
    price: Decimal
    pnl: Decimal
    equity: Decimal
    margin_ratio: Decimal
    leverage: Optional[Decimal] = Field(None, description="权益 ≤ 0 时为空")
    is_liquidatable: bool


class FundingProjection(BaseModel):
    """资金费累积预测"""
    hours: Decimal
    accrued_funding: Decimal = Field(..., description="累计资金费（正为支付）")
    adjusted_collateral: Decimal
    adjusted_equity: Decimal
    adjusted_liquidation_price: Decimal


class LiquidationResult(BaseModel):
    """闭式清算分析结果"""
    perp_id: int
    market_name: str = ""
    side: PositionSide
    entry_price: Decimal
    size: Decimal
    collateral: Decimal
    mark_price: Decimal
    oracle_price: Decimal
    unrealized_pnl: Decimal
    equity: Decimal
    margin_ratio: Decimal
    leverage: Optional[Decimal] = None
    maintenance_margin: Decimal

    already_liquidatable: bool
    liquidation_price: Optional[Decimal] = Field(None, description="已可清算时为空")
    distance_usd: Optional[Decimal] = Field(None, description="距清算价的价格距离")
    distance_pct: Optional[Decimal] = Field(None, description="距清算价的百分比距离")

    price_sweep: List[PricePoint] = Field(default_factory=list)

    funding_rate_pct: Decimal = Field(..., description="资金费率（% / 周期）")
    pays_funding: bool
    funding_per_hour: Decimal = Field(..., description="每小时资金费（正为支付）")
    funding_projections: List[FundingProjection] = Field(default_factory=list)

    long_open_interest: Decimal
    short_open_interest: Decimal


class ForkLiquidationConfig(BaseModel):
    """分叉验证清算搜索参数"""
    model_config = ConfigDict(frozen=True)

    search_range_pct: Decimal = Field(default=Decimal("50"), gt=0, description="搜索范围（±%）")
    tolerance_pct: Decimal = Field(default=Decimal("0.01"), gt=0, description="收敛容差（标记价格的 %）")
    max_iterations: int = Field(default=64, gt=0)
    sweep_steps: int = Field(default=10, ge=0, description="分叉价格扫描步数（0 关闭）")
    maintenance_margin: Decimal = Field(default=Decimal("0.05"), gt=0, lt=1)
    capture_cascade: bool = Field(default=True, description="是否在清算边界执行真实清算并记录级联事件")

    @classmethod
    def from_settings(cls, settings) -> "ForkLiquidationConfig":
        return cls(
            tolerance_pct=Decimal(str(settings.fork_search_tolerance_pct)),
            maintenance_margin=Decimal(str(settings.maintenance_margin)),
        )


class ForkPricePoint(BaseModel):
    """分叉上观测到的价格点"""
    price: Decimal
    price_pns: BigInt
    is_liquidatable: bool


class ForkTimings(BaseModel):
    """各阶段耗时（毫秒）"""
    slot_discovery_ms: float = 0.0
    sweep_ms: float = 0.0
    binary_search_ms: float = 0.0
    total_ms: float = 0.0


class ForkLiquidationResult(BaseModel):
    """分叉验证的清算分析结果"""
    perp_id: int
    account_id: int
    side: PositionSide
    entry_price: Decimal
    size: Decimal
    collateral: Decimal
    current_mark_price: Decimal

    already_liquidatable: bool
    converged: bool = Field(..., description="是否在搜索范围内找到清算边界")
    iterations: int = 0
    fork_liquidation_price: Optional[Decimal] = None
    fork_liquidation_price_pns: Optional[BigInt] = None
    math_liquidation_price: Decimal
    divergence_usd: Optional[Decimal] = Field(None, description="分叉价 - 公式价")
    divergence_pct: Optional[Decimal] = Field(None, description="相对公式价的偏差 %")

    fork_price_points: List[ForkPricePoint] = Field(default_factory=list)
    cascade_events: List[DecodedEvent] = Field(default_factory=list)
    timings: ForkTimings = Field(default_factory=ForkTimings)


# ==================== 交易取证 ====================


class FailureCategory(str, Enum):
    """revert 原因分类"""
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PRICE_TOLERANCE = "price_tolerance"
    ORDER_NOT_FOUND = "order_not_found"
    PAUSED = "paused"
    POST_ONLY_FAILED = "post_only_failed"
    FILL_OR_KILL_FAILED = "fill_or_kill_failed"
    ORDER_EXPIRED = "order_expired"
    INVALID_ORDER = "invalid_order"
    UNKNOWN = "unknown"


class FailureAnalysis(BaseModel):
    """失败原因分析"""
    category: FailureCategory
    reason: str = Field(..., description="原始 revert 原因")
    explanation: str
    suggestion: Optional[str] = None
    is_matching_failure: bool = Field(default=False, description="是否为撮合层面的失败")


class MatchRecord(BaseModel):
    """单笔 maker 成交"""
    maker_account_id: BigInt
    maker_order_id: BigInt
    price_pns: BigInt
    lot_lns: BigInt
    fee_cns: BigInt
    price: Optional[Decimal] = None
    lot: Optional[Decimal] = None


class DecodedTxInput(BaseModel):
    """解码后的交易输入"""
    function_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    orders: List[Dict[str, Any]] = Field(default_factory=list, description="execOrder/execOrders 中的订单")

    @field_serializer("args", "orders", when_used="json")
    def serialize_values(self, value: Any) -> Any:
        return to_json_safe(value)


class ForensicsResult(BaseModel):
    """历史交易取证结果"""
    tx_hash: str
    block_number: int
    tx_from: str
    tx_to: Optional[str] = None
    is_delegated: bool = Field(default=False, description="是否通过 DelegatedAccount 发起")
    account_address: str = Field(..., description="Exchange 视角下的账户地址")
    decoded_input: Optional[DecodedTxInput] = None
    perp_id: Optional[int] = None
    perp_name: Optional[str] = None

    original_success: bool
    original_gas_used: BigInt = 0
    original_events: List[DecodedEvent] = Field(default_factory=list)

    replay_success: bool = False
    replay_gas_used: Optional[BigInt] = None
    replay_events: List[DecodedEvent] = Field(default_factory=list)
    replay_error: Optional[str] = None

    pre: Optional[AccountSnapshot] = None
    post: Optional[AccountSnapshot] = None
    diff: Optional[AccountDiff] = None
    market: Optional[MarketSnapshot] = None

    matches: List[MatchRecord] = Field(default_factory=list)
    total_filled_lns: BigInt = 0
    average_fill_price: Optional[Decimal] = None
    failure: Optional[FailureAnalysis] = None

    @field_validator("tx_hash")
    @classmethod
    def validate_tx_hash(cls, v: str) -> str:
        if not v.startswith("0x") or len(v) != 66:
            raise ValueError(f"无效的交易哈希: {v}")
        return v

    @field_validator("tx_from", "account_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _validate_address(v)
