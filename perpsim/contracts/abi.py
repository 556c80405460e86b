"""
Exchange / DelegatedAccount 合约 ABI

Exchange 为订单簿永续合约交易所主合约；DelegatedAccount 是代持账户的代理合约，
通过 exchange() 暴露其所绑定的 Exchange 地址。
"""

from typing import Any, Dict, List


def _components(*fields: tuple) -> List[Dict[str, str]]:
    return [{"name": name, "type": type_} for name, type_ in fields]


ORDER_DESC_COMPONENTS = _components(
    ("orderDescId", "uint256"),
    ("perpId", "uint256"),
    ("orderType", "uint8"),
    ("orderId", "uint256"),
    ("pricePNS", "uint256"),
    ("lotLNS", "uint256"),
    ("expiryBlock", "uint256"),
    ("postOnly", "bool"),
    ("fillOrKill", "bool"),
    ("immediateOrCancel", "bool"),
    ("maxMatches", "uint256"),
    ("leverageHdths", "uint256"),
    ("lastExecutionBlock", "uint256"),
    ("amountCNS", "uint256"),
)

ORDER_SIGNATURE_COMPONENTS = _components(
    ("perpId", "uint256"),
    ("orderId", "uint256"),
)

LIQUIDATION_DESC_COMPONENTS = _components(
    ("perpId", "uint256"),
    ("posAccountId", "uint256"),
    ("lotLNS", "uint256"),
    ("leverageHdths", "uint256"),
    ("limitPricePNS", "uint256"),
)

ACCOUNT_INFO_COMPONENTS = _components(
    ("accountId", "uint256"),
    ("balanceCNS", "uint256"),
    ("lockedBalanceCNS", "uint256"),
    ("frozen", "uint8"),
    ("accountAddr", "address"),
) + [
    {
        "name": "positions",
        "type": "tuple",
        "components": _components(
            ("bank1", "uint256"),
            ("bank2", "uint256"),
            ("bank3", "uint256"),
            ("bank4", "uint256"),
        ),
    }
]

POSITION_INFO_COMPONENTS = _components(
    ("accountId", "uint256"),
    ("nextNodeId", "uint256"),
    ("prevNodeId", "uint256"),
    ("positionType", "uint8"),
    ("depositCNS", "uint256"),
    ("pricePNS", "uint256"),
    ("lotLNS", "uint256"),
    ("entryBlock", "uint256"),
    ("pnlCNS", "int256"),
    ("deltaPnlCNS", "int256"),
    ("premiumPnlCNS", "int256"),
)

PERPETUAL_INFO_COMPONENTS = _components(
    ("name", "string"),
    ("symbol", "string"),
    ("priceDecimals", "uint256"),
    ("lotDecimals", "uint256"),
    ("linkFeedId", "bytes32"),
    ("priceTolPer100K", "uint256"),
    ("refPriceMaxAgeSec", "uint256"),
    ("positionBalanceCNS", "uint256"),
    ("insuranceBalanceCNS", "uint256"),
    ("markPNS", "uint256"),
    ("markTimestamp", "uint256"),
    ("lastPNS", "uint256"),
    ("lastTimestamp", "uint256"),
    ("oraclePNS", "uint256"),
    ("oracleTimestampSec", "uint256"),
    ("longOpenInterestLNS", "uint256"),
    ("shortOpenInterestLNS", "uint256"),
    ("fundingStartBlock", "uint256"),
    ("fundingRatePct100k", "int16"),
    ("absFundingClampPctPer100K", "uint256"),
    ("paused", "bool"),
    ("basePricePNS", "uint256"),
    ("maxBidPriceONS", "uint256"),
    ("minBidPriceONS", "uint256"),
    ("maxAskPriceONS", "uint256"),
    ("minAskPriceONS", "uint256"),
    ("numOrders", "uint256"),
    ("ignOracle", "bool"),
)


def _function(name: str, inputs: list, outputs: list, mutability: str = "nonpayable") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs,
        "stateMutability": mutability,
    }


def _event(name: str, *fields: tuple) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": field_name, "type": type_, "indexed": indexed}
            for field_name, type_, indexed in fields
        ],
    }


def _error(name: str, *fields: tuple) -> Dict[str, Any]:
    return {"type": "error", "name": name, "inputs": _components(*fields)}


EXCHANGE_FUNCTIONS = [
    # 账户与保证金
    _function(
        "createAccount",
        _components(("amountCNS", "uint256")),
        _components(("accountId", "uint256")),
    ),
    _function("depositCollateral", _components(("amountCNS", "uint256")), []),
    _function("withdrawCollateral", _components(("amountCNS", "uint256")), []),
    # 下单
    _function(
        "execOrder",
        [{"name": "orderDesc", "type": "tuple", "components": ORDER_DESC_COMPONENTS}],
        [{"name": "signature", "type": "tuple", "components": ORDER_SIGNATURE_COMPONENTS}],
    ),
    _function(
        "execOrders",
        [
            {"name": "orderDescs", "type": "tuple[]", "components": ORDER_DESC_COMPONENTS},
            {"name": "revertOnFail", "type": "bool"},
        ],
        [{"name": "signatures", "type": "tuple[]", "components": ORDER_SIGNATURE_COMPONENTS}],
    ),
    # 仓位保证金
    _function(
        "increasePositionCollateral",
        _components(("perpId", "uint256"), ("amountCNS", "uint256")),
        [],
    ),
    _function("requestDecreasePositionCollateral", _components(("perpId", "uint256")), []),
    _function(
        "decreasePositionCollateral",
        _components(("perpId", "uint256"), ("amountCNS", "uint256"), ("clampToMaximum", "bool")),
        [],
    ),
    _function("allowOrderForwarding", _components(("allow", "bool")), []),
    # 清算
    _function(
        "buyLiquidations",
        [
            {"name": "liquidationDescs", "type": "tuple[]", "components": LIQUIDATION_DESC_COMPONENTS},
            {"name": "revertOnFail", "type": "bool"},
        ],
        [],
    ),
    # 只读
    _function(
        "getAccountByAddr",
        _components(("accountAddress", "address")),
        [{"name": "accountInfo", "type": "tuple", "components": ACCOUNT_INFO_COMPONENTS}],
        "view",
    ),
    _function(
        "getAccountById",
        _components(("accountId", "uint256")),
        [{"name": "accountInfo", "type": "tuple", "components": ACCOUNT_INFO_COMPONENTS}],
        "view",
    ),
    _function(
        "getPosition",
        _components(("perpId", "uint256"), ("accountId", "uint256")),
        [
            {"name": "positionInfo", "type": "tuple", "components": POSITION_INFO_COMPONENTS},
            {"name": "markPricePNS", "type": "uint256"},
            {"name": "markPriceValid", "type": "bool"},
        ],
        "view",
    ),
    _function(
        "getPerpetualInfo",
        _components(("perpId", "uint256")),
        [{"name": "perpetualInfo", "type": "tuple", "components": PERPETUAL_INFO_COMPONENTS}],
        "view",
    ),
    _function(
        "getExchangeInfo",
        [],
        _components(
            ("balanceCNS", "uint256"),
            ("protocolBalanceCNS", "uint256"),
            ("recycleBalanceCNS", "uint256"),
            ("collateralDecimals", "uint256"),
            ("collateralToken", "address"),
            ("verifierProxy", "address"),
        ),
        "view",
    ),
    _function("getTakerFee", _components(("perpId", "uint256")), _components(("", "uint256")), "view"),
    _function("getMakerFee", _components(("perpId", "uint256")), _components(("", "uint256")), "view"),
]

EXCHANGE_EVENTS = [
    _event(
        "AccountCreated",
        ("accountId", "uint256", True),
        ("accountAddr", "address", True),
    ),
    _event(
        "CollateralDeposited",
        ("accountId", "uint256", True),
        ("amountCNS", "uint256", False),
        ("balanceCNS", "uint256", False),
    ),
    _event(
        "CollateralWithdrawn",
        ("accountId", "uint256", True),
        ("amountCNS", "uint256", False),
        ("balanceCNS", "uint256", False),
    ),
    _event(
        "OrderRequest",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("orderDescId", "uint256", False),
        ("orderType", "uint8", False),
        ("pricePNS", "uint256", False),
        ("lotLNS", "uint256", False),
    ),
    _event(
        "OrderPlaced",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("orderId", "uint256", False),
        ("pricePNS", "uint256", False),
        ("lotLNS", "uint256", False),
    ),
    _event(
        "OrderCancelled",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("orderId", "uint256", False),
    ),
    _event(
        "MakerOrderFilled",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("orderId", "uint256", False),
        ("pricePNS", "uint256", False),
        ("lotLNS", "uint256", False),
        ("feeCNS", "uint256", False),
        ("lockedBalanceCNS", "uint256", False),
        ("amountCNS", "int256", False),
        ("balanceCNS", "uint256", False),
    ),
    _event(
        "TakerOrderFilled",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("pricePNS", "uint256", False),
        ("lotLNS", "uint256", False),
        ("feeCNS", "uint256", False),
        ("lockedBalanceCNS", "uint256", False),
        ("amountCNS", "int256", False),
        ("balanceCNS", "uint256", False),
    ),
    _event(
        "PositionOpened",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("positionType", "uint8", False),
        ("pricePNS", "uint256", False),
        ("lotLNS", "uint256", False),
        ("depositCNS", "uint256", False),
    ),
    _event(
        "PositionClosed",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("pricePNS", "uint256", False),
        ("lotLNS", "uint256", False),
        ("pnlCNS", "int256", False),
    ),
    _event(
        "FundingPaid",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("amountCNS", "int256", False),
    ),
    _event(
        "PositionLiquidated",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("liquidatorAccountId", "uint256", True),
        ("pricePNS", "uint256", False),
        ("lotLNS", "uint256", False),
        ("depositCNS", "uint256", False),
    ),
    _event(
        "InsuranceFundUsed",
        ("perpId", "uint256", True),
        ("amountCNS", "uint256", False),
    ),
    _event(
        "PositionDeleveraged",
        ("perpId", "uint256", True),
        ("accountId", "uint256", True),
        ("pricePNS", "uint256", False),
        ("lotLNS", "uint256", False),
    ),
]

EXCHANGE_ERRORS = [
    _error("InsufficientBalance"),
    _error("PostOnlyFailed"),
    _error("FillOrKillFailed"),
    _error("OrderExpired"),
    _error("InvalidOrder"),
    _error("Paused"),
    _error("OrderNotFound"),
    _error("PriceToleranceExceeded"),
    _error("AccountFrozen"),
    _error("PositionNotLiquidatable"),
]

EXCHANGE_ABI: List[Dict[str, Any]] = EXCHANGE_FUNCTIONS + EXCHANGE_EVENTS + EXCHANGE_ERRORS

DELEGATED_ACCOUNT_ABI: List[Dict[str, Any]] = [
    _function("exchange", [], _components(("", "address")), "view"),
    _function("accountId", [], _components(("", "uint256")), "view"),
    _function("owner", [], _components(("", "address")), "view"),
]

# 清算级联相关事件
CASCADE_EVENT_NAMES = frozenset({
    "PositionLiquidated",
    "InsuranceFundUsed",
    "PositionDeleveraged",
})
