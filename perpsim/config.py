"""
perpsim Configuration Management

从环境变量和配置文件中读取配置，支持 .env 文件。
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RPC_URL = "https://testnet-rpc.monad.xyz"
DEFAULT_EXCHANGE_ADDRESS = "0x9C216D1Ab3e0407b3d6F1d5e9EfFe6d01C326ab7"
DEFAULT_COLLATERAL_TOKEN = "0xdF5B718d8FcC173335185a2a1513eE8151e3c027"
# Anvil 默认账户 #0
DEFAULT_LIQUIDATOR_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


class Settings(BaseSettings):
    """perpsim 配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    # Chain
    rpc_url: str = Field(default=DEFAULT_RPC_URL, alias="MONAD_RPC_URL")
    chain_id: int = Field(default=10143, alias="CHAIN_ID")
    exchange_address: str = Field(default=DEFAULT_EXCHANGE_ADDRESS, alias="EXCHANGE_ADDRESS")
    collateral_token: str = Field(default=DEFAULT_COLLATERAL_TOKEN, alias="COLLATERAL_TOKEN")

    # Caller identity
    owner_private_key: Optional[str] = Field(default=None, alias="OWNER_PRIVATE_KEY")
    account_address: Optional[str] = Field(default=None, alias="ACCOUNT_ADDRESS")

    # Anvil
    anvil_binary_path: str = Field(default="anvil", alias="ANVIL_BINARY_PATH")
    anvil_timeout_seconds: float = Field(default=30, alias="ANVIL_TIMEOUT_SECONDS")
    receipt_timeout_seconds: float = Field(default=30, alias="RECEIPT_TIMEOUT_SECONDS")
    liquidator_address: str = Field(default=DEFAULT_LIQUIDATOR_ADDRESS, alias="LIQUIDATOR_ADDRESS")

    # Liquidation analysis
    maintenance_margin: float = Field(default=0.05, alias="MAINTENANCE_MARGIN")
    liquidation_price_range_pct: float = Field(default=30, alias="LIQUIDATION_PRICE_RANGE_PCT")
    liquidation_price_steps: int = Field(default=60, alias="LIQUIDATION_PRICE_STEPS")
    funding_hours: float = Field(default=24, alias="FUNDING_HOURS")
    funding_steps: int = Field(default=6, alias="FUNDING_STEPS")
    fork_search_tolerance_pct: float = Field(default=0.01, alias="FORK_SEARCH_TOLERANCE_PCT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def has_caller_identity(self) -> bool:
        """是否配置了调用者身份"""
        return bool(self.account_address or self.owner_private_key)


# 全局配置实例
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置"""
    global _settings
    _settings = Settings()
    return _settings
