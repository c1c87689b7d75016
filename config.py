"""Configuration management for BTC Bridge."""

import logging
import os
from dataclasses import dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from core.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class BridgeConfig:
    """Main bridge configuration."""

    # Chain endpoints
    source_rpc_url: str
    destination_rpc_url: str
    bridge_contract_address: str
    operator_address: str  # Unlocked account on the destination node

    source_rpc_user: Optional[str] = None
    source_rpc_password: Optional[str] = None

    # Destination chain
    destination_decimals: int = 18
    destination_from_block: int = 0

    # Limits and fee
    min_amount: Decimal = Decimal("0.001")
    max_amount: Decimal = Decimal("1")
    fee_rate: Decimal = Decimal("0.001")

    # Lifecycle settings
    min_confirmations: int = 1
    destination_confirmations: int = 2
    poll_interval: float = 10.0
    settlement_interval: float = 10.0
    deposit_window: float = 3600.0  # seconds a PENDING transaction waits for a deposit
    session_timeout: float = 900.0  # idle seconds before an intake session is dropped
    rpc_timeout: float = 30.0
    max_workers: int = 16

    # Chat front-end webhook for outbound messages; log only when unset
    chat_webhook_url: Optional[str] = None

    # Storage and API
    database_path: str = "bridge.db"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Load configuration from environment variables."""
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f.name.upper())
            if raw is not None and raw != "":
                values[f.name] = raw
        return cls._build(values)

    @classmethod
    def from_file(cls, config_path: Path) -> "BridgeConfig":
        """Load configuration from TOML file.

        Args:
            config_path: Path to configuration file

        Returns:
            BridgeConfig instance

        Raises:
            ConfigurationError: If config is invalid
        """
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        logger.info(f"Loading configuration from {config_path}")

        try:
            with open(config_path, "r") as f:
                config_data = toml.load(f)
        except Exception as e:
            raise ConfigurationError(f"Failed to parse configuration file: {e}")

        return cls._build(config_data)

    @classmethod
    def _build(cls, values: Dict[str, Any]) -> "BridgeConfig":
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for name, raw in values.items():
            if name not in known:
                logger.warning(f"Ignoring unknown configuration key: {name}")
                continue
            kwargs[name] = _coerce(name, known[name].type, raw)

        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigurationError(f"Missing required configuration key: {e}")

    def validate(self) -> None:
        """Validate configuration.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if not self.source_rpc_url:
            raise ConfigurationError("source_rpc_url is required")
        if not self.destination_rpc_url:
            raise ConfigurationError("destination_rpc_url is required")
        if not self.bridge_contract_address:
            raise ConfigurationError("bridge_contract_address is required")
        if not self.operator_address:
            raise ConfigurationError("operator_address is required")

        if self.min_amount <= 0 or self.min_amount > self.max_amount:
            raise ConfigurationError("min_amount must be positive and not above max_amount")
        if not Decimal(0) <= self.fee_rate < Decimal(1):
            raise ConfigurationError("fee_rate must be in [0, 1)")

        if self.min_confirmations < 1:
            raise ConfigurationError("min_confirmations must be at least 1")
        if self.destination_confirmations < 1:
            raise ConfigurationError("destination_confirmations must be at least 1")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        for name in ("poll_interval", "settlement_interval", "deposit_window",
                     "session_timeout", "rpc_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        logger.info("Configuration validated successfully")


def _coerce(name: str, type_hint: Any, raw: Any) -> Any:
    """Convert env strings / TOML values to the field's type."""
    if raw is None:
        return None
    converter = type_hint if type_hint in (int, float, Decimal) else str
    try:
        if converter is Decimal:
            return Decimal(str(raw))
        return converter(raw)
    except (ValueError, ArithmeticError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r} ({e})")
