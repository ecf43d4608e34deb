"""Configuration management for the market ledger.

Load YAML settings with environment variable substitution, then expose
them as immutable typed settings objects for the engines.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

import yaml
from dotenv import load_dotenv

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


class ConfigError(Exception):
    """Raise when configuration loading or validation fails."""


class ConfigLoader:
    """Load and manage configuration from YAML files with environment variable substitution."""

    def __init__(self, config_dir: Path | None = None) -> None:
        """Initialize the config loader.

        Load environment variables from a ``.env`` file (if present) and
        then read YAML configuration from the given directory.

        Args:
            config_dir: Directory containing config files. Defaults to
                ``src/market_ledger/config``.

        """
        load_dotenv()
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = Path(config_dir)
        self._config: dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML files."""
        settings_file = self.config_dir / "settings.yaml"
        if settings_file.exists():
            with settings_file.open() as f:
                self._config = yaml.safe_load(f) or {}

        local_settings = self.config_dir / "settings.local.yaml"
        if local_settings.exists():
            with local_settings.open() as f:
                local_config = cast("dict[str, Any]", yaml.safe_load(f) or {})
                self._deep_merge(self._config, local_config)

        self._config = self._substitute_env_vars(self._config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> None:
        """Deep merge override dict into base dict.

        Args:
            base: Base dictionary to merge into (modified in place).
            override: Dictionary with values to override.

        """
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], cast("dict[str, Any]", value))
            else:
                base[key] = value

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute environment variables in config.

        Supports format: ${VAR_NAME:default_value} or ${VAR_NAME}

        Args:
            config: Configuration value (dict, list, or str).

        Returns:
            Configuration with environment variables substituted.

        """
        if isinstance(config, dict):
            return {
                k: self._substitute_env_vars(v)
                for k, v in config.items()  # pyright: ignore[reportUnknownVariableType]
            }
        if isinstance(config, list):
            return [
                self._substitute_env_vars(item)
                for item in config  # pyright: ignore[reportUnknownVariableType]
            ]
        if isinstance(config, str) and config.startswith("${") and config.endswith("}"):
            var_expr = config[2:-1]
            if ":" in var_expr:
                var_name, default = var_expr.split(":", 1)
            else:
                var_name, default = var_expr, None

            value = os.getenv(var_name, default)
            if value is None:
                msg = f"Required environment variable ${{{var_name}}} is not set and has no default"
                raise ConfigError(msg)
            return value

        if isinstance(config, str) and re.search(r"\$\{[^}]+\}", config):
            msg = f"Unresolved environment variable reference in: {config}"
            raise ConfigError(msg)

        return config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key.

        Args:
            key: Configuration key in dot notation (e.g., 'chain.rpc_url').
            default: Default value if key not found.

        Returns:
            Configuration value.

        """
        keys = key.split(".")
        current: Any = self._config
        for k in keys:
            if isinstance(current, dict):
                current = cast("dict[str, Any]", current).get(k)
                if current is None:
                    return default
            else:
                return default
        return current  # pyright: ignore[reportReturnType]

    def get_int(self, key: str, default: int) -> int:
        """Get a configuration value coerced to ``int``.

        Raises:
            ConfigError: If the value is present but not an integer.

        """
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            msg = f"{key} must be an integer, got {value!r}"
            raise ConfigError(msg) from exc

    def get_bool(self, key: str, *, default: bool) -> bool:
        """Get a configuration value coerced to ``bool``.

        Accept YAML booleans and the strings ``true/false/yes/no/on/off/1/0``.

        Raises:
            ConfigError: If the value cannot be interpreted as a boolean.

        """
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        msg = f"{key} must be a boolean, got {value!r}"
        raise ConfigError(msg)


@dataclass(frozen=True)
class ChainSettings:
    """Connection and contract settings for the settlement chain.

    Attributes:
        rpc_url: JSON-RPC endpoint URL.
        chain_id: EVM chain id used when signing transactions.
        contract_address: Prediction market settlement contract address.
        token_address: ERC-20 collateral token address (USDC).
        private_key: Hex private key of the signing account, or ``None``
            for a read-only client.
        receipt_timeout_seconds: How long to wait for a receipt before the
            outcome is treated as indeterminate.

    """

    rpc_url: str
    chain_id: int
    contract_address: str
    token_address: str
    private_key: str | None = None
    receipt_timeout_seconds: int = 120


@dataclass(frozen=True)
class SchedulerSettings:
    """Settings for the background scheduler.

    Attributes:
        enabled: Whether ``run`` starts the periodic loop at all.
        interval_seconds: Seconds between ticks.
        create_missing_markets: Whether the reconciliation job also submits
            ``createMarket`` for unlinked database markets.

    """

    enabled: bool = True
    interval_seconds: int = 300
    create_missing_markets: bool = False


@dataclass(frozen=True)
class FeedSettings:
    """Settings for the third-party market-data feed."""

    base_url: str
    api_key: str = ""
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class EngineSettings:
    """Complete typed configuration for the engine.

    Attributes:
        db_url: SQLAlchemy async connection string.
        chain: Chain connection settings.
        scheduler: Scheduler settings.
        feed: Market-data feed settings.

    """

    db_url: str
    chain: ChainSettings
    scheduler: SchedulerSettings
    feed: FeedSettings

    @classmethod
    def from_loader(cls, loader: ConfigLoader) -> "EngineSettings":
        """Build typed settings from a ``ConfigLoader``.

        Args:
            loader: Loaded configuration.

        Returns:
            Immutable engine settings.

        Raises:
            ConfigError: If a required value is missing or malformed.

        """
        db_url = loader.get("database.url")
        if not db_url:
            raise ConfigError("database.url is not configured")

        private_key = loader.get("chain.private_key") or None
        chain = ChainSettings(
            rpc_url=str(loader.get("chain.rpc_url", "")),
            chain_id=loader.get_int("chain.chain_id", 296),
            contract_address=str(loader.get("chain.contract_address", "")),
            token_address=str(loader.get("chain.token_address", "")),
            private_key=private_key,
            receipt_timeout_seconds=loader.get_int("chain.receipt_timeout_seconds", 120),
        )
        scheduler = SchedulerSettings(
            enabled=loader.get_bool("scheduler.enabled", default=True),
            interval_seconds=loader.get_int("scheduler.interval_seconds", 300),
            create_missing_markets=loader.get_bool(
                "scheduler.create_missing_markets", default=False
            ),
        )
        feed = FeedSettings(
            base_url=str(loader.get("feed.base_url", "")),
            api_key=str(loader.get("feed.api_key", "")),
            timeout_seconds=float(loader.get("feed.timeout_seconds", 15.0)),
        )
        return cls(db_url=str(db_url), chain=chain, scheduler=scheduler, feed=feed)


_config: ConfigLoader | None = None


def get_config() -> ConfigLoader:
    """Return the global ``ConfigLoader`` singleton, creating it on first use.

    Lazy initialisation avoids side effects (file I/O, ``load_dotenv``)
    at import time and makes testing easier.

    Returns:
        The shared ``ConfigLoader`` instance.

    """
    global _config  # noqa: PLW0603
    if _config is None:
        _config = ConfigLoader()
    return _config
