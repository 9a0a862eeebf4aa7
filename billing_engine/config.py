"""Configuration management - loads billing.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from billing_engine.models.settings import (
    BillingSettings,
    CurrencyGuardConfig,
    GatewayConfig,
    NotificationConfig,
    SpecialOfferConfig,
)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader and manager.

    Loads billing.yaml and provides validated access to:
    - Gateway settings and secrets
    - Special offer settings
    - Currency guard scope
    - Notification (Pub/Sub) settings
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to billing.yaml file. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/billing.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[BillingSettings] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/billing.yaml")

    def _load_config(self) -> None:
        """Load and validate billing.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/billing.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Unable to read configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")
        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self._config_path}")

        try:
            self._settings = BillingSettings(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    @property
    def settings(self) -> BillingSettings:
        """Get validated billing settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def gateway(self) -> GatewayConfig:
        return self.settings.gateway

    @property
    def special_offer(self) -> SpecialOfferConfig:
        return self.settings.special_offer

    @property
    def currency_guard(self) -> CurrencyGuardConfig:
        return self.settings.currency_guard

    @property
    def notifications(self) -> NotificationConfig:
        return self.settings.notifications

    @property
    def default_currency(self) -> str:
        return self.settings.default_currency

    @property
    def stripe_secret_key(self) -> Optional[str]:
        """Get the gateway secret API key from the environment.

        Returns:
            Secret key, or None when the variable is unset
        """
        return os.getenv(self.gateway.api_key_env) or None

    @property
    def stripe_webhook_secret(self) -> Optional[str]:
        """Get the webhook signing secret from the environment."""
        return os.getenv(self.gateway.webhook_secret_env) or None

    @property
    def pubsub_project_id(self) -> str:
        return self.notifications.pubsub.project_id

    @property
    def pubsub_topic(self) -> str:
        return self.notifications.pubsub.topic

    @property
    def pubsub_subscription(self) -> Optional[str]:
        return self.notifications.pubsub.default_subscription

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
