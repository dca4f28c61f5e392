"""
Configuration management for Backend FeeRouter.

Loads and validates settings from environment variables and the optional
project .env file. Exposes MixingConfig (runtime-tunable mixing parameters)
and get_settings() (process settings).
"""

from backend_feerouter.config.settings import MixingConfig, Settings, get_settings  # noqa: F401

__all__ = ["MixingConfig", "Settings", "get_settings"]
