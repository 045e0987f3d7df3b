# Configuration module for the session store service
from .settings import (
    ConfigurationError,
    Environment,
    Settings,
    StoreConfig,
    get_settings,
    load_store_config,
    validate_startup,
)

__all__ = [
    "ConfigurationError",
    "Environment",
    "Settings",
    "StoreConfig",
    "get_settings",
    "load_store_config",
    "validate_startup",
]
