# Configuration module
from .env_config import ENV_VARS, Config, ConfigError, EnvVar, validate_config
from .settings import AppSettings, SyncPairSettings

__all__ = [
    "AppSettings",
    "Config",
    "ConfigError",
    "EnvVar",
    "ENV_VARS",
    "SyncPairSettings",
    "validate_config",
]
