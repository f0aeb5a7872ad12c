"""
Environment settings for the REI API.

Every variable the service reads is declared once in ENV_VARS with its type,
default and constraints. Values are converted and checked when first read;
validate_config() checks the whole table at boot and reports every problem
in a single ConfigError.

Usage:
    from config.env_config import Config, validate_config

    values = validate_config(strict=True)
    Config.CACHE_TTL_SECONDS
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

# Relative path values resolve against the project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent

A1_SPAN_PATTERN = r"^[A-Z]+[0-9]*(:[A-Z]+[0-9]*)?$"

TRUTHY = ("true", "1", "yes", "on")


class ConfigError(Exception):
    """A setting is missing or holds a value the service cannot use."""


def _to_bool(raw: str) -> bool:
    return raw.strip().lower() in TRUTHY


def _to_path(raw: str) -> Path:
    path = Path(raw).expanduser()
    return path if path.is_absolute() else PROJECT_ROOT / path


def _to_list(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


CONVERTERS: Dict[str, Callable[[str], Any]] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": _to_bool,
    "path": _to_path,
    "list": _to_list,
}


@dataclass
class EnvVar:
    """One environment variable and the rules its value must satisfy."""

    name: str
    default: Any = None
    var_type: str = "str"
    required: bool = False
    description: str = ""
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None
    choices: Optional[List[Any]] = None
    pattern: Optional[str] = None
    validator: Optional[Callable[[Any], bool]] = None
    # masked in logs and Config.to_dict()
    sensitive: bool = False

    def convert(self, raw: str) -> Any:
        converter = CONVERTERS.get(self.var_type, str)
        try:
            return converter(raw)
        except ValueError:
            raise ConfigError(f"{self.name}: cannot read '{raw}' as {self.var_type}")

    def problem(self, value: Any) -> Optional[str]:
        """Return a description of what is wrong with value, or None."""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if self.min_value is not None and value < self.min_value:
                return f"{self.name}: {value} is less than {self.min_value}"
            if self.max_value is not None and value > self.max_value:
                return f"{self.name}: {value} is greater than {self.max_value}"

        if self.choices is not None and value not in self.choices:
            return f"{self.name}: '{value}' must be one of {', '.join(map(str, self.choices))}"

        if self.pattern and isinstance(value, str) and not re.match(self.pattern, value):
            return f"{self.name}: '{value}' is not in the expected format"

        if self.validator is not None:
            try:
                accepted = self.validator(value)
            except (ValueError, TypeError) as e:
                return f"{self.name}: {e}"
            if not accepted:
                return f"{self.name}: '{value}' was rejected"

        return None

    def read(self) -> Any:
        """Read, convert and check the variable; unset or empty yields the default."""
        raw = os.environ.get(self.name, "")
        if raw == "":
            if self.required:
                raise ConfigError(f"{self.name} must be set")
            return self.default

        value = self.convert(raw)
        error = self.problem(value)
        if error:
            raise ConfigError(error)
        return value


def _valid_sync_pairs(pairs: List[str]) -> bool:
    """Exactly two SOURCE:TARGET entries with both halves present."""
    if len(pairs) != 2:
        return False
    for pair in pairs:
        source, sep, target = pair.partition(":")
        if not sep or not source.strip() or not target.strip():
            return False
    return True


def _valid_json_object(value: str) -> bool:
    return isinstance(json.loads(value), dict)


# Every variable the service reads
ENV_VARS: Dict[str, EnvVar] = {
    # Application settings
    "APP_ENV": EnvVar(
        name="APP_ENV",
        default="prod",
        choices=["dev", "prod", "test", "staging"],
        description="Deployment environment",
    ),
    "DEBUG": EnvVar(name="DEBUG", default=False, var_type="bool", description="Flask debug mode"),
    "PORT": EnvVar(
        name="PORT",
        default=8080,
        var_type="int",
        min_value=1,
        max_value=65535,
        description="Listen port",
    ),
    "HOST": EnvVar(name="HOST", default="0.0.0.0", description="Listen address"),
    "LOG_LEVEL": EnvVar(
        name="LOG_LEVEL",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        description="Root logging level",
    ),
    # Google credentials
    "GOOGLE_SERVICE_ACCOUNT_KEY": EnvVar(
        name="GOOGLE_SERVICE_ACCOUNT_KEY",
        default=None,
        sensitive=True,
        validator=_valid_json_object,
        description="Service account key as a JSON string",
    ),
    "GOOGLE_SERVICE_ACCOUNT_FILE": EnvVar(
        name="GOOGLE_SERVICE_ACCOUNT_FILE",
        default=Path.home() / ".config" / "gspread" / "service_account.json",
        var_type="path",
        description="Service account key file (used when the JSON variable is unset)",
    ),
    "SHEETS_TIMEOUT_SECONDS": EnvVar(
        name="SHEETS_TIMEOUT_SECONDS",
        default=30.0,
        var_type="float",
        min_value=1,
        max_value=600,
        description="Timeout for each Google Sheets API call",
    ),
    # Spreadsheets and tabs
    "PME_SHEET_ID": EnvVar(
        name="PME_SHEET_ID",
        required=True,
        pattern=r"^[A-Za-z0-9_-]+$",
        description="Property master spreadsheet id",
    ),
    "WORKFLOW_PROCESSOR_SHEET_ID": EnvVar(
        name="WORKFLOW_PROCESSOR_SHEET_ID",
        required=True,
        pattern=r"^[A-Za-z0-9_-]+$",
        description="Workflow processor spreadsheet id (QUEUE tab)",
    ),
    "MAIN_TAB": EnvVar(name="MAIN_TAB", default="MAIN", description="Property master tab"),
    "TODO_TAB": EnvVar(name="TODO_TAB", default="TO_DO_MASTER", description="To-do tab"),
    "VAR_TAB": EnvVar(name="VAR_TAB", default="VAR", description="Status configuration tab"),
    "QUEUE_TAB": EnvVar(name="QUEUE_TAB", default="QUEUE", description="Work queue tab"),
    "MAIN_RANGE_SPAN": EnvVar(
        name="MAIN_RANGE_SPAN",
        default="A:ZZ",
        pattern=A1_SPAN_PATTERN,
        description="Column span read from the main tab",
    ),
    # Aggregation cache
    "CACHE_TTL_SECONDS": EnvVar(
        name="CACHE_TTL_SECONDS",
        default=300,
        var_type="int",
        min_value=1,
        max_value=86400,
        description="Main tab snapshot time-to-live",
    ),
    "CACHE_REFRESH_ENABLED": EnvVar(
        name="CACHE_REFRESH_ENABLED",
        default=True,
        var_type="bool",
        description="Refresh the snapshot on a background timer",
    ),
    # Production sync
    "SYNC_ENABLED": EnvVar(
        name="SYNC_ENABLED",
        default=True,
        var_type="bool",
        description="Run the production sync on a background timer",
    ),
    "SYNC_INTERVAL_SECONDS": EnvVar(
        name="SYNC_INTERVAL_SECONDS",
        default=1800,
        var_type="int",
        min_value=10,
        max_value=86400,
        description="Production sync timer interval",
    ),
    "SYNC_SHEET_ID": EnvVar(
        name="SYNC_SHEET_ID",
        default=None,
        pattern=r"^[A-Za-z0-9_-]+$",
        description="Spreadsheet holding the control cell and sync tabs (defaults to PME_SHEET_ID)",
    ),
    "SYNC_CONTROL_RANGE": EnvVar(
        name="SYNC_CONTROL_RANGE",
        default="PRODUCTION_SYNC!B1",
        pattern=r"^[^!]+![A-Z]+[0-9]+$",
        description="Control cell whose date selects the production source row",
    ),
    "SYNC_PAIRS": EnvVar(
        name="SYNC_PAIRS",
        default=["PRODUCTION_LOG_1:PRODUCTION_1", "PRODUCTION_LOG_2:PRODUCTION_2"],
        var_type="list",
        validator=_valid_sync_pairs,
        description="Two SOURCE_TAB:TARGET_TAB pairs",
    ),
    "SYNC_SOURCE_SPAN": EnvVar(
        name="SYNC_SOURCE_SPAN",
        default="A:C",
        pattern=A1_SPAN_PATTERN,
        description="Source tab span holding timestamp and reference URL",
    ),
    "SYNC_TIMESTAMP_COLUMN": EnvVar(
        name="SYNC_TIMESTAMP_COLUMN",
        default=0,
        var_type="int",
        min_value=0,
        description="Zero-based timestamp column within the source span",
    ),
    "SYNC_URL_COLUMN": EnvVar(
        name="SYNC_URL_COLUMN",
        default=2,
        var_type="int",
        min_value=0,
        description="Zero-based reference URL column within the source span",
    ),
    "SYNC_TARGET_SPAN": EnvVar(
        name="SYNC_TARGET_SPAN",
        default="A:ZZ",
        pattern=A1_SPAN_PATTERN,
        description="Target tab span that is cleared and rewritten",
    ),
    # Request logging
    "REQUEST_LOG_ENABLED": EnvVar(
        name="REQUEST_LOG_ENABLED",
        default=True,
        var_type="bool",
        description="Log each request and keep it in the debug buffer",
    ),
    "REQUEST_LOG_EXCLUDE": EnvVar(
        name="REQUEST_LOG_EXCLUDE",
        default=["/api/health"],
        var_type="list",
        description="Request paths that are never logged",
    ),
}


class ConfigMeta(type):
    """Resolves Config.NAME lookups against ENV_VARS, memoising each value."""

    _cache: Dict[str, Any] = {}

    def __getattr__(cls, name: str) -> Any:
        if name.startswith("_") or name not in ENV_VARS:
            raise AttributeError(f"No setting named {name}")
        if name not in cls._cache:
            cls._cache[name] = ENV_VARS[name].read()
        return cls._cache[name]


class Config(metaclass=ConfigMeta):
    """Attribute access to settings, e.g. ``Config.SYNC_INTERVAL_SECONDS``."""

    @classmethod
    def get(cls, name: str, default: Any = None) -> Any:
        try:
            return getattr(cls, name)
        except (AttributeError, ConfigError):
            return default

    @classmethod
    def to_dict(cls, include_sensitive: bool = False) -> Dict[str, Any]:
        """JSON-ready settings; invalid ones read as None, secrets as ``***`` and paths as text."""
        snapshot: Dict[str, Any] = {}
        for name, env_var in ENV_VARS.items():
            try:
                value = env_var.read()
            except ConfigError:
                value = None
            if env_var.sensitive and not include_sensitive and value:
                value = "***"
            elif isinstance(value, Path):
                value = str(value)
            snapshot[name] = value
        return snapshot

    @classmethod
    def clear_cache(cls) -> None:
        cls._cache.clear()


def validate_config(strict: bool = False) -> Dict[str, Any]:
    """
    Check every declared variable.

    Args:
        strict: Treat a bad optional variable as an error. Otherwise it is
            logged and left out of the result.

    Returns:
        Mapping of variable name to its typed value

    Raises:
        ConfigError: Listing every variable that failed
    """
    values: Dict[str, Any] = {}
    errors: List[str] = []

    for name, env_var in ENV_VARS.items():
        try:
            values[name] = env_var.read()
        except ConfigError as e:
            if env_var.required or strict:
                errors.append(str(e))
            else:
                logger.warning(f"Ignoring {name}: {e}")
            continue
        shown = ("***" if values[name] else None) if env_var.sensitive else values[name]
        logger.debug(f"{name}={shown}")

    if errors:
        message = f"{len(errors)} invalid setting(s):\n" + "\n".join(f"  {e}" for e in errors)
        logger.error(message)
        raise ConfigError(message)

    if values.get("SYNC_SHEET_ID") is None:
        values["SYNC_SHEET_ID"] = values.get("PME_SHEET_ID")

    logger.info(f"Loaded {len(values)} settings")
    return values
