"""
Application settings object.

``AppSettings`` is built once from the validated environment and passed to
every service, so services never read ``os.environ`` themselves and tests
construct settings directly.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .env_config import Config, ConfigError, validate_config


@dataclass(frozen=True)
class SyncPairSettings:
    """One source tab mirrored into one target tab."""

    source_tab: str
    target_tab: str

    @property
    def name(self) -> str:
        return f"{self.source_tab}->{self.target_tab}"

    @classmethod
    def parse(cls, value: str) -> "SyncPairSettings":
        source, sep, target = value.partition(":")
        if not sep or not source.strip() or not target.strip():
            raise ConfigError(f"Invalid sync pair '{value}', expected SOURCE:TARGET")
        return cls(source_tab=source.strip(), target_tab=target.strip())


@dataclass(frozen=True)
class AppSettings:
    """Validated runtime settings for the REI API."""

    pme_sheet_id: str
    workflow_processor_sheet_id: str
    app_env: str = "prod"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    service_account_key: Optional[str] = None
    service_account_file: Optional[Path] = None
    sheets_timeout_seconds: float = 30.0

    main_tab: str = "MAIN"
    todo_tab: str = "TO_DO_MASTER"
    var_tab: str = "VAR"
    queue_tab: str = "QUEUE"
    main_range_span: str = "A:ZZ"

    cache_ttl_seconds: int = 300
    cache_refresh_enabled: bool = True

    sync_enabled: bool = True
    sync_interval_seconds: int = 1800
    sync_sheet_id: Optional[str] = None
    sync_control_range: str = "PRODUCTION_SYNC!B1"
    sync_pairs: Tuple[SyncPairSettings, ...] = field(
        default_factory=lambda: (
            SyncPairSettings("PRODUCTION_LOG_1", "PRODUCTION_1"),
            SyncPairSettings("PRODUCTION_LOG_2", "PRODUCTION_2"),
        )
    )
    sync_source_span: str = "A:C"
    sync_timestamp_column: int = 0
    sync_url_column: int = 2
    sync_target_span: str = "A:ZZ"

    request_log_enabled: bool = True
    request_log_exclude: Tuple[str, ...] = ("/api/health",)

    @property
    def effective_sync_sheet_id(self) -> str:
        return self.sync_sheet_id or self.pme_sheet_id

    @property
    def control_tab(self) -> str:
        return self.sync_control_range.split("!", 1)[0]

    @property
    def control_cell(self) -> str:
        return self.sync_control_range.split("!", 1)[1]

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Validate the environment and build settings.

        Raises:
            ConfigError: If any variable is missing or invalid
        """
        Config.clear_cache()
        values: Dict[str, Any] = validate_config(strict=True)
        return cls(
            app_env=values["APP_ENV"],
            debug=values["DEBUG"],
            host=values["HOST"],
            port=values["PORT"],
            log_level=values["LOG_LEVEL"],
            service_account_key=values["GOOGLE_SERVICE_ACCOUNT_KEY"],
            service_account_file=values["GOOGLE_SERVICE_ACCOUNT_FILE"],
            sheets_timeout_seconds=values["SHEETS_TIMEOUT_SECONDS"],
            pme_sheet_id=values["PME_SHEET_ID"],
            workflow_processor_sheet_id=values["WORKFLOW_PROCESSOR_SHEET_ID"],
            main_tab=values["MAIN_TAB"],
            todo_tab=values["TODO_TAB"],
            var_tab=values["VAR_TAB"],
            queue_tab=values["QUEUE_TAB"],
            main_range_span=values["MAIN_RANGE_SPAN"],
            cache_ttl_seconds=values["CACHE_TTL_SECONDS"],
            cache_refresh_enabled=values["CACHE_REFRESH_ENABLED"],
            sync_enabled=values["SYNC_ENABLED"],
            sync_interval_seconds=values["SYNC_INTERVAL_SECONDS"],
            sync_sheet_id=values["SYNC_SHEET_ID"],
            sync_control_range=values["SYNC_CONTROL_RANGE"],
            sync_pairs=tuple(SyncPairSettings.parse(p) for p in values["SYNC_PAIRS"]),
            sync_source_span=values["SYNC_SOURCE_SPAN"],
            sync_timestamp_column=values["SYNC_TIMESTAMP_COLUMN"],
            sync_url_column=values["SYNC_URL_COLUMN"],
            sync_target_span=values["SYNC_TARGET_SPAN"],
            request_log_enabled=values["REQUEST_LOG_ENABLED"],
            request_log_exclude=tuple(values["REQUEST_LOG_EXCLUDE"]),
        )
