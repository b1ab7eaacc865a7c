"""Runtime settings.

Loaded from ``config/tentmap.json`` and overridden by environment
variables (a ``.env`` file in the project root is read first):

    TENTMAP_DB_PATH                  database.path
    TENTMAP_TIMEZONE                 tally.timezone
    TENTMAP_SCHEDULE                 tally.schedule (crontab, 5 fields)
    TENTMAP_COUNT_REJECTED_PENDING   tally.count_rejected_pending
    TENTMAP_LOG_LEVEL                logging.level
    TENTMAP_LOG_FILE                 logging.file
    TENTMAP_API_HOST / TENTMAP_API_PORT

Relative database and log paths resolve against the project root.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from tentmap.utils.time import load_zone

ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_DIR = ROOT / "config"
CONFIG_FILENAME = "tentmap.json"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


@dataclass(frozen=True)
class Settings:
    """Validated runtime settings."""
    db_path: Path
    timezone: str = "America/Los_Angeles"
    schedule: str = "0 0 * * *"
    count_rejected_pending: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    def __post_init__(self) -> None:
        load_zone(self.timezone)
        if len(self.schedule.split()) != 5:
            raise ValueError(f"Schedule must be a 5-field crontab: {self.schedule!r}")
        CronTrigger.from_crontab(self.schedule, timezone=self.zone)
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.log_level!r}")
        if not 0 < self.api_port < 65536:
            raise ValueError(f"Invalid API port: {self.api_port}")

    @property
    def zone(self) -> ZoneInfo:
        return load_zone(self.timezone)

    @staticmethod
    def from_mapping(
        data: Mapping[str, Any],
        env: Optional[Mapping[str, str]] = None,
        base_dir: Path = ROOT,
    ) -> Settings:
        env = os.environ if env is None else env
        database = data.get("database", {})
        tally = data.get("tally", {})
        api = data.get("api", {})
        logging_cfg = data.get("logging", {})

        db_path = Path(env.get("TENTMAP_DB_PATH") or database.get("path", "data/tentmap.db"))
        if not db_path.is_absolute():
            db_path = base_dir / db_path

        log_file_raw = env.get("TENTMAP_LOG_FILE") or logging_cfg.get("file")
        log_file: Optional[Path] = None
        if log_file_raw:
            log_file = Path(log_file_raw)
            if not log_file.is_absolute():
                log_file = base_dir / log_file

        count_rejected = tally.get("count_rejected_pending", False)
        if "TENTMAP_COUNT_REJECTED_PENDING" in env:
            count_rejected = env["TENTMAP_COUNT_REJECTED_PENDING"]

        try:
            port = int(env.get("TENTMAP_API_PORT") or api.get("port", 8080))
        except ValueError as e:
            raise ValueError(f"Invalid API port: {e}") from e

        return Settings(
            db_path=db_path,
            timezone=env.get("TENTMAP_TIMEZONE") or tally.get("timezone", "America/Los_Angeles"),
            schedule=env.get("TENTMAP_SCHEDULE") or tally.get("schedule", "0 0 * * *"),
            count_rejected_pending=_parse_bool(count_rejected),
            api_host=env.get("TENTMAP_API_HOST") or api.get("host", "127.0.0.1"),
            api_port=port,
            log_level=str(env.get("TENTMAP_LOG_LEVEL") or logging_cfg.get("level", "INFO")).upper(),
            log_file=log_file,
        )

    @staticmethod
    def from_config_dir(
        config_dir: Path = DEFAULT_CONFIG_DIR,
        env: Optional[Mapping[str, str]] = None,
    ) -> Settings:
        """Load settings from ``<config_dir>/tentmap.json`` plus the environment.

        A missing config file falls back to defaults; a malformed one raises.
        """
        if env is None:
            load_dotenv(ROOT / ".env")
        path = config_dir / CONFIG_FILENAME
        data: dict[str, Any] = {}
        if path.exists():
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            if not isinstance(data, dict):
                raise ValueError(f"{path} must contain a JSON object")
        return Settings.from_mapping(data, env=env, base_dir=config_dir.resolve().parent)
