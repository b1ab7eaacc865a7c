"""Tests for settings loading and validation."""

import json
from pathlib import Path

import pytest

from tentmap.config import CONFIG_FILENAME, DEFAULT_CONFIG_DIR, Settings


class TestDefaults:
    def test_bundled_config_loads(self) -> None:
        settings = Settings.from_config_dir(DEFAULT_CONFIG_DIR, env={})
        assert settings.timezone == "America/Los_Angeles"
        assert settings.schedule == "0 0 * * *"
        assert settings.count_rejected_pending is False
        assert settings.db_path.name == "tentmap.db"
        assert settings.db_path.is_absolute()

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = Settings.from_config_dir(tmp_path / "config", env={})
        assert settings.db_path == tmp_path.resolve() / "data" / "tentmap.db"
        assert settings.api_port == 8080
        assert settings.log_file is None

    def test_malformed_file_raises(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ValueError):
            Settings.from_config_dir(tmp_path, env={})


class TestOverrides:
    def test_file_values(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILENAME).write_text(json.dumps({
            "database": {"path": "/var/lib/tentmap.db"},
            "tally": {"timezone": "UTC", "schedule": "15 1 * * *", "count_rejected_pending": True},
            "logging": {"level": "debug", "file": "logs/tentmap.log"},
        }), encoding="utf-8")
        settings = Settings.from_config_dir(tmp_path, env={})
        assert settings.db_path == Path("/var/lib/tentmap.db")
        assert settings.timezone == "UTC"
        assert settings.schedule == "15 1 * * *"
        assert settings.count_rejected_pending is True
        assert settings.log_level == "DEBUG"
        assert settings.log_file == tmp_path.resolve().parent / "logs" / "tentmap.log"

    def test_environment_wins(self, tmp_path: Path) -> None:
        env = {
            "TENTMAP_DB_PATH": str(tmp_path / "env.db"),
            "TENTMAP_TIMEZONE": "Europe/Berlin",
            "TENTMAP_SCHEDULE": "0 6 * * *",
            "TENTMAP_COUNT_REJECTED_PENDING": "yes",
            "TENTMAP_API_PORT": "9000",
        }
        settings = Settings.from_mapping({"tally": {"timezone": "UTC"}}, env=env, base_dir=tmp_path)
        assert settings.db_path == tmp_path / "env.db"
        assert settings.timezone == "Europe/Berlin"
        assert settings.schedule == "0 6 * * *"
        assert settings.count_rejected_pending is True
        assert settings.api_port == 9000

    @pytest.mark.parametrize("raw,expected", [
        ("1", True), ("true", True), ("ON", True), ("0", False), ("no", False), ("", False),
    ])
    def test_bool_parsing(self, raw: str, expected: bool, tmp_path: Path) -> None:
        env = {"TENTMAP_COUNT_REJECTED_PENDING": raw}
        settings = Settings.from_mapping({}, env=env, base_dir=tmp_path)
        assert settings.count_rejected_pending is expected


class TestValidation:
    def test_unknown_timezone(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            Settings(db_path=tmp_path / "x.db", timezone="Mars/Olympus_Mons")

    @pytest.mark.parametrize("schedule", ["0 0 * *", "61 0 * * *", "every day"])
    def test_bad_crontab(self, tmp_path: Path, schedule: str) -> None:
        with pytest.raises(ValueError):
            Settings(db_path=tmp_path / "x.db", schedule=schedule)

    def test_bad_port(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            Settings(db_path=tmp_path / "x.db", api_port=70000)
        with pytest.raises(ValueError):
            Settings.from_mapping({}, env={"TENTMAP_API_PORT": "http"}, base_dir=tmp_path)

    def test_bad_log_level(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            Settings(db_path=tmp_path / "x.db", log_level="LOUD")
