from __future__ import annotations

import logging
from configparser import ConfigParser
from pathlib import Path


class AppConfig:
    def __init__(self, path: Path | None = None) -> None:
        parser = ConfigParser()
        package_root = Path(__file__).resolve().parent.parent
        config_path = path or package_root / "config.ini"
        parser.read(config_path)
        if not parser.sections():
            parser.read(Path("config.ini"))
        self._parser = parser
        self._root = package_root

    def engine_settings(self) -> dict[str, object]:
        return {
            "enforce_node_timeouts": self._get_bool("engine", "enforce_node_timeouts", True),
            "default_node_timeout_seconds": self._get_int("engine", "default_node_timeout_seconds", 300),
            "reject_ambiguous_inputs": self._get_bool("engine", "reject_ambiguous_inputs", False),
            "inline_wait_limit_seconds": self._get_float("engine", "inline_wait_limit_seconds", 0.0),
        }

    def queue_settings(self) -> dict[str, object]:
        tries = self._get_int("queue", "tries", 3)
        return {
            "broker_url": self._get_str("queue", "broker_url", "redis://localhost:6379/0"),
            "result_backend": self._get_str("queue", "result_backend", "redis://localhost:6379/1"),
            "tries": tries,
            "timeout_seconds": self._get_int("queue", "timeout_seconds", 3600),
            "backoff_seconds": self._get_int("queue", "backoff_seconds", 60),
            "hard_limit_grace_seconds": self._get_int("queue", "hard_limit_grace_seconds", 60),
            "default_max_retries": self._get_int("queue", "default_max_retries", max(tries - 1, 0)),
            "queues": self._get_csv("queue", "queues", ["high-priority", "default", "low-priority"]),
        }

    def store_settings(self) -> dict[str, object]:
        return {"db_path": self._get_str("store", "db_path", "data/flowcore.db")}

    def credentials_path(self) -> Path:
        return self._data_path("credentials", "path", "credentials.yaml")

    def error_workflows_path(self) -> Path:
        return self._data_path("error_workflows", "path", "error_workflows.yaml")

    def _data_path(self, section: str, key: str, default: str) -> Path:
        raw = Path(self._get_str(section, key, default))
        if raw.is_absolute():
            return raw
        candidate = self._root / raw
        return candidate if candidate.exists() else raw

    def logging_settings(self) -> dict[str, str]:
        return {
            "level": self._get_str("logging", "level", "INFO"),
            "format": self._get_str(
                "logging",
                "format",
                "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            ),
        }

    def _get_str(self, section: str, key: str, fallback: str) -> str:
        return self._parser.get(section, key, fallback=fallback)

    def _get_int(self, section: str, key: str, fallback: int) -> int:
        return self._parser.getint(section, key, fallback=fallback)

    def _get_float(self, section: str, key: str, fallback: float) -> float:
        return self._parser.getfloat(section, key, fallback=fallback)

    def _get_bool(self, section: str, key: str, fallback: bool) -> bool:
        return self._parser.getboolean(section, key, fallback=fallback)

    def _get_csv(self, section: str, key: str, fallback: list[str]) -> list[str]:
        value = self._parser.get(section, key, fallback="")
        if not value:
            return list(fallback)
        return [part.strip() for part in value.split(",") if part.strip()]


def configure_logging(config: AppConfig | None = None) -> None:
    settings = (config or app_config).logging_settings()
    logging.basicConfig(
        level=getattr(logging, settings["level"].upper(), logging.INFO),
        format=settings["format"],
    )


app_config = AppConfig()
