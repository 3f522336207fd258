from __future__ import annotations

import json
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(slots=True)
class EngineSettings:
    max_steps: int = 1000
    run_timeout_seconds: float | None = None
    max_flow_depth: int = 10
    max_sleep_ms: int = 300_000
    http_timeout_ms: int = 10_000
    http_allow_domains: list[str] = field(default_factory=list)
    env_allow_list: list[str] = field(default_factory=list)


class AppConfig:
    def __init__(self, config_path: Path | None = None, flows_path: Path | None = None) -> None:
        parser = ConfigParser()
        package_root = Path(__file__).resolve().parent.parent
        parser.read(config_path or package_root / "config.ini")
        if not parser.sections() and config_path is None:
            parser.read(Path("config.ini"))
        self._parser = parser
        self._flows_path = flows_path or package_root / "flows.yaml"

    def engine_settings(self) -> EngineSettings:
        timeout = self._get_float("engine", "run_timeout_seconds", 0.0)
        return EngineSettings(
            max_steps=self._get_int("engine", "max_steps", 1000),
            run_timeout_seconds=timeout if timeout > 0 else None,
            max_flow_depth=self._get_int("engine", "max_flow_depth", 10),
            max_sleep_ms=self._get_int("engine", "max_sleep_ms", 300_000),
            http_timeout_ms=self._get_int("engine", "http_timeout_ms", 10_000),
            http_allow_domains=self._get_csv("http", "allow_domains", []),
            env_allow_list=self._get_csv("env", "allow", []),
        )

    def db_path(self) -> str:
        return self._get_str("store", "db_path", "data/visualflows.db")

    def logging_settings(self) -> dict[str, object]:
        return {
            "level": self._get_str("logging", "level", "INFO"),
            "json_format": self._get_bool("logging", "json", False),
        }

    def seed_flows(self) -> list[dict[str, object]]:
        raw = self._load_yaml(self._flows_path)
        flows = raw.get("flows")
        if not isinstance(flows, list):
            return []
        return [item for item in flows if isinstance(item, dict)]

    def as_dict(self) -> dict[str, object]:
        settings = self.engine_settings()
        return {
            "engine": {
                "max_steps": settings.max_steps,
                "run_timeout_seconds": settings.run_timeout_seconds,
                "max_flow_depth": settings.max_flow_depth,
                "max_sleep_ms": settings.max_sleep_ms,
                "http_timeout_ms": settings.http_timeout_ms,
            },
            "http": {"allow_domains": settings.http_allow_domains},
            "env": {"allow": settings.env_allow_list},
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
        if value.lstrip().startswith("["):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return [str(item) for item in parsed]
            except json.JSONDecodeError:
                pass
        return [part.strip() for part in value.split(",") if part.strip()]

    def _load_yaml(self, path: Path) -> dict[str, object]:
        if not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError:
            return {}
        return raw if isinstance(raw, dict) else {}


app_config = AppConfig()
