from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from event_broadcaster.domain.events import OutputFormat

LOGGER = logging.getLogger(__name__)

DEFAULT_PORT = 5557
ENV_PREFIX = "EVENT_BROADCASTER_"
SECTION = "broadcaster"
KNOWN_KEYS = frozenset({"port", "output_format", "search_for_port", "host", "send_hwm", "io_threads", "log_level"})


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Expected a boolean, got: {value!r}")


def _parse_port(value: Any) -> int:
    port = int(value)
    if not 0 <= port <= 65535:
        raise ValueError(f"port must be within 0..65535, got: {port}")
    return port


@dataclass(frozen=True)
class BroadcasterConfig:
    """Start-up settings; port and format may change later via reconfigure."""

    port: int = DEFAULT_PORT
    output_format: OutputFormat = OutputFormat.JSON
    search_for_port: bool = True
    host: str = "*"
    send_hwm: int = 1000
    io_threads: int = 1
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "BroadcasterConfig":
        section = cfg.get(SECTION, cfg) or {}
        if not isinstance(section, Mapping):
            raise ValueError(f"{SECTION} section must be a mapping, got {type(section).__name__}")
        unknown = sorted(set(section) - KNOWN_KEYS)
        if unknown:
            LOGGER.warning("Ignoring unknown %s settings: %s", SECTION, ", ".join(map(str, unknown)))
        base = cls()
        return cls(
            port=_parse_port(section.get("port", base.port)),
            output_format=OutputFormat.parse(section.get("output_format", base.output_format)),
            search_for_port=_parse_bool(section.get("search_for_port", base.search_for_port)),
            host=str(section.get("host", base.host)).strip() or base.host,
            send_hwm=max(0, int(section.get("send_hwm", base.send_hwm))),
            io_threads=max(1, int(section.get("io_threads", base.io_threads))),
            log_level=str(section.get("log_level", base.log_level)).upper(),
        )

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "BroadcasterConfig":
        env = os.environ if environ is None else environ
        updates: dict = {}
        if env.get(ENV_PREFIX + "PORT", "").strip():
            updates["port"] = _parse_port(env[ENV_PREFIX + "PORT"])
        if env.get(ENV_PREFIX + "FORMAT", "").strip():
            updates["output_format"] = OutputFormat.parse(env[ENV_PREFIX + "FORMAT"])
        if env.get(ENV_PREFIX + "SEARCH", "").strip():
            updates["search_for_port"] = _parse_bool(env[ENV_PREFIX + "SEARCH"])
        if env.get(ENV_PREFIX + "HOST", "").strip():
            updates["host"] = env[ENV_PREFIX + "HOST"].strip()
        if env.get(ENV_PREFIX + "SEND_HWM", "").strip():
            updates["send_hwm"] = max(0, int(env[ENV_PREFIX + "SEND_HWM"]))
        if env.get(ENV_PREFIX + "LOG_LEVEL", "").strip():
            updates["log_level"] = env[ENV_PREFIX + "LOG_LEVEL"].strip().upper()
        return replace(self, **updates)


def read_config_file(path: str | Path) -> Mapping[str, Any]:
    """Parse a broadcaster YAML file; an empty file yields no settings."""
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise FileNotFoundError(f"Broadcaster config not found: {config_path}") from None
    try:
        cfg = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"{config_path}: invalid YAML: {exc}") from exc
    if cfg is None:
        return {}
    if not isinstance(cfg, Mapping):
        raise ValueError(f"{config_path}: expected a mapping at top level, got {type(cfg).__name__}")
    return cfg


def load_broadcaster_config(
    path: str | Path | None = None, environ: Optional[Mapping[str, str]] = None
) -> BroadcasterConfig:
    """Defaults, overlaid by the YAML file at ``path`` and then the environment."""
    cfg = read_config_file(path) if path is not None else {}
    return BroadcasterConfig.from_mapping(cfg).with_env(environ)
