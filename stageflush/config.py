from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

DEFAULT_COMMAND_TIMEOUT_S = 3600

DEFAULT_ISOLATED_ENV_VARS: Tuple[str, ...] = (
    "PYTHONPATH",
    "PYTHONHOME",
    "VIRTUAL_ENV",
    "PIP_*",
    "BUNDLE_*",
    "GEM_*",
    "RUBYOPT",
    "RUBYLIB",
)


class ConfigError(RuntimeError):
    """Raised when settings cannot be parsed."""


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Explicit runtime configuration shared by the executor, locks and registries."""

    log_verbose: bool = False
    command_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S
    lock_dir: Path = field(default_factory=lambda: Path.home() / ".stageflush" / "locks")
    lock_timeout_s: Optional[float] = None
    docker_config_dir: Optional[str] = None
    debug_docker: bool = False
    isolated_env_vars: Tuple[str, ...] = DEFAULT_ISOLATED_ENV_VARS
    stage_image_prefix: str = "dimgstage"
    container_label: str = "dapp"
    fail_fast: bool = False

    def __post_init__(self) -> None:
        self.lock_dir = Path(self.lock_dir).expanduser()
        self.isolated_env_vars = tuple(self.isolated_env_vars)
        if self.command_timeout_s <= 0:
            raise ConfigError("command_timeout_s must be positive")
        if self.lock_timeout_s is not None and self.lock_timeout_s < 0:
            raise ConfigError("lock_timeout_s must not be negative")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(unknown)}")
        return cls(**dict(data))

    @classmethod
    def from_file(cls, path: str | Path) -> "Settings":
        raw_text = Path(path).read_text()
        try:
            raw_data = json.loads(raw_text)
        except json.JSONDecodeError:
            try:
                raw_data = yaml.safe_load(raw_text)
            except yaml.YAMLError as exc:
                raise ConfigError(f"Cannot parse settings file {path}: {exc}") from exc
        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise ConfigError("Settings file must contain a mapping")
        return cls.from_dict(raw_data)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        if "STAGEFLUSH_LOG_VERBOSE" in environ:
            values["log_verbose"] = _as_bool(environ["STAGEFLUSH_LOG_VERBOSE"])
        if "STAGEFLUSH_DEBUG_DOCKER" in environ:
            values["debug_docker"] = environ["STAGEFLUSH_DEBUG_DOCKER"] == "1"
        if environ.get("STAGEFLUSH_LOCK_DIR"):
            values["lock_dir"] = Path(environ["STAGEFLUSH_LOCK_DIR"])
        if environ.get("DOCKER_CONFIG"):
            values["docker_config_dir"] = environ["DOCKER_CONFIG"]
        try:
            if environ.get("STAGEFLUSH_COMMAND_TIMEOUT"):
                values["command_timeout_s"] = float(environ["STAGEFLUSH_COMMAND_TIMEOUT"])
            if environ.get("STAGEFLUSH_LOCK_TIMEOUT"):
                values["lock_timeout_s"] = float(environ["STAGEFLUSH_LOCK_TIMEOUT"])
        except ValueError as exc:
            raise ConfigError(f"Invalid timeout in environment: {exc}") from exc
        return cls(**values)
