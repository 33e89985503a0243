"""Per-invocation configuration.

A :class:`FlotillaConfig` is built once by :func:`load_config` and passed
down explicitly; nothing in the package reads module-level defaults at
call time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .errors import FlotillaError
from .models import BulkOperationOptions, SyncStrategy

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "GIT_FLOTILLA_CONFIG"
PARALLELISM_ENV_VAR = "GIT_FLOTILLA_PARALLELISM"
SCAN_DEPTH_ENV_VAR = "GIT_FLOTILLA_SCAN_DEPTH"


@dataclass(frozen=True)
class FlotillaConfig:
    """Defaults applied when a command-line flag is not given."""

    scan_depth: int = 1
    parallelism: int = 4
    fetch_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 0.5
    strategy: SyncStrategy = SyncStrategy.RESET
    include_pattern: str = ""
    exclude_pattern: str = ""
    recursive_submodules: bool = False
    watch_interval: float = 60.0
    sync_root: Path | None = None
    source: Path | None = None

    def __post_init__(self):
        if self.scan_depth < 0:
            raise FlotillaError.manifest(f"scan_depth must be >= 0, got {self.scan_depth}")
        if self.parallelism < 1:
            raise FlotillaError.manifest(f"parallelism must be >= 1, got {self.parallelism}")
        if self.fetch_timeout <= 0:
            raise FlotillaError.manifest(f"fetch_timeout must be > 0, got {self.fetch_timeout}")
        if self.max_retries < 0:
            raise FlotillaError.manifest(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay < 0:
            raise FlotillaError.manifest(
                f"retry_base_delay must be >= 0, got {self.retry_base_delay}"
            )
        if self.watch_interval <= 0:
            raise FlotillaError.manifest(f"watch_interval must be > 0, got {self.watch_interval}")

    def bulk_options(self, **overrides: Any) -> BulkOperationOptions:
        """Build BulkOperationOptions, letting explicit flags win over config."""
        values = {
            "scan_depth": self.scan_depth,
            "parallelism": self.parallelism,
            "include_pattern": self.include_pattern,
            "exclude_pattern": self.exclude_pattern,
            "recursive_submodules": self.recursive_submodules,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return BulkOperationOptions(**values)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        data["sync_root"] = str(self.sync_root) if self.sync_root else None
        data["source"] = str(self.source) if self.source else None
        return data


def resolve_config_file(explicit: Path | None = None) -> Path | None:
    """Find the config file to load.

    Priority order:
    1. explicit path (an explicit path that does not exist is an error)
    2. $GIT_FLOTILLA_CONFIG environment variable
    3. ~/.config/git-flotilla/config.yaml (XDG-compliant)
    """
    if explicit is not None:
        path = explicit.expanduser()
        if not path.is_file():
            raise FlotillaError.manifest(f"config file not found: {path}", path=path)
        return path

    env_config = os.environ.get(CONFIG_ENV_VAR)
    if env_config:
        env_path = Path(env_config).expanduser()
        if env_path.is_file():
            return env_path
        logger.warning("%s points to a missing file: %s", CONFIG_ENV_VAR, env_path)

    xdg_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_home).expanduser() if xdg_home else Path.home() / ".config"
    xdg_path = base / "git-flotilla" / "config.yaml"
    if xdg_path.is_file():
        return xdg_path

    return None


def load_config(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> FlotillaConfig:
    """Load configuration from file and environment, in that order."""
    env = os.environ if environ is None else environ
    config = FlotillaConfig()

    config_file = resolve_config_file(path)
    if config_file is not None:
        config = _apply_mapping(config, _read_yaml(config_file), config_file)
        logger.debug("loaded config from %s", config_file)

    overrides: dict[str, Any] = {}
    if env.get(PARALLELISM_ENV_VAR):
        overrides["parallelism"] = _parse_int(env[PARALLELISM_ENV_VAR], PARALLELISM_ENV_VAR)
    if env.get(SCAN_DEPTH_ENV_VAR):
        overrides["scan_depth"] = _parse_int(env[SCAN_DEPTH_ENV_VAR], SCAN_DEPTH_ENV_VAR)
    if overrides:
        config = replace(config, **overrides)
    return config


def _read_yaml(path: Path) -> dict:
    try:
        content = path.read_text()
    except OSError as e:
        raise FlotillaError.manifest(f"cannot read config file {path}: {e}", path=path) from e
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise FlotillaError.manifest(f"invalid YAML in {path}: {e}", path=path) from e
    if not isinstance(data, dict):
        raise FlotillaError.manifest(f"config file {path} must contain a mapping", path=path)
    return data


_INT_FIELDS = {"scan_depth", "parallelism", "max_retries"}
_FLOAT_FIELDS = {"fetch_timeout", "retry_base_delay", "watch_interval"}
_STR_FIELDS = {"include_pattern", "exclude_pattern"}


def _apply_mapping(config: FlotillaConfig, data: dict, source: Path) -> FlotillaConfig:
    known = {f.name for f in fields(FlotillaConfig)} - {"source"}
    values: dict[str, Any] = {"source": source}
    for raw_key, value in data.items():
        key = str(raw_key).replace("-", "_")
        if key not in known:
            logger.warning("ignoring unknown config key %r in %s", raw_key, source)
            continue
        if key in _INT_FIELDS:
            values[key] = _parse_int(value, key)
        elif key in _FLOAT_FIELDS:
            values[key] = _parse_float(value, key)
        elif key in _STR_FIELDS:
            values[key] = "" if value is None else str(value)
        elif key == "recursive_submodules":
            values[key] = bool(value)
        elif key == "strategy":
            values[key] = SyncStrategy.parse(str(value))
        elif key == "sync_root":
            values[key] = Path(os.path.expandvars(str(value))).expanduser() if value else None
    return replace(config, **values)


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise FlotillaError.manifest(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise FlotillaError.manifest(f"{name} must be an integer, got {value!r}") from None


def _parse_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise FlotillaError.manifest(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise FlotillaError.manifest(f"{name} must be a number, got {value!r}") from None
