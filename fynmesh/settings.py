"""Kernel settings: defaults, config/settings.yaml, FYNMESH_* environment overrides.

The kernel section is validated into KernelSettings before a Kernel uses it.
"""

import logging
import os
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "FYNMESH_"

_DEFAULTS: dict[str, Any] = {
    "kernel": {
        "bootstrap_timeout": 30.0,
        "concurrency": 4,
        # "fail" raises DependencyCycleError; "best_effort" loads the stuck set last
        "on_cycle": "fail",
        # "isolate" logs and reports bootstrap failures; "propagate" re-raises them
        "error_policy": "isolate",
        "entry_file": "fynapp_entry.py",
        "manifest_file": "fynapp.manifest.json",
        "legacy_manifest_file": "federation.json",
    },
    "event_bus": {
        "max_queue": 1024,
    },
    "http": {
        "timeout": 10.0,
    },
    "registry": {
        # Template resolver: <base_url>/<name>/dist/fynapp.manifest.json
        "base_url": "",
        "version": "0.0.0",
    },
    # Unit names loaded by `python -m fynmesh` when none are given on the command line
    "units": [],
    "logging": {
        "file": "logs/fynmesh.log",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
        # Per-logger levels, e.g. {"fynmesh.coordinator": "DEBUG"}
        "loggers": {"httpx": "WARNING"},
    },
}

_cached: dict[str, Any] | None = None


class KernelSettings(BaseModel):
    """Validated `kernel`, `event_bus` and `http` values a Kernel is built from."""

    model_config = ConfigDict(frozen=True)

    bootstrap_timeout: float = Field(default=30.0, gt=0)
    concurrency: int = 4
    on_cycle: Literal["fail", "best_effort"] = "fail"
    error_policy: Literal["isolate", "propagate"] = "isolate"
    entry_file: str = "fynapp_entry.py"
    manifest_file: str = "fynapp.manifest.json"
    legacy_manifest_file: str = "federation.json"
    max_queue: int = Field(default=1024, ge=1)
    http_timeout: float = Field(default=10.0, gt=0)

    @field_validator("concurrency")
    @classmethod
    def _clamp_concurrency(cls, v: int) -> int:
        return max(1, min(v, 8))

    @field_validator("on_cycle", mode="before")
    @classmethod
    def _normalize_cycle(cls, v: Any) -> Any:
        return v.replace("-", "_").lower() if isinstance(v, str) else v

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "KernelSettings":
        kernel = dict(settings.get("kernel") or {})
        kernel["max_queue"] = get_setting(dict(settings), "event_bus.max_queue", 1024)
        kernel["http_timeout"] = get_setting(dict(settings), "http.timeout", 10.0)
        return cls.model_validate(kernel)


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base. None values are skipped."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _copy(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _copy(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_copy(x) for x in obj]
    return obj


def get_default_settings() -> dict[str, Any]:
    return _copy(_DEFAULTS)


def merge_settings(overlay: Mapping[str, Any] | None) -> dict[str, Any]:
    """Defaults with overlay applied. Used when a Kernel is built from a partial dict."""
    result = get_default_settings()
    if overlay:
        _deep_merge(result, _copy(dict(overlay)))
    return result


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'kernel.bootstrap_timeout')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """FYNMESH_KERNEL__ERROR_POLICY=propagate -> {"kernel": {"error_policy": "propagate"}}.

    Double underscore separates levels. Values are parsed as YAML scalars.
    """
    environ = os.environ if environ is None else environ
    overlay: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        parts = [p.lower() for p in name[len(ENV_PREFIX) :].split("__") if p]
        if not parts:
            continue
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw
        node = overlay
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return overlay


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def reload_settings() -> None:
    """Clear the settings cache. Call after config files or the environment change."""
    global _cached
    _cached = None


def load_settings(
    config_dir: Path | None = None, environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Defaults, then config/settings.yaml, then FYNMESH_* variables. Cached until reload."""
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"

    result = get_default_settings()
    _deep_merge(result, _read_yaml(config_dir / "settings.yaml"))
    _deep_merge(result, env_overrides(environ))

    _cached = result
    return result
