from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False


@dataclass
class AwsSection:
    endpoint_url: str = ""        # empty -> regional AWS endpoint
    max_attempts: int = 5
    retry_mode: str = "standard"
    connect_timeout_sec: float = 10.0
    read_timeout_sec: float = 30.0


@dataclass
class SyncSection:
    prune: bool = True
    isolate_mesh_failures: bool = False
    max_weighted_targets: int = 10  # 0 -> leave enforcement to App Mesh
    deadline_sec: float = 0.0       # 0 -> no deadline


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class InputsSection:
    snapshot_path: str = "./snapshot.yml"


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    aws: AwsSection
    sync: SyncSection
    logging: LoggingSection
    inputs: InputsSection

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./appmeshsync.yml",
    os.path.expanduser("~/.config/appmeshsync/config.yml"),
    "/etc/appmeshsync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False},
    "aws": {
        "endpoint_url": "",
        "max_attempts": 5,
        "retry_mode": "standard",
        "connect_timeout_sec": 10.0,
        "read_timeout_sec": 30.0,
    },
    "sync": {
        "prune": True,
        "isolate_mesh_failures": False,
        "max_weighted_targets": 10,
        "deadline_sec": 0.0,
    },
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
    "inputs": {"snapshot_path": "./snapshot.yml"},
}

_BOOL_KEYS = {"dry_run", "prune", "isolate_mesh_failures"}
_INT_KEYS = {"max_attempts", "max_weighted_targets"}
_FLOAT_KEYS = {"connect_timeout_sec", "read_timeout_sec", "deadline_sec"}
_RETRY_MODES = {"legacy", "standard", "adaptive"}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _load_env_file(env_file: Optional[str]) -> None:
    """Load a .env file into os.environ without overriding exported variables."""
    path = env_file if env_file is not None else (find_dotenv(usecwd=True) or "")
    if path:
        load_dotenv(path, override=False)


def _env_to_dict(prefix: str = "AMSYNC_") -> Dict[str, Any]:
    """
    Convert AMSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Type coercion for booleans and numbers in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        key = key_path[-1] if key_path else ""
        try:
            if key in _BOOL_KEYS:
                return to_bool(obj)
            if key in _INT_KEYS:
                return int(obj)
            if key in _FLOAT_KEYS:
                return float(obj)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {'.'.join(key_path)}: {obj!r}") from exc
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    problems = []
    for key in ("console_level", "file_level"):
        level = str(cfg.get("logging", {}).get(key, "")).upper()
        if not isinstance(logging.getLevelName(level), int):
            problems.append(f"logging.{key}={level!r}")
    aws = cfg.get("aws", {})
    if aws.get("max_attempts", 1) < 1:
        problems.append("aws.max_attempts must be >= 1")
    if aws.get("retry_mode") not in _RETRY_MODES:
        problems.append(f"aws.retry_mode must be one of {sorted(_RETRY_MODES)}")
    sync = cfg.get("sync", {})
    if sync.get("max_weighted_targets", 0) < 0:
        problems.append("sync.max_weighted_targets must be >= 0")
    if sync.get("deadline_sec", 0) < 0:
        problems.append("sync.deadline_sec must be >= 0")
    if problems:
        raise ConfigError("Invalid configuration: " + ", ".join(problems))


def _section(cls: Any, name: str, values: Dict[str, Any]) -> Any:
    try:
        return cls(**values)
    except TypeError as exc:
        raise ConfigError(f"Unknown key in section '{name}': {exc}") from exc


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "AMSYNC_",
    env_file: Optional[str] = None,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix AMSYNC_, nested via __), after .env loading
      3) YAML file (first existing)
      4) Built-in defaults

    Also performs:
      - ${ENV_VAR} interpolation
      - type coercion (bool/int/float)
      - validation (ConfigError)
    """
    file_cfg = _load_first_existing(files)

    _load_env_file(env_file)
    env_cfg = _env_to_dict(env_prefix)

    # Combine: defaults <- file <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _validate(merged)

    return AppConfig(
        app=_section(AppSection, "app", merged.get("app", {})),
        aws=_section(AwsSection, "aws", merged.get("aws", {})),
        sync=_section(SyncSection, "sync", merged.get("sync", {})),
        logging=_section(LoggingSection, "logging", merged.get("logging", {})),
        inputs=_section(InputsSection, "inputs", merged.get("inputs", {})),
    )
