"""Runtime settings for the playground runner."""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

CONFIG_ENV = "PLAYGROUND_CONFIG"


@dataclass(frozen=True)
class RunnerLimits:
    max_code_bytes: int = 64 * 1024
    max_input_bytes: int = 1024 * 1024
    max_output_bytes: int = 1024 * 1024
    default_timeout_s: int = 10
    max_timeout_s: int = 60


@dataclass(frozen=True)
class DockerPolicy:
    binary: str = "docker"
    pids_limit: int = 128
    cpus: float = 1.0
    memory: str = "512m"
    memory_swap: str = "512m"
    tmpfs_size: str = "64m"
    user: str = "65534:65534"
    workdir: str = "/workspace"
    container_prefix: str = "playground"
    keepalive_grace_s: int = 30
    command_timeout_s: int = 30


@dataclass(frozen=True)
class PullPolicy:
    always: bool = False
    attempts: int = 3
    backoff_s: float = 1.0
    timeout_s: int = 300
    failure_ttl_s: int = 300


@dataclass(frozen=True)
class RunnerSettings:
    host: str = "0.0.0.0"
    port: int = 8080
    route_prefix: str = "/playground"
    cors_origins: tuple[str, ...] = ("*",)
    max_concurrency: int = 4
    admission_timeout_s: float | None = None
    log_level: str = "INFO"
    log_json: bool = False
    limits: RunnerLimits = RunnerLimits()
    docker: DockerPolicy = DockerPolicy()
    pull: PullPolicy = PullPolicy()
    images: Mapping[str, str] = field(default_factory=dict)


DEFAULT_CONFIG: dict[str, Any] = {
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
        "route_prefix": "/playground",
        "cors_origins": ["*"],
    },
    "runner": {
        "max_concurrency": 4,
        "admission_timeout_s": None,
    },
    "logging": {
        "level": "INFO",
        "json": False,
    },
    "limits": {
        "max_code_bytes": 64 * 1024,
        "max_input_bytes": 1024 * 1024,
        "max_output_bytes": 1024 * 1024,
        "default_timeout_s": 10,
        "max_timeout_s": 60,
    },
    "docker": {
        "binary": "docker",
        "pids_limit": 128,
        "cpus": 1.0,
        "memory": "512m",
        "memory_swap": "512m",
        "tmpfs_size": "64m",
        "user": "65534:65534",
        "workdir": "/workspace",
        "container_prefix": "playground",
        "keepalive_grace_s": 30,
        "command_timeout_s": 30,
    },
    "pull": {
        "always": False,
        "attempts": 3,
        "backoff_s": 1.0,
        "timeout_s": 300,
        "failure_ttl_s": 300,
    },
    "images": {},
}

# env var -> (section, key)
_ENV_KEYS: dict[str, tuple[str, str]] = {
    "PLAYGROUND_HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "PLAYGROUND_PORT": ("server", "port"),
    "PLAYGROUND_ROUTE_PREFIX": ("server", "route_prefix"),
    "PLAYGROUND_CORS_ORIGINS": ("server", "cors_origins"),
    "PLAYGROUND_MAX_CONCURRENCY": ("runner", "max_concurrency"),
    "PLAYGROUND_ADMISSION_TIMEOUT_S": ("runner", "admission_timeout_s"),
    "PLAYGROUND_LOG_LEVEL": ("logging", "level"),
    "PLAYGROUND_LOG_JSON": ("logging", "json"),
    "PLAYGROUND_MAX_CODE_BYTES": ("limits", "max_code_bytes"),
    "PLAYGROUND_MAX_INPUT_BYTES": ("limits", "max_input_bytes"),
    "PLAYGROUND_MAX_OUTPUT_BYTES": ("limits", "max_output_bytes"),
    "PLAYGROUND_TIMEOUT_S": ("limits", "default_timeout_s"),
    "PLAYGROUND_MAX_TIMEOUT_S": ("limits", "max_timeout_s"),
    "PLAYGROUND_DOCKER_BIN": ("docker", "binary"),
    "PLAYGROUND_PIDS_LIMIT": ("docker", "pids_limit"),
    "PLAYGROUND_CPUS": ("docker", "cpus"),
    "PLAYGROUND_MEMORY": ("docker", "memory"),
    "PLAYGROUND_MEMORY_SWAP": ("docker", "memory_swap"),
    "PLAYGROUND_TMPFS_SIZE": ("docker", "tmpfs_size"),
    "PLAYGROUND_SANDBOX_USER": ("docker", "user"),
    "PLAYGROUND_PULL_ALWAYS": ("pull", "always"),
    "PLAYGROUND_PULL_ATTEMPTS": ("pull", "attempts"),
    "PLAYGROUND_PULL_BACKOFF_S": ("pull", "backoff_s"),
    "PLAYGROUND_PULL_TIMEOUT_S": ("pull", "timeout_s"),
    "PLAYGROUND_PULL_FAILURE_TTL_S": ("pull", "failure_ttl_s"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


def deep_merge(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise RuntimeError(f"讀取設定檔失敗：{path}") from exc
    if not isinstance(data, dict):
        raise RuntimeError(f"設定檔格式錯誤，頂層必須是 mapping：{path}")
    return data


def load_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunnerSettings:
    """Build settings from defaults, an optional YAML file and the environment.

    Later sources win: built-in defaults < YAML file < ``PLAYGROUND_*`` env vars.
    The YAML path comes from ``config_path`` or the ``PLAYGROUND_CONFIG`` env var.
    """

    env = os.environ if environ is None else environ
    raw = deepcopy(DEFAULT_CONFIG)

    path = config_path
    if path is None and env.get(CONFIG_ENV):
        path = Path(env[CONFIG_ENV]).expanduser()
    if path is not None:
        raw = deep_merge(raw, read_yaml(path))

    for name, (section, key) in _ENV_KEYS.items():
        if name in env:
            raw.setdefault(section, {})[key] = env[name]
    for name, value in env.items():
        if name.startswith("PLAYGROUND_IMAGE_"):
            language = name[len("PLAYGROUND_IMAGE_"):].lower()
            raw.setdefault("images", {})[language] = value

    return settings_from_mapping(raw)


def settings_from_mapping(raw: Mapping[str, Any]) -> RunnerSettings:
    server = _section(raw, "server")
    runner = _section(raw, "runner")
    logging_cfg = _section(raw, "logging")
    limits = _section(raw, "limits")
    docker = _section(raw, "docker")
    pull = _section(raw, "pull")
    images = _section(raw, "images")

    settings = RunnerSettings(
        host=str(server["host"]),
        port=int(server["port"]),
        route_prefix=_normalize_prefix(str(server["route_prefix"])),
        cors_origins=_as_tuple(server["cors_origins"]),
        max_concurrency=max(1, int(runner["max_concurrency"])),
        admission_timeout_s=_optional_float(runner.get("admission_timeout_s")),
        log_level=str(logging_cfg["level"]).upper(),
        log_json=_as_bool(logging_cfg["json"]),
        limits=RunnerLimits(
            max_code_bytes=int(limits["max_code_bytes"]),
            max_input_bytes=int(limits["max_input_bytes"]),
            max_output_bytes=int(limits["max_output_bytes"]),
            default_timeout_s=int(limits["default_timeout_s"]),
            max_timeout_s=int(limits["max_timeout_s"]),
        ),
        docker=DockerPolicy(
            binary=str(docker["binary"]),
            pids_limit=int(docker["pids_limit"]),
            cpus=float(docker["cpus"]),
            memory=str(docker["memory"]),
            memory_swap=str(docker["memory_swap"]),
            tmpfs_size=str(docker["tmpfs_size"]),
            user=str(docker["user"]),
            workdir=str(docker["workdir"]),
            container_prefix=str(docker["container_prefix"]),
            keepalive_grace_s=int(docker["keepalive_grace_s"]),
            command_timeout_s=int(docker["command_timeout_s"]),
        ),
        pull=PullPolicy(
            always=_as_bool(pull["always"]),
            attempts=max(1, int(pull["attempts"])),
            backoff_s=float(pull["backoff_s"]),
            timeout_s=int(pull["timeout_s"]),
            failure_ttl_s=int(pull["failure_ttl_s"]),
        ),
        images={str(key).lower(): str(value) for key, value in images.items()},
    )
    if not 0 < settings.limits.default_timeout_s <= settings.limits.max_timeout_s:
        raise ValueError("limits.default_timeout_s 必須介於 1 與 max_timeout_s 之間")
    if settings.limits.max_output_bytes <= 0:
        raise ValueError("limits.max_output_bytes 必須大於 0")
    return settings


def _section(raw: Mapping[str, Any], name: str) -> dict[str, Any]:
    defaults = DEFAULT_CONFIG[name]
    value = raw.get(name)
    if value is None:
        return dict(defaults)
    if not isinstance(value, Mapping):
        raise ValueError(f"設定區段 {name} 必須是 mapping")
    return {**defaults, **value}


def _normalize_prefix(prefix: str) -> str:
    cleaned = "/" + prefix.strip().strip("/")
    return "" if cleaned == "/" else cleaned


def _as_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    return tuple(str(item) for item in value or ())


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def _optional_float(value: Any) -> float | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return float(value)
