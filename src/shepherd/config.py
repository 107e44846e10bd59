"""Runtime settings for shepherd."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import ConfigError

CONFIG_PATH_ENV = "SHEPHERD_CONFIG"


class Strategy(str, Enum):
    DOWNLOAD = "download"
    GCSFUSE = "gcsfuse"

    @classmethod
    def parse(cls, value: "str | Strategy") -> "Strategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            choices = ", ".join(item.value for item in cls)
            raise ConfigError(f"未知的 strategy：{value}（可用：{choices}）") from exc


@dataclass(frozen=True)
class MountSettings:
    gcsfuse_executable: str = "gcsfuse"
    umount_executable: str = "umount"
    stat_cache_ttl: str = "24h"
    type_cache_ttl: str = "24h"
    file_mode: str = "755"


@dataclass(frozen=True)
class RunnerSettings:
    strategy: Strategy = Strategy.DOWNLOAD
    jobs_dir: Path = Path(".")
    keep_work_dir: bool = True
    docker_executable: str = "docker"
    docker_work_root: str = "/mnt/shepherd"
    mount: MountSettings = field(default_factory=MountSettings)
    host: str = "127.0.0.1"
    port: int = 8089
    api_key: str = ""


def read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"讀取設定檔失敗：{path}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"設定檔格式錯誤（必須是 mapping）：{path}")
    return payload


def load_settings(config_path: Path | None = None, env: Mapping[str, str] | None = None) -> RunnerSettings:
    """Merge defaults, an optional YAML file and ``SHEPHERD_*`` variables."""
    env = os.environ if env is None else env
    if config_path is None and env.get(CONFIG_PATH_ENV):
        config_path = Path(env[CONFIG_PATH_ENV]).expanduser()

    data = read_yaml(config_path) if config_path is not None else {}
    mount_data = data.get("mount") or {}
    if not isinstance(mount_data, Mapping):
        raise ConfigError("mount 設定必須是 mapping")

    defaults = RunnerSettings()
    mount_defaults = defaults.mount
    mount = MountSettings(
        gcsfuse_executable=env.get(
            "SHEPHERD_GCSFUSE", str(mount_data.get("gcsfuse_executable", mount_defaults.gcsfuse_executable))
        ),
        umount_executable=env.get(
            "SHEPHERD_UMOUNT", str(mount_data.get("umount_executable", mount_defaults.umount_executable))
        ),
        stat_cache_ttl=str(mount_data.get("stat_cache_ttl", mount_defaults.stat_cache_ttl)),
        type_cache_ttl=str(mount_data.get("type_cache_ttl", mount_defaults.type_cache_ttl)),
        file_mode=str(mount_data.get("file_mode", mount_defaults.file_mode)),
    )

    try:
        port = int(env.get("SHEPHERD_PORT", data.get("port", defaults.port)))
    except (TypeError, ValueError) as exc:
        raise ConfigError("port 必須為整數") from exc

    return RunnerSettings(
        strategy=Strategy.parse(env.get("SHEPHERD_STRATEGY", data.get("strategy", defaults.strategy.value))),
        jobs_dir=Path(str(env.get("SHEPHERD_JOBS_DIR", data.get("jobs_dir", defaults.jobs_dir)))).expanduser(),
        keep_work_dir=_as_bool(env.get("SHEPHERD_KEEP_WORK_DIR", data.get("keep_work_dir", defaults.keep_work_dir))),
        docker_executable=env.get("SHEPHERD_DOCKER", str(data.get("docker_executable", defaults.docker_executable))),
        docker_work_root=str(data.get("docker_work_root", defaults.docker_work_root)),
        mount=mount,
        host=env.get("SHEPHERD_HOST", str(data.get("host", defaults.host))),
        port=port,
        api_key=env.get("SHEPHERD_API_KEY", str(data.get("api_key") or "")),
    )


def with_overrides(settings: RunnerSettings, **changes: Any) -> RunnerSettings:
    updates = {key: value for key, value in changes.items() if value is not None}
    if "strategy" in updates:
        updates["strategy"] = Strategy.parse(updates["strategy"])
    return replace(settings, **updates)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
