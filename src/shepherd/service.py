"""Run a job descriptor in a fresh work root."""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Mapping

import yaml

from .config import RunnerSettings
from .errors import ConfigError, LocalIOError
from .execution import execute
from .localize import build_strategy
from .models import ExecutionResult, JobParameters
from .store import RemoteStore
from .validation import validate_parameters

logger = logging.getLogger("shepherd.service")


def load_job_file(path: Path) -> JobParameters:
    """Parse a JSON (or YAML) job descriptor."""
    try:
        payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"無法讀取 job 檔案 {path}：{exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"job 檔案格式錯誤 {path}：{exc}") from exc
    return JobParameters.from_dict(payload)


def run_job(
    params: JobParameters | Mapping[str, Any],
    settings: RunnerSettings,
    store: RemoteStore | None = None,
) -> ExecutionResult:
    if not isinstance(params, JobParameters):
        params = JobParameters.from_dict(params)
    validate_parameters(params)

    try:
        settings.jobs_dir.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix="tmp-work-", dir=str(settings.jobs_dir)))
    except OSError as exc:
        raise LocalIOError(f"無法在 {settings.jobs_dir} 建立工作根目錄：{exc}") from exc
    workdir = root / "work"
    logger.info("executing job in new directory: %s (strategy=%s)", workdir, settings.strategy.value)

    localizer = build_strategy(settings.strategy, root, workdir, store=store, mount=settings.mount)
    try:
        return execute(root, workdir, params, localizer, settings)
    finally:
        if not settings.keep_work_dir:
            shutil.rmtree(root, ignore_errors=True)
