"""Job orchestration: validate, localize, run, capture and upload."""

from __future__ import annotations

import json
import logging
import posixpath
import subprocess
import sys
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import IO, Any, Iterator, Sequence

from .config import RunnerSettings
from .errors import ConfigError, LocalIOError, ProcessLaunchError, ShepherdError
from .localize import Localizer
from .models import Download, ExecutionResult, JobParameters, Upload, UploadSpec
from .path_rules import join_url
from .records import write_json
from .selector import find_new_files
from .validation import validate_parameters

logger = logging.getLogger("shepherd.execution")


def execute(
    work_root: Path,
    workdir: Path,
    params: JobParameters,
    localizer: Localizer,
    settings: RunnerSettings | None = None,
) -> ExecutionResult:
    """Run one job inside ``workdir`` and upload what it produced.

    ``work_root`` is the directory bind-mounted into the container when
    ``params.docker_image`` is set; ``workdir`` lives at or below it. A
    non-zero exit of the command is reported in the result, not raised.
    """
    settings = settings or RunnerSettings()
    work_root = Path(work_root)
    workdir = Path(workdir)

    validate_parameters(params)
    _log_event("job.start", workdir=str(workdir), downloads=len(params.downloads), command=list(params.command))

    started = time.monotonic()
    with localized(localizer, params.downloads):
        _log_event("job.prepared", workdir=str(workdir), downloads=len(params.downloads))

        run_dir = workdir / params.working_path if params.working_path else workdir
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LocalIOError(f"無法建立工作目錄 {run_dir}：{exc}") from exc

        command = list(params.command)
        if params.docker_image:
            command = build_docker_command(work_root, run_dir, params.docker_image, command, settings)

        exit_code = run_command(command, run_dir, workdir, params.stdout_path, params.stderr_path)

        if params.result_path:
            result_file = workdir / params.result_path
            logger.info("writing exit code (%d) to %s", exit_code, result_file)
            try:
                write_json(result_file, ExecutionResult(exit_code=exit_code).to_dict())
            except OSError as exc:
                raise LocalIOError(f"無法寫入結果檔 {result_file}：{exc}") from exc

        uploads = upload_results(workdir, params.uploads, localizer)

    _log_event(
        "job.finish",
        workdir=str(workdir),
        exit_code=exit_code,
        uploads=len(uploads),
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return ExecutionResult(exit_code=exit_code, uploads=uploads)


@contextmanager
def localized(localizer: Localizer, downloads: Sequence[Download]) -> Iterator[Localizer]:
    """Stage ``downloads`` and guarantee ``clean`` on every way out."""
    try:
        localizer.prepare(downloads)
        yield localizer
    except BaseException:
        try:
            localizer.clean()
        except ShepherdError:
            logger.exception("清理 localizer 時發生錯誤")
        raise
    localizer.clean()


def build_docker_command(
    work_root: Path,
    run_dir: Path,
    image: str,
    command: Sequence[str],
    settings: RunnerSettings,
) -> list[str]:
    """Wrap ``command`` so it runs in ``image`` with the whole root bind-mounted."""
    abs_root = Path(work_root).resolve()
    try:
        rel_dir = Path(run_dir).resolve().relative_to(abs_root).as_posix()
    except ValueError as exc:
        raise ConfigError(f"工作目錄 {run_dir} 不在 {abs_root} 之下") from exc
    container_dir = settings.docker_work_root if rel_dir == "." else posixpath.join(settings.docker_work_root, rel_dir)
    return [
        settings.docker_executable,
        "run",
        "-v",
        f"{abs_root}:{settings.docker_work_root}",
        "-w",
        container_dir,
        "--interactive",
        "--rm",
        image,
        *command,
    ]


def run_command(
    command: Sequence[str],
    run_dir: Path,
    workdir: Path,
    stdout_path: str = "",
    stderr_path: str = "",
) -> int:
    """Run ``command`` in ``run_dir`` and return its exit code.

    Capture paths are relative to ``workdir``. When both paths are equal the
    two streams share one handle so their output interleaves in order.
    """
    with ExitStack() as stack:
        stdout = _open_capture(stack, workdir, stdout_path) if stdout_path else None
        if stderr_path and stderr_path == stdout_path:
            stderr = stdout
        elif stderr_path:
            stderr = _open_capture(stack, workdir, stderr_path)
        else:
            stderr = None

        logger.info("with working dir %s, running command: %s", run_dir, list(command))
        _flush_std_streams()
        try:
            proc = subprocess.Popen(list(command), cwd=str(run_dir), stdout=stdout, stderr=stderr)
        except OSError as exc:
            raise ProcessLaunchError(f"無法啟動指令 {command[0]}：{exc}") from exc
        _log_event("job.spawn", pid=proc.pid, run_dir=str(run_dir))

        try:
            exit_code = proc.wait()
        except OSError as exc:
            raise ProcessLaunchError(f"等待指令 {command[0]} 結束失敗：{exc}") from exc

    if exit_code != 0:
        logger.warning("command exited with failure (exit=%d)", exit_code)
    _log_event("job.exit", exit_code=exit_code)
    return exit_code


def upload_results(workdir: Path, spec: UploadSpec | None, localizer: Localizer) -> list[Upload]:
    if spec is None:
        return []
    filenames = find_new_files(workdir, spec.filters, localizer.was_localized)
    uploads = [
        Upload(source_path=name, destination_url=join_url(spec.destination_url_prefix, name)) for name in filenames
    ]
    _log_event("job.upload", files=len(uploads), destination=spec.destination_url_prefix)
    localizer.upload(uploads)
    logger.info("upload completed")
    return uploads


def _open_capture(stack: ExitStack, workdir: Path, rel_path: str) -> IO[bytes]:
    target = workdir / rel_path
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        return stack.enter_context(target.open("wb"))
    except OSError as exc:
        raise LocalIOError(f"無法建立輸出檔 {target}：{exc}") from exc


def _flush_std_streams() -> None:
    sys.stdout.flush()
    sys.stderr.flush()


def _log_event(event: str, **fields: Any) -> None:
    payload = {"event": event, **fields}
    logger.info(json.dumps(payload, ensure_ascii=False, sort_keys=True))
