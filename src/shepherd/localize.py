"""Localization strategies: stage inputs before a job and ship outputs after it."""

from __future__ import annotations

import logging
import os
import posixpath
import stat
import subprocess
from pathlib import Path
from typing import BinaryIO, Protocol, Sequence

from .config import MountSettings, Strategy
from .errors import LocalIOError, MountError, RemoteError, ShepherdError, UnsupportedError
from .models import Download, Upload
from .path_rules import parse_remote_url
from .store import GCSStore, RemoteStore

logger = logging.getLogger("shepherd.localize")

_CHUNK_SIZE = 1024 * 1024
_EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


class Localizer(Protocol):
    def prepare(self, downloads: Sequence[Download]) -> None: ...

    def upload(self, uploads: Sequence[Upload]) -> None: ...

    def was_localized(self, path: str) -> bool: ...

    def clean(self) -> None: ...


class StagingRecords:
    """Modification times of staged files, keyed by working-dir relative path.

    A path counts as an input only while its mtime still equals the one seen
    right after staging, so a staged file the job rewrites becomes an output.
    Keys are normalized so ``./a`` and ``a`` name the same staged file.
    """

    def __init__(self, workdir: Path) -> None:
        self.workdir = workdir
        self._mtimes: dict[str, int] = {}

    def record(self, rel_path: str) -> None:
        target = self.workdir / rel_path
        try:
            self._mtimes[posixpath.normpath(rel_path)] = os.stat(target).st_mtime_ns
        except OSError as exc:
            raise LocalIOError(f"無法讀取 {target} 的狀態：{exc}") from exc

    def was_localized(self, rel_path: str) -> bool:
        recorded = self._mtimes.get(posixpath.normpath(rel_path))
        if recorded is None:
            return False
        target = self.workdir / rel_path
        try:
            current = os.stat(target).st_mtime_ns
        except OSError as exc:
            logger.warning("stat %s 失敗：%s", target, exc)
            return False
        return current == recorded


class DirectTransfer:
    """Download every input object into the working directory one by one."""

    def __init__(self, workdir: Path, store: RemoteStore | None = None) -> None:
        self.workdir = Path(workdir)
        self.store = store if store is not None else GCSStore()
        self.records = StagingRecords(self.workdir)

    def prepare(self, downloads: Sequence[Download]) -> None:
        for download in downloads:
            self._download(download)
            self.records.record(download.destination_path)

    def upload(self, uploads: Sequence[Upload]) -> None:
        upload_files(self.store, self.workdir, uploads)

    def was_localized(self, path: str) -> bool:
        return self.records.was_localized(path)

    def clean(self) -> None:
        return None

    def _download(self, download: Download) -> None:
        dest = self.workdir / download.destination_path
        mode = 0o777 if download.executable else 0o666
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        except OSError as exc:
            raise LocalIOError(f"無法建立 {dest}：{exc}") from exc

        logger.debug("downloading %s -> %s", download.source_url, dest)
        with os.fdopen(fd, "wb") as sink:
            try:
                with self.store.open_read(download.source_url) as source:
                    _copy_stream(
                        source,
                        sink,
                        read_error=RemoteError,
                        write_error=LocalIOError,
                        label=f"{download.source_url} -> {dest}",
                    )
            except ShepherdError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise RemoteError(f"下載 {download.source_url} 失敗：{exc}") from exc

        if download.executable:
            try:
                os.chmod(dest, dest.stat().st_mode | _EXEC_BITS)
            except OSError as exc:
                raise LocalIOError(f"無法設定執行權限：{dest}：{exc}") from exc


class MountedTransfer:
    """Mount each source bucket read-only, then copy or link inputs out of it."""

    def __init__(
        self,
        work_root: Path,
        workdir: Path,
        store: RemoteStore | None = None,
        mount: MountSettings | None = None,
    ) -> None:
        self.work_root = Path(work_root).resolve()
        self.workdir = Path(workdir).resolve()
        self.store = store if store is not None else GCSStore()
        self.settings = mount or MountSettings()
        self.records = StagingRecords(self.workdir)
        self.mounts: list[Path] = []

    def prepare(self, downloads: Sequence[Download]) -> None:
        for download in downloads:
            if download.executable:
                raise UnsupportedError(f"gcsfuse 策略不支援 executable 下載：{download.destination_path}")

        refs = [parse_remote_url(download.source_url) for download in downloads]
        bucket_dirs: dict[str, Path] = {}
        for bucket in dict.fromkeys(ref.bucket for ref in refs):
            try:
                bucket_dirs[bucket] = self._mount(bucket)
            except MountError:
                self._release_partial_mounts()
                raise

        for download, ref in zip(downloads, refs):
            source = bucket_dirs[ref.bucket] / ref.key
            dest = self.workdir / download.destination_path
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                if download.symlink_safe:
                    link_target = os.path.relpath(source, dest.parent)
                    logger.info("creating symlink %s -> %s", dest, link_target)
                    os.symlink(link_target, dest)
                else:
                    logger.info("copying %s -> %s", source, dest)
                    _copy_file(source, dest)
            except OSError as exc:
                raise LocalIOError(f"無法從掛載點取得 {source} -> {dest}：{exc}") from exc
            self.records.record(download.destination_path)

    def upload(self, uploads: Sequence[Upload]) -> None:
        upload_files(self.store, self.workdir, uploads)

    def was_localized(self, path: str) -> bool:
        return self.records.was_localized(path)

    def clean(self) -> None:
        """Unmount everything mounted by ``prepare``; safe to call more than once."""
        mounts, self.mounts = self.mounts, []
        failures: list[str] = []
        for mount_dir in mounts:
            cmd = [self.settings.umount_executable, str(mount_dir)]
            logger.info("umounting %s", mount_dir)
            try:
                completed = subprocess.run(cmd, check=False)
            except OSError as exc:
                logger.error("無法執行 %s：%s", cmd[0], exc)
                failures.append(f"{mount_dir}（{exc}）")
                continue
            if completed.returncode != 0:
                logger.error("卸載 %s 失敗（exit=%s）", mount_dir, completed.returncode)
                failures.append(f"{mount_dir}（exit={completed.returncode}）")
        if failures:
            raise MountError("卸載失敗：" + ", ".join(failures))

    def _mount(self, bucket: str) -> Path:
        mounts_root = self.work_root / "gcsfusemounts"
        temp_root = self.work_root / "gcsfusemountstmp"
        mount_dir = mounts_root / bucket
        try:
            temp_root.mkdir(parents=True, exist_ok=True)
            mount_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MountError(f"無法建立掛載目錄 {mount_dir}：{exc}") from exc

        cmd = [
            self.settings.gcsfuse_executable,
            "-o",
            "ro",
            "--stat-cache-ttl",
            self.settings.stat_cache_ttl,
            "--type-cache-ttl",
            self.settings.type_cache_ttl,
            "--file-mode",
            self.settings.file_mode,
            "--implicit-dirs",
            "--temp-dir",
            str(temp_root),
            bucket,
            str(mount_dir),
        ]
        logger.info("mounting %s at %s", bucket, mount_dir)
        try:
            completed = subprocess.run(cmd, check=False)
        except OSError as exc:
            raise MountError(f"無法執行 {cmd[0]}：{exc}") from exc
        if completed.returncode != 0:
            raise MountError(f"掛載 bucket {bucket} 失敗（exit={completed.returncode}）")

        self.mounts.append(mount_dir)
        return mount_dir

    def _release_partial_mounts(self) -> None:
        try:
            self.clean()
        except MountError:
            logger.exception("掛載失敗後清理既有掛載點時發生錯誤")


def build_strategy(
    kind: Strategy | str,
    work_root: Path,
    workdir: Path,
    store: RemoteStore | None = None,
    mount: MountSettings | None = None,
) -> Localizer:
    strategy = Strategy.parse(kind)
    if strategy is Strategy.GCSFUSE:
        return MountedTransfer(work_root, workdir, store=store, mount=mount)
    return DirectTransfer(workdir, store=store)


def upload_files(store: RemoteStore, workdir: Path, uploads: Sequence[Upload]) -> None:
    """Stream each local file to its destination reference, overwriting it."""
    for item in uploads:
        source_path = Path(workdir) / item.source_path
        try:
            source = source_path.open("rb")
        except OSError as exc:
            raise LocalIOError(f"無法開啟上傳檔案 {source_path}：{exc}") from exc

        logger.debug("uploading %s -> %s", source_path, item.destination_url)
        with source:
            try:
                with store.open_write(item.destination_url) as sink:
                    _copy_stream(
                        source,
                        sink,
                        read_error=LocalIOError,
                        write_error=RemoteError,
                        label=f"{source_path} -> {item.destination_url}",
                    )
            except ShepherdError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise RemoteError(f"上傳 {item.destination_url} 失敗：{exc}") from exc


def _copy_file(source: Path, dest: Path) -> None:
    with source.open("rb") as reader, dest.open("xb") as writer:
        _copy_stream(reader, writer, read_error=LocalIOError, write_error=LocalIOError, label=f"{source} -> {dest}")


def _copy_stream(
    source: BinaryIO,
    sink: BinaryIO,
    *,
    read_error: type[ShepherdError],
    write_error: type[ShepherdError],
    label: str,
) -> None:
    while True:
        try:
            chunk = source.read(_CHUNK_SIZE)
        except ShepherdError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise read_error(f"讀取失敗 {label}：{exc}") from exc
        if not chunk:
            return
        try:
            sink.write(chunk)
        except ShepherdError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise write_error(f"寫入失敗 {label}：{exc}") from exc
