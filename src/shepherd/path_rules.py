"""Pure validation rules for job paths and remote references."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from .errors import ConfigError

_REMOTE_URL = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*)://([^/]+)/?(.*)$", re.DOTALL)
_BUCKET_NAME = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?$")


@dataclass(frozen=True)
class RemoteRef:
    scheme: str
    bucket: str
    key: str

    def __str__(self) -> str:
        return f"{self.scheme}://{self.bucket}/{self.key}"


def validate_relative_path(path: str) -> str:
    """Validate a working-directory relative path and return it unchanged."""
    if not path:
        raise ConfigError("path 不可為空")
    if "\x00" in path:
        raise ConfigError(f"{path!r} 不可包含 NUL")
    if PurePosixPath(path).is_absolute():
        raise ConfigError(f"{path} 不是相對路徑")
    if ".." in path.split("/"):
        raise ConfigError(f"{path} 包含 '..'，不允許參照上層目錄")
    return path


def parse_remote_url(url: str) -> RemoteRef:
    """Split ``scheme://bucket[/key]``; bucket is everything up to the first ``/``.

    Bucket names start and end with a letter or digit, which rules out ``.``
    and ``..`` since buckets also name local mount directories.
    """
    match = _REMOTE_URL.match(url or "")
    if match is None:
        raise ConfigError(f"{url!r} 不是合法的遠端路徑（scheme://bucket/key）")
    scheme, bucket, key = match.groups()
    if not _BUCKET_NAME.match(bucket):
        raise ConfigError(f"{url!r} 的 bucket 名稱 {bucket!r} 不合法")
    return RemoteRef(scheme=scheme, bucket=bucket, key=key)


def validate_remote_url(url: str) -> str:
    parse_remote_url(url)
    return url


def join_url(prefix: str, suffix: str) -> str:
    if suffix.startswith("/"):
        raise ConfigError(f"路徑 {suffix} 不應以 / 開頭")
    if prefix.endswith("/"):
        return prefix + suffix
    return f"{prefix}/{suffix}"
