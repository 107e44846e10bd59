"""Remote object store access."""

from __future__ import annotations

from typing import Any, BinaryIO, Protocol

from .errors import ConfigError, RemoteError
from .path_rules import RemoteRef, parse_remote_url


class RemoteStore(Protocol):
    def open_read(self, url: str) -> BinaryIO: ...

    def open_write(self, url: str) -> BinaryIO: ...


class GCSStore:
    """Google Cloud Storage access for ``gs://bucket/key`` references.

    The storage client is created on first use so that jobs which never touch
    the store (and tests that inject a client) do not need credentials.
    """

    scheme = "gs"

    def __init__(self, client: Any | None = None) -> None:
        self._client = client

    def open_read(self, url: str) -> BinaryIO:
        blob = self._blob(url)
        try:
            return blob.open("rb")
        except Exception as exc:  # noqa: BLE001
            raise RemoteError(f"無法讀取 {url}：{exc}") from exc

    def open_write(self, url: str) -> BinaryIO:
        blob = self._blob(url)
        try:
            return blob.open("wb")
        except Exception as exc:  # noqa: BLE001
            raise RemoteError(f"無法寫入 {url}：{exc}") from exc

    def _blob(self, url: str) -> Any:
        ref = self._parse(url)
        return self._get_client().bucket(ref.bucket).blob(ref.key)

    def _parse(self, url: str) -> RemoteRef:
        try:
            ref = parse_remote_url(url)
        except ConfigError as exc:
            raise RemoteError(str(exc)) from exc
        if ref.scheme != self.scheme:
            raise RemoteError(f"{url} 不是 {self.scheme}:// 路徑")
        if not ref.key:
            raise RemoteError(f"{url} 缺少 object key")
        return ref

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                from google.cloud import storage
            except ImportError as exc:  # pragma: no cover
                raise RemoteError("請先安裝 google-cloud-storage：pip install google-cloud-storage") from exc
            try:
                self._client = storage.Client()
            except Exception as exc:  # noqa: BLE001
                raise RemoteError(f"無法建立 GCS client：{exc}") from exc
        return self._client
