"""Job descriptor models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from .errors import ConfigError


@dataclass(frozen=True)
class Download:
    source_url: str
    destination_path: str
    executable: bool = False
    symlink_safe: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Download":
        return cls(
            source_url=str(payload.get("source_url") or ""),
            destination_path=str(payload.get("destination_path") or ""),
            executable=bool(payload.get("executable", False)),
            symlink_safe=bool(payload.get("symlink_safe", False)),
        )


@dataclass(frozen=True)
class Filter:
    pattern: str
    exclude: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Filter":
        return cls(pattern=str(payload.get("pattern") or ""), exclude=bool(payload.get("exclude", False)))


@dataclass(frozen=True)
class UploadSpec:
    destination_url_prefix: str
    filters: tuple[Filter, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UploadSpec":
        filters = payload.get("filters")
        if filters is None:
            filters = []
        if not isinstance(filters, list):
            raise ConfigError("uploads.filters 必須為 list")
        return cls(
            destination_url_prefix=str(payload.get("destination_url_prefix") or ""),
            filters=tuple(Filter.from_dict(_require_mapping(item, "uploads.filters[]")) for item in filters),
        )


@dataclass(frozen=True)
class Upload:
    source_path: str
    destination_url: str


@dataclass(frozen=True)
class JobParameters:
    command: tuple[str, ...]
    docker_image: str = ""
    working_path: str = ""
    downloads: tuple[Download, ...] = ()
    uploads: UploadSpec | None = None
    stdout_path: str = ""
    stderr_path: str = ""
    result_path: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "JobParameters":
        """Build parameters from a decoded job descriptor.

        Only the shape is checked here; path and URL rules are enforced by
        ``validate_parameters`` before anything touches the filesystem.
        """
        payload = _require_mapping(payload, "job descriptor")
        command = payload.get("command")
        if command is None:
            command = []
        if not isinstance(command, list):
            raise ConfigError("command 必須為字串 list")
        downloads = payload.get("downloads")
        if downloads is None:
            downloads = []
        if not isinstance(downloads, list):
            raise ConfigError("downloads 必須為 list")
        uploads = payload.get("uploads")
        return cls(
            command=tuple(str(arg) for arg in command),
            docker_image=str(payload.get("docker_image") or ""),
            working_path=str(payload.get("working_path") or ""),
            downloads=tuple(Download.from_dict(_require_mapping(item, "downloads[]")) for item in downloads),
            uploads=UploadSpec.from_dict(_require_mapping(uploads, "uploads")) if uploads is not None else None,
            stdout_path=str(payload.get("stdout_path") or ""),
            stderr_path=str(payload.get("stderr_path") or ""),
            result_path=str(payload.get("result_path") or ""),
        )


@dataclass
class ExecutionResult:
    exit_code: int
    uploads: list[Upload] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"exit_code": self.exit_code}


def _require_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{field_name} 必須為 JSON object")
    return value
