"""Up-front validation of job parameters."""

from __future__ import annotations

from .errors import ConfigError
from .models import JobParameters
from .path_rules import validate_relative_path, validate_remote_url


def validate_parameters(params: JobParameters) -> None:
    """Raise ``ConfigError`` for the first rule the parameters break."""
    if not params.command:
        raise ConfigError("command 不可為空")

    if params.uploads is not None:
        validate_remote_url(params.uploads.destination_url_prefix)

    for download in params.downloads:
        validate_remote_url(download.source_url)
        validate_relative_path(download.destination_path)

    # optional paths
    for value in (params.working_path, params.stdout_path, params.stderr_path, params.result_path):
        if value:
            validate_relative_path(value)
