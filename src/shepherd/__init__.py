"""Localize inputs, run a command, upload its outputs."""

from .config import MountSettings, RunnerSettings, Strategy, load_settings
from .errors import (
    ConfigError,
    LocalIOError,
    MountError,
    ProcessLaunchError,
    RemoteError,
    ShepherdError,
    UnsupportedError,
)
from .execution import execute
from .localize import DirectTransfer, Localizer, MountedTransfer, StagingRecords, build_strategy
from .models import Download, ExecutionResult, Filter, JobParameters, Upload, UploadSpec
from .selector import find_new_files
from .service import load_job_file, run_job
from .store import GCSStore, RemoteStore
from .validation import validate_parameters

__all__ = [
    "ConfigError",
    "DirectTransfer",
    "Download",
    "ExecutionResult",
    "Filter",
    "GCSStore",
    "JobParameters",
    "LocalIOError",
    "Localizer",
    "MountError",
    "MountSettings",
    "MountedTransfer",
    "ProcessLaunchError",
    "RemoteError",
    "RemoteStore",
    "RunnerSettings",
    "ShepherdError",
    "StagingRecords",
    "Strategy",
    "UnsupportedError",
    "Upload",
    "UploadSpec",
    "build_strategy",
    "execute",
    "find_new_files",
    "load_job_file",
    "load_settings",
    "run_job",
    "validate_parameters",
]
