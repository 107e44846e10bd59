"""Select newly produced files for upload."""

from __future__ import annotations

import os
import posixpath
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Callable, Sequence

from .models import Filter


def glob_match(pattern: str, name: str) -> bool:
    """Shell-glob match where ``*`` and ``?`` never cross a ``/``."""
    pattern_parts = pattern.split("/")
    name_parts = name.split("/")
    if len(pattern_parts) != len(name_parts):
        return False
    return all(fnmatchcase(part, pat) for pat, part in zip(pattern_parts, name_parts))


def is_included(name: str, filters: Sequence[Filter]) -> bool:
    """Return the decision of the last filter matching ``name`` or its base name."""
    exclude = True
    base_name = posixpath.basename(name)
    for item in filters:
        if glob_match(item.pattern, name) or glob_match(item.pattern, base_name):
            exclude = item.exclude
    return not exclude


def find_new_files(
    workdir: Path,
    filters: Sequence[Filter],
    was_localized: Callable[[str], bool],
) -> list[str]:
    """Walk ``workdir`` and return relative paths of files selected for upload.

    Directories excluded by the filter chain are pruned along with their whole
    subtree. Files reported by ``was_localized`` are inputs and never selected.
    Symlinks to directories are neither followed nor selected.
    """
    root = Path(workdir)
    selected: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"

        dirnames[:] = sorted(name for name in dirnames if is_included(prefix + name, filters))

        for name in sorted(filenames):
            rel_path = prefix + name
            if was_localized(rel_path):
                continue
            if is_included(rel_path, filters):
                selected.append(rel_path)
    return selected
