"""Helpers shared by the core components."""

import re
import uuid
from datetime import datetime, timezone
from typing import Iterable, List

from vcshub.constants import BRANCH_NAME_PATTERN, MAX_NAME_LENGTH
from vcshub.errors import InvalidError

_BRANCH_NAME_RE = re.compile(BRANCH_NAME_PATTERN)


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_project_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidError("Project name is required")
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH or "/" in name:
        raise InvalidError(f'Invalid project name "{name}"')
    return name


def validate_branch_name(name: str) -> str:
    if not isinstance(name, str) or not _BRANCH_NAME_RE.match(name) or len(name) > MAX_NAME_LENGTH:
        raise InvalidError("Invalid branch name; must be alphanumeric with dashes")
    return name


def validate_path(path: str, directory_ok: bool = False) -> str:
    """Check that ``path`` is a relative POSIX path inside the project.

    Args:
        path: Path to check
        directory_ok: Accept a trailing ``/`` marking a directory

    Raises:
        InvalidError: For empty, absolute or parent-relative paths, and for
            directory paths unless ``directory_ok`` is set
    """
    if not isinstance(path, str) or not path.strip():
        raise InvalidError("File paths must be non-empty strings")
    if path.startswith("/") or "\\" in path:
        raise InvalidError(f'File path "{path}" must be relative and use "/"')
    if path.endswith("/") and not directory_ok:
        raise InvalidError(f'File path "{path}" names a directory')
    if any(part in ("", ".", "..") for part in path.rstrip("/").split("/")):
        raise InvalidError(f'File path "{path}" is not normalized')
    return path


def validate_paths(
    paths: Iterable[str], label: str = "paths", directory_ok: bool = False
) -> List[str]:
    """Validate a path list and drop repeats, keeping first-seen order."""
    if isinstance(paths, str):
        raise InvalidError(f"{label} must be a list of paths")
    result: List[str] = []
    for path in paths:
        validate_path(path, directory_ok)
        if path not in result:
            result.append(path)
    return result
