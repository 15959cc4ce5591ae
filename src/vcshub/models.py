"""Data model for vcshub.

Records are plain dataclasses. ``from_row`` builds them from SQLite rows of the
metadata store; JSON columns (path lists and file maps) are decoded there.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from vcshub.errors import InvalidError


@dataclass
class Team:
    """Owning team. Only the usage counters matter to the core."""

    id: str
    name: str
    created_at: str
    bandwidth_used_mb: float = 0.0
    storage_used_mb: float = 0.0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Team":
        return cls(
            id=row["id"],
            name=row["name"],
            created_at=row["created_at"],
            bandwidth_used_mb=row["bandwidth_used_mb"],
            storage_used_mb=row["storage_used_mb"],
        )


@dataclass
class Project:
    id: str
    team_id: str
    name: str
    created_at: str
    default_branch_id: Optional[str] = None
    storage_grant: Optional[str] = None
    storage_grant_expires_at: Optional[str] = None
    deleted_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Project":
        return cls(
            id=row["id"],
            team_id=row["team_id"],
            name=row["name"],
            created_at=row["created_at"],
            default_branch_id=row["default_branch_id"],
            storage_grant=row["storage_grant"],
            storage_grant_expires_at=row["storage_grant_expires_at"],
            deleted_at=row["deleted_at"],
        )


@dataclass
class Lock:
    path: str
    locked_by: str
    locked_at: str


@dataclass
class Branch:
    """Named pointer to the latest commit of a line of history.

    Attributes:
        commit_id: Id of the commit the branch currently points to
        locked_paths: Paths currently locked on the branch, in lock order
    """

    id: str
    project_id: str
    name: str
    commit_id: str
    created_at: str
    deleted_at: Optional[str] = None
    locked_paths: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row, locked_paths: Optional[List[str]] = None) -> "Branch":
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            name=row["name"],
            commit_id=row["commit_id"],
            created_at=row["created_at"],
            deleted_at=row["deleted_at"],
            locked_paths=list(locked_paths or []),
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class FileData:
    """Content hash of a committed file and its version.

    The version starts at 1 and grows by one each time the hash of the path
    changes on the branch.
    """

    hash: str
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"hash": self.hash, "version": self.version}

    @classmethod
    def from_value(cls, value: Any) -> "FileData":
        """Build from a stored/submitted value: a hash string or a mapping."""
        if isinstance(value, FileData):
            return cls(value.hash, value.version)
        if isinstance(value, str):
            return cls(hash=value)
        if isinstance(value, dict) and isinstance(value.get("hash"), str):
            try:
                version = int(value.get("version") or 1)
            except (TypeError, ValueError):
                raise InvalidError(f"Invalid file entry: {value!r}") from None
            return cls(hash=value["hash"], version=version)
        raise InvalidError(f"Invalid file entry: {value!r}")


@dataclass
class Commit:
    id: str
    project_id: str
    branch_id: str
    index: int
    created_at: str
    author_id: str = ""
    message: str = ""
    created_files: List[str] = field(default_factory=list)
    modified_files: List[str] = field(default_factory=list)
    deleted_files: List[str] = field(default_factory=list)
    files: Dict[str, FileData] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Commit":
        files = json.loads(row["files"] or "{}")
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            branch_id=row["branch_id"],
            index=row["idx"],
            created_at=row["created_at"],
            author_id=row["author_id"],
            message=row["message"],
            created_files=json.loads(row["created_files"] or "[]"),
            modified_files=json.loads(row["modified_files"] or "[]"),
            deleted_files=json.loads(row["deleted_files"] or "[]"),
            files={path: FileData.from_value(value) for path, value in files.items()},
        )

    @property
    def is_system_authored(self) -> bool:
        return self.author_id == ""


@dataclass
class BranchWithCommit:
    branch: Branch
    commit: Commit


class PresignMethod(str, Enum):
    GET = "GET"
    PUT = "PUT"

    @classmethod
    def parse(cls, value: Any) -> "PresignMethod":
        """Parse a method name case-insensitively.

        Raises:
            InvalidError: For anything other than GET or PUT
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise InvalidError("Invalid presign method. Must be PUT or GET")


@dataclass
class PresignOptions:
    multipart: bool = False
    size: int = 0
    content_type: Optional[str] = None


@dataclass
class PresignResponse:
    """Presigned URL(s) for one object.

    For multipart uploads ``urls`` holds one URL per part in part order and
    ``part_sizes`` the byte size each part must have.
    """

    urls: List[str]
    upload_id: Optional[str] = None
    part_sizes: List[int] = field(default_factory=list)


@dataclass
class CompletedPart:
    part_number: int
    etag: str


class ReconcileStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


@dataclass
class ReconcileResult:
    project_id: str
    deleted_count: int = 0
    failed_keys: List[str] = field(default_factory=list)
    scanned_count: int = 0
    referenced_count: int = 0
    skipped_recent: int = 0
    continuation_token: Optional[str] = None
    status: ReconcileStatus = ReconcileStatus.COMPLETE
