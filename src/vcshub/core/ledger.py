"""Commit ledger and branch pointers.

A commit records the full path -> {hash, version} map of a branch at a point
in time, plus the paths created, modified and deleted relative to the
previous commit. Commits are append-only; the branch pointer names the
current one.

Commit insertion and the branch repoint run in one SQLite transaction, so a
branch can never be observed pointing at a commit that was not persisted, and
a commit is never persisted without the repoint.
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from vcshub.constants import DEFAULT_COMMIT_LIMIT, MIB
from vcshub.core.common import new_id, utc_now, validate_paths
from vcshub.core.locks import find_lock_conflicts
from vcshub.errors import ConflictError, InvalidError, NotFoundError, VCSHubError
from vcshub.models import Branch, BranchWithCommit, Commit, FileData
from vcshub.storage.blob_store import BlobStore
from vcshub.storage.metadata_db import COMMIT_MUTABLE_FIELDS, MetadataDB


def apply_file_changes(
    previous: Dict[str, FileData],
    upserts: Dict[str, str],
    deleted: List[str],
) -> Dict[str, FileData]:
    """Compute a commit's file map from its parent's.

    Args:
        previous: File map of the parent commit
        upserts: Path -> content hash for created and modified paths
        deleted: Paths removed in this commit

    Returns:
        New file map. A path whose hash changed gets version + 1, an unchanged
        hash keeps its version, and a path new to the branch starts at 1.
    """
    files = {path: FileData(data.hash, data.version) for path, data in previous.items()}
    for path in deleted:
        files.pop(path, None)
    for path, content_hash in upserts.items():
        prior = files.get(path)
        if prior is None:
            files[path] = FileData(content_hash, 1)
        elif prior.hash != content_hash:
            files[path] = FileData(content_hash, prior.version + 1)
    return files


class CommitLedger:
    """Creates, reads and amends commits and moves branch pointers.

    Attributes:
        db: Metadata store
        blob_store: Optional object store used to charge storage usage for
            newly referenced objects
    """

    def __init__(self, db: MetadataDB, blob_store: Optional[BlobStore] = None) -> None:
        self.db = db
        self.blob_store = blob_store

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_commit(
        self,
        branch_id: str,
        author_id: str,
        message: str,
        created_files: Optional[List[str]] = None,
        modified_files: Optional[List[str]] = None,
        deleted_files: Optional[List[str]] = None,
        path_hash_map: Optional[Dict[str, Any]] = None,
    ) -> Commit:
        """Append a commit to a branch and move the branch to it.

        Args:
            branch_id: Branch to commit on
            author_id: Committing user ("" for system commits)
            message: Commit message
            created_files: Paths added in this commit
            modified_files: Paths changed in this commit
            deleted_files: Paths removed in this commit
            path_hash_map: Path -> hash (or {"hash": ...}) for every created
                and modified path; other entries are ignored

        Returns:
            The persisted commit

        Raises:
            InvalidError: Malformed path lists or missing hashes
            NotFoundError: Unknown branch
            ConflictError: A touched path is locked by someone else, or a
                concurrent commit took the same index
        """
        created = validate_paths(created_files or [], "created_files")
        modified = validate_paths(modified_files or [], "modified_files")
        deleted = validate_paths(deleted_files or [], "deleted_files")
        path_hash_map = path_hash_map or {}

        touched = created + modified + deleted
        if len(set(touched)) != len(touched):
            raise InvalidError("A path may appear in only one of created, modified and deleted")

        upserts: Dict[str, str] = {}
        for path in created + modified:
            if path not in path_hash_map:
                raise InvalidError(f'Missing content hash for "{path}"')
            content_hash = FileData.from_value(path_hash_map[path]).hash
            if not content_hash or "/" in content_hash:
                raise InvalidError(f'Invalid content hash for "{path}"')
            upserts[path] = content_hash

        with self.db.transaction():
            branch = self.db.get_branch(branch_id)
            if branch is None:
                raise NotFoundError("Branch not found")
            current = self._resolve_head(branch)

            conflicts = find_lock_conflicts(self.db.get_locks(branch.id), touched, author_id)
            if conflicts:
                raise ConflictError(
                    f'File "{conflicts[0]}" is locked by another user',
                    details={"paths": conflicts},
                )

            missing = [path for path in deleted if path not in current.files]
            if missing:
                raise InvalidError(f'Cannot delete "{missing[0]}": not in branch "{branch.name}"')

            latest = self.db.get_latest_commit(branch.id)
            last_index = max(current.index, latest.index if latest is not None else 0)

            commit = Commit(
                id=new_id(),
                project_id=branch.project_id,
                branch_id=branch.id,
                index=last_index + 1,
                created_at=utc_now(),
                author_id=author_id,
                message=message,
                created_files=created,
                modified_files=modified,
                deleted_files=deleted,
                files=apply_file_changes(current.files, upserts, deleted),
            )
            self.db.insert_commit(commit)
            self.db.set_branch_commit(branch.id, commit.id)

        logger.info(
            "Created commit {} (index {}) on branch {} by {}",
            commit.id,
            commit.index,
            branch.name,
            author_id or "system",
        )

        new_hashes = {
            data.hash
            for path, data in commit.files.items()
            if path in upserts and current.files.get(path, FileData("")).hash != data.hash
        }
        self._charge_storage(commit.project_id, new_hashes)
        return commit

    def _charge_storage(self, project_id: str, hashes: set) -> None:
        """Add the size of newly referenced objects to the team's storage usage.

        Best-effort: failures are logged and never undo the commit.
        """
        if self.blob_store is None or not hashes:
            return
        try:
            project = self.db.get_project(project_id)
            if project is None:
                return
            total = sum(
                self.blob_store.head_size(self.blob_store.object_key(project_id, content_hash))
                for content_hash in sorted(hashes)
            )
            self.db.add_team_usage(project.team_id, storage_mb=total / MIB)
        except VCSHubError as e:
            logger.warning("Failed to update storage usage for project {}: {}", project_id, e.message)

    def update_commit(self, commit_id: str, **fields: Any) -> Commit:
        """Patch a commit's message or path lists.

        Index, branch, project and file map never change.

        Raises:
            InvalidError: For any other field or malformed lists
            NotFoundError: Unknown commit
        """
        unknown = set(fields) - COMMIT_MUTABLE_FIELDS
        if unknown:
            raise InvalidError(f"Cannot update commit fields: {', '.join(sorted(unknown))}")

        patch: Dict[str, Any] = {}
        for column, value in fields.items():
            if value is None:
                continue
            if column == "message":
                if not isinstance(value, str):
                    raise InvalidError("Commit message must be a string")
                patch[column] = value
            else:
                patch[column] = validate_paths(value, column)

        if not self.db.update_commit_fields(commit_id, patch):
            raise NotFoundError("Commit not found")
        return self.get_commit_by_id(commit_id)

    def reset_branch(self, branch_id: str, index: int) -> Branch:
        """Move a branch back to its commit at ``index`` and drop later commits.

        The next commit on the branch gets ``index + 1`` again.

        Raises:
            InvalidError: Non-positive index
            NotFoundError: Unknown branch or no commit at ``index`` on it
        """
        if not isinstance(index, int) or index < 1:
            raise InvalidError("Invalid commit index; must be a positive non-zero integer")

        with self.db.transaction():
            branch = self.db.get_branch(branch_id)
            if branch is None:
                raise NotFoundError("Branch not found")
            target = self.db.get_commit_by_index(branch.project_id, index, branch.id)
            if target is None:
                raise NotFoundError(f"Commit {index} not found on branch")
            self.db.set_branch_commit(branch.id, target.id)
            dropped = self.db.delete_commits_after(branch.id, index)

        logger.info("Reset branch {} to commit {} ({} commits dropped)", branch.name, index, dropped)
        branch.commit_id = target.id
        return branch

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _resolve_head(self, branch: Branch) -> Commit:
        """Return the commit a branch points to.

        A pointer to a commit that no longer exists is healed by moving the
        branch to its highest-index commit.
        """
        commit = self.db.get_commit(branch.commit_id)
        if commit is not None:
            return commit

        latest = self.db.get_latest_commit(branch.id)
        if latest is None:
            raise NotFoundError(f'Branch "{branch.name}" has no commits')
        logger.warning(
            "Branch {} pointed at missing commit {}; repointing to index {}",
            branch.id,
            branch.commit_id,
            latest.index,
        )
        self.db.set_branch_commit(branch.id, latest.id)
        branch.commit_id = latest.id
        return latest

    def get_branch_with_latest_commit(
        self, team_id: str, project_name: str, branch_name: str
    ) -> BranchWithCommit:
        """Resolve a branch by team, project name and branch name.

        Raises:
            NotFoundError: If the project or branch does not exist
        """
        project = self.db.get_project_by_name(team_id, project_name)
        if project is None:
            raise NotFoundError("Project not found")
        branch = self.db.get_branch_by_name(project.id, branch_name)
        if branch is None:
            raise NotFoundError("Branch not found")
        return BranchWithCommit(branch=branch, commit=self._resolve_head(branch))

    def get_head(self, branch_id: str) -> BranchWithCommit:
        branch = self.db.get_branch(branch_id)
        if branch is None:
            raise NotFoundError("Branch not found")
        return BranchWithCommit(branch=branch, commit=self._resolve_head(branch))

    def get_commit_by_id(self, commit_id: str) -> Commit:
        commit = self.db.get_commit(commit_id)
        if commit is None:
            raise NotFoundError("Commit not found")
        return commit

    def get_commit(self, project_id: str, index: int, branch_id: Optional[str] = None) -> Commit:
        if not isinstance(index, int) or index < 1:
            raise InvalidError("Invalid commit index. Must be a positive non-zero integer")
        commit = self.db.get_commit_by_index(project_id, index, branch_id)
        if commit is None:
            raise NotFoundError("Commit not found")
        return commit

    def list_commits(
        self,
        project_id: str,
        branch_id: Optional[str] = None,
        before: Optional[str] = None,
        after: Optional[str] = None,
        limit: int = DEFAULT_COMMIT_LIMIT,
    ) -> List[Commit]:
        """List a project's commits, newest first.

        Args:
            project_id: Project to list
            branch_id: Only this branch's commits
            before: Commit id; only commits created before it
            after: Commit id; only commits created after it (ignored when
                ``before`` is set)
            limit: Maximum number of commits (non-positive means default)
        """
        if limit is None or limit <= 0:
            limit = DEFAULT_COMMIT_LIMIT

        before_ts = after_ts = None
        compared_id = before or after
        if compared_id:
            compared = self.db.get_commit(compared_id)
            if compared is None or compared.project_id != project_id:
                raise InvalidError("No commit found for query param")
            if before:
                before_ts = compared.created_at
            else:
                after_ts = compared.created_at

        return self.db.list_commits(
            project_id, branch_id=branch_id, before=before_ts, after=after_ts, limit=limit
        )
