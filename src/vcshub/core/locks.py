"""Lock coordination for collaborative edits.

Each branch carries a set of locked paths. A lock blocks commits touching the
path by anyone except the user recorded as its holder; a lock without a holder
blocks every writer. Any collaborator may unlock any path.
"""

from typing import Dict, Iterable, List

from loguru import logger

from vcshub.core.common import utc_now, validate_paths
from vcshub.errors import InvalidError, NotFoundError
from vcshub.models import Branch, Lock
from vcshub.storage.metadata_db import MetadataDB


def find_lock_conflicts(locks: List[Lock], paths: Iterable[str], author_id: str) -> List[str]:
    """Return the paths that ``author_id`` may not write because of ``locks``."""
    holders: Dict[str, str] = {lock.path: lock.locked_by for lock in locks}
    conflicts = []
    for path in paths:
        if path not in holders:
            continue
        holder = holders[path]
        if not holder or holder != author_id:
            conflicts.append(path)
    return conflicts


class LockCoordinator:
    """Adds and removes paths in a branch's lock set.

    Lock and unlock are idempotent set operations. Both are written as
    single-statement inserts/deletes, so concurrent calls on the same branch
    never lose each other's updates.
    """

    def __init__(self, db: MetadataDB) -> None:
        self.db = db

    def _get_branch(self, branch_id: str) -> Branch:
        branch = self.db.get_branch(branch_id)
        if branch is None:
            raise NotFoundError("Branch not found")
        return branch

    def _expand(self, branch: Branch, paths: List[str]) -> List[str]:
        """Expand directory paths to the committed files below them.

        A path with no committed files below it is locked literally as a
        file, which lets a user lock a file before creating it. A path
        ending in ``/`` must name a directory of committed files.

        Raises:
            InvalidError: A ``/``-terminated path with nothing committed below it
        """
        commit = self.db.get_commit(branch.commit_id)
        committed = sorted(commit.files) if commit is not None else []

        expanded: List[str] = []
        for path in paths:
            if path in committed:
                matches = [path]
            else:
                prefix = path.rstrip("/") + "/"
                matches = [key for key in committed if key.startswith(prefix)]
                if not matches and path.endswith("/"):
                    raise InvalidError(f'"{path}" is not a directory in the branch')
                if not matches:
                    matches = [path]
            for match in matches:
                if match not in expanded:
                    expanded.append(match)
        return expanded

    def lock(self, branch_id: str, paths: List[str], user_id: str = "") -> List[str]:
        """Lock paths on a branch.

        Args:
            branch_id: Branch to lock on
            paths: Files, or directories of committed files, to lock
            user_id: Holder recorded on new locks; an empty holder blocks
                every writer

        Returns:
            The branch's lock set after the operation, in lock order

        Raises:
            InvalidError: If no paths are given, a path is malformed, or a
                directory path has no committed files below it
            NotFoundError: If the branch does not exist
        """
        paths = validate_paths(paths, directory_ok=True)
        if not paths:
            raise InvalidError("No paths provided")

        branch = self._get_branch(branch_id)
        expanded = self._expand(branch, paths)
        added = self.db.add_locks(branch.id, expanded, user_id, utc_now())
        logger.info(
            "Locked {} path(s) on branch {} ({} already locked)",
            added,
            branch.id,
            len(expanded) - added,
        )
        return self.locked_paths(branch.id)

    def unlock(self, branch_id: str, paths: List[str]) -> List[str]:
        """Unlock paths on a branch; paths that are not locked are ignored.

        A directory path also releases every lock below it.

        Returns:
            The branch's lock set after the operation
        """
        paths = validate_paths(paths, directory_ok=True)
        if not paths:
            raise InvalidError("No paths provided")

        branch = self._get_branch(branch_id)
        removed = 0
        with self.db.transaction():
            removed += self.db.remove_locks(branch.id, [path.rstrip("/") for path in paths])
            for path in paths:
                removed += self.db.remove_locks_under(branch.id, path)
        logger.info("Unlocked {} path(s) on branch {}", removed, branch.id)
        return self.locked_paths(branch.id)

    def locks(self, branch_id: str) -> List[Lock]:
        return self.db.get_locks(self._get_branch(branch_id).id)

    def locked_paths(self, branch_id: str) -> List[str]:
        return [lock.path for lock in self.db.get_locks(branch_id)]

    def conflicting_paths(self, branch_id: str, paths: Iterable[str], author_id: str) -> List[str]:
        return find_lock_conflicts(self.db.get_locks(branch_id), paths, author_id)
