"""Project and branch registry.

A project is created together with its default branch ``stable`` and an
empty, system-authored initial commit. Deleting a project is a saga of
idempotent steps that can be retried after a partial failure.
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from vcshub.constants import (
    DEFAULT_BRANCH_NAME,
    INITIAL_COMMIT_INDEX,
    INITIAL_COMMIT_MESSAGE,
    SYSTEM_AUTHOR,
)
from vcshub.core.common import new_id, utc_now, validate_branch_name, validate_project_name
from vcshub.errors import ConflictError, InvalidError, NotFoundError
from vcshub.models import Branch, Commit, FileData, Project
from vcshub.storage.metadata_db import MetadataDB


class ProjectRegistry:
    """Creates, reads, updates and deletes projects and their branches.

    Attributes:
        db: Metadata store
    """

    def __init__(self, db: MetadataDB) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, team_id: str, name: str) -> Project:
        """Create a project with its default branch and initial commit.

        All three records are written in one transaction; on any failure none
        of them persists.

        Args:
            team_id: Owning team
            name: Project name, unique within the team

        Returns:
            The new project, with ``default_branch_id`` set

        Raises:
            InvalidError: Missing team or malformed name
            ConflictError: The team already has a project with this name
        """
        if not team_id:
            raise InvalidError("Team ID is required")
        name = validate_project_name(name)

        now = utc_now()
        project = Project(id=new_id(), team_id=team_id, name=name, created_at=now)
        branch = Branch(
            id=new_id(),
            project_id=project.id,
            name=DEFAULT_BRANCH_NAME,
            commit_id=new_id(),
            created_at=now,
        )
        commit = Commit(
            id=branch.commit_id,
            project_id=project.id,
            branch_id=branch.id,
            index=INITIAL_COMMIT_INDEX,
            created_at=now,
            author_id=SYSTEM_AUTHOR,
            message=INITIAL_COMMIT_MESSAGE,
        )
        project.default_branch_id = branch.id

        with self.db.transaction():
            self.db.insert_project(project)
            self.db.insert_commit(commit)
            self.db.insert_branch(branch)

        logger.info("Created project {} ({}) for team {}", project.name, project.id, team_id)
        return project

    def get_project(self, project_id: str) -> Project:
        project = self.db.get_project(project_id)
        if project is None:
            raise NotFoundError("Project not found")
        return project

    def get_project_by_name(self, team_id: str, name: str) -> Project:
        project = self.db.get_project_by_name(team_id, name)
        if project is None:
            raise NotFoundError("Project not found")
        return project

    def list_projects(self, team_id: Optional[str] = None) -> List[Project]:
        return self.db.list_projects(team_id)

    def update_project(
        self,
        project_id: str,
        name: Optional[str] = None,
        default_branch_id: Optional[str] = None,
        storage_grant: Optional[str] = None,
        storage_grant_expires_at: Optional[str] = None,
    ) -> Project:
        """Patch a project's mutable fields; None leaves a field unchanged.

        Raises:
            NotFoundError: Unknown project, or a default branch that is not
                a live branch of this project
            ConflictError: The new name is taken within the team
        """
        fields: Dict[str, Any] = {}
        if name is not None:
            fields["name"] = validate_project_name(name)
        if default_branch_id is not None:
            branch = self.db.get_branch(default_branch_id)
            if branch is None or branch.project_id != project_id:
                raise NotFoundError("Default branch not found in project")
            fields["default_branch_id"] = default_branch_id
        if storage_grant is not None:
            fields["storage_grant"] = storage_grant
        if storage_grant_expires_at is not None:
            fields["storage_grant_expires_at"] = storage_grant_expires_at

        if not self.db.update_project(project_id, fields):
            raise NotFoundError("Project not found")
        return self.get_project(project_id)

    def delete_project(self, project_id: str) -> None:
        """Delete a project and everything it owns.

        Steps run in order and each is idempotent:

        1. mark the project deleted, which hides it from reads
        2. delete its commits
        3. delete its branches (their locks go with them)
        4. delete the project record

        A failure leaves the project hidden; calling again resumes.

        Raises:
            NotFoundError: If no project (live or partly deleted) has this id
        """
        project = self.db.get_project(project_id, include_deleted=True)
        if project is None:
            raise NotFoundError("Project not found")

        if project.deleted_at is None:
            self.db.mark_project_deleted(project_id, utc_now())
            logger.info("Delete project {}: marked deleted", project_id)
        else:
            logger.info("Delete project {}: resuming (marked at {})", project_id, project.deleted_at)

        commits = self.db.delete_commits_for_project(project_id)
        logger.info("Delete project {}: removed {} commits", project_id, commits)

        branches = self.db.delete_branches_for_project(project_id)
        logger.info("Delete project {}: removed {} branches", project_id, branches)

        self.db.delete_project_row(project_id)
        logger.info("Delete project {}: done", project_id)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _source_commit(self, project: Project, commit_index: Optional[int]) -> Commit:
        if commit_index is None:
            default = self.db.get_branch(project.default_branch_id or "")
            if default is None:
                raise NotFoundError("Default branch not found")
            commit = self.db.get_commit(default.commit_id)
        else:
            if not isinstance(commit_index, int) or commit_index < 1:
                raise InvalidError("Invalid commit index. Must be a positive non-zero integer")
            commit = self.db.get_commit_by_index(project.id, commit_index)
        if commit is None:
            raise NotFoundError("Commit not found")
        return commit

    def create_branch(
        self, project_id: str, name: str, commit_index: Optional[int] = None
    ) -> Branch:
        """Create a branch starting from an existing commit of the project.

        The branch gets its own system-authored commit carrying the source
        commit's files, so every commit a branch points to belongs to it.
        A soft-deleted branch with the same name is restored instead, with
        the locks it had when it was deleted.

        Args:
            project_id: Project to branch in
            name: Branch name (letters, digits, ``_`` and ``-``)
            commit_index: Index of the commit to start from; defaults to the
                default branch's current commit

        Raises:
            InvalidError: Malformed name or index
            NotFoundError: Unknown project or commit
            ConflictError: A live branch already has this name
        """
        name = validate_branch_name(name)
        project = self.get_project(project_id)
        now = utc_now()

        with self.db.transaction():
            source = self._source_commit(project, commit_index)
            existing = self.db.get_branch_by_name(project.id, name, include_deleted=True)
            if existing is not None and not existing.is_deleted:
                raise ConflictError(f'Branch "{name}" already exists')

            if existing is None:
                branch = Branch(
                    id=new_id(), project_id=project.id, name=name, commit_id=new_id(), created_at=now
                )
                index = source.index
            else:
                branch = existing
                branch.commit_id = new_id()
                branch.deleted_at = None
                latest = self.db.get_latest_commit(branch.id)
                index = source.index if latest is None else max(source.index, latest.index + 1)

            fork = Commit(
                id=branch.commit_id,
                project_id=project.id,
                branch_id=branch.id,
                index=index,
                created_at=now,
                author_id=SYSTEM_AUTHOR,
                message=f'Branched from "{source.id}"',
                files={path: FileData(data.hash, data.version) for path, data in source.files.items()},
            )
            self.db.insert_commit(fork)
            if existing is None:
                self.db.insert_branch(branch)
            else:
                self.db.set_branch_deleted(branch.id, None)
                self.db.set_branch_commit(branch.id, fork.id)

        logger.info(
            "{} branch {} in project {} at commit {}",
            "Restored" if existing is not None else "Created",
            name,
            project.id,
            source.index,
        )
        return branch

    def get_branch(self, branch_id: str) -> Branch:
        branch = self.db.get_branch(branch_id)
        if branch is None:
            raise NotFoundError("Branch not found")
        return branch

    def get_branch_by_name(self, project_id: str, name: str) -> Branch:
        branch = self.db.get_branch_by_name(project_id, name)
        if branch is None:
            raise NotFoundError("Branch not found")
        return branch

    def list_branches(self, project_id: str) -> List[Branch]:
        return self.db.list_branches(self.get_project(project_id).id)

    def rename_branch(self, branch_id: str, name: str) -> Branch:
        name = validate_branch_name(name)
        if not self.db.rename_branch(branch_id, name):
            raise NotFoundError("Branch not found")
        return self.get_branch(branch_id)

    def delete_branch(self, branch_id: str, hard: bool = False) -> None:
        """Delete a branch.

        A soft delete hides the branch; its commits and locks stay so the
        name can be restored later. A hard delete removes the branch
        and its commits.

        Raises:
            NotFoundError: Unknown branch
            ConflictError: The branch is the project's default or only branch
        """
        with self.db.transaction():
            branch = self.get_branch(branch_id)
            project = self.get_project(branch.project_id)
            if project.default_branch_id == branch.id:
                raise ConflictError("Cannot delete the default branch")
            if len(self.db.list_branches(project.id)) <= 1:
                raise ConflictError("Cannot delete the only branch of a project")

            if hard:
                self.db.delete_commits_after(branch.id, 0)
                self.db.delete_branch_row(branch.id)
            else:
                self.db.set_branch_deleted(branch.id, utc_now())

        logger.info("Deleted branch {} ({})", branch.name, "hard" if hard else "soft")
