"""Boundary facade of the vcshub core.

``VCSCore`` is what an HTTP layer calls after it has resolved the user, team
and role of a request. It wires the registry, ledger, lock coordinator, blob
store and garbage collector around one metadata store and one object store.
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from loguru import logger

from vcshub.config import Settings
from vcshub.constants import MIB
from vcshub.core.gc import GarbageCollector
from vcshub.core.ledger import CommitLedger
from vcshub.core.locks import LockCoordinator
from vcshub.core.registry import ProjectRegistry
from vcshub.errors import InvalidError
from vcshub.models import (
    Branch,
    BranchWithCommit,
    Commit,
    CompletedPart,
    PresignOptions,
    PresignResponse,
    Project,
    ReconcileResult,
)
from vcshub.storage.blob_store import BlobStore
from vcshub.storage.metadata_db import MetadataDB


@dataclass
class Dependencies:
    db: MetadataDB
    blob_store: BlobStore
    settings: Settings


def _to_part(value: Union[CompletedPart, Dict[str, Any]]) -> CompletedPart:
    if isinstance(value, CompletedPart):
        return value
    if isinstance(value, dict):
        number = value.get("part_number", value.get("PartNumber"))
        etag = value.get("etag", value.get("ETag"))
        if isinstance(number, int) and isinstance(etag, str):
            return CompletedPart(part_number=number, etag=etag)
    raise InvalidError(f"Invalid part: {value!r}")


class VCSCore:
    """Core operations of the hosted version-control service.

    Attributes:
        deps: Injected metadata store, object store and settings
        registry: Project and branch registry
        ledger: Commit ledger
        locks: Lock coordinator
        gc: Garbage collector
    """

    def __init__(self, deps: Dependencies) -> None:
        self.deps = deps
        self.registry = ProjectRegistry(deps.db)
        self.ledger = CommitLedger(deps.db, deps.blob_store)
        self.locks = LockCoordinator(deps.db)
        self.gc = GarbageCollector(
            deps.db,
            deps.blob_store,
            grace_period_seconds=deps.settings.gc.grace_period_seconds,
            delete_batch_size=deps.settings.gc.delete_batch_size,
            list_page_size=deps.settings.gc.list_page_size,
        )

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, config_path: Optional[Path] = None
    ) -> "VCSCore":
        """Open the metadata store and build the S3 client from configuration.

        The schema is created if the database is new.
        """
        settings = settings or Settings.load(config_path)
        db = MetadataDB(Path(settings.database.path), timeout=settings.database.timeout_seconds)
        db.open()
        db.init_schema()
        blob_store = BlobStore.from_settings(settings.storage)
        return cls(Dependencies(db=db, blob_store=blob_store, settings=settings))

    def close(self) -> None:
        self.deps.db.close()

    def __enter__(self) -> "VCSCore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Projects and branches
    # ------------------------------------------------------------------

    def create_project(self, team_id: str, name: str) -> Project:
        return self.registry.create_project(team_id, name)

    def get_project(self, project_id: str) -> Project:
        return self.registry.get_project(project_id)

    def delete_project(self, project_id: str, purge_storage: bool = False) -> None:
        """Delete a project's records, and optionally all of its objects.

        Storage is purged after the records are gone, so a reference to a
        purged object can never be read back.
        """
        self.registry.delete_project(project_id)
        if not purge_storage:
            return

        keys: List[str] = []
        for objects, _ in self.deps.blob_store.iter_object_pages(project_id):
            keys.extend(obj["Key"] for obj in objects if obj.get("Key"))
        failed = self.deps.blob_store.delete_objects(keys, self.deps.settings.gc.delete_batch_size)
        if failed:
            logger.warning(
                "Delete project {}: {} of {} objects left in storage", project_id, len(failed), len(keys)
            )
        else:
            logger.info("Delete project {}: purged {} objects", project_id, len(keys))

    def create_branch(
        self, project_id: str, name: str, commit_index: Optional[int] = None
    ) -> Branch:
        return self.registry.create_branch(project_id, name, commit_index)

    def get_branch_with_latest_commit(
        self, team_id: str, project_name: str, branch_name: str
    ) -> BranchWithCommit:
        return self.ledger.get_branch_with_latest_commit(team_id, project_name, branch_name)

    # ------------------------------------------------------------------
    # Locks and commits
    # ------------------------------------------------------------------

    def lock(self, branch_id: str, paths: List[str], user_id: str = "") -> List[str]:
        return self.locks.lock(branch_id, paths, user_id)

    def unlock(self, branch_id: str, paths: List[str]) -> List[str]:
        return self.locks.unlock(branch_id, paths)

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
        return self.ledger.create_commit(
            branch_id,
            author_id,
            message,
            created_files=created_files,
            modified_files=modified_files,
            deleted_files=deleted_files,
            path_hash_map=path_hash_map,
        )

    def update_commit(self, commit_id: str, **fields: Any) -> Commit:
        return self.ledger.update_commit(commit_id, **fields)

    # ------------------------------------------------------------------
    # Object storage
    # ------------------------------------------------------------------

    def presign(
        self,
        method: Any,
        project_id: str,
        key: str,
        options: Optional[PresignOptions] = None,
    ) -> PresignResponse:
        """Presign a download or upload of one object of a project.

        Downloads are charged to the owning team's bandwidth counter.

        Raises:
            NotFoundError: Unknown project, or GET of a missing object
            InvalidError: Unknown method or bad multipart parameters
        """
        project = self.registry.get_project(project_id)
        return self.deps.blob_store.presign(
            method, project.id, key, options=options, usage=self._bandwidth_charger(project)
        )

    def presign_many(self, method: Any, project_id: str, keys: List[str]) -> Dict[str, str]:
        """Presign downloads or single-request uploads of several objects.

        Each downloaded object is charged to the team's bandwidth counter.

        Returns:
            Mapping of each key to its presigned URL

        Raises:
            NotFoundError: Unknown project, or GET of a missing object
            InvalidError: Unknown method or bad key list
        """
        project = self.registry.get_project(project_id)
        return self.deps.blob_store.presign_many(
            method, project.id, keys, usage=self._bandwidth_charger(project)
        )

    def _bandwidth_charger(self, project: Project) -> Callable[[int], None]:
        db = self.deps.db

        def charge_bandwidth(size: int) -> None:
            if not db.add_team_usage(project.team_id, bandwidth_mb=size / MIB):
                logger.warning("Team {} not found; bandwidth not recorded", project.team_id)

        return charge_bandwidth

    def complete_multipart_upload(
        self,
        project_id: str,
        key: str,
        upload_id: str,
        parts: List[Union[CompletedPart, Dict[str, Any]]],
    ) -> None:
        project = self.registry.get_project(project_id)
        self.deps.blob_store.complete_multipart_upload(
            project.id, key, upload_id, [_to_part(part) for part in parts]
        )

    def abort_multipart_upload(self, project_id: str, key: str, upload_id: str) -> None:
        project = self.registry.get_project(project_id)
        self.deps.blob_store.abort_multipart_upload(project.id, key, upload_id)

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def reconcile_project(
        self,
        project_id: str,
        cancel_event: Optional[threading.Event] = None,
        start_token: Optional[str] = None,
    ) -> ReconcileResult:
        return self.gc.reconcile_project(project_id, cancel_event, start_token)
