"""Garbage collection of unreferenced storage objects.

An object under ``{project_id}/`` is garbage when no commit of the project
references its hash. The referenced set is snapshotted before the listing
starts, and objects modified after ``scan start - grace period`` are never
deleted, so an upload whose commit lands during the pass survives it.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set

from loguru import logger

from vcshub.constants import (
    GC_DELETE_BATCH_SIZE,
    GC_GRACE_PERIOD_SECONDS,
    GC_LIST_PAGE_SIZE,
    MULTIPART_RETENTION_HOURS,
)
from vcshub.errors import NotFoundError, VCSHubError
from vcshub.models import FileData, ReconcileResult, ReconcileStatus
from vcshub.storage.blob_store import BlobStore, hash_from_key, object_age_seconds
from vcshub.storage.metadata_db import MetadataDB


class GarbageCollector:
    """Deletes storage objects that no commit references.

    Attributes:
        db: Metadata store holding the commits
        blob_store: Object store holding the content
        grace_period_seconds: Objects younger than this at scan start are kept
        delete_batch_size: Keys per delete request
        list_page_size: Keys per listing page
    """

    def __init__(
        self,
        db: MetadataDB,
        blob_store: BlobStore,
        grace_period_seconds: int = GC_GRACE_PERIOD_SECONDS,
        delete_batch_size: int = GC_DELETE_BATCH_SIZE,
        list_page_size: int = GC_LIST_PAGE_SIZE,
    ) -> None:
        self.db = db
        self.blob_store = blob_store
        self.grace_period_seconds = grace_period_seconds
        self.delete_batch_size = delete_batch_size
        self.list_page_size = list_page_size

    def referenced_hashes(self, project_id: str) -> Set[str]:
        """Collect every hash referenced by any commit of the project."""
        hashes: Set[str] = set()
        for files in self.db.iter_commit_file_maps(project_id):
            for value in files.values():
                hashes.add(FileData.from_value(value).hash)
        return hashes

    def reconcile_project(
        self,
        project_id: str,
        cancel_event: Optional[threading.Event] = None,
        start_token: Optional[str] = None,
    ) -> ReconcileResult:
        """Delete the project's unreferenced objects.

        Args:
            project_id: Project to clean up
            cancel_event: Checked between listing pages; when set the pass
                stops with status ``cancelled`` and a continuation token
            start_token: Continuation token of a previously cancelled pass

        Returns:
            Counts, failed keys and the final status of the pass

        Raises:
            NotFoundError: If the project does not exist
        """
        if self.db.get_project(project_id, include_deleted=True) is None:
            raise NotFoundError("Project not found")

        scan_start = datetime.now(timezone.utc)
        referenced = self.referenced_hashes(project_id)
        result = ReconcileResult(project_id=project_id, referenced_count=len(referenced))
        logger.info(
            "GC project {}: {} referenced hashes{}",
            project_id,
            len(referenced),
            " (resuming)" if start_token else "",
        )

        for objects, next_token in self.blob_store.iter_object_pages(
            project_id, start_token=start_token, page_size=self.list_page_size
        ):
            garbage: List[str] = []
            for obj in objects:
                key = obj.get("Key", "")
                result.scanned_count += 1
                content_hash = hash_from_key(project_id, key)
                if content_hash is None or content_hash in referenced:
                    continue
                age = object_age_seconds(obj, scan_start)
                if age is None or age < self.grace_period_seconds:
                    result.skipped_recent += 1
                    continue
                garbage.append(key)

            if garbage:
                failed = self.blob_store.delete_objects(garbage, self.delete_batch_size)
                result.failed_keys.extend(failed)
                result.deleted_count += len(garbage) - len(failed)

            if next_token is not None and cancel_event is not None and cancel_event.is_set():
                result.continuation_token = next_token
                result.status = ReconcileStatus.CANCELLED
                logger.warning("GC project {}: cancelled, resume token saved", project_id)
                return result

        if result.failed_keys:
            result.status = ReconcileStatus.PARTIAL
        logger.info(
            "GC project {}: scanned {}, deleted {}, failed {}, kept {} recent",
            project_id,
            result.scanned_count,
            result.deleted_count,
            len(result.failed_keys),
            result.skipped_recent,
        )
        return result

    def reconcile_all(self, cancel_event: Optional[threading.Event] = None) -> List[ReconcileResult]:
        """Run a pass over every live project.

        A project whose pass fails is reported as ``partial`` and the run
        moves on to the next project.
        """
        results: List[ReconcileResult] = []
        for project in self.db.list_projects():
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("GC run cancelled before project {}", project.id)
                break
            try:
                results.append(self.reconcile_project(project.id, cancel_event))
            except VCSHubError as e:
                logger.error("GC project {} failed: {}", project.id, e.message)
                results.append(
                    ReconcileResult(project_id=project.id, status=ReconcileStatus.PARTIAL)
                )
        return results

    def abort_stale_uploads(
        self, project_id: str, retention_hours: int = MULTIPART_RETENTION_HOURS
    ) -> int:
        """Abort the project's multipart uploads older than the retention window.

        Returns:
            Number of uploads aborted
        """
        cutoff = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
        aborted = 0
        for upload in self.blob_store.list_stale_uploads(project_id, cutoff):
            try:
                self.blob_store.abort_upload_by_key(upload["Key"], upload["UploadId"])
                aborted += 1
            except NotFoundError:
                continue
            except VCSHubError as e:
                logger.error(
                    "Failed to abort stale upload {} for {}: {}",
                    upload.get("UploadId"),
                    upload.get("Key"),
                    e.message,
                )
        logger.info("Aborted {} stale multipart uploads in project {}", aborted, project_id)
        return aborted
