"""Unit tests for GarbageCollector."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from vcshub.core import GarbageCollector, VCSCore
from vcshub.errors import NotFoundError
from vcshub.models import Project, PresignOptions, ReconcileStatus, Team


def commit_hash(core: VCSCore, project: Project, path: str, content_hash: str) -> None:
    core.create_commit(
        project.default_branch_id,  # type: ignore[arg-type]
        "u1",
        f"set {path}",
        modified_files=[path],
        path_hash_map={path: content_hash},
    )


class TestReconcileProject:
    """Test a single-project pass."""

    def test_deletes_only_unreferenced(self, core: VCSCore, project: Project, s3) -> None:
        commit_hash(core, project, "a", "h1")
        s3.put(f"{project.id}/h1")
        s3.put(f"{project.id}/orphan")

        result = core.reconcile_project(project.id)

        assert result.status is ReconcileStatus.COMPLETE
        assert result.deleted_count == 1
        assert result.scanned_count == 2
        assert result.referenced_count == 1
        assert set(s3.objects) == {f"{project.id}/h1"}

    def test_keeps_hashes_of_old_commits_and_other_branches(
        self, core: VCSCore, project: Project, s3
    ) -> None:
        commit_hash(core, project, "a", "old")
        commit_hash(core, project, "a", "new")
        branch = core.create_branch(project.id, "dev")
        core.create_commit(branch.id, "u1", "dev", created_files=["d"], path_hash_map={"d": "dev-hash"})
        for content_hash in ("old", "new", "dev-hash"):
            s3.put(f"{project.id}/{content_hash}")

        result = core.reconcile_project(project.id)

        assert result.deleted_count == 0
        assert len(s3.objects) == 3

    def test_other_projects_untouched(self, core: VCSCore, project: Project, team: Team, s3) -> None:
        other = core.create_project(team.id, "other")
        s3.put(f"{other.id}/orphan")
        core.reconcile_project(project.id)
        assert f"{other.id}/orphan" in s3.objects

    def test_grace_period_keeps_recent_uploads(self, core: VCSCore, project: Project, s3) -> None:
        s3.put(f"{project.id}/fresh", age_seconds=10)
        s3.put(f"{project.id}/stale", age_seconds=7200)

        result = core.reconcile_project(project.id)

        assert result.skipped_recent == 1
        assert set(s3.objects) == {f"{project.id}/fresh"}

    def test_partial_on_delete_failure(self, core: VCSCore, project: Project, s3) -> None:
        for name in ("o1", "o2", "o3"):
            s3.put(f"{project.id}/{name}")
        s3.fail_delete_keys = {f"{project.id}/o2"}

        result = core.reconcile_project(project.id)

        assert result.status is ReconcileStatus.PARTIAL
        assert result.failed_keys == [f"{project.id}/o2"]
        assert result.deleted_count == 2
        assert set(s3.objects) == {f"{project.id}/o2"}

    def test_batches_deletes(self, core: VCSCore, project: Project, s3, blob_store) -> None:
        for index in range(5):
            s3.put(f"{project.id}/o{index}")
        gc = GarbageCollector(core.deps.db, blob_store, delete_batch_size=2)
        result = gc.reconcile_project(project.id)
        assert result.deleted_count == 5
        assert [len(batch) for batch in s3.delete_calls] == [2, 2, 1]

    def test_cancel_and_resume(self, core: VCSCore, project: Project, s3, blob_store) -> None:
        for index in range(5):
            s3.put(f"{project.id}/o{index}")
        gc = GarbageCollector(core.deps.db, blob_store, list_page_size=2)
        cancel = threading.Event()
        cancel.set()

        first = gc.reconcile_project(project.id, cancel_event=cancel)
        assert first.status is ReconcileStatus.CANCELLED
        assert first.deleted_count == 2
        assert first.continuation_token

        second = gc.reconcile_project(project.id, start_token=first.continuation_token)
        assert second.status is ReconcileStatus.COMPLETE
        assert second.deleted_count == 3
        assert s3.objects == {}

    def test_commit_after_snapshot_is_not_at_risk(self, core: VCSCore, project: Project, s3) -> None:
        # An object uploaded for a commit that lands mid-scan is younger than
        # the grace period, so it is kept even though the snapshot missed it.
        s3.put(f"{project.id}/late", age_seconds=1)
        result = core.reconcile_project(project.id)
        commit_hash(core, project, "late.txt", "late")
        assert result.deleted_count == 0
        assert f"{project.id}/late" in s3.objects

    def test_unknown_project(self, core: VCSCore) -> None:
        with pytest.raises(NotFoundError):
            core.reconcile_project("missing")


class TestReconcileAll:
    """Test passes over every project."""

    def test_runs_every_project(self, core: VCSCore, project: Project, team: Team, s3) -> None:
        other = core.create_project(team.id, "other")
        s3.put(f"{project.id}/orphan")
        s3.put(f"{other.id}/orphan")

        results = core.gc.reconcile_all()

        assert {result.project_id for result in results} == {project.id, other.id}
        assert all(result.status is ReconcileStatus.COMPLETE for result in results)
        assert s3.objects == {}

    def test_failed_project_does_not_stop_run(
        self, core: VCSCore, project: Project, team: Team, s3, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        other = core.create_project(team.id, "other")
        s3.put(f"{other.id}/orphan")
        original = core.gc.reconcile_project

        def flaky(project_id, cancel_event=None, start_token=None):
            if project_id == project.id:
                raise NotFoundError("Project not found")
            return original(project_id, cancel_event, start_token)

        monkeypatch.setattr(core.gc, "reconcile_project", flaky)
        results = {result.project_id: result for result in core.gc.reconcile_all()}

        assert results[project.id].status is ReconcileStatus.PARTIAL
        assert results[other.id].status is ReconcileStatus.COMPLETE
        assert s3.objects == {}


class TestAbortStaleUploads:
    """Test aborting abandoned multipart uploads."""

    def test_aborts_only_old_uploads(self, core: VCSCore, project: Project, s3) -> None:
        options = PresignOptions(multipart=True, size=1)
        old = core.presign("PUT", project.id, "h-old", options).upload_id
        fresh = core.presign("PUT", project.id, "h-new", options).upload_id
        s3.uploads[old]["Initiated"] = datetime.now(timezone.utc) - timedelta(hours=25)

        assert core.gc.abort_stale_uploads(project.id) == 1
        assert list(s3.uploads) == [fresh]
