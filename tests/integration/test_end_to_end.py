"""End-to-end scenarios across registry, ledger, locks, storage and GC."""

import threading

import pytest

from vcshub.constants import MIB
from vcshub.core import VCSCore
from vcshub.errors import ConflictError
from vcshub.models import FileData, PresignOptions, ReconcileStatus, Team


class TestProjectLifecycle:
    """Test the full flow a client goes through."""

    def test_commit_lock_conflict_flow(self, core: VCSCore, team: Team) -> None:
        project = core.create_project(team.id, "p1")
        head = core.get_branch_with_latest_commit(team.id, "p1", "stable")
        assert head.commit.index == 1
        assert head.commit.files == {}
        branch_id = head.branch.id

        first = core.create_commit(
            branch_id,
            "alice",
            "add a",
            modified_files=["a.txt"],
            path_hash_map={"a.txt": {"hash": "h1", "version": 1}},
        )
        head = core.get_branch_with_latest_commit(team.id, "p1", "stable")
        assert head.commit.id == first.id
        assert head.commit.index == 2
        assert head.commit.files["a.txt"] == FileData("h1", 1)

        second = core.create_commit(
            branch_id, "alice", "edit a", modified_files=["a.txt"], path_hash_map={"a.txt": "h2"}
        )
        assert second.files["a.txt"].version == 2

        core.lock(branch_id, ["a.txt"])
        with pytest.raises(ConflictError):
            core.create_commit(
                branch_id, "bob", "edit a", modified_files=["a.txt"], path_hash_map={"a.txt": "h3"}
            )
        head = core.get_branch_with_latest_commit(team.id, "p1", "stable")
        assert head.commit.id == second.id
        assert head.branch.locked_paths == ["a.txt"]
        assert head.branch.project_id == project.id

    def test_presign_sizes(self, core: VCSCore, team: Team) -> None:
        project = core.create_project(team.id, "p1")
        single = core.presign("PUT", project.id, "h1", PresignOptions(multipart=False, size=10 * MIB))
        assert len(single.urls) == 1

        multi = core.presign("PUT", project.id, "h1", PresignOptions(multipart=True, size=10 * MIB))
        assert len(multi.urls) == 2
        assert multi.upload_id

    def test_upload_commit_download_collect(self, core: VCSCore, team: Team, s3) -> None:
        project = core.create_project(team.id, "assets")
        branch_id = project.default_branch_id

        upload = core.presign("PUT", project.id, "model-v1", PresignOptions(multipart=True, size=6 * MIB))
        core.complete_multipart_upload(
            project.id,
            "model-v1",
            upload.upload_id,  # type: ignore[arg-type]
            [{"PartNumber": number, "ETag": f"e{number}"} for number in (1, 2)],
        )
        s3.objects[f"{project.id}/model-v1"]["Size"] = 6 * MIB
        core.create_commit(
            branch_id,  # type: ignore[arg-type]
            "alice",
            "add model",
            created_files=["model.fbx"],
            path_hash_map={"model.fbx": "model-v1"},
        )
        core.presign("GET", project.id, "model-v1")

        usage = core.deps.db.get_team(team.id)
        assert usage.storage_used_mb == pytest.approx(6.0)  # type: ignore[union-attr]
        assert usage.bandwidth_used_mb == pytest.approx(6.0)  # type: ignore[union-attr]

        # An abandoned upload left in the bucket, old enough to collect
        s3.put(f"{project.id}/abandoned", age_seconds=2 * 3600)
        result = core.reconcile_project(project.id, cancel_event=threading.Event())
        assert result.status is ReconcileStatus.COMPLETE
        assert set(s3.objects) == {f"{project.id}/model-v1"}

        core.delete_project(project.id, purge_storage=True)
        assert s3.objects == {}
