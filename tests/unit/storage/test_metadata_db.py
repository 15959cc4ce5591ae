"""Unit tests for MetadataDB."""

import sqlite3
from pathlib import Path

import pytest

from vcshub.constants import DB_SCHEMA_VERSION
from vcshub.errors import ConflictError
from vcshub.models import Branch, Commit, FileData, Project, Team
from vcshub.storage.metadata_db import DatabaseError, MetadataDB

NOW = "2026-02-09T10:00:00+00:00"


def make_commit(index: int, branch_id: str = "b1", project_id: str = "p1", **kwargs) -> Commit:
    return Commit(
        id=kwargs.pop("id", f"{branch_id}-c{index}"),
        project_id=project_id,
        branch_id=branch_id,
        index=index,
        created_at=kwargs.pop("created_at", f"2026-02-09T10:00:{index:02d}+00:00"),
        **kwargs,
    )


@pytest.fixture
def seeded(db: MetadataDB) -> MetadataDB:
    """Database with project p1 and branch b1 at commit 1."""
    db.insert_project(Project(id="p1", team_id="t1", name="demo", created_at=NOW, default_branch_id="b1"))
    db.insert_commit(make_commit(1))
    db.insert_branch(Branch(id="b1", project_id="p1", name="stable", commit_id="b1-c1", created_at=NOW))
    return db


class TestMetadataDBInit:
    """Test database initialization."""

    def test_init_sets_path(self, db_path: Path) -> None:
        """Test that MetadataDB keeps the given path."""
        db = MetadataDB(db_path)
        assert db.db_path == db_path
        assert db.conn is None

    def test_open_idempotent(self, db_path: Path) -> None:
        """Test that calling open multiple times is safe."""
        db = MetadataDB(db_path)
        db.open()
        conn1 = db.conn
        db.open()
        assert db.conn is conn1
        db.close()

    def test_context_manager(self, db_path: Path) -> None:
        """Test using database as context manager."""
        db = MetadataDB(db_path)
        with db:
            assert isinstance(db.conn, sqlite3.Connection)
        assert db.conn is None

    def test_init_schema_creates_tables(self, db: MetadataDB) -> None:
        """Test schema initialization creates all tables."""
        rows = db.conn.execute(  # type: ignore[union-attr]
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        tables = {row[0] for row in rows}
        for table in ("metadata", "teams", "projects", "branches", "branch_locks", "commits"):
            assert table in tables

    def test_init_schema_idempotent(self, db: MetadataDB) -> None:
        """Test that calling init_schema multiple times is safe."""
        db.init_schema()
        assert db.get_schema_version() == DB_SCHEMA_VERSION

    def test_closed_database_raises(self, db_path: Path) -> None:
        db = MetadataDB(db_path)
        with pytest.raises(DatabaseError):
            db.get_project("p1")

    def test_foreign_keys_enabled(self, db: MetadataDB) -> None:
        row = db.conn.execute("PRAGMA foreign_keys").fetchone()  # type: ignore[union-attr]
        assert row[0] == 1


class TestTransaction:
    """Test transaction()."""

    def test_rollback_on_error(self, db: MetadataDB) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.insert_team(Team(id="t1", name="one", created_at=NOW))
                raise RuntimeError("boom")
        assert db.get_team("t1") is None

    def test_commit_on_success(self, db: MetadataDB, db_path: Path) -> None:
        with db.transaction():
            db.insert_team(Team(id="t1", name="one", created_at=NOW))

        with MetadataDB(db_path) as other:
            assert other.get_team("t1") is not None

    def test_nested_joins_outer(self, db: MetadataDB) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.insert_team(Team(id="t1", name="one", created_at=NOW))
                with db.transaction():
                    db.insert_team(Team(id="t2", name="two", created_at=NOW))
                raise RuntimeError("boom")
        assert db.get_team("t1") is None
        assert db.get_team("t2") is None


class TestTeams:
    """Test team rows and usage counters."""

    def test_add_usage_accumulates(self, db: MetadataDB) -> None:
        db.insert_team(Team(id="t1", name="one", created_at=NOW))
        assert db.add_team_usage("t1", bandwidth_mb=1.5)
        assert db.add_team_usage("t1", bandwidth_mb=0.5, storage_mb=3.0)
        team = db.get_team("t1")
        assert team is not None
        assert team.bandwidth_used_mb == pytest.approx(2.0)
        assert team.storage_used_mb == pytest.approx(3.0)

    def test_add_usage_unknown_team(self, db: MetadataDB) -> None:
        assert db.add_team_usage("missing", bandwidth_mb=1.0) is False


class TestProjects:
    """Test project rows."""

    def test_duplicate_name_in_team(self, seeded: MetadataDB) -> None:
        with pytest.raises(ConflictError, match="already exists"):
            seeded.insert_project(Project(id="p2", team_id="t1", name="demo", created_at=NOW))

    def test_same_name_other_team(self, seeded: MetadataDB) -> None:
        seeded.insert_project(Project(id="p2", team_id="t2", name="demo", created_at=NOW))
        assert seeded.get_project_by_name("t2", "demo").id == "p2"  # type: ignore[union-attr]

    def test_deleted_project_hidden(self, seeded: MetadataDB) -> None:
        seeded.mark_project_deleted("p1", NOW)
        assert seeded.get_project("p1") is None
        assert seeded.get_project_by_name("t1", "demo") is None
        assert seeded.get_project("p1", include_deleted=True) is not None
        assert seeded.list_projects() == []

    def test_update_project(self, seeded: MetadataDB) -> None:
        assert seeded.update_project("p1", {"name": "renamed", "storage_grant": "grant"})
        project = seeded.get_project("p1")
        assert project is not None
        assert project.name == "renamed"
        assert project.storage_grant == "grant"

    def test_update_project_rejects_unknown_field(self, seeded: MetadataDB) -> None:
        with pytest.raises(ValueError):
            seeded.update_project("p1", {"team_id": "t2"})


class TestBranchesAndLocks:
    """Test branch rows and lock sets."""

    def test_duplicate_branch_name(self, seeded: MetadataDB) -> None:
        with pytest.raises(ConflictError):
            seeded.insert_branch(
                Branch(id="b2", project_id="p1", name="stable", commit_id="x", created_at=NOW)
            )

    def test_add_locks_ignores_existing(self, seeded: MetadataDB) -> None:
        assert seeded.add_locks("b1", ["a.txt", "b.txt"], "u1", NOW) == 2
        assert seeded.add_locks("b1", ["b.txt", "c.txt"], "u2", NOW) == 1
        locks = seeded.get_locks("b1")
        assert [lock.path for lock in locks] == ["a.txt", "b.txt", "c.txt"]
        assert locks[1].locked_by == "u1"

    def test_branch_carries_locked_paths(self, seeded: MetadataDB) -> None:
        seeded.add_locks("b1", ["a.txt"], "", NOW)
        assert seeded.get_branch("b1").locked_paths == ["a.txt"]  # type: ignore[union-attr]

    def test_remove_locks_under(self, seeded: MetadataDB) -> None:
        seeded.add_locks("b1", ["dir/a", "dir/sub/b", "dirx/c"], "", NOW)
        assert seeded.remove_locks_under("b1", "dir") == 2
        assert [lock.path for lock in seeded.get_locks("b1")] == ["dirx/c"]

    def test_locks_removed_with_branch(self, seeded: MetadataDB) -> None:
        seeded.add_locks("b1", ["a.txt"], "", NOW)
        seeded.delete_branches_for_project("p1")
        assert seeded.get_locks("b1") == []

    def test_soft_delete_and_restore(self, seeded: MetadataDB) -> None:
        seeded.set_branch_deleted("b1", NOW)
        assert seeded.get_branch("b1") is None
        assert seeded.get_branch_by_name("p1", "stable", include_deleted=True) is not None
        seeded.set_branch_deleted("b1", None)
        assert seeded.get_branch("b1") is not None


class TestCommits:
    """Test commit rows."""

    def test_round_trip_file_map(self, seeded: MetadataDB) -> None:
        commit = make_commit(
            2,
            author_id="u1",
            message="edit",
            modified_files=["a.txt"],
            files={"a.txt": FileData("h1", 3)},
        )
        seeded.insert_commit(commit)
        stored = seeded.get_commit(commit.id)
        assert stored == commit

    def test_duplicate_index_on_branch(self, seeded: MetadataDB) -> None:
        with pytest.raises(ConflictError, match="index 1"):
            seeded.insert_commit(make_commit(1, id="other"))

    def test_same_index_other_branch(self, seeded: MetadataDB) -> None:
        seeded.insert_commit(make_commit(1, branch_id="b2"))
        assert seeded.get_commit_by_index("p1", 1, "b2").branch_id == "b2"  # type: ignore[union-attr]

    def test_latest_commit(self, seeded: MetadataDB) -> None:
        seeded.insert_commit(make_commit(3))
        seeded.insert_commit(make_commit(2))
        assert seeded.get_latest_commit("b1").index == 3  # type: ignore[union-attr]

    def test_list_commits_newest_first(self, seeded: MetadataDB) -> None:
        for index in (2, 3, 4):
            seeded.insert_commit(make_commit(index))
        commits = seeded.list_commits("p1", limit=2)
        assert [commit.index for commit in commits] == [4, 3]
        older = seeded.list_commits("p1", before=make_commit(3).created_at)
        assert [commit.index for commit in older] == [2, 1]

    def test_update_commit_fields(self, seeded: MetadataDB) -> None:
        assert seeded.update_commit_fields("b1-c1", {"message": "new", "deleted_files": ["x"]})
        commit = seeded.get_commit("b1-c1")
        assert commit.message == "new"  # type: ignore[union-attr]
        assert commit.deleted_files == ["x"]  # type: ignore[union-attr]
        assert not seeded.update_commit_fields("missing", {"message": "x"})

    def test_delete_commits_after(self, seeded: MetadataDB) -> None:
        for index in (2, 3):
            seeded.insert_commit(make_commit(index))
        assert seeded.delete_commits_after("b1", 1) == 2
        assert seeded.get_latest_commit("b1").index == 1  # type: ignore[union-attr]

    def test_iter_commit_file_maps(self, seeded: MetadataDB) -> None:
        seeded.insert_commit(make_commit(2, files={"a": FileData("h1")}))
        seeded.insert_commit(make_commit(1, branch_id="b2", files={"b": FileData("h2", 2)}))
        maps = list(seeded.iter_commit_file_maps("p1"))
        hashes = {value["hash"] for files in maps for value in files.values()}
        assert hashes == {"h1", "h2"}
        assert len(maps) == 3
