"""SQLite metadata store for vcshub.

This module persists teams, projects, branches, branch locks and commits.
Every single-statement write is atomic on its own; multi-statement writes
(commit insertion plus branch repoint, project creation) run inside
``transaction()``, which takes SQLite's write lock up front so validation reads
and the following writes see one consistent state.
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from loguru import logger

from vcshub.constants import (
    BRANCHES_TABLE,
    COMMITS_TABLE,
    DB_SCHEMA_VERSION,
    DB_TIMEOUT_SECONDS,
    LOCKS_TABLE,
    PROJECTS_TABLE,
    TEAMS_TABLE,
)
from vcshub.errors import ConflictError, UpstreamError
from vcshub.models import Branch, Commit, Lock, Project, Team


class DatabaseError(UpstreamError):
    """Raised when the metadata store fails."""


# Columns that may be changed through update_project / update_commit_fields
PROJECT_MUTABLE_FIELDS = {"name", "default_branch_id", "storage_grant", "storage_grant_expires_at"}
COMMIT_MUTABLE_FIELDS = {"message", "created_files", "modified_files", "deleted_files"}


class MetadataDB:
    """SQLite database manager for vcshub metadata.

    One instance (one connection) is meant to be used by one worker at a time;
    concurrent workers open their own instance on the same file and
    synchronize through SQLite's locking.

    Schema Tables:
        - teams: Owning teams and their usage counters
        - projects: Projects, unique by (team_id, name)
        - branches: Branch pointers, unique by (project_id, name)
        - branch_locks: Locked paths per branch, unique by (branch_id, path)
        - commits: Immutable commits, unique by (branch_id, idx)
        - metadata: Schema version and configuration

    Attributes:
        db_path: Path to the SQLite database file
        conn: Active database connection (if open)

    Example:
        >>> with MetadataDB(Path("vcshub.db")) as db:
        ...     db.init_schema()
        ...     db.get_project("0f3a...")
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = DB_TIMEOUT_SECONDS) -> None:
        """Initialize database manager.

        Args:
            db_path: Path to the SQLite database file
            timeout: Seconds to wait for a competing writer's lock
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.conn: Optional[sqlite3.Connection] = None
        self._wal_mode_supported: Optional[bool] = None
        self._tx_depth = 0

    def open(self) -> None:
        """Open database connection and configure journal mode.

        Attempts to use WAL mode for better concurrency. Falls back to
        DELETE mode if WAL is not supported (e.g., on NFS).

        Raises:
            DatabaseError: If connection fails
        """
        if self.conn is not None:
            return  # Already open

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.timeout,
                check_same_thread=False,
                isolation_level=None,  # transactions are explicit
            )
            self.conn.row_factory = sqlite3.Row

            if self._wal_mode_supported is None:
                self._detect_wal_support()

            if self._wal_mode_supported:
                self.conn.execute("PRAGMA journal_mode=WAL")
            else:
                self.conn.execute("PRAGMA journal_mode=DELETE")

            self.conn.execute("PRAGMA foreign_keys=ON")

        except (sqlite3.Error, OSError) as e:
            raise DatabaseError.from_exception("open database", e) from e

    def close(self) -> None:
        """Close database connection."""
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            self._tx_depth = 0

    def __enter__(self) -> "MetadataDB":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _detect_wal_support(self) -> None:
        """Detect if WAL journal mode is supported."""
        try:
            cursor = self.conn.execute("PRAGMA journal_mode=WAL")  # type: ignore
            result = cursor.fetchone()
            self._wal_mode_supported = result[0].upper() == "WAL"
        except sqlite3.Error:
            self._wal_mode_supported = False

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise DatabaseError("Database not open")
        return self.conn

    def _execute(
        self,
        operation: str,
        sql: str,
        params: Iterable[Any] = (),
        conflict: Optional[str] = None,
    ) -> sqlite3.Cursor:
        """Execute one statement, translating driver errors.

        Args:
            operation: Name of the operation, for logs
            sql: SQL statement
            params: Statement parameters
            conflict: Message for a ConflictError raised on integrity
                violations; integrity violations are upstream errors otherwise

        Raises:
            ConflictError: On a unique constraint violation when ``conflict`` is set
            DatabaseError: On any other SQLite error
        """
        conn = self._require_conn()
        try:
            return conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as e:
            if conflict is not None:
                raise ConflictError(conflict) from e
            raise DatabaseError.from_exception(operation, e) from e
        except sqlite3.Error as e:
            raise DatabaseError.from_exception(operation, e) from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements in one write transaction.

        The write lock is taken immediately (``BEGIN IMMEDIATE``), so reads
        inside the block cannot be invalidated by a concurrent writer before
        the block commits. Nested use joins the outer transaction.

        Raises:
            DatabaseError: If the transaction cannot begin or commit
        """
        conn = self._require_conn()
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield conn
            finally:
                self._tx_depth -= 1
            return

        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise DatabaseError.from_exception("begin transaction", e) from e

        self._tx_depth = 1
        try:
            yield conn
        except BaseException:
            self._tx_depth = 0
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

        self._tx_depth = 0
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise DatabaseError.from_exception("commit transaction", e) from e

    def init_schema(self) -> None:
        """Initialize database schema.

        Creates all tables and indices. Safe to call on existing database
        (uses IF NOT EXISTS).

        Raises:
            DatabaseError: If schema creation fails
        """
        conn = self._require_conn()

        try:
            conn.executescript(f"""
                BEGIN;

                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS {TEAMS_TABLE} (
                    id TEXT PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    created_at TEXT NOT NULL,
                    bandwidth_used_mb REAL NOT NULL DEFAULT 0,
                    storage_used_mb REAL NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS {PROJECTS_TABLE} (
                    id TEXT PRIMARY KEY,
                    team_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    default_branch_id TEXT,
                    storage_grant TEXT,
                    storage_grant_expires_at TEXT,
                    deleted_at TEXT,
                    UNIQUE (team_id, name)
                );

                CREATE TABLE IF NOT EXISTS {BRANCHES_TABLE} (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    commit_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    deleted_at TEXT,
                    UNIQUE (project_id, name)
                );
                CREATE INDEX IF NOT EXISTS idx_branches_project
                ON {BRANCHES_TABLE}(project_id);

                CREATE TABLE IF NOT EXISTS {LOCKS_TABLE} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    branch_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    locked_by TEXT NOT NULL DEFAULT '',
                    locked_at TEXT NOT NULL,
                    UNIQUE (branch_id, path),
                    FOREIGN KEY (branch_id) REFERENCES {BRANCHES_TABLE}(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS {COMMITS_TABLE} (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    branch_id TEXT NOT NULL,
                    idx INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    author_id TEXT NOT NULL DEFAULT '',
                    message TEXT NOT NULL DEFAULT '',
                    created_files TEXT NOT NULL DEFAULT '[]',
                    modified_files TEXT NOT NULL DEFAULT '[]',
                    deleted_files TEXT NOT NULL DEFAULT '[]',
                    files TEXT NOT NULL DEFAULT '{{}}',
                    UNIQUE (branch_id, idx)
                );
                CREATE INDEX IF NOT EXISTS idx_commits_project
                ON {COMMITS_TABLE}(project_id);

                INSERT OR REPLACE INTO metadata (key, value)
                VALUES ('schema_version', '{DB_SCHEMA_VERSION}');

                COMMIT;
            """)
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise DatabaseError.from_exception("initialize schema", e) from e

    def get_schema_version(self) -> int:
        """Get the database schema version (0 if uninitialized)."""
        cursor = self._execute(
            "get schema version",
            "SELECT value FROM metadata WHERE key = 'schema_version'",
        )
        row = cursor.fetchone()
        if row is None:
            return 0
        return int(row[0])

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def insert_team(self, team: Team) -> None:
        self._execute(
            "insert team",
            f"INSERT INTO {TEAMS_TABLE} (id, name, created_at, bandwidth_used_mb, storage_used_mb) "
            "VALUES (?, ?, ?, ?, ?)",
            (team.id, team.name, team.created_at, team.bandwidth_used_mb, team.storage_used_mb),
            conflict=f'Team "{team.name}" already exists',
        )

    def get_team(self, team_id: str) -> Optional[Team]:
        row = self._execute(
            "get team", f"SELECT * FROM {TEAMS_TABLE} WHERE id = ?", (team_id,)
        ).fetchone()
        return Team.from_row(row) if row is not None else None

    def add_team_usage(
        self, team_id: str, bandwidth_mb: float = 0.0, storage_mb: float = 0.0
    ) -> bool:
        """Atomically add to a team's usage counters.

        Returns:
            False if the team does not exist
        """
        cursor = self._execute(
            "update team usage",
            f"UPDATE {TEAMS_TABLE} SET bandwidth_used_mb = bandwidth_used_mb + ?, "
            "storage_used_mb = storage_used_mb + ? WHERE id = ?",
            (bandwidth_mb, storage_mb, team_id),
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def insert_project(self, project: Project) -> None:
        self._execute(
            "insert project",
            f"""
            INSERT INTO {PROJECTS_TABLE}
                (id, team_id, name, created_at, default_branch_id,
                 storage_grant, storage_grant_expires_at, deleted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project.id,
                project.team_id,
                project.name,
                project.created_at,
                project.default_branch_id,
                project.storage_grant,
                project.storage_grant_expires_at,
                project.deleted_at,
            ),
            conflict=f'Project "{project.name}" already exists',
        )

    def get_project(self, project_id: str, include_deleted: bool = False) -> Optional[Project]:
        query = f"SELECT * FROM {PROJECTS_TABLE} WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        row = self._execute("get project", query, (project_id,)).fetchone()
        return Project.from_row(row) if row is not None else None

    def get_project_by_name(self, team_id: str, name: str) -> Optional[Project]:
        row = self._execute(
            "get project by name",
            f"SELECT * FROM {PROJECTS_TABLE} "
            "WHERE team_id = ? AND name = ? AND deleted_at IS NULL",
            (team_id, name),
        ).fetchone()
        return Project.from_row(row) if row is not None else None

    def list_projects(self, team_id: Optional[str] = None) -> List[Project]:
        query = f"SELECT * FROM {PROJECTS_TABLE} WHERE deleted_at IS NULL"
        params: Tuple[Any, ...] = ()
        if team_id is not None:
            query += " AND team_id = ?"
            params = (team_id,)
        query += " ORDER BY created_at, name"
        rows = self._execute("list projects", query, params).fetchall()
        return [Project.from_row(row) for row in rows]

    def update_project(self, project_id: str, fields: Dict[str, Any]) -> bool:
        """Patch mutable project columns.

        Returns:
            False if no live project has this id
        """
        unknown = set(fields) - PROJECT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Not mutable project fields: {sorted(unknown)}")
        if not fields:
            return self.get_project(project_id) is not None

        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor = self._execute(
            "update project",
            f"UPDATE {PROJECTS_TABLE} SET {assignments} WHERE id = ? AND deleted_at IS NULL",
            (*fields.values(), project_id),
            conflict=f'Project "{fields.get("name")}" already exists',
        )
        return cursor.rowcount > 0

    def mark_project_deleted(self, project_id: str, deleted_at: str) -> None:
        self._execute(
            "mark project deleted",
            f"UPDATE {PROJECTS_TABLE} SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
            (deleted_at, project_id),
        )

    def delete_project_row(self, project_id: str) -> int:
        cursor = self._execute(
            "delete project", f"DELETE FROM {PROJECTS_TABLE} WHERE id = ?", (project_id,)
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def insert_branch(self, branch: Branch) -> None:
        self._execute(
            "insert branch",
            f"INSERT INTO {BRANCHES_TABLE} (id, project_id, name, commit_id, created_at, deleted_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                branch.id,
                branch.project_id,
                branch.name,
                branch.commit_id,
                branch.created_at,
                branch.deleted_at,
            ),
            conflict=f'Branch "{branch.name}" already exists',
        )

    def _branch_from_row(self, row: Optional[sqlite3.Row]) -> Optional[Branch]:
        if row is None:
            return None
        return Branch.from_row(row, [lock.path for lock in self.get_locks(row["id"])])

    def get_branch(self, branch_id: str, include_deleted: bool = False) -> Optional[Branch]:
        query = f"SELECT * FROM {BRANCHES_TABLE} WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        return self._branch_from_row(self._execute("get branch", query, (branch_id,)).fetchone())

    def get_branch_by_name(
        self, project_id: str, name: str, include_deleted: bool = False
    ) -> Optional[Branch]:
        query = f"SELECT * FROM {BRANCHES_TABLE} WHERE project_id = ? AND name = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        row = self._execute("get branch by name", query, (project_id, name)).fetchone()
        return self._branch_from_row(row)

    def list_branches(self, project_id: str, include_deleted: bool = False) -> List[Branch]:
        query = f"SELECT * FROM {BRANCHES_TABLE} WHERE project_id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY created_at, name"
        rows = self._execute("list branches", query, (project_id,)).fetchall()
        return [self._branch_from_row(row) for row in rows]  # type: ignore[misc]

    def rename_branch(self, branch_id: str, name: str) -> bool:
        cursor = self._execute(
            "rename branch",
            f"UPDATE {BRANCHES_TABLE} SET name = ? WHERE id = ? AND deleted_at IS NULL",
            (name, branch_id),
            conflict=f'Branch "{name}" already exists',
        )
        return cursor.rowcount > 0

    def set_branch_commit(self, branch_id: str, commit_id: str) -> bool:
        cursor = self._execute(
            "repoint branch",
            f"UPDATE {BRANCHES_TABLE} SET commit_id = ? WHERE id = ?",
            (commit_id, branch_id),
        )
        return cursor.rowcount > 0

    def set_branch_deleted(self, branch_id: str, deleted_at: Optional[str]) -> bool:
        """Soft-delete a branch, or restore it when ``deleted_at`` is None."""
        cursor = self._execute(
            "soft delete branch",
            f"UPDATE {BRANCHES_TABLE} SET deleted_at = ? WHERE id = ?",
            (deleted_at, branch_id),
        )
        return cursor.rowcount > 0

    def delete_branch_row(self, branch_id: str) -> int:
        cursor = self._execute(
            "delete branch", f"DELETE FROM {BRANCHES_TABLE} WHERE id = ?", (branch_id,)
        )
        return cursor.rowcount

    def delete_branches_for_project(self, project_id: str) -> int:
        cursor = self._execute(
            "delete branches",
            f"DELETE FROM {BRANCHES_TABLE} WHERE project_id = ?",
            (project_id,),
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Branch locks
    # ------------------------------------------------------------------

    def add_locks(self, branch_id: str, paths: List[str], locked_by: str, locked_at: str) -> int:
        """Add paths to a branch's lock set; already-locked paths are kept as is.

        Returns:
            Number of newly locked paths
        """
        added = 0
        with self.transaction():
            for path in paths:
                cursor = self._execute(
                    "lock path",
                    f"INSERT OR IGNORE INTO {LOCKS_TABLE} (branch_id, path, locked_by, locked_at) "
                    "VALUES (?, ?, ?, ?)",
                    (branch_id, path, locked_by, locked_at),
                )
                added += cursor.rowcount
        return added

    def remove_locks(self, branch_id: str, paths: List[str]) -> int:
        """Remove paths from a branch's lock set; absent paths are ignored.

        Returns:
            Number of removed locks
        """
        removed = 0
        with self.transaction():
            for path in paths:
                cursor = self._execute(
                    "unlock path",
                    f"DELETE FROM {LOCKS_TABLE} WHERE branch_id = ? AND path = ?",
                    (branch_id, path),
                )
                removed += cursor.rowcount
        return removed

    def remove_locks_under(self, branch_id: str, directory: str) -> int:
        """Remove every lock whose path lies below ``directory``."""
        prefix = directory.rstrip("/") + "/"
        cursor = self._execute(
            "unlock directory",
            f"DELETE FROM {LOCKS_TABLE} WHERE branch_id = ? AND substr(path, 1, ?) = ?",
            (branch_id, len(prefix), prefix),
        )
        return cursor.rowcount

    def get_locks(self, branch_id: str) -> List[Lock]:
        rows = self._execute(
            "get locks",
            f"SELECT path, locked_by, locked_at FROM {LOCKS_TABLE} WHERE branch_id = ? ORDER BY id",
            (branch_id,),
        ).fetchall()
        return [Lock(row["path"], row["locked_by"], row["locked_at"]) for row in rows]

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    def insert_commit(self, commit: Commit) -> None:
        """Insert a new commit record.

        Raises:
            ConflictError: If the branch already has a commit with this index
            DatabaseError: If the insert fails
        """
        self._execute(
            "insert commit",
            f"""
            INSERT INTO {COMMITS_TABLE}
                (id, project_id, branch_id, idx, created_at, author_id, message,
                 created_files, modified_files, deleted_files, files)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                commit.id,
                commit.project_id,
                commit.branch_id,
                commit.index,
                commit.created_at,
                commit.author_id,
                commit.message,
                json.dumps(commit.created_files),
                json.dumps(commit.modified_files),
                json.dumps(commit.deleted_files),
                json.dumps(
                    {path: data.to_dict() for path, data in commit.files.items()},
                    sort_keys=True,
                ),
            ),
            conflict=f"Commit index {commit.index} already exists on branch",
        )

    def get_commit(self, commit_id: str) -> Optional[Commit]:
        row = self._execute(
            "get commit", f"SELECT * FROM {COMMITS_TABLE} WHERE id = ?", (commit_id,)
        ).fetchone()
        return Commit.from_row(row) if row is not None else None

    def get_commit_by_index(
        self, project_id: str, index: int, branch_id: Optional[str] = None
    ) -> Optional[Commit]:
        """Get a commit by index; without a branch the oldest match wins."""
        query = f"SELECT * FROM {COMMITS_TABLE} WHERE project_id = ? AND idx = ?"
        params: Tuple[Any, ...] = (project_id, index)
        if branch_id is not None:
            query += " AND branch_id = ?"
            params += (branch_id,)
        query += " ORDER BY created_at LIMIT 1"
        row = self._execute("get commit by index", query, params).fetchone()
        return Commit.from_row(row) if row is not None else None

    def get_latest_commit(self, branch_id: str) -> Optional[Commit]:
        """Get the highest-index commit recorded for a branch."""
        row = self._execute(
            "get latest commit",
            f"SELECT * FROM {COMMITS_TABLE} WHERE branch_id = ? ORDER BY idx DESC LIMIT 1",
            (branch_id,),
        ).fetchone()
        return Commit.from_row(row) if row is not None else None

    def list_commits(
        self,
        project_id: str,
        branch_id: Optional[str] = None,
        before: Optional[str] = None,
        after: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Commit]:
        """Get commit history in reverse chronological order.

        Args:
            project_id: Project to list
            branch_id: Only commits of this branch
            before: Only commits created before this timestamp
            after: Only commits created after this timestamp
            limit: Maximum number of commits to return
        """
        query = f"SELECT * FROM {COMMITS_TABLE} WHERE project_id = ?"
        params: Tuple[Any, ...] = (project_id,)
        if branch_id is not None:
            query += " AND branch_id = ?"
            params += (branch_id,)
        if before is not None:
            query += " AND created_at < ?"
            params += (before,)
        if after is not None:
            query += " AND created_at > ?"
            params += (after,)
        query += " ORDER BY created_at DESC, idx DESC"
        if limit:
            query += " LIMIT ?"
            params += (int(limit),)
        rows = self._execute("list commits", query, params).fetchall()
        return [Commit.from_row(row) for row in rows]

    def update_commit_fields(self, commit_id: str, fields: Dict[str, Any]) -> bool:
        """Patch mutable commit columns (message and path lists).

        Returns:
            False if the commit does not exist
        """
        unknown = set(fields) - COMMIT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Not mutable commit fields: {sorted(unknown)}")
        if not fields:
            return self.get_commit(commit_id) is not None

        values = [
            json.dumps(value) if column.endswith("_files") else value
            for column, value in fields.items()
        ]
        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor = self._execute(
            "update commit",
            f"UPDATE {COMMITS_TABLE} SET {assignments} WHERE id = ?",
            (*values, commit_id),
        )
        return cursor.rowcount > 0

    def delete_commits_after(self, branch_id: str, index: int) -> int:
        cursor = self._execute(
            "delete commits after index",
            f"DELETE FROM {COMMITS_TABLE} WHERE branch_id = ? AND idx > ?",
            (branch_id, index),
        )
        return cursor.rowcount

    def delete_commits_for_project(self, project_id: str) -> int:
        cursor = self._execute(
            "delete commits",
            f"DELETE FROM {COMMITS_TABLE} WHERE project_id = ?",
            (project_id,),
        )
        return cursor.rowcount

    def iter_commit_file_maps(self, project_id: str) -> Iterator[Dict[str, Any]]:
        """Stream the raw path->file map of every commit in a project.

        The cursor is closed when the generator finishes or is closed early.
        """
        cursor = self._execute(
            "scan commits",
            f"SELECT files FROM {COMMITS_TABLE} WHERE project_id = ?",
            (project_id,),
        )
        try:
            while True:
                try:
                    rows = cursor.fetchmany(500)
                except sqlite3.Error as e:
                    raise DatabaseError.from_exception("scan commits", e) from e
                if not rows:
                    break
                for row in rows:
                    yield json.loads(row["files"] or "{}")
        finally:
            cursor.close()
            logger.trace("Closed commit scan cursor for project {}", project_id)
