"""SQLite store for the cached upstream resources

Every refreshable table carries a lease (``lease_token``, ``lease_expires_at``).
A refresher claims a row with one conditional UPDATE that only matches when the
row is eligible for refresh and nobody holds an unexpired lease on it; a claim
that matches nothing is the equivalent of ``SELECT ... FOR UPDATE SKIP LOCKED``
returning zero rows. Write-backs are guarded by the lease token, so a refresher
whose lease expired and was taken over can never overwrite the newer result.
"""

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from src.config import config
from src.models.resources import (
    TERMINAL_STATUSES,
    Availability,
    Commit,
    CurrentState,
    IndexInvocation,
    IndexSource,
    InvocationStatus,
    Repository,
    RepositoryDetails,
    RepositoryState,
    Tree,
    TreeEntry,
)
from src.models.upstream import (
    BranchHead,
    InvocationStatusReport,
    RepositoryUnavailable,
    UpstreamRepository,
    UpstreamTree,
)

logger = logging.getLogger(__name__)

REQUIRED_TABLES = frozenset(
    {
        "repositories",
        "repository_details",
        "repository_state",
        "commits",
        "trees",
        "index_sources",
        "index_invocations",
    }
)

_REPOSITORY_COLUMNS = ("name", "available", "fetched_at")
_DETAILS_COLUMNS = (
    "name",
    "description",
    "default_branch",
    "html_url",
    "language",
    "stargazers_count",
    "forks_count",
    "watchers_count",
    "open_issues_count",
    "subscribers_count",
    "fork",
    "private",
    "license_name",
    "created_at",
)
_STATE_COLUMNS = ("repo_name", "latest_commit_sha", "latest_processed_commit_sha", "fetched_at")
_COMMIT_COLUMNS = (
    "sha",
    "repo_name",
    "tree_sha",
    "message",
    "author_name",
    "author_date",
    "html_url",
    "fetched_at",
)
_TREE_COLUMNS = ("tree_sha", "repo_name", "entries", "truncated", "fetched_at")
_SOURCE_COLUMNS = ("id", "repo_name", "source_id", "created_at")
_INVOCATION_COLUMNS = (
    "id",
    "source_id",
    "ref",
    "target_collection_name",
    "invocation_id",
    "status",
    "created_at",
    "fetched_at",
)

_TERMINAL_SQL = ", ".join(f"'{status.value}'" for status in sorted(TERMINAL_STATUSES))
_STATUS_SQL = ", ".join(f"'{status.value}'" for status in InvocationStatus)


class StoreIntegrityError(Exception):
    """Raised when the database is missing required tables"""

    pass


class _LeaseLost(Exception):
    """Internal signal that a guarded write-back no longer owns its lease"""


def _select(alias: str, columns: tuple[str, ...]) -> str:
    return ", ".join(f"{alias}.{column} AS {alias}_{column}" for column in columns)


def _slice(row: sqlite3.Row, alias: str, columns: tuple[str, ...]) -> dict | None:
    """Pull one table's columns out of a joined row; None when the join missed"""
    values = {column: row[f"{alias}_{column}"] for column in columns}
    if values[columns[0]] is None:
        return None
    return values


def _to_datetime(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _repository_from(values: dict, details: dict | None) -> Repository:
    if values["available"] is None:
        availability = Availability.UNFETCHED
    elif values["available"]:
        availability = Availability.AVAILABLE
    else:
        availability = Availability.UNAVAILABLE

    repo_details = None
    if details is not None:
        repo_details = RepositoryDetails(
            description=details["description"],
            default_branch=details["default_branch"],
            html_url=details["html_url"],
            language=details["language"],
            stargazers_count=details["stargazers_count"],
            forks_count=details["forks_count"],
            watchers_count=details["watchers_count"],
            open_issues_count=details["open_issues_count"],
            subscribers_count=details["subscribers_count"],
            fork=bool(details["fork"]),
            private=bool(details["private"]),
            license_name=details["license_name"],
            created_at=_to_datetime(details["created_at"]),
        )

    return Repository(
        name=values["name"],
        availability=availability,
        fetched_at=_to_datetime(values["fetched_at"]),
        details=repo_details,
    )


def _state_from(values: dict) -> RepositoryState:
    return RepositoryState(
        repo_name=values["repo_name"],
        latest_commit_sha=values["latest_commit_sha"],
        latest_processed_commit_sha=values["latest_processed_commit_sha"],
        fetched_at=_to_datetime(values["fetched_at"]),
    )


def _commit_from(values: dict) -> Commit:
    return Commit(
        sha=values["sha"],
        repo_name=values["repo_name"],
        tree_sha=values["tree_sha"],
        message=values["message"],
        author_name=values["author_name"],
        author_date=(
            datetime.fromisoformat(values["author_date"]) if values["author_date"] else None
        ),
        html_url=values["html_url"],
        fetched_at=_to_datetime(values["fetched_at"]),
    )


def _tree_from(values: dict) -> Tree:
    entries = None
    if values["entries"] is not None:
        entries = [TreeEntry(**entry) for entry in json.loads(values["entries"])]
    return Tree(
        tree_sha=values["tree_sha"],
        repo_name=values["repo_name"],
        entries=entries,
        truncated=bool(values["truncated"]),
        fetched_at=_to_datetime(values["fetched_at"]),
    )


def _source_from(values: dict) -> IndexSource:
    return IndexSource(
        id=values["id"],
        repo_name=values["repo_name"],
        source_id=values["source_id"],
        created_at=_to_datetime(values["created_at"]),
    )


def _invocation_from(values: dict) -> IndexInvocation:
    return IndexInvocation(
        id=values["id"],
        source_id=values["source_id"],
        ref=values["ref"],
        target_collection_name=values["target_collection_name"],
        invocation_id=values["invocation_id"],
        status=InvocationStatus(values["status"]),
        created_at=_to_datetime(values["created_at"]),
        fetched_at=_to_datetime(values["fetched_at"]),
    )


class ResourceStore:
    """SQLite-backed store for repositories, commits, trees and index registrations"""

    def __init__(
        self,
        db_path: str | None = None,
        lease_seconds: float | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.db_path = db_path or config.db_path
        self.lease_seconds = lease_seconds or config.refresh_lease_seconds
        self._clock = clock or time.time
        # For :memory: databases, we need to keep a persistent connection
        # because each connection gets a separate in-memory database
        self._memory_conn: sqlite3.Connection | None = None

    def now(self) -> float:
        """Current time in epoch seconds, as seen by this store"""
        return self._clock()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Create and configure a new database connection

        For :memory: databases, returns the persistent connection.
        For file databases, creates a new connection.
        """
        if self.db_path == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = sqlite3.connect(self.db_path)
                self._memory_conn.row_factory = sqlite3.Row
                self._memory_conn.execute("PRAGMA foreign_keys = ON")
            return self._memory_conn

        conn = sqlite3.connect(self.db_path, timeout=config.db_busy_timeout_seconds)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            yield conn
        finally:
            # Never close :memory: connections (they're persistent)
            if self.db_path != ":memory:":
                conn.close()

    async def initialize(self) -> None:
        """Create the database file and schema if they do not exist"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(f"""
                CREATE TABLE IF NOT EXISTS repositories (
                    name TEXT PRIMARY KEY,
                    -- NULL = not fetched yet, 1 = available, 0 = not found or inaccessible
                    available INTEGER CHECK (available IN (0, 1)),
                    fetched_at REAL,
                    lease_token TEXT,
                    lease_expires_at REAL
                );

                CREATE TABLE IF NOT EXISTS repository_details (
                    name TEXT PRIMARY KEY REFERENCES repositories(name) ON DELETE CASCADE,
                    description TEXT NOT NULL,
                    default_branch TEXT NOT NULL,
                    html_url TEXT NOT NULL,
                    language TEXT NOT NULL,
                    stargazers_count INTEGER NOT NULL,
                    forks_count INTEGER NOT NULL,
                    watchers_count INTEGER NOT NULL,
                    open_issues_count INTEGER NOT NULL,
                    subscribers_count INTEGER NOT NULL,
                    fork INTEGER NOT NULL,
                    private INTEGER NOT NULL,
                    license_name TEXT,
                    created_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS commits (
                    sha TEXT PRIMARY KEY,
                    repo_name TEXT NOT NULL REFERENCES repositories(name) ON DELETE CASCADE,
                    tree_sha TEXT NOT NULL,
                    message TEXT NOT NULL,
                    author_name TEXT,
                    author_date TEXT,
                    html_url TEXT NOT NULL,
                    fetched_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_commits_repo_name ON commits(repo_name);

                CREATE TABLE IF NOT EXISTS repository_state (
                    repo_name TEXT PRIMARY KEY REFERENCES repositories(name) ON DELETE CASCADE,
                    latest_commit_sha TEXT REFERENCES commits(sha),
                    latest_processed_commit_sha TEXT REFERENCES commits(sha),
                    fetched_at REAL,
                    lease_token TEXT,
                    lease_expires_at REAL
                );

                CREATE TABLE IF NOT EXISTS trees (
                    tree_sha TEXT PRIMARY KEY,
                    repo_name TEXT NOT NULL REFERENCES repositories(name) ON DELETE CASCADE,
                    entries TEXT,
                    truncated INTEGER NOT NULL DEFAULT 0,
                    fetched_at REAL,
                    lease_token TEXT,
                    lease_expires_at REAL
                );

                CREATE INDEX IF NOT EXISTS idx_trees_repo_name ON trees(repo_name);

                CREATE TABLE IF NOT EXISTS index_sources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_name TEXT NOT NULL UNIQUE
                        REFERENCES repositories(name) ON DELETE CASCADE,
                    source_id TEXT UNIQUE,
                    created_at REAL NOT NULL,
                    lease_token TEXT,
                    lease_expires_at REAL
                );

                CREATE TABLE IF NOT EXISTS index_invocations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id TEXT NOT NULL REFERENCES index_sources(source_id) ON DELETE CASCADE,
                    ref TEXT NOT NULL,
                    target_collection_name TEXT NOT NULL,
                    invocation_id TEXT UNIQUE,
                    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ({_STATUS_SQL})),
                    created_at REAL NOT NULL,
                    fetched_at REAL,
                    lease_token TEXT,
                    lease_expires_at REAL,
                    UNIQUE (source_id, ref)
                );

                CREATE INDEX IF NOT EXISTS idx_index_invocations_ref ON index_invocations(ref);
            """)
            conn.commit()

        logger.info(f"Resource store initialized: {self.db_path}")

    def check_integrity(self) -> bool:
        """
        Verify the database is readable and has every required table

        Raises:
            StoreIntegrityError: If the integrity check fails or tables are missing
        """
        with self._connect() as conn:
            result = conn.execute("PRAGMA integrity_check").fetchone()
            if not result or result[0] != "ok":
                raise StoreIntegrityError(f"Database integrity check failed: {result}")

            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            missing = REQUIRED_TABLES - {row[0] for row in rows}
            if missing:
                raise StoreIntegrityError(f"Missing required tables: {sorted(missing)}")

        return True

    async def health_check(self) -> bool:
        """Return True when the store is usable"""
        try:
            return self.check_integrity()
        except (StoreIntegrityError, sqlite3.Error) as e:
            logger.error(f"Resource store health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def _claim(self, table: str, where: str, params: tuple) -> str | None:
        """
        Take the refresh lease on the row matched by ``where``

        Returns the lease token, or None when the row is ineligible or another
        worker holds an unexpired lease. Never waits on the other worker.
        """
        now = self.now()
        token = uuid4().hex
        with self._connect() as conn:
            with conn:
                cursor = conn.execute(
                    f"UPDATE {table} SET lease_token = ?, lease_expires_at = ? "
                    f"WHERE ({where}) AND (lease_expires_at IS NULL OR lease_expires_at <= ?)",
                    (token, now + self.lease_seconds, *params, now),
                )
                claimed = cursor.rowcount == 1
        return token if claimed else None

    def _release(self, table: str, where: str, params: tuple, token: str) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute(
                    f"UPDATE {table} SET lease_token = NULL, lease_expires_at = NULL "
                    f"WHERE ({where}) AND lease_token = ?",
                    (*params, token),
                )

    @staticmethod
    def _guard(cursor: sqlite3.Cursor) -> None:
        if cursor.rowcount != 1:
            raise _LeaseLost()

    # ------------------------------------------------------------------
    # Repository
    # ------------------------------------------------------------------

    async def ensure_repository(self, name: str) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute("INSERT OR IGNORE INTO repositories (name) VALUES (?)", (name,))

    async def claim_repository(self, name: str, ttl: float, force: bool = False) -> str | None:
        return self._claim(
            "repositories",
            "name = ? AND (? OR available IS NULL OR fetched_at IS NULL OR fetched_at < ?)",
            (name, force, self.now() - ttl),
        )

    async def release_repository(self, name: str, token: str) -> None:
        self._release("repositories", "name = ?", (name,), token)

    async def complete_repository(
        self,
        name: str,
        token: str,
        fetched: UpstreamRepository | RepositoryUnavailable,
    ) -> bool:
        """Write a fetched repository (or its absence) and release the lease"""
        now = self.now()
        available = isinstance(fetched, UpstreamRepository)
        try:
            with self._connect() as conn:
                with conn:
                    self._guard(
                        conn.execute(
                            "UPDATE repositories SET available = ?, "
                            "fetched_at = MAX(COALESCE(fetched_at, 0), ?), "
                            "lease_token = NULL, lease_expires_at = NULL "
                            "WHERE name = ? AND lease_token = ?",
                            (int(available), now, name, token),
                        )
                    )
                    if available:
                        details = fetched.details
                        conn.execute(
                            f"""
                            INSERT INTO repository_details ({", ".join(_DETAILS_COLUMNS)})
                            VALUES ({", ".join("?" for _ in _DETAILS_COLUMNS)})
                            ON CONFLICT (name) DO UPDATE SET
                                {", ".join(f"{c} = excluded.{c}" for c in _DETAILS_COLUMNS[1:])}
                            """,
                            (
                                name,
                                details.description,
                                details.default_branch,
                                details.html_url,
                                details.language,
                                details.stargazers_count,
                                details.forks_count,
                                details.watchers_count,
                                details.open_issues_count,
                                details.subscribers_count,
                                int(details.fork),
                                int(details.private),
                                details.license_name,
                                now,
                            ),
                        )
                    else:
                        conn.execute("DELETE FROM repository_details WHERE name = ?", (name,))
        except _LeaseLost:
            logger.warning(f"Lease on repository {name} was lost; discarding fetched result")
            return False
        return True

    async def get_repository(self, name: str) -> Repository | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_select("r", _REPOSITORY_COLUMNS)}, {_select("d", _DETAILS_COLUMNS)}
                FROM repositories r
                LEFT JOIN repository_details d ON d.name = r.name
                WHERE r.name = ?
                """,
                (name,),
            ).fetchone()
        if row is None:
            return None
        return _repository_from(
            _slice(row, "r", _REPOSITORY_COLUMNS), _slice(row, "d", _DETAILS_COLUMNS)
        )

    # ------------------------------------------------------------------
    # Repository state and commits
    # ------------------------------------------------------------------

    async def ensure_repository_state(self, repo_name: str) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO repository_state (repo_name) VALUES (?)", (repo_name,)
                )

    async def claim_repository_state(
        self, repo_name: str, ttl: float, force: bool = False
    ) -> str | None:
        return self._claim(
            "repository_state",
            "repo_name = ? AND (? OR fetched_at IS NULL OR fetched_at < ?)",
            (repo_name, force, self.now() - ttl),
        )

    async def release_repository_state(self, repo_name: str, token: str) -> None:
        self._release("repository_state", "repo_name = ?", (repo_name,), token)

    async def complete_repository_state(
        self, repo_name: str, token: str, head: BranchHead | None
    ) -> bool:
        """
        Record the branch HEAD and release the lease

        A missing branch is recorded by bumping the timestamp while keeping the
        previous commit pointer, so it is not re-fetched until the TTL elapses.
        """
        now = self.now()
        try:
            with self._connect() as conn:
                with conn:
                    if head is not None:
                        conn.execute(
                            """
                            INSERT INTO commits
                                (sha, repo_name, tree_sha, message, author_name,
                                 author_date, html_url, fetched_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                            ON CONFLICT (sha) DO UPDATE SET
                                fetched_at = MAX(commits.fetched_at, excluded.fetched_at)
                            """,
                            (
                                head.sha,
                                repo_name,
                                head.tree_sha,
                                head.message,
                                head.author_name,
                                head.author_date.isoformat() if head.author_date else None,
                                head.html_url,
                                now,
                            ),
                        )
                    self._guard(
                        conn.execute(
                            "UPDATE repository_state SET "
                            "latest_commit_sha = COALESCE(?, latest_commit_sha), "
                            "fetched_at = MAX(COALESCE(fetched_at, 0), ?), "
                            "lease_token = NULL, lease_expires_at = NULL "
                            "WHERE repo_name = ? AND lease_token = ?",
                            (head.sha if head else None, now, repo_name, token),
                        )
                    )
        except _LeaseLost:
            logger.warning(f"Lease on state of {repo_name} was lost; discarding fetched HEAD")
            return False
        return True

    async def get_repository_state(self, repo_name: str) -> RepositoryState | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_select('s', _STATE_COLUMNS)} FROM repository_state s "
                "WHERE s.repo_name = ?",
                (repo_name,),
            ).fetchone()
        if row is None:
            return None
        return _state_from(_slice(row, "s", _STATE_COLUMNS))

    async def get_latest_commit(self, repo_name: str) -> Commit | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_select("c", _COMMIT_COLUMNS)}
                FROM repository_state s
                JOIN commits c ON c.sha = s.latest_commit_sha
                WHERE s.repo_name = ?
                """,
                (repo_name,),
            ).fetchone()
        if row is None:
            return None
        return _commit_from(_slice(row, "c", _COMMIT_COLUMNS))

    async def get_commit(self, sha: str) -> Commit | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_select('c', _COMMIT_COLUMNS)} FROM commits c WHERE c.sha = ?", (sha,)
            ).fetchone()
        if row is None:
            return None
        return _commit_from(_slice(row, "c", _COMMIT_COLUMNS))

    # ------------------------------------------------------------------
    # Trees
    # ------------------------------------------------------------------

    async def ensure_tree(self, tree_sha: str, repo_name: str) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO trees (tree_sha, repo_name) VALUES (?, ?)",
                    (tree_sha, repo_name),
                )

    async def claim_tree(self, tree_sha: str, ttl: float, force: bool = False) -> str | None:
        # A stored tree is content-addressed and never re-fetched
        return self._claim(
            "trees",
            "tree_sha = ? AND entries IS NULL AND (? OR fetched_at IS NULL OR fetched_at < ?)",
            (tree_sha, force, self.now() - ttl),
        )

    async def release_tree(self, tree_sha: str, token: str) -> None:
        self._release("trees", "tree_sha = ?", (tree_sha,), token)

    async def complete_tree(self, tree_sha: str, token: str, fetched: UpstreamTree | None) -> bool:
        now = self.now()
        entries = None
        if fetched is not None:
            entries = json.dumps([entry.model_dump() for entry in fetched.entries])
        try:
            with self._connect() as conn:
                with conn:
                    self._guard(
                        conn.execute(
                            "UPDATE trees SET entries = COALESCE(entries, ?), truncated = ?, "
                            "fetched_at = MAX(COALESCE(fetched_at, 0), ?), "
                            "lease_token = NULL, lease_expires_at = NULL "
                            "WHERE tree_sha = ? AND lease_token = ?",
                            (
                                entries,
                                int(fetched.truncated) if fetched else 0,
                                now,
                                tree_sha,
                                token,
                            ),
                        )
                    )
        except _LeaseLost:
            logger.warning(f"Lease on tree {tree_sha} was lost; discarding fetched tree")
            return False
        return True

    async def get_tree(self, tree_sha: str) -> Tree | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_select('t', _TREE_COLUMNS)} FROM trees t WHERE t.tree_sha = ?",
                (tree_sha,),
            ).fetchone()
        if row is None:
            return None
        return _tree_from(_slice(row, "t", _TREE_COLUMNS))

    # ------------------------------------------------------------------
    # Index sources
    # ------------------------------------------------------------------

    async def ensure_source(self, repo_name: str) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO index_sources (repo_name, created_at) VALUES (?, ?)",
                    (repo_name, self.now()),
                )

    async def claim_source(self, repo_name: str) -> str | None:
        return self._claim("index_sources", "repo_name = ? AND source_id IS NULL", (repo_name,))

    async def release_source(self, repo_name: str, token: str) -> None:
        self._release("index_sources", "repo_name = ?", (repo_name,), token)

    async def complete_source(self, repo_name: str, token: str, source_id: str) -> bool:
        try:
            with self._connect() as conn:
                with conn:
                    self._guard(
                        conn.execute(
                            "UPDATE index_sources SET source_id = ?, "
                            "lease_token = NULL, lease_expires_at = NULL "
                            "WHERE repo_name = ? AND source_id IS NULL AND lease_token = ?",
                            (source_id, repo_name, token),
                        )
                    )
        except _LeaseLost:
            logger.warning(
                f"Lease on index source of {repo_name} was lost; remote source {source_id} "
                "is orphaned"
            )
            return False
        return True

    async def get_source(self, repo_name: str) -> IndexSource | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_select('src', _SOURCE_COLUMNS)} FROM index_sources src "
                "WHERE src.repo_name = ?",
                (repo_name,),
            ).fetchone()
        if row is None:
            return None
        return _source_from(_slice(row, "src", _SOURCE_COLUMNS))

    # ------------------------------------------------------------------
    # Index invocations
    # ------------------------------------------------------------------

    async def ensure_invocation(self, source_id: str, ref: str, collection_name: str) -> None:
        """Insert a placeholder; an existing row keeps its own collection name"""
        with self._connect() as conn:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO index_invocations "
                    "(source_id, ref, target_collection_name, status, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (source_id, ref, collection_name, InvocationStatus.PENDING.value, self.now()),
                )

    async def claim_invocation_registration(self, source_id: str, ref: str) -> str | None:
        return self._claim(
            "index_invocations",
            "source_id = ? AND ref = ? AND invocation_id IS NULL",
            (source_id, ref),
        )

    async def claim_invocation_status(
        self, row_id: int, ttl: float, force: bool = False
    ) -> str | None:
        # Terminal statuses are absorbing, even for forced refreshes
        return self._claim(
            "index_invocations",
            f"id = ? AND invocation_id IS NOT NULL AND status NOT IN ({_TERMINAL_SQL}) "
            "AND (? OR fetched_at IS NULL OR fetched_at < ?)",
            (row_id, force, self.now() - ttl),
        )

    async def release_invocation(self, row_id: int, token: str) -> None:
        self._release("index_invocations", "id = ?", (row_id,), token)

    async def complete_invocation_registration(
        self, row_id: int, token: str, invocation_id: str
    ) -> bool:
        now = self.now()
        try:
            with self._connect() as conn:
                with conn:
                    self._guard(
                        conn.execute(
                            "UPDATE index_invocations SET invocation_id = ?, "
                            "fetched_at = MAX(COALESCE(fetched_at, 0), ?), "
                            "lease_token = NULL, lease_expires_at = NULL "
                            "WHERE id = ? AND invocation_id IS NULL AND lease_token = ?",
                            (invocation_id, now, row_id, token),
                        )
                    )
        except _LeaseLost:
            logger.warning(
                f"Lease on invocation row {row_id} was lost; remote invocation "
                f"{invocation_id} is orphaned"
            )
            return False
        return True

    async def complete_invocation_status(
        self, row_id: int, token: str, report: InvocationStatusReport
    ) -> bool:
        """
        Store a fetched invocation status and release the lease

        When the status is ``completed``, the owning repository's processed
        commit pointer is advanced to the invocation's ref in the same
        transaction, unless a later-created invocation already completed.
        """
        now = self.now()
        try:
            with self._connect() as conn:
                with conn:
                    self._guard(
                        conn.execute(
                            "UPDATE index_invocations SET status = ?, "
                            "fetched_at = MAX(COALESCE(fetched_at, 0), ?), "
                            "lease_token = NULL, lease_expires_at = NULL "
                            "WHERE id = ? AND lease_token = ?",
                            (report.status.value, now, row_id, token),
                        )
                    )
                    if report.status == InvocationStatus.COMPLETED:
                        conn.execute(
                            """
                            UPDATE repository_state
                            SET latest_processed_commit_sha = (
                                SELECT ref FROM index_invocations WHERE id = :id
                            )
                            WHERE repo_name = (
                                SELECT src.repo_name
                                FROM index_invocations i
                                JOIN index_sources src ON src.source_id = i.source_id
                                WHERE i.id = :id
                            )
                            AND NOT EXISTS (
                                SELECT 1
                                FROM index_invocations mine
                                JOIN index_invocations later
                                    ON later.source_id = mine.source_id
                                WHERE mine.id = :id
                                  AND later.id != mine.id
                                  AND later.status = 'completed'
                                  AND (later.created_at > mine.created_at
                                       OR (later.created_at = mine.created_at
                                           AND later.id > mine.id))
                            )
                            """,
                            {"id": row_id},
                        )
        except _LeaseLost:
            logger.warning(f"Lease on invocation row {row_id} was lost; discarding status")
            return False
        return True

    async def get_invocation(self, source_id: str, ref: str) -> IndexInvocation | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_select('i', _INVOCATION_COLUMNS)} FROM index_invocations i "
                "WHERE i.source_id = ? AND i.ref = ?",
                (source_id, ref),
            ).fetchone()
        if row is None:
            return None
        return _invocation_from(_slice(row, "i", _INVOCATION_COLUMNS))

    async def get_invocation_by_id(self, row_id: int) -> IndexInvocation | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_select('i', _INVOCATION_COLUMNS)} FROM index_invocations i "
                "WHERE i.id = ?",
                (row_id,),
            ).fetchone()
        if row is None:
            return None
        return _invocation_from(_slice(row, "i", _INVOCATION_COLUMNS))

    async def list_stale_invocations(self, ttl: float) -> list[IndexInvocation]:
        """Registered, non-terminal invocations whose status is older than ``ttl``"""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_select("i", _INVOCATION_COLUMNS)}
                FROM index_invocations i
                WHERE i.invocation_id IS NOT NULL
                  AND i.status NOT IN ({_TERMINAL_SQL})
                  AND (i.fetched_at IS NULL OR i.fetched_at < ?)
                ORDER BY i.created_at
                """,
                (self.now() - ttl,),
            ).fetchall()
        return [_invocation_from(_slice(row, "i", _INVOCATION_COLUMNS)) for row in rows]

    # ------------------------------------------------------------------
    # Aggregated reads
    # ------------------------------------------------------------------

    async def read_current_state(self, repo_name: str) -> CurrentState:
        """Read every resource kind for one repository in a single query"""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT
                    {_select("r", _REPOSITORY_COLUMNS)},
                    {_select("d", _DETAILS_COLUMNS)},
                    {_select("s", _STATE_COLUMNS)},
                    {_select("c", _COMMIT_COLUMNS)},
                    {_select("pc", _COMMIT_COLUMNS)},
                    {_select("t", _TREE_COLUMNS)},
                    {_select("src", _SOURCE_COLUMNS)},
                    {_select("i", _INVOCATION_COLUMNS)}
                FROM repositories r
                LEFT JOIN repository_details d ON d.name = r.name
                LEFT JOIN repository_state s ON s.repo_name = r.name
                LEFT JOIN commits c ON c.sha = s.latest_commit_sha
                LEFT JOIN commits pc ON pc.sha = s.latest_processed_commit_sha
                LEFT JOIN trees t ON t.tree_sha = c.tree_sha
                LEFT JOIN index_sources src ON src.repo_name = r.name
                LEFT JOIN index_invocations i
                    ON i.source_id = src.source_id AND i.ref = c.sha
                WHERE r.name = ?
                """,
                (repo_name,),
            ).fetchone()

        if row is None:
            return CurrentState()

        repository = _slice(row, "r", _REPOSITORY_COLUMNS)
        state = _slice(row, "s", _STATE_COLUMNS)
        latest_commit = _slice(row, "c", _COMMIT_COLUMNS)
        processed_commit = _slice(row, "pc", _COMMIT_COLUMNS)
        tree = _slice(row, "t", _TREE_COLUMNS)
        source = _slice(row, "src", _SOURCE_COLUMNS)
        invocation = _slice(row, "i", _INVOCATION_COLUMNS)

        return CurrentState(
            repository=_repository_from(repository, _slice(row, "d", _DETAILS_COLUMNS)),
            state=_state_from(state) if state else None,
            latest_commit=_commit_from(latest_commit) if latest_commit else None,
            latest_processed_commit=_commit_from(processed_commit) if processed_commit else None,
            tree=_tree_from(tree) if tree else None,
            source=_source_from(source) if source else None,
            invocation=_invocation_from(invocation) if invocation else None,
        )

    async def read_completed_snapshot(
        self, repo_name: str
    ) -> tuple[IndexInvocation, Commit | None, Tree | None] | None:
        """The completed invocation behind ``latest_processed_commit_sha``, if any"""
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT
                    {_select("i", _INVOCATION_COLUMNS)},
                    {_select("c", _COMMIT_COLUMNS)},
                    {_select("t", _TREE_COLUMNS)}
                FROM repository_state s
                JOIN index_sources src ON src.repo_name = s.repo_name
                JOIN index_invocations i
                    ON i.source_id = src.source_id
                   AND i.ref = s.latest_processed_commit_sha
                   AND i.status = 'completed'
                LEFT JOIN commits c ON c.sha = i.ref
                LEFT JOIN trees t ON t.tree_sha = c.tree_sha
                WHERE s.repo_name = ?
                """,
                (repo_name,),
            ).fetchone()

        if row is None:
            return None

        commit = _slice(row, "c", _COMMIT_COLUMNS)
        tree = _slice(row, "t", _TREE_COLUMNS)
        return (
            _invocation_from(_slice(row, "i", _INVOCATION_COLUMNS)),
            _commit_from(commit) if commit else None,
            _tree_from(tree) if tree else None,
        )

    def close(self) -> None:
        """Close the persistent in-memory connection, if any"""
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
