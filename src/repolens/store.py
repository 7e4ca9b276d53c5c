"""SQLite document store.

Repositories are rows with a status column (the analysis state machine) and
two JSON documents: repository metadata and the last completed
AnalysisResult. Status changes are single conditional UPDATEs; nested
artifacts (subsystem descriptions, file explanations) are written with
`json_set` so a writer never replaces the whole document.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .errors import NotFoundError, PersistenceError
from .logger import get_logger
from .schema import (
    AnalysisResult,
    CachedDescription,
    ChatMessage,
    ChatSession,
    FileExplanation,
    MessageRole,
    RepoMetadata,
    Repository,
    SubsystemDescription,
    from_iso,
    utcnow,
)

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS repositories (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    status_changed_at TEXT NOT NULL,
    run_id TEXT,
    document TEXT NOT NULL DEFAULT '{}',
    analysis TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS description_cache (
    key TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    generated_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_sessions (
    id TEXT PRIMARY KEY,
    repo_id TEXT NOT NULL,
    client_id TEXT NOT NULL,
    is_current INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    last_updated TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_repo ON chat_sessions(repo_id, client_id, is_current);

CREATE TABLE IF NOT EXISTS chat_messages (
    session_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    PRIMARY KEY (session_id, seq)
);
"""

# Repository fields kept in the JSON document column
_DOCUMENT_FIELDS = (
    "full_name", "description", "stars", "forks", "primary_language",
    "default_branch", "upstream_pushed_at", "last_analyzed", "last_error",
)


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so text comparison orders correctly."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class DocumentStore:
    """Document store over a single sqlite3 connection.

    The connection is shared across threads (calls arrive through
    `asyncio.to_thread` and from the HTTP server); a lock serializes access.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        try:
            if str(db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Autocommit; multi-statement writes open BEGIN IMMEDIATE explicitly
            self._conn = sqlite3.connect(
                str(db_path), isolation_level=None, check_same_thread=False, timeout=30
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open database {db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- Low-level helpers ---

    def _run(self, query: str, params: tuple, fetch: str | None) -> Any:
        with self._lock:
            try:
                cursor = self._conn.execute(query, params)
                if fetch == "one":
                    return cursor.fetchone()
                if fetch == "all":
                    return cursor.fetchall()
                return cursor.rowcount
            except sqlite3.Error as e:
                logger.error("Database error: %s", e)
                raise PersistenceError(f"Database operation failed: {e}") from e

    def _execute(self, query: str, params: tuple = ()) -> int:
        """Run a write; returns the affected row count."""
        return self._run(query, params, None)

    def _fetchone(self, query: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._run(query, params, "one")

    def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._run(query, params, "all")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to begin transaction: {e}") from e
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                logger.error("Database transaction failed: %s", e)
                raise PersistenceError(f"Database transaction failed: {e}") from e
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    # --- Repositories ---

    def find_or_create_repository(self, repo_id: str, owner: str, name: str, url: str) -> Repository:
        """Idempotent: a second call for the same id returns the existing record."""
        now = _ts(utcnow())
        document = json.dumps({"full_name": f"{owner}/{name}"})
        self._execute(
            "INSERT OR IGNORE INTO repositories "
            "(id, owner, name, url, status, status_changed_at, document, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?)",
            (repo_id, owner, name, url, now, document, now, now),
        )
        repo = self.get_repository(repo_id)
        if repo is None:
            raise PersistenceError(f"Repository {repo_id} was not stored")
        return repo

    def get_repository(self, repo_id: str) -> Repository | None:
        row = self._fetchone("SELECT * FROM repositories WHERE id = ?", (repo_id,))
        return _row_to_repository(row) if row else None

    def require_repository(self, repo_id: str) -> Repository:
        repo = self.get_repository(repo_id)
        if repo is None:
            raise NotFoundError(f"Unknown repository: {repo_id}")
        return repo

    def list_repositories(self) -> list[Repository]:
        rows = self._fetchall("SELECT * FROM repositories ORDER BY updated_at DESC")
        return [_row_to_repository(r) for r in rows]

    def get_run_id(self, repo_id: str) -> str | None:
        row = self._fetchone("SELECT run_id FROM repositories WHERE id = ?", (repo_id,))
        return row["run_id"] if row else None

    def status_changed_at(self, repo_id: str) -> datetime | None:
        row = self._fetchone(
            "SELECT status_changed_at FROM repositories WHERE id = ?", (repo_id,)
        )
        return from_iso(row["status_changed_at"]) if row else None

    def claim_analysis(self, repo_id: str, run_id: str, now: datetime, stale_before: datetime) -> bool:
        """Compare-and-swap into `analyzing`. True only for the caller that won."""
        updated = self._execute(
            "UPDATE repositories SET status = 'analyzing', run_id = ?, "
            "status_changed_at = ?, updated_at = ?, "
            "document = json_set(document, '$.last_error', NULL) "
            "WHERE id = ? AND (status != 'analyzing' OR status_changed_at < ?)",
            (run_id, _ts(now), _ts(now), repo_id, _ts(stale_before)),
        )
        return updated == 1

    def complete_analysis(
        self,
        repo_id: str,
        run_id: str,
        analysis: AnalysisResult,
        metadata: RepoMetadata | None,
        now: datetime,
    ) -> bool:
        """Attach the result and mark completed in one statement, if the lease still holds."""
        paths: list[str] = ["$.last_analyzed", "$.last_error"]
        values: list[Any] = [_ts(now), None]
        if metadata:
            meta = metadata.to_dict()
            for field_name, value in (
                ("full_name", meta["full_name"]),
                ("description", meta["description"]),
                ("stars", meta["stars"]),
                ("forks", meta["forks"]),
                ("primary_language", meta["primary_language"]),
                ("default_branch", meta["default_branch"]),
                ("upstream_pushed_at", meta["pushed_at"]),
            ):
                paths.append(f"$.{field_name}")
                values.append(value)

        set_args = ", ".join("?, ?" for _ in paths)
        params: list[Any] = []
        for path, value in zip(paths, values):
            params.extend([path, value])

        updated = self._execute(
            "UPDATE repositories SET status = 'completed', analysis = ?, "
            f"document = json_set(document, {set_args}), "
            "status_changed_at = ?, updated_at = ? "
            "WHERE id = ? AND status = 'analyzing' AND run_id = ?",
            (json.dumps(analysis.to_dict()), *params, _ts(now), _ts(now), repo_id, run_id),
        )
        return updated == 1

    def fail_analysis(self, repo_id: str, run_id: str, message: str, now: datetime) -> bool:
        updated = self._execute(
            "UPDATE repositories SET status = 'failed', "
            "document = json_set(document, '$.last_error', ?), "
            "status_changed_at = ?, updated_at = ? "
            "WHERE id = ? AND status = 'analyzing' AND run_id = ?",
            (message, _ts(now), _ts(now), repo_id, run_id),
        )
        return updated == 1

    # --- Analysis results ---

    def get_analysis(self, repo_id: str) -> AnalysisResult | None:
        """The published result: only visible while status is completed."""
        row = self._fetchone(
            "SELECT analysis FROM repositories WHERE id = ? AND status = 'completed'", (repo_id,)
        )
        if not row or not row["analysis"]:
            return None
        return AnalysisResult.from_dict(json.loads(row["analysis"]))

    def get_last_completed_analysis(self, repo_id: str) -> AnalysisResult | None:
        """Last result ever completed, regardless of current status.

        Used by freshness checks while a new run holds the lease.
        """
        row = self._fetchone("SELECT analysis FROM repositories WHERE id = ?", (repo_id,))
        if not row or not row["analysis"]:
            return None
        return AnalysisResult.from_dict(json.loads(row["analysis"]))

    def upsert_subsystem_description(self, repo_id: str, description: SubsystemDescription) -> bool:
        """Replace or append one description by name inside the stored result."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT json_extract(analysis, '$.subsystem_descriptions') AS descriptions "
                "FROM repositories WHERE id = ? AND status = 'completed' AND analysis IS NOT NULL",
                (repo_id,),
            ).fetchone()
            if row is None:
                return False

            descriptions = json.loads(row["descriptions"] or "[]")
            replaced = False
            for i, existing in enumerate(descriptions):
                if existing.get("name") == description.name:
                    descriptions[i] = description.to_dict()
                    replaced = True
                    break
            if not replaced:
                descriptions.append(description.to_dict())

            conn.execute(
                "UPDATE repositories SET "
                "analysis = json_set(analysis, '$.subsystem_descriptions', json(?)), "
                "updated_at = ? WHERE id = ?",
                (json.dumps(descriptions), _ts(utcnow()), repo_id),
            )
        return True

    def set_file_explanation(self, repo_id: str, key: str, explanation: FileExplanation) -> bool:
        updated = self._execute(
            "UPDATE repositories SET "
            "analysis = json_set(analysis, '$.file_explanations.\"' || ? || '\"', json(?)), "
            "updated_at = ? "
            "WHERE id = ? AND status = 'completed' AND analysis IS NOT NULL",
            (key, json.dumps(explanation.to_dict()), _ts(utcnow()), repo_id),
        )
        return updated == 1

    def set_architecture_description(self, repo_id: str, text: str) -> bool:
        updated = self._execute(
            "UPDATE repositories SET "
            "analysis = json_set(analysis, '$.architecture_description', ?), "
            "updated_at = ? "
            "WHERE id = ? AND status = 'completed' AND analysis IS NOT NULL",
            (text, _ts(utcnow()), repo_id),
        )
        return updated == 1

    # --- Description cache ---

    def get_cached(self, key: str) -> CachedDescription | None:
        row = self._fetchone("SELECT * FROM description_cache WHERE key = ?", (key,))
        if row is None:
            return None
        return CachedDescription(
            key=row["key"],
            content=row["content"],
            generated_at=from_iso(row["generated_at"]),
            expires_at=from_iso(row["expires_at"]),
        )

    def put_cached(self, entry: CachedDescription) -> None:
        self._execute(
            "INSERT INTO description_cache (key, content, generated_at, expires_at) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET content = excluded.content, "
            "generated_at = excluded.generated_at, expires_at = excluded.expires_at",
            (entry.key, entry.content, _ts(entry.generated_at), _ts(entry.expires_at)),
        )

    def delete_cached(self, key: str) -> None:
        self._execute("DELETE FROM description_cache WHERE key = ?", (key,))

    # --- Chat sessions ---

    def get_or_create_session(self, repo_id: str, client_id: str, new_id: str, now: datetime) -> ChatSession:
        """Current session for (repo, client), created with `new_id` if none exists."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM chat_sessions WHERE repo_id = ? AND client_id = ? AND is_current = 1",
                (repo_id, client_id),
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO chat_sessions (id, repo_id, client_id, is_current, created_at, last_updated) "
                    "VALUES (?, ?, ?, 1, ?, ?)",
                    (new_id, repo_id, client_id, _ts(now), _ts(now)),
                )
                row = conn.execute("SELECT * FROM chat_sessions WHERE id = ?", (new_id,)).fetchone()
        return _row_to_session(row)

    def start_new_session(self, repo_id: str, client_id: str, new_id: str, now: datetime) -> ChatSession:
        """Retire the current session for (repo, client) and open a fresh one."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE chat_sessions SET is_current = 0 WHERE repo_id = ? AND client_id = ?",
                (repo_id, client_id),
            )
            conn.execute(
                "INSERT INTO chat_sessions (id, repo_id, client_id, is_current, created_at, last_updated) "
                "VALUES (?, ?, ?, 1, ?, ?)",
                (new_id, repo_id, client_id, _ts(now), _ts(now)),
            )
            row = conn.execute("SELECT * FROM chat_sessions WHERE id = ?", (new_id,)).fetchone()
        return _row_to_session(row)

    def get_session(self, session_id: str) -> ChatSession | None:
        row = self._fetchone("SELECT * FROM chat_sessions WHERE id = ?", (session_id,))
        return _row_to_session(row) if row else None

    def append_message(self, session_id: str, message: ChatMessage) -> None:
        with self._transaction() as conn:
            exists = conn.execute("SELECT 1 FROM chat_sessions WHERE id = ?", (session_id,)).fetchone()
            if not exists:
                raise NotFoundError(f"Unknown chat session: {session_id}")
            seq = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM chat_messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()[0]
            conn.execute(
                "INSERT INTO chat_messages (session_id, seq, id, role, content, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (session_id, seq, message.id, message.role.value, message.content, _ts(message.timestamp)),
            )
            conn.execute(
                "UPDATE chat_sessions SET last_updated = ? WHERE id = ?",
                (_ts(message.timestamp), session_id),
            )

    def load_messages(self, session_id: str, limit: int | None = None) -> list[ChatMessage]:
        """Messages in insertion order; `limit` keeps only the most recent N."""
        if limit is not None:
            rows = self._fetchall(
                "SELECT * FROM (SELECT * FROM chat_messages WHERE session_id = ? "
                "ORDER BY seq DESC LIMIT ?) ORDER BY seq ASC",
                (session_id, max(limit, 0)),
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq ASC", (session_id,)
            )
        return [
            ChatMessage(
                id=r["id"],
                role=MessageRole(r["role"]),
                content=r["content"],
                timestamp=from_iso(r["timestamp"]),
            )
            for r in rows
        ]


def _row_to_repository(row: sqlite3.Row) -> Repository:
    document = json.loads(row["document"] or "{}")
    data = {key: document.get(key) for key in _DOCUMENT_FIELDS if document.get(key) is not None}
    data.update(
        id=row["id"],
        owner=row["owner"],
        name=row["name"],
        url=row["url"],
        analysis_status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
    return Repository.from_dict(data)


def _row_to_session(row: sqlite3.Row) -> ChatSession:
    return ChatSession(
        id=row["id"],
        repo_id=row["repo_id"],
        client_id=row["client_id"],
        created_at=from_iso(row["created_at"]),
        last_updated=from_iso(row["last_updated"]),
    )


