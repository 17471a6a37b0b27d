"""SQLite index over artifact collections.

Artifacts are indexed by sha256 content hash, and small text artifacts have
their content stored for substring search.
"""
import hashlib
import json
import mimetypes
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rigging.artifacts.collector import iter_artifact_files
from rigging.core.errors import ArtifactError
from rigging.core.logger import get_logger

logger = get_logger(__name__)

DATABASE_FILE = "artifacts.db"
SCHEMA_VERSION = 1
MAX_INDEXED_BYTES = 1024 * 1024
TEXT_SUFFIXES = {".txt", ".log", ".json", ".yaml", ".yml", ".conf", ".cfg", ".ini", ".md"}

SCHEMA = """
CREATE TABLE IF NOT EXISTS collections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT UNIQUE NOT NULL,
    environment_name TEXT NOT NULL,
    success INTEGER,
    duration REAL,
    total_size INTEGER DEFAULT 0,
    artifact_count INTEGER DEFAULT 0,
    collection_dir TEXT,
    created_at TEXT NOT NULL,
    metadata TEXT
);

CREATE TABLE IF NOT EXISTS artifacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    collection_id INTEGER NOT NULL,
    artifact_type TEXT NOT NULL,
    name TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_size INTEGER DEFAULT 0,
    content_type TEXT,
    content_hash TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (collection_id) REFERENCES collections(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS artifact_content (
    artifact_id INTEGER PRIMARY KEY,
    collection_id INTEGER NOT NULL,
    content TEXT,
    FOREIGN KEY (artifact_id) REFERENCES artifacts(id) ON DELETE CASCADE,
    FOREIGN KEY (collection_id) REFERENCES collections(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS collection_tags (
    collection_id INTEGER NOT NULL,
    tag TEXT NOT NULL,
    PRIMARY KEY (collection_id, tag),
    FOREIGN KEY (collection_id) REFERENCES collections(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS schema_info (version INTEGER NOT NULL);

CREATE INDEX IF NOT EXISTS idx_collections_created_at ON collections(created_at);
CREATE INDEX IF NOT EXISTS idx_collections_environment ON collections(environment_name);
CREATE INDEX IF NOT EXISTS idx_artifacts_collection ON artifacts(collection_id);
CREATE INDEX IF NOT EXISTS idx_artifacts_hash ON artifacts(content_hash);
"""


def content_hash(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _content_type(path: Path) -> str:
    if path.suffix in TEXT_SUFFIXES:
        return "text/plain"
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


class ArtifactRepository:
    """Queryable index of stored collections."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self.db_file = self.path / DATABASE_FILE
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_file), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_db()

    def _init_db(self):
        with self._lock, self.conn:
            self.conn.executescript(SCHEMA)
            if self.conn.execute("SELECT COUNT(*) FROM schema_info").fetchone()[0] == 0:
                self.conn.execute("INSERT INTO schema_info (version) VALUES (?)", (SCHEMA_VERSION,))

    def close(self):
        self.conn.close()

    # Writing

    def store(self, metadata: Dict[str, Any], collection_dir: Optional[Path] = None) -> int:
        """Index a collection and every artifact file it lists.

        Args:
            metadata: Collection metadata as produced by ArtifactCollector.collect
            collection_dir: Directory holding the collection

        Returns:
            Repository id of the collection
        """
        created_at = metadata.get('timestamp') or datetime.now().isoformat()
        files = list(iter_artifact_files(metadata.get('artifacts', {})))

        with self._lock, self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO collections (session_id, environment_name, success, duration,
                    total_size, artifact_count, collection_dir, created_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    metadata['session_id'],
                    metadata['environment'],
                    int(bool(metadata.get('success'))),
                    metadata.get('duration', 0.0),
                    metadata.get('total_size', 0),
                    len(files),
                    str(collection_dir) if collection_dir else None,
                    created_at,
                    json.dumps(metadata, default=str),
                ),
            )
            collection_id = cursor.lastrowid
            for artifact_type, name, path in files:
                self._insert_artifact(collection_id, artifact_type, name, path, created_at)

        logger.debug(f"Stored collection {metadata['session_id']} with {len(files)} artifacts")
        return collection_id

    def _insert_artifact(self, collection_id: int, artifact_type: str, name: str, path: Path, created_at: str):
        kind = _content_type(path)
        size = path.stat().st_size
        cursor = self.conn.execute(
            """
            INSERT INTO artifacts (collection_id, artifact_type, name, file_path, file_size,
                content_type, content_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (collection_id, artifact_type, name, str(path), size, kind, content_hash(path), created_at),
        )
        if kind.startswith("text/") and size <= MAX_INDEXED_BYTES:
            self.conn.execute(
                "INSERT INTO artifact_content (artifact_id, collection_id, content) VALUES (?, ?, ?)",
                (cursor.lastrowid, collection_id, path.read_text(errors="replace")),
            )

    def tag_collection(self, collection_id: int, tags: List[str]) -> None:
        with self._lock, self.conn:
            self.conn.executemany(
                "INSERT OR IGNORE INTO collection_tags (collection_id, tag) VALUES (?, ?)",
                [(collection_id, tag) for tag in tags],
            )

    def delete_collection(self, collection_id: int) -> bool:
        with self._lock, self.conn:
            cursor = self.conn.execute("DELETE FROM collections WHERE id = ?", (collection_id,))
        return cursor.rowcount > 0

    # Reading

    def get_collection(self, collection_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM collections WHERE id = ?", (collection_id,)).fetchone()
        return self._format_collection(row) if row else None

    def get_by_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM collections WHERE session_id = ?", (session_id,)).fetchone()
        return self._format_collection(row) if row else None

    def find_collections(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        where, params = _collection_filters(filters or {})
        rows = self.conn.execute(
            f"SELECT c.* FROM collections c WHERE {where} ORDER BY c.created_at DESC, c.id DESC",
            params,
        ).fetchall()
        return [self._format_collection(row) for row in rows]

    def find_artifacts(self, collection_id: Optional[int] = None,
                       filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = dict(filters or {})
        clauses, params = [], []
        if collection_id is not None:
            clauses.append("collection_id = ?")
            params.append(collection_id)
        for column in ("artifact_type", "content_type", "content_hash"):
            if filters.get(column):
                clauses.append(f"{column} = ?")
                params.append(filters[column])
        where = " AND ".join(clauses) or "1=1"
        rows = self.conn.execute(f"SELECT * FROM artifacts WHERE {where} ORDER BY id", params).fetchall()
        return [dict(row) for row in rows]

    def search(self, query: Optional[str] = None, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Find artifacts by content substring and collection/artifact filters.

        Filters: environment, artifact_type, success, date_from, date_to, tag.
        """
        filters = dict(filters or {})
        where, params = _collection_filters(filters)
        clauses = [where]
        joins = ""
        if query:
            joins = "JOIN artifact_content ac ON ac.artifact_id = a.id"
            clauses.append("ac.content LIKE ?")
            params.append(f"%{query}%")
        if filters.get('artifact_type'):
            clauses.append("a.artifact_type = ?")
            params.append(filters['artifact_type'])

        rows = self.conn.execute(
            f"""
            SELECT a.*, c.session_id, c.environment_name, c.success, c.created_at AS collection_created_at
            FROM artifacts a
            JOIN collections c ON c.id = a.collection_id
            {joins}
            WHERE {' AND '.join(clauses)}
            ORDER BY c.created_at DESC, a.id
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]

    def compare(self, collection_id1: int, collection_id2: int) -> Dict[str, Any]:
        """Artifacts present in only one collection, and shared names whose content differs."""
        first, second = self.get_collection(collection_id1), self.get_collection(collection_id2)
        if first is None or second is None:
            raise ArtifactError(f"Collection not found: {collection_id1 if first is None else collection_id2}")

        def index(collection_id):
            return {
                (a['artifact_type'], a['name']): a['content_hash']
                for a in self.find_artifacts(collection_id)
            }

        left, right = index(collection_id1), index(collection_id2)
        return {
            'collection1': first['session_id'],
            'collection2': second['session_id'],
            'only_in_first': sorted(f"{t}/{n}" for t, n in left.keys() - right.keys()),
            'only_in_second': sorted(f"{t}/{n}" for t, n in right.keys() - left.keys()),
            'changed': sorted(f"{t}/{n}" for t, n in left.keys() & right.keys() if left[(t, n)] != right[(t, n)]),
        }

    def tags(self, collection_id: int) -> List[str]:
        rows = self.conn.execute(
            "SELECT tag FROM collection_tags WHERE collection_id = ? ORDER BY tag", (collection_id,)
        ).fetchall()
        return [row['tag'] for row in rows]

    def statistics(self) -> Dict[str, Any]:
        totals = self.conn.execute(
            "SELECT COUNT(*) AS collections, COALESCE(SUM(total_size), 0) AS size, "
            "COALESCE(SUM(success), 0) AS successful FROM collections"
        ).fetchone()
        artifacts = self.conn.execute(
            "SELECT COUNT(*) AS count, COUNT(DISTINCT content_hash) AS unique_hashes FROM artifacts"
        ).fetchone()
        by_type = self.conn.execute(
            "SELECT artifact_type, COUNT(*) AS count FROM artifacts GROUP BY artifact_type"
        ).fetchall()
        return {
            'total_collections': totals['collections'],
            'successful_collections': totals['successful'],
            'total_size': totals['size'],
            'total_artifacts': artifacts['count'],
            'unique_artifacts': artifacts['unique_hashes'],
            'artifacts_by_type': {row['artifact_type']: row['count'] for row in by_type},
            'database_size': self.db_file.stat().st_size if self.db_file.exists() else 0,
        }

    def _format_collection(self, row: sqlite3.Row) -> Dict[str, Any]:
        collection = dict(row)
        collection['success'] = bool(collection['success'])
        collection['metadata'] = json.loads(collection['metadata']) if collection['metadata'] else {}
        collection['tags'] = self.tags(collection['id'])
        return collection


def _collection_filters(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
    clauses, params = [], []
    if filters.get('environment'):
        clauses.append("c.environment_name = ?")
        params.append(filters['environment'])
    if filters.get('success') is not None:
        clauses.append("c.success = ?")
        params.append(int(bool(filters['success'])))
    if filters.get('date_from'):
        clauses.append("c.created_at >= ?")
        params.append(_iso(filters['date_from']))
    if filters.get('date_to'):
        clauses.append("c.created_at <= ?")
        params.append(_iso(filters['date_to']))
    if filters.get('tag'):
        clauses.append("c.id IN (SELECT collection_id FROM collection_tags WHERE tag = ?)")
        params.append(filters['tag'])
    return " AND ".join(clauses) or "1=1", params


def _iso(value) -> str:
    return value.isoformat() if isinstance(value, datetime) else str(value)
