"""
Processing History

Records every enriched document (with token usage) in SQLite so the
dashboard can list, filter, validate and reset them.
"""

import json
import logging
import sqlite3
import threading
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

SORTABLE_COLUMNS = {
    'document_id': 'document_id',
    'title': 'title',
    'correspondent': 'correspondent',
    'created_at': 'processed_at',
}


class HistoryStore:
    """SQLite-backed record of processed documents."""

    def __init__(self, db_path: str = 'data/documents.db'):
        """
        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.RLock()
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        """Create database tables if they don't exist."""
        with self.lock, closing(self._connect()) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS processed_documents (
                    document_id INTEGER PRIMARY KEY,
                    title TEXT,
                    tags TEXT DEFAULT '[]',
                    correspondent TEXT,
                    document_type TEXT,
                    prompt_tokens INTEGER DEFAULT 0,
                    completion_tokens INTEGER DEFAULT 0,
                    total_tokens INTEGER DEFAULT 0,
                    truncated INTEGER DEFAULT 0,
                    error TEXT,
                    processed_at TEXT
                )
            ''')
            conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_processed_at
                ON processed_documents(processed_at)
            ''')
            conn.commit()

            logger.info(f"History store initialized at {self.db_path}")

    def record(self,
               document_id: int,
               title: Optional[str],
               tags: Iterable[Dict[str, Any]] = (),
               correspondent: Optional[str] = None,
               document_type: Optional[str] = None,
               metrics: Optional[Dict[str, int]] = None,
               truncated: bool = False,
               error: Optional[str] = None) -> None:
        """
        Record (or replace) the history entry for a document.

        Args:
            document_id: Paperless document ID
            title: Title written to the document
            tags: Tags as [{'id': ..., 'name': ...}]
            correspondent: Correspondent name
            document_type: Document type name
            metrics: Token usage from the provider
            truncated: Whether the content was truncated
            error: Non-fatal error (e.g. insufficient content)
        """
        metrics = metrics or {}
        with self.lock, closing(self._connect()) as conn:
            conn.execute('''
                INSERT OR REPLACE INTO processed_documents
                (document_id, title, tags, correspondent, document_type,
                 prompt_tokens, completion_tokens, total_tokens, truncated, error, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (document_id, title, json.dumps(list(tags)), correspondent, document_type,
                  metrics.get('prompt_tokens', 0), metrics.get('completion_tokens', 0),
                  metrics.get('total_tokens', 0), 1 if truncated else 0, error,
                  datetime.now(timezone.utc).isoformat()))
            conn.commit()

        logger.debug(f"Recorded history for document {document_id}")

    def is_processed(self, document_id: int) -> bool:
        with self.lock, closing(self._connect()) as conn:
            row = conn.execute(
                'SELECT 1 FROM processed_documents WHERE document_id = ?', (document_id,)
            ).fetchone()
        return row is not None

    def get_document_ids(self) -> List[int]:
        with self.lock, closing(self._connect()) as conn:
            rows = conn.execute('SELECT document_id FROM processed_documents ORDER BY document_id').fetchall()
        return [row['document_id'] for row in rows]

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        try:
            tags = json.loads(row['tags'] or '[]')
        except ValueError:
            tags = []
        return {
            'document_id': row['document_id'],
            'title': row['title'],
            'tags': tags,
            'correspondent': row['correspondent'],
            'document_type': row['document_type'],
            'created_at': row['processed_at'],
            'truncated': bool(row['truncated']),
            'error': row['error'],
        }

    def query(self,
              start: int = 0,
              length: int = 10,
              search: str = '',
              tag_id: Optional[int] = None,
              correspondent: Optional[str] = None,
              order_column: str = 'created_at',
              order_dir: str = 'desc') -> Tuple[List[Dict[str, Any]], int, int]:
        """
        Page through history with search and filters.

        Args:
            start: Row offset
            length: Page size (-1 for all rows)
            search: Case-insensitive match on title or correspondent
            tag_id: Only documents carrying this tag
            correspondent: Only documents from this correspondent
            order_column: One of document_id, title, correspondent, created_at
            order_dir: 'asc' or 'desc'

        Returns:
            (rows, total_count, filtered_count)
        """
        clauses = []
        params: List[Any] = []

        if search:
            clauses.append('(LOWER(title) LIKE ? OR LOWER(correspondent) LIKE ?)')
            pattern = f'%{search.lower()}%'
            params.extend([pattern, pattern])
        if tag_id is not None:
            clauses.append("EXISTS (SELECT 1 FROM json_each(tags) WHERE json_extract(value, '$.id') = ?)")
            params.append(tag_id)
        if correspondent:
            clauses.append('correspondent = ?')
            params.append(correspondent)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
        column = SORTABLE_COLUMNS.get(order_column, 'processed_at')
        direction = 'ASC' if str(order_dir).lower() == 'asc' else 'DESC'
        limit = '' if length is None or length < 0 else 'LIMIT ? OFFSET ?'
        page_params = [] if not limit else [length, max(start, 0)]

        with self.lock, closing(self._connect()) as conn:
            total = conn.execute('SELECT COUNT(*) FROM processed_documents').fetchone()[0]
            filtered = conn.execute(
                f'SELECT COUNT(*) FROM processed_documents {where}', params
            ).fetchone()[0]
            rows = conn.execute(
                f'SELECT * FROM processed_documents {where} ORDER BY {column} {direction} {limit}',
                params + page_params
            ).fetchall()

        return [self._row_to_dict(row) for row in rows], total, filtered

    def get_filter_options(self) -> Dict[str, List[Any]]:
        """Distinct tags and correspondents present in history."""
        rows, _, _ = self.query(length=-1)
        tags = {}
        correspondents = set()
        for row in rows:
            for tag in row['tags']:
                if isinstance(tag, dict) and 'id' in tag:
                    tags[tag['id']] = tag.get('name')
            if row['correspondent']:
                correspondents.add(row['correspondent'])

        return {
            'tags': [{'id': tag_id, 'name': name} for tag_id, name in sorted(tags.items(), key=lambda t: str(t[1]))],
            'correspondents': sorted(correspondents),
        }

    def reset_documents(self, document_ids: Iterable[int]) -> int:
        """Forget the given documents so they are processed again."""
        ids = [int(document_id) for document_id in document_ids]
        if not ids:
            return 0

        with self.lock, closing(self._connect()) as conn:
            cursor = conn.execute(
                f"DELETE FROM processed_documents WHERE document_id IN ({','.join('?' * len(ids))})",
                ids
            )
            conn.commit()
            deleted = cursor.rowcount

        logger.info(f"Reset {deleted} documents")
        return deleted

    def reset_all(self) -> int:
        """Forget every processed document."""
        with self.lock, closing(self._connect()) as conn:
            cursor = conn.execute('DELETE FROM processed_documents')
            conn.commit()
            deleted = cursor.rowcount

        logger.warning(f"Reset all {deleted} documents")
        return deleted

    def get_usage_stats(self) -> Dict[str, int]:
        """Aggregate token usage across all processed documents."""
        with self.lock, closing(self._connect()) as conn:
            row = conn.execute('''
                SELECT COUNT(*) AS documents,
                       COALESCE(SUM(prompt_tokens), 0) AS prompt_tokens,
                       COALESCE(SUM(completion_tokens), 0) AS completion_tokens,
                       COALESCE(SUM(total_tokens), 0) AS total_tokens
                FROM processed_documents
            ''').fetchone()
        return dict(row)
