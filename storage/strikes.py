from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple


class StoreError(Exception):
    pass


@dataclass
class StrikeOutcome:
    count: int
    recorded: bool
    condemned: bool
    returning: bool
    strike_id: Optional[int] = None


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS job_runs (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        started_at REAL NOT NULL,
        completed_at REAL,
        status TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS download_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        download_id TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL DEFAULT '',
        is_marked_for_removal INTEGER NOT NULL DEFAULT 0,
        is_removed INTEGER NOT NULL DEFAULT 0,
        is_returning INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strikes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        download_item_id INTEGER NOT NULL REFERENCES download_items(id) ON DELETE CASCADE,
        job_run_id TEXT NOT NULL REFERENCES job_runs(id),
        type TEXT NOT NULL,
        created_at REAL NOT NULL,
        last_downloaded_bytes INTEGER,
        UNIQUE (download_item_id, type, job_run_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strike_resets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        download_item_id INTEGER NOT NULL REFERENCES download_items(id) ON DELETE CASCADE,
        job_run_id TEXT NOT NULL,
        type TEXT NOT NULL,
        created_at REAL NOT NULL,
        after_strike_id INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS observations (
        download_id TEXT NOT NULL,
        key TEXT NOT NULL,
        last_downloaded_bytes INTEGER,
        below_since REAL,
        updated_at REAL NOT NULL,
        PRIMARY KEY (download_id, key)
    )
    """,
    'CREATE INDEX IF NOT EXISTS idx_strikes_item_type ON strikes(download_item_id, type)',
    'CREATE INDEX IF NOT EXISTS idx_resets_item_type ON strike_resets(download_item_id, type)',
)

# Strikes after the latest reset marker for (item, type).
_LIVE_COUNT_SQL = """
    SELECT COUNT(*) FROM strikes
    WHERE download_item_id = ? AND type = ?
      AND id > COALESCE(
        (SELECT MAX(after_strike_id) FROM strike_resets WHERE download_item_id = ? AND type = ?), 0)
"""


class StrikeStore:
    """SQLite-backed ledger of download items, strikes and job runs."""

    def __init__(self, path: str) -> None:
        self.path = path
        try:
            if path != ':memory:':
                parent = os.path.dirname(os.path.abspath(path))
                os.makedirs(parent, exist_ok=True)
            self._conn = sqlite3.connect(path, timeout=10.0, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute('PRAGMA foreign_keys=ON')
            if path != ':memory:':
                self._conn.execute('PRAGMA journal_mode=WAL')
                self._conn.execute('PRAGMA synchronous=NORMAL')
            for stmt in _SCHEMA:
                self._conn.execute(stmt)
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f'cannot open strike store at {path}: {e}') from e
        logging.debug(f'Strike store ready at {path}')

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logging.warning(f'Strike store close failed: {e}')

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            self._conn.execute('BEGIN IMMEDIATE')
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        try:
            yield self._conn
        except sqlite3.Error as e:
            self._conn.execute('ROLLBACK')
            raise StoreError(str(e)) from e
        except BaseException:
            self._conn.execute('ROLLBACK')
            raise
        else:
            try:
                self._conn.execute('COMMIT')
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    def _query(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    # ---- job runs ----

    def start_job_run(self, job_run_id: str, job_type: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                'INSERT INTO job_runs (id, type, started_at) VALUES (?, ?, ?)',
                (job_run_id, job_type, time.time()),
            )

    def finish_job_run(self, job_run_id: str, status: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                'UPDATE job_runs SET status = ?, completed_at = ? WHERE id = ?',
                (status, time.time(), job_run_id),
            )

    def get_job_run(self, job_run_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query('SELECT * FROM job_runs WHERE id = ?', (job_run_id,))
        return dict(rows[0]) if rows else None

    def recent_job_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        rows = self._query('SELECT * FROM job_runs ORDER BY id DESC LIMIT ?', (limit,))
        return [dict(r) for r in rows]

    # ---- download items and strikes ----

    def _item_row(self, conn: sqlite3.Connection, download_id: str) -> Optional[sqlite3.Row]:
        return conn.execute('SELECT * FROM download_items WHERE download_id = ?', (download_id,)).fetchone()

    def _live_count(self, conn: sqlite3.Connection, item_id: int, strike_type: str) -> int:
        return int(conn.execute(_LIVE_COUNT_SQL, (item_id, strike_type, item_id, strike_type)).fetchone()[0])

    def record_strike(
        self,
        download_id: str,
        title: str,
        strike_type: str,
        job_run_id: str,
        max_strikes: int,
        last_downloaded_bytes: Optional[int] = None,
    ) -> StrikeOutcome:
        with self.transaction() as conn:
            row = self._item_row(conn, download_id)
            if row is None:
                cur = conn.execute(
                    'INSERT INTO download_items (download_id, title) VALUES (?, ?)', (download_id, title or '')
                )
                item_id = cur.lastrowid
                was_removed = False
            else:
                item_id = row['id']
                was_removed = bool(row['is_removed'])
                if title and row['title'] != title:
                    conn.execute('UPDATE download_items SET title = ? WHERE id = ?', (title, item_id))

            cur = conn.execute(
                'INSERT OR IGNORE INTO strikes '
                '(download_item_id, job_run_id, type, created_at, last_downloaded_bytes) '
                'VALUES (?, ?, ?, ?, ?)',
                (item_id, job_run_id, strike_type, time.time(), last_downloaded_bytes),
            )
            recorded = cur.rowcount == 1
            strike_id = cur.lastrowid if recorded else None
            count = self._live_count(conn, item_id, strike_type)

            returning = recorded and was_removed
            if returning:
                conn.execute(
                    'UPDATE download_items SET is_returning = 1, is_removed = 0, is_marked_for_removal = 0 '
                    'WHERE id = ?',
                    (item_id,),
                )
            condemned = count >= max_strikes
            if condemned:
                conn.execute('UPDATE download_items SET is_marked_for_removal = 1 WHERE id = ?', (item_id,))
        return StrikeOutcome(count=count, recorded=recorded, condemned=condemned, returning=returning, strike_id=strike_id)

    def reset_strikes(self, download_id: str, strike_type: str, job_run_id: str) -> int:
        with self.transaction() as conn:
            row = self._item_row(conn, download_id)
            if row is None:
                return 0
            live = self._live_count(conn, row['id'], strike_type)
            if not live:
                return 0
            last_id = conn.execute(
                'SELECT MAX(id) FROM strikes WHERE download_item_id = ? AND type = ?', (row['id'], strike_type)
            ).fetchone()[0]
            conn.execute(
                'INSERT INTO strike_resets (download_item_id, job_run_id, type, created_at, after_strike_id) '
                'VALUES (?, ?, ?, ?, ?)',
                (row['id'], job_run_id, strike_type, time.time(), last_id),
            )
            conn.execute('UPDATE download_items SET is_marked_for_removal = 0 WHERE id = ?', (row['id'],))
        return live

    def live_strike_count(self, download_id: str, strike_type: str) -> int:
        rows = self._query('SELECT id FROM download_items WHERE download_id = ?', (download_id,))
        if not rows:
            return 0
        item_id = rows[0]['id']
        rows = self._query(_LIVE_COUNT_SQL, (item_id, strike_type, item_id, strike_type))
        return int(rows[0][0])

    def total_strike_rows(self, download_id: str) -> int:
        rows = self._query(
            'SELECT COUNT(*) FROM strikes s JOIN download_items d ON d.id = s.download_item_id '
            'WHERE d.download_id = ?',
            (download_id,),
        )
        return int(rows[0][0])

    def get_item(self, download_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query('SELECT * FROM download_items WHERE download_id = ?', (download_id,))
        return dict(rows[0]) if rows else None

    def mark_removed(self, download_id: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                'UPDATE download_items SET is_removed = 1, is_marked_for_removal = 0, is_returning = 0 '
                'WHERE download_id = ?',
                (download_id,),
            )

    def list_items(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        with self.transaction() as conn:
            items = conn.execute('SELECT * FROM download_items ORDER BY id').fetchall()
            for item in items:
                types = conn.execute(
                    'SELECT DISTINCT type FROM strikes WHERE download_item_id = ?', (item['id'],)
                ).fetchall()
                live = {t['type']: self._live_count(conn, item['id'], t['type']) for t in types}
                entry = dict(item)
                entry['strikes'] = {k: v for k, v in live.items() if v}
                out.append(entry)
        return out

    def stats(self) -> Dict[str, int]:
        rows = self._query(
            'SELECT '
            '(SELECT COUNT(*) FROM download_items) AS items, '
            '(SELECT COUNT(*) FROM strikes) AS strikes, '
            '(SELECT COUNT(*) FROM download_items WHERE is_marked_for_removal = 1) AS marked, '
            '(SELECT COUNT(*) FROM download_items WHERE is_removed = 1) AS removed, '
            '(SELECT COUNT(*) FROM job_runs) AS job_runs'
        )
        return dict(rows[0])

    # ---- observations ----

    def get_observation(self, download_id: str, key: str) -> Tuple[Optional[int], Optional[float]]:
        rows = self._query(
            'SELECT last_downloaded_bytes, below_since FROM observations WHERE download_id = ? AND key = ?',
            (download_id, key),
        )
        if not rows:
            return None, None
        return rows[0]['last_downloaded_bytes'], rows[0]['below_since']

    def set_observation(
        self,
        download_id: str,
        key: str,
        last_downloaded_bytes: Optional[int],
        below_since: Optional[float],
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                'INSERT INTO observations (download_id, key, last_downloaded_bytes, below_since, updated_at) '
                'VALUES (?, ?, ?, ?, ?) '
                'ON CONFLICT(download_id, key) DO UPDATE SET '
                'last_downloaded_bytes = excluded.last_downloaded_bytes, '
                'below_since = excluded.below_since, updated_at = excluded.updated_at',
                (download_id, key, last_downloaded_bytes, below_since, time.time()),
            )

    # ---- maintenance ----

    def delete_all_strikes_and_orphaned_items(self) -> Tuple[int, int]:
        with self.transaction() as conn:
            strikes = conn.execute('DELETE FROM strikes').rowcount
            conn.execute('DELETE FROM strike_resets')
            items = conn.execute(
                'DELETE FROM download_items WHERE id NOT IN (SELECT DISTINCT download_item_id FROM strikes)'
            ).rowcount
            conn.execute('DELETE FROM observations WHERE download_id NOT IN (SELECT download_id FROM download_items)')
        return strikes, items

    def purge_item(self, download_id: str) -> bool:
        with self.transaction() as conn:
            deleted = conn.execute('DELETE FROM download_items WHERE download_id = ?', (download_id,)).rowcount
            conn.execute('DELETE FROM observations WHERE download_id = ?', (download_id,))
        return bool(deleted)
