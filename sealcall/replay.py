"""
sealcall - Replay Protection
Tracks response nonces so a captured, correctly signed response cannot be
fed back into a later exchange.

Two stores:
- ReplayProtector: SQLite, survives restarts, shareable between processes
- MemoryReplayProtector: in-process set, cleared on restart
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, Protocol, Set
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


class ReplayGuard(Protocol):
    def check_and_mark(self, nonce: str, source: str = "") -> bool:
        """Record a nonce. Returns False if it had been recorded before."""
        ...


class ReplayProtector:
    """
    Persistent record of response nonces, one SQLite row per nonce.

    Rows remember the counterparty host the response came from so that
    get_stats can show which counterparties are being tracked.
    """

    def __init__(self, db_path: str = "data/security/response_nonces.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS response_nonces (
                    nonce TEXT PRIMARY KEY,
                    host TEXT NOT NULL,
                    received_at INTEGER NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_response_nonces_received
                ON response_nonces(received_at)
            """)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def is_seen(self, nonce: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM response_nonces WHERE nonce = ?", (nonce,)).fetchone()
        return row is not None

    def check_and_mark(self, nonce: str, source: str = "") -> bool:
        """
        Record a nonce in one INSERT, so concurrent writers cannot both win.

        Args:
            nonce: X-Nonce of a verified response
            source: URL the response answered; only its host is stored

        Returns:
            True if the nonce was new, False if it was a replay
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO response_nonces (nonce, host, received_at) VALUES (?, ?, ?)",
                (nonce, _host_of(source), int(time.time())),
            )
        return cursor.rowcount == 1

    def prune(self, max_age: timedelta = timedelta(days=30)) -> int:
        """Forget nonces received more than max_age ago. Returns rows removed."""
        cutoff = int(time.time() - max_age.total_seconds())
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM response_nonces WHERE received_at < ?", (cutoff,))
        logger.info(f"Pruned {cursor.rowcount} response nonces older than {max_age}")
        return cursor.rowcount

    def get_stats(self) -> Dict[str, Any]:
        with self._connect() as conn:
            per_host = conn.execute(
                "SELECT host, COUNT(*) FROM response_nonces GROUP BY host ORDER BY host"
            ).fetchall()
        return {
            "total_seen": sum(count for _, count in per_host),
            "by_host": dict(per_host),
        }


def _host_of(url: str) -> str:
    # Relative URLs (resolved against the client's base_url) have no host
    return urlsplit(url).netloc


class MemoryReplayProtector:
    """In-process nonce set."""

    def __init__(self):
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def check_and_mark(self, nonce: str, source: str = "") -> bool:
        with self._lock:
            if nonce in self._seen:
                return False
            self._seen.add(nonce)
            return True

    def __len__(self) -> int:
        return len(self._seen)
