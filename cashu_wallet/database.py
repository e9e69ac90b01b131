"""
Wallet Database - local record of mints, mint quotes and history.

This is the Quote Store: the durable lifecycle record of every mint quote
(UNPAID -> PAID -> ISSUED, or ERROR). The CLI's wait loop and manual check
only ever read it; state transitions are written by the settlement engine
and the background watcher.

The same sqlite file may be opened by several processes (the CLI and a
separately running `watch` daemon) and several threads, so every thread gets
its own connection and the journal runs in WAL mode.

Usage:
    from cashu_wallet.database import WalletDatabase

    db = WalletDatabase("/path/to/wallet.db")
    db.add_mint("https://mint.example.com")
    quote = db.get_mint_quote("https://mint.example.com", "q-123")
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


# =============================================================================
# Database Schema
# =============================================================================

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS mints (
    mint_url TEXT PRIMARY KEY,
    trusted INTEGER NOT NULL DEFAULT 1,
    added_at INTEGER NOT NULL
);

-- One row per (mint, quote); state is owned by the engine/watcher
CREATE TABLE IF NOT EXISTS mint_quotes (
    mint_url TEXT NOT NULL,
    quote_id TEXT NOT NULL,
    request TEXT NOT NULL,
    amount INTEGER NOT NULL,
    unit TEXT NOT NULL DEFAULT 'sat',
    state TEXT NOT NULL,           -- 'UNPAID', 'PAID', 'ISSUED', 'ERROR'
    expiry INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (mint_url, quote_id)
);
CREATE INDEX IF NOT EXISTS idx_mint_quotes_state ON mint_quotes(state);

CREATE TABLE IF NOT EXISTS history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at INTEGER NOT NULL,
    kind TEXT NOT NULL,            -- 'mint', 'melt', 'send', 'receive'
    mint_url TEXT,
    amount INTEGER NOT NULL DEFAULT 0,
    state TEXT,
    quote_id TEXT,
    detail TEXT
);
CREATE INDEX IF NOT EXISTS idx_history_time ON history(created_at);
"""


class QuoteState(str, Enum):
    """Lifecycle state of a mint quote."""
    UNPAID = "UNPAID"
    PAID = "PAID"
    ISSUED = "ISSUED"
    ERROR = "ERROR"


@dataclass
class MintQuote:
    """A single invoice-to-token exchange request, keyed by (mint_url, quote_id)."""
    mint_url: str
    quote_id: str
    request: str
    amount: int
    state: QuoteState = QuoteState.UNPAID
    unit: str = "sat"
    expiry: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MintQuote":
        return cls(
            mint_url=row["mint_url"],
            quote_id=row["quote_id"],
            request=row["request"],
            amount=row["amount"],
            state=QuoteState(row["state"]),
            unit=row["unit"],
            expiry=row["expiry"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def is_expired(self, now: Optional[int] = None) -> bool:
        if not self.expiry:
            return False
        return (now if now is not None else int(time.time())) >= self.expiry


class WalletDatabase:
    """
    SQLite store for mints, mint quotes and wallet history.

    Thread-safe via thread-local connections.
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = str(Path.home() / ".cashu-wallet" / "wallet.db")

        self.db_path = str(db_path)
        self._local = threading.local()

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _get_conn(self):
        """Get thread-local database connection."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, timeout=30)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")

        try:
            yield self._local.conn
        except Exception:
            self._local.conn.rollback()
            raise

    def _init_schema(self):
        with self._get_conn() as conn:
            try:
                row = conn.execute(
                    "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
                ).fetchone()
                current_version = row[0] if row else 0
            except sqlite3.OperationalError:
                current_version = 0

            if current_version < SCHEMA_VERSION:
                conn.executescript(SCHEMA)
                conn.execute(
                    "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, int(time.time()))
                )
                conn.commit()

    def close(self) -> None:
        """Close this thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # =========================================================================
    # Mints
    # =========================================================================

    def add_mint(self, mint_url: str, trusted: bool = True) -> None:
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO mints (mint_url, trusted, added_at) VALUES (?, ?, ?)
                ON CONFLICT(mint_url) DO UPDATE SET trusted = excluded.trusted
            """, (mint_url, 1 if trusted else 0, int(time.time())))
            conn.commit()

    def get_mints(self) -> List[Dict[str, Any]]:
        """All known mints, oldest first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT mint_url, trusted, added_at FROM mints ORDER BY added_at, mint_url"
            ).fetchall()
        return [
            {"mint_url": r["mint_url"], "trusted": bool(r["trusted"]), "added_at": r["added_at"]}
            for r in rows
        ]

    def get_default_mint(self) -> Optional[str]:
        """The first mint added, used when a command omits the mint URL."""
        mints = self.get_mints()
        return mints[0]["mint_url"] if mints else None

    # =========================================================================
    # Mint quotes
    # =========================================================================

    def store_mint_quote(self, quote: MintQuote) -> MintQuote:
        now = int(time.time())
        quote.created_at = quote.created_at or now
        quote.updated_at = now
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO mint_quotes (
                    mint_url, quote_id, request, amount, unit,
                    state, expiry, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(mint_url, quote_id) DO NOTHING
            """, (
                quote.mint_url, quote.quote_id, quote.request, quote.amount,
                quote.unit, quote.state.value, quote.expiry,
                quote.created_at, quote.updated_at,
            ))
            conn.commit()
        return quote

    def get_mint_quote(self, mint_url: str, quote_id: str) -> Optional[MintQuote]:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM mint_quotes WHERE mint_url = ? AND quote_id = ?",
                (mint_url, quote_id)
            ).fetchone()
        return MintQuote.from_row(row) if row else None

    def update_mint_quote_state(self, mint_url: str, quote_id: str,
                                state: QuoteState,
                                expected_states: Optional[Iterable[QuoteState]] = None) -> bool:
        """
        Move a quote to a new state.

        With expected_states the update only applies when the current state is
        one of them, so an ISSUED quote is never dragged back to PAID by a
        late remote read. Returns True if a row changed.
        """
        sql = "UPDATE mint_quotes SET state = ?, updated_at = ? WHERE mint_url = ? AND quote_id = ?"
        params: List[Any] = [QuoteState(state).value, int(time.time()), mint_url, quote_id]
        if expected_states is not None:
            expected = [QuoteState(s).value for s in expected_states]
            if not expected:
                return False
            sql += f" AND state IN ({','.join('?' * len(expected))})"
            params.extend(expected)

        with self._get_conn() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount > 0

    def list_mint_quotes(self, states: Optional[Iterable[QuoteState]] = None,
                         mint_url: Optional[str] = None,
                         limit: int = 500) -> List[MintQuote]:
        sql = "SELECT * FROM mint_quotes WHERE 1=1"
        params: List[Any] = []
        if states is not None:
            wanted = [QuoteState(s).value for s in states]
            if not wanted:
                return []
            sql += f" AND state IN ({','.join('?' * len(wanted))})"
            params.extend(wanted)
        if mint_url:
            sql += " AND mint_url = ?"
            params.append(mint_url)
        sql += " ORDER BY created_at LIMIT ?"
        params.append(limit)

        with self._get_conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [MintQuote.from_row(r) for r in rows]

    # =========================================================================
    # History
    # =========================================================================

    def add_history(self, kind: str, mint_url: Optional[str], amount: int = 0,
                    state: str = "COMPLETED", quote_id: Optional[str] = None,
                    detail: str = "") -> int:
        with self._get_conn() as conn:
            cursor = conn.execute("""
                INSERT INTO history (created_at, kind, mint_url, amount, state, quote_id, detail)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (int(time.time()), kind, mint_url, amount, state, quote_id, detail))
            conn.commit()
            return cursor.lastrowid

    def get_history(self, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """Newest entries first."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM history ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (max(0, int(limit)), max(0, int(offset)))
            ).fetchall()
        return [dict(r) for r in rows]
