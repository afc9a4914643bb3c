"""
sessions/store.py -- SQLite-backed server-side session store.

A session is an opaque 32-hex-char id mapped to a small JSON key/value bag.
The browser only ever holds the id, signed with HMAC-SHA256 so a forged or
guessed cookie value is rejected before any lookup happens. Each write
refreshes the session's TTL; reads of an expired session delete it.

Usage:
    sessions = SessionStore(secret_key=settings.secret_key)
    session_id, data = sessions.create()
    sessions.set(session_id, "user_id", user.user_id)
    cookie_value = sessions.sign(session_id)
    sessions.verify(cookie_value)            # -> session_id or None
    sessions.purge_expired()                 # call periodically to trim old entries

The request-level helpers (which cookie to read, get-or-create for a request)
live in auth/gate.py; this module knows nothing about HTTP.
"""

import hashlib
import hmac
import json
import logging
import re
import secrets
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger("wikiauth.sessions")

_DEFAULT_DB = Path(__file__).parent / "wikiauth_sessions.db"
_DEFAULT_TTL = 60 * 60 * 24  # 24 hours in seconds

_SIGNATURE_LEN = 16
_SIGNED_RE = re.compile(r"^([a-f0-9]{32})\.([a-f0-9]{16})$")

_DDL = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id  TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    touched_at  REAL NOT NULL
);
"""


class SessionStore:
    def __init__(
        self,
        secret_key: str,
        db_path: Union[str, Path] = _DEFAULT_DB,
        ttl: int = _DEFAULT_TTL,
    ) -> None:
        self.ttl = ttl
        self._secret = secret_key.encode("utf-8")
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Cookie signing
    # ------------------------------------------------------------------

    @staticmethod
    def generate_id() -> str:
        return secrets.token_hex(16)

    def _signature(self, session_id: str) -> str:
        return hmac.new(self._secret, session_id.encode("utf-8"), hashlib.sha256).hexdigest()[:_SIGNATURE_LEN]

    def sign(self, session_id: str) -> str:
        """Return the cookie value for session_id: "<id>.<signature>"."""
        return f"{session_id}.{self._signature(session_id)}"

    def verify(self, signed: Optional[str]) -> Optional[str]:
        """Return the session id from a signed cookie value, or None if invalid."""
        if not signed:
            return None
        match = _SIGNED_RE.match(signed)
        if match is None:
            return None
        session_id, signature = match.groups()
        if not hmac.compare_digest(signature, self._signature(session_id)):
            logger.warning("Rejected session cookie with bad signature")
            return None
        return session_id

    # ------------------------------------------------------------------
    # Session data
    # ------------------------------------------------------------------

    def load(self, session_id: Optional[str]) -> Optional[dict]:
        """Return the session's data, or None if missing or expired."""
        if not session_id:
            return None
        with self._lock:
            return self._load(session_id)

    def create(self) -> tuple[str, dict]:
        """Start a new empty session and return (session_id, data)."""
        session_id = self.generate_id()
        data = {"_created": int(time.time())}
        with self._lock:
            self._save(session_id, data)
        return session_id, data

    def set(self, session_id: str, key: str, value: Any) -> None:
        self.update(session_id, {key: value})

    def update(self, session_id: str, values: dict) -> None:
        """Merge values into the session's data and refresh its TTL.

        Writing to a missing or expired session id starts it over with just
        these values.
        """
        with self._lock:
            data = self._load(session_id) or {}
            data.update(values)
            self._save(session_id, data)

    def get_value(self, session_id: Optional[str], key: str) -> Any:
        data = self.load(session_id)
        return data.get(key) if data else None

    def clear(self, session_id: Optional[str]) -> None:
        """Delete the session entirely (logout, stale user)."""
        if not session_id:
            return
        with self._lock:
            self._delete(session_id)

    def purge_expired(self) -> int:
        """Delete all sessions older than TTL. Returns number of rows removed."""
        cutoff = time.time() - self.ttl
        with self._lock:
            cursor = self._conn.execute("DELETE FROM sessions WHERE touched_at < ?", (cutoff,))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------

    def _load(self, session_id: str) -> Optional[dict]:
        row = self._conn.execute(
            "SELECT data, touched_at FROM sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        data, touched_at = row
        if time.time() - touched_at > self.ttl:
            self._delete(session_id)
            return None
        try:
            return json.loads(data)
        except ValueError:
            logger.warning("Discarding unreadable session data for %s", session_id[:8])
            self._delete(session_id)
            return None

    def _save(self, session_id: str, data: dict) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO sessions (session_id, data, touched_at) VALUES (?, ?, ?)",
            (session_id, json.dumps(data), time.time()),
        )
        self._conn.commit()

    def _delete(self, session_id: str) -> None:
        self._conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        self._conn.commit()
