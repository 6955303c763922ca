# ABOUTME: SQLite session store for workflow runs and their finalized messages.
# ABOUTME: Per-session sequence numbers are assigned under a lock and retried on lock or seq conflicts.

import json
import logging
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_INIT = "init"
STATUS_STREAMING = "streaming"
STATUS_DONE = "done"
STATUS_ERROR = "error"


class SessionStore:
    """
    Durable record of sessions (one per run) and messages (one per final turn).

    Sequence numbers are assigned per session inside the write lock, so concurrent runs
    sharing a store never collide. Locked-database and sequence conflicts are retried.
    """

    def __init__(self, dbPath: str, maxRetries: int = 3, retryDelay: float = 0.05):
        self.dbPath = dbPath
        self.maxRetries = maxRetries
        self.retryDelay = retryDelay
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._initialized = False

    def _getConnection(self) -> sqlite3.Connection:
        if self._conn is None:
            if self.dbPath != ":memory:":
                Path(self.dbPath).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.dbPath, check_same_thread=False, timeout=5.0)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self) -> None:
        """Initialize database schema."""
        with self._lock:
            if self._initialized:
                return
            conn = self._getConnection()
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    symbol TEXT NOT NULL,
                    trade_date TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL REFERENCES sessions(id),
                    role TEXT NOT NULL,
                    agent TEXT,
                    content TEXT NOT NULL DEFAULT '',
                    tool_calls TEXT,
                    tool_call_id TEXT,
                    finish_reason TEXT,
                    seq INTEGER NOT NULL,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(session_id, seq)
                );

                CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq);
            """)
            conn.commit()
            self._initialized = True
        logger.info(f"Session store initialized at {self.dbPath}")

    def _write(self, operation: str, statement: str, params: tuple) -> None:
        for attempt in range(self.maxRetries):
            try:
                with self._lock:
                    conn = self._getConnection()
                    conn.execute(statement, params)
                    conn.commit()
                return
            except sqlite3.OperationalError as exc:
                if "locked" not in str(exc) or attempt == self.maxRetries - 1:
                    raise
                logger.warning(f"{operation}: database locked, retrying (Attempt {attempt + 1})")
                time.sleep(self.retryDelay * (2 ** attempt))

    def createSession(self, subjectId: str, asOfDate: str, prompt: str) -> str:
        self.initialize()
        sessionId = uuid.uuid4().hex
        self._write(
            "createSession",
            "INSERT INTO sessions (id, symbol, trade_date, prompt, status) VALUES (?, ?, ?, ?, ?)",
            (sessionId, subjectId, asOfDate, prompt, STATUS_INIT),
        )
        logger.debug(f"Created session {sessionId} for {subjectId} @ {asOfDate}")
        return sessionId

    def saveMessage(
        self,
        sessionId: str,
        role: str,
        agent: Optional[str],
        content: str,
        toolCalls: Optional[List[Dict[str, Any]]] = None,
        finishReason: Optional[str] = None,
        messageId: Optional[str] = None,
        toolCallId: Optional[str] = None,
    ) -> int:
        """Append one finalized message. Returns its per-session sequence number."""
        self.initialize()
        messageId = messageId or uuid.uuid4().hex[:20]
        toolCallsJson = json.dumps(toolCalls) if toolCalls else None

        for attempt in range(self.maxRetries):
            try:
                with self._lock:
                    conn = self._getConnection()
                    row = conn.execute(
                        "SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM messages WHERE session_id = ?",
                        (sessionId,),
                    ).fetchone()
                    seq = row["next_seq"]
                    conn.execute(
                        """
                        INSERT INTO messages
                            (id, session_id, role, agent, content, tool_calls, tool_call_id, finish_reason, seq)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (messageId, sessionId, role, agent, content or "", toolCallsJson, toolCallId, finishReason, seq),
                    )
                    conn.execute(
                        "UPDATE sessions SET updated_at = CURRENT_TIMESTAMP WHERE id = ?", (sessionId,)
                    )
                    conn.commit()
                return seq
            except (sqlite3.IntegrityError, sqlite3.OperationalError) as exc:
                with self._lock:
                    if self._conn is not None:
                        self._conn.rollback()
                retryable = (isinstance(exc, sqlite3.IntegrityError) and "seq" in str(exc)) or "locked" in str(exc)
                if not retryable or attempt == self.maxRetries - 1:
                    raise
                logger.warning(f"saveMessage conflict for session {sessionId}: {exc}. Retrying...")
                time.sleep(self.retryDelay * (2 ** attempt))
        raise RuntimeError("saveMessage failed after maximum retries")

    def updateSessionStatus(self, sessionId: str, status: str) -> None:
        if not sessionId or not status:
            raise ValueError("sessionId and status are required")
        self.initialize()
        self._write(
            "updateSessionStatus",
            "UPDATE sessions SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (status, sessionId),
        )

    def getSession(self, sessionId: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self._lock:
            row = self._getConnection().execute(
                "SELECT * FROM sessions WHERE id = ?", (sessionId,)
            ).fetchone()
        return dict(row) if row else None

    def listSessions(self, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        self.initialize()
        with self._lock:
            rows = self._getConnection().execute(
                "SELECT * FROM sessions ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [dict(row) for row in rows]

    def listMessages(self, sessionId: str) -> List[Dict[str, Any]]:
        self.initialize()
        with self._lock:
            rows = self._getConnection().execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY seq ASC", (sessionId,)
            ).fetchall()
        messages = []
        for row in rows:
            record = dict(row)
            record["tool_calls"] = json.loads(record["tool_calls"]) if record["tool_calls"] else []
            messages.append(record)
        return messages

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._initialized = False
