# backend/app/db/sqlite_memory.py

import sqlite3
import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

from app.core.errors import InputValidationError, PersistenceError
from app.core.logger import get_logger
from app.utils.time_utils import utc_now_iso

logger = get_logger("store")

# Retry configuration
MAX_RETRIES = 5
RETRY_DELAY = 0.1  # 100ms

ROLES = ("user", "assistant")


class SQLiteChatStore:
    """
    Conversation + message persistence.

    Messages are append-only and always read back in insertion order.
    A conversation title is written at most once (see set_title_once).
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            timeout=30.0
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA busy_timeout=30000")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._init_tables()

    def _execute_with_retry(self, operation, *args, **kwargs):
        """Run a write, retrying with backoff while the database is locked."""
        for attempt in range(MAX_RETRIES):
            try:
                return operation(*args, **kwargs)
            except sqlite3.OperationalError as e:
                if "locked" in str(e).lower() and attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_DELAY * (attempt + 1))
                    continue
                self.conn.rollback()
                raise PersistenceError(str(e)) from e
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(str(e)) from e

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            return cur.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def close(self):
        self.conn.close()

    # ----------------------------------------------------------------------
    # CREATE TABLES
    # ----------------------------------------------------------------------
    def _init_tables(self):
        cur = self.conn.cursor()

        # CONVERSATIONS
        cur.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            wallet_address TEXT NOT NULL,
            title TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """)

        # MESSAGES
        cur.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
            content TEXT NOT NULL DEFAULT '',
            image_url TEXT,
            generated_image_url TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
        );
        """)

        # INDEXES
        cur.execute("CREATE INDEX IF NOT EXISTS idx_conv_wallet ON conversations(wallet_address);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_msg_conv ON messages(conversation_id, created_at);")

        self.conn.commit()

    # ----------------------------------------------------------------------
    # CONVERSATIONS
    # ----------------------------------------------------------------------
    def create_conversation(self, wallet_address: str, title: Optional[str] = None) -> Dict[str, Any]:
        if not wallet_address:
            raise InputValidationError("wallet_address is required")

        conversation_id = str(uuid4())
        now = utc_now_iso()

        def _create_conversation():
            cur = self.conn.cursor()
            cur.execute("""
            INSERT INTO conversations (id, wallet_address, title, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """, (conversation_id, wallet_address, title, now, now))
            self.conn.commit()

        self._execute_with_retry(_create_conversation)
        logger.info("Created conversation %s for %s", conversation_id, wallet_address)
        return {
            "id": conversation_id,
            "wallet_address": wallet_address,
            "title": title,
            "created_at": now,
            "updated_at": now,
        }

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        return dict(rows[0]) if rows else None

    def list_conversations(self, wallet_address: str, limit: int = 100) -> List[Dict[str, Any]]:
        rows = self._query("""
        SELECT * FROM conversations
        WHERE wallet_address = ?
        ORDER BY updated_at DESC
        LIMIT ?
        """, (wallet_address, limit))
        return [dict(r) for r in rows]

    def list_feed(self, limit: int = 200) -> List[Dict[str, Any]]:
        """
        Public feed: every wallet's conversations, latest activity first.

        Each row also carries message_count, first_message (first user
        turn's text, "" if none) and first_image (uploaded image preferred
        over generated one, None if the conversation has no image).
        """
        rows = self._query("""
        SELECT
            c.*,
            (SELECT COUNT(*) FROM messages m
              WHERE m.conversation_id = c.id) AS message_count,
            (SELECT m.content FROM messages m
              WHERE m.conversation_id = c.id AND m.role = 'user'
              ORDER BY m.created_at ASC, m.rowid ASC
              LIMIT 1) AS first_message,
            (SELECT COALESCE(m.image_url, m.generated_image_url) FROM messages m
              WHERE m.conversation_id = c.id
                AND (m.image_url IS NOT NULL OR m.generated_image_url IS NOT NULL)
              ORDER BY m.created_at ASC, m.rowid ASC
              LIMIT 1) AS first_image
        FROM conversations c
        ORDER BY c.updated_at DESC
        LIMIT ?
        """, (limit,))

        feed = []
        for r in rows:
            item = dict(r)
            item["first_message"] = item["first_message"] or ""
            feed.append(item)
        return feed

    def set_title_once(self, conversation_id: str, title: str) -> bool:
        """Write the title only if none is set yet. Returns True if it was written."""
        def _set_title():
            cur = self.conn.cursor()
            cur.execute("""
            UPDATE conversations SET title = ?
            WHERE id = ? AND title IS NULL
            """, (title, conversation_id))
            self.conn.commit()
            return cur.rowcount == 1

        return self._execute_with_retry(_set_title)

    def touch_conversation(self, conversation_id: str, commit: bool = True):
        """Bump updated_at.

        Args:
            conversation_id: The conversation to touch
            commit: Set to False when called inside a larger transaction
        """
        cur = self.conn.cursor()
        cur.execute("""
        UPDATE conversations SET updated_at = ?
        WHERE id = ?
        """, (utc_now_iso(), conversation_id))
        if commit:
            self.conn.commit()

    def delete_conversation(self, conversation_id: str):
        def _delete_conversation():
            cur = self.conn.cursor()
            cur.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            self.conn.commit()

        self._execute_with_retry(_delete_conversation)

    # ----------------------------------------------------------------------
    # MESSAGES
    # ----------------------------------------------------------------------
    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str = "",
        image_url: Optional[str] = None,
        generated_image_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append a message and touch the conversation in one transaction."""
        if role not in ROLES:
            raise InputValidationError(f"Invalid role: {role!r}")
        if not (content or image_url or generated_image_url):
            raise InputValidationError("Message needs text, an uploaded image or a generated image")

        message_id = str(uuid4())
        now = utc_now_iso()

        def _add_message():
            cur = self.conn.cursor()
            cur.execute("""
            INSERT INTO messages (id, conversation_id, role, content, image_url, generated_image_url, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                message_id,
                conversation_id,
                role,
                content or "",
                image_url,
                generated_image_url,
                now,
            ))
            self.touch_conversation(conversation_id, commit=False)
            self.conn.commit()

        self._execute_with_retry(_add_message)
        return {
            "id": message_id,
            "conversation_id": conversation_id,
            "role": role,
            "content": content or "",
            "image_url": image_url,
            "generated_image_url": generated_image_url,
            "created_at": now,
        }

    def get_messages(self, conversation_id: str, limit: int = 1000) -> List[Dict[str, Any]]:
        # rowid breaks ties between inserts that share a timestamp
        rows = self._query("""
        SELECT * FROM messages
        WHERE conversation_id = ?
        ORDER BY created_at ASC, rowid ASC
        LIMIT ?
        """, (conversation_id, limit))
        return [dict(r) for r in rows]

    def count_messages(self) -> int:
        rows = self._query("SELECT COUNT(*) AS total FROM messages")
        return int(rows[0]["total"]) if rows else 0
