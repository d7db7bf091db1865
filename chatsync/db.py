"""PostgreSQL-backed message store."""
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from chatsync import settings
from chatsync.errors import StoreError
from chatsync.logging_conf import logger
from chatsync.models import Message

SCHEMA = """
CREATE TABLE IF NOT EXISTS chat_messages (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    content TEXT NOT NULL,
    content_type TEXT NOT NULL DEFAULT 'text',
    sender_type TEXT NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL,
    delivery_status TEXT NOT NULL,
    sync_status TEXT NOT NULL,
    attachments JSONB NOT NULL DEFAULT '[]',
    metadata JSONB NOT NULL DEFAULT '{}',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (conversation_id, id)
)
"""

COLUMNS = (
    "id, conversation_id, content, content_type, sender_type, timestamp, "
    "delivery_status, sync_status, attachments, metadata"
)


class PostgresMessageStore:
    """One row per message; ``seq`` keeps per-conversation append order.

    Several threads share one connection, so each transaction holds ``_lock``
    until it commits or rolls back.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.DATABASE_URL
        self._conn = None
        self._schema_ready = False
        self._lock = threading.RLock()

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.dsn)
            self._schema_ready = False
        return self._conn

    def close(self):
        with self._lock:
            if self._conn and not self._conn.closed:
                self._conn.close()
                self._conn = None

    @contextmanager
    def cursor(self):
        """Cursor that commits on success and rolls back on error."""
        with self._lock:
            conn = self.conn
            if not self._schema_ready:
                with conn.cursor() as cur:
                    cur.execute(SCHEMA)
                conn.commit()
                self._schema_ready = True
            cur = conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield cur
                conn.commit()
            except psycopg2.Error as e:
                conn.rollback()
                raise StoreError(f"Database error: {e}") from e
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    def append(self, conversation_id: str, message: Message) -> Message:
        row = message.to_dict()
        with self.cursor() as cur:
            cur.execute(f"""
                INSERT INTO chat_messages ({COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (conversation_id, id) DO NOTHING
                RETURNING id
            """, (
                row["id"],
                conversation_id,
                row["content"],
                row["content_type"],
                row["sender_type"],
                message.timestamp,
                row["delivery_status"],
                row["sync_status"],
                Json(row["attachments"]),
                Json(row["metadata"]),
            ))
            inserted = cur.fetchone() is not None
        if not inserted:
            logger.debug(f"Message {message.id} already stored")
        return message

    def get(self, conversation_id: str) -> List[Message]:
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT {COLUMNS}
                FROM chat_messages
                WHERE conversation_id = %s
                ORDER BY seq ASC
            """, (conversation_id,))
            return [self._to_message(row) for row in cur.fetchall()]

    def find(self, conversation_id: str, message_id: str) -> Optional[Message]:
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT {COLUMNS}
                FROM chat_messages
                WHERE conversation_id = %s AND id = %s
            """, (conversation_id, message_id))
            row = cur.fetchone()
        return self._to_message(row) if row else None

    def update_status(self, conversation_id: str, message_id: str, **changes) -> Optional[Message]:
        """Apply ``changes`` to one row inside a single transaction."""
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT {COLUMNS}
                FROM chat_messages
                WHERE conversation_id = %s AND id = %s
                FOR UPDATE
            """, (conversation_id, message_id))
            row = cur.fetchone()
            if row is None:
                return None
            updated = self._to_message(row).with_changes(**changes)
            data = updated.to_dict()
            cur.execute("""
                UPDATE chat_messages
                SET content = %s,
                    delivery_status = %s,
                    sync_status = %s,
                    attachments = %s,
                    metadata = %s,
                    updated_at = NOW()
                WHERE conversation_id = %s AND id = %s
            """, (
                data["content"],
                data["delivery_status"],
                data["sync_status"],
                Json(data["attachments"]),
                Json(data["metadata"]),
                conversation_id,
                message_id,
            ))
        return updated

    def _to_message(self, row: Dict[str, Any]) -> Message:
        data = dict(row)
        timestamp = data.get("timestamp")
        if hasattr(timestamp, "isoformat"):
            data["timestamp"] = timestamp.isoformat()
        return Message.from_dict(data)
