"""Inbox repository - conversations, messages and the alias table.

Uses raw SQL with psycopg2 (no ORM). PgInboxStore is bound to one cursor
and therefore to the caller's transaction:

    with txn() as cur:
        store = PgInboxStore(cur)
        ...

Uniqueness is enforced by the schema; create paths use
INSERT ... ON CONFLICT DO NOTHING so a lost race never aborts the
surrounding transaction.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

import psycopg2.errors
from psycopg2.extensions import cursor as PgCursor

from zapsync.domain.conversations import preview_text
from zapsync.domain.errors import PersistenceConflict
from zapsync.domain.models import Conversation, Message, NewMessage
from zapsync.whatsapp.models import MEDIA_KINDS

_CONVERSATION_COLUMNS = """
    id, instance_id, address, is_group, display_name, avatar_url,
    last_message, last_message_at, unread_count, created_at, updated_at
"""

_MESSAGE_COLUMNS = """
    id, instance_id, message_id, conversation_id, from_me, kind,
    sender_address, "timestamp", text, media_url, media_mime_type,
    media_key, media_file_name, media_stabilized
"""

_MEDIA_KIND_VALUES = sorted(kind.value for kind in MEDIA_KINDS)


def _conversation(row: tuple[Any, ...]) -> Conversation:
    return Conversation(
        id=str(row[0]),
        instance_id=row[1],
        address=row[2],
        is_group=row[3],
        display_name=row[4],
        avatar_url=row[5],
        last_message=row[6],
        last_message_at=row[7],
        unread_count=row[8],
        created_at=row[9],
        updated_at=row[10],
    )


def _message(row: tuple[Any, ...]) -> Message:
    return Message(
        id=str(row[0]),
        instance_id=row[1],
        message_id=row[2],
        conversation_id=str(row[3]),
        from_me=row[4],
        kind=row[5],
        sender_address=row[6],
        timestamp=row[7],
        text=row[8],
        media_url=row[9],
        media_mime_type=row[10],
        media_key=row[11],
        media_file_name=row[12],
        media_stabilized=row[13],
    )


class PgInboxStore:
    """InboxStore over one psycopg2 cursor."""

    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    @contextmanager
    def _savepoint(self, name: str) -> Iterator[None]:
        """Roll back only this block on error; the outer txn stays usable."""
        self._cur.execute(f"SAVEPOINT {name}")
        try:
            yield
        except Exception:
            self._cur.execute(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        self._cur.execute(f"RELEASE SAVEPOINT {name}")

    # ── Alias table ───────────────────────────────────────────────────────────

    def get_alias(self, instance_id: str, alias: str) -> str | None:
        self._cur.execute(
            """
            SELECT stable_address FROM contact_aliases
            WHERE instance_id = %s AND alias_address = %s
            """,
            (instance_id, alias),
        )
        row = self._cur.fetchone()
        return row[0] if row else None

    def put_alias(self, instance_id: str, alias: str, stable: str) -> str | None:
        self._cur.execute(
            """
            SELECT stable_address FROM contact_aliases
            WHERE instance_id = %s AND alias_address = %s
            FOR UPDATE
            """,
            (instance_id, alias),
        )
        row = self._cur.fetchone()
        previous = row[0] if row else None

        self._cur.execute(
            """
            INSERT INTO contact_aliases (instance_id, alias_address, stable_address)
            VALUES (%s, %s, %s)
            ON CONFLICT (instance_id, alias_address)
            DO UPDATE SET stable_address = EXCLUDED.stable_address, updated_at = now()
            """,
            (instance_id, alias, stable),
        )
        return previous

    def list_aliases(self, instance_id: str) -> list[tuple[str, str]]:
        self._cur.execute(
            """
            SELECT alias_address, stable_address FROM contact_aliases
            WHERE instance_id = %s
            ORDER BY alias_address
            """,
            (instance_id,),
        )
        return [(row[0], row[1]) for row in self._cur.fetchall()]

    # ── Conversations ─────────────────────────────────────────────────────────

    def find_conversation(self, instance_id: str, address: str) -> Conversation | None:
        self._cur.execute(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE instance_id = %s AND address = %s
            """,
            (instance_id, address),
        )
        row = self._cur.fetchone()
        return _conversation(row) if row else None

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        self._cur.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = %s",
            (conversation_id,),
        )
        row = self._cur.fetchone()
        return _conversation(row) if row else None

    def _require_conversation(self, row: tuple[Any, ...] | None, conversation_id: str) -> Conversation:
        if row is None:
            raise KeyError(f"conversation not found: {conversation_id}")
        return _conversation(row)

    def create_conversation(
        self,
        instance_id: str,
        address: str,
        *,
        is_group: bool,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Conversation:
        self._cur.execute(
            f"""
            INSERT INTO conversations (instance_id, address, is_group, display_name, avatar_url)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (instance_id, address) DO NOTHING
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            (instance_id, address, is_group, display_name, avatar_url),
        )
        row = self._cur.fetchone()
        if row is None:
            raise PersistenceConflict("conversation already exists for address")
        return _conversation(row)

    def update_conversation_preview(
        self,
        conversation_id: str,
        preview: str | None,
        timestamp: datetime | None,
        unread_delta: int,
        *,
        reset_unread: bool = False,
    ) -> Conversation:
        # SET expressions all see the pre-update row
        self._cur.execute(
            f"""
            UPDATE conversations
            SET last_message = CASE
                    WHEN %(ts)s::timestamptz IS NOT NULL
                         AND (last_message_at IS NULL OR %(ts)s::timestamptz >= last_message_at)
                    THEN %(preview)s ELSE last_message END,
                unread_count = CASE
                    WHEN %(reset)s AND %(ts)s::timestamptz IS NOT NULL
                         AND (last_message_at IS NULL OR %(ts)s::timestamptz >= last_message_at)
                    THEN 0 ELSE unread_count + %(delta)s END,
                last_message_at = GREATEST(last_message_at, %(ts)s::timestamptz),
                updated_at = now()
            WHERE id = %(id)s
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            {
                "id": conversation_id,
                "preview": preview,
                "ts": timestamp,
                "delta": unread_delta,
                "reset": reset_unread,
            },
        )
        return self._require_conversation(self._cur.fetchone(), conversation_id)

    def update_conversation_profile(
        self,
        conversation_id: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Conversation:
        self._cur.execute(
            f"""
            UPDATE conversations
            SET display_name = COALESCE(%s, display_name),
                avatar_url = COALESCE(%s, avatar_url),
                updated_at = now()
            WHERE id = %s
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            (display_name, avatar_url, conversation_id),
        )
        return self._require_conversation(self._cur.fetchone(), conversation_id)

    def rekey_conversation(self, conversation_id: str, address: str) -> Conversation:
        try:
            with self._savepoint("rekey_conversation"):
                self._cur.execute(
                    f"""
                    UPDATE conversations
                    SET address = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING {_CONVERSATION_COLUMNS}
                    """,
                    (address, conversation_id),
                )
                row = self._cur.fetchone()
        except psycopg2.errors.UniqueViolation as e:
            raise PersistenceConflict("target address already has a conversation") from e
        return self._require_conversation(row, conversation_id)

    def merge_conversations(self, loser_id: str, winner_id: str) -> Conversation:
        """Move loser's messages to winner and delete loser in one savepoint.

        Summed unread; winner keeps its name/avatar and inherits the loser's
        only where it has none; preview recomputed from the newest message.
        """
        with self._savepoint("merge_conversations"):
            self._cur.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE id IN (%s, %s)
                ORDER BY id
                FOR UPDATE
                """,
                (loser_id, winner_id),
            )
            rows = {str(row[0]): _conversation(row) for row in self._cur.fetchall()}
            loser = rows.get(loser_id)
            winner = rows.get(winner_id)
            if loser is None or winner is None:
                raise KeyError("merge requires both conversations to exist")

            self._cur.execute(
                """
                UPDATE messages SET conversation_id = %s, updated_at = now()
                WHERE conversation_id = %s
                """,
                (winner_id, loser_id),
            )
            self._cur.execute("DELETE FROM conversations WHERE id = %s", (loser_id,))

            self._cur.execute(
                """
                SELECT kind, text, "timestamp" FROM messages
                WHERE conversation_id = %s
                ORDER BY "timestamp" DESC NULLS LAST, created_at DESC
                LIMIT 1
                """,
                (winner_id,),
            )
            latest = self._cur.fetchone()
            if latest is not None:
                last_message = preview_text(latest[0], latest[1])
                last_message_at = latest[2] or winner.last_message_at
            else:
                last_message = winner.last_message
                last_message_at = winner.last_message_at

            self._cur.execute(
                f"""
                UPDATE conversations
                SET display_name = COALESCE(display_name, %s),
                    avatar_url = COALESCE(avatar_url, %s),
                    unread_count = unread_count + %s,
                    last_message = %s,
                    last_message_at = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING {_CONVERSATION_COLUMNS}
                """,
                (
                    loser.display_name,
                    loser.avatar_url,
                    loser.unread_count,
                    last_message,
                    last_message_at,
                    winner_id,
                ),
            )
            merged = self._require_conversation(self._cur.fetchone(), winner_id)
        return merged

    # ── Messages ──────────────────────────────────────────────────────────────

    def list_messages(self, conversation_id: str) -> list[Message]:
        self._cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE conversation_id = %s
            ORDER BY "timestamp" ASC NULLS FIRST, created_at ASC
            """,
            (conversation_id,),
        )
        return [_message(row) for row in self._cur.fetchall()]

    def get_message(self, instance_id: str, message_id: str) -> Message | None:
        self._cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE instance_id = %s AND message_id = %s
            """,
            (instance_id, message_id),
        )
        row = self._cur.fetchone()
        return _message(row) if row else None

    def create_message(self, message: NewMessage) -> tuple[Message, bool]:
        self._cur.execute(
            f"""
            INSERT INTO messages (
                instance_id, message_id, conversation_id, from_me, kind,
                sender_address, "timestamp", text, media_url, media_mime_type,
                media_key, media_file_name
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (instance_id, message_id) DO NOTHING
            RETURNING {_MESSAGE_COLUMNS}
            """,
            (
                message.instance_id,
                message.message_id,
                message.conversation_id,
                message.from_me,
                message.kind,
                message.sender_address,
                message.timestamp,
                message.text,
                message.media_url,
                message.media_mime_type,
                message.media_key,
                message.media_file_name,
            ),
        )
        row = self._cur.fetchone()
        if row is not None:
            return _message(row), True

        existing = self.get_message(message.instance_id, message.message_id)
        if existing is None:
            raise PersistenceConflict("message insert conflicted but no row found")
        return existing, False

    def update_message_media(self, message_pk: str, url: str) -> Message:
        self._cur.execute(
            f"""
            UPDATE messages
            SET media_url = %s, media_stabilized = true, updated_at = now()
            WHERE id = %s
            RETURNING {_MESSAGE_COLUMNS}
            """,
            (url, message_pk),
        )
        row = self._cur.fetchone()
        if row is None:
            raise KeyError(f"message not found: {message_pk}")
        return _message(row)

    def list_pending_media(self, instance_id: str, limit: int) -> list[Message]:
        self._cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE instance_id = %s
              AND media_url IS NOT NULL
              AND media_stabilized = false
              AND kind = ANY(%s)
            ORDER BY created_at ASC
            LIMIT %s
            """,
            (instance_id, _MEDIA_KIND_VALUES, limit),
        )
        return [_message(row) for row in self._cur.fetchall()]
