"""
Conversation store: SQLite- or Postgres-backed AI conversations and their messages.

Conversations table: (id, case_id, agent_type, created_at)
Messages table: (seq, id, conversation_id, role, content, tool_calls, created_at)

Messages form an append-only log; `seq` is the replay order.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from case_agent.storage.db import ensure_db, new_id, sql, transaction, utc_timestamp

logger = logging.getLogger("case-agent")


def create_conversation(case_id: Optional[str], agent_type: str) -> str:
    """Create a new conversation; return its id."""
    ensure_db()
    conversation_id = new_id()
    with transaction() as conn:
        conn.execute(
            sql("INSERT INTO ai_conversations (id, case_id, agent_type, created_at) VALUES (?, ?, ?, ?)"),
            (conversation_id, case_id, agent_type, utc_timestamp()),
        )
    return conversation_id


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    """Return the conversation row or None. Does not load messages."""
    ensure_db()
    with transaction() as conn:
        row = conn.execute(
            sql("SELECT id, case_id, agent_type, created_at FROM ai_conversations WHERE id = ?"),
            (conversation_id,),
        ).fetchone()
    if row is None:
        return None
    return {
        "id": row["id"],
        "case_id": row["case_id"],
        "agent_type": row["agent_type"],
        "created_at": row["created_at"],
    }


def append_messages(conversation_id: str, messages: List[Dict[str, Any]]) -> int:
    """
    Append messages to a conversation in list order. Each message: { role, content, tool_calls? }.
    Returns number of messages appended (0 when the conversation does not exist).
    """
    if not messages:
        return 0
    ensure_db()
    with transaction() as conn:
        cur = conn.execute(sql("SELECT id FROM ai_conversations WHERE id = ?"), (conversation_id,))
        if cur.fetchone() is None:
            return 0
        appended = 0
        for msg in messages:
            tool_calls = msg.get("tool_calls")
            conn.execute(
                sql(
                    "INSERT INTO ai_conversation_messages "
                    "(id, conversation_id, role, content, tool_calls, created_at) VALUES (?, ?, ?, ?, ?, ?)"
                ),
                (
                    new_id(),
                    conversation_id,
                    msg.get("role", "user"),
                    msg.get("content") or "",
                    json.dumps(tool_calls) if tool_calls else None,
                    utc_timestamp(),
                ),
            )
            appended += 1
    return appended


def _row_to_message(row: Any) -> Dict[str, Any]:
    tool_calls = None
    if row["tool_calls"]:
        try:
            tool_calls = json.loads(row["tool_calls"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("unreadable tool_calls on message id=%s", row["id"])
    return {
        "id": row["id"],
        "role": row["role"],
        "content": row["content"],
        "tool_calls": tool_calls,
        "created_at": row["created_at"],
    }


def list_recent_messages(conversation_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Return the last `limit` messages of a conversation, oldest first."""
    ensure_db()
    with transaction() as conn:
        rows = conn.execute(
            sql(
                "SELECT id, role, content, tool_calls, created_at FROM ai_conversation_messages "
                "WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?"
            ),
            (conversation_id, limit),
        ).fetchall()
    return [_row_to_message(r) for r in reversed(rows)]


def get_transcript(conversation_id: str) -> Optional[Dict[str, Any]]:
    """
    Return conversation dict with id, case_id, agent_type, created_at and all messages
    in insertion order, or None when the conversation is not found.
    """
    conversation = get_conversation(conversation_id)
    if conversation is None:
        return None
    with transaction() as conn:
        rows = conn.execute(
            sql(
                "SELECT id, role, content, tool_calls, created_at FROM ai_conversation_messages "
                "WHERE conversation_id = ? ORDER BY seq"
            ),
            (conversation_id,),
        ).fetchall()
    conversation["messages"] = [_row_to_message(r) for r in rows]
    return conversation
