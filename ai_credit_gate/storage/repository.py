"""
Repository pattern for data access.

Handles persistence of accounts, generation artifacts, conversations and
messages. Account balances are read here but only ever written by the ledger.
"""

import json
import sqlite3
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    Account,
    ArtifactStatus,
    Attachment,
    Conversation,
    GenerationArtifact,
    Message,
    MessageRole,
    Plan,
    Role,
)


def new_id() -> str:
    """Return a new opaque entity identifier."""
    return uuid.uuid4().hex


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        subject=row["subject"],
        email=row["email"],
        name=row["name"],
        role=Role(row["role"]),
        plan=Plan(row["plan"]),
        balance=Decimal(row["balance"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_artifact(row: sqlite3.Row) -> GenerationArtifact:
    return GenerationArtifact(
        id=row["id"],
        account_id=row["account_id"],
        name=row["name"],
        slug=row["slug"],
        prompt=row["prompt"],
        files=json.loads(row["files"]),
        preview=row["preview"],
        options=json.loads(row["options"]),
        status=ArtifactStatus(row["status"]),
        credits_cost=Decimal(row["credits_cost"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        account_id=row["account_id"],
        title=row["title"],
        message_count=row["message_count"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        attachments=[Attachment(**item) for item in json.loads(row["attachments"])],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class GatewayStore:
    """Repository for the durable domain objects of the gateway.

    Each call opens its own connection so the store can be shared by
    concurrent request tasks.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = get_connection(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # Accounts

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get an account by its identifier."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM account WHERE id = ?", (account_id,)
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def get_account_by_subject(self, subject: str) -> Optional[Account]:
        """Get an account by the external identity subject."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM account WHERE subject = ?", (subject,)
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            conn.close()

    def create_account(
        self,
        subject: str,
        email: str,
        role: Role,
        name: Optional[str] = None,
        plan: Plan = Plan.FREE,
    ) -> Account:
        """Insert a new account with a zero balance.

        Starting credits are granted afterwards through the ledger so that
        every balance change has a matching transaction.
        """
        account_id = new_id()
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO account (id, subject, email, name, role, plan, balance, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                account_id,
                subject,
                email,
                name,
                role.value,
                plan.value,
                "0.00",
                datetime.now().isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()
        return self.get_account(account_id)

    def update_account_profile(
        self,
        account_id: str,
        email: str,
        role: Role,
        name: Optional[str] = None,
    ) -> Account:
        """Refresh identity fields of an existing account. Balance is untouched."""
        conn = self._connect()
        try:
            conn.execute(
                "UPDATE account SET email = ?, name = ?, role = ? WHERE id = ?",
                (email, name, role.value, account_id),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_account(account_id)

    def set_plan(self, account_id: str, plan: Plan) -> Account:
        """Change the plan of an account."""
        conn = self._connect()
        try:
            conn.execute("UPDATE account SET plan = ? WHERE id = ?", (plan.value, account_id))
            conn.commit()
        finally:
            conn.close()
        return self.get_account(account_id)

    # Generation artifacts

    def create_artifact(
        self,
        account_id: str,
        name: str,
        slug: str,
        prompt: str,
        files: Dict[str, str],
        credits_cost: Decimal,
        preview: Optional[str] = None,
        options: Optional[Dict[str, object]] = None,
        status: ArtifactStatus = ArtifactStatus.READY,
    ) -> GenerationArtifact:
        """Persist a generation artifact."""
        artifact_id = new_id()
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO generation_artifact
                (id, account_id, name, slug, prompt, files, preview, options,
                 status, credits_cost, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                artifact_id,
                account_id,
                name,
                slug,
                prompt,
                json.dumps(files),
                preview,
                json.dumps(options or {}),
                status.value,
                str(credits_cost),
                datetime.now().isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()
        return self.get_artifact(artifact_id, account_id)

    def get_artifact(self, artifact_id: str, account_id: str) -> Optional[GenerationArtifact]:
        """Get an artifact, only if it belongs to the given account."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM generation_artifact WHERE id = ? AND account_id = ?",
                (artifact_id, account_id),
            ).fetchone()
            return _row_to_artifact(row) if row else None
        finally:
            conn.close()

    def count_artifacts(self, account_id: str) -> int:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM generation_artifact WHERE account_id = ?",
                (account_id,),
            ).fetchone()
            return row[0]
        finally:
            conn.close()

    # Conversations and messages

    def create_conversation(self, account_id: str, title: str) -> Conversation:
        """Create an empty conversation."""
        conversation_id = new_id()
        now = datetime.now().isoformat()
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO conversation (id, account_id, title, message_count, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
            """, (conversation_id, account_id, title, now, now))
            conn.commit()
        finally:
            conn.close()
        return self.get_conversation(conversation_id, account_id)

    def get_conversation(self, conversation_id: str, account_id: str) -> Optional[Conversation]:
        """Get a conversation, only if it belongs to the given account."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM conversation WHERE id = ? AND account_id = ?",
                (conversation_id, account_id),
            ).fetchone()
            return _row_to_conversation(row) if row else None
        finally:
            conn.close()

    def list_conversations(self, account_id: str, limit: int = 50) -> List[Conversation]:
        """List conversations, most recently updated first."""
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT * FROM conversation WHERE account_id = ?
                ORDER BY updated_at DESC, seq DESC LIMIT ?
            """, (account_id, limit)).fetchall()
            return [_row_to_conversation(row) for row in rows]
        finally:
            conn.close()

    def record_exchange(self, conversation_id: str, messages_added: int = 2) -> None:
        """Bump the message counter and update timestamp after a completed exchange."""
        conn = self._connect()
        try:
            conn.execute("""
                UPDATE conversation
                SET message_count = message_count + ?, updated_at = ?
                WHERE id = ?
            """, (messages_added, datetime.now().isoformat(), conversation_id))
            conn.commit()
        finally:
            conn.close()

    def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> Message:
        """Append a message to a conversation."""
        message = Message(
            id=new_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            attachments=list(attachments or []),
            created_at=datetime.now(),
        )
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO message (id, conversation_id, role, content, attachments, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                message.id,
                message.conversation_id,
                message.role.value,
                message.content,
                json.dumps([a.to_dict() for a in message.attachments]),
                message.created_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()
        return message

    def list_messages(self, conversation_id: str) -> List[Message]:
        """All messages of a conversation in chronological order."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM message WHERE conversation_id = ? ORDER BY seq ASC",
                (conversation_id,),
            ).fetchall()
            return [_row_to_message(row) for row in rows]
        finally:
            conn.close()

    def recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        """The ``limit`` most recent messages, returned oldest first."""
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT * FROM (
                    SELECT * FROM message WHERE conversation_id = ?
                    ORDER BY seq DESC LIMIT ?
                ) ORDER BY seq ASC
            """, (conversation_id, limit)).fetchall()
            return [_row_to_message(row) for row in rows]
        finally:
            conn.close()
