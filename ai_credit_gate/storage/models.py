"""
Data models for storage layer.

Defines database entities and the closed enumerations they use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


class Role(Enum):
    """Account role. Admins have unlimited effective credits."""
    STANDARD = "standard"
    ADMIN = "admin"


class Plan(Enum):
    """Subscription plan, used for request rate limits."""
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class TransactionCategory(Enum):
    """Ledger transaction categories."""
    USAGE = "usage"
    PURCHASE = "purchase"
    BONUS = "bonus"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin-adjustment"


# Categories accepted by CreditLedger.credit
CREDIT_CATEGORIES = frozenset({
    TransactionCategory.PURCHASE,
    TransactionCategory.BONUS,
    TransactionCategory.REFUND,
})


class ArtifactStatus(Enum):
    """Generation artifact lifecycle. Transitions only leave GENERATING."""
    GENERATING = "generating"
    READY = "ready"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ArtifactStatus.GENERATING


class MessageRole(Enum):
    """Author of a conversation message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Account:
    """Resolved caller identity with its credit balance.

    The stored balance of an admin account is bookkeeping only; authorization
    decisions go through ``is_admin``.
    """
    id: str
    subject: str
    email: str
    role: Role
    balance: Decimal
    plan: Plan = Plan.FREE
    name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass(frozen=True)
class Transaction:
    """Immutable ledger entry.

    Negative amounts are debits, positive amounts are credits. ``balance`` is
    the account balance right after this entry was applied.
    """
    id: str
    account_id: str
    amount: Decimal
    balance: Decimal
    description: str
    category: TransactionCategory
    created_at: datetime


@dataclass(frozen=True)
class Attachment:
    """File attached to a chat message."""
    type: str
    name: str
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"type": self.type, "name": self.name, "content": self.content}


@dataclass(frozen=True)
class GenerationArtifact:
    """Result of a completed generation request."""
    id: str
    account_id: str
    name: str
    slug: str
    prompt: str
    files: Dict[str, str]
    status: ArtifactStatus
    credits_cost: Decimal
    created_at: datetime
    preview: Optional[str] = None
    options: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class Conversation:
    """Chat thread owned by one account."""
    id: str
    account_id: str
    title: str
    message_count: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Message:
    """Append-only chat message."""
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime
    attachments: List[Attachment] = field(default_factory=list)
