"""
Account materialization.

Turns an external identity (subject, email) into an Account. This is the
only place where the admin capability is derived from configuration.
"""

import sqlite3
from typing import Optional

import structlog

from ai_credit_gate.config.loader import GatewayConfig
from ai_credit_gate.storage.models import Account, Role, TransactionCategory
from ai_credit_gate.storage.repository import GatewayStore
from .errors import InvalidInputError
from .ledger import CreditLedger

logger = structlog.get_logger()


class IdentityResolver:
    """Upserts accounts for authenticated identities."""

    def __init__(self, store: GatewayStore, ledger: CreditLedger, config: GatewayConfig):
        self.store = store
        self.ledger = ledger
        self.config = config

    def _role_for(self, email: str, stored: Optional[Role] = None) -> Role:
        if stored is Role.ADMIN or self.config.is_admin_email(email):
            return Role.ADMIN
        return Role.STANDARD

    def resolve(self, subject: str, email: str, name: Optional[str] = None) -> Account:
        """Return the account for an identity, creating it on first sight.

        New accounts are granted the configured starting credits as a
        ``bonus`` transaction.

        Raises:
            InvalidInputError: If subject or email is empty
        """
        if not subject or not subject.strip():
            raise InvalidInputError("subject is required and cannot be empty")
        if not email or not email.strip():
            raise InvalidInputError("email is required and cannot be empty")

        existing = self.store.get_account_by_subject(subject)
        if existing is not None:
            return self.store.update_account_profile(
                existing.id,
                email=email,
                name=name,
                role=self._role_for(email, existing.role),
            )

        try:
            account = self.store.create_account(
                subject=subject, email=email, name=name, role=self._role_for(email)
            )
        except sqlite3.IntegrityError:
            # Another request materialized the same subject first
            return self.store.get_account_by_subject(subject)

        starting = self.config.limits.starting_credits
        if starting > 0:
            self.ledger.credit(
                account.id, starting, "Welcome credits", TransactionCategory.BONUS
            )
            account = self.store.get_account(account.id)

        logger.info("account_created", account_id=account.id, role=account.role.value)
        return account
