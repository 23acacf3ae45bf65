"""
Request orchestration.

Sequences validation, pricing, the provider call, persistence and the
ledger charge for generate and chat requests, and defines what happens
when a step fails partway through.

Charging policy:
1. Generate charges after the provider succeeds. A failed generation is
   never charged; a successful one the caller cannot afford is discarded
   without being stored.
2. Chat charges a fixed price before the stream opens. The debit stays in
   place if the stream later fails or the caller aborts.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import structlog

from ai_credit_gate.config.loader import GatewayConfig
from ai_credit_gate.sdk.errors import ProviderError
from ai_credit_gate.sdk.provider_client import ChatMessage, GenerateOptions, ProviderClient
from ai_credit_gate.storage.models import (
    Account,
    Attachment,
    Conversation,
    GenerationArtifact,
    Message,
    MessageRole,
    TransactionCategory,
)
from ai_credit_gate.storage.repository import GatewayStore, new_id
from .errors import (
    GatewayError,
    InsufficientCreditsError,
    InternalError,
    InvalidInputError,
    NotFoundError,
    UnauthenticatedError,
    provider_error_to_gateway,
)
from .ledger import AdjustmentResult, Balance, CreditLedger, CreditResult, TransactionPage
from .pricing import calculate_chat_cost, calculate_generation_cost, format_credits
from .ratelimit import RateLimiter
from .streaming import ChatStream, FragmentChannel

logger = structlog.get_logger()

SYSTEM_INSTRUCTION = (
    "You are an advanced AI assistant. You help users build web applications, "
    "write code and answer technical questions. Be helpful and precise, and "
    "include code examples when appropriate."
)


def slugify(text: str) -> str:
    """Lower-case URL slug made of word characters and single hyphens."""
    text = re.sub(r"[^\w\s-]", "", text.lower().strip())
    text = re.sub(r"[\s_-]+", "-", text)
    return text.strip("-")


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    result = ""
    while True:
        number, remainder = divmod(number, 36)
        result = digits[remainder] + result
        if number == 0:
            return result


@dataclass(frozen=True)
class GenerateResult:
    """Successful generation as returned to the caller."""
    project_id: str
    slug: str
    files: Dict[str, str]
    credits_cost: Decimal
    preview: Optional[str] = None


@dataclass(frozen=True)
class BalanceView:
    """Balance as shown to the caller."""
    credits: Optional[Decimal]
    display_credits: str
    is_admin: bool


@dataclass(frozen=True)
class ConversationDetail:
    conversation: Conversation
    messages: List[Message]


class RequestOrchestrator:
    """Drives generate and chat requests end to end."""

    def __init__(
        self,
        config: GatewayConfig,
        provider: ProviderClient,
        ledger: CreditLedger,
        store: GatewayStore,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.config = config
        self.provider = provider
        self.ledger = ledger
        self.store = store
        self.rate_limiter = rate_limiter

    def _authenticate(self, account: Optional[Account]) -> Account:
        if account is None:
            raise UnauthenticatedError()
        return account

    def _admit(self, account: Account) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.check(account)

    def _validate_prompt(self, prompt: str) -> str:
        limits = self.config.limits
        if not isinstance(prompt, str):
            raise InvalidInputError("prompt must be a string")
        length = len(prompt.strip())
        if length < limits.prompt_min_length:
            raise InvalidInputError(
                f"Prompt must be at least {limits.prompt_min_length} characters",
                details={"min_length": limits.prompt_min_length},
            )
        if len(prompt) > limits.prompt_max_length:
            raise InvalidInputError(
                f"Prompt must be at most {limits.prompt_max_length} characters",
                details={"max_length": limits.prompt_max_length},
            )
        return prompt

    async def generate(
        self,
        account: Optional[Account],
        prompt: str,
        options: Optional[GenerateOptions] = None,
    ) -> GenerateResult:
        """Generate a project from a prompt and charge for it.

        Raises:
            UnauthenticatedError: If no account is given
            InvalidInputError: If the prompt is out of bounds
            RateLimitedError: If the account exceeded its plan's request rate
            ProviderUnavailableError: If the provider kept failing transiently
            ProviderRejectedError: If the provider refused the request
            InsufficientCreditsError: If the account cannot pay; nothing is stored
            InternalError: If storing the artifact fails after charging
        """
        account = self._authenticate(account)
        prompt = self._validate_prompt(prompt)
        self._admit(account)
        log = logger.bind(account_id=account.id, operation="generate")

        started = time.monotonic()
        try:
            output = await self.provider.generate(prompt, options)
        except ProviderError as e:
            log.warning("generation_failed", status_code=e.status_code, error=e.message)
            raise provider_error_to_gateway(e)

        cost = calculate_generation_cost(prompt, output.files, self.config.generation_pricing)
        name = f"Project {datetime.now().strftime('%Y-%m-%d')}"

        if not account.is_admin:
            debit = await asyncio.to_thread(
                self.ledger.try_debit, account.id, cost, f"Site generation: {name}"
            )
            if not debit.ok:
                log.info(
                    "generation_discarded",
                    required=str(cost),
                    available=str(debit.balance.amount),
                )
                raise InsufficientCreditsError(required=cost, available=debit.balance.amount)

        slug = f"{slugify(prompt[:50]) or 'project'}-{_base36(time.time_ns() // 1_000_000)}{new_id()[:4]}"
        try:
            artifact = await asyncio.to_thread(
                self.store.create_artifact,
                account_id=account.id,
                name=name,
                slug=slug,
                prompt=prompt,
                files=output.files,
                preview=output.preview,
                options=options.to_payload() if options else {},
                credits_cost=cost,
            )
        except Exception as e:
            # The debit above is intentionally not compensated.
            log.error("artifact_persist_failed", credits_cost=str(cost), error=str(e))
            raise InternalError("Failed to store generated project") from e

        log.info(
            "generation_completed",
            project_id=artifact.id,
            credits_cost=str(cost),
            file_count=len(output.files),
            elapsed_seconds=round(time.monotonic() - started, 3),
        )
        return GenerateResult(
            project_id=artifact.id,
            slug=artifact.slug,
            files=artifact.files,
            preview=artifact.preview,
            credits_cost=cost,
        )

    async def chat(
        self,
        account: Optional[Account],
        message: str,
        conversation_id: Optional[str] = None,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> ChatStream:
        """Send a chat message and return the stream of the reply.

        Everything up to and including the debit happens before this
        coroutine returns; the provider stream opens when the caller starts
        iterating.

        Raises:
            UnauthenticatedError: If no account is given
            InvalidInputError: If the message is empty
            RateLimitedError: If the account exceeded its plan's request rate
            NotFoundError: If ``conversation_id`` does not belong to the caller
            InsufficientCreditsError: If the account cannot pay; nothing is stored
            InternalError: If storing the message fails after charging
        """
        account = self._authenticate(account)
        if not isinstance(message, str) or not message.strip():
            raise InvalidInputError("Message is required")
        attachments = list(attachments or [])
        self._admit(account)

        cost = calculate_chat_cost(attachments, self.config.chat_pricing)

        conversation = None
        if conversation_id:
            conversation = await asyncio.to_thread(
                self.store.get_conversation, conversation_id, account.id
            )
            if conversation is None:
                raise NotFoundError(f"Conversation not found: {conversation_id}")

        # The debit is the balance check; nothing is stored unless it succeeds
        if not account.is_admin:
            target = conversation.id if conversation else "new conversation"
            debit = await asyncio.to_thread(
                self.ledger.try_debit, account.id, cost, f"Chat message in {target}"
            )
            if not debit.ok:
                raise InsufficientCreditsError(required=cost, available=debit.balance.amount)

        try:
            if conversation is None:
                conversation = await asyncio.to_thread(
                    self.store.create_conversation,
                    account.id,
                    message.strip()[:self.config.limits.title_length],
                )
            await asyncio.to_thread(
                self.store.add_message, conversation.id, MessageRole.USER, message, attachments
            )
        except Exception as e:
            # The debit above is intentionally not compensated.
            logger.error("chat_message_persist_failed", account_id=account.id, error=str(e))
            raise InternalError("Failed to store chat message") from e
        log = logger.bind(account_id=account.id, conversation_id=conversation.id)

        context = await asyncio.to_thread(self._build_context, conversation.id)
        channel = FragmentChannel(
            self.provider.chat_stream(context),
            put_timeout=self.config.provider.timeout_seconds,
        )

        def on_complete(reply: str) -> None:
            try:
                self.store.add_message(conversation.id, MessageRole.ASSISTANT, reply)
                self.store.record_exchange(conversation.id)
            except Exception as e:
                log.error("assistant_persist_failed", error=str(e))
                raise InternalError("Failed to store assistant reply") from e
            log.info("chat_completed", reply_chars=len(reply), credits_cost=str(cost))

        def on_failure(error: BaseException) -> GatewayError:
            # The chat debit is not refunded when delivery fails mid-stream.
            log.warning("chat_stream_failed", error=str(error), credits_cost=str(cost))
            if isinstance(error, ProviderError):
                return provider_error_to_gateway(error)
            return InternalError("Chat stream failed")

        return ChatStream(conversation.id, cost, channel, on_complete, on_failure)

    def _build_context(self, conversation_id: str) -> List[ChatMessage]:
        """System instruction plus the most recent messages, oldest first."""
        history = self.store.recent_messages(
            conversation_id, self.config.limits.context_messages
        )
        context = [{"role": MessageRole.SYSTEM.value, "content": SYSTEM_INSTRUCTION}]
        context.extend({"role": m.role.value, "content": m.content} for m in history)
        return context

    def get_balance(self, account: Optional[Account]) -> BalanceView:
        """Current balance for display."""
        account = self._authenticate(account)
        balance = self.ledger.get_balance(account.id)
        return _balance_view(balance)

    def list_transactions(
        self, account: Optional[Account], page: int = 1, limit: int = 20
    ) -> TransactionPage:
        account = self._authenticate(account)
        return self.ledger.list_transactions(account.id, page=page, limit=limit)

    def add_credits(
        self,
        account_id: str,
        amount,
        category: TransactionCategory,
        description: Optional[str] = None,
    ) -> CreditResult:
        """Privileged credit. Caller authorization is the calling layer's job."""
        return self.ledger.credit(
            account_id, amount, description or f"Credit {category.value}", category
        )

    def adjust_credits(self, account_id: str, delta, reason: str) -> AdjustmentResult:
        """Privileged signed adjustment. Caller authorization is the calling layer's job."""
        return self.ledger.admin_adjust(account_id, delta, reason)

    def get_artifact(self, account: Optional[Account], artifact_id: str) -> GenerationArtifact:
        account = self._authenticate(account)
        artifact = self.store.get_artifact(artifact_id, account.id)
        if artifact is None:
            raise NotFoundError(f"Project not found: {artifact_id}")
        return artifact

    def get_conversation(self, account: Optional[Account], conversation_id: str) -> ConversationDetail:
        account = self._authenticate(account)
        conversation = self.store.get_conversation(conversation_id, account.id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return ConversationDetail(conversation, self.store.list_messages(conversation.id))

    def list_conversations(self, account: Optional[Account], limit: int = 50) -> List[Conversation]:
        account = self._authenticate(account)
        return self.store.list_conversations(account.id, limit=limit)


def _balance_view(balance: Balance) -> BalanceView:
    return BalanceView(
        credits=None if balance.unlimited else balance.amount,
        display_credits=format_credits(balance.amount, balance.unlimited),
        is_admin=balance.unlimited,
    )
