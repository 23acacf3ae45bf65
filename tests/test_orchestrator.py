"""
Tests for request orchestration.

Runs generate and chat end to end against a real SQLite ledger and a
scripted provider.
"""

import asyncio
import os
import sqlite3
import tempfile
import time
from decimal import Decimal
from typing import List, Optional

import pytest

from ai_credit_gate.config.loader import GatewayConfig, LimitsConfig, RateLimitConfig
from ai_credit_gate.core.errors import (
    InsufficientCreditsError,
    InternalError,
    InvalidInputError,
    NotFoundError,
    ProviderRejectedError,
    ProviderUnavailableError,
    RateLimitedError,
    UnauthenticatedError,
)
from ai_credit_gate.core.identity import IdentityResolver
from ai_credit_gate.core.ledger import Balance, CreditLedger
from ai_credit_gate.core.orchestrator import RequestOrchestrator, SYSTEM_INSTRUCTION, slugify
from ai_credit_gate.core.ratelimit import RateLimiter
from ai_credit_gate.core.streaming import ChatEventType, ChatStream
from ai_credit_gate.sdk.errors import ProviderHTTPError, ProviderNetworkError
from ai_credit_gate.sdk.provider_client import (
    ChatCompletion,
    GenerateOptions,
    GenerationOutput,
    ProviderClient,
)
from ai_credit_gate.storage.db import initialize_schema
from ai_credit_gate.storage.models import Attachment, MessageRole, Plan, TransactionCategory
from ai_credit_gate.storage.repository import GatewayStore

SMALL_FILES = {"index.html": "<h1>Hello</h1>", "app.js": "console.log('hi');"}


class ScriptedProvider(ProviderClient):
    """Provider double that records calls and replays a script."""

    def __init__(self, files=None, generate_error=None, fragments=("Hi", " there"),
                 stream_error=None, block_after_first=False):
        self.files = dict(files or SMALL_FILES)
        self.generate_error = generate_error
        self.fragments = list(fragments)
        self.stream_error = stream_error
        self.block_after_first = block_after_first
        self.generate_calls = 0
        self.stream_requests: List[list] = []
        self.stream_closed = False

    async def generate(self, prompt, options=None):
        self.generate_calls += 1
        if self.generate_error is not None:
            raise self.generate_error
        return GenerationOutput(files=self.files, preview="<html></html>")

    async def chat_complete(self, messages, params=None):
        return ChatCompletion(id="c", content="".join(self.fragments), finish_reason="stop")

    def chat_stream(self, messages, params=None):
        self.stream_requests.append(list(messages))
        return self._stream()

    async def _stream(self):
        try:
            for index, fragment in enumerate(self.fragments):
                yield fragment
                if self.block_after_first and index == 0:
                    await asyncio.Event().wait()
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True


class OrchestratorTestCase:
    """Temp database, one funded standard account and one admin."""

    config = GatewayConfig(admin_emails=frozenset({"admin@example.com"}))

    def setup_method(self):
        """Set up test database and accounts."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.store = GatewayStore(self.db_path)
        self.ledger = CreditLedger(self.db_path)
        self.identity = IdentityResolver(self.store, self.ledger, self.config)
        self.account = self.identity.resolve("sub-1", "user@example.com")
        self.admin = self.identity.resolve("sub-2", "admin@example.com")

    def teardown_method(self):
        """Clean up test database."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def orchestrator(self, provider: ProviderClient, config: Optional[GatewayConfig] = None,
                     rate_limiter: Optional[RateLimiter] = None) -> RequestOrchestrator:
        return RequestOrchestrator(
            config=config or self.config,
            provider=provider,
            ledger=self.ledger,
            store=self.store,
            rate_limiter=rate_limiter,
        )

    def set_balance(self, amount: str) -> None:
        current = self.ledger.get_balance(self.account.id).amount
        self.ledger.admin_adjust(self.account.id, Decimal(amount) - current, "test setup")

    def balance(self) -> Decimal:
        return self.ledger.get_balance(self.account.id).amount

    def transaction_count(self, account_id=None) -> int:
        return self.ledger.list_transactions(account_id or self.account.id).total_items


class TestGenerate(OrchestratorTestCase):
    """Test the generate flow."""

    def test_success_charges_and_stores(self):
        """Test a successful generation is stored and charged once."""
        provider = ScriptedProvider()
        orchestrator = self.orchestrator(provider)

        result = asyncio.run(orchestrator.generate(
            self.account, "Build a landing page for a bakery", GenerateOptions(theme="light")
        ))

        assert result.credits_cost == Decimal("2.00")
        assert result.files == SMALL_FILES
        assert result.slug.startswith("build-a-landing-page-for-a-bakery-")
        assert self.balance() == Decimal("98.00")

        artifact = orchestrator.get_artifact(self.account, result.project_id)
        assert artifact.credits_cost == Decimal("2.00")
        assert artifact.options == {"theme": "light"}

        usage = self.ledger.list_transactions(self.account.id).transactions[0]
        assert usage.category == TransactionCategory.USAGE
        assert usage.amount == Decimal("-2.00")
        assert usage.description.startswith("Site generation: ")

    def test_tier_from_prompt_length(self):
        """Test a long prompt is charged the standard price."""
        orchestrator = self.orchestrator(ScriptedProvider())

        result = asyncio.run(orchestrator.generate(self.account, "a" * 600))

        assert result.credits_cost == Decimal("5.00")
        assert self.balance() == Decimal("95.00")

    def test_tier_from_file_count(self):
        """Test many output files are charged the advanced price."""
        files = {f"src/file{i}.ts": "export {};" for i in range(25)}
        orchestrator = self.orchestrator(ScriptedProvider(files=files))

        result = asyncio.run(orchestrator.generate(self.account, "Build a big dashboard"))

        assert result.credits_cost == Decimal("10.00")

    def test_provider_unavailable_not_charged(self):
        """Test a transient provider failure charges nothing."""
        provider = ScriptedProvider(generate_error=ProviderNetworkError("connection reset"))
        orchestrator = self.orchestrator(provider)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            asyncio.run(orchestrator.generate(self.account, "Build a landing page"))

        assert exc_info.value.status_code == 503
        assert self.balance() == Decimal("100.00")
        assert self.transaction_count() == 1
        assert self.store.count_artifacts(self.account.id) == 0

    def test_provider_rejection_not_charged(self):
        """Test a non-retryable provider failure maps to a rejection."""
        provider = ScriptedProvider(generate_error=ProviderHTTPError("bad request", 400))
        orchestrator = self.orchestrator(provider)

        with pytest.raises(ProviderRejectedError):
            asyncio.run(orchestrator.generate(self.account, "Build a landing page"))

        assert self.balance() == Decimal("100.00")

    def test_insufficient_credits_discards_result(self):
        """Test an unaffordable generation stores nothing and debits nothing."""
        self.set_balance("1.00")
        transactions_before = self.transaction_count()
        orchestrator = self.orchestrator(ScriptedProvider())

        with pytest.raises(InsufficientCreditsError) as exc_info:
            asyncio.run(orchestrator.generate(self.account, "Build a landing page"))

        assert exc_info.value.required == Decimal("2.00")
        assert exc_info.value.available == Decimal("1.00")
        assert exc_info.value.status_code == 402
        assert self.balance() == Decimal("1.00")
        assert self.transaction_count() == transactions_before
        assert self.store.count_artifacts(self.account.id) == 0

    def test_admin_not_debited(self):
        """Test admins generate without any ledger change."""
        orchestrator = self.orchestrator(ScriptedProvider())
        before = self.transaction_count(self.admin.id)

        result = asyncio.run(orchestrator.generate(self.admin, "Build an admin panel"))

        assert result.credits_cost == Decimal("2.00")
        assert self.transaction_count(self.admin.id) == before
        assert orchestrator.get_balance(self.admin).display_credits == "∞"

    def test_unauthenticated(self):
        """Test a missing account is rejected before the provider is called."""
        provider = ScriptedProvider()
        orchestrator = self.orchestrator(provider)

        with pytest.raises(UnauthenticatedError):
            asyncio.run(orchestrator.generate(None, "Build a landing page"))

        assert provider.generate_calls == 0

    def test_prompt_bounds(self):
        """Test prompts outside the length bounds are rejected up front."""
        provider = ScriptedProvider()
        orchestrator = self.orchestrator(provider)

        with pytest.raises(InvalidInputError, match="at least 10"):
            asyncio.run(orchestrator.generate(self.account, "   short   "))
        with pytest.raises(InvalidInputError, match="at most 5000"):
            asyncio.run(orchestrator.generate(self.account, "x" * 5001))

        assert provider.generate_calls == 0

    def test_storage_failure_after_charge(self):
        """Test a persistence failure is internal and the debit stands."""
        orchestrator = self.orchestrator(ScriptedProvider())

        def broken(**kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        self.store.create_artifact = broken

        with pytest.raises(InternalError):
            asyncio.run(orchestrator.generate(self.account, "Build a landing page"))

        assert self.balance() == Decimal("98.00")

    def test_ledger_write_leaves_event_loop_free(self):
        """Test a slow ledger write does not stall other coroutines."""
        orchestrator = self.orchestrator(ScriptedProvider())
        try_debit = self.ledger.try_debit

        def slow_debit(*args):
            time.sleep(0.2)
            return try_debit(*args)

        self.ledger.try_debit = slow_debit
        ticks = []

        async def ticker(stop):
            while not stop.is_set():
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(ticker(stop))
            try:
                return await orchestrator.generate(self.account, "Build a landing page")
            finally:
                stop.set()
                await task

        result = asyncio.run(scenario())

        assert result.credits_cost == Decimal("2.00")
        assert len(ticks) >= 5


    def test_rate_limited(self):
        """Test plan limits apply before the provider is called."""
        provider = ScriptedProvider()
        limiter = RateLimiter(RateLimitConfig(max_requests={plan: 1 for plan in Plan}))
        orchestrator = self.orchestrator(provider, rate_limiter=limiter)

        asyncio.run(orchestrator.generate(self.account, "Build a landing page"))
        with pytest.raises(RateLimitedError):
            asyncio.run(orchestrator.generate(self.account, "Build another page"))

        assert provider.generate_calls == 1

    def test_artifact_lookup_is_scoped(self):
        """Test another account cannot fetch the project."""
        orchestrator = self.orchestrator(ScriptedProvider())
        result = asyncio.run(orchestrator.generate(self.account, "Build a landing page"))

        with pytest.raises(NotFoundError):
            orchestrator.get_artifact(self.admin, result.project_id)


class TestChat(OrchestratorTestCase):
    """Test the chat flow."""

    def _chat(self, orchestrator, account, message, conversation_id=None, attachments=None):
        async def scenario():
            stream = await orchestrator.chat(account, message, conversation_id, attachments)
            return stream, await stream.collect()
        return asyncio.run(scenario())

    def test_exchange_persisted_and_charged(self):
        """Test a completed exchange stores both messages and charges once."""
        provider = ScriptedProvider()
        orchestrator = self.orchestrator(provider)

        stream, events = self._chat(orchestrator, self.account, "Hello, how do I center a div?")

        assert [e.type for e in events] == [
            ChatEventType.FRAGMENT, ChatEventType.FRAGMENT, ChatEventType.DONE
        ]
        assert stream.text == "Hi there"
        assert stream.credits_cost == Decimal("0.30")
        assert self.balance() == Decimal("99.70")

        detail = orchestrator.get_conversation(self.account, stream.conversation_id)
        assert detail.conversation.title == "Hello, how do I center a div?"
        assert detail.conversation.message_count == 2
        assert [(m.role, m.content) for m in detail.messages] == [
            (MessageRole.USER, "Hello, how do I center a div?"),
            (MessageRole.ASSISTANT, "Hi there"),
        ]
        assert provider.stream_closed

    def test_attachments_cost_more(self):
        """Test attachments switch to the attachment price and are stored."""
        orchestrator = self.orchestrator(ScriptedProvider())
        attachment = Attachment(type="image", name="screen.png")

        stream, _ = self._chat(orchestrator, self.account, "What is wrong here?", attachments=[attachment])

        assert stream.credits_cost == Decimal("0.50")
        assert self.balance() == Decimal("99.50")
        messages = orchestrator.get_conversation(self.account, stream.conversation_id).messages
        assert messages[0].attachments == [attachment]

    def test_message_count_tracks_exchanges(self):
        """Test message count is twice the completed exchanges."""
        orchestrator = self.orchestrator(ScriptedProvider())
        stream, _ = self._chat(orchestrator, self.account, "first question")
        for text in ("second question", "third question"):
            self._chat(orchestrator, self.account, text, stream.conversation_id)

        detail = orchestrator.get_conversation(self.account, stream.conversation_id)
        assert detail.conversation.message_count == 6
        assert len(detail.messages) == 6
        assert self.balance() == Decimal("99.10")
        assert len(orchestrator.list_conversations(self.account)) == 1

    def test_context_is_recent_window(self):
        """Test the provider sees the system instruction and the latest messages."""
        config = GatewayConfig(limits=LimitsConfig(context_messages=3))
        provider = ScriptedProvider()
        orchestrator = self.orchestrator(provider, config=config)
        stream, _ = self._chat(orchestrator, self.account, "one")
        self._chat(orchestrator, self.account, "two", stream.conversation_id)
        self._chat(orchestrator, self.account, "three", stream.conversation_id)

        context = provider.stream_requests[-1]

        assert context == [
            {"role": "system", "content": SYSTEM_INSTRUCTION},
            {"role": "user", "content": "two"},
            {"role": "assistant", "content": "Hi there"},
            {"role": "user", "content": "three"},
        ]

    def test_insufficient_credits_stores_nothing(self):
        """Test an unaffordable message creates nothing and opens no stream."""
        self.set_balance("0.20")
        transactions_before = self.transaction_count()
        provider = ScriptedProvider()
        orchestrator = self.orchestrator(provider)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            asyncio.run(orchestrator.chat(self.account, "Hello there"))

        assert exc_info.value.required == Decimal("0.30")
        assert exc_info.value.available == Decimal("0.20")
        assert orchestrator.list_conversations(self.account) == []
        assert provider.stream_requests == []
        assert self.transaction_count() == transactions_before

    def test_unknown_conversation(self):
        """Test a conversation id the caller does not own is not found."""
        orchestrator = self.orchestrator(ScriptedProvider())
        stream, _ = self._chat(orchestrator, self.admin, "admin question")

        with pytest.raises(NotFoundError):
            asyncio.run(orchestrator.chat(self.account, "Hello", stream.conversation_id))
        with pytest.raises(NotFoundError):
            asyncio.run(orchestrator.chat(self.account, "Hello", "does-not-exist"))

        assert self.balance() == Decimal("100.00")

    def test_mid_stream_failure_keeps_debit(self):
        """Test a provider failure after delivery starts ends with an error."""
        provider = ScriptedProvider(
            fragments=("Partial",), stream_error=ProviderNetworkError("stream dropped")
        )
        orchestrator = self.orchestrator(provider)

        stream, events = self._chat(orchestrator, self.account, "Tell me a story")

        assert [e.type for e in events] == [ChatEventType.FRAGMENT, ChatEventType.ERROR]
        assert isinstance(events[-1].error, ProviderUnavailableError)
        assert self.balance() == Decimal("99.70")
        detail = orchestrator.get_conversation(self.account, stream.conversation_id)
        assert [m.role for m in detail.messages] == [MessageRole.USER]
        assert detail.conversation.message_count == 0

    def test_abort_discards_partial_reply(self):
        """Test closing the stream early persists no assistant message."""
        provider = ScriptedProvider(fragments=("First", "Second"), block_after_first=True)
        orchestrator = self.orchestrator(provider)

        async def scenario():
            stream = await orchestrator.chat(self.account, "Tell me a long story")
            events = stream.__aiter__()
            first = await events.__anext__()
            await stream.aclose()
            return stream, first

        stream, first = asyncio.run(scenario())

        assert first.content == "First"
        assert provider.stream_closed
        assert self.balance() == Decimal("99.70")
        detail = orchestrator.get_conversation(self.account, stream.conversation_id)
        assert [m.role for m in detail.messages] == [MessageRole.USER]
        assert detail.conversation.message_count == 0

    def test_concurrent_chats_only_paid_one_stored(self):
        """Test two messages racing for the last credits store only the paid one."""
        self.set_balance("0.30")
        orchestrator = self.orchestrator(ScriptedProvider())

        async def scenario():
            return await asyncio.gather(
                orchestrator.chat(self.account, "First question"),
                orchestrator.chat(self.account, "Second question"),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        streams = [r for r in results if isinstance(r, ChatStream)]
        failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(streams) == 1
        assert len(failures) == 1
        assert failures[0].available == Decimal("0.00")
        assert self.balance() == Decimal("0.00")
        conversations = orchestrator.list_conversations(self.account)
        assert [c.id for c in conversations] == [streams[0].conversation_id]
        messages = orchestrator.get_conversation(self.account, streams[0].conversation_id).messages
        assert len(messages) == 1

    def test_stale_balance_cannot_store_unpaid_message(self):
        """Test the debit itself decides whether the message is stored."""
        orchestrator = self.orchestrator(ScriptedProvider())
        stream, _ = self._chat(orchestrator, self.account, "first question")
        self.set_balance("0.20")
        self.ledger.get_balance = lambda account_id: Balance(Decimal("1.00"), False)

        with pytest.raises(InsufficientCreditsError):
            asyncio.run(orchestrator.chat(self.account, "Hello there", stream.conversation_id))

        messages = orchestrator.get_conversation(self.account, stream.conversation_id).messages
        assert [m.content for m in messages] == ["first question", "Hi there"]

    def test_message_storage_failure_after_charge(self):
        """Test a persistence failure after the debit is internal and opens no stream."""
        provider = ScriptedProvider()
        orchestrator = self.orchestrator(provider)

        def broken(*args):
            raise sqlite3.OperationalError("disk I/O error")

        self.store.add_message = broken

        with pytest.raises(InternalError):
            asyncio.run(orchestrator.chat(self.account, "Hello there"))

        assert self.balance() == Decimal("99.70")
        assert provider.stream_requests == []


    def test_admin_chat_not_debited(self):
        """Test admins chat without ledger changes."""
        orchestrator = self.orchestrator(ScriptedProvider())
        before = self.transaction_count(self.admin.id)

        self._chat(orchestrator, self.admin, "Hello from the admin")

        assert self.transaction_count(self.admin.id) == before

    def test_empty_message_rejected(self):
        """Test blank messages are rejected."""
        orchestrator = self.orchestrator(ScriptedProvider())

        with pytest.raises(InvalidInputError):
            asyncio.run(orchestrator.chat(self.account, "   "))

    def test_unauthenticated(self):
        """Test chat requires an account."""
        orchestrator = self.orchestrator(ScriptedProvider())

        with pytest.raises(UnauthenticatedError):
            asyncio.run(orchestrator.chat(None, "Hello"))


class TestCreditOperations(OrchestratorTestCase):
    """Test balance and privileged credit operations."""

    def test_balance_view(self):
        """Test balances are shown with two decimals."""
        self.set_balance("12.5")
        orchestrator = self.orchestrator(ScriptedProvider())

        view = orchestrator.get_balance(self.account)

        assert view.credits == Decimal("12.50")
        assert view.display_credits == "12.50"
        assert not view.is_admin

    def test_add_credits(self):
        """Test purchases add to the balance."""
        orchestrator = self.orchestrator(ScriptedProvider())

        result = orchestrator.add_credits(self.account.id, "10", TransactionCategory.PURCHASE)

        assert result.new_total == Decimal("110.00")
        assert result.transaction.description == "Credit purchase"

    def test_adjust_credits(self):
        """Test adjustments floor at zero."""
        orchestrator = self.orchestrator(ScriptedProvider())

        result = orchestrator.adjust_credits(self.account.id, "-500", "Chargeback")

        assert result.new_balance == Decimal("0.00")
        assert orchestrator.get_balance(self.account).display_credits == "0.00"

    def test_history(self):
        """Test history is paged newest first."""
        orchestrator = self.orchestrator(ScriptedProvider())
        asyncio.run(orchestrator.generate(self.account, "Build a landing page"))

        page = orchestrator.list_transactions(self.account, page=1, limit=1)

        assert page.total_items == 2
        assert page.transactions[0].category == TransactionCategory.USAGE


class TestSlugify:
    """Test project slugs."""

    def test_slugify(self):
        """Test punctuation is removed and whitespace collapsed."""
        assert slugify("Build a Landing Page!") == "build-a-landing-page"
        assert slugify("  multiple   spaces -- and_underscores ") == "multiple-spaces-and-underscores"
        assert slugify("!!!") == ""
