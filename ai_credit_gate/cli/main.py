"""
CLI interface for AI Credit Gate.

Operator access to balances, ledger operations, and generate/chat requests.
"""

import asyncio
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_credit_gate.config.loader import GatewayConfig, load_gateway_config
from ai_credit_gate.core.errors import GatewayError, InsufficientCreditsError
from ai_credit_gate.core.identity import IdentityResolver
from ai_credit_gate.core.ledger import CreditLedger
from ai_credit_gate.core.orchestrator import RequestOrchestrator
from ai_credit_gate.core.ratelimit import RateLimiter
from ai_credit_gate.core.streaming import ChatEventType
from ai_credit_gate.log import configure_logging
from ai_credit_gate.sdk.provider_client import GenerateOptions, build_provider_client, detect_language
from ai_credit_gate.storage.db import DEFAULT_DB_PATH, initialize_schema
from ai_credit_gate.storage.models import Account, Attachment, Plan, TransactionCategory
from ai_credit_gate.storage.repository import GatewayStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_INSUFFICIENT_CREDITS = 2


@dataclass
class Gateway:
    """Collaborators wired for one CLI invocation."""
    config: GatewayConfig
    store: GatewayStore
    ledger: CreditLedger
    identity: IdentityResolver
    orchestrator: RequestOrchestrator


def build_gateway(db_path: str, config_path: Optional[str]) -> Gateway:
    """Load configuration and wire store, ledger, provider and orchestrator."""
    config = load_gateway_config(config_path)
    initialize_schema(db_path)
    store = GatewayStore(db_path)
    ledger = CreditLedger(db_path)
    orchestrator = RequestOrchestrator(
        config=config,
        provider=build_provider_client(config.provider),
        ledger=ledger,
        store=store,
        rate_limiter=RateLimiter(config.rate_limits),
    )
    return Gateway(
        config=config,
        store=store,
        ledger=ledger,
        identity=IdentityResolver(store, ledger, config),
        orchestrator=orchestrator,
    )


def _gateway(ctx: typer.Context) -> Gateway:
    return build_gateway(ctx.obj["db_path"], ctx.obj["config_path"])


def _existing_account(gateway: Gateway, email: str) -> Account:
    account = gateway.store.get_account_by_subject(email)
    if account is None:
        console.print(f"[red]Error:[/] No account for {email}")
        sys.exit(EXIT_CODE_FAIL)
    return account


def _parse_amount(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"Not a number: {value}")


def _report_error(error: GatewayError) -> None:
    """Print a specific message for each error kind."""
    if isinstance(error, InsufficientCreditsError):
        console.print(
            f"[red]Insufficient credits:[/] required {error.required:.2f}, "
            f"available {error.available:.2f}"
        )
        sys.exit(EXIT_CODE_INSUFFICIENT_CREDITS)
    console.print(f"[red]Error ({error.kind.value}):[/] {error.message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db_path: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database file"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    log_level: str = typer.Option("warning", "--log-level", help="debug, info, warning or error"),
):
    """AI Credit Gate CLI."""
    configure_logging(log_level)
    ctx.obj = {"db_path": db_path, "config_path": config_path}
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Gate - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the AI Credit Gate database."""
    try:
        initialize_schema(ctx.obj["db_path"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", "-u", help="Account email"),
):
    """Show the credit balance of an account, creating it on first use."""
    gateway = _gateway(ctx)
    try:
        account = gateway.identity.resolve(email, email)
        view = gateway.orchestrator.get_balance(account)
    except GatewayError as e:
        _report_error(e)
    role = "admin" if view.is_admin else "standard"
    console.print(f"{email} ({role}): [bold]{view.display_credits}[/] credits")
    console.print(f"Plan: {account.plan.value}, projects: {gateway.store.count_artifacts(account.id)}")


@app.command()
def history(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", "-u", help="Account email"),
    page: int = typer.Option(1, "--page", help="Page number"),
    limit: int = typer.Option(20, "--limit", help="Transactions per page"),
):
    """List ledger transactions, newest first."""
    gateway = _gateway(ctx)
    account = _existing_account(gateway, email)
    try:
        result = gateway.orchestrator.list_transactions(account, page=page, limit=limit)
    except GatewayError as e:
        _report_error(e)

    table = Table(title=f"Transactions for {email}")
    table.add_column("Date")
    table.add_column("Category")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Description")
    for transaction in result.transactions:
        table.add_row(
            transaction.created_at.strftime("%Y-%m-%d %H:%M"),
            transaction.category.value,
            f"{transaction.amount:+.2f}",
            f"{transaction.balance:.2f}",
            transaction.description,
        )
    console.print(table)
    console.print(
        f"Page {result.page} of {max(result.total_pages, 1)} "
        f"({result.total_items} transactions)"
    )
    total = gateway.ledger.transaction_total(account.id)
    console.print(f"Ledger total: {total:.2f}")


@app.command("add-credits")
def add_credits(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", "-u", help="Account email"),
    amount: str = typer.Option(..., "--amount", "-a", help="Credits to add"),
    category: str = typer.Option("purchase", "--category", help="purchase, bonus or refund"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Transaction description"),
):
    """Add credits to an account."""
    gateway = _gateway(ctx)
    account = _existing_account(gateway, email)
    try:
        parsed_category = TransactionCategory(category.lower())
    except ValueError:
        console.print(f"[red]Error:[/] Invalid category: {category}")
        sys.exit(EXIT_CODE_FAIL)
    try:
        result = gateway.orchestrator.add_credits(
            account.id, _parse_amount(amount), parsed_category, description
        )
    except GatewayError as e:
        _report_error(e)
    console.print(f"[green]✓[/] New balance: {result.new_total:.2f}")


@app.command("adjust-credits")
def adjust_credits(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", "-u", help="Account email"),
    delta: str = typer.Option(..., "--delta", help="Signed adjustment"),
    reason: str = typer.Option(..., "--reason", "-r", help="Reason recorded in the ledger"),
):
    """Apply a signed manual adjustment (balance never drops below zero)."""
    gateway = _gateway(ctx)
    account = _existing_account(gateway, email)
    try:
        result = gateway.orchestrator.adjust_credits(account.id, _parse_amount(delta), reason)
    except GatewayError as e:
        _report_error(e)
    console.print(
        f"[green]✓[/] Balance {result.previous_balance:.2f} -> {result.new_balance:.2f}"
    )


@app.command("set-plan")
def set_plan(
    ctx: typer.Context,
    email: str = typer.Option(..., "--email", "-u", help="Account email"),
    plan: str = typer.Option(..., "--plan", "-p", help="free, basic, pro or enterprise"),
):
    """Change the plan that sets an account's request rate limit."""
    gateway = _gateway(ctx)
    account = _existing_account(gateway, email)
    try:
        parsed_plan = Plan(plan.lower())
    except ValueError:
        console.print(f"[red]Error:[/] Invalid plan: {plan}")
        sys.exit(EXIT_CODE_FAIL)
    updated = gateway.store.set_plan(account.id, parsed_plan)
    console.print(f"[green]✓[/] {email} is now on the {updated.plan.value} plan")


@app.command()
def generate(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="What to build"),
    email: str = typer.Option(..., "--email", "-u", help="Account email"),
    framework: Optional[str] = typer.Option(None, "--framework", help="Target framework"),
    styling: Optional[str] = typer.Option(None, "--styling", help="Styling library"),
    feature: Optional[List[str]] = typer.Option(None, "--feature", help="Feature flag (repeatable)"),
    theme: Optional[str] = typer.Option(None, "--theme", help="light or dark"),
):
    """Generate a project from a prompt and charge the account."""
    gateway = _gateway(ctx)
    try:
        options = GenerateOptions(
            framework=framework, styling=styling, features=tuple(feature or ()), theme=theme
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    async def _run():
        try:
            return await gateway.orchestrator.generate(account, prompt, options)
        finally:
            await gateway.orchestrator.provider.aclose()

    try:
        account = gateway.identity.resolve(email, email)
        result = asyncio.run(_run())
    except GatewayError as e:
        _report_error(e)

    table = Table(title=f"Project {result.slug}")
    table.add_column("Path")
    table.add_column("Language")
    table.add_column("Size", justify="right")
    for path, content in sorted(result.files.items()):
        table.add_row(path, detect_language(path), str(len(content)))
    console.print(table)
    console.print(f"Project id: {result.project_id}")
    console.print(f"Credits charged: {result.credits_cost:.2f}")


@app.command()
def chat(
    ctx: typer.Context,
    message: str = typer.Argument(..., help="Message to send"),
    email: str = typer.Option(..., "--email", "-u", help="Account email"),
    conversation: Optional[str] = typer.Option(None, "--conversation", help="Existing conversation id"),
    attach: Optional[List[str]] = typer.Option(None, "--attach", help="Attachment name (repeatable)"),
):
    """Send a chat message and print the streamed reply."""
    gateway = _gateway(ctx)
    attachments = [Attachment(type="document", name=name) for name in attach or []]

    async def _run() -> bool:
        try:
            stream = await gateway.orchestrator.chat(account, message, conversation, attachments)
            console.print(f"[dim]Conversation {stream.conversation_id}[/]")
            async with stream:
                async for event in stream:
                    if event.type is ChatEventType.FRAGMENT:
                        console.print(event.content, end="", markup=False, highlight=False)
                    elif event.type is ChatEventType.ERROR:
                        console.print(f"\n[red]Stream error:[/] {event.error.message}")
                        return False
            console.print()
            return True
        finally:
            await gateway.orchestrator.provider.aclose()

    try:
        account = gateway.identity.resolve(email, email)
        completed = asyncio.run(_run())
    except GatewayError as e:
        _report_error(e)
    sys.exit(EXIT_CODE_PASS if completed else EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
