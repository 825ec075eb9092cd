"""Operational commands for the admin dashboard.

Usage:
    dashboard seed --admin-email admin@example.com
    dashboard process-recurring
    dashboard fetch-rates --provider frankfurter
    dashboard recalculate-plans
"""

import logging
from datetime import date
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from config import get_settings
from database import init_db, session_scope


logger = logging.getLogger(__name__)

app = typer.Typer(
    name="dashboard",
    help="Admin dashboard maintenance commands.",
    no_args_is_help=True,
)
console = Console()


def _parse_day(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid date {value}, expected YYYY-MM-DD") from None


@app.command("init-db")
def init_database() -> None:
    """Create any missing tables without running migrations."""
    init_db()
    console.print(f"[green]Tables ready[/green] at {get_settings().database_url}")


@app.command()
def seed(
    admin_email: Optional[str] = typer.Option(None, help="Create a Super Admin with this email"),
    admin_password: Optional[str] = typer.Option(None, help="Password for the Super Admin"),
    admin_name: str = typer.Option("Administrator", help="Display name for the Super Admin"),
) -> None:
    """Seed currencies, roles and permissions, and optionally a Super Admin."""
    from auth import UserService
    from permissions import SUPER_ADMIN, seed_permissions
    from schemas import UserIn
    from services import CategoryService, seed_currencies

    with session_scope() as session:
        currencies = seed_currencies(session)
        counts = seed_permissions(session)
        console.print(
            f"Seeded [bold]{currencies}[/bold] currencies, "
            f"[bold]{counts.get('permissions', 0)}[/bold] permissions, "
            f"[bold]{counts.get('roles', 0)}[/bold] roles"
        )
        if admin_email:
            if not admin_password:
                raise typer.BadParameter("--admin-password is required with --admin-email")
            user = UserService(session).create(
                UserIn(
                    name=admin_name,
                    email=admin_email,
                    password=admin_password,
                    roles=[SUPER_ADMIN],
                )
            )
            created = CategoryService(session, user.id).seed_defaults()
            console.print(
                f"Created Super Admin [bold]{user.email}[/bold] (id={user.id}) "
                f"with {created} default categories"
            )


@app.command("create-user")
def create_user(
    email: str = typer.Argument(..., help="Login email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    name: str = typer.Option("User", help="Display name"),
    role: list[str] = typer.Option(["User"], "--role", "-r", help="Role name, repeatable"),
) -> None:
    """Create a user with the given roles."""
    from auth import UserService
    from schemas import UserIn
    from services import CategoryService

    with session_scope() as session:
        try:
            user = UserService(session).create(
                UserIn(name=name, email=email, password=password, roles=role)
            )
        except ValueError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        CategoryService(session, user.id).seed_defaults()
        console.print(f"Created [bold]{user.email}[/bold] (id={user.id}) roles={', '.join(role)}")


@app.command("process-recurring")
def process_recurring(
    today: Optional[str] = typer.Option(None, help="Process as of this date (YYYY-MM-DD)"),
) -> None:
    """Create transactions for every recurring rule that is due."""
    from services import process_all_due

    with session_scope() as session:
        result = process_all_due(session, _parse_day(today))
    console.print(
        f"processed={result.processed} created={result.created} skipped={result.skipped}"
    )
    if result.errors:
        table = Table(title="Failed rules")
        table.add_column("Rule", justify="right")
        table.add_column("Error")
        for rule_id, error in result.errors.items():
            table.add_row(str(rule_id), error)
        console.print(table)
        raise typer.Exit(code=1)


@app.command("fetch-rates")
def fetch_rates(
    provider: Optional[str] = typer.Option(None, help="Rate provider, defaults to settings"),
    accounts_only: bool = typer.Option(
        False, "--accounts-only", help="Only currencies used by accounts"
    ),
) -> None:
    """Fetch and store the latest exchange rates."""
    from fx_rates import ExchangeRateService

    with session_scope() as session:
        try:
            saved = ExchangeRateService(session).update_rates(
                provider, account_only=accounts_only
            )
        except ValueError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
    console.print(f"Saved [bold]{saved}[/bold] exchange rates")


@app.command("mark-overdue")
def mark_overdue_invoices(
    today: Optional[str] = typer.Option(None, help="Reference date (YYYY-MM-DD)"),
) -> None:
    """Flag sent invoices past their due date as overdue."""
    from invoices import mark_overdue

    with session_scope() as session:
        count = mark_overdue(session, _parse_day(today))
    console.print(f"Marked [bold]{count}[/bold] invoices overdue")


@app.command("purge-deleted")
def purge_deleted_records(
    days: int = typer.Option(30, min=0, help="Only purge records deleted this many days ago"),
) -> None:
    """Permanently remove soft-deleted finance records."""
    from services import purge_deleted

    with session_scope() as session:
        counts = purge_deleted(session, older_than_days=days)
    table = Table(title=f"Purged records older than {days} days")
    table.add_column("Kind")
    table.add_column("Removed", justify="right")
    for kind, count in counts.items():
        table.add_row(kind, str(count))
    console.print(table)


@app.command("recalculate-plans")
def recalculate_plans() -> None:
    """Recompute financial plan period totals from their items."""
    from plans import recalculate_all_plans

    with session_scope() as session:
        total, changes = recalculate_all_plans(session)
    if not total:
        console.print("No plan periods found.")
        return
    if changes:
        table = Table(title="Changed periods")
        table.add_column("Plan", justify="right")
        table.add_column("Year", justify="right")
        table.add_column("Income", justify="right")
        table.add_column("Expense", justify="right")
        for change in changes:
            table.add_row(
                str(change.plan_id),
                str(change.year),
                f"{change.income_before} -> {change.income_after}",
                f"{change.expense_before} -> {change.expense_after}",
            )
        console.print(table)
    console.print(f"Recalculated [bold]{total}[/bold] plan periods")


if __name__ == "__main__":
    app()
