import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Controls CLI output: 'plain' (default), 'json' or 'rich'
OUTPUT_MODE_ENV = "LIBRARY_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _price(value: Any) -> str:
    return "-" if value is None else f"{float(value):.2f}"


def print_books_result(books: List[Any]) -> None:
    """Print the catalog in the current output mode.

    - plain: '#id Title by Author [buy: n, rent: n]' lines
    - json: a JSON array of book dicts
    - rich: a table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Buy", justify="right")
        table.add_column("Rent", justify="right")
        table.add_column("Price", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, str(b.purchase_stock), str(b.rental_stock), _price(b.price))
        _console.print(table)
    else:
        for b in books:
            print(f"#{b.id} {b.title} by {b.author} [buy: {b.purchase_stock}, rent: {b.rental_stock}]")


def print_stats_result(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(
            f"[bold]{key.replace('_', ' ').title()}:[/] {value}" for key, value in stats.items()
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats.get('total_books', 0)}")
        print(f"Available Books: {stats.get('available_books', 0)}")
        print(f"Active Loans: {stats.get('active_loans', 0)}")
        print(f"Overdue Loans: {stats.get('overdue_loans', 0)}")
        print(f"Revenue: {_price(stats.get('revenue', 0))}")


def print_overdue_result(loans: List[Any]) -> None:
    mode = get_output_mode()

    if not loans:
        print("No overdue loans.")
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="⏰ Overdue loans", header_style="bold red")
        table.add_column("Loan", no_wrap=True)
        table.add_column("Book")
        table.add_column("Borrower")
        table.add_column("Due", style="red")
        for loan in loans:
            table.add_row(str(loan.id), loan.title or "", loan.user_email or "", loan.due_on)
        _console.print(table)
    else:
        for loan in loans:
            print(f"Loan {loan.id}: {loan.title} - {loan.user_email} (due {loan.due_on})")
