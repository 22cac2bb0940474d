"""CLI output formatting functions.

This module contains functions for displaying pass results, address book
tables and engine statistics on the command line.
"""

from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from carddav_sync.sync.address_book import AddressBook
    from carddav_sync.sync.engine import PassResult
    from carddav_sync.sync.results import BatchResult

# Failures shown per pass before the list is truncated
MAX_FAILURES_SHOWN = 10


def show_pass_results(results: list["PassResult"]) -> None:
    """
    Display the outcome of one or more reconciliation passes.

    Args:
        results: PassResults in execution order
    """
    for result in results:
        label = "Inbound" if result.direction.name == "INBOUND" else "Outbound"
        stats = result.stats
        click.echo(f"\n=== {label} pass ===")
        click.echo(f"  Considered: {stats.considered}")
        if result.direction.name == "INBOUND":
            click.echo(f"  Created:    {stats.created}")
            click.echo(f"  Updated:    {stats.updated}")
            click.echo(f"  Revoked:    {stats.revoked}")
        else:
            click.echo(f"  Written:    {stats.written}")
            click.echo(f"  Mirrored:   {stats.mirrored}")
        click.echo(f"  Skipped:    {stats.skipped}")
        click.echo(f"  Conflicts:  {stats.conflicts}")
        click.echo(f"  Deleted:    {stats.deleted}")

        if result.failures:
            click.echo(click.style(f"  Failed:     {stats.failed}", fg="red"))
            for failure in result.failures[:MAX_FAILURES_SHOWN]:
                click.echo(click.style(f"    - {failure}", fg="red"))
            if len(result.failures) > MAX_FAILURES_SHOWN:
                remaining = len(result.failures) - MAX_FAILURES_SHOWN
                click.echo(f"    ... and {remaining} more")


def show_batch_failures(result: "BatchResult", action: str) -> None:
    """Warn about per-item failures of a fail-open operation."""
    if result.ok:
        return
    click.echo(
        click.style(
            f"Warning: {action} completed with {len(result.failures)} failure(s):",
            fg="yellow",
        ),
        err=True,
    )
    for failure in result.failures[:MAX_FAILURES_SHOWN]:
        click.echo(f"  - {failure}", err=True)


def show_books(books: list["AddressBook"], readonly_ids: set[str]) -> None:
    """Display address books as a table."""
    if not books:
        click.echo("No address books configured (legacy single-book mode).")
        return

    click.echo(f"{'ID':<38} {'Slug':<24} {'Access':<10} {'Read-only':<9}")
    click.echo("-" * 84)
    for book in books:
        access = "public" if book.is_public else "assigned"
        readonly = "yes" if book.id in readonly_ids else ""
        click.echo(f"{book.id:<38} {book.slug:<24} {access:<10} {readonly:<9}")
    click.echo()
    click.echo(f"Total: {len(books)} address book(s)")
