"""
Command-line interface for carddav_sync.

Provides CLI commands for running reconciliation passes, managing the sync
daemon, CardDAV accounts and address books.

Usage:
    # Show help
    carddav-sync --help

    # Run one reconciliation (inbound then outbound)
    carddav-sync sync
    carddav-sync sync --direction outbound

    # Run the engine with the watcher and periodic outbound passes
    carddav-sync daemon start

    # Manage accounts and address books
    carddav-sync users create alice
    carddav-sync books create "Family" --private
    carddav-sync books assign family alice
"""

import os
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from carddav_sync import __version__
from carddav_sync.auth.errors import CredentialError
from carddav_sync.auth.composite import is_base_username
from carddav_sync.auth.readonly import readonly_username
from carddav_sync.cli.formatters import (
    show_batch_failures,
    show_books,
    show_pass_results,
)
from carddav_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from carddav_sync.config.settings import EngineSettings
from carddav_sync.runtime import Engine
from carddav_sync.storage.db import DatabaseError
from carddav_sync.sync.address_book import AddressBook
from carddav_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging
from carddav_sync.utils.paths import (
    default_pid_file,
    expand_path,
    resolve_config_dir,
)

VALID_DIRECTIONS = ("inbound", "outbound", "both")


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def _fail(message: str) -> NoReturn:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def build_engine(ctx: click.Context, **overrides: Any) -> Engine:
    """
    Resolve settings for the current invocation and build the engine.

    The database schema is created before the engine is returned so every
    command can read and write without running a full startup.
    """
    try:
        settings = EngineSettings.resolve(
            ctx.obj.get("config", {}), os.environ, overrides
        )
    except ConfigError as e:
        _fail(str(e))
    engine = Engine(settings, config_dir=ctx.obj["config_dir"])
    engine.database.initialize()
    return engine


def _require_book(engine: Engine, id_or_slug: str) -> AddressBook:
    book = engine.database.get_book(id_or_slug)
    if book is None:
        _fail(f"Address book not found: {id_or_slug}")
    return book


@click.group()
@click.version_option(version=__version__, prog_name="carddav-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CARDDAV_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.carddav-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CARDDAV_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    CardDAV contact store synchronization.

    Keeps the contact database and the CardDAV server's on-disk vCard
    collections in agreement, and manages the server's accounts.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Keep the CLI usable with a broken config file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config

    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = (
        expand_path(config["log_dir"], resolved_config_dir)
        if config.get("log_dir")
        else None
    )
    setup_logging(verbose=effective_verbose, log_dir=log_dir)

    log_retention = config.get("log_retention_count", 10)
    if log_dir is not None and log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Sync Commands
# =============================================================================


@cli.command("sync")
@click.option(
    "--direction",
    "-d",
    type=click.Choice(VALID_DIRECTIONS, case_sensitive=False),
    default="both",
    show_default=True,
    help="Which pass to run. 'both' runs inbound first.",
)
@click.option(
    "--storage-root",
    type=click.Path(file_okay=False, dir_okay=True),
    default=None,
    help="Collection storage directory (overrides RADICALE_STORAGE_PATH).",
)
@click.pass_context
def sync_command(ctx: click.Context, direction: str, storage_root: str | None) -> None:
    """
    Run one reconciliation between the database and the collection tree.

    Examples:

        # Pull file changes, then push database changes
        carddav-sync sync

        # Only write pending database changes to files
        carddav-sync sync --direction outbound
    """
    logger = get_logger(__name__)
    engine = build_engine(ctx, storage_root=storage_root)

    try:
        results = engine.sync_engine.sync(direction.lower())
    except Exception as e:
        logger.exception("Sync failed")
        _fail(f"Sync failed: {e}")
    finally:
        engine.database.close()

    show_pass_results(results)
    if all(result.ok for result in results):
        click.echo(click.style("\nSync completed successfully!", fg="green"))
    else:
        click.echo(
            click.style("\nSync completed with failures.", fg="yellow"), err=True
        )
        sys.exit(1)


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show configuration and database statistics.

    Examples:

        carddav-sync status
    """
    engine = build_engine(ctx)
    settings = engine.settings

    click.echo("=== CardDAV Sync Status ===\n")
    click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
    click.echo(f"Storage root: {settings.storage_root}")
    click.echo(f"Users file: {settings.users_file}")
    click.echo(f"Database: {engine.database.db_path}")
    click.echo(f"Sync interval: {settings.sync_interval:g}s")
    click.echo(f"Watch debounce: {settings.watch_debounce:g}s")
    click.echo()

    try:
        stats = engine.database.get_statistics()
        users = engine.credentials.list_users()
    except (DatabaseError, CredentialError) as e:
        _fail(str(e))
    finally:
        engine.database.close()

    mode = "multi-book" if stats["address_books"] else "legacy single-book"
    click.echo(f"Mode: {mode}")
    click.echo(f"Contacts: {stats['contacts']}")
    click.echo(f"Pending outbound: {stats['pending_outbound']}")
    click.echo(f"Address books: {stats['address_books']}")
    click.echo(f"User assignments: {stats['assignments']}")
    click.echo(f"Read-only subscriptions: {stats['readonly_subscriptions']}")
    base_users = [name for name in users if is_base_username(name)]
    click.echo(f"Accounts: {len(base_users)} users, {len(users)} total entries")


# =============================================================================
# Daemon Commands
# =============================================================================


def _pid_file(config: dict[str, Any], config_dir: Path) -> Path:
    if config.get("daemon_pid_file"):
        return expand_path(config["daemon_pid_file"], config_dir)
    return default_pid_file(config_dir)


@cli.group("daemon")
@click.pass_context
def daemon_group(ctx: click.Context) -> None:
    """
    Manage the synchronization daemon.

    The daemon runs migrations, an initial inbound and outbound pass, then
    watches the collection tree and pushes database changes periodically.

    Examples:

        # Run in the foreground with a 10 second outbound interval
        carddav-sync daemon start --interval 10s

        # Check daemon status
        carddav-sync daemon status

        # Stop running daemon
        carddav-sync daemon stop
    """
    pass


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Outbound interval (e.g., '500ms', '30s', '5m'). Overrides SYNC_INTERVAL.",
)
@click.option(
    "--no-watch",
    is_flag=True,
    help="Disable the filesystem watcher (outbound passes only).",
)
@click.option(
    "--no-pid-file",
    is_flag=True,
    help="Do not write a PID file (container deployments).",
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: str | None, no_watch: bool, no_pid_file: bool
) -> None:
    """
    Start the synchronization daemon in the foreground.

    Handles SIGTERM/SIGINT for graceful shutdown. A failed startup keeps the
    process alive in the error state.
    """
    from carddav_sync.daemon import DaemonAlreadyRunningError, DaemonError

    logger = get_logger(__name__)
    config = ctx.obj.get("config", {})
    engine = build_engine(ctx, sync_interval=interval)
    pid_file = _pid_file(config, ctx.obj["config_dir"])
    watch = not no_watch and config.get("watch_enabled", True)

    click.echo(
        f"Starting daemon with {engine.settings.sync_interval:g}s sync interval..."
    )
    if ctx.obj["verbose"]:
        click.echo(f"  Storage root: {engine.settings.storage_root}")
        click.echo(f"  Watcher: {'enabled' if watch else 'disabled'}")
        if not no_pid_file:
            click.echo(f"  PID file: {pid_file}")

    try:
        engine.run_forever(pid_file=pid_file, use_pid_file=not no_pid_file, watch=watch)
    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'carddav-sync daemon stop' to stop the running daemon.")
        sys.exit(1)
    except DaemonError as e:
        logger.exception("Daemon error")
        _fail(str(e))
    finally:
        engine.stop()

    click.echo("Daemon stopped.")


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """
    Stop the running synchronization daemon.

    Sends SIGTERM; the daemon finishes an in-progress tick before exiting.
    """
    from carddav_sync.daemon import DaemonScheduler

    pid_file = _pid_file(ctx.obj.get("config", {}), ctx.obj["config_dir"])
    pid = DaemonScheduler.get_running_pid(pid_file)

    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(f"Stopping daemon (PID: {pid})...")
    if DaemonScheduler.stop_running_daemon(pid_file):
        click.echo(click.style("Stop signal sent successfully.", fg="green"))
    else:
        _fail("Failed to send stop signal to daemon.")


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the daemon is running."""
    from carddav_sync.daemon import DaemonScheduler, PIDFileError, PIDFileManager

    pid_file = _pid_file(ctx.obj.get("config", {}), ctx.obj["config_dir"])

    click.echo("=== Daemon Status ===\n")
    pid = DaemonScheduler.get_running_pid(pid_file)
    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
        try:
            stale_pid = PIDFileManager(pid_file).read()
        except PIDFileError as e:
            click.echo(f"Unreadable PID file: {e}")
            stale_pid = None
        if stale_pid is not None:
            click.echo(f"Stale PID file exists (PID: {stale_pid})")

    if ctx.obj.get("verbose"):
        click.echo(f"\nPID file: {pid_file}")


# =============================================================================
# User Commands
# =============================================================================

password_option = click.option(
    "--password",
    "-p",
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    help="Account password (prompted when omitted).",
)


@cli.group("users")
def users_group() -> None:
    """
    Manage CardDAV accounts.

    Composite per-book accounts are created and removed automatically.
    """
    pass


@users_group.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include derived accounts.")
@click.pass_context
def users_list_command(ctx: click.Context, show_all: bool) -> None:
    """List accounts in the credential file."""
    engine = build_engine(ctx)
    try:
        users = engine.credentials.list_users()
    except CredentialError as e:
        _fail(str(e))
    finally:
        engine.database.close()

    if not show_all:
        users = [name for name in users if is_base_username(name)]
    if not users:
        click.echo("No accounts found.")
        return
    for name in users:
        click.echo(name)
    click.echo(f"\nTotal: {len(users)} account(s)")


@users_group.command("create")
@click.argument("username")
@password_option
@click.pass_context
def users_create_command(ctx: click.Context, username: str, password: str) -> None:
    """Create an account and its per-book composite accounts."""
    engine = build_engine(ctx)
    try:
        result = engine.create_user(username, password)
    except CredentialError as e:
        _fail(str(e))
    finally:
        engine.database.close()

    show_batch_failures(result, "Composite account provisioning")
    click.echo(click.style(f"Created account '{username}'.", fg="green"))


@users_group.command("passwd")
@click.argument("username")
@password_option
@click.pass_context
def users_passwd_command(ctx: click.Context, username: str, password: str) -> None:
    """Change an account password."""
    engine = build_engine(ctx)
    try:
        result = engine.update_user_password(username, password)
    except CredentialError as e:
        _fail(str(e))
    finally:
        engine.database.close()

    show_batch_failures(result, "Composite password update")
    click.echo(click.style(f"Updated password for '{username}'.", fg="green"))


@users_group.command("delete")
@click.argument("username")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def users_delete_command(ctx: click.Context, username: str, yes: bool) -> None:
    """Delete an account and its composite accounts."""
    if not yes:
        click.confirm(f"Delete account '{username}'?", abort=True)

    engine = build_engine(ctx)
    try:
        engine.delete_user(username)
    except CredentialError as e:
        _fail(str(e))
    finally:
        engine.database.close()

    click.echo(click.style(f"Deleted account '{username}'.", fg="green"))


# =============================================================================
# Address Book Commands
# =============================================================================


@cli.group("books")
def books_group() -> None:
    """Manage address books, assignments and read-only subscriptions."""
    pass


@books_group.command("list")
@click.pass_context
def books_list_command(ctx: click.Context) -> None:
    """List address books."""
    engine = build_engine(ctx)
    try:
        books = engine.database.list_books()
        readonly_ids = {
            sub.address_book_id for sub in engine.database.list_readonly_subscriptions()
        }
    finally:
        engine.database.close()
    show_books(books, readonly_ids)


@books_group.command("create")
@click.argument("name")
@click.option("--slug", default=None, help="Unique slug (derived from NAME by default).")
@click.option(
    "--private",
    is_flag=True,
    help="Only assigned users can see the book (default: public).",
)
@click.pass_context
def books_create_command(
    ctx: click.Context, name: str, slug: str | None, private: bool
) -> None:
    """Create an address book."""
    engine = build_engine(ctx)
    try:
        book = engine.database.create_book(name, slug=slug, is_public=not private)
        result = engine.composites.ensure_all()
    except DatabaseError as e:
        _fail(str(e))
    finally:
        engine.database.close()

    show_batch_failures(result, "Composite account provisioning")
    click.echo(click.style(f"Created address book {book}.", fg="green"))


@books_group.command("assign")
@click.argument("book")
@click.argument("username")
@click.pass_context
def books_assign_command(ctx: click.Context, book: str, username: str) -> None:
    """Give USERNAME access to BOOK (id or slug)."""
    engine = build_engine(ctx)
    try:
        target = _require_book(engine, book)
        result = engine.grant_access(username, target.id)
    finally:
        engine.database.close()

    show_batch_failures(result, "Composite account reconciliation")
    click.echo(click.style(f"Assigned '{username}' to {target}.", fg="green"))


@books_group.command("unassign")
@click.argument("book")
@click.argument("username")
@click.pass_context
def books_unassign_command(ctx: click.Context, book: str, username: str) -> None:
    """Remove USERNAME's explicit access to BOOK (id or slug)."""
    engine = build_engine(ctx)
    try:
        target = _require_book(engine, book)
        result = engine.revoke_access(username, target.id)
    finally:
        engine.database.close()

    show_batch_failures(result, "Composite account reconciliation")
    click.echo(click.style(f"Unassigned '{username}' from {target}.", fg="green"))


@books_group.command("readonly")
@click.argument("book")
@click.option(
    "--password",
    "-p",
    default=None,
    help="Subscription password. Prompted unless --disable is given.",
)
@click.option("--disable", is_flag=True, help="Remove the read-only subscription.")
@click.pass_context
def books_readonly_command(
    ctx: click.Context, book: str, password: str | None, disable: bool
) -> None:
    """
    Enable or disable the read-only subscription account of BOOK.

    The account is named ro-<book id> and can only read the book.
    """
    if not disable and password is None:
        password = click.prompt(
            "Password", hide_input=True, confirmation_prompt=True
        )

    engine = build_engine(ctx)
    try:
        target = _require_book(engine, book)
        if disable:
            result = engine.remove_readonly(target.id)
            message = f"Disabled read-only access to {target}."
        else:
            result = engine.set_readonly_password(target.id, password or "")
            message = (
                f"Enabled read-only access to {target} as "
                f"{readonly_username(target.id)}."
            )
    except CredentialError as e:
        _fail(str(e))
    finally:
        engine.database.close()

    show_batch_failures(result, "Read-only account sync")
    click.echo(click.style(message, fg="green"))


if __name__ == "__main__":
    cli()
