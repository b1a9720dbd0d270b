"""CLI entry point for mailsieve.

Commands:
    mailsieve run         - sync every account once (spam check + rules)
    mailsieve status      - show stored watermarks
    mailsieve rules       - list rules in evaluation order
    mailsieve spam-check  - send one .eml file to spamd and print the verdict
"""

import logging
import sys
from pathlib import Path

import click

from mailsieve.config import (
    ACCOUNTS_PATH,
    DEV,
    IMAP_TIMEOUT,
    LOG_FILE,
    MAX_WORKERS,
    RULES_PATH,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_SSL,
    SMTP_USER,
    SPAMD_CONFIG_PATH,
    STATE_PATH,
)

logger = logging.getLogger("mailsieve")


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """mailsieve - incremental IMAP filtering with SpamAssassin and rules."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        Path(LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(LOG_FILE, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
    )


# ------------------------------------------------------------------
# mailsieve run
# ------------------------------------------------------------------


@cli.command()
@click.option("--dev", is_flag=True, help="Process accounts one at a time (debugging).")
@click.option("--workers", "-w", default=None, type=int, help="Override the worker pool size cap.")
def run(dev: bool, workers: int | None) -> None:
    """Synchronize all configured accounts once."""
    from mailsieve.integrations.imap import ImapMailbox
    from mailsieve.integrations.smtp import SmtpTransport
    from mailsieve.integrations.spamd import SpamdClient
    from mailsieve.orchestrator.scheduler import run_all
    from mailsieve.repository import ConfigError, load_accounts, load_rules, load_spamd_config
    from mailsieve.state.store import StateStoreError, SyncStateStore

    try:
        accounts = load_accounts(ACCOUNTS_PATH)
        rules = load_rules(RULES_PATH, accounts)
        spamd_config = load_spamd_config(SPAMD_CONFIG_PATH)
        store = SyncStateStore.load(STATE_PATH)
    except (ConfigError, StateStoreError) as exc:
        _fail(str(exc))
        return

    if not accounts:
        click.echo(f"No accounts configured in {ACCOUNTS_PATH}.")
        return

    spamd = SpamdClient(spamd_config) if any(a.use_spamassassin for a in accounts) else None
    transport = None
    if SMTP_HOST:
        transport = SmtpTransport(SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, use_ssl=SMTP_SSL)

    summary = run_all(
        accounts,
        rules,
        store,
        mailbox_factory=lambda account: ImapMailbox(account, timeout=IMAP_TIMEOUT),
        spamd=spamd,
        transport=transport,
        dev=dev or DEV,
        max_workers=workers or MAX_WORKERS or None,
        on_progress=click.echo,
    )

    click.echo()
    for result in summary.results:
        if result.failed:
            click.echo(f"  {result.account}: FAILED ({result.error})")
            continue
        click.echo(
            f"  {result.account} [{result.folder}]: fetched={result.fetched} spam={result.spam}"
            f" matched={result.matched} skipped={result.skipped} errors={result.errors}"
            f" watermark={result.last_processed_uid}"
        )

    if summary.failed_accounts:
        _fail(f"{len(summary.failed_accounts)} account(s) failed: {', '.join(summary.failed_accounts)}")


# ------------------------------------------------------------------
# mailsieve status
# ------------------------------------------------------------------


@cli.command()
def status() -> None:
    """Show the stored watermark of every account folder."""
    from mailsieve.state.store import StateStoreError, SyncStateStore

    try:
        store = SyncStateStore.load(STATE_PATH)
    except StateStoreError as exc:
        _fail(str(exc))
        return

    states = store.all()
    if not states:
        click.echo("No sync state recorded yet.")
        return

    click.echo(f"{'Account:Folder':<40} {'UIDVALIDITY':>12} {'Last UID':>10}  Updated")
    for state in states:
        click.echo(
            f"{state.key:<40} {state.uid_validity:>12} {state.last_processed_uid:>10}"
            f"  {state.updated_at:%Y-%m-%d %H:%M:%S}"
        )


# ------------------------------------------------------------------
# mailsieve rules
# ------------------------------------------------------------------


@cli.command("rules")
@click.option("--account", "-a", default=None, help="Only show rules for this account.")
def list_rules(account: str | None) -> None:
    """List rules in evaluation order."""
    from mailsieve.repository import ConfigError, load_rules

    try:
        rules = load_rules(RULES_PATH)
    except ConfigError as exc:
        _fail(str(exc))
        return

    if account:
        rules = [r for r in rules if r.account == account]
    if not rules:
        click.echo("No rules configured.")
        return

    for i, rule in enumerate(rules, 1):
        click.echo(f"{i:>3}. [{rule.account}] {rule.describe()}")


# ------------------------------------------------------------------
# mailsieve spam-check
# ------------------------------------------------------------------


@cli.command("spam-check")
@click.argument("eml_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--symbols", is_flag=True, help="Also list the SpamAssassin rules that fired.")
def spam_check(eml_file: Path, symbols: bool) -> None:
    """Send EML_FILE to spamd and print the verdict."""
    from mailsieve.integrations.spamd import SpamdClient, SpamdError
    from mailsieve.repository import ConfigError, load_spamd_config

    try:
        client = SpamdClient(load_spamd_config(SPAMD_CONFIG_PATH))
    except ConfigError as exc:
        _fail(str(exc))
        return

    raw = eml_file.read_bytes()
    try:
        verdict = client.symbols(raw) if symbols else client.check(raw)
    except SpamdError as exc:
        _fail(f"spamd check failed: {exc}")
        return

    label = "SPAM" if verdict.is_spam else "HAM"
    click.echo(f"{label}  score={verdict.score:.1f} threshold={verdict.threshold:.1f}")
    if symbols:
        click.echo(f"Symbols: {', '.join(verdict.symbols) or '-'}")
