"""Run the synchronizer for every account on a bounded thread pool."""

import logging
import os
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager
from datetime import UTC, datetime

from mailsieve.integrations.imap import MailboxSession
from mailsieve.integrations.smtp import Transport
from mailsieve.integrations.spamd import SpamdClient
from mailsieve.orchestrator.synchronizer import sync_account
from mailsieve.schemas.account import Account
from mailsieve.schemas.rules import Rule
from mailsieve.schemas.sync import RunSummary, SyncResult
from mailsieve.state.store import SyncStateStore

logger = logging.getLogger(__name__)

MAX_POOL_SIZE = 8

MailboxFactory = Callable[[Account], AbstractContextManager[MailboxSession]]


def pool_size(accounts: int, *, dev: bool = False, max_workers: int | None = None) -> int:
    """Worker count: one per account, capped by CPUs (at most 8), 1 in dev mode."""
    if dev:
        return 1
    cap = max_workers if max_workers else min(MAX_POOL_SIZE, os.cpu_count() or 1)
    return min(accounts, max(1, cap))


def run_all(
    accounts: list[Account],
    rules: list[Rule],
    store: SyncStateStore,
    *,
    mailbox_factory: MailboxFactory,
    spamd: SpamdClient | None = None,
    transport: Transport | None = None,
    dev: bool = False,
    max_workers: int | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> RunSummary:
    """Synchronize all accounts and wait for every one of them.

    A failing account is logged and reported as a failed ``SyncResult``; the
    other accounts are not affected.

    Args:
        accounts: Accounts in configuration order.
        rules: All rules; each account only sees its own.
        store: Shared watermark store.
        mailbox_factory: Returns a context manager yielding a connected
            session for an account (``ImapMailbox`` in production).
        spamd: Classifier client for accounts with spam filtering enabled.
        transport: Outbound transport for ``forward`` actions.
        dev: Run one account at a time.
        max_workers: Override the CPU-based pool cap.
        on_progress: Optional callback for progress messages.

    Returns:
        RunSummary with one result per account, in account order.
    """
    summary = RunSummary(started_at=datetime.now(UTC))
    if not accounts:
        logger.info("No accounts configured, nothing to do")
        summary.finished_at = datetime.now(UTC)
        return summary

    def _sync(account: Account) -> SyncResult:
        with mailbox_factory(account) as mailbox:
            return sync_account(
                account,
                mailbox=mailbox,
                rules=rules,
                store=store,
                spamd=spamd,
                transport=transport,
                on_progress=on_progress,
            )

    workers = pool_size(len(accounts), dev=dev, max_workers=max_workers)
    logger.info("Synchronizing %d account(s) with %d worker(s)", len(accounts), workers)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mailsieve-sync") as pool:
        futures = [(account, pool.submit(_sync, account)) for account in accounts]
        for account, future in futures:
            try:
                summary.results.append(future.result())
            except Exception as exc:
                logger.exception("Sync failed for account %s", account.name)
                summary.results.append(
                    SyncResult(account=account.name, folder=account.folder, failed=True, error=str(exc))
                )

    summary.finished_at = datetime.now(UTC)
    return summary
