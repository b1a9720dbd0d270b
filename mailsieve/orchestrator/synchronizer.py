"""Incremental synchronization of one account's target folder.

Flow:
1. Select the folder and read UIDVALIDITY / UIDNEXT.
2. Load the watermark and reset it if the UIDVALIDITY epoch changed.
3. Fetch every UID above the watermark in one bulk request.
4. Per message, in ascending UID order: spam check (when enabled), then the
   first matching rule's action.
5. Persist the new watermark, then expunge if anything was flagged deleted.

Side effects are at-least-once: a crash before step 5 means the same messages
are evaluated again on the next run.
"""

import logging
from collections.abc import Callable

from mailsieve.integrations.imap import MailboxSession
from mailsieve.integrations.smtp import Transport
from mailsieve.integrations.spamd import SpamdClient, SpamdError
from mailsieve.router.actions import apply_action, apply_spam_action
from mailsieve.router.predicates import first_match
from mailsieve.schemas.account import Account
from mailsieve.schemas.rules import ActionType, ConditionField, Rule
from mailsieve.schemas.sync import FetchedMessage, SyncResult
from mailsieve.state.store import SyncStateStore

logger = logging.getLogger(__name__)


def rules_for(account: Account, rules: list[Rule]) -> list[Rule]:
    """Rules owned by ``account``, in stored order."""
    return [r for r in rules if r.account == account.name]


def needs_body(account: Account, rules: list[Rule], *, spam_enabled: bool) -> bool:
    """True when some step of this run reads more than the headers."""
    if spam_enabled:
        return True
    return any(r.field == ConditionField.BODY or r.action == ActionType.FORWARD for r in rules)


def sync_account(
    account: Account,
    *,
    mailbox: MailboxSession,
    rules: list[Rule],
    store: SyncStateStore,
    spamd: SpamdClient | None = None,
    transport: Transport | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> SyncResult:
    """Process every new message in ``account.folder`` once.

    Args:
        account: The account to synchronize.
        mailbox: A connected mailbox session for this account.
        rules: All rules; only the ones owned by ``account`` are used.
        store: Shared watermark store.
        spamd: Classifier client, required for spam filtering.
        transport: Outbound transport for ``forward`` actions.
        on_progress: Optional callback for progress messages.

    Returns:
        SyncResult with per-run counts and the persisted watermark.

    Raises:
        StateStoreError: The watermark could not be persisted.
    """

    def _emit(msg: str) -> None:
        if on_progress:
            on_progress(msg)

    folder = account.folder
    account_rules = rules_for(account, rules)
    result = SyncResult(account=account.name, folder=folder)

    spam_enabled = account.use_spamassassin
    if spam_enabled and spamd is None:
        logger.warning("Spam filtering enabled for %s but no spamd client configured", account.name)
        spam_enabled = False

    mailbox.open(folder)
    uid_validity = mailbox.uid_validity()
    uid_next = mailbox.uid_next()

    stored = store.get_or_create(account.name, folder)
    state = stored.refresh_validity(uid_validity)
    if state is not stored:
        if stored.uid_validity == -1:
            logger.info("New folder state for %s (UIDVALIDITY %d)", state.key, uid_validity)
        else:
            logger.info(
                "UIDVALIDITY changed for %s (%d -> %d), resetting watermark",
                state.key,
                stored.uid_validity,
                uid_validity,
            )
        store.put(state)

    last = state.last_processed_uid
    start = last + 1 if last > 0 else 1
    end = uid_next - 1
    if uid_next <= 0 or start > end:
        logger.debug("No new messages in %s (uidnext=%d, watermark=%d)", state.key, uid_next, last)
        store.put(state.touched())
        result.last_processed_uid = last
        return result

    headers_only = not needs_body(account, account_rules, spam_enabled=spam_enabled)
    messages = mailbox.fetch_range(start, end, headers_only=headers_only)
    result.fetched = len(messages)
    _emit(f"{account.name}: {len(messages)} new message(s) in {folder} (UID {start}..{end})")

    max_seen = last
    needs_expunge = False
    for message in messages:
        if not state.should_process(message.uid, uid_validity):
            result.skipped += 1
            max_seen = max(max_seen, message.uid)
            continue

        try:
            deleted = _process_message(
                account,
                message,
                mailbox=mailbox,
                rules=account_rules,
                spamd=spamd if spam_enabled else None,
                transport=transport,
                result=result,
            )
            needs_expunge = needs_expunge or deleted
        except Exception:
            logger.exception("Error processing UID %d in %s", message.uid, state.key)
            result.errors += 1
        max_seen = max(max_seen, message.uid)

    store.put(state.advanced(max_seen))
    result.last_processed_uid = max_seen

    if needs_expunge:
        mailbox.expunge()
        result.expunged = True

    logger.info(
        "Synced %s: fetched=%d spam=%d matched=%d skipped=%d errors=%d watermark=%d",
        state.key,
        result.fetched,
        result.spam,
        result.matched,
        result.skipped,
        result.errors,
        max_seen,
    )
    return result


def _process_message(
    account: Account,
    message: FetchedMessage,
    *,
    mailbox: MailboxSession,
    rules: list[Rule],
    spamd: SpamdClient | None,
    transport: Transport | None,
    result: SyncResult,
) -> bool:
    """Spam check then first matching rule. Returns True if flagged deleted."""
    if spamd is not None:
        try:
            verdict = spamd.check(message.raw)
        except SpamdError as exc:
            logger.warning("spamd check failed for UID %d, applying rules: %s", message.uid, exc)
            verdict = None
        if verdict is not None and verdict.is_spam:
            result.spam += 1
            logger.info(
                "UID %d is spam (%.1f / %.1f): %s",
                message.uid,
                verdict.score,
                verdict.threshold,
                message.subject,
            )
            return apply_spam_action(account, message, mailbox=mailbox)

    rule = first_match(rules, message)
    if rule is None:
        return False

    result.matched += 1
    logger.info("UID %d matched [%s]", message.uid, rule.describe())
    return apply_action(
        rule.action,
        rule.destination,
        message,
        account.folder,
        mailbox=mailbox,
        transport=transport,
    )
