"""Apply rule actions and the spam policy to a message on the server.

No decisions are made here: the synchronizer has already picked the rule (or
the classifier has flagged the message) and this module only performs the
matching mailbox operations.

Configuration problems (missing destination, no keyword support, no outbound
transport) are logged as warnings and the action is skipped. Mailbox I/O
errors propagate to the caller, which counts them against the message.
"""

import logging
import re
from email.message import EmailMessage

from mailsieve.integrations.imap import DELETED, FLAGGED, SEEN, MailboxSession
from mailsieve.integrations.smtp import Transport
from mailsieve.schemas.account import Account, SpamAction
from mailsieve.schemas.rules import ActionType
from mailsieve.schemas.sync import FetchedMessage

logger = logging.getLogger(__name__)

ARCHIVE_CANDIDATES = ("Archive", "Archivio", "[Gmail]/All Mail", "[Gmail]/Tutti i messaggi")
FORWARD_INTRO = "Forwarded message:"
FORWARD_FILENAME = "forwarded.eml"


def split_labels(value: str | None) -> list[str]:
    """Split ``"work, urgent ; todo"`` into ``["work", "urgent", "todo"]``."""
    if not value:
        return []
    return [label.strip() for label in re.split(r"[,;]", value) if label.strip()]


def resolve_archive_folder(mailbox: MailboxSession, destination: str | None = None) -> str | None:
    """Return ``destination`` when given, else the first existing conventional archive folder."""
    if destination:
        return destination
    for candidate in ARCHIVE_CANDIDATES:
        if mailbox.folder_exists(candidate):
            return candidate
    return None


def build_forward(message: FetchedMessage, to: str) -> EmailMessage:
    """Wrap ``message`` as an RFC822 attachment in a new message addressed to ``to``."""
    fwd = EmailMessage()
    sender = (message.reply_to or message.from_ or [None])[0]
    if sender:
        fwd["From"] = sender
    fwd["To"] = to
    subject = (message.subject or "").strip()
    fwd["Subject"] = f"Fwd: {subject}" if subject else "Fwd:"
    fwd["Auto-Submitted"] = "auto-forwarded"
    fwd.set_content(FORWARD_INTRO)
    fwd.add_attachment(message.mime(), filename=FORWARD_FILENAME)
    return fwd


def _move(mailbox: MailboxSession, uid: int, destination: str) -> bool:
    """Move ``uid`` to ``destination``; True when the copy+delete fallback was used."""
    mailbox.create_folder_if_absent(destination)
    if mailbox.supports_move:
        mailbox.move(uid, destination)
        return False
    mailbox.copy(uid, destination)
    mailbox.set_flag(uid, DELETED, True)
    return True


def _set_labels(mailbox: MailboxSession, uid: int, destination: str | None, value: bool) -> None:
    labels = split_labels(destination)
    if not labels:
        logger.warning("No labels given for UID %d, skipping", uid)
        return
    if not mailbox.supports_keywords:
        logger.warning("Server does not support custom keywords, cannot change labels on UID %d", uid)
        return
    for label in labels:
        mailbox.set_flag(uid, label, value)


def apply_action(
    action: ActionType,
    destination: str | None,
    message: FetchedMessage,
    source_folder: str,
    *,
    mailbox: MailboxSession,
    transport: Transport | None = None,
) -> bool:
    """Perform ``action`` on ``message`` in ``source_folder``.

    Returns:
        True when the message was flagged ``\\Deleted`` in the source folder
        and the folder needs an expunge.
    """
    uid = message.uid

    if action == ActionType.MOVE:
        if not destination:
            logger.warning("MOVE for UID %d in %s has no destination, skipping", uid, source_folder)
            return False
        deleted = _move(mailbox, uid, destination)
        logger.info("Moved UID %d from %s to %s", uid, source_folder, destination)
        return deleted
    elif action == ActionType.COPY:
        if not destination:
            logger.warning("COPY for UID %d in %s has no destination, skipping", uid, source_folder)
            return False
        mailbox.create_folder_if_absent(destination)
        mailbox.copy(uid, destination)
        logger.info("Copied UID %d to %s", uid, destination)
    elif action == ActionType.DELETE:
        mailbox.set_flag(uid, DELETED, True)
        logger.info("Deleted UID %d in %s", uid, source_folder)
        return True
    elif action == ActionType.MARK_READ:
        mailbox.set_flag(uid, SEEN, True)
    elif action == ActionType.MARK_UNREAD:
        mailbox.set_flag(uid, SEEN, False)
    elif action == ActionType.FLAG:
        mailbox.set_flag(uid, FLAGGED, True)
    elif action == ActionType.ADD_LABEL:
        _set_labels(mailbox, uid, destination, True)
    elif action == ActionType.REMOVE_LABEL:
        _set_labels(mailbox, uid, destination, False)
    elif action == ActionType.ARCHIVE:
        folder = resolve_archive_folder(mailbox, destination)
        if folder is None:
            logger.warning("No archive folder found for UID %d, skipping", uid)
            return False
        deleted = _move(mailbox, uid, folder)
        logger.info("Archived UID %d to %s", uid, folder)
        return deleted
    elif action == ActionType.FORWARD:
        if not destination:
            logger.warning("FORWARD for UID %d has no recipient, skipping", uid)
            return False
        if transport is None:
            logger.warning("No outbound transport configured, cannot forward UID %d", uid)
            return False
        transport.send(build_forward(message, destination))
        logger.info("Forwarded UID %d to %s", uid, destination)
    elif action == ActionType.STOP:
        logger.debug("STOP matched UID %d, no further rules are evaluated", uid)
    else:
        raise ValueError(f"Unhandled action type: {action}")
    return False


def apply_spam_action(account: Account, message: FetchedMessage, *, mailbox: MailboxSession) -> bool:
    """Handle a message the classifier flagged as spam.

    A failed move to the spam folder falls back to marking the message seen so
    it does not stay unread in the inbox.

    Returns:
        True when the message was flagged ``\\Deleted``.
    """
    uid = message.uid

    if account.spam_action == SpamAction.DELETE:
        mailbox.set_flag(uid, DELETED, True)
        logger.info("Spam UID %d deleted", uid)
        return True
    if account.spam_action == SpamAction.MOVE:
        try:
            mailbox.create_folder_if_absent(account.spam_folder)
            mailbox.copy(uid, account.spam_folder)
            mailbox.set_flag(uid, DELETED, True)
        except Exception:
            logger.exception("Could not move spam UID %d to %s, marking as read", uid, account.spam_folder)
            mailbox.set_flag(uid, SEEN, True)
            return False
        logger.info("Spam UID %d moved to %s", uid, account.spam_folder)
        return True
    if account.spam_action == SpamAction.MARK_AS_READ:
        mailbox.set_flag(uid, SEEN, True)
        logger.info("Spam UID %d marked as read", uid)
        return False
    raise ValueError(f"Unhandled spam action: {account.spam_action}")
