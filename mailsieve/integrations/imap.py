"""Mailbox capability over imap-tools.

The synchronizer and the action executor only talk to the ``MailboxSession``
protocol below; ``ImapMailbox`` is the production implementation and tests
use an in-memory fake. Everything is synchronous: each account runs on its own
worker thread with its own connection.

Usage::

    with ImapMailbox(account) as mailbox:
        mailbox.open("INBOX")
        messages = mailbox.fetch_range(6, 8)
        mailbox.set_flag(messages[0].uid, SEEN, True)
"""

import logging
from typing import Protocol

from imap_tools import AND, MailBox, MailboxLoginError, MailBoxUnencrypted, MailMessage, MailMessageFlags, UidRange

from mailsieve.schemas.account import Account
from mailsieve.schemas.sync import FetchedMessage

logger = logging.getLogger(__name__)

SEEN = MailMessageFlags.SEEN
DELETED = MailMessageFlags.DELETED
FLAGGED = MailMessageFlags.FLAGGED


class MailboxSession(Protocol):
    """What the engine needs from a connected mailbox."""

    @property
    def supports_move(self) -> bool: ...

    @property
    def supports_keywords(self) -> bool: ...

    def open(self, folder: str) -> None: ...

    def uid_validity(self) -> int: ...

    def uid_next(self) -> int: ...

    def fetch_range(self, start: int, end: int, *, headers_only: bool = False) -> list[FetchedMessage]: ...

    def set_flag(self, uid: int, flag: str, value: bool) -> None: ...

    def copy(self, uid: int, folder: str) -> None: ...

    def move(self, uid: int, folder: str) -> None: ...

    def folder_exists(self, folder: str) -> bool: ...

    def create_folder_if_absent(self, folder: str) -> None: ...

    def expunge(self) -> None: ...

    def list_folders(self) -> list[str]: ...


def _addresses(values) -> list[str]:
    return [v.full for v in values or () if v is not None]


def _raw_bytes(msg: MailMessage) -> bytes:
    """Message bytes as the server sent them: no header re-folding, CRLF line ends."""
    wire = msg.obj.policy.clone(max_line_length=0, linesep="\r\n")
    try:
        return msg.obj.as_bytes(policy=wire)
    except (UnicodeError, LookupError):
        logger.debug("Re-encoding message UID %s with replacement", msg.uid, exc_info=True)
        return msg.obj.as_string(policy=wire).encode("utf-8", errors="replace")


def _parse_message(msg: MailMessage) -> FetchedMessage:
    """Convert an imap-tools MailMessage to a FetchedMessage."""
    return FetchedMessage(
        uid=int(msg.uid),
        subject=msg.subject or "",
        from_=_addresses([msg.from_values]),
        to=_addresses(msg.to_values),
        cc=_addresses(msg.cc_values),
        bcc=_addresses(msg.bcc_values),
        reply_to=_addresses(msg.reply_to_values),
        flags=list(msg.flags),
        raw=_raw_bytes(msg),
    )


class ImapMailbox:
    """Synchronous ``MailboxSession`` backed by ``imap_tools.MailBox``."""

    def __init__(self, account: Account, *, timeout: float | None = None) -> None:
        self._account = account
        self._timeout = timeout
        self._mailbox: MailBox | None = None
        self._folder: str | None = None
        self._keywords = False

    def __enter__(self) -> "ImapMailbox":
        self._mailbox = self._connect()
        return self

    def __exit__(self, *exc: object) -> None:
        if self._mailbox:
            self._disconnect()
            self._mailbox = None

    def _connect(self) -> MailBox:
        if self._account.ssl:
            mb = MailBox(self._account.host, port=self._account.port, timeout=self._timeout)
        else:
            mb = MailBoxUnencrypted(self._account.host, port=self._account.port, timeout=self._timeout)

        try:
            mb.login(self._account.username, self._account.password, initial_folder=None)
        except MailboxLoginError:
            logger.error("IMAP login failed for account %s", self._account.name)
            raise

        logger.info("Connected to %s as %s", self._account.host, self._account.username)
        return mb

    def _disconnect(self) -> None:
        try:
            self.mailbox.logout()
        except Exception:
            logger.debug("Error during IMAP logout", exc_info=True)

    @property
    def mailbox(self) -> MailBox:
        if self._mailbox is None:
            raise RuntimeError("ImapMailbox is not connected. Use a 'with' block.")
        return self._mailbox

    @property
    def folder(self) -> str:
        if self._folder is None:
            raise RuntimeError("No folder selected. Call open() first.")
        return self._folder

    # --- Folder selection ---

    def open(self, folder: str) -> None:
        """Select ``folder`` read-write."""
        self.mailbox.folder.set(folder, readonly=False)
        self._folder = folder
        permanent = self.mailbox.client.untagged_responses.get("PERMANENTFLAGS") or []
        self._keywords = any(b"\\*" in item for item in permanent if isinstance(item, bytes))

    def _status(self) -> dict[str, int]:
        return self.mailbox.folder.status(self.folder, ["UIDNEXT", "UIDVALIDITY"])

    def uid_validity(self) -> int:
        return int(self._status()["UIDVALIDITY"])

    def uid_next(self) -> int:
        return int(self._status()["UIDNEXT"])

    @property
    def supports_move(self) -> bool:
        return "MOVE" in self.mailbox.client.capabilities

    @property
    def supports_keywords(self) -> bool:
        """True when the selected folder accepts custom keyword flags (``\\*``)."""
        return self._keywords

    # --- Fetch ---

    def fetch_range(self, start: int, end: int, *, headers_only: bool = False) -> list[FetchedMessage]:
        """Fetch messages with UID in [start, end], ascending, in one bulk round-trip.

        Never marks anything as seen.
        """
        msgs = self.mailbox.fetch(
            AND(uid=UidRange(start, end)),
            mark_seen=False,
            headers_only=headers_only,
            bulk=True,
        )
        fetched = [_parse_message(m) for m in msgs if m.uid]
        return sorted(fetched, key=lambda m: m.uid)

    # --- Actions ---

    def set_flag(self, uid: int, flag: str, value: bool) -> None:
        self.mailbox.flag([str(uid)], {flag}, value)
        logger.debug("%s %s on UID %d", "Set" if value else "Cleared", flag, uid)

    def copy(self, uid: int, folder: str) -> None:
        self.mailbox.copy([str(uid)], folder)

    def move(self, uid: int, folder: str) -> None:
        """Server-side MOVE. Only valid when ``supports_move`` is true."""
        if not self.supports_move:
            raise RuntimeError("Server does not advertise the MOVE capability")
        self.mailbox.move([str(uid)], folder)

    def expunge(self) -> None:
        self.mailbox.expunge()

    # --- Folder management ---

    def folder_exists(self, folder: str) -> bool:
        return self.mailbox.folder.exists(folder)

    def create_folder_if_absent(self, folder: str) -> None:
        if not self.folder_exists(folder):
            self.mailbox.folder.create(folder)
            logger.info("Created IMAP folder: %s", folder)

    def list_folders(self) -> list[str]:
        return [f.name for f in self.mailbox.folder.list()]
