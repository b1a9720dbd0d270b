"""Shared fixtures for mailsieve tests."""

from email.message import EmailMessage

import pytest

from mailsieve.schemas.account import Account
from mailsieve.schemas.sync import FetchedMessage


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS."""
    monkeypatch.setenv("MAILSIEVE_USE_SOPS", "false")


def make_raw(
    subject: str = "Hello",
    sender: str = "Alice <alice@example.com>",
    body: str = "Plain body",
    html: str | None = None,
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = "me@example.com"
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    return msg.as_bytes()


def make_message(uid: int, subject: str = "Hello", **overrides) -> FetchedMessage:
    body = overrides.pop("body", "Plain body")
    html = overrides.pop("html", None)
    sender = overrides.pop("sender", "Alice <alice@example.com>")
    defaults = dict(
        uid=uid,
        subject=subject,
        from_=[sender],
        to=["me@example.com"],
        raw=make_raw(subject, sender, body, html),
    )
    defaults.update(overrides)
    return FetchedMessage(**defaults)


class FakeMailbox:
    """In-memory MailboxSession that records every call."""

    def __init__(
        self,
        messages: list[FetchedMessage] | None = None,
        *,
        uid_validity: int = 10,
        uid_next: int | None = None,
        supports_move: bool = False,
        supports_keywords: bool = True,
        folders: tuple[str, ...] = ("INBOX",),
    ) -> None:
        self.messages = {m.uid: m for m in messages or []}
        self._uid_validity = uid_validity
        self._uid_next = uid_next if uid_next is not None else max(self.messages, default=0) + 1
        self._supports_move = supports_move
        self._supports_keywords = supports_keywords
        self.folders = list(folders)
        self.opened: list[str] = []
        self.fetches: list[tuple[int, int, bool]] = []
        self.flags: dict[int, set[str]] = {}
        self.copies: list[tuple[int, str]] = []
        self.moves: list[tuple[int, str]] = []
        self.created: list[str] = []
        self.expunges = 0
        self.fail_on: dict[str, Exception] = {}
        self.entered = False
        self.exited = False

    def __enter__(self) -> "FakeMailbox":
        self.entered = True
        return self

    def __exit__(self, *exc) -> None:
        self.exited = True

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail_on:
            raise self.fail_on[name]

    @property
    def supports_move(self) -> bool:
        return self._supports_move

    @property
    def supports_keywords(self) -> bool:
        return self._supports_keywords

    def open(self, folder: str) -> None:
        self._maybe_fail("open")
        self.opened.append(folder)

    def uid_validity(self) -> int:
        return self._uid_validity

    def uid_next(self) -> int:
        return self._uid_next

    def fetch_range(self, start: int, end: int, *, headers_only: bool = False) -> list[FetchedMessage]:
        self._maybe_fail("fetch_range")
        self.fetches.append((start, end, headers_only))
        return [self.messages[uid] for uid in sorted(self.messages) if start <= uid <= end]

    def set_flag(self, uid: int, flag: str, value: bool) -> None:
        self._maybe_fail("set_flag")
        current = self.flags.setdefault(uid, set())
        if value:
            current.add(flag)
        else:
            current.discard(flag)

    def copy(self, uid: int, folder: str) -> None:
        self._maybe_fail("copy")
        self.copies.append((uid, folder))

    def move(self, uid: int, folder: str) -> None:
        self._maybe_fail("move")
        self.moves.append((uid, folder))

    def folder_exists(self, folder: str) -> bool:
        return folder in self.folders

    def create_folder_if_absent(self, folder: str) -> None:
        self._maybe_fail("create_folder_if_absent")
        if folder not in self.folders:
            self.folders.append(folder)
            self.created.append(folder)

    def expunge(self) -> None:
        self.expunges += 1

    def list_folders(self) -> list[str]:
        return list(self.folders)


@pytest.fixture()
def account():
    return Account(name="work", host="imap.example.com", username="me@example.com", password="secret")
