"""Schemas for incremental mailbox synchronization.

Covers the watermark record persisted per (account, folder), the
transport-neutral message handed to the rule engine, and the per-run results.
"""

from datetime import UTC, datetime
from email import message_from_bytes, policy
from email.message import Message

from pydantic import BaseModel, Field, PrivateAttr

# --- Watermark ---


def state_key(account: str, folder: str) -> str:
    return f"{account}:{folder}"


class SyncState(BaseModel):
    """Watermark for one folder of one account.

    ``last_processed_uid`` is inclusive and only meaningful under
    ``uid_validity``: when the server reports another UIDVALIDITY the UIDs have
    been renumbered and the watermark must be thrown away.
    """

    account: str
    folder: str
    uid_validity: int = -1
    last_processed_uid: int = -1
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> str:
        return state_key(self.account, self.folder)

    def refresh_validity(self, uid_validity: int) -> "SyncState":
        """Return the state to use under ``uid_validity``.

        Same epoch: unchanged. New epoch: history is unknown, so the watermark
        goes back to "before the first message".
        """
        if uid_validity == self.uid_validity:
            return self
        return self.model_copy(
            update={
                "uid_validity": uid_validity,
                "last_processed_uid": -1,
                "updated_at": datetime.now(UTC),
            }
        )

    def should_process(self, uid: int, uid_validity: int) -> bool:
        return uid_validity == self.uid_validity and uid > self.last_processed_uid

    def advanced(self, last_processed_uid: int) -> "SyncState":
        return self.model_copy(
            update={
                "last_processed_uid": last_processed_uid,
                "updated_at": datetime.now(UTC),
            }
        )

    def touched(self) -> "SyncState":
        return self.model_copy(update={"updated_at": datetime.now(UTC)})


# --- Messages ---


class FetchedMessage(BaseModel):
    """A message as fetched from the server, independent of the IMAP library.

    ``raw`` holds the RFC822 bytes that were fetched: the full message, or only
    the header block when the run did not need bodies.
    """

    uid: int
    subject: str = ""
    from_: list[str] = Field(default_factory=list)
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    reply_to: list[str] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)
    raw: bytes = b""

    _mime: Message | None = PrivateAttr(default=None)

    def mime(self) -> Message:
        """Parsed MIME tree of ``raw`` (cached)."""
        if self._mime is None:
            self._mime = message_from_bytes(self.raw, policy=policy.default)
        return self._mime


# --- Results ---


class SyncResult(BaseModel):
    """Outcome of one synchronizer pass over one account."""

    account: str
    folder: str = ""
    fetched: int = 0
    skipped: int = 0
    spam: int = 0
    matched: int = 0
    errors: int = 0
    expunged: bool = False
    last_processed_uid: int = -1
    failed: bool = False
    error: str | None = None


class RunSummary(BaseModel):
    """Outcome of one scheduler run over all accounts."""

    started_at: datetime
    finished_at: datetime | None = None
    results: list[SyncResult] = Field(default_factory=list)

    @property
    def failed_accounts(self) -> list[str]:
        return [r.account for r in self.results if r.failed]
