"""Schemas for mailbox accounts and the global spamd connection."""

from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class SpamAction(StrEnum):
    """What to do with a message the classifier flags as spam."""

    DELETE = "delete"
    MOVE = "move"
    MARK_AS_READ = "mark_as_read"


class Account(BaseModel):
    """Configuration for a single IMAP account.

    ``name`` is the unique key: rules and sync state refer to the account by it.
    """

    name: str
    host: str
    username: str
    password: str
    port: int = 993
    ssl: bool = True
    folder: str = "INBOX"
    use_spamassassin: bool = False
    spam_action: SpamAction = SpamAction.DELETE
    spam_folder: str = "Junk"


class SpamdConfig(BaseModel):
    """Connection settings for the SpamAssassin daemon (shared by all accounts)."""

    host: str = "127.0.0.1"
    port: int = 783
    user: str | None = None  # sent as the spamd User header when set
    connect_timeout: float = Field(default=3.0, gt=0)
    read_timeout: float = Field(default=5.0, gt=0)

    @field_validator("user")
    @classmethod
    def _ascii_user(cls, v: str | None) -> str | None:
        if v is not None and not v.isascii():
            raise ValueError("spamd user must be ASCII")
        return v
