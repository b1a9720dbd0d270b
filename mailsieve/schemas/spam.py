"""Schemas for spamd (SpamAssassin daemon) responses."""

from pydantic import BaseModel, Field


class SpamdResponse(BaseModel):
    """A parsed spamd response: status line, headers and optional body."""

    protocol: str  # e.g. "SPAMD/1.5"
    code: int  # 0 == EX_OK
    status_text: str
    headers: dict[str, str] = Field(default_factory=dict)  # keys lower-cased
    body: str | None = None
    raw: str = ""  # whole response reconstructed, for diagnostics

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


class SpamVerdict(BaseModel):
    """Outcome of a CHECK request for one message. Never persisted."""

    is_spam: bool
    score: float
    threshold: float
    raw: str = ""


class SymbolsResult(SpamVerdict):
    """Outcome of a SYMBOLS request: the verdict plus the matching rule names."""

    symbols: list[str] = Field(default_factory=list)
    symbols_raw: str = ""
