"""Minimal SpamAssassin daemon (spamd) client speaking SPAMC/1.5.

Supported commands:
  CHECK    -- verdict and score, read from the ``Spam`` response header
  SYMBOLS  -- same, plus the names of the rules that fired (response body)

One TCP connection per request, connect and read timeouts from
``SpamdConfig``, and no retries: callers that want resilience wrap the client.

Usage::

    client = SpamdClient(SpamdConfig(host="127.0.0.1", port=783))
    verdict = client.check(raw_rfc822_bytes)
    if verdict.is_spam:
        ...
"""

import logging
import re
import socket
from enum import StrEnum
from typing import BinaryIO

from mailsieve.schemas.account import SpamdConfig
from mailsieve.schemas.spam import SpamdResponse, SpamVerdict, SymbolsResult

logger = logging.getLogger(__name__)

PROTOCOL_ID = "SPAMC/1.5"
RESPONSE_PREFIX = "SPAMD/"
MAX_LINE_BYTES = 8192


class SpamdError(Exception):
    """Base class: the classifier could not produce a verdict."""


class SpamdConnectionError(SpamdError):
    """spamd could not be reached (refused, unreachable, DNS failure)."""


class SpamdTimeoutError(SpamdConnectionError):
    """Connecting to or reading from spamd took longer than the configured timeout."""


class SpamdProtocolError(SpamdError):
    """spamd answered with something that is not a valid, successful response."""


class SpamdHeaderError(SpamdProtocolError):
    """The ``Spam`` header is missing or cannot be parsed."""


class SpamdTruncatedError(SpamdError):
    """The connection closed before the full response was received."""


class Command(StrEnum):
    CHECK = "CHECK"
    SYMBOLS = "SYMBOLS"


class SpamdClient:
    """Synchronous spamd client. Safe to share between threads (no shared socket)."""

    def __init__(self, config: SpamdConfig) -> None:
        self._config = config

    @property
    def config(self) -> SpamdConfig:
        return self._config

    # --- Public API ---

    def check(self, message: bytes) -> SpamVerdict:
        """Run a CHECK request for one RFC822 message.

        Raises:
            SpamdError: Any failure; see the subclasses for the cause.
        """
        response = self.request(Command.CHECK, message)
        _ensure_ok(response)
        header = response.header("Spam")
        if header is None:
            raise SpamdHeaderError("Missing 'Spam' header in CHECK response")
        is_spam, score, threshold = parse_spam_header(header)
        return SpamVerdict(is_spam=is_spam, score=score, threshold=threshold, raw=response.raw)

    def symbols(self, message: bytes) -> SymbolsResult:
        """Run a SYMBOLS request: verdict (when present) plus the rule names that fired."""
        response = self.request(Command.SYMBOLS, message)
        _ensure_ok(response)
        header = response.header("Spam")
        is_spam, score, threshold = (False, 0.0, 0.0)
        if header is not None:
            is_spam, score, threshold = parse_spam_header(header)
        body = response.body or ""
        return SymbolsResult(
            is_spam=is_spam,
            score=score,
            threshold=threshold,
            raw=response.raw,
            symbols=[s for s in re.split(r"[,\s]+", body) if s],
            symbols_raw=body,
        )

    # --- Low-level protocol ---

    def request(self, command: Command, message: bytes) -> SpamdResponse:
        """Send one request and return the parsed (not yet validated) response."""
        head = [f"{command.value} {PROTOCOL_ID}", f"Content-length: {len(message)}"]
        if self._config.user:
            head.append(f"User: {self._config.user}")
        try:
            payload = ("\r\n".join(head) + "\r\n\r\n").encode("ascii") + message
        except UnicodeError as exc:
            raise SpamdProtocolError(f"Request headers are not ASCII: {exc}") from exc

        address = (self._config.host, self._config.port)
        try:
            sock = socket.create_connection(address, timeout=self._config.connect_timeout)
        except TimeoutError as exc:
            raise SpamdTimeoutError(f"Timed out connecting to spamd at {address[0]}:{address[1]}") from exc
        except OSError as exc:
            raise SpamdConnectionError(f"Cannot connect to spamd at {address[0]}:{address[1]}: {exc}") from exc
        except ValueError as exc:
            # IDNA failures (UnicodeError) on a malformed host name
            raise SpamdConnectionError(f"Invalid spamd address {address[0]}:{address[1]}: {exc}") from exc

        with sock:
            sock.settimeout(self._config.read_timeout)
            try:
                sock.sendall(payload)
                with sock.makefile("rb") as stream:
                    return read_response(stream)
            except TimeoutError as exc:
                raise SpamdTimeoutError("Timed out waiting for spamd response") from exc
            except OSError as exc:
                raise SpamdConnectionError(f"I/O error talking to spamd: {exc}") from exc


def read_response(stream: BinaryIO) -> SpamdResponse:
    """Parse a spamd response from a binary stream.

    Status line, then ``Name: value`` headers up to a blank line, then exactly
    ``Content-length`` body bytes when that header is present.
    """
    status_line = _read_line(stream)
    if status_line is None:
        raise SpamdTruncatedError("No status line from spamd")

    header_lines: list[str] = []
    while True:
        line = _read_line(stream)
        if line is None or line == "":
            break
        header_lines.append(line)

    protocol, code, status_text = parse_status_line(status_line)

    headers: dict[str, str] = {}
    for line in header_lines:
        name, sep, value = line.partition(":")
        if sep and name.strip():
            headers[name.strip().lower()] = value.strip()

    body = None
    content_length = headers.get("content-length")
    if content_length is not None:
        try:
            length = int(content_length)
        except ValueError:
            length = -1
        if length < 0:
            raise SpamdProtocolError(f"Invalid Content-length: {content_length}")
        data = stream.read(length)
        if len(data) != length:
            raise SpamdTruncatedError(f"Truncated body: expected {length} bytes, got {len(data)}")
        body = data.decode("utf-8", errors="replace")

    raw = status_line + "\r\n" + "".join(h + "\r\n" for h in header_lines) + "\r\n" + (body or "")
    return SpamdResponse(
        protocol=protocol,
        code=code,
        status_text=status_text,
        headers=headers,
        body=body,
        raw=raw,
    )


def parse_status_line(line: str) -> tuple[str, int, str]:
    """Split ``SPAMD/1.5 0 EX_OK`` into (protocol, code, text)."""
    parts = line.split(None, 2)
    if len(parts) < 3 or not parts[0].startswith(RESPONSE_PREFIX):
        raise SpamdProtocolError(f"Invalid status line: {line!r}")
    try:
        code = int(parts[1])
    except ValueError:
        raise SpamdProtocolError(f"Invalid status code in line: {line!r}") from None
    return parts[0], code, parts[2]


def parse_spam_header(value: str) -> tuple[bool, float, float]:
    """Parse ``True ; 6.3 / 5.0`` (also ``score=``/``required=`` forms).

    Returns:
        (is_spam, score, threshold)
    """
    text = value.strip()
    lowered = text.lower()
    if lowered.startswith("true"):
        is_spam = True
        text = text[4:].strip()
    elif lowered.startswith("false"):
        is_spam = False
        text = text[5:].strip()
    else:
        raise SpamdHeaderError(f"Cannot parse 'Spam' header boolean: {value!r}")

    if text.startswith(";"):
        text = text[1:].strip()

    left, sep, right = text.partition("/")
    if not sep:
        raise SpamdHeaderError(f"Cannot parse score/threshold in 'Spam' header: {value!r}")

    left = left.replace("score=", "").strip()
    right = right.replace("required=", "").strip()
    try:
        score = float(left)
    except ValueError:
        raise SpamdHeaderError(f"Invalid score in 'Spam' header: {value!r}") from None
    try:
        threshold = float(right)
    except ValueError:
        raise SpamdHeaderError(f"Invalid threshold in 'Spam' header: {value!r}") from None
    return is_spam, score, threshold


def _ensure_ok(response: SpamdResponse) -> None:
    if response.code != 0:
        raise SpamdProtocolError(f"spamd returned non-OK: {response.code} {response.status_text}")


def _read_line(stream: BinaryIO) -> str | None:
    """Read one CRLF-terminated line; None at EOF before any byte."""
    data = stream.readline(MAX_LINE_BYTES)
    if not data:
        return None
    if data.endswith(b"\r\n"):
        data = data[:-2]
    elif data.endswith(b"\n"):
        data = data[:-1]
    return data.decode("ascii", errors="replace")
