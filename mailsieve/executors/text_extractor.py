"""Plain-text extraction from a MIME part tree.

Produces the text that ``body`` conditions are matched against. The walk
skips attachments and inline resources, prefers the richest alternative,
converts HTML to text while keeping block-level line breaks, and never
returns more than ``MAX_OUTPUT_CHARS`` characters.

Extraction is best effort: undecodable parts and broken sub-trees degrade to
less (or no) text, they never raise.
"""

import codecs
import logging
import re
from typing import Protocol

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 200_000
MAX_DEPTH = 64

_BLOCK_TAGS = ["p", "li", "div", "tr", "h1", "h2", "h3", "h4", "h5", "h6"]
_BREAK = "\x00"  # placeholder for a forced line break while collapsing HTML whitespace

_LINE_BREAKS = re.compile(r"(?:\r\n|[\n\r\x0b\x0c\x85\u2028\u2029])+")
_SPACE_RUNS = re.compile(r"[\t\x0b\f ]{2,}")
_ANY_WHITESPACE = re.compile(r"\s+")


class MimePart(Protocol):
    """The subset of ``email.message.Message`` the extractor relies on."""

    def get_content_type(self) -> str: ...

    def get_content_maintype(self) -> str: ...

    def get_content_disposition(self) -> str | None: ...

    def get_filename(self, failobj=None): ...

    def get_content_charset(self, failobj=None): ...

    def get(self, name, failobj=None): ...

    def is_multipart(self) -> bool: ...

    def get_payload(self, i=None, decode=False): ...


def extract_text(part: MimePart, max_chars: int = MAX_OUTPUT_CHARS) -> str:
    """Return the readable text of ``part``, truncated to ``max_chars``."""
    fragments: list[str] = []
    try:
        _extract(part, fragments, max_chars, depth=0)
    except Exception:
        logger.debug("Text extraction failed softly", exc_info=True)
    return "\n\n".join(fragments).strip()[:max_chars]


def clean_text(text: str) -> str:
    """Collapse NBSPs, runs of line breaks and runs of blanks."""
    if not text:
        return ""
    text = text.replace("\u00a0", " ")
    text = _LINE_BREAKS.sub("\n", text)
    text = _SPACE_RUNS.sub(" ", text)
    return text.strip()


def html_to_text(html: str) -> str:
    """Convert HTML to text, turning block boundaries and ``<br>`` into newlines."""
    if not html or not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with(_BREAK)
    for block in soup.find_all(_BLOCK_TAGS):
        block.insert(0, _BREAK)
    text = _ANY_WHITESPACE.sub(" ", soup.get_text())
    lines = (line.strip() for line in text.split(_BREAK))
    return clean_text("\n".join(line for line in lines if line))


# --- Traversal ---


def _collected(fragments: list[str]) -> int:
    return sum(len(f) + 2 for f in fragments)


def _append(fragments: list[str], text: str) -> None:
    if text:
        fragments.append(text)


def _extract(part: MimePart, fragments: list[str], max_chars: int, depth: int) -> None:
    if part is None or depth > MAX_DEPTH or _collected(fragments) >= max_chars:
        return
    if _is_skippable(part):
        return

    content_type = part.get_content_type()

    if content_type == "text/plain":
        _append(fragments, clean_text(_text_payload(part)))
        return

    if content_type == "text/html":
        _append(fragments, html_to_text(_text_payload(part)))
        return

    if content_type == "multipart/alternative":
        _append(fragments, _pick_alternative(_children(part)))
        return

    if content_type == "multipart/related":
        for child in _children(part):
            if child.get_content_type() in ("text/html", "text/plain"):
                _extract(child, fragments, max_chars, depth + 1)
                break
        return

    if content_type == "message/rfc822":
        for nested in _children(part):
            _extract(nested, fragments, max_chars, depth + 1)
        return

    if part.get_content_maintype() == "multipart":
        for child in _children(part):
            try:
                _extract(child, fragments, max_chars, depth + 1)
            except Exception:
                logger.debug("Skipping sub-part on error", exc_info=True)
        return

    if part.get_content_maintype() == "text":
        _append(fragments, clean_text(_text_payload(part)))


def _children(part: MimePart) -> list[MimePart]:
    if not part.is_multipart():
        return []
    payload = part.get_payload()
    return list(payload) if isinstance(payload, list) else []


def _pick_alternative(candidates: list[MimePart]) -> str:
    """Pick the best alternative, scanning from the last (usually richest) one.

    Preference: text/html, then text/plain, then any other text/*.
    """
    usable = [c for c in reversed(candidates) if not _is_skippable(c)]
    for child in usable:
        if child.get_content_type() == "text/html":
            return html_to_text(_text_payload(child))
    for child in usable:
        if child.get_content_type() == "text/plain":
            return clean_text(_text_payload(child))
    for child in usable:
        if child.get_content_maintype() == "text":
            return clean_text(_text_payload(child))
    return ""


def _is_textish(part: MimePart) -> bool:
    return part.get_content_maintype() in ("text", "message")


def _is_skippable(part: MimePart) -> bool:
    """True for attachments and inline resources (images, cid: parts, ...)."""
    try:
        if (part.get_content_disposition() or "").lower() == "attachment":
            return True
        textish = _is_textish(part)
        if part.get_filename() and not textish:
            return True
        if part.get("Content-ID") is not None and not textish:
            return True
        return part.get_content_maintype() == "image"
    except Exception:
        logger.debug("Could not inspect part headers", exc_info=True)
        return False


# --- Decoding ---


def _charset(part: MimePart) -> str:
    declared = part.get_content_charset()
    if not declared:
        return "utf-8"
    name = declared.strip().lower().replace("_", "-")
    if name == "utf8":
        name = "utf-8"
    try:
        codecs.lookup(name)
    except LookupError:
        logger.debug("Unsupported charset %r, falling back to UTF-8", declared)
        return "utf-8"
    return name


def _text_payload(part: MimePart) -> str:
    try:
        payload = part.get_payload(decode=True)
        if payload is None:
            return ""
        if isinstance(payload, str):
            return payload
        return payload.decode(_charset(part), errors="replace")
    except Exception:
        logger.debug("Could not decode text payload", exc_info=True)
        return ""
