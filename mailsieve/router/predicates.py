"""Rule condition evaluation.

Deterministic, no I/O: the message has already been fetched. A field that
cannot be read evaluates as the empty string, which then takes part in the
comparison normally (so ``not_contains`` on an unreadable body is true).
"""

import logging
import re

from mailsieve.executors.text_extractor import extract_text
from mailsieve.schemas.rules import ConditionField, ConditionOperator, Rule
from mailsieve.schemas.sync import FetchedMessage

logger = logging.getLogger(__name__)


def field_text(message: FetchedMessage, field: ConditionField) -> str:
    """Return the text a condition on ``field`` is compared against."""
    if field == ConditionField.SUBJECT:
        return message.subject or ""
    if field == ConditionField.FROM:
        return " ".join(message.from_)
    if field == ConditionField.TO:
        return " ".join(message.to)
    if field == ConditionField.CC:
        return " ".join(message.cc)
    if field == ConditionField.BCC:
        return " ".join(message.bcc)
    if field == ConditionField.BODY:
        try:
            return extract_text(message.mime())
        except Exception:
            logger.warning("Could not read body of UID %d", message.uid, exc_info=True)
            return ""
    raise ValueError(f"Unknown condition field: {field}")


def compare(left: str, right: str, operator: ConditionOperator, *, case_sensitive: bool) -> bool:
    """Apply ``operator`` to trimmed ``left`` (message text) and ``right`` (rule value)."""
    left = (left or "").strip()
    right = (right or "").strip()

    if operator == ConditionOperator.REGEX:
        flags = 0 if case_sensitive else re.IGNORECASE
        return re.search(right, left, flags) is not None

    if not case_sensitive:
        left = left.lower()
        right = right.lower()

    if operator == ConditionOperator.EQUALS:
        return left == right
    if operator == ConditionOperator.NOT_EQUALS:
        return left != right
    if operator == ConditionOperator.CONTAINS:
        return right in left
    if operator == ConditionOperator.NOT_CONTAINS:
        return right not in left
    if operator == ConditionOperator.STARTS_WITH:
        return left.startswith(right)
    if operator == ConditionOperator.ENDS_WITH:
        return left.endswith(right)
    raise ValueError(f"Unknown condition operator: {operator}")


def evaluate(rule: Rule, message: FetchedMessage) -> bool:
    """True when ``message`` satisfies the condition of ``rule``.

    An invalid regular expression never matches; it is logged instead.
    """
    left = field_text(message, rule.field)
    try:
        return compare(left, rule.value, rule.operator, case_sensitive=rule.case_sensitive)
    except re.error as exc:
        logger.warning("Invalid regex in rule [%s]: %s", rule.describe(), exc)
        return False


def first_match(rules: list[Rule], message: FetchedMessage) -> Rule | None:
    """Return the first rule (in stored order) whose condition matches."""
    for rule in rules:
        if evaluate(rule, message):
            return rule
    return None
