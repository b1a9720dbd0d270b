"""Schemas for filtering rules.

A rule is a single condition (field, operator, value) plus one action. Rules
are evaluated in stored order and the first match wins.

Enum values are parsed leniently so hand-edited rules files keep working:
case and surrounding whitespace are ignored, ``-`` is read as ``_`` and a few
short aliases are accepted (``eq``, ``!=``, ``star``, ...).
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, field_validator, model_validator


def _normalize(value: str) -> str:
    return value.strip().replace("-", "_").lower()


class _LenientEnum(StrEnum):
    """StrEnum that also resolves the aliases listed in ``_aliases``."""

    @classmethod
    def parse(cls, value: str) -> "_LenientEnum | None":
        key = _normalize(value)
        try:
            return cls(key)
        except ValueError:
            pass
        target = cls._aliases().get(key)
        return cls(target) if target else None

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {}


class ConditionField(_LenientEnum):
    """Part of the message a condition looks at."""

    SUBJECT = "subject"
    FROM = "from"
    TO = "to"
    CC = "cc"
    BCC = "bcc"
    BODY = "body"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {
            "oggetto": "subject",
            "da": "from",
            "a": "to",
            "carbon_copy": "cc",
            "ccn": "bcc",
            "blind_carbon_copy": "bcc",
            "message": "body",
            "testo": "body",
        }


class ConditionOperator(_LenientEnum):
    """Comparison between the extracted field text and the rule value."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {
            "eq": "equals",
            "==": "equals",
            "ne": "not_equals",
            "!=": "not_equals",
            "<>": "not_equals",
            "has": "contains",
            "~=": "contains",
            "not_has": "not_contains",
            "!~": "not_contains",
            "sw": "starts_with",
            "^=": "starts_with",
            "ew": "ends_with",
            "$=": "ends_with",
            "matches": "regex",
        }


class ActionType(_LenientEnum):
    """Action applied to a message when its rule matches."""

    MOVE = "move"
    COPY = "copy"
    DELETE = "delete"
    MARK_READ = "mark_read"
    MARK_UNREAD = "mark_unread"
    FLAG = "flag"
    ADD_LABEL = "add_label"
    REMOVE_LABEL = "remove_label"
    ARCHIVE = "archive"
    FORWARD = "forward"
    STOP = "stop"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {
            "del": "delete",
            "remove": "delete",
            "read": "mark_read",
            "unread": "mark_unread",
            "star": "flag",
            "label_add": "add_label",
            "label_remove": "remove_label",
            "halt": "stop",
            "break": "stop",
        }

    @property
    def needs_destination(self) -> bool:
        return self in _DESTINATION_ACTIONS


_DESTINATION_ACTIONS = frozenset(
    {
        ActionType.MOVE,
        ActionType.COPY,
        ActionType.ADD_LABEL,
        ActionType.REMOVE_LABEL,
        ActionType.FORWARD,
    }
)


class Rule(BaseModel):
    """A single filtering rule scoped to one account."""

    account: str
    field: ConditionField
    operator: ConditionOperator
    value: str = ""
    case_sensitive: bool = False
    action: ActionType
    destination: str | None = None

    @field_validator("field", "operator", "action", mode="before")
    @classmethod
    def _parse_lenient(cls, value: Any, info) -> Any:
        if not isinstance(value, str):
            return value
        enum_cls = cls.model_fields[info.field_name].annotation
        parsed = enum_cls.parse(value)
        if parsed is None:
            raise ValueError(f"unknown {info.field_name}: {value!r}")
        return parsed

    @field_validator("destination")
    @classmethod
    def _blank_destination_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @model_validator(mode="after")
    def _check_destination(self) -> "Rule":
        if self.action.needs_destination and self.destination is None:
            raise ValueError(f"action '{self.action.value}' requires a destination")
        return self

    def describe(self) -> str:
        """One-line human readable summary, used by the CLI and in logs."""
        dest = self.destination or "-"
        return (
            f"{self.field.value} {self.operator.value} '{self.value}'"
            f" -> {self.action.value} '{dest}'"
        )
