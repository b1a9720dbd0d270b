"""Read-only loading of the JSON configuration files.

``accounts.json`` and ``rules.json`` hold JSON lists, ``spamd.json`` a single
object. Missing files mean "nothing configured" (no accounts, no rules,
default spamd settings); malformed files raise ``ConfigError``.
"""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from mailsieve.schemas.account import Account, SpamdConfig
from mailsieve.schemas.rules import Rule

logger = logging.getLogger(__name__)

_accounts_adapter = TypeAdapter(list[Account])
_rules_adapter = TypeAdapter(list[Rule])


class ConfigError(Exception):
    """A configuration file exists but cannot be used."""


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc


def load_accounts(path: str | Path) -> list[Account]:
    """Load accounts in file order. Names must be unique."""
    path = Path(path)
    if not path.exists():
        logger.info("Accounts file not found at %s, no accounts configured", path)
        return []

    try:
        accounts = _accounts_adapter.validate_python(_read_json(path))
    except ValidationError as exc:
        raise ConfigError(f"Invalid accounts file {path}: {exc}") from exc

    seen: set[str] = set()
    for account in accounts:
        if account.name in seen:
            raise ConfigError(f"Duplicate account name in {path}: {account.name!r}")
        seen.add(account.name)

    logger.info("Loaded %d account(s) from %s", len(accounts), path)
    return accounts


def load_rules(path: str | Path, accounts: list[Account] | None = None) -> list[Rule]:
    """Load rules in file order (the evaluation order).

    When ``accounts`` is given, rules for unknown accounts are reported.
    """
    path = Path(path)
    if not path.exists():
        logger.info("Rules file not found at %s, no rules configured", path)
        return []

    try:
        rules = _rules_adapter.validate_python(_read_json(path))
    except ValidationError as exc:
        raise ConfigError(f"Invalid rules file {path}: {exc}") from exc

    if accounts is not None:
        known = {a.name for a in accounts}
        for rule in rules:
            if rule.account not in known:
                logger.warning("Rule [%s] refers to unknown account %r", rule.describe(), rule.account)

    logger.info("Loaded %d rule(s) from %s", len(rules), path)
    return rules


def load_spamd_config(path: str | Path) -> SpamdConfig:
    path = Path(path)
    if not path.exists():
        return SpamdConfig()
    try:
        return SpamdConfig.model_validate(_read_json(path))
    except ValidationError as exc:
        raise ConfigError(f"Invalid spamd config {path}: {exc}") from exc
