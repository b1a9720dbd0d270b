"""Single source of truth for runtime settings.

All modules import from here, never from os.environ directly.

Values are read from ``secrets/mailsieve.env`` (or the SOPS-encrypted
``secrets/mailsieve.env.enc`` when ``MAILSIEVE_USE_SOPS=true``); environment
variables of the same name take precedence. Every setting has a default, so
a missing file is fine.
"""

import os
from pathlib import Path

from mailsieve.secrets import load_dotenv_file, load_secrets

PROJECT_ROOT = Path(__file__).resolve().parent.parent

USE_SOPS = os.environ.get("MAILSIEVE_USE_SOPS", "false").lower() == "true"


def _load() -> dict[str, str | None]:
    if USE_SOPS:
        return load_secrets(PROJECT_ROOT / "secrets/mailsieve.env.enc")
    return load_dotenv_file(PROJECT_ROOT / "secrets/mailsieve.env")


_values = _load()


def _get(key: str, default: str = "") -> str:
    value = os.environ.get(key)
    if value is None:
        value = _values.get(key)
    return default if value is None else value


def _flag(key: str, default: bool = False) -> bool:
    return _get(key, "true" if default else "false").strip().lower() in ("1", "true", "yes", "on")


# --- Data files ---
DATA_DIR: str = _get("DATA_DIR", str(PROJECT_ROOT / "data"))
ACCOUNTS_PATH: str = _get("ACCOUNTS_PATH", str(Path(DATA_DIR) / "accounts.json"))
RULES_PATH: str = _get("RULES_PATH", str(Path(DATA_DIR) / "rules.json"))
SPAMD_CONFIG_PATH: str = _get("SPAMD_CONFIG_PATH", str(Path(DATA_DIR) / "spamd.json"))
STATE_PATH: str = _get("STATE_PATH", str(Path(DATA_DIR) / "state.json"))

# --- Outbound mail (forward action) ---
SMTP_HOST: str = _get("SMTP_HOST")
SMTP_PORT: int = int(_get("SMTP_PORT", "465"))
SMTP_USER: str = _get("SMTP_USER")
SMTP_PASSWORD: str = _get("SMTP_PASSWORD")
SMTP_SSL: bool = _flag("SMTP_SSL", default=True)

# --- Runtime ---
LOG_FILE: str = _get("LOG_FILE")
MAX_WORKERS: int = int(_get("MAX_WORKERS", "0"))
IMAP_TIMEOUT: float = float(_get("IMAP_TIMEOUT", "60"))
DEV: bool = _flag("MAILSIEVE_DEV")
