"""Outbound mail transport used by the ``forward`` action."""

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def send(self, message: EmailMessage) -> None: ...


class SmtpTransport:
    """Send messages through an SMTP relay.

    Opens one connection per message: forwards are rare and a long-lived
    connection would need keepalive handling across worker threads.

    Args:
        host: Relay host name.
        port: 465 for implicit TLS, 587 (or 25) for STARTTLS.
        username: Login user; no AUTH when empty.
        password: Login password.
        use_ssl: Implicit TLS (``SMTP_SSL``) instead of STARTTLS.
        timeout: Socket timeout in seconds.
    """

    def __init__(
        self,
        host: str,
        port: int = 465,
        username: str = "",
        password: str = "",
        *,
        use_ssl: bool = True,
        timeout: float = 30.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_ssl = use_ssl
        self._timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self._use_ssl:
            return smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout, context=context)
        client = smtplib.SMTP(self._host, self._port, timeout=self._timeout)
        client.starttls(context=context)
        return client

    def send(self, message: EmailMessage) -> None:
        with self._connect() as client:
            if self._username:
                client.login(self._username, self._password)
            client.send_message(message)
        logger.info("Sent message to %s via %s:%d", message["To"], self._host, self._port)
