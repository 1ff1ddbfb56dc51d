# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Raw SMTP provider built on aiosmtplib.

Port 465 uses implicit TLS; any other port upgrades with STARTTLS unless the
credentials set ``use_tls`` to false explicitly.
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Mapping

import aiosmtplib

from ..errors import DeliveryFailure
from ..models import OutboundMessage
from .base import DeliveryProvider

DEFAULT_SMTP_PORT = 587


class SmtpProvider(DeliveryProvider):
    """Send over an authenticated SMTP connection opened per message."""

    name = "smtp"
    required_fields = ("host", ("username", "user"), "password")

    @staticmethod
    def _build_message(message: OutboundMessage, message_id: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((message.sender_name or "", message.sender_email or ""))
        msg["To"] = formataddr((message.to_name or "", message.to))
        msg["Subject"] = message.subject
        msg["Message-ID"] = message_id
        msg.set_content("This message requires an HTML capable client.")
        msg.add_alternative(message.html, subtype="html")
        return msg

    async def _connect(self, credentials: Mapping[str, Any]) -> aiosmtplib.SMTP:
        """Open a connection and authenticate."""
        port = int(credentials.get("port") or DEFAULT_SMTP_PORT)
        implicit_tls = port == 465
        use_tls = credentials.get("use_tls")
        start_tls = (not implicit_tls) if use_tls is None else (bool(use_tls) and not implicit_tls)
        smtp = aiosmtplib.SMTP(
            hostname=str(credentials["host"]),
            port=port,
            use_tls=implicit_tls,
            start_tls=start_tls,
            timeout=self.timeout,
        )
        username = credentials.get("username") or credentials.get("user")
        try:
            await smtp.connect()
            await smtp.login(str(username), str(credentials["password"]))
        except BaseException:
            # Also covers cancellation by the send timeout.
            smtp.close()
            raise
        return smtp

    async def send(self, credentials: Mapping[str, Any], message: OutboundMessage) -> str:
        domain = (message.sender_email or "localhost").rpartition("@")[2] or "localhost"
        message_id = make_msgid(domain=domain)
        email_msg = self._build_message(message, message_id)
        try:
            async with asyncio.timeout(self.timeout):
                smtp = await self._connect(credentials)
                try:
                    await smtp.send_message(email_msg, sender=message.sender_email)
                finally:
                    try:
                        await smtp.quit()
                    except aiosmtplib.SMTPException:
                        smtp.close()
        except asyncio.TimeoutError as exc:
            raise DeliveryFailure("smtp delivery timed out", provider=self.name, timed_out=True) from exc
        except aiosmtplib.SMTPException as exc:
            code = getattr(exc, "code", None)
            detail = f"{exc} (SMTP {code})" if code else str(exc)
            raise DeliveryFailure(f"smtp delivery failed: {detail}", provider=self.name) from exc
        except OSError as exc:
            raise DeliveryFailure(f"smtp connection failed: {exc}", provider=self.name) from exc
        return message_id


__all__ = ["DEFAULT_SMTP_PORT", "SmtpProvider"]
