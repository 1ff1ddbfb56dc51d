# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Brevo transactional email provider."""

from __future__ import annotations

from typing import Any, Mapping

from ..models import OutboundMessage
from .http import HttpJsonProvider

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


class BrevoProvider(HttpJsonProvider):
    """Send through ``POST /v3/smtp/email`` authenticated by the ``api-key`` header."""

    name = "brevo"
    required_fields = ("api_key",)

    def __init__(self, timeout: float = 30.0, api_url: str = BREVO_API_URL):
        super().__init__(timeout=timeout)
        self.api_url = api_url

    async def send(self, credentials: Mapping[str, Any], message: OutboundMessage) -> str:
        payload: dict[str, Any] = {
            "sender": {
                "email": message.sender_email,
                "name": message.sender_name or message.sender_email,
            },
            "to": [{"email": message.to, "name": message.to_name or message.to}],
            "subject": message.subject,
            "htmlContent": message.html,
        }
        headers = {
            "api-key": str(credentials["api_key"]),
            "accept": "application/json",
            "content-type": "application/json",
        }
        data = await self._post_json(self.api_url, payload, headers)
        message_id = data.get("messageId") or next(iter(data.get("messageIds") or []), None)
        return str(message_id) if message_id else ""


__all__ = ["BREVO_API_URL", "BrevoProvider"]
