# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Sender.net transactional email provider."""

from __future__ import annotations

from typing import Any, Mapping

from ..models import OutboundMessage
from .http import HttpJsonProvider

SENDER_API_URL = "https://api.sender.net/v2/email"


class SenderProvider(HttpJsonProvider):
    """Send through Sender.net's transactional endpoint with a bearer token."""

    name = "sender"
    required_fields = ("api_key",)

    def __init__(self, timeout: float = 30.0, api_url: str = SENDER_API_URL):
        super().__init__(timeout=timeout)
        self.api_url = api_url

    async def send(self, credentials: Mapping[str, Any], message: OutboundMessage) -> str:
        payload = {
            "from": {"email": message.sender_email, "name": message.sender_name or ""},
            "to": [{"email": message.to, "name": message.to_name or ""}],
            "subject": message.subject,
            "html": message.html,
        }
        headers = {
            "Authorization": f"Bearer {credentials['api_key']}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        data = await self._post_json(self.api_url, payload, headers)
        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        message_id = inner.get("id") or data.get("id") or data.get("messageId")
        # A 2xx answer is a delivery even when it carries no id.
        return str(message_id) if message_id else ""


__all__ = ["SENDER_API_URL", "SenderProvider"]
