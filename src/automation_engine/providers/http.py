# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared JSON-over-HTTP plumbing for transactional email APIs."""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from ..errors import DeliveryFailure
from .base import DeliveryProvider


class HttpJsonProvider(DeliveryProvider):
    """Provider that posts a JSON document and reads a JSON answer."""

    async def _post_json(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        """POST ``payload`` to ``url`` and return the decoded body.

        Raises:
            DeliveryFailure: On HTTP status >= 400, transport error or timeout.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload, headers=headers) as resp:
                    try:
                        data = await resp.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        data = None
                    if not isinstance(data, dict):
                        data = {}
                    if resp.status >= 400:
                        reason = data.get("message") or data.get("error") or f"HTTP {resp.status}"
                        raise DeliveryFailure(
                            f"{self.name} API error ({resp.status}): {reason}",
                            provider=self.name,
                        )
                    return data
        except asyncio.TimeoutError as exc:
            raise DeliveryFailure(f"{self.name} request timed out", provider=self.name, timed_out=True) from exc
        except aiohttp.ClientError as exc:
            raise DeliveryFailure(f"{self.name} request failed: {exc}", provider=self.name) from exc


__all__ = ["HttpJsonProvider"]
