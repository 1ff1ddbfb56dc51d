# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery provider abstraction.

A provider turns an :class:`~automation_engine.models.OutboundMessage` into an
external delivery. Concrete providers implement :meth:`DeliveryProvider.send`
and declare which credential fields must be present before the engine may
call them.

Contract:
    - ``validate_credentials`` is pure and never performs I/O.
    - ``send`` returns the provider message id on success and raises
      :class:`~automation_engine.errors.DeliveryFailure` on rejection,
      transport error or timeout.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Mapping

from ..models import Channel, OutboundMessage

DEFAULT_SEND_TIMEOUT = 30.0


class DeliveryProvider(ABC):
    """Base interface for delivery providers.

    Attributes:
        name: Short provider identifier used in configuration.
        channels: Channels the provider can deliver on.
        required_fields: Credential keys that must be present and non-empty.
            A tuple entry lists alternatives, any one of which satisfies it.
        timeout: Upper bound, in seconds, for one send.
    """

    name: ClassVar[str] = "base"
    channels: ClassVar[frozenset[Channel]] = frozenset({Channel.EMAIL})
    required_fields: ClassVar[tuple[str | tuple[str, ...], ...]] = ()

    def __init__(self, timeout: float = DEFAULT_SEND_TIMEOUT):
        self.timeout = float(timeout)

    @staticmethod
    def _present(credentials: Mapping[str, Any], key: str) -> bool:
        value = credentials.get(key)
        if value is None:
            return False
        if isinstance(value, str):
            return bool(value.strip())
        return True

    def missing_fields(self, credentials: Mapping[str, Any] | None) -> list[str]:
        """Return the required credential fields that are absent or empty."""
        credentials = credentials or {}
        missing: list[str] = []
        for field in self.required_fields:
            options = field if isinstance(field, tuple) else (field,)
            if not any(self._present(credentials, key) for key in options):
                missing.append("/".join(options))
        return missing

    def validate_credentials(self, credentials: Mapping[str, Any] | None) -> bool:
        """Return ``True`` when ``credentials`` are complete for this provider."""
        return bool(credentials) and not self.missing_fields(credentials)

    def supports(self, channel: Channel | str) -> bool:
        return Channel(channel) in self.channels

    @abstractmethod
    async def send(self, credentials: Mapping[str, Any], message: OutboundMessage) -> str:
        """Deliver ``message`` and return the provider message id.

        An accepted message whose answer names no id returns an empty string.

        Raises:
            DeliveryFailure: The provider rejected the message or did not answer in time.
        """
        raise NotImplementedError


__all__ = ["DEFAULT_SEND_TIMEOUT", "DeliveryProvider"]
