# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery providers and the registry used to select them.

Adding a provider means adding one :class:`DeliveryProvider` subclass and
registering it in :data:`PROVIDER_CLASSES`; selection logic is unchanged.

Usage:
    registry = ProviderRegistry.default(timeout=30.0)
    provider = registry.get("brevo")
"""

from __future__ import annotations

from typing import Iterable

from .base import DEFAULT_SEND_TIMEOUT, DeliveryProvider
from .brevo import BrevoProvider
from .sender import SenderProvider
from .smtp import SmtpProvider

PROVIDER_CLASSES: dict[str, type[DeliveryProvider]] = {
    BrevoProvider.name: BrevoProvider,
    SenderProvider.name: SenderProvider,
    SmtpProvider.name: SmtpProvider,
}

DEFAULT_PROVIDER = BrevoProvider.name


class ProviderRegistry:
    """Name to provider instance lookup."""

    def __init__(self, providers: Iterable[DeliveryProvider]):
        self._providers = {p.name: p for p in providers}

    @classmethod
    def default(cls, timeout: float = DEFAULT_SEND_TIMEOUT) -> ProviderRegistry:
        return cls(provider_cls(timeout=timeout) for provider_cls in PROVIDER_CLASSES.values())

    def get(self, name: str | None) -> DeliveryProvider | None:
        if not name:
            return None
        return self._providers.get(name)

    def names(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers


__all__ = [
    "BrevoProvider",
    "DEFAULT_PROVIDER",
    "DeliveryProvider",
    "PROVIDER_CLASSES",
    "ProviderRegistry",
    "SenderProvider",
    "SmtpProvider",
]
