# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application built from
:func:`~automation_engine.config.load_settings`; the service is started and
stopped by the application lifespan.

Usage:
    uvicorn automation_engine.server:app --host 0.0.0.0 --port 8000

Environment variables:
    AE_CONFIG, AE_DB_PATH, AE_API_TOKEN and the other ``AE_`` settings.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import EngineSettings, load_settings
from .service import AutomationService


def build_app(settings: EngineSettings, service: AutomationService | None = None) -> FastAPI:
    """Create the service for ``settings`` and the FastAPI app around it."""
    svc = service or AutomationService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the service."""
        await svc.start()
        yield
        await svc.stop()

    return create_app(svc, api_token=settings.api_token, lifespan=lifespan)


app = build_app(load_settings())
