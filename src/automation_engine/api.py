# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the automation engine.

The HTTP surface is a thin control plane over :class:`AutomationService`:

- Health check and service status
- Manual run trigger for external schedulers (``POST /commands/run-now``)
- Scheduler suspend/activate
- Tenant quota tracking inspection and state reactivation
- Prometheus metrics exposure

Authentication uses an API token in the ``X-API-Token`` header.

Example:
    Creating and running the API application::

        from automation_engine.service import AutomationService
        from automation_engine.api import create_app

        svc = AutomationService(db_path="/data/automation_engine.db")
        app = create_app(svc, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import logging
from typing import Any, AsyncContextManager, Callable

from fastapi import APIRouter, Depends, FastAPI, HTTPException, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .service import AutomationService

logger = logging.getLogger(__name__)

app = FastAPI(title="Automation Engine")
service: AutomationService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: str | None = None
    error_code: str | None = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    active: bool
    providers: list[str]
    last_run: dict[str, Any] | None = None


class RunNowPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")
    deadline_seconds: float | None = Field(default=None, gt=0)


class RunNowResponse(CommandStatus):
    summary: dict[str, Any]


class TrackingResponse(CommandStatus):
    tracking: dict[str, Any]


class StatesResponse(CommandStatus):
    states: list[dict[str, Any]]


def _service() -> AutomationService:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: AutomationService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`AutomationService` implementing every command.
    api_token:
        Optional secret protecting every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Automation Engine", lifespan=lifespan)
    else:
        api = app

    # require_token reads the module-level app state.
    api.state.api_token = api_token
    app.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_status():
        """Return scheduler state, known providers and the last run summary."""
        return StatusResponse.model_validate(await _service().status())

    @router.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now(payload: RunNowPayload | None = None):
        """Run every eligible tenant once and return the run summary."""
        data = payload.model_dump(exclude_none=True) if payload else {}
        result = await _service().handle_command("run now", data)
        return RunNowResponse.model_validate(result)

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        """Suspend the periodic scheduler."""
        result = await _service().handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        """Activate the periodic scheduler."""
        result = await _service().handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    @api.get(
        "/tenants/{tenant_id}/tracking",
        response_model=TrackingResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def get_tracking(tenant_id: str):
        """Return the tenant's quota counters and circuit breaker timestamps."""
        result = await _service().handle_command("getTracking", {"tenant_id": tenant_id})
        if not result.get("ok"):
            raise HTTPException(404, f"Tenant '{tenant_id}' not found")
        return TrackingResponse.model_validate(result)

    @api.get(
        "/tenants/{tenant_id}/states",
        response_model=StatesResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def list_states(tenant_id: str, state_status: str | None = None):
        result = await _service().handle_command(
            "listStates", {"tenant_id": tenant_id, "status": state_status}
        )
        return StatesResponse.model_validate(result)

    @api.post(
        "/tenants/{tenant_id}/states/{state_id}/reactivate",
        response_model=BasicOkResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def reactivate_state(tenant_id: str, state_id: str):
        """Move a state in ``error`` back to ``active`` at the same step."""
        result = await _service().handle_command(
            "reactivateState", {"tenant_id": tenant_id, "state_id": state_id}
        )
        if not result.get("ok"):
            raise HTTPException(404, f"State '{state_id}' not found or not in error")
        return BasicOkResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the engine."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api


__all__ = ["API_TOKEN_HEADER_NAME", "create_app"]
