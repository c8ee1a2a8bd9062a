from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from relayrag.services.telemetry import error_rate, external_call_summary

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    vendors: list[str]


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    registry = request.app.state.provider_registry
    return HealthResponse(status="ok", vendors=[vendor.value for vendor in registry.vendors()])


@router.get("/health/telemetry")
async def telemetry() -> dict:
    # Rolling in-process view; counters reset on restart.
    return {"errorRate": error_rate(), "externalCalls": external_call_summary()}
