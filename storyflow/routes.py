"""FastAPI endpoints under /api.

  GET  /api/health            process status + registered flow names
  POST /api/flows/{flow_name} body {input, sessionId?} → envelope, always 200
  POST /api/{flow_name}       body is the flow input itself (sessionId read
                              from it) → bare result, or 400 + envelope
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from storyflow.flows import FlowRegistry
from storyflow.models import FlowRequest

router = APIRouter()


def get_registry(request: Request) -> FlowRegistry:
    return request.app.state.registry


def _input_session_id(data: Any) -> str | None:
    if isinstance(data, dict):
        sid = data.get("sessionId")
        return sid if isinstance(sid, str) and sid else None
    return None


@router.get("/health")
async def health(registry: FlowRegistry = Depends(get_registry)):
    """Report status and the registered flows."""
    return {
        "status": "healthy",
        "flows": registry.list(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/flows/{flow_name}")
async def run_flow(
    flow_name: str,
    body: FlowRequest,
    registry: FlowRegistry = Depends(get_registry),
):
    """Run a flow and return the full envelope, errors included."""
    session_id = body.session_id or _input_session_id(body.input)
    response = await registry.run(flow_name, body.input, session_id)
    return response.model_dump(by_alias=True)


@router.post("/{flow_name}")
async def run_flow_result(
    flow_name: str,
    body: dict[str, Any] = Body(...),
    registry: FlowRegistry = Depends(get_registry),
):
    """Run a flow with the request body as its input and return only the result."""
    response = await registry.run(flow_name, body, _input_session_id(body))
    if response.error is not None:
        return JSONResponse(status_code=400, content=response.model_dump(by_alias=True))
    return response.result
