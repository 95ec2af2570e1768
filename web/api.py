"""
Runtime REST API and the state WebSocket.

Agent endpoints await the orchestrator directly: POST /api/agent returns once
the task has finished or paused for approval.
"""

import asyncio
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from errors import ValidationError
from modes import MODES
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


async def _body(request: Request) -> Dict[str, Any]:
    """JSON object body, or {} when the request has none."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ------------------------------------------------------------------
# State
# ------------------------------------------------------------------

@router.get("/api/state")
async def get_state():
    rt = _state.get_runtime()
    data = rt.state_machine.snapshot().to_dict()
    data["agent"] = await rt.orchestrator.status()
    data["working_directory"] = rt.working_directory
    return data


@router.get("/api/history")
async def get_history():
    rt = _state.get_runtime()
    return {"transitions": [r.to_dict() for r in rt.state_machine.history()]}


@router.get("/api/modes")
async def list_modes():
    rt = _state.get_runtime()
    return {"current": rt.state_machine.mode.name, "modes": [m.to_dict() for m in MODES.values()]}


@router.post("/api/mode")
async def set_mode(request: Request):
    body = await _body(request)
    name = body.get("mode")
    if not isinstance(name, str) or not name:
        raise ValidationError("\"mode\" is required")
    mode = _state.get_runtime().orchestrator.switch_mode(name)
    return {"ok": True, "mode": mode.to_dict()}


# ------------------------------------------------------------------
# Agent
# ------------------------------------------------------------------

@router.post("/api/agent")
async def start_agent(request: Request):
    body = await _body(request)
    description = body.get("description") or body.get("task")
    if not isinstance(description, str) or not description.strip():
        raise ValidationError("\"description\" is required")
    task = await _state.get_runtime().orchestrator.start_agent(description, body.get("mode"))
    return task.to_dict()


@router.post("/api/steps/{step_id}/approve")
async def approve_step(step_id: str, request: Request):
    body = await _body(request)
    orchestrator = _state.get_runtime().orchestrator
    if body.get("resume"):
        task = await orchestrator.approve_and_resume(step_id)
        return task.to_dict()
    step = await orchestrator.approve_step(step_id)
    return step.to_dict()


@router.post("/api/steps/{step_id}/reject")
async def reject_step(step_id: str, request: Request):
    body = await _body(request)
    task = await _state.get_runtime().orchestrator.reject_step(step_id, body.get("reason") or "")
    return task.to_dict()


@router.post("/api/agent/resume")
async def resume_agent():
    task = await _state.get_runtime().orchestrator.resume()
    return task.to_dict()


@router.post("/api/agent/cancel")
async def cancel_agent():
    task = await _state.get_runtime().orchestrator.cancel_agent()
    return task.to_dict()


@router.post("/api/agent/ack")
async def acknowledge():
    task = _state.get_runtime().orchestrator.acknowledge()
    return {"ok": True, "task": task.to_dict() if task is not None else None}


# ------------------------------------------------------------------
# Tools
# ------------------------------------------------------------------

@router.get("/api/tools")
async def list_tools():
    rt = _state.get_runtime()
    mode = rt.state_machine.mode
    return {
        "tools": [
            dict(d.to_dict(), allowed=mode.allows_tool(d.name) and mode.allows_effect(d.effect))
            for d in rt.registry.definitions()
        ],
    }


@router.post("/api/tools/{name}")
async def run_tool(name: str, request: Request):
    body = await _body(request)
    params = body.get("params", {})
    if not isinstance(params, dict):
        raise ValidationError("\"params\" must be an object")
    result = await _state.get_runtime().orchestrator.execute_tool(name, params, approved=body.get("approved") is True)
    return JSONResponse(result.to_dict(), status_code=200 if result.success else 500)


@router.post("/api/undo")
async def undo():
    ok = await _state.get_runtime().orchestrator.undo()
    return {"ok": ok}


# ------------------------------------------------------------------
# Backends
# ------------------------------------------------------------------

@router.get("/api/backends")
async def list_backends():
    rt = _state.get_runtime()
    return {"default": rt.router.default_backend, "backends": rt.router.status()}


@router.post("/api/backends/default")
async def switch_backend(request: Request):
    body = await _body(request)
    backend_id = body.get("backend")
    rt = _state.get_runtime()
    try:
        rt.router.switch_backend(backend_id)
    except ValueError as e:
        raise ValidationError(str(e))
    return {"ok": True, "default": rt.router.default_backend}


# ------------------------------------------------------------------
# WebSocket
# ------------------------------------------------------------------

@router.websocket("/ws/state")
async def state_socket(ws: WebSocket):
    """Push a snapshot on connect, then every state change and agent event."""
    await ws.accept()
    rt = _state.get_runtime()
    client_id, queue = _state.register_client(asyncio.get_running_loop())

    async def _pump():
        while True:
            message = await queue.get()
            await ws.send_json(message)

    pump = None
    try:
        await ws.send_json({"type": "state", "snapshot": rt.state_machine.snapshot().to_dict()})
        pump = asyncio.create_task(_pump())
        while True:
            raw = await ws.receive_text()
            if raw.strip() == "ping":
                await ws.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        if pump is not None:
            pump.cancel()
        _state.unregister_client(client_id)
