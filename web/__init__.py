"""
Vibe Runtime - Web API server.
FastAPI + WebSocket bridge to the runtime.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

import logging

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import app_config
from errors import (
    AgentError, ApprovalRequiredError, BackendError, CapabilityError,
    ExecutionError, StateGuardError, ValidationError,
)
from web import api

logger = logging.getLogger(__name__)

# ============================================================
# FastAPI application
# ============================================================

app = FastAPI(title=app_config.title)

ERROR_STATUS = {
    StateGuardError: 409,
    CapabilityError: 403,
    ApprovalRequiredError: 403,
    ValidationError: 422,
    BackendError: 502,
    ExecutionError: 500,
}


def status_for(error: AgentError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


@app.exception_handler(AgentError)
async def agent_error_handler(request: Request, exc: AgentError):
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.kind}): {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=status)


# ============================================================
# Include routers from submodules
# ============================================================

app.include_router(api.router)
