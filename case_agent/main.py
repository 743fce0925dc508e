from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from .catalog_loader import CatalogLoadError, load_tool_catalog, tool_declarations
from .config import SERVICE_VERSION, get_settings
from .dependencies import get_functions_client, get_provider
from .engine import build_error_envelope, new_request_id, process_agent_request
from .routers import conversations as conversations_router
from .storage import db


logger = logging.getLogger("case-agent")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize DB on startup."""
    db.init_db()
    yield


app = FastAPI(title="Case Agent", version=SERVICE_VERSION, lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(conversations_router.router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "healthy", "version": SERVICE_VERSION}


@app.get("/tools")
async def tools() -> JSONResponse:
    """
    Return the tool declarations advertised to the model.
    """
    try:
        catalog = load_tool_catalog()
        declarations = tool_declarations()
    except CatalogLoadError as exc:
        status_code, body = build_error_envelope(
            request_id=new_request_id(),
            action=None,
            status_code=500,
            code="INTERNAL_ERROR",
            message=str(exc),
        )
        return JSONResponse(status_code=status_code, content=body)

    return JSONResponse(status_code=200, content={"version": catalog.version, "tools": declarations})


@app.post("/ai-agent")
async def ai_agent(
    request: Request,
    provider=Depends(get_provider),
    functions=Depends(get_functions_client),
):
    """
    Agent entrypoint: JSON reply, or a text/event-stream when `stream` is true.
    """
    result = await process_agent_request(request=request, provider=provider, functions=functions)
    if "stream" in result:
        return StreamingResponse(
            result["stream"],
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(result["close"]),
        )
    return JSONResponse(status_code=result["status_code"], content=result["body"])


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
