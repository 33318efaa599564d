"""FastAPI web application exposing the SOP engine.

Endpoints:
  /procedures         -> procedure CRUD, versions, resolution, scheduling, analytics
  /completions        -> occurrence lifecycle (start, steps, finish, skip, abandon)
  /calendar           -> calendar projection, conflict checks, drag/reschedule updates
  /templates          -> shareable blueprints and instantiation
  /procedures/{id}/history/export/{xlsx,csv} -> completion history exports

Data persisted in SQLite (file: sop_engine.db by default, SOP_ENGINE_DB overrides).
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import SOPEngineError, status_code_for
from .db import get_engine
from .routers import calendar as calendar_router
from .routers import completions as completions_router
from .routers import exports as exports_router
from .routers import procedures as procedures_router
from .routers import templates as templates_router

app = FastAPI(title="SOP Engine API", version="0.1.0")
logger = logging.getLogger("sop_engine.web")
if not logger.handlers:
    _h = logging.StreamHandler()
    _h.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(message)s"))
    logger.addHandler(_h)
logger.setLevel(logging.INFO)

app.include_router(procedures_router.router)
app.include_router(completions_router.router)
app.include_router(calendar_router.router)
app.include_router(templates_router.router)
app.include_router(exports_router.router)


@app.exception_handler(SOPEngineError)
async def engine_error_handler(request: Request, exc: SOPEngineError):
    status = status_code_for(exc)
    if status >= 500:
        logger.error("Engine error on %s: %s", request.url.path, exc)
    else:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    # Unknown enum values (category, status, frequency...) in otherwise valid payloads
    logger.info("Invalid value on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=422,
        content={"error": "InvalidValue", "detail": str(exc)},
    )


@app.on_event("startup")
def _startup():
    engine = get_engine()
    logger.info("SOP engine ready (db=%s)", engine.store.db_path)


@app.get("/")
def root():
    return {"message": "SOP Engine API is running. Visit /docs for the Swagger UI."}


def main():  # pragma: no cover
    import uvicorn

    uvicorn.run("sop_engine.web.app:app", host="0.0.0.0", port=8000, reload=True)


if __name__ == "__main__":  # pragma: no cover
    main()
