from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.services.errors import ReceivingError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ReceivingError)
    async def _receiving_error(req: Request, exc: ReceivingError):
        if exc.http_status >= 500:
            logger.error("%s %s -> %s %s", req.method, req.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(req: Request, exc: RequestValidationError):
        errors: list[dict[str, Any]] = []
        for e in exc.errors():
            loc = [str(p) for p in e.get("loc", ()) if p != "body"]
            errors.append({"field": ".".join(loc), "reason": str(e.get("msg") or "invalid")})
        return JSONResponse(
            status_code=400,
            content={"code": "INVALID_INPUT", "message": "Invalid request", "errors": errors},
        )

    @app.exception_handler(Exception)
    async def _unhandled(req: Request, exc: Exception):
        logger.exception("unhandled %s %s: %s", req.method, req.url.path, exc)
        return JSONResponse(status_code=500, content={"code": "INTERNAL", "message": "Internal error"})
