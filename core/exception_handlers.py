import logging

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse

from core.exceptions import SubscriptionError
from .response import error as resp_error

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(SubscriptionError)
    async def subscription_error_handler(request: Request, exc: SubscriptionError):
        # one user-facing message per error kind; the detail is for the logs
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=resp_error(code=exc.code, message=exc.message))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content=resp_error(code=str(exc.status_code), message=str(exc.detail)))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=resp_error(code="internal_error", message="Internal server error"))
