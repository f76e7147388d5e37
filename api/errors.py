# api/errors.py
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from common.errors import InvalidRequest, ProxyError
from common.logging_setup import get_logger

log = get_logger("api")


def _render(err: ProxyError) -> JSONResponse:
    return JSONResponse(err.to_dict(), status_code=err.http_status)


async def proxy_error_handler(request: Request, err: ProxyError) -> JSONResponse:
    if err.http_status >= 500:
        log.warning("%s %s failed: %s (%s)", request.method, request.url.path, err.message, err.code)
    return _render(err)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        detail = f"{loc}: {first.get('msg')}"
    else:
        detail = "malformed request"
    return _render(InvalidRequest(f"Invalid request payload: {detail}"))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ProxyError, proxy_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
