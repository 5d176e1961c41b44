import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTasks

from app.core.errors import PaymentError, ProviderError, StoreError

logger = logging.getLogger(__name__)


def payment_error_response(exc: PaymentError, background: BackgroundTasks | None = None) -> JSONResponse:
    if isinstance(exc, StoreError):
        logger.error("Store error: %s", exc)
    elif isinstance(exc, ProviderError) and exc.status_code >= 500:
        logger.error("Provider error: %s", exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.public_message},
        background=background,
    )


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    return payment_error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        err = errors[0]
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        message = f"Invalid {'.'.join(loc) or 'request'}: {err.get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "message": message})
