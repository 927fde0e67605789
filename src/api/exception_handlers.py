import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.api.schemas.schemas import ErrorResponse
from src.domain.exceptions import TicketingError

logger = logging.getLogger(__name__)


async def ticketing_error_handler(request: Request, exc: TicketingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed. path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    else:
        logger.info("Request rejected. path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(code=exc.code, message=exc.message).model_dump(),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request body or parameters are invalid",
            "details": jsonable_encoder(exc.errors()),
        },
    )


EXCEPTION_HANDLERS = {
    TicketingError: ticketing_error_handler,
    RequestValidationError: validation_error_handler,
}


def register_exception_handlers(app: FastAPI) -> None:
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
