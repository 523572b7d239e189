"""
Error kinds raised by the order, confirmation and admin paths.

Every error carries the HTTP status the boundary should answer with; the
FastAPI handlers in server.py turn them into `{"error": message}` bodies.
"""
import logging

from fastapi import Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class LotteryError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(LotteryError):
    status_code = 400


class NotFound(ValidationError):
    status_code = 404


class Unauthorized(LotteryError):
    status_code = 401


class InventoryExhausted(LotteryError):
    status_code = 400


class GatewayError(LotteryError):
    # 400 when the gateway rejected the request, 502 when we never got a
    # usable answer
    status_code = 502


class IssuanceExhausted(LotteryError):
    status_code = 500


class NotConfirmed(LotteryError):
    status_code = 400


class StoreError(LotteryError):
    status_code = 500


async def lottery_error_handler(request: Request, exc: LotteryError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method,
                     request.url.path, exc.message, type(exc).__name__)
    else:
        logger.warning("%s %s rejected: %s (%s)", request.method,
                       request.url.path, exc.message, type(exc).__name__)
    return ORJSONResponse(status_code=exc.status_code,
                          content={"error": exc.message})


async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("%s %s store failure", request.method, request.url.path)
    return ORJSONResponse(status_code=StoreError.status_code,
                          content={"error": "Database error"})
