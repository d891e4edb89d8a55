from typing import Any, Optional
from fastapi import FastAPI, HTTPException, Request,status
from fastapi.exceptions import RequestValidationError
from cravecrafted.common.logging_setup import get_logger
from cravecrafted.common.utils import build_error, json_error
from cravecrafted.common.constants import request_id_ctx

logger = get_logger("cravecrafted.errors")


class AppError(Exception):
    code = "APP_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: Optional[dict] = None,
                 code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_details(self) -> dict:
        return {"message": self.message, **self.details}


class OrderValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class OrderAuthorizationError(AppError):
    code = "NOT_AUTHORIZED"
    status_code = status.HTTP_403_FORBIDDEN


class OrderNotFoundError(AppError):
    code = "ORDER_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class OrderStateError(AppError):
    code = "INVALID_ORDER_STATE"
    status_code = status.HTTP_400_BAD_REQUEST


class ConcurrencyConflict(AppError):
    code = "CONCURRENT_MODIFICATION"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "Order was modified concurrently, please retry", **kwargs: Any):
        super().__init__(message, **kwargs)


class WebhookSignatureError(AppError):
    code = "INVALID_SIGNATURE"
    status_code = status.HTTP_400_BAD_REQUEST


# client facing renditions of gateway failures, raised once the failed order state is committed
class PaymentDeclinedError(AppError):
    code = "CARD_DECLINED"
    status_code = status.HTTP_400_BAD_REQUEST


class PaymentFailedError(AppError):
    code = "PAYMENT_FAILED"
    status_code = status.HTTP_400_BAD_REQUEST


class GatewayUnavailableError(AppError):
    code = "GATEWAY_UNAVAILABLE"
    status_code = status.HTTP_400_BAD_REQUEST


async def app_error_handler(request: Request, exc: AppError):
    rid = request_id_ctx.get(None)
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request.app_error",
        extra={
            "error_code": exc.code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    payload = build_error(code=exc.code, details=exc.to_details(), request_id=rid)
    return json_error(payload, status_code=exc.status_code)


async def fallback_handler(request: Request, exc: Exception):

    rid = request_id_ctx.get(None)
    body = {"message": "Internal Server Error"}

    logger.error(
        "unexpected.exception",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc,
    )

    payload = build_error(code="SERVER_ERROR", details=body, request_id=rid)
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    rid = request_id_ctx.get(None)
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg")}
        for e in exc.errors()
    ]
    logger.warning(
        "request.validation_failed",
        extra={
            "errors": errors,
            "path": request.url.path,
        },
    )

    payload = build_error(code="VALIDATION_ERROR", details={"message": "invalid request", "errors": errors}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


async def http_exception_handler(request: Request, exc: HTTPException):

    rid = request_id_ctx.get(None)
    payload = build_error(code=f"HTTP_{exc.status_code}", details={"message": exc.detail}, request_id=rid)
    return json_error(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


def register_all_exceptions(app: FastAPI):

    app.add_exception_handler(
        Exception, # catch all unidentified/unhandled exceptions
        fallback_handler
    )

    app.add_exception_handler(
        RequestValidationError,
        validation_exception_handler
    )

    app.add_exception_handler(
        HTTPException,
        http_exception_handler
    )

    app.add_exception_handler(
        AppError,
        app_error_handler
    )
