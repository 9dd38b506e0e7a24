"""
共通エラー定義 — 例外階層とレスポンスエンベロープ

すべてのサービスは失敗を ServiceError のサブクラスとして送出し、
HTTP 層で次の形に変換する:

    {"ok": false, "statusCode": 409, "message": "...", "code": "ILLEGAL_TRANSITION",
     "data": {...}, "count": 0}

code はサービス間で安定しているため、Saga 側はレスポンスから
同じ例外を復元できる (error_from_payload)。
"""

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal error"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "statusCode": self.status_code,
            "message": self.message,
            "code": self.code,
            "data": self.context or None,
            "count": 0,
        }


class InvalidInput(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_INPUT"
    default_message = "Invalid input"


class InsufficientStock(ServiceError):
    """在庫不足。商品名・在庫数・要求数をメッセージに含める。"""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "INSUFFICIENT_STOCK"
    default_message = "Insufficient stock"

    @classmethod
    def for_product(
        cls, product_id: str, product_name: str, available: int, requested: int
    ) -> "InsufficientStock":
        return cls(
            f"Insufficient stock for product: {product_name}. "
            f"Available: {available}, Requested: {requested}",
            product_id=product_id,
            product_name=product_name,
            available=available,
            requested=requested,
        )


class PreconditionFailed(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "PRECONDITION_FAILED"
    default_message = "Precondition failed"


class Unauthorized(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"
    default_message = "Caller identity could not be resolved"


class ProductNotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "PRODUCT_NOT_FOUND"
    default_message = "Product not found"


class OrderNotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "ORDER_NOT_FOUND"
    default_message = "Order not found"


class OrderAlreadyDeleted(ServiceError):
    """完了後に削除された注文。同じ冪等キーでは作り直さない。"""

    status_code = status.HTTP_410_GONE
    code = "ORDER_DELETED"
    default_message = "Order has been deleted"


class IllegalTransition(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "ILLEGAL_TRANSITION"
    default_message = "Illegal status transition"


class ConcurrentModification(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONCURRENT_MODIFICATION"
    default_message = "Resource was modified concurrently"


class ReservationConflict(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "RESERVATION_CONFLICT"
    default_message = "Reservation id already used for a different line"


class ReservationReleased(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "RESERVATION_RELEASED"
    default_message = "Reservation has already been released"


class RequestInProgress(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "REQUEST_IN_PROGRESS"
    default_message = "A request with this idempotency key is already in progress"


class UpstreamUnavailable(ServiceError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "UPSTREAM_UNAVAILABLE"
    default_message = "Upstream service unavailable"


class UpstreamTimeout(UpstreamUnavailable):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    code = "UPSTREAM_TIMEOUT"
    default_message = "Upstream service timed out"


ERRORS_BY_CODE: dict[str, type[ServiceError]] = {
    cls.code: cls
    for cls in (
        ServiceError,
        InvalidInput,
        InsufficientStock,
        PreconditionFailed,
        Unauthorized,
        ProductNotFound,
        OrderNotFound,
        OrderAlreadyDeleted,
        IllegalTransition,
        ConcurrentModification,
        ReservationConflict,
        ReservationReleased,
        RequestInProgress,
        UpstreamUnavailable,
        UpstreamTimeout,
    )
}


def error_from_payload(status_code: int, payload: Any) -> ServiceError:
    """下流サービスのエラーレスポンスから例外を復元する。"""
    if isinstance(payload, dict) and payload.get("code") in ERRORS_BY_CODE:
        cls = ERRORS_BY_CODE[payload["code"]]
        return cls(payload.get("message"), **(payload.get("data") or {}))
    if status_code >= 500:
        return UpstreamUnavailable(f"Upstream responded with {status_code}")
    return ServiceError(f"Unexpected upstream response {status_code}: {payload}")


def envelope(
    message: str,
    data: Any = None,
    status_code: int = status.HTTP_200_OK,
    count: int | None = None,
) -> dict:
    """成功レスポンスのエンベロープ。"""
    if count is None:
        count = len(data) if isinstance(data, list) else (0 if data is None else 1)
    return {
        "ok": True,
        "statusCode": status_code,
        "message": message,
        "data": data,
        "count": count,
    }


async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def handle_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """リクエストボディの検証エラーを 400 InvalidInput に変換する。"""
    fields = {
        ".".join(str(p) for p in err["loc"] if p != "body"): err["msg"]
        for err in exc.errors()
    }
    first = next(iter(fields.items()), ("request", "Validation error"))
    err = InvalidInput(f"{first[0]}: {first[1]}", fields=fields)
    return await handle_service_error(request, err)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, handle_service_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
