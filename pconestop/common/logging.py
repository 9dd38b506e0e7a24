"""
共通ログ設定 — 構造化ログと相関 ID (Correlation ID)

マイクロサービスでは 1 つのリクエストが複数サービスをまたぐ。
X-Correlation-ID ヘッダで受け取った ID を ContextVar に保持し、
すべてのログレコードと下流サービスへのリクエストに付与する。
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

from fastapi import FastAPI, Request

from .config import ServiceSettings

CORRELATION_HEADER = "X-Correlation-ID"

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get()
        return True


class StructuredLogFormatter(logging.Formatter):
    """ログレコードを 1 行の JSON に整形する。"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        corr_id = getattr(record, "correlation_id", "")
        if corr_id:
            log_data["correlation_id"] = corr_id
        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(log_data, default=str, ensure_ascii=False)


def configure_logging(settings: ServiceSettings) -> None:
    """ルートロガーを設定する。サービス起動時に 1 回だけ呼ぶ。"""
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationFilter())
    if settings.structured_logging:
        handler.setFormatter(StructuredLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                f"[%(asctime)s] [%(levelname)s] [{settings.service_name}] "
                "[%(correlation_id)s] %(name)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def install_correlation_middleware(app: FastAPI) -> None:
    """受信リクエストの相関 ID を ContextVar に設定し、レスポンスにも返す。"""

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        corr_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        token = correlation_id.set(corr_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id.reset(token)
        response.headers[CORRELATION_HEADER] = corr_id
        return response


def outbound_headers() -> dict[str, str]:
    """下流サービスへ転送するヘッダ。"""
    corr_id = correlation_id.get()
    return {CORRELATION_HEADER: corr_id} if corr_id else {}
