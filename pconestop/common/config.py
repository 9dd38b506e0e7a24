"""
共通設定 — 環境変数から読み込むサービス設定

各サービスは独自のプレフィックスを持つ:
  INVENTORY_DATABASE_URL, ORDER_DATABASE_URL, SAGA_ORDER_SERVICE_URL ...
.env ファイルがあればそれも読み込む。
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceSettings(BaseSettings):
    """全サービス共通の設定項目"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    service_name: str = "pconestop"
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"
    structured_logging: bool = True
    # JSON 配列で指定する: INVENTORY_CORS_ORIGINS='["http://localhost:5173"]'
    cors_origins: list[str] = ["*"]


class InventorySettings(ServiceSettings):
    model_config = SettingsConfigDict(
        env_prefix="INVENTORY_", env_file=".env", extra="ignore"
    )

    service_name: str = "inventory-service"
    database_url: str = "sqlite+aiosqlite:///./inventory.db"


class OrderSettings(ServiceSettings):
    model_config = SettingsConfigDict(
        env_prefix="ORDER_", env_file=".env", extra="ignore"
    )

    service_name: str = "order-service"
    database_url: str = "sqlite+aiosqlite:///./orders.db"


class SagaSettings(ServiceSettings):
    """Saga オーケストレーターの設定。下流サービスの URL とタイムアウト。"""

    model_config = SettingsConfigDict(
        env_prefix="SAGA_", env_file=".env", extra="ignore"
    )

    service_name: str = "saga-service"
    order_service_url: str = "http://localhost:8001"
    inventory_service_url: str = "http://localhost:8002"
    auth_service_url: str = "http://localhost:8003"

    # 下流サービス呼び出しのタイムアウト (秒)
    upstream_timeout: float = 5.0
    # 冪等キーの保持期間 (秒) とキー単位ロックの TTL (ミリ秒)
    idempotency_ttl_seconds: int = 24 * 60 * 60
    lock_ttl_ms: int = 30_000


@lru_cache()
def get_inventory_settings() -> InventorySettings:
    return InventorySettings()


@lru_cache()
def get_order_settings() -> OrderSettings:
    return OrderSettings()


@lru_cache()
def get_saga_settings() -> SagaSettings:
    return SagaSettings()
