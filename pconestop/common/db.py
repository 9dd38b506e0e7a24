"""データベース接続 — サービスごとの非同期エンジンとセッションファクトリ。"""

from collections.abc import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def create_engine(database_url: str) -> AsyncEngine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # 書き込みロック待ちの上限 (秒)
        connect_args["timeout"] = 30
    return create_async_engine(database_url, echo=False, connect_args=connect_args)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def to_iso(value) -> str | None:
    # SQLite は TIMESTAMP を文字列のまま返す
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI 依存関係: リクエストごとのセッション。"""
    async with request.app.state.session_factory() as session:
        yield session


def get_redis(request: Request):
    return request.app.state.redis
