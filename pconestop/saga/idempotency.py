"""
Saga Service — 冪等キーの管理 (Redis)

  saga:lock:<key>               キー単位の排他ロック (redis-py Lock)。保持中は延長し続ける
  saga:attempt:<key>            最後に払い出した試行番号
  saga:pending:<key>:<attempt>  補償ログ: その試行が在庫台帳に適用したかもしれない
                                引き当ての一覧。試行ごとに分かれている
  saga:ready:<key>:<attempt>    引き当てがすべて終わり、注文作成に進んだ試行の
                                作成リクエスト。中断された試行を引き継ぐのに使う

ロックを失った試行は、それ以降ほかの試行のログに触れない。
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress

import redis.asyncio as aioredis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError, LockNotOwnedError, RedisError

from ..common.errors import RequestInProgress

logger = logging.getLogger(__name__)


class Lease:
    """取得済みのキー単位ロック。注文作成の直前などで保持を確認する。"""

    def __init__(self, lock: Lock, key: str) -> None:
        self._lock = lock
        self.key = key

    async def held(self) -> bool:
        return await self._lock.owned()

    async def ensure_held(self) -> None:
        if not await self.held():
            raise self.superseded()

    def superseded(self) -> RequestInProgress:
        return RequestInProgress(
            f"The lock for idempotency key {self.key} was lost; "
            "a newer request with the same key has taken over",
            idempotency_key=self.key,
        )


class IdempotencyStore:
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int, lock_ttl_ms: int) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.lock_ttl_ms = lock_ttl_ms

    @asynccontextmanager
    async def lock(self, key: str):
        """同じキーの処理を 1 つに制限する。取得できなければ RequestInProgress。"""
        lock = self.redis.lock(
            f"saga:lock:{key}",
            timeout=self.lock_ttl_ms / 1000,
            blocking=False,
            thread_local=False,
        )
        if not await lock.acquire():
            raise RequestInProgress(
                f"A request with idempotency key {key} is already in progress",
                idempotency_key=key,
            )
        keeper = asyncio.create_task(self._keep_alive(lock, key))
        try:
            yield Lease(lock, key)
        finally:
            keeper.cancel()
            with suppress(asyncio.CancelledError):
                await keeper
            try:
                await lock.release()
            except LockNotOwnedError:
                logger.warning("lock for key %s expired before release", key)

    async def _keep_alive(self, lock: Lock, key: str) -> None:
        # TTL の 1/3 ごとに延長する
        interval = self.lock_ttl_ms / 3000
        while True:
            await asyncio.sleep(interval)
            try:
                await lock.reacquire()
            except LockError:
                logger.warning("lock for key %s was lost", key)
                return
            except RedisError:
                logger.warning("could not extend lock for key %s", key, exc_info=True)

    async def next_attempt(self, key: str) -> int:
        name = f"saga:attempt:{key}"
        attempt = await self.redis.incr(name)
        await self.redis.expire(name, self.ttl_seconds)
        return attempt

    async def last_attempt(self, key: str) -> int:
        value = await self.redis.get(f"saga:attempt:{key}")
        return int(value) if value is not None else 0

    async def remember(self, key: str, attempt: int, line: dict) -> None:
        """引き当てを送る前に補償ログへ記録する。"""
        name = f"saga:pending:{key}:{attempt}"
        await self.redis.rpush(name, json.dumps(line))
        await self.redis.expire(name, self.ttl_seconds)

    async def pending(self, key: str, attempt: int) -> list[dict]:
        raw = await self.redis.lrange(f"saga:pending:{key}:{attempt}", 0, -1)
        return [json.loads(item) for item in raw]

    async def mark_ready(self, key: str, attempt: int, payload: dict) -> None:
        await self.redis.set(
            f"saga:ready:{key}:{attempt}", json.dumps(payload), ex=self.ttl_seconds
        )

    async def ready(self, key: str, attempt: int) -> dict | None:
        raw = await self.redis.get(f"saga:ready:{key}:{attempt}")
        return json.loads(raw) if raw is not None else None

    async def forget(self, key: str, attempt: int) -> None:
        await self.redis.delete(f"saga:pending:{key}:{attempt}", f"saga:ready:{key}:{attempt}")
