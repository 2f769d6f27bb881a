"""Ограничение частоты запросов через Redis."""
import logging
import time
from typing import Optional

import redis.asyncio as redis
from fastapi import HTTPException, Request, status

from app.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Фиксированное окно: не больше max_requests за window_seconds на ключ.

    Счетчики хранятся в Redis. Если Redis недоступен, считаем в памяти
    процесса и периодически пробуем переподключиться.
    """

    RECONNECT_INTERVAL = 30

    def __init__(
        self,
        redis_url: str | None,
        max_requests: int = 100,
        window_seconds: int = 900,
        prefix: str = "ratelimit",
    ):
        self.redis_url = redis_url
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix
        self._redis: Optional[redis.Redis] = None
        self._next_connect_at = 0.0
        self._local: dict[str, tuple[float, int]] = {}
        self._local_purge_at = 0.0

    async def connect(self):
        """Подключение к Redis."""
        if self._redis or not self.redis_url or time.time() < self._next_connect_at:
            return
        try:
            client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await client.ping()
            self._redis = client
        except (redis.RedisError, OSError) as e:
            # Если Redis недоступен, продолжаем со счетчиками в памяти
            logger.warning(f"Redis unavailable for rate limiting, using in-memory window: {e}")
            self._redis = None
            self._next_connect_at = time.time() + self.RECONNECT_INTERVAL

    async def disconnect(self):
        """Отключение от Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _purge_local(self, now: float):
        """Удалить счетчики с истекшим окном, не чаще раза за окно."""
        if now < self._local_purge_at:
            return
        self._local = {key: value for key, value in self._local.items() if value[0] > now}
        self._local_purge_at = now + self.window_seconds

    def _is_allowed_local(self, key: str) -> bool:
        now = time.time()
        self._purge_local(now)
        reset_at, count = self._local.get(key, (0.0, 0))
        if now >= reset_at:
            self._local[key] = (now + self.window_seconds, 1)
            return True
        if count >= self.max_requests:
            return False
        self._local[key] = (reset_at, count + 1)
        return True

    async def is_allowed(self, client_key: str) -> bool:
        """Учесть запрос клиента и сказать, укладывается ли он в лимит."""
        await self.connect()
        if not self._redis:
            return self._is_allowed_local(client_key)

        key = f"{self.prefix}:{client_key}"
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, self.window_seconds)
            return count <= self.max_requests
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis error during rate limiting, falling back to memory: {e}")
            self._redis = None
            self._next_connect_at = time.time() + self.RECONNECT_INTERVAL
            return self._is_allowed_local(client_key)


# Глобальный экземпляр
rate_limiter = RateLimiter(
    redis_url=settings.redis_url,
    max_requests=settings.rate_limit_requests,
    window_seconds=settings.rate_limit_window_seconds,
)


def get_client_key(request: Request) -> str:
    """IP клиента: первый адрес из X-Forwarded-For, иначе адрес сокета."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(request: Request) -> None:
    """Dependency: превышение лимита -> 403."""
    client_key = get_client_key(request)
    if not await rate_limiter.is_allowed(client_key):
        logger.warning(f"Rate limit exceeded for {client_key}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Too many requests",
        )
