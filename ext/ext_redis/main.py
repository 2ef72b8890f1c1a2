from typing import override
from functools import cached_property
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from loguru import logger
from pydantic import RedisDsn
from redis.retry import Retry
from redis.asyncio import Redis, ConnectionPool
from redis.backoff import NoBackoff

from config.default import InstanceExtensionConfig, RegisterExtensionConfig


class RedisConfig(RegisterExtensionConfig, InstanceExtensionConfig[AsyncGenerator[Redis, None]]):
    url: RedisDsn
    max_connections: int = 10
    retries: int = 3
    # 多个部署共用同一个 redis 时用于隔离 key
    key_prefix: str = ""

    def key(self, key: str) -> str:
        """拼接 key 前缀"""
        return f"{self.key_prefix}:{key}" if self.key_prefix else key

    @cached_property
    def connection_pool(self) -> ConnectionPool:
        return ConnectionPool.from_url(  # type: ignore
            url=str(self.url),
            max_connections=self.max_connections,
            decode_responses=True,
            encoding_errors="strict",
            retry=Retry(NoBackoff(), retries=self.retries),
            health_check_interval=30,
        )

    @property
    @asynccontextmanager
    @override
    async def instance(self) -> AsyncGenerator[Redis, None]:  # type: ignore
        r: Redis | None = None
        try:
            r = Redis.from_pool(
                connection_pool=self.connection_pool,
            )
            yield r
        finally:
            if r:
                await r.aclose()

    @override
    async def register(self) -> None:
        """启动时检查 redis 连接"""
        async with self.instance as r:
            await r.ping()
        logger.info(f"Redis connected: {self.url.host}:{self.url.port}")

    @override
    async def unregister(self) -> None:
        if "connection_pool" in self.__dict__:
            await self.connection_pool.aclose()
            del self.__dict__["connection_pool"]
