"""
Shared async Redis connection.

The Redis repository and the Redis notification queue share one
connection pool through this class.

Example:
    >>> connection = RedisConnection(RedisConnectionConfig(url="redis://localhost:6379"))
    >>> await connection.connect()
    >>> try:
    ...     repository = RedisEventRepository(connection)
    ... finally:
    ...     await connection.disconnect()
"""

from typing import Optional

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from siem_engine.config.models import RedisConnectionConfig
from siem_engine.interfaces.repository import RepositoryError

logger = structlog.get_logger(__name__)


class RedisConnectionException(RepositoryError):
    """Raised when Redis cannot be reached or the client is not connected."""

    pass


class RedisConnection:
    """
    Owns the connection pool and client.

    Attributes:
        config: Connection settings.
        _pool: Connection pool.
        _client: Client bound to the pool.
        _connected: Whether connect() succeeded.
    """

    def __init__(self, config: RedisConnectionConfig) -> None:
        self.config = config
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None  # type: ignore[type-arg]
        self._connected: bool = False

        logger.info(
            "redis_connection_initialized",
            url=config.url,
            db=config.db,
            max_connections=config.max_connections,
        )

    @property
    def is_connected(self) -> bool:
        """Check if the client is connected."""
        return self._connected and self._client is not None

    def key(self, *parts: str) -> str:
        """Build a key under the configured prefix."""
        return ":".join((self.config.key_prefix, *parts))

    async def connect(self) -> None:
        """
        Create the pool and verify it with PING.

        Raises:
            RedisConnectionException: If Redis is unreachable.
        """
        if self._connected:
            logger.warning("redis_already_connected")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.config.url,
                db=self.config.db,
                max_connections=self.config.max_connections,
                socket_timeout=self.config.socket_timeout,
                socket_connect_timeout=self.config.socket_timeout,
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            self._connected = True

            logger.info("redis_connected", url=self.config.url, db=self.config.db)

        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            self._connected = False
            logger.error("redis_connection_failed", url=self.config.url, error=str(e))
            raise RedisConnectionException(
                f"Failed to connect to Redis at {self.config.url}: {e}"
            ) from e

    async def disconnect(self) -> None:
        """Close the client and pool. Safe to call multiple times."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning("redis_close_error", error=str(e))
            finally:
                self._client = None

        if self._pool is not None:
            try:
                await self._pool.aclose()
            except RedisError as e:
                logger.warning("redis_pool_close_error", error=str(e))
            finally:
                self._pool = None

        self._connected = False
        logger.info("redis_disconnected")

    async def ping(self) -> bool:
        """Check connection health."""
        if not self._client:
            return False
        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    def require(self) -> Redis:  # type: ignore[type-arg]
        """
        Return the connected client.

        Raises:
            RedisConnectionException: If not connected.
        """
        if not self._connected or self._client is None:
            raise RedisConnectionException("Redis client is not connected")
        return self._client
