from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tokenward.logging import get_logger
from tokenward.storage.common import token_from_dict, token_to_dict
from tokenward.storage.errors import IndexUnavailable
from tokenward.storage.models import Token

logger = get_logger(__name__)

_KEY_PREFIX = "auth:token:secret:"


class RedisTokenIndex:
    """Redis-backed secondary index of tokens keyed by secret.

    Keys hold a hash of the secret and values hold the token record without
    its secret; a hit is only reachable by presenting the secret, which is
    restored from the lookup argument.

    Every entry carries a TTL of at most ``max_entry_seconds`` so a revoked
    token whose eviction was missed cannot outlive a stalled resync for long.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    DEFAULT_MAX_ENTRY_SECONDS = 900

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        grace_seconds: int = 300,
        max_entry_seconds: int = DEFAULT_MAX_ENTRY_SECONDS,
        client=None,
    ):
        if max_entry_seconds <= 0:
            raise ValueError("max_entry_seconds must be positive")
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.grace_seconds = grace_seconds
        self.max_entry_seconds = max_entry_seconds
        self._client = client

    @property
    def client(self):
        # Built on first use, after verify_connection has had its say
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
        return self._client

    @staticmethod
    def _key(secret: str) -> str:
        digest = hashlib.sha256(secret.encode()).hexdigest()
        return f"{_KEY_PREFIX}{digest}"

    @staticmethod
    def _encode(token: Token) -> str:
        record = token_to_dict(token)
        record.pop("secret")
        return json.dumps(record)

    def _ttl_seconds(self, token: Token) -> int:
        """Redis TTL for an entry, bounded by ``max_entry_seconds``.

        Expired tokens stay indexed for the grace period so callers still get
        a fast TokenExpired answer right after expiry.
        """
        expires_at = token.expires_at
        if expires_at is None:
            return self.max_entry_seconds
        remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, min(self.max_entry_seconds, int(remaining) + self.grace_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the index."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url, decode_responses=True, socket_connect_timeout=self.socket_timeout
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def lookup_by_secret(self, secret: str) -> Optional[Token]:
        try:
            raw = await self.client.get(self._key(secret))
        except RedisError as exc:
            raise IndexUnavailable(f"redis lookup failed: {exc}") from exc
        if not raw:
            return None
        try:
            record = json.loads(raw)
            record["secret"] = secret
            return token_from_dict(record)
        except (ValueError, KeyError, TypeError) as exc:
            # A corrupt entry is treated like an unreachable index
            raise IndexUnavailable(f"undecodable index entry: {exc}") from exc

    async def put_token(self, token: Token) -> None:
        try:
            await self.client.set(
                self._key(token.secret), self._encode(token), ex=self._ttl_seconds(token)
            )
        except RedisError as exc:
            raise IndexUnavailable(f"redis write failed: {exc}") from exc

    async def evict_token(self, secret: str) -> None:
        try:
            await self.client.delete(self._key(secret))
        except RedisError as exc:
            raise IndexUnavailable(f"redis delete failed: {exc}") from exc

    async def replace_all(self, tokens: Iterable[Token]) -> None:
        """Rewrite the index from a full store listing, dropping stale entries."""
        tokens = list(tokens)
        wanted = {self._key(t.secret) for t in tokens}
        try:
            stale = []
            async for key in self.client.scan_iter(match=f"{_KEY_PREFIX}*"):
                if key not in wanted:
                    stale.append(key)
            pipe = self.client.pipeline()
            for token in tokens:
                pipe.set(self._key(token.secret), self._encode(token), ex=self._ttl_seconds(token))
            for key in stale:
                pipe.delete(key)
            await pipe.execute()
        except RedisError as exc:
            raise IndexUnavailable(f"redis resync failed: {exc}") from exc
        logger.debug("token_index_replaced", indexed=len(tokens), dropped=len(stale))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
