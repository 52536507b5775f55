"""Bearer token validation and lifecycle.

Resolution is two-tier: the secret index is consulted first and the
authoritative store only on a miss or an index failure. An index hit is
never trusted on its own; the presented name and secret must both match
the record, whichever tier produced it, and expiry is recomputed from the
record on every call.
"""

from __future__ import annotations

import asyncio
import hmac
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Protocol, Tuple

from tokenward.logging import get_logger
from tokenward.service.errors import (
    InvalidTokenError,
    MalformedTokenError,
    NotFoundError,
    ServiceError,
    StoreError,
    TokenExpiredError,
    UnauthenticatedError,
    UnknownTokenError,
)
from tokenward.storage.common import USER_ID_LABEL
from tokenward.storage.errors import ConstraintViolation, IndexUnavailable, StoreUnavailable
from tokenward.storage.models import BEARER_SEPARATOR, Token

logger = get_logger(__name__)


class TokenStore(Protocol):
    def create_token(self, draft: Token) -> Token: ...

    def get_token(self, name: str) -> Optional[Token]: ...

    def update_token(self, token: Token) -> Token: ...

    def delete_token(self, name: str) -> bool: ...

    def list_tokens_by_label(self, selector: Mapping[str, str]) -> List[Token]: ...


class TokenIndex(Protocol):
    async def lookup_by_secret(self, secret: str) -> Optional[Token]: ...


class SecretSource(Protocol):
    def generate(self) -> str: ...


def split_bearer(value: Optional[str]) -> Tuple[str, str]:
    """Split ``<name>:<secret>`` at the first separator."""
    if not value or BEARER_SEPARATOR not in value:
        raise MalformedTokenError("auth token must have the form <name>:<secret>")
    name, secret = value.split(BEARER_SEPARATOR, 1)
    if not name or not secret:
        raise MalformedTokenError("auth token must have the form <name>:<secret>")
    return name, secret


def is_expired(token: Token, now: datetime) -> bool:
    expires_at = token.expires_at
    if expires_at is None:
        return False
    return now >= expires_at


class TokenEngine:
    """Resolves bearer values and manages the token lifecycle.

    The engine holds no mutable state of its own. Store calls are blocking
    and run in worker threads; the index is awaited directly.
    """

    def __init__(
        self,
        store: TokenStore,
        index: Optional[TokenIndex],
        generator: SecretSource,
        *,
        now: Optional[Callable[[], datetime]] = None,
        store_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.index = index
        self.generator = generator
        self._clock = now
        self.store_timeout = store_timeout
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _call_store(self, op: str, func: Callable[..., Any], *args: Any) -> Any:
        call = asyncio.to_thread(func, *args)
        try:
            if self.store_timeout:
                return await asyncio.wait_for(call, self.store_timeout)
            return await call
        except asyncio.TimeoutError as exc:
            self.logger.error("token_store_timeout", op=op, timeout=self.store_timeout)
            raise StoreError(f"token store {op} timed out") from exc
        except StoreUnavailable as exc:
            self.logger.error("token_store_failed", op=op, error=str(exc))
            raise StoreError(f"token store {op} failed") from exc
        except ConstraintViolation as exc:
            self.logger.error("token_store_constraint", op=op, message=exc.message)
            raise StoreError(exc.message, detail=exc.detail) from exc

    async def _lookup_index(self, secret: str) -> Optional[Token]:
        if self.index is None:
            return None
        try:
            return await self.index.lookup_by_secret(secret)
        except IndexUnavailable as exc:
            self.logger.warning("token_index_unavailable", error=str(exc))
            return None

    async def resolve(self, bearer_value: Optional[str]) -> Token:
        """Resolve a bearer value to its live token record.

        Raises MalformedTokenError, UnknownTokenError, InvalidTokenError,
        TokenExpiredError (carrying the record) or StoreError.
        """
        name, secret = split_bearer(bearer_value)

        stored = await self._lookup_index(secret)
        source = "index"
        if stored is None:
            source = "store"
            stored = await self._call_store("get", self.store.get_token, name)
            if stored is None:
                raise UnknownTokenError("failed to retrieve auth token", detail={"name": name})

        # A mismatch on an index hit is not retried against the store
        if stored.name != name or not hmac.compare_digest(
            stored.secret.encode(), secret.encode()
        ):
            self.logger.warning("token_mismatch", name=name, source=source)
            raise InvalidTokenError("invalid auth token value")

        if is_expired(stored, self._now()):
            self.logger.info("token_expired", name=name, user_id=stored.user_id)
            raise TokenExpiredError("auth token has expired", token=replace(stored, expired=True))

        self.logger.debug("token_resolved", name=name, source=source)
        return replace(stored, expired=False)

    async def create_derived(
        self,
        parent_bearer_value: Optional[str],
        ttl_millis: int = 0,
        description: Optional[str] = None,
    ) -> Token:
        """Mint a new token carrying the identity of a live parent token.

        The new token is independent once created: revoking the parent does
        not revoke it.
        """
        parent = await self.resolve(parent_bearer_value)

        draft = Token.draft(
            parent.user_id,
            replace(parent.user_principal),
            secret=self.generator.generate(),
            group_principals=[replace(p) for p in parent.group_principals],
            is_derived=True,
            ttl_millis=ttl_millis,
            auth_provider=parent.auth_provider,
            provider_info=dict(parent.provider_info) if parent.provider_info else None,
            description=description,
        )
        created = await self._call_store("create", self.store.create_token, draft)
        self.logger.info(
            "derived_token_created",
            name=created.name,
            parent=parent.name,
            user_id=created.user_id,
            ttl_millis=ttl_millis,
        )
        return replace(created, expired=is_expired(created, self._now()))

    async def list_for_caller(self, bearer_value: Optional[str]) -> List[Token]:
        """All tokens of the caller's user, expired ones included and flagged."""
        caller = await self.resolve(bearer_value)
        tokens = await self._call_store(
            "list", self.store.list_tokens_by_label, {USER_ID_LABEL: caller.user_id}
        )
        now = self._now()
        return [replace(t, expired=is_expired(t, now)) for t in tokens]

    async def get_by_id(self, bearer_value: Optional[str], token_id: str) -> Token:
        caller = await self.resolve(bearer_value)
        token = await self._call_store("get", self.store.get_token, token_id)
        # Another user's token is reported exactly like a missing one
        if token is None or token.user_id != caller.user_id:
            raise NotFoundError(f"{token_id} not found")
        return replace(token, expired=is_expired(token, self._now()))

    async def delete_by_bearer(self, bearer_value: Optional[str]) -> None:
        """Revoke the presented token.

        Deleting an unknown token succeeds as a no-op and an expired token
        can still be removed by its holder.
        """
        try:
            target = await self.resolve(bearer_value)
        except UnknownTokenError:
            self.logger.debug("token_delete_already_absent")
            return
        except TokenExpiredError as exc:
            target = exc.token
        except ServiceError as exc:
            raise UnauthenticatedError(exc.message, detail={"reason": exc.error_code}) from exc

        await self._delete_by_name(target.name)

    async def _delete_by_name(self, name: str) -> None:
        deleted = await self._call_store("delete", self.store.delete_token, name)
        if deleted:
            self.logger.info("token_deleted", name=name)
        else:
            self.logger.debug("token_delete_already_absent", name=name)
