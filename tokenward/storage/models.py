from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

BEARER_SEPARATOR = ":"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    """An identity a token authenticates: a user or one of its groups."""

    name: str
    display_name: Optional[str] = None
    login_name: Optional[str] = None
    provider: Optional[str] = None
    principal_type: str = "user"
    extra: Dict | None = None


@dataclass
class Token:
    name: str
    secret: str
    user_id: str
    user_principal: Principal
    group_principals: List[Principal] = field(default_factory=list)
    is_derived: bool = False
    ttl_millis: int = 0
    created_at: datetime = field(default_factory=utcnow)
    auth_provider: Optional[str] = None
    provider_info: Dict | None = None
    description: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    # Computed on read from created_at + ttl_millis, never persisted
    expired: bool = False

    @property
    def bearer_value(self) -> str:
        return f"{self.name}{BEARER_SEPARATOR}{self.secret}"

    @property
    def expires_at(self) -> Optional[datetime]:
        """Absolute expiry, or None for tokens that never expire."""
        if self.ttl_millis <= 0:
            return None
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created + timedelta(milliseconds=self.ttl_millis)

    @classmethod
    def draft(
        cls,
        user_id: str,
        user_principal: Principal,
        *,
        secret: str,
        group_principals: Optional[List[Principal]] = None,
        is_derived: bool = False,
        ttl_millis: int = 0,
        auth_provider: Optional[str] = None,
        provider_info: Dict | None = None,
        description: Optional[str] = None,
    ) -> "Token":
        """Build an unsaved token; the store assigns ``name`` and ``created_at``."""
        return cls(
            name="",
            secret=secret,
            user_id=user_id,
            user_principal=user_principal,
            group_principals=list(group_principals or []),
            is_derived=is_derived,
            ttl_millis=ttl_millis,
            auth_provider=auth_provider,
            provider_info=provider_info,
            description=description,
        )
