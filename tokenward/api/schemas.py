from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tokenward.storage.models import Principal, Token

MAX_DESCRIPTION_LENGTH = 1024
# ~10 years; larger values are almost certainly unit mistakes
MAX_TTL_MILLIS = 10 * 365 * 24 * 60 * 60 * 1000

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "malformed_token",
    "invalid_token",
    "token_expired",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "generation_failed",
    "store_failure",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class DeriveTokenRequest(BaseModel):
    ttl_millis: int = Field(0, le=MAX_TTL_MILLIS)
    description: Optional[str] = Field(None, max_length=MAX_DESCRIPTION_LENGTH)

    @field_validator("description")
    @classmethod
    def _normalize_description(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = unicodedata.normalize("NFKC", value).strip()
        return cleaned or None


class PrincipalResponse(BaseModel):
    name: str
    display_name: Optional[str] = None
    login_name: Optional[str] = None
    provider: Optional[str] = None
    principal_type: str = "user"

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            name=principal.name,
            display_name=principal.display_name,
            login_name=principal.login_name,
            provider=principal.provider,
            principal_type=principal.principal_type,
        )


class TokenResponse(BaseModel):
    id: str
    user_id: str
    user_principal: PrincipalResponse
    group_principals: List[PrincipalResponse] = Field(default_factory=list)
    is_derived: bool
    ttl_millis: int
    created_at: datetime
    expires_at: Optional[datetime] = None
    expired: bool
    auth_provider: Optional[str] = None
    provider_info: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    # Only populated on creation; stored secrets are never echoed back
    token: Optional[str] = None

    @classmethod
    def from_token(cls, token: Token, *, include_secret: bool = False) -> "TokenResponse":
        return cls(
            id=token.name,
            user_id=token.user_id,
            user_principal=PrincipalResponse.from_principal(token.user_principal),
            group_principals=[PrincipalResponse.from_principal(p) for p in token.group_principals],
            is_derived=token.is_derived,
            ttl_millis=token.ttl_millis,
            created_at=token.created_at,
            expires_at=token.expires_at,
            expired=token.expired,
            auth_provider=token.auth_provider,
            provider_info=token.provider_info,
            description=token.description,
            token=token.bearer_value if include_secret else None,
        )


class TokenListResponse(BaseModel):
    items: List[TokenResponse]
