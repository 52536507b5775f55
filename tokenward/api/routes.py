from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from tokenward.api.schemas import (
    DeriveTokenRequest,
    Envelope,
    TokenListResponse,
    TokenResponse,
)
from tokenward.service.errors import MalformedTokenError
from tokenward.service.tokens import TokenEngine

router = APIRouter(prefix="/v1")


def get_engine(request: Request) -> TokenEngine:
    return request.app.state.runtime.engine


def _extract_bearer(header: Optional[str]) -> str:
    if not header:
        raise MalformedTokenError("missing bearer token")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        raise MalformedTokenError("authorization header must use the Bearer scheme")
    return value.strip()


async def get_bearer(authorization: Optional[str] = Header(None)) -> str:
    return _extract_bearer(authorization)


@router.post("/tokens", response_model=Envelope, status_code=201, tags=["tokens"])
async def create_derived_token(
    body: Optional[DeriveTokenRequest] = None,
    bearer: str = Depends(get_bearer),
    engine: TokenEngine = Depends(get_engine),
):
    """Mint a derived token from the caller's token.

    The response is the only place the new token's secret is returned.
    """
    body = body or DeriveTokenRequest()
    token = await engine.create_derived(bearer, body.ttl_millis, body.description)
    return Envelope(status="ok", data=TokenResponse.from_token(token, include_secret=True))


@router.get("/tokens", response_model=Envelope, tags=["tokens"])
async def list_tokens(
    bearer: str = Depends(get_bearer),
    engine: TokenEngine = Depends(get_engine),
):
    tokens = await engine.list_for_caller(bearer)
    return Envelope(
        status="ok",
        data=TokenListResponse(items=[TokenResponse.from_token(t) for t in tokens]),
    )


@router.delete("/tokens/current", response_model=Envelope, tags=["tokens"])
async def delete_current_token(
    bearer: str = Depends(get_bearer),
    engine: TokenEngine = Depends(get_engine),
):
    """Revoke the presented token; repeating the call is harmless."""
    await engine.delete_by_bearer(bearer)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/tokens/{token_id}", response_model=Envelope, tags=["tokens"])
async def get_token(
    token_id: str = Path(..., min_length=1, max_length=253),
    bearer: str = Depends(get_bearer),
    engine: TokenEngine = Depends(get_engine),
):
    token = await engine.get_by_id(bearer, token_id)
    return Envelope(status="ok", data=TokenResponse.from_token(token))
