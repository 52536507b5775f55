"""Common storage utilities shared between the memory, postgres and redis backends.

Token records travel through three representations (in-memory copies, a
Postgres row, a Redis JSON blob); the helpers here keep the conversions in
one place so every backend agrees on field names and defaults.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from tokenward.storage.models import Principal, Token

# Label carrying the owning user id, used for by-user listing
USER_ID_LABEL = "authn.tokenward.io/token-user-id"

# Lowercase consonants and digits without look-alikes (no vowels, 0, 1, 3)
TOKEN_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
NAME_SUFFIX_LENGTH = 5


# ============================================================================
# NAMING
# ============================================================================

def generate_token_name(prefix: str = "token-") -> str:
    """Generate a store-assigned record name such as ``token-x7kq2``."""
    suffix = "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(NAME_SUFFIX_LENGTH))
    return f"{prefix}{suffix}"


def with_owner_label(token: Token) -> Dict[str, str]:
    """Return the token's labels with the owning-user label applied."""
    labels = dict(token.labels or {})
    labels[USER_ID_LABEL] = token.user_id
    return labels


def matches_selector(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    """Exact key/value match of every selector entry."""
    return all(labels.get(key) == value for key, value in selector.items())


# ============================================================================
# SERIALIZATION
# ============================================================================

def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a metadata field from a JSON string or dict.

    Args:
        raw_meta: Raw metadata value (string, dict, or None)

    Returns:
        Parsed dict or None
    """
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def parse_datetime(raw: Any) -> datetime:
    """Parse a stored timestamp, normalizing naive values to UTC."""
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str):
        value = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"unsupported timestamp value: {raw!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def principal_to_dict(principal: Principal) -> Dict[str, Any]:
    return asdict(principal)


def principal_from_dict(data: Mapping[str, Any]) -> Principal:
    return Principal(
        name=data["name"],
        display_name=data.get("display_name"),
        login_name=data.get("login_name"),
        provider=data.get("provider"),
        principal_type=data.get("principal_type", "user"),
        extra=data.get("extra"),
    )


def token_to_dict(token: Token) -> Dict[str, Any]:
    """Serialize a token for persistence. ``expired`` is deliberately dropped."""
    return {
        "name": token.name,
        "secret": token.secret,
        "user_id": token.user_id,
        "user_principal": principal_to_dict(token.user_principal),
        "group_principals": [principal_to_dict(p) for p in token.group_principals],
        "is_derived": token.is_derived,
        "ttl_millis": token.ttl_millis,
        "created_at": parse_datetime(token.created_at).isoformat(),
        "auth_provider": token.auth_provider,
        "provider_info": token.provider_info,
        "description": token.description,
        "labels": dict(token.labels or {}),
    }


def token_from_dict(data: Mapping[str, Any]) -> Token:
    group_raw = data.get("group_principals") or []
    if isinstance(group_raw, str):
        group_raw = json.loads(group_raw)
    user_raw = data["user_principal"]
    if isinstance(user_raw, str):
        user_raw = json.loads(user_raw)
    return Token(
        name=str(data["name"]),
        secret=data["secret"],
        user_id=str(data["user_id"]),
        user_principal=principal_from_dict(user_raw),
        group_principals=[principal_from_dict(p) for p in group_raw],
        is_derived=bool(data.get("is_derived", False)),
        ttl_millis=int(data.get("ttl_millis") or 0),
        created_at=parse_datetime(data["created_at"]),
        auth_provider=data.get("auth_provider"),
        provider_info=parse_json_meta(data.get("provider_info")),
        description=data.get("description"),
        labels=parse_json_meta(data.get("labels")) or {},
    )


def copy_token(token: Token) -> Token:
    """Deep-enough copy so callers cannot mutate a backend's stored record."""
    return replace(
        token,
        user_principal=replace(token.user_principal),
        group_principals=[replace(p) for p in token.group_principals],
        provider_info=dict(token.provider_info) if token.provider_info else token.provider_info,
        labels=dict(token.labels or {}),
        expired=False,
    )


def sorted_by_creation(tokens: List[Token]) -> List[Token]:
    return sorted(tokens, key=lambda t: (parse_datetime(t.created_at), t.name))


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract a value from a row dict or object.

    Args:
        row: Row data (dict-like or object)
        key: Key/attribute name
        default: Default value if not found

    Returns:
        Extracted value or default
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


# ============================================================================
# MUTATION LISTENERS
# ============================================================================

# Called with ("upsert" | "delete", token) after each committed write
MutationListener = Callable[[str, Token], None]


class MutationNotifier:
    """Fan-out of committed store writes to followers such as a secret index.

    Stores set ``self._listeners`` and ``self.logger`` in ``__init__``.
    """

    _listeners: List[MutationListener]

    def add_listener(self, listener: MutationListener) -> None:
        self._listeners.append(listener)

    def _notify(self, mutation: str, token: Token) -> None:
        for listener in list(self._listeners):
            try:
                listener(mutation, copy_token(token))
            except Exception as exc:
                # The write is already committed; followers catch up on resync
                self.logger.warning(
                    "token_store_listener_failed",
                    mutation=mutation,
                    name=token.name,
                    error=str(exc),
                )
