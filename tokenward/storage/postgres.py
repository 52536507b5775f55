from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenward.logging import get_logger
from tokenward.storage.common import (
    MutationListener,
    MutationNotifier,
    generate_token_name,
    principal_to_dict,
    safe_row_value,
    token_from_dict,
    with_owner_label,
)
from tokenward.storage.errors import ConstraintViolation, StoreUnavailable
from tokenward.storage.models import Token

_MAX_NAME_ATTEMPTS = 8

_TOKEN_COLUMNS = (
    "name, secret, user_id, user_principal, group_principals, is_derived, "
    "ttl_millis, created_at, auth_provider, provider_info, description, labels"
)


class PostgresStore(MutationNotifier):
    """Postgres-backed authoritative token store.

    Listeners are notified after each committed write so a secret index can
    evict revoked tokens without waiting for a resync.
    """

    def __init__(self, dsn: str, *, name_prefix: str = "token-") -> None:
        self.dsn = dsn
        self.name_prefix = name_prefix
        self.logger = get_logger(__name__)
        self._listeners: List[MutationListener] = []
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_token_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_token_table(self) -> None:
        """Create the ``auth_token`` table and its indexes if they are missing."""

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS auth_token (
                        name TEXT PRIMARY KEY,
                        secret TEXT NOT NULL UNIQUE,
                        user_id TEXT NOT NULL,
                        user_principal JSONB NOT NULL,
                        group_principals JSONB NOT NULL DEFAULT '[]'::jsonb,
                        is_derived BOOLEAN NOT NULL DEFAULT FALSE,
                        ttl_millis BIGINT NOT NULL DEFAULT 0,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        auth_provider TEXT,
                        provider_info JSONB,
                        description TEXT,
                        labels JSONB NOT NULL DEFAULT '{}'::jsonb
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS auth_token_labels_idx ON auth_token USING GIN (labels)"
                )
        except psycopg.Error as exc:
            raise StoreUnavailable(f"unable to prepare auth_token table: {exc}") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_token(row: Any) -> Token:
        return token_from_dict(
            {
                "name": safe_row_value(row, "name"),
                "secret": safe_row_value(row, "secret"),
                "user_id": safe_row_value(row, "user_id"),
                "user_principal": safe_row_value(row, "user_principal"),
                "group_principals": safe_row_value(row, "group_principals", []),
                "is_derived": safe_row_value(row, "is_derived", False),
                "ttl_millis": safe_row_value(row, "ttl_millis", 0),
                "created_at": safe_row_value(row, "created_at"),
                "auth_provider": safe_row_value(row, "auth_provider"),
                "provider_info": safe_row_value(row, "provider_info"),
                "description": safe_row_value(row, "description"),
                "labels": safe_row_value(row, "labels", {}),
            }
        )

    @staticmethod
    def _json_columns(token: Token) -> Dict[str, Optional[str]]:
        return {
            "user_principal": json.dumps(principal_to_dict(token.user_principal)),
            "group_principals": json.dumps(
                [principal_to_dict(p) for p in token.group_principals]
            ),
            "provider_info": json.dumps(token.provider_info) if token.provider_info else None,
            "labels": json.dumps(with_owner_label(token)),
        }

    # tokens
    def create_token(self, draft: Token) -> Token:
        cols = self._json_columns(draft)
        for _ in range(_MAX_NAME_ATTEMPTS):
            name = generate_token_name(self.name_prefix)
            try:
                with self._connect() as conn:
                    row = conn.execute(
                        f"""
                        INSERT INTO auth_token (name, secret, user_id, user_principal, group_principals,
                            is_derived, ttl_millis, auth_provider, provider_info, description, labels)
                        VALUES (%s, %s, %s, %s::jsonb, %s::jsonb, %s, %s, %s, %s::jsonb, %s, %s::jsonb)
                        RETURNING {_TOKEN_COLUMNS}
                        """,
                        (
                            name,
                            draft.secret,
                            draft.user_id,
                            cols["user_principal"],
                            cols["group_principals"],
                            draft.is_derived,
                            draft.ttl_millis,
                            draft.auth_provider,
                            cols["provider_info"],
                            draft.description,
                            cols["labels"],
                        ),
                    ).fetchone()
            except errors.UniqueViolation as exc:
                constraint = getattr(exc.diag, "constraint_name", "") or ""
                if "secret" in constraint:
                    raise ConstraintViolation("token secret already in use") from exc
                # Name collision; draw another suffix
                self.logger.debug("token_name_collision", name=name)
                continue
            except psycopg.Error as exc:
                raise StoreUnavailable(f"token create failed: {exc}") from exc
            created = self._row_to_token(row)
            self._notify("upsert", created)
            return created
        raise ConstraintViolation("unable to allocate a unique token name")

    def get_token(self, name: str) -> Optional[Token]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_TOKEN_COLUMNS} FROM auth_token WHERE name = %s", (name,)
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreUnavailable(f"token get failed: {exc}") from exc
        if not row:
            return None
        return self._row_to_token(row)

    def update_token(self, token: Token) -> Token:
        cols = self._json_columns(token)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE auth_token
                    SET user_principal = %s::jsonb, group_principals = %s::jsonb,
                        is_derived = %s, ttl_millis = %s, auth_provider = %s,
                        provider_info = %s::jsonb, description = %s, labels = %s::jsonb
                    WHERE name = %s AND secret = %s
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (
                        cols["user_principal"],
                        cols["group_principals"],
                        token.is_derived,
                        token.ttl_millis,
                        token.auth_provider,
                        cols["provider_info"],
                        token.description,
                        cols["labels"],
                        token.name,
                        token.secret,
                    ),
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreUnavailable(f"token update failed: {exc}") from exc
        if not row:
            raise ConstraintViolation("token does not exist", {"name": token.name})
        updated = self._row_to_token(row)
        self._notify("upsert", updated)
        return updated

    def delete_token(self, name: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"DELETE FROM auth_token WHERE name = %s RETURNING {_TOKEN_COLUMNS}", (name,)
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreUnavailable(f"token delete failed: {exc}") from exc
        if not row:
            return False
        self._notify("delete", self._row_to_token(row))
        return True

    def list_tokens_by_label(self, selector: Mapping[str, str]) -> List[Token]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_TOKEN_COLUMNS} FROM auth_token
                    WHERE labels @> %s::jsonb
                    ORDER BY created_at, name
                    """,
                    (json.dumps(dict(selector)),),
                ).fetchall()
        except psycopg.Error as exc:
            raise StoreUnavailable(f"token list failed: {exc}") from exc
        return [self._row_to_token(row) for row in rows]

    def list_tokens(self) -> List[Token]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {_TOKEN_COLUMNS} FROM auth_token ORDER BY created_at, name"
                ).fetchall()
        except psycopg.Error as exc:
            raise StoreUnavailable(f"token list failed: {exc}") from exc
        return [self._row_to_token(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
