from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from tokenward.logging import get_logger
from tokenward.storage.common import (
    MutationListener,
    MutationNotifier,
    copy_token,
    generate_token_name,
    matches_selector,
    sorted_by_creation,
    token_from_dict,
    token_to_dict,
    with_owner_label,
)
from tokenward.storage.errors import ConstraintViolation, IndexUnavailable, StoreUnavailable
from tokenward.storage.models import Token, utcnow

_MAX_NAME_ATTEMPTS = 16


class MemoryStore(MutationNotifier):
    """In-memory authoritative token store with optional JSON persistence.

    Each write is persisted before it is applied to ``tokens``, so a failed
    state write leaves the store unchanged.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        name_prefix: str = "token-",
    ) -> None:
        self.logger = get_logger(__name__)
        self.tokens: Dict[str, Token] = {}
        self.name_prefix = name_prefix
        # RLock so listeners may read back from the store while notified
        self._data_lock = threading.RLock()
        self._listeners: List[MutationListener] = []
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def add_listener(self, listener: MutationListener) -> None:
        with self._data_lock:
            super().add_listener(listener)

    # ------------------------------------------------------------------
    # tokens
    # ------------------------------------------------------------------
    def create_token(self, draft: Token) -> Token:
        with self._data_lock:
            if self._secret_in_use(draft.secret):
                raise ConstraintViolation("token secret already in use")
            name = self._allocate_name()
            stored = replace(
                copy_token(draft),
                name=name,
                created_at=utcnow(),
                labels=with_owner_label(draft),
            )
            self._commit({**self.tokens, name: stored})
            self._notify("upsert", stored)
            return copy_token(stored)

    def get_token(self, name: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(name)
            return copy_token(token) if token else None

    def update_token(self, token: Token) -> Token:
        with self._data_lock:
            current = self.tokens.get(token.name)
            if current is None:
                raise ConstraintViolation("token does not exist", {"name": token.name})
            if token.secret != current.secret:
                raise ConstraintViolation("token secret is immutable", {"name": token.name})
            stored = replace(
                copy_token(token),
                created_at=current.created_at,
                labels=with_owner_label(token),
            )
            self._commit({**self.tokens, token.name: stored})
            self._notify("upsert", stored)
            return copy_token(stored)

    def delete_token(self, name: str) -> bool:
        with self._data_lock:
            removed = self.tokens.get(name)
            if removed is None:
                return False
            self._commit({k: v for k, v in self.tokens.items() if k != name})
            self._notify("delete", removed)
            return True

    def list_tokens_by_label(self, selector: Mapping[str, str]) -> List[Token]:
        with self._data_lock:
            matched = [
                copy_token(t) for t in self.tokens.values() if matches_selector(t.labels, selector)
            ]
        return sorted_by_creation(matched)

    def list_tokens(self) -> List[Token]:
        with self._data_lock:
            return sorted_by_creation([copy_token(t) for t in self.tokens.values()])

    def _secret_in_use(self, secret: str) -> bool:
        return any(t.secret == secret for t in self.tokens.values())

    def _allocate_name(self) -> str:
        for _ in range(_MAX_NAME_ATTEMPTS):
            name = generate_token_name(self.name_prefix)
            if name not in self.tokens:
                return name
        raise ConstraintViolation("unable to allocate a unique token name")

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    def _commit(self, tokens: Dict[str, Token]) -> None:
        """Persist ``tokens`` and only then make it the live state."""
        if self.fs_root is not None:
            state = {"tokens": [token_to_dict(t) for t in tokens.values()]}
            try:
                self._state_path().write_text(json.dumps(state, indent=2))
            except OSError as exc:
                self.logger.error("token_store_persist_failed", error=str(exc))
                raise StoreUnavailable(f"failed to persist token state: {exc}") from exc
        self.tokens.clear()
        self.tokens.update(tokens)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tokens = {
            t["name"]: token_from_dict(t) for t in data.get("tokens", [])
        }
        self.logger.info("token_store_state_loaded", count=len(self.tokens))
        return True


class MemoryTokenIndex:
    """Process-local secret index, fed by store mutations or resyncs.

    Entries are whatever the feeder last delivered and may lag the store;
    readers must cross-check them.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Token] = {}
        self._lock = threading.Lock()
        self.available = True

    async def lookup_by_secret(self, secret: str) -> Optional[Token]:
        if not self.available:
            raise IndexUnavailable("memory index disabled")
        with self._lock:
            token = self._entries.get(secret)
            return copy_token(token) if token else None

    async def put_token(self, token: Token) -> None:
        self._put(token)

    async def evict_token(self, secret: str) -> None:
        self._evict(secret)

    async def replace_all(self, tokens: Iterable[Token]) -> None:
        fresh = {t.secret: copy_token(t) for t in tokens}
        with self._lock:
            self._entries = fresh

    def follow(self, store: MemoryStore) -> None:
        """Subscribe to a MemoryStore so the index tracks its writes."""

        def _on_mutation(event: str, token: Token) -> None:
            if event == "delete":
                self._evict(token.secret)
            else:
                self._put(token)

        store.add_listener(_on_mutation)

    def _put(self, token: Token) -> None:
        with self._lock:
            self._entries[token.secret] = copy_token(token)

    def _evict(self, secret: str) -> None:
        with self._lock:
            self._entries.pop(secret, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
