import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

_test_tmp_dir = tempfile.mkdtemp(prefix="tokenward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokenward.config import reset_settings_cache  # noqa: E402
from tokenward.service.keygen import SecretGenerator  # noqa: E402
from tokenward.service.tokens import TokenEngine  # noqa: E402
from tokenward.storage.memory import MemoryStore  # noqa: E402
from tokenward.storage.models import Principal, Token  # noqa: E402


class FakeClock:
    """Controllable UTC clock for expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, milliseconds: int) -> None:
        self.current = self.current + timedelta(milliseconds=milliseconds)


class StubIndex:
    """Secret index returning whatever the test planted, or failing on demand."""

    def __init__(self):
        self.entries: dict[str, Token] = {}
        self.error: Exception | None = None
        self.lookups: list[str] = []

    async def lookup_by_secret(self, secret: str):
        self.lookups.append(secret)
        if self.error is not None:
            raise self.error
        return self.entries.get(secret)


class CountingStore(MemoryStore):
    """MemoryStore that records which names were fetched."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.get_calls: list[str] = []

    def get_token(self, name):
        self.get_calls.append(name)
        return super().get_token(name)


def make_principal(user_id: str = "u-alice") -> Principal:
    return Principal(
        name=f"local://{user_id}",
        display_name="Alice",
        login_name="alice",
        provider="local",
    )


def seed_token(
    store: MemoryStore,
    *,
    name: str,
    secret: str,
    user_id: str = "u-alice",
    ttl_millis: int = 0,
    created_at: datetime | None = None,
) -> Token:
    """Insert a login token with a fixed name/secret, bypassing name allocation."""
    token = Token(
        name=name,
        secret=secret,
        user_id=user_id,
        user_principal=make_principal(user_id),
        group_principals=[
            Principal(name="local://g-admins", principal_type="group", provider="local")
        ],
        ttl_millis=ttl_millis,
        created_at=created_at or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        auth_provider="local",
        provider_info={"idp": "local"},
        description="login",
        labels={"authn.tokenward.io/token-user-id": user_id},
    )
    store.tokens[name] = token
    return token


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def stub_index():
    return StubIndex()


@pytest.fixture
def engine(store, stub_index, clock):
    return TokenEngine(store, stub_index, SecretGenerator(), now=clock)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
