import asyncio
import inspect
import os
import sys
from datetime import timedelta
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("STAFF_API_KEY", "staff-key-for-tests-only-0123456789")
os.environ.setdefault("OWNER_EMAIL", "owner@example.com")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantauth.config import OwnerBootstrap  # noqa: E402
from tenantauth.service.flows import AuthFlows, TokenLifetimes  # noqa: E402
from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantauth.service.sessions import SessionIssuer  # noqa: E402
from tenantauth.service.tokens import TokenStore  # noqa: E402
from tenantauth.service.validator import CredentialValidator  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402
from tenantauth.storage.models import AuthPolicy  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class RecordingEmail:
    """Email trigger double that records every send."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.sent = []

    async def send(self, template, recipient, payload, *, scheduled_at=None, synchronous=True):
        self.sent.append(
            {
                "template": template,
                "recipient": recipient,
                "payload": dict(payload),
                "scheduled_at": scheduled_at,
                "synchronous": synchronous,
            }
        )
        return self.accept

    def of(self, template):
        return [item for item in self.sent if item["template"] == template]


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def token_store(memory_store):
    return TokenStore(memory_store)


@pytest.fixture
def issuer(token_store):
    return SessionIssuer(token_store, issuer="tenantauth-test", leeway_seconds=0)


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def owner_config():
    return OwnerBootstrap(
        staff_api_key="staff-key-for-tests-only-0123456789",
        email="owner@example.com",
        full_name="Olive Owner",
        app_name="Owner Console",
        app_url="https://console.example.com",
    )


@pytest.fixture
def lifetimes():
    return TokenLifetimes(
        confirm_email=timedelta(days=1),
        magic_login=timedelta(minutes=30),
        reset_password=timedelta(minutes=30),
        invite_user=timedelta(days=7),
        welcome_delay=timedelta(hours=1),
    )


@pytest.fixture
def flows(memory_store, token_store, issuer, email, owner_config, lifetimes):
    validator = CredentialValidator(memory_store, token_store, issuer)
    return AuthFlows(
        memory_store,
        token_store,
        issuer,
        validator,
        email,
        owner=owner_config,
        lifetimes=lifetimes,
    )


@pytest.fixture
def password_tenant(memory_store):
    return memory_store.create_tenant(
        "Acme", "https://acme.example.com", auth_policy=AuthPolicy.PASSWORD
    )


@pytest.fixture
def magic_tenant(memory_store):
    return memory_store.create_tenant(
        "Beacon", "https://beacon.example.com", auth_policy=AuthPolicy.MAGIC_LINK
    )


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
