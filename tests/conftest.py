import asyncio
import inspect
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone

# Environment must be in place before any import that initializes the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="portal_access_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SESSION_TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
# Process-local throttling and sweep lock in tests
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

from portal_access.config import Settings  # noqa: E402
from portal_access.service.admin import PortalAdminService  # noqa: E402
from portal_access.service.audit import AuditRecorder  # noqa: E402
from portal_access.service.cleanup import CleanupScheduler  # noqa: E402
from portal_access.service.clock import FrozenClock  # noqa: E402
from portal_access.service.expiry import ExpiryPolicy  # noqa: E402
from portal_access.service.links import LinkIssuer, LinkValidator  # noqa: E402
from portal_access.service.notifications import Notifier  # noqa: E402
from portal_access.service.otp import OTPService  # noqa: E402
from portal_access.service.revocation import RevocationService  # noqa: E402
from portal_access.service.runtime import reset_runtime_for_tests  # noqa: E402
from portal_access.service.sessions import SessionManager  # noqa: E402
from portal_access.service.tokens import SessionTokenSigner, TokenGenerator  # noqa: E402
from portal_access.storage.memory import MemoryStore  # noqa: E402
from portal_access.storage.models import Client, Quote, TenantPortalConfig  # noqa: E402

TENANT = "tenant-7"
CLIENT = "client-42"


class RecordingEmail:
    """Stands in for EmailService; remembers every message."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent = []

    def send(self, to_email, subject, html_body, text_body):
        self.sent.append({"to": to_email, "subject": subject, "text": text_body})
        return self.ok


class RecordingSms:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent = []

    def send(self, to_phone, message):
        self.sent.append({"to": to_phone, "message": message})
        return self.ok


@dataclass
class Portal:
    store: MemoryStore
    clock: FrozenClock
    settings: Settings
    policy: ExpiryPolicy
    tokens: TokenGenerator
    signer: SessionTokenSigner
    email: RecordingEmail
    sms: RecordingSms
    notifier: Notifier
    sessions: SessionManager
    issuer: LinkIssuer
    validator: LinkValidator
    otp: OTPService
    revocation: RevocationService
    cleanup: CleanupScheduler
    admin: PortalAdminService

    def add_quote(self, quote_id, *, tenant_id=TENANT, client_id=CLIENT):
        return self.store.add_quote(
            Quote(id=quote_id, tenant_id=tenant_id, client_id=client_id, created_at=self.clock.now())
        )


def build_portal(store, clock, settings) -> Portal:
    policy = ExpiryPolicy(store, settings)
    tokens = TokenGenerator()
    signer = SessionTokenSigner(settings.session_token_secret, clock=clock)
    audit = AuditRecorder(store, clock)
    email = RecordingEmail()
    sms = RecordingSms()
    notifier = Notifier(email, sms, background=False)
    sessions = SessionManager(store, signer, clock=clock, audit=audit)
    issuer = LinkIssuer(
        store, policy, tokens, settings, clock=clock, notifier=notifier, audit=audit
    )
    validator = LinkValidator(store, sessions, clock=clock, audit=audit)
    otp = OTPService(
        store, sessions, tokens, settings, clock=clock, notifier=notifier, audit=audit
    )
    revocation = RevocationService(store, clock=clock, audit=audit)
    cleanup = CleanupScheduler(store, policy, settings, clock=clock)
    admin = PortalAdminService(
        store,
        policy,
        issuer,
        revocation,
        cleanup,
        settings,
        clock=clock,
        notifier=notifier,
        audit=audit,
    )
    return Portal(
        store=store,
        clock=clock,
        settings=settings,
        policy=policy,
        tokens=tokens,
        signer=signer,
        email=email,
        sms=sms,
        notifier=notifier,
        sessions=sessions,
        issuer=issuer,
        validator=validator,
        otp=otp,
        revocation=revocation,
        cleanup=cleanup,
        admin=admin,
    )


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        session_token_secret="unit-test-secret",
        portal_base_url="https://portal.example.com/",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def portal(store, clock, settings):
    """Services wired to one memory store, a frozen clock and recording senders.

    Tenant ``tenant-7`` is registered with the default 7-day link lifetime and
    has client ``client-42`` with an email address and a phone number.
    """
    store.upsert_portal_config(
        TenantPortalConfig(tenant_id=TENANT, company_name="Acme Renovations", created_at=clock.now())
    )
    store.upsert_client(
        Client(
            id=CLIENT,
            tenant_id=TENANT,
            name="Jo Smith",
            email="jo@example.com",
            phone="+15550100",
            created_at=clock.now(),
        )
    )
    return build_portal(store, clock, settings)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
