import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="iamcore_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from iamcore.config import Settings  # noqa: E402
from iamcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from iamcore.storage.memory import MemoryStore  # noqa: E402
from iamcore.storage.models import RoleScope  # noqa: E402

TEST_SECRET = "unit-test-secret-0123456789-abcdefghijklmnop"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings with a fixed secret and the default token lifetimes."""
    return Settings(jwt_secret=TEST_SECRET)


class FakeClock:
    """Settable clock shared by every component built in a test."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        from datetime import timedelta

        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    from datetime import datetime, timezone

    return FakeClock(datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def seeded(store):
    """Tenant t1 with TENANT_ADMIN/OPERATOR roles and a SYSTEM super-admin role."""
    tenant = store.create_tenant("Acme", tenant_id="t1")
    super_admin = store.create_role("SUPER_ADMIN", RoleScope.SYSTEM)
    tenant_admin = store.create_role("TENANT_ADMIN", RoleScope.TENANT)
    operator = store.create_role("OPERATOR", RoleScope.TENANT)
    read = store.create_permission("transaction.read", "Read transactions")
    create = store.create_permission("transaction.create", "Create transactions")
    report = store.create_permission("report.read", "Read reports")
    store.assign_permission(operator.id, read.id)
    store.assign_permission(operator.id, create.id)
    store.assign_permission(tenant_admin.id, read.id)
    store.assign_permission(tenant_admin.id, report.id)
    return {
        "tenant": tenant,
        "roles": {
            "SUPER_ADMIN": super_admin,
            "TENANT_ADMIN": tenant_admin,
            "OPERATOR": operator,
        },
        "permissions": {"read": read, "create": create, "report": report},
    }


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
