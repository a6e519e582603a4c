# tests/conftest.py
import itertools
import os

# settings are read at import time
os.environ["USE_MONGO"] = "0"
os.environ["SCHEDULER_ENABLED"] = "0"
os.environ["ENABLE_FAULT_INJECTION"] = "1"

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from microdonate.core.security import create_access_token, hash_password, utcnow
from microdonate.deps import get_repo
from microdonate.main import app
from microdonate.repos.inmemory import InMemoryRepo

PASSWORD = "Passw0rd!"


@pytest.fixture(scope="session")
def anyio_backend():
    # keep AnyIO on asyncio for the whole test session
    return "asyncio"


@pytest.fixture
def repo():
    fresh = InMemoryRepo()
    app.dependency_overrides[get_repo] = lambda: fresh
    yield fresh
    app.dependency_overrides.pop(get_repo, None)


@pytest.fixture
async def client(repo):
    async with LifespanManager(app):
        transport = ASGITransport(app=app, raise_app_exceptions=True)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac


@pytest.fixture
def make_user(repo):
    async def _make(email, role="donor", password=PASSWORD, **extra):
        doc = {
            "email": email,
            "password_hash": hash_password(password),
            "role": role,
            "first_name": "Test",
            "last_name": role.title(),
            "age": 30,
            "gender": "other",
            "verified": True,
            "profile": {},
            "token_blacklist": [],
            "two_factor_enabled": False,
            "created_at": utcnow(),
        }
        doc.update(extra)
        return await repo.create_user(doc)
    return _make


@pytest.fixture
def make_cause(repo):
    counter = itertools.count(1)

    async def _make(name=None, current_amount=0, target_amount=1000, status="active",
                    end_date=None, category="education", donor_count=0):
        now = utcnow()
        return await repo.create_cause({
            "name": name or f"Cause {next(counter)}",
            "description": "A test cause",
            "category": category,
            "target_amount": target_amount,
            "current_amount": current_amount,
            "donor_count": donor_count,
            "status": status,
            "image_url": "",
            "start_date": now,
            "end_date": end_date,
            "created_by": None,
            "created_at": now,
            "updated_at": now,
        })
    return _make


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
async def admin(make_user):
    return await make_user("admin@example.com", role="admin")


@pytest.fixture
async def donor(make_user):
    return await make_user("donor@example.com")


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


@pytest.fixture
def donor_headers(donor):
    return bearer(donor)


@pytest.fixture
def events(repo):
    """Event types written to the audit log so far, oldest first."""
    def _events():
        logs = sorted(repo.audit_logs.values(), key=lambda log: log["created_at"])
        return [log["event_type"] for log in logs]
    return _events


@pytest.fixture
def headers_for():
    return bearer


@pytest.fixture
def password():
    return PASSWORD
