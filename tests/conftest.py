import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from relaxgo.core.config import settings
from relaxgo.core.security import AuthorizationContext
from relaxgo.services.approval_service import ApprovalService
from relaxgo.services.booking_service import BookingService
from relaxgo.services.identity_service import IdentityService
from relaxgo.services.notification_bus import ChangeNotificationBus
from relaxgo.services.store import MemoryStore

TZ = ZoneInfo(settings.TIMEZONE)
NOW = datetime(2024, 5, 20, 9, 0, tzinfo=TZ)

CUSTOMER_ID = "cust-1"
MASSEUR_ID = "masseur-1"
OTHER_MASSEUR_ID = "masseur-2"
ADMIN_ID = "admin-1"
MASSAGE_TYPE_ID = "deep-tissue"


@pytest.fixture
def store():
    store = MemoryStore()
    store.seed("users", [
        {"id": CUSTOMER_ID, "roles": ["customer"]},
        {"id": MASSEUR_ID, "roles": ["customer", "provider"]},
        {"id": OTHER_MASSEUR_ID, "roles": ["customer", "provider"]},
        {"id": ADMIN_ID, "roles": ["admin"]},
    ])
    store.seed("massage_types", [{"id": MASSAGE_TYPE_ID, "name": "Deep Tissue"}])
    store.seed("masseuses", [
        {"masseuse_id": MASSEUR_ID, "status": "approved", "first_name": "Costin", "last_name": "M."},
        {"masseuse_id": OTHER_MASSEUR_ID, "status": "approved", "first_name": "Ana", "last_name": "P."},
    ])
    return store


@pytest.fixture
def booking_service(store):
    return BookingService(store, clock=lambda: NOW)


@pytest.fixture
def identity_service(store):
    return IdentityService(store)


@pytest.fixture
def approval_service(store, identity_service):
    return ApprovalService(store, identity_service, clock=lambda: NOW)


@pytest.fixture
def bus(store):
    # Short backoff so reconnect tests finish quickly
    return ChangeNotificationBus(store, initial_delay=0.01, max_delay=0.05)


@pytest.fixture
def customer_ctx():
    return AuthorizationContext(CUSTOMER_ID, frozenset({"customer"}))


@pytest.fixture
def provider_ctx():
    return AuthorizationContext(MASSEUR_ID, frozenset({"customer", "provider"}))


@pytest.fixture
def other_provider_ctx():
    return AuthorizationContext(OTHER_MASSEUR_ID, frozenset({"customer", "provider"}))


@pytest.fixture
def admin_ctx():
    return AuthorizationContext(ADMIN_ID, frozenset({"admin"}))


@pytest.fixture
def eventually():
    """Await until a condition holds (push delivery is asynchronous)."""
    async def _eventually(condition, timeout: float = 1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError("condition not met within timeout")
            await asyncio.sleep(0.005)
    return _eventually
