"""Pytest fixtures for canteen service tests."""

import pytest
from fastapi.testclient import TestClient

from canteen_service.database import Base, make_engine, make_session_factory
from canteen_service.inventory import InventoryLedger
from canteen_service.lifecycle import OrderLifecycle
from canteen_service.main import create_app
from canteen_service.notifications import Notifier
from canteen_service.orders import OrderPlacementService, UserIdentity
from canteen_service.tokens import TokenCodec

SECRET = "test-secret"
ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Name": "Admin", "X-User-Role": "admin"}
USER_HEADERS = {"X-User-Id": "user-1", "X-User-Name": "Asha", "X-User-Email": "asha@college.edu"}


class RecordingNotifier(Notifier):
    """Keeps every emitted event for assertions."""

    def __init__(self):
        self.events = []

    def _deliver(self, room, event, data):
        self.events.append((room, event, data))

    def of(self, event):
        return [data for _, name, data in self.events if name == event]


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so concurrent threads get real separate connections."""
    engine = make_engine(f"sqlite:///{tmp_path / 'canteen.db'}")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def codec():
    return TokenCodec(SECRET)


@pytest.fixture
def ledger(session_factory, notifier):
    return InventoryLedger(session_factory, notifier, retry_delay=0)


@pytest.fixture
def lifecycle(session_factory, ledger, codec, notifier):
    return OrderLifecycle(session_factory, ledger, codec, notifier)


@pytest.fixture
def placement(session_factory, ledger, codec, notifier):
    return OrderPlacementService(session_factory, ledger, codec, notifier)


@pytest.fixture
def user1():
    return UserIdentity(id="user-1", name="Asha", email="asha@college.edu")


@pytest.fixture
def user2():
    return UserIdentity(id="user-2", name="Ben", email="ben@college.edu")


@pytest.fixture
def make_item(ledger):
    """Create a menu item; keyword overrides for any field."""

    def _make(name="Burger", price=100, total_count=5, category="lunch", description="Veg burger"):
        return ledger.create_item(
            name=name, description=description, price=price, category=category, total_count=total_count
        )

    return _make


@pytest.fixture
def burger(make_item):
    return make_item()


@pytest.fixture
def api_client(session_factory, notifier, codec):
    app = create_app(session_factory=session_factory, notifier=notifier, codec=codec)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def live_client(session_factory, codec):
    """App whose events go to its own WebSocket hub."""
    app = create_app(session_factory=session_factory, codec=codec)
    with TestClient(app) as client:
        yield client
