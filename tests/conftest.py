"""Shared fixtures. Environment is set before any lifesign import."""

import os
import tempfile
import threading
import time

os.environ.setdefault("LIFESIGN_DATA_DIR", tempfile.mkdtemp())
os.environ.setdefault("LIFESIGN_DB_PATH", os.path.join(os.environ["LIFESIGN_DATA_DIR"], "test.db"))
os.environ.setdefault("LIFESIGN_MONITOR_AUTOSTART", "false")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from lifesign.database import init_db, make_engine  # noqa: E402
from lifesign.errors import NotificationDeliveryFailed  # noqa: E402
from lifesign.models.family import ApprovalState  # noqa: E402
from lifesign.services.code_registry import CodeRegistry  # noqa: E402
from lifesign.services.family_store import FamilyStore  # noqa: E402
from lifesign.services.pairing import PairingService  # noqa: E402

NOW = datetime(2024, 3, 6, 3, 0, tzinfo=timezone.utc)  # Wednesday 12:00 in Seoul


class RecordingTransport:
    """Push transport that records sends and fails for selected tokens."""

    def __init__(self, failing=(), delays=None):
        self.failing = set(failing)
        self.delays = delays or {}
        self.sent = []
        self._lock = threading.Lock()

    def send(self, token, title, body, data):
        delay = self.delays.get(token)
        if delay:
            time.sleep(delay)
        if token in self.failing:
            raise NotificationDeliveryFailed(f"unregistered token {token}", 404)
        with self._lock:
            self.sent.append((token, title, body, data))
            return f"msg-{len(self.sent)}"


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(tmp_path / "lifesign-test.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return FamilyStore(engine)


@pytest.fixture
def registry(store):
    return CodeRegistry(store, ttl_seconds=120)


@pytest.fixture
def pairing(store, registry):
    return PairingService(store, registry)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def paired_family(pairing, now):
    """An approved family with one watcher token and a 13h-old activity."""
    family, pending = pairing.setup_family("어머니", now=now)
    pairing.set_approval(pending.code, ApprovalState.APPROVED, push_token="watcher-token-1", now=now)
    pairing.complete_pairing(family.id)
    return pairing.store.update(family.id, last_activity_at=now - timedelta(hours=13))
