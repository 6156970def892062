# Pytest configuration for the chat and call-signaling backend.
# Forces a local SQLite DB, disables Redis and the stale-call sweeper, and drives
# every real-time timer from a manual scheduler with a fake clock.
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

# Test-time environment: local SQLite DB, Redis disabled, predictable JWT secret
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("ESTATECHAT_JWT_SECRET", "test-secret")
os.environ.setdefault("CALL_SWEEPER_ENABLED", "false")

# Ensure the repo root is on sys.path so 'estatechat' resolves when running pytest from the root
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from passlib.context import CryptContext  # noqa: E402

from estatechat import models, security  # noqa: E402
from estatechat.db import Base, SessionLocal, engine  # noqa: E402
from estatechat.main import app  # noqa: E402
from estatechat.realtime.hub import RealtimeHub, build_hub, get_hub  # noqa: E402
from estatechat.realtime.transport import Identity, Transport  # noqa: E402

# bcrypt is slow; tests only need a working hash
security.pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

T0 = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ManualHandle:
    def __init__(self, due: datetime, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.due = due
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """
    Scheduler stand-in: timers fire only from advance(), in due order,
    with the clock set to each timer's due time while it runs.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self._handles: List[ManualHandle] = []

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualHandle:
        handle = ManualHandle(self.clock() + timedelta(seconds=delay), callback, args)
        self._handles.append(handle)
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.clock() + timedelta(seconds=seconds)
        while True:
            due = [h for h in self._handles if not h.cancelled and h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self._handles.remove(handle)
            self.clock.now = max(self.clock.now, handle.due)
            handle.callback(*handle.args)
        self.clock.now = target


class RecordingTransport(Transport):
    """Transport that keeps every (event, data) pair it was sent."""

    def __init__(self, identity: Optional[Identity] = None) -> None:
        super().__init__(identity)
        self.sent: List[Tuple[str, dict]] = []

    def send(self, event: str, data: dict) -> None:
        self.sent.append((event, data))

    def events(self, name: str) -> List[dict]:
        return [data for event, data in self.sent if event == name]

    def names(self) -> List[str]:
        return [event for event, _ in self.sent]


class RecordingNotifier:
    """Collects call emails instead of sending them."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Any]] = []

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.calls]

    def call_initiated(self, ctx: Any) -> None:
        self.calls.append(("call_initiated", ctx))

    def call_missed(self, ctx: Any) -> None:
        self.calls.append(("call_missed", ctx))

    def call_ended(self, ctx: Any) -> None:
        self.calls.append(("call_ended", ctx))

    def call_force_terminated(self, ctx: Any) -> None:
        self.calls.append(("call_force_terminated", ctx))


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_db() -> Iterator[None]:
    """
    Session-level database bootstrap using a local SQLite file.

    Drops and recreates schema once per test session to ensure a clean slate.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_db() -> Iterator[None]:
    """
    Function-level isolation: drop and recreate schema before each test.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def scheduler(clock: FakeClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def hub(scheduler: ManualScheduler, clock: FakeClock, notifier: RecordingNotifier) -> Iterator[RealtimeHub]:
    """
    Real-time hub wired to the manual scheduler, the fake clock and the recording notifier.

    Also installed as the app's hub so REST and WebSocket routes share it with the test.
    """
    test_hub = build_hub(scheduler=scheduler, clock=clock, notifier=notifier, run_in_background=False)
    app.dependency_overrides[get_hub] = lambda: test_hub
    yield test_hub
    app.dependency_overrides.pop(get_hub, None)
    test_hub.shutdown()


@pytest.fixture()
def client(hub: RealtimeHub) -> Iterator[TestClient]:
    """
    FastAPI TestClient bound to the application for HTTP and WebSocket tests.
    """
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db() -> Iterator[Any]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db) -> Callable[..., models.User]:
    def _make(
        email: str,
        username: Optional[str] = None,
        role: str = "user",
        approval: Optional[str] = None,
        password: str = "changeme123",
    ) -> models.User:
        user = models.User(
            email=email,
            username=username or email.split("@")[0],
            password_hash=security.hash_password(password),
            role=role,
            admin_approval_status=approval,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_appointment(db) -> Callable[..., models.Appointment]:
    def _make(buyer: models.User, seller: models.User, property_name: str = "12 Harbour View") -> models.Appointment:
        appt = models.Appointment(buyer_id=buyer.id, seller_id=seller.id, property_name=property_name)
        db.add(appt)
        db.commit()
        db.refresh(appt)
        return appt

    return _make


@pytest.fixture()
def connect(hub: RealtimeHub) -> Callable[..., RecordingTransport]:
    """Register a recording transport with the hub, as the socket endpoint does after accept()."""

    def _connect(user: Optional[models.User] = None) -> RecordingTransport:
        transport = RecordingTransport(security.identity_for(user) if user is not None else None)
        hub.connect(transport)
        return transport

    return _connect


@pytest.fixture()
def fetch_call() -> Callable[[str], Optional[models.CallHistory]]:
    """Load a call history row through a fresh session (the hub writes through its own sessions)."""

    def _fetch(call_id: str) -> Optional[models.CallHistory]:
        session = SessionLocal()
        try:
            record = session.query(models.CallHistory).filter(models.CallHistory.call_id == call_id).first()
            if record is not None:
                session.expunge(record)
            return record
        finally:
            session.close()

    return _fetch


def auth_headers(user: models.User) -> dict:
    return {"Authorization": f"Bearer {security.create_access_token(user=user)}"}


@pytest.fixture()
def headers_for() -> Callable[[models.User], dict]:
    return auth_headers
