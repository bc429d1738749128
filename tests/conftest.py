"""
Shared fixtures.

Every test gets its own file-backed SQLite database under ``tmp_path`` so
concurrent units of work really run on separate connections (WAL mode).
The app is driven through ``httpx.ASGITransport``, which does not run
startup/shutdown events, so the ``services`` fixture starts and stops the
service container explicitly. Outbound HTTP goes to an
``httpx.MockTransport`` that records every request.
"""

from __future__ import annotations

from typing import List

import httpx
import pytest

from cardpass.config import Settings, SettingsStore
from cardpass.infra import timings
from cardpass.model.payment import CheckoutDetails
from cardpass.notify import Notification, Notifier
from cardpass.server import create_app

ADMIN = {"username": "admin", "password": "test-password"}


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: List[Notification] = []

    async def send(self, message: Notification) -> None:
        self.sent.append(message)

    def kinds(self) -> List[str]:
        return [m.kind for m in self.sent]


class Outbound:
    """httpx.MockTransport handler that records requests."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"status": "ok"})


def _checkout(method: str = "pix", plan: str = "basic",
              email: str = "ana@example.com") -> CheckoutDetails:
    return CheckoutDetails(
        plan=plan,
        payment_method=method,
        customer_name="Ana Souza",
        customer_email=email,
        customer_phone="+55 11 99999-0000",
    )


@pytest.fixture(autouse=True)
def _reset_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'cardpass.db'}",
        session_secret="test-session-secret",
        admin_username=ADMIN["username"],
        admin_password=ADMIN["password"],
        mock_webhook_url="http://mock.test/payments/webhook",
        public_url="https://cards.example",
        log_format="console",
        log_level="WARNING",
    )


@pytest.fixture
def store(settings) -> SettingsStore:
    return SettingsStore(settings, loader=lambda: settings)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def outbound() -> Outbound:
    return Outbound()


@pytest.fixture
async def http(outbound):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(outbound)
    ) as client:
        yield client


@pytest.fixture
def app(store, notifier, http):
    return create_app(store, http=http, notifier=notifier)


@pytest.fixture
async def services(app):
    svc = app.state.services
    await svc.start()
    yield svc
    await svc.stop()


@pytest.fixture
def unit(services):
    return services.unit


@pytest.fixture
def coordinator(services):
    return services.coordinator


@pytest.fixture
def guard(services):
    return services.webhooks


@pytest.fixture
async def client(app, services):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


@pytest.fixture
async def admin(client):
    r = await client.post("/api/admin/login", json=ADMIN)
    assert r.status_code == 200
    return client


@pytest.fixture
def checkout():
    return _checkout
