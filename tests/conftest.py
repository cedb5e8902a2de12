"""Shared fixtures: a fresh in-memory database per test plus fake collaborators."""

import uuid
from decimal import Decimal
from typing import List, Optional

import pytest

import infrastructure
from application import (
    AbstractNotificationDispatcher,
    AbstractPaymentGateway,
    CreateProjectCommand,
    CreateProjectUseCase,
    CreateUserCommand,
    CreateUserUseCase,
    GatewayPayment,
    NotificationEvent,
    PaymentPreference,
    PreferenceRequest,
    build_notification,
)
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import UserRole


class RecordingDispatcher(AbstractNotificationDispatcher):
    """Persists rows like the real dispatcher and remembers every event."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    async def dispatch(self, event, uow):
        notification = build_notification(event)
        with uow:
            uow.notifications.save(notification)
        self.events.append(event)
        return notification

    def titles_for(self, user_id) -> List[str]:
        return [e.title for e in self.events if e.recipient_id == user_id]


class FakeGateway(AbstractPaymentGateway):
    def __init__(self):
        self.requests: List[PreferenceRequest] = []
        self.payments = {}
        self.counter = 0

    async def create_preference(self, request):
        self.requests.append(request)
        self.counter += 1
        pref_id = f"pref-{self.counter}"
        return PaymentPreference(
            external_id=pref_id,
            primary_link=f"https://checkout.example/{pref_id}",
            sandbox_link=f"https://sandbox.example/{pref_id}",
        )

    async def get_payment(self, payment_id):
        return self.payments[payment_id]

    def approve(self, payment_id: str, reference: Optional[str], preference_id=None):
        self.payments[payment_id] = GatewayPayment(
            id=payment_id,
            status="approved",
            external_reference=reference,
            preference_id=preference_id,
        )


@pytest.fixture
def db(monkeypatch):
    fresh = InMemoryDatabase()
    monkeypatch.setattr(infrastructure, "_db", fresh)
    return fresh


@pytest.fixture
def uow(db):
    return InMemoryUnitOfWork(db)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def admin(uow):
    return CreateUserUseCase().execute(
        CreateUserCommand(full_name="Ada Admin", email="admin@softwarepar.test", role=UserRole.ADMIN),
        uow,
    )


@pytest.fixture
def client_user(uow):
    return CreateUserUseCase().execute(
        CreateUserCommand(
            full_name="Carla Client",
            email="carla@example.com",
            role=UserRole.CLIENT,
            whatsapp_number="+595981000111",
        ),
        uow,
    )


@pytest.fixture
def make_project(uow, admin, client_user):
    def _make(price="2000.00", name="Web shop"):
        return CreateProjectUseCase().execute(
            CreateProjectCommand(
                name=name,
                description="",
                price=Decimal(price),
                acting_user_id=uuid.UUID(admin.id),
                client_id=uuid.UUID(client_user.id),
            ),
            uow,
        )

    return _make
