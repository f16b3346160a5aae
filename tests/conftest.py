"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# --- Config env par défaut
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")

from app import db as db_module  # noqa: E402
from app.db import get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Base, Milestone, Payment, Project, User, UserRole  # noqa: E402
from app.models.api_key import ApiKey, ApiScope  # noqa: E402
from app.services import milestones as milestones_service  # noqa: E402
from app.services import payments as payments_service  # noqa: E402
from app.services import projects as projects_service  # noqa: E402
from app.services.psp_stripe import (  # noqa: E402
    IntentHandle,
    IntentState,
    RefundResult,
    get_payment_gateway,
)
from app.utils.apikey import hash_key  # noqa: E402
from app.utils.errors import GatewayError  # noqa: E402
from app.utils.time import utctoday  # noqa: E402


class FakeGateway:
    """In-memory payment gateway recording every call; can fail on demand."""

    def __init__(self) -> None:
        self.intents: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.calls: list[tuple[str, str | None]] = []
        self.fail_on: set[str] = set()

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise GatewayError(
                f"{operation} failed",
                retryable=True,
                code="GATEWAY_TIMEOUT",
                details={"operation": operation},
            )

    def create_intent(self, amount_minor, currency, metadata, *, idempotency_key=None):
        self.calls.append(("create_intent", idempotency_key))
        self._maybe_fail("create_intent")
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "amount": amount_minor,
            "currency": currency,
            "metadata": dict(metadata),
            "status": "requires_payment_method",
            "charge_id": None,
            "last_error": None,
        }
        return IntentHandle(intent_id=intent_id, client_secret=f"{intent_id}_secret")

    def update_intent_amount(self, intent_id, amount_minor):
        self.calls.append(("update_intent_amount", intent_id))
        self._maybe_fail("update_intent_amount")
        self.intents[intent_id]["amount"] = amount_minor

    def retrieve_intent(self, intent_id):
        self.calls.append(("retrieve_intent", intent_id))
        self._maybe_fail("retrieve_intent")
        intent = self.intents[intent_id]
        return IntentState(
            intent_id=intent_id,
            status=intent["status"],
            charge_id=intent["charge_id"],
            client_secret=f"{intent_id}_secret",
            last_error=intent["last_error"],
        )

    def refund(self, charge_id, amount_minor, metadata, *, idempotency_key=None):
        self.calls.append(("refund", idempotency_key))
        self._maybe_fail("refund")
        refund_id = f"re_test_{len(self.refunds) + 1}"
        self.refunds.append(
            {"id": refund_id, "charge_id": charge_id, "amount": amount_minor, "idempotency_key": idempotency_key}
        )
        return RefundResult(refund_id=refund_id, status="succeeded")

    def succeed(self, intent_id: str) -> str:
        """Simulate the customer completing the payment on the client side."""

        charge_id = intent_id.replace("pi_", "ch_")
        self.intents[intent_id].update(status="succeeded", charge_id=charge_id)
        return charge_id


@dataclass
class Parties:
    company: User
    provider: User
    admin: User
    project: Project


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine, monkeypatch) -> Iterator[Session]:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    monkeypatch.setattr(db_module, "engine", engine)
    monkeypatch.setattr(db_module, "SessionLocal", factory)
    session = factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(autouse=True)
def override_dependencies(db_session: Session, gateway: FakeGateway) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateway, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    def _factory(role: UserRole, *, with_bank: bool = False, name: str | None = None) -> User:
        username = name or f"{role.value}-{uuid4().hex[:8]}"
        user = User(username=username, email=f"{username}@example.com", role=role)
        if with_bank:
            user.bank_name = "Maybank"
            user.bank_account_number = "5140 1234 5678"
            user.bank_account_name = username
        db_session.add(user)
        db_session.commit()
        return user

    return _factory


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(
        name: str,
        key: str,
        scope: ApiScope = ApiScope.company,
        user: User | None = None,
        is_active: bool = True,
    ) -> ApiKey:
        api_key = ApiKey(
            name=name,
            prefix="test_" + scope.value,
            key_hash=hash_key(key),
            scope=scope,
            user_id=user.id if user is not None else None,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


_SCOPES = {
    UserRole.COMPANY: ApiScope.company,
    UserRole.PROVIDER: ApiScope.provider,
    UserRole.ADMIN: ApiScope.admin,
}


@pytest.fixture
def headers_for(make_api_key: Callable[..., ApiKey]) -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        token = f"{user.role.value}-{uuid4().hex}"
        make_api_key(name=f"key-{uuid4().hex}", key=token, scope=_SCOPES[user.role], user=user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def parties(db_session: Session, make_user) -> Parties:
    company = make_user(UserRole.COMPANY)
    provider = make_user(UserRole.PROVIDER, with_bank=True)
    admin = make_user(UserRole.ADMIN, name=f"admin-{uuid4().hex[:6]}")
    project = projects_service.create_project(
        db_session,
        title="Mobile app redesign",
        customer_id=company.id,
        provider_id=provider.id,
        approved_price=Decimal("1000.00"),
    )
    return Parties(company=company, provider=provider, admin=admin, project=project)


def draft(sequence: int, amount: str, *, title: str | None = None, days: int = 30) -> milestones_service.MilestoneDraft:
    return milestones_service.MilestoneDraft(
        sequence=sequence,
        title=title or f"Milestone {sequence}",
        amount=Decimal(amount),
        due_date=utctoday() + timedelta(days=days),
    )


@pytest.fixture
def make_draft() -> Callable[..., milestones_service.MilestoneDraft]:
    return draft


@pytest.fixture
def lock_plan(db_session: Session, parties: Parties) -> Callable[..., list[Milestone]]:
    """Replace the plan with ``amounts`` and have both parties approve it."""

    def _lock(*amounts: str) -> list[Milestone]:
        drafts = [draft(index, amount) for index, amount in enumerate(amounts, start=1)]
        milestones_service.replace_milestones(db_session, parties.project.id, parties.company, drafts)
        milestones_service.approve_milestones(db_session, parties.project.id, parties.company)
        milestones_service.approve_milestones(db_session, parties.project.id, parties.provider)
        _, milestones = milestones_service.get_project_milestones(db_session, parties.project.id, parties.company)
        return milestones

    return _lock


@pytest.fixture
def escrow_milestone(db_session: Session, parties: Parties, gateway: FakeGateway):
    """Fund ``milestone`` through the gateway and confirm the escrow."""

    def _escrow(milestone: Milestone, amount: Decimal | None = None):
        handle = payments_service.initiate_payment(
            db_session, gateway, milestone_id=milestone.id, actor=parties.company, amount=amount
        )
        payment = db_session.get(Payment, handle.payment_id)
        charge_id = gateway.succeed(payment.gateway_intent_id)
        return payments_service.confirm_escrow(
            db_session, intent_id=payment.gateway_intent_id, charge_id=charge_id
        )

    return _escrow
