"""Shared test fixtures for all test modules."""

import contextlib
import threading
import uuid
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import dunning.models  # noqa: F401  registers every table on Base.metadata
from dunning.core import database as db_module
from dunning.core.database import Base, get_db
from dunning.models.dunning_sequence import DunningSequence
from dunning.repositories.dunning_sequence_repository import DunningSequenceRepository
from dunning.services.csm_assignment import RoundRobinCsmAssigner
from dunning.services.dunning_state_machine import open_sequence
from dunning.services.notification_sender import NotificationSenderBase
from dunning.services.payment_gateway import ChargeResponse, ChargeResult, PaymentGatewayBase
from dunning.services.retry_scheduler import NotificationStep, RetryPolicy

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

DEFAULT_ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")
CSM_ONE = uuid.UUID("00000000-0000-0000-0000-00000000c5a1")
CSM_TWO = uuid.UUID("00000000-0000-0000-0000-00000000c5a2")

# Fixed clock used by tests that drive the schedule explicitly
T0 = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def default_org_id():
    """Return the default organization ID for tests."""
    return DEFAULT_ORG_ID


class FakeGateway(PaymentGatewayBase):
    """Gateway that replays scripted results and records every charge."""

    def __init__(self, *results: ChargeResult | ChargeResponse):
        self.results = list(results)
        self.calls: list[tuple[uuid.UUID, str]] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "fake"

    def charge(self, invoice_id: uuid.UUID, idempotency_key: str) -> ChargeResponse:
        with self._lock:
            self.calls.append((invoice_id, idempotency_key))
            result = self.results.pop(0) if self.results else ChargeResult.DECLINED
        if isinstance(result, ChargeResponse):
            return result
        if result == ChargeResult.DECLINED:
            return ChargeResponse(result=result, decline_reason="card_declined")
        return ChargeResponse(result=result)


class FakeNotifier(NotificationSenderBase):
    """Notifier that records what would have been sent."""

    def __init__(self, fail: Exception | None = None):
        self.payment_links: list[uuid.UUID] = []
        self.recoveries: list[uuid.UUID] = []
        self.notices: list[tuple[uuid.UUID, int, bool]] = []
        self.fail = fail

    def send_payment_link(self, sequence: DunningSequence) -> None:
        if self.fail:
            raise self.fail
        self.payment_links.append(sequence.id)  # type: ignore[arg-type]

    def send_dunning_notice(
        self, sequence: DunningSequence, day: int, include_payment_link: bool
    ) -> None:
        if self.fail:
            raise self.fail
        self.notices.append((sequence.id, day, include_payment_link))  # type: ignore[arg-type]

    def send_recovery_confirmation(self, sequence: DunningSequence) -> None:
        if self.fail:
            raise self.fail
        self.recoveries.append(sequence.id)  # type: ignore[arg-type]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def csm_assigner() -> RoundRobinCsmAssigner:
    return RoundRobinCsmAssigner([CSM_ONE, CSM_TWO])


def create_sequence(
    db: Session,
    now: datetime = T0,
    offsets: tuple[int, ...] = (1, 3, 7),
    escalation_threshold: int = 2,
    amount: Decimal | str = Decimal("500"),
    currency: str = "SAR",
    organization_id: uuid.UUID = DEFAULT_ORG_ID,
    notification_steps: tuple[NotificationStep, ...] = (),
) -> DunningSequence:
    """Insert a freshly opened sequence created at ``now``."""
    sequence = open_sequence(
        organization_id=organization_id,
        invoice_id=uuid.uuid4(),
        subscription_id=uuid.uuid4(),
        amount_at_risk_cents=Decimal(str(amount)),
        currency=currency,
        policy=RetryPolicy(
            offsets_days=offsets,
            escalation_threshold=escalation_threshold,
            notification_steps=notification_steps,
        ),
        now=now,
        failure_reason="card_declined",
    )
    return DunningSequenceRepository(db).add(sequence)

