import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def session_factory(tmp_path):
    """
    Disposable SQLite database per test, created with the production engine settings.
    """
    from casehub.database import Base, build_engine, build_session_factory
    import casehub.models.models  # noqa: F401

    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class Seeder:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def account(self, account_id="acc-1", balance=0, is_blocked=False):
        from casehub.models import models
        with self.session_factory() as db:
            db.add(models.Account(id=account_id, balance=balance, is_blocked=is_blocked))
            db.commit()
        return account_id

    def item(self, name, price, rarity="CONSUMER", image_url=None):
        from casehub.models import models
        with self.session_factory() as db:
            item = models.Item(
                market_hash_name=name,
                display_name=name,
                price=price,
                rarity=rarity,
                image_url=image_url,
            )
            db.add(item)
            db.commit()
            return item.id

    def case(self, price, items, name="Starter case", is_active=True):
        """
        ``items`` is a list of (item_id, chance_percent) in draw order.
        """
        from casehub.models import models
        with self.session_factory() as db:
            case = models.Case(name=name, price=price, is_active=is_active, open_count=0)
            for position, (item_id, chance) in enumerate(items):
                case.items.append(models.CaseItem(item_id=item_id, chance_percent=chance, position=position))
            db.add(case)
            db.commit()
            return case.id

    def balance(self, account_id="acc-1"):
        from casehub.models import models
        with self.session_factory() as db:
            return db.get(models.Account, account_id).balance


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def app_module(session_factory, monkeypatch):
    """
    The app bound to the per-test database, with periodic tasks disabled.
    """
    import casehub.main as main
    from casehub.config import settings

    monkeypatch.setattr(settings, "jobs_enabled", False)
    monkeypatch.setattr(settings, "bearer_token", None)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.router.on_startup.clear()
    main.app.dependency_overrides[main.get_db] = override_get_db
    yield main
    main.app.dependency_overrides.clear()


@pytest.fixture
def client(app_module):
    with TestClient(app_module.app) as client:
        yield client


class FakeGatewayA:
    def __init__(self):
        self.statuses = {}
        self.created = []
        self.fail_with = None

    async def create_payment(self, request, idempotence_key):
        from casehub.contracts.contracts import GatewayAConfirmation, GatewayAPayment
        if self.fail_with:
            raise self.fail_with
        payment_id = f"pay-{len(self.created) + 1}"
        self.created.append((request, idempotence_key))
        self.statuses[payment_id] = "pending"
        return GatewayAPayment(
            id=payment_id,
            status="pending",
            confirmation=GatewayAConfirmation(confirmation_url=f"https://pay.example/{payment_id}"),
            metadata=request.metadata,
        )

    async def get_payment(self, payment_id):
        from casehub.contracts.contracts import GatewayAPayment
        return GatewayAPayment(id=payment_id, status=self.statuses[payment_id])


class FakeGatewayB:
    def __init__(self):
        self.statuses = {}
        self.client_ids = {}
        self.lookups = []
        self.fail_with = None

    async def create_order(self, request):
        from casehub.contracts.contracts import GatewayBCreateOrderResponse
        if self.fail_with:
            raise self.fail_with
        tracker_id = f"trk-{len(self.statuses) + 1}"
        self.statuses[tracker_id] = "WAIT"
        self.client_ids[tracker_id] = request.client_transaction_id
        return GatewayBCreateOrderResponse(tracker_id=tracker_id, payment_url=f"https://crypto.example/{tracker_id}")

    async def get_order(self, tracker_id):
        from casehub.contracts.contracts import GatewayBOrder
        from casehub.errors import ExternalServiceError
        self.lookups.append(tracker_id)
        if tracker_id not in self.statuses:
            raise ExternalServiceError("gateway_b get order failed with status 404", context={"status": 404})
        return GatewayBOrder(
            tracker_id=tracker_id,
            status=self.statuses[tracker_id],
            client_transaction_id=self.client_ids.get(tracker_id),
            payed_amount=12.5,
        )


@pytest.fixture
def gateways():
    return FakeGatewayA(), FakeGatewayB()


@pytest.fixture
def pipeline(gateways):
    from casehub.payments import PaymentSettlementPipeline
    gateway_a, gateway_b = gateways
    return PaymentSettlementPipeline(gateway_a=gateway_a, gateway_b=gateway_b)
