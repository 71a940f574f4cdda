import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from apps.orders.adapters import InMemoryDataStore, PaymentProcessorStub
from apps.orders.domain import Item, Order, OrderLine, OrderStatus, Shop, StockPolicy

TEST_JWT_SECRET = "test-secret"


class FakeClock:
    """Settable clock injected into the lifecycle components."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    from django.core.cache import cache

    from apps.orders.providers import reset_providers

    settings.PAYMENT_BACKEND = "stub"
    settings.IDENTITY_JWT_SECRET = TEST_JWT_SECRET
    settings.IDENTITY_JWT_AUDIENCE = None
    settings.ORDER_ADMIN_IDS = ["admin-1"]
    settings.ORDER_FEED_POLL_SECONDS = 0.05
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    cache.clear()  # throttle counters
    reset_providers()
    yield
    reset_providers()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDataStore()


@pytest.fixture
def processor():
    return PaymentProcessorStub()


@pytest.fixture
def payable_shop(store):
    shop = Shop(
        id=str(uuid.uuid4()),
        owner_id="owner-1",
        name="Corner Beans",
        merchant_account="acct_test",
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
    )
    return store.add_shop(shop)


@pytest.fixture
def make_item(store, payable_shop):
    def _make(price="5.00", stock=None, shop=None, name="Latte"):
        item = Item(
            id=str(uuid.uuid4()),
            shop_id=(shop or payable_shop).id,
            name=name,
            price=Decimal(price),
            stock=stock or StockPolicy.tracked(10),
        )
        return store.add_item(item)

    return _make


@pytest.fixture
def make_order(store, payable_shop, clock):
    """Store an order directly in ``status``; placed unless still pending payment."""

    def _make(status=OrderStatus.PENDING, customer_id="cust-1", shop=None, total="10.83"):
        now = clock()
        order = Order(
            id=str(uuid.uuid4()),
            shop_id=(shop or payable_shop).id,
            customer_id=customer_id,
            lines=[OrderLine(item_id=str(uuid.uuid4()), name="Latte", unit_price=Decimal("10.00"), quantity=1)],
            subtotal=Decimal("10.00"),
            tax=Decimal("0.83"),
            total=Decimal(total),
            currency="usd",
            amount_minor=1083,
            application_fee_minor=54,
            payment_ref=f"auth_{uuid.uuid4().hex}",
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=15),
            status=status,
            placed_at=None if status is OrderStatus.PENDING_PAYMENT else now,
        )
        store.add_order(order)
        return order

    return _make


@pytest.fixture
def auth_header():
    """Return Django test-client kwargs carrying a bearer token for ``user_id``."""
    from apps.orders.identity import JwtIdentityProvider

    provider = JwtIdentityProvider(TEST_JWT_SECRET)

    def _header(user_id):
        return {"HTTP_AUTHORIZATION": f"Bearer {provider.issue_token(user_id)}"}

    return _header


@pytest.fixture
def db_shop(db):
    """A payable shop row owned by ``owner-1``."""
    from apps.orders.models import ShopModel

    return ShopModel.objects.create(
        owner_id="owner-1",
        name="Corner Beans",
        merchant_account="acct_test",
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
    )


@pytest.fixture
def db_item(db_shop):
    from apps.orders.models import ItemModel

    def _make(price="10.00", stock_count=10, policy="tracked", shop=None, name="Latte"):
        return ItemModel.objects.create(
            shop=shop or db_shop,
            name=name,
            price=Decimal(price),
            stock_policy=policy,
            stock_count=stock_count,
        )

    return _make
