"""Service provider helpers for wiring the order lifecycle components.

Each factory returns a process-wide instance built from Django settings,
so views, management commands and webhooks share one ledger, one state
machine, one change feed and one payment processor per process.
``PAYMENT_BACKEND`` selects the processor:

- ``stub``: in-process ``PaymentProcessorStub`` (tests, local development)
- ``http``: ``HttpPaymentProcessor`` against the sandbox service
- ``stripe``: ``StripePaymentProcessor``

Tests that change settings call ``reset_providers()`` to drop the cached
instances.
"""

from datetime import timedelta
from decimal import Decimal
from functools import lru_cache

from django.conf import settings

from .adapters import PaymentProcessorStub
from .coordinator import PaymentCoordinator
from .domain import DataStore, PaymentProcessor
from .http_adapters import HttpPaymentProcessor
from .identity import JwtIdentityProvider
from .ledger import InventoryLedger
from .notifier import FulfillmentNotifier, OrderChangeFeed
from .repository import DjangoDataStore
from .state_machine import OrderStateMachine
from .stripe_adapter import StripePaymentProcessor


@lru_cache(maxsize=None)
def get_store() -> DataStore:
    return DjangoDataStore()


@lru_cache(maxsize=None)
def get_processor() -> PaymentProcessor:
    """Return the payment processor selected by ``settings.PAYMENT_BACKEND``.

    Raises:
        ValueError: Unknown backend name.
    """
    backend = getattr(settings, "PAYMENT_BACKEND", "stub")
    if backend == "stub":
        return PaymentProcessorStub()
    if backend == "http":
        return HttpPaymentProcessor()
    if backend == "stripe":
        return StripePaymentProcessor(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        )
    raise ValueError(f"unknown PAYMENT_BACKEND {backend!r}")


@lru_cache(maxsize=None)
def get_feed() -> OrderChangeFeed:
    return OrderChangeFeed()


@lru_cache(maxsize=None)
def get_ledger() -> InventoryLedger:
    return InventoryLedger(
        get_store(),
        ttl=timedelta(seconds=getattr(settings, "RESERVATION_TTL_SECONDS", 900)),
        max_retries=getattr(settings, "RESERVATION_MAX_RETRIES", 5),
    )


@lru_cache(maxsize=None)
def get_state_machine() -> OrderStateMachine:
    return OrderStateMachine(get_store(), on_change=get_feed().publish)


@lru_cache(maxsize=None)
def get_coordinator() -> PaymentCoordinator:
    return PaymentCoordinator(
        store=get_store(),
        ledger=get_ledger(),
        state_machine=get_state_machine(),
        processor=get_processor(),
        tax_rate=Decimal(str(getattr(settings, "TAX_RATE", "0.0825"))),
        application_fee_rate=Decimal(str(getattr(settings, "APPLICATION_FEE_RATE", "0.05"))),
        currency=getattr(settings, "ORDER_CURRENCY", "usd"),
    )


@lru_cache(maxsize=None)
def get_notifier() -> FulfillmentNotifier:
    return FulfillmentNotifier(
        get_store(),
        get_state_machine(),
        feed=get_feed(),
        poll_interval=getattr(settings, "ORDER_FEED_POLL_SECONDS", 10.0),
        admin_ids=getattr(settings, "ORDER_ADMIN_IDS", ()),
    )


@lru_cache(maxsize=None)
def get_identity() -> JwtIdentityProvider:
    return JwtIdentityProvider(
        secret=settings.IDENTITY_JWT_SECRET,
        algorithms=getattr(settings, "IDENTITY_JWT_ALGORITHMS", ("HS256",)),
        audience=getattr(settings, "IDENTITY_JWT_AUDIENCE", None),
    )


_FACTORIES = (
    get_store,
    get_processor,
    get_feed,
    get_ledger,
    get_state_machine,
    get_coordinator,
    get_notifier,
    get_identity,
)


def reset_providers() -> None:
    for factory in _FACTORIES:
        factory.cache_clear()
