"""Pytest bootstrap configuration.

Environment is pinned before any module that reads application settings is
imported; the fixtures below wire the ledger services to in-memory stores,
a fixed clock and a scripted payment provider.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RECONCILIATION__ENABLED", "false")

from datetime import timedelta
from decimal import Decimal

import pytest

from application.ports.payment_provider import ProviderRegistry
from application.services.critical_event_service import CriticalEventRecorder
from application.services.order_financials_service import OrderFinancialsService
from application.services.reconciliation import ReconciliationScheduler
from tests.support import (
    FakeClock,
    FakeProviderAdapter,
    InMemoryStore,
    InMemoryUnitOfWork,
    RecordingFanout,
)


# ---- fixtures ----

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = InMemoryStore()
    s.customers["customer-1"] = Decimal("0")
    return s


@pytest.fixture
def uow_factory(store):
    return lambda: InMemoryUnitOfWork(store)


@pytest.fixture
def fanout():
    return RecordingFanout()


@pytest.fixture
def adapter():
    return FakeProviderAdapter()


@pytest.fixture
def registry(adapter):
    return ProviderRegistry([adapter])


@pytest.fixture
def critical_events(uow_factory, clock):
    return CriticalEventRecorder(uow_factory, clock)


@pytest.fixture
def service(uow_factory, registry, fanout, critical_events, clock):
    return OrderFinancialsService(
        uow_factory,
        registry=registry,
        fanout=fanout,
        critical_events=critical_events,
        clock=clock,
    )


@pytest.fixture
def scheduler(uow_factory, registry, fanout, critical_events, clock):
    return ReconciliationScheduler(
        uow_factory,
        registry=registry,
        fanout=fanout,
        critical_events=critical_events,
        expiration=timedelta(minutes=30),
        clock=clock,
        interval=0.01,
    )
