# tests/conftest.py
from datetime import datetime, timedelta, timezone

import pytest
from flask_login import FlaskLoginClient

from planguard import create_app
from planguard.extensions import User
from planguard.services.billing import BillingEventProcessor
from planguard.services.gate import CapabilityGate
from planguard.services.models import BillingEvent, EventType
from planguard.services.policy import ProductionPolicy
from planguard.services.store import MemoryPlanStore
from planguard.services.usage import UsageCounterService

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + timedelta(**kw)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryPlanStore()


@pytest.fixture
def usage(store, clock):
    return UsageCounterService(store, clock=clock, backoff=0, sleep=lambda s: None)


@pytest.fixture
def processor(store, clock):
    return BillingEventProcessor(store, clock=clock)


@pytest.fixture
def gate(store, usage, clock):
    return CapabilityGate(store, usage, ProductionPolicy(), clock)


@pytest.fixture
def app(store, clock):
    app = create_app("test", clock=clock, store=store)
    app.test_client_class = FlaskLoginClient
    return app


@pytest.fixture
def client(app):
    with app.test_client() as c:
        yield c


@pytest.fixture
def user_client(app):
    with app.test_client(user=User("acct-1")) as c:
        yield c


_seq = {"n": 0}


def make_event(event_type, account="acct-1", **kw):
    """BillingEvent with a fresh provider event id unless one is given."""
    _seq["n"] += 1
    kw.setdefault("provider_event_id", f"evt_{_seq['n']}")
    return BillingEvent(event_type=EventType(event_type), account_ref=account, **kw)


@pytest.fixture
def buy(processor, clock):
    """Activate a plan for an account through a paid order."""
    def _buy(tier, account="acct-1", order_ref=None, **kw):
        order_ref = order_ref or f"ord_{account}_{tier}_{_seq['n']}"
        return processor.process(
            make_event("order_paid", account, tier_hint=tier, order_ref=order_ref, **kw),
            clock(),
        )
    return _buy
