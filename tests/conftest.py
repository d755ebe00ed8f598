import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dispatch.context import RequestContext
from dispatch.main import create_app
from dispatch.settings import DispatchSettings
from dispatch.store import DispatchStore, store


@pytest.fixture(autouse=True)
def reset_store():
    store.reset()
    yield
    store.reset()


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_app())


@pytest.fixture
def fresh_store() -> DispatchStore:
    return DispatchStore(settings=DispatchSettings(recommendation_lookup_delay_ms=0))


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(tenant_id="tenant_a", user_id="dispatcher_1", trace_id="trace_test")


def make_vendor(s: DispatchStore, ctx: RequestContext, **overrides) -> dict:
    payload = {
        "name": "Acme Plumbing",
        "service_area": "North",
        "specializations": ["plumbing"],
        "capacity_limit": 2,
        "rating": 4.5,
        "is_active": True,
    }
    payload.update(overrides)
    return s.create_vendor(ctx, payload)


def make_job(s: DispatchStore, ctx: RequestContext, **overrides) -> dict:
    payload = {
        "title": "Leaking kitchen sink",
        "description": "Water under the cabinet",
        "customer_name": "Dana Reyes",
        "service_address": "12 Elm St",
        "service_type": "plumbing",
        "priority": "high",
    }
    payload.update(overrides)
    return s.create_job(ctx, payload)
