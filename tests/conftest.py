from datetime import datetime, timedelta, timezone

import pytest

from config import Settings
from db import MemoryStore
from engine import PriceEngine
from errors import GenerationError, GenerationErrorKind
from models import PricePoint, Product, ProductCategory, lookup_retailer
from notifier import MemorySink

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeCapability:
    """Returns canned text per cache key, or raises a canned error."""

    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.calls = []

    def generate(self, prompt, context):
        key = context.get("key")
        self.calls.append(key)
        if self.error is not None:
            raise self.error
        for prefix, text in self.responses.items():
            if key.startswith(prefix):
                return text
        raise GenerationError(GenerationErrorKind.INVALID_RESPONSE, f"no canned response for {key}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def settings():
    return Settings(scheduler_enabled=False)


@pytest.fixture
def engine(store, sink, settings, clock):
    e = PriceEngine(store, sink=sink, settings=settings, clock=clock)
    yield e
    e.stop()


@pytest.fixture
def make_point():
    def _make(price, at, retailer="amazon", shipping=None, point_id=None, in_stock=True):
        extra = {"point_id": point_id} if point_id else {}
        return PricePoint(lookup_retailer(retailer), price, at, in_stock=in_stock,
                          shipping_cost=shipping, **extra)
    return _make


@pytest.fixture
def headphones():
    return Product("p-1", "Noise Cancelling Headphones", ProductCategory.ELECTRONICS, brand="Acme")
