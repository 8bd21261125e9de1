"""Pytest configuration for tests."""

import os
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

import pytest

# app.main builds its engine at import time; keep tests off the real database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from app.commands import OrderCommandHandler  # noqa: E402
from app.models import Product  # noqa: E402
from app.queries import OrderQueries  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeIdentityVerifier,
    InMemoryOrderRepository,
    InMemoryProductRepository,
    InMemoryRoleRepository,
    RecordingPublisher,
)

TOKENS = {
    "buyer-token": "buyer-1",
    "other-buyer-token": "buyer-2",
    "seller-token": "seller-1",
    "admin-token": "admin-1",
}

FIXED_NOW = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)


# Force anyio to use only asyncio backend (not trio)
@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def identity():
    return FakeIdentityVerifier(dict(TOKENS))


@pytest.fixture
def products():
    repo = InMemoryProductRepository()
    repo.add(Product(
        id="prod-1",
        name="Engineering Mathematics Textbook",
        price=Decimal("500"),
        is_available=True,
        seller_id="seller-1",
    ))
    return repo


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def roles():
    return InMemoryRoleRepository({("admin-1", "admin")})


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def commands(identity, products, orders, roles, publisher):
    receipts = count(1)
    return OrderCommandHandler(
        identity=identity,
        products=products,
        orders=orders,
        roles=roles,
        publisher=publisher,
        clock=lambda: FIXED_NOW,
        receipt_numbers=lambda now: f"RCP-{now:%Y%m%d}-{next(receipts):08X}",
    )


@pytest.fixture
def queries(identity, orders, roles):
    return OrderQueries(identity=identity, orders=orders, roles=roles)
