"""Pytest configuration and fixtures."""
import os
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from testcontainers.postgres import PostgresContainer

from bookstore.db import get_db
from bookstore.models import Base, Book, Category, Coupon, OrderStatus
from bookstore.money import utcnow
from bookstore.schemas import OrderStatusPatch
from bookstore.services.cart import CartService
from bookstore.services.coupons import CouponService
from bookstore.services.orders import OrderService

# SQLite by default; TEST_WITH_POSTGRES=1 runs the suite against a real PostgreSQL container
USE_POSTGRES = os.getenv("TEST_WITH_POSTGRES") == "1"


@pytest.fixture(scope="session")
def database_url():
    """Get database URL, starting a PostgreSQL container when requested."""
    if not USE_POSTGRES:
        yield "sqlite://"
        return
    with PostgresContainer("postgres:16") as postgres:
        yield postgres.get_connection_url()


@pytest.fixture(scope="session")
def engine(database_url):
    """Create SQLAlchemy engine."""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(database_url)


@pytest.fixture
def db_session(engine):
    """Create a new database session for a test."""
    # Fresh schema for every test
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    try:
        yield session
        session.commit()
    finally:
        session.close()


@pytest.fixture
def setup_test_data(db_session):
    """Categories, books and coupons shared by the tests."""
    now = utcnow()

    fiction = Category(name="Fiction", return_window=7)
    science = Category(name="Science", return_window=14)
    hidden = Category(name="Hidden", blocked=True)
    db_session.add_all([fiction, science, hidden])
    db_session.flush()

    novel = Book(title="Novel", price=Decimal("100.00"), stock=10, category_id=fiction.id)
    atlas = Book(title="Atlas", price=Decimal("200.00"), stock=5, category_id=science.id)
    poems = Book(title="Poems", price=Decimal("50.00"), stock=0, category_id=fiction.id)
    secret = Book(title="Secret", price=Decimal("80.00"), stock=5, category_id=hidden.id)
    db_session.add_all([novel, atlas, poems, secret])

    expiry = now + timedelta(days=30)
    coupons = {
        "SAVE10": Coupon(code="SAVE10", type="percent", value=Decimal("10"), min_order_value=Decimal("100"),
                         max_discount=Decimal("50"), expiry=expiry, usage_limit=100),
        "FLAT50": Coupon(code="FLAT50", type="flat", value=Decimal("50"), min_order_value=Decimal("0"),
                         max_discount=Decimal("0"), expiry=expiry, usage_limit=10),
        "BIG500": Coupon(code="BIG500", type="percent", value=Decimal("10"), min_order_value=Decimal("500"),
                         max_discount=Decimal("100"), expiry=expiry, usage_limit=10),
        "USEDUP": Coupon(code="USEDUP", type="flat", value=Decimal("20"), min_order_value=Decimal("0"),
                         max_discount=Decimal("0"), expiry=expiry, usage_limit=1, used_count=1),
        "EXPIRED": Coupon(code="EXPIRED", type="flat", value=Decimal("20"), min_order_value=Decimal("0"),
                          max_discount=Decimal("0"), expiry=now - timedelta(days=1), usage_limit=5),
        "HUGE": Coupon(code="HUGE", type="flat", value=Decimal("1000"), min_order_value=Decimal("0"),
                       max_discount=Decimal("0"), expiry=expiry, usage_limit=5),
    }
    db_session.add_all(coupons.values())

    db_session.commit()

    return {
        "categories": {"fiction": fiction, "science": science, "hidden": hidden},
        "books": {"novel": novel, "atlas": atlas, "poems": poems, "secret": secret},
        "coupons": coupons,
    }


@pytest.fixture
def place_order(db_session):
    """Fill a cart, optionally apply a coupon, and check out."""
    def _place(user_id, lines, payment_method="online", coupon=None, now=None, delivery_charge=0):
        cart = CartService(db_session)
        for book_id, qty in lines:
            cart.add_item(user_id, book_id, qty)
        if coupon:
            CouponService(db_session).apply(user_id, coupon, now=now)
        return OrderService(db_session).place_order(user_id, payment_method, delivery_charge, now=now).order
    return _place


@pytest.fixture
def deliver(db_session):
    """Walk an order through fulfilment up to Delivered."""
    def _deliver(order_id, now=None):
        service = OrderService(db_session)
        for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY,
                       OrderStatus.DELIVERED):
            service.update_status(order_id, OrderStatusPatch(status=status), admin_id=99, now=now)
    return _deliver


@pytest.fixture
def client(db_session):
    from bookstore.main import app

    app.dependency_overrides[get_db] = lambda: db_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
