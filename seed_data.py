"""Populate a local database with categories, books, offers and coupons."""
import logging
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import delete

from bookstore.db import SessionLocal, engine
from bookstore.models import (
    Base, Book, CartItem, Category, CategoryOffer, Coupon, Order, OrderItem, ProductOffer, UserActiveCoupon,
    UserCoupon, Wallet, WalletTransaction,
)
from bookstore.money import utcnow

logger = logging.getLogger(__name__)

# Children before parents because of foreign keys
TABLES = [WalletTransaction, Wallet, OrderItem, Order, CartItem, UserCoupon, UserActiveCoupon, Coupon,
          ProductOffer, CategoryOffer, Book, Category]


def seed_data(session=None):
    """Reset the catalogue and return a summary of what was created."""
    own_session = session is None
    if own_session:
        Base.metadata.create_all(bind=engine)
        session = SessionLocal()

    now = utcnow()
    try:
        if session.query(Category).count() > 0:
            logger.info("Data already present, clearing tables")
            for model in TABLES:
                session.execute(delete(model))
            session.commit()
            session.expunge_all()

        fiction = Category(name="Fiction", return_window=7)
        science = Category(name="Science", return_window=14)
        kids = Category(name="Children", return_window=3)
        session.add_all([fiction, science, kids])
        session.flush()

        books = [
            Book(title="The Long Way Home", price=Decimal("250.00"), stock=20, category_id=fiction.id),
            Book(title="Quiet Rivers", price=Decimal("180.00"), stock=8, category_id=fiction.id),
            Book(title="A Brief History of Stars", price=Decimal("420.00"), stock=5, category_id=science.id),
            Book(title="Molecules for Everyone", price=Decimal("300.00"), stock=0, category_id=science.id),
            Book(title="The Busy Little Fox", price=Decimal("120.00"), stock=30, category_id=kids.id),
        ]
        session.add_all(books)
        session.flush()

        session.add_all([
            ProductOffer(book_id=books[0].id, discount_percent=Decimal("10"),
                         start_date=now - timedelta(days=1), end_date=now + timedelta(days=30)),
            CategoryOffer(category_id=science.id, discount_percent=Decimal("5"),
                          start_date=now - timedelta(days=1), end_date=now + timedelta(days=30)),
        ])

        coupons = [
            Coupon(code="SAVE10", type="percent", value=Decimal("10"), min_order_value=Decimal("100"),
                   max_discount=Decimal("50"), expiry=now + timedelta(days=90), usage_limit=100),
            Coupon(code="FLAT50", type="flat", value=Decimal("50"), min_order_value=Decimal("300"),
                   max_discount=Decimal("0"), expiry=now + timedelta(days=30), usage_limit=10),
            Coupon(code="ONETIME", type="flat", value=Decimal("20"), min_order_value=Decimal("0"),
                   max_discount=Decimal("0"), expiry=now + timedelta(days=30), usage_limit=1),
            Coupon(code="EXPIRED", type="flat", value=Decimal("30"), min_order_value=Decimal("0"),
                   max_discount=Decimal("0"), expiry=now - timedelta(days=1), usage_limit=5),
        ]
        session.add_all(coupons)
        session.commit()

        summary = {"categories": 3, "books": len(books), "offers": 2, "coupons": len(coupons)}
        logger.info(f"Seeded {summary}")
        return summary
    except Exception:
        session.rollback()
        logger.error("Seeding failed, rolled back", exc_info=True)
        raise
    finally:
        if own_session:
            session.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    print(seed_data())
    print("\nRun the API: uvicorn bookstore.main:app --reload")
