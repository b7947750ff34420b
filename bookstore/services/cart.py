import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from bookstore import settings
from bookstore.db import atomic
from bookstore.errors import InsufficientStockError, NotFoundError, ValidationError
from bookstore.models import Book, CartItem
from bookstore.money import ZERO, fmt, utcnow
from bookstore.services.coupons import CouponService
from bookstore.services.pricing import CartPricing, PriceBreakdown, PricingCalculator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartView:
    pricing: CartPricing
    breakdown: PriceBreakdown
    coupon_code: Optional[str] = None
    discount_per_unit: Decimal = ZERO

    def as_dict(self) -> dict:
        return {
            "items": [line.as_dict() for line in self.pricing.lines],
            "total_quantity": self.pricing.total_quantity,
            "can_checkout": self.pricing.can_checkout,
            "coupon_code": self.coupon_code or "",
            "discount_per_unit": fmt(self.discount_per_unit),
            **self.breakdown.as_dict(),
        }


class CartService:
    def __init__(self, db: Session):
        self.db = db
        self.pricing = PricingCalculator(db)
        self.coupons = CouponService(db, self.pricing)

    def add_item(self, user_id: int, book_id: int, quantity: int = 1) -> CartItem:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if quantity > settings.MAX_CART_QUANTITY:
            raise ValidationError(f"Cannot add more than {settings.MAX_CART_QUANTITY} copies of the same book")
        with atomic(self.db):
            book = self.db.get(Book, book_id)
            if not book:
                raise NotFoundError(f"Book {book_id} not found")
            if not book.is_active or book.blocked or (book.category and book.category.blocked):
                raise ValidationError("Book is not available")

            row = self._row(user_id, book_id)
            total = quantity + (row.quantity if row else 0)
            self._check_quantity(book, total)

            if row:
                row.quantity = total
            else:
                row = CartItem(user_id=user_id, book_id=book_id, quantity=total)
                self.db.add(row)
            self.db.flush()
        logger.info(f"Cart of user {user_id}: book {book_id} quantity now {total}")
        return row

    def update_quantity(self, user_id: int, book_id: int, quantity: int) -> CartItem:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        with atomic(self.db):
            row = self._row(user_id, book_id)
            if not row:
                raise NotFoundError("Cart item not found")
            self._check_quantity(row.book, quantity)
            row.quantity = quantity
            self.db.flush()
        logger.info(f"Cart of user {user_id}: book {book_id} quantity set to {quantity}")
        return row

    def remove_item(self, user_id: int, book_id: int) -> None:
        with atomic(self.db):
            deleted = (
                self.db.query(CartItem)
                .filter(CartItem.user_id == user_id, CartItem.book_id == book_id)
                .delete()
            )
            if not deleted:
                raise NotFoundError("Cart item not found")
        logger.info(f"Cart of user {user_id}: book {book_id} removed")

    def clear(self, user_id: int) -> int:
        """Empty the cart inside the caller's transaction. Returns the number of rows removed."""
        removed = self.db.query(CartItem).filter(CartItem.user_id == user_id).delete()
        self.db.flush()
        return removed

    def get_cart(self, user_id: int, now: Optional[datetime] = None) -> CartView:
        now = now or utcnow()
        pricing = self.pricing.price_cart(user_id, now)
        coupon = self.coupons.active_coupon(user_id, pricing, now)
        if coupon is None:
            return CartView(pricing=pricing, breakdown=pricing.breakdown())
        discount = CouponService.compute_discount(coupon, pricing.subtotal)
        return CartView(
            pricing=pricing,
            breakdown=pricing.breakdown(discount),
            coupon_code=coupon.code,
            discount_per_unit=CouponService.discount_per_unit(discount, pricing.total_quantity),
        )

    def _row(self, user_id: int, book_id: int) -> Optional[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.user_id == user_id, CartItem.book_id == book_id)
            .first()
        )

    @staticmethod
    def _check_quantity(book: Book, quantity: int) -> None:
        if quantity > settings.MAX_CART_QUANTITY:
            raise ValidationError(f"Cannot add more than {settings.MAX_CART_QUANTITY} copies of the same book")
        if book.stock < quantity:
            raise InsufficientStockError(
                f"Only {book.stock} copies of this book are available",
                state={"book_id": book.id, "available": book.stock, "requested": quantity},
            )
