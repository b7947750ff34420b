import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session, joinedload

from bookstore.models import Book, CartItem
from bookstore.money import D, HUNDRED, ZERO, fmt, round_money, utcnow
from bookstore.services.offers import OfferResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceBreakdown:
    """Monetary summary returned by every cart/order operation.

    Values are kept unrounded; ``as_dict`` is the only place they are
    rendered, as fixed 2-decimal strings.
    """

    subtotal: Decimal = ZERO
    product_discount: Decimal = ZERO
    category_discount: Decimal = ZERO
    coupon_discount: Decimal = ZERO

    @property
    def total_discount(self) -> Decimal:
        return self.product_discount + self.category_discount + self.coupon_discount

    @property
    def final_total(self) -> Decimal:
        return max(ZERO, self.subtotal - self.total_discount)

    def as_dict(self) -> dict[str, str]:
        # Each figure is rounded on its own, final_total included
        return {
            "subtotal": fmt(self.subtotal),
            "product_discount": fmt(self.product_discount),
            "category_discount": fmt(self.category_discount),
            "coupon_discount": fmt(self.coupon_discount),
            "total_discount": fmt(self.total_discount),
            "final_total": fmt(self.final_total),
        }


@dataclass(frozen=True)
class LinePricing:
    book_id: int
    title: str
    quantity: int
    unit_price: Decimal
    product_offer_percent: Decimal
    category_offer_percent: Decimal
    subtotal: Decimal
    product_discount: Decimal
    category_discount: Decimal
    can_checkout: bool = True
    unavailable_reason: Optional[str] = None

    @property
    def discount(self) -> Decimal:
        return self.product_discount + self.category_discount

    @property
    def total(self) -> Decimal:
        return self.subtotal - self.discount

    def as_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "quantity": self.quantity,
            "unit_price": fmt(self.unit_price),
            "product_offer_percent": fmt(self.product_offer_percent),
            "category_offer_percent": fmt(self.category_offer_percent),
            "subtotal": fmt(self.subtotal),
            "product_discount": fmt(self.product_discount),
            "category_discount": fmt(self.category_discount),
            "total": fmt(self.total),
            "can_checkout": self.can_checkout,
            "unavailable_reason": self.unavailable_reason,
        }


@dataclass(frozen=True)
class CartPricing:
    lines: list[LinePricing] = field(default_factory=list)

    @property
    def subtotal(self) -> Decimal:
        return sum((line.subtotal for line in self.lines), ZERO)

    @property
    def product_discount(self) -> Decimal:
        return sum((line.product_discount for line in self.lines), ZERO)

    @property
    def category_discount(self) -> Decimal:
        return sum((line.category_discount for line in self.lines), ZERO)

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def can_checkout(self) -> bool:
        return bool(self.lines) and all(line.can_checkout for line in self.lines)

    def breakdown(self, coupon_discount: Decimal = ZERO) -> PriceBreakdown:
        return PriceBreakdown(
            subtotal=self.subtotal,
            product_discount=self.product_discount,
            category_discount=self.category_discount,
            coupon_discount=coupon_discount,
        )


def availability(book: Book, quantity: int) -> Optional[str]:
    """Why ``quantity`` copies of ``book`` cannot be checked out, or None."""
    if not book.is_active:
        return "Book is not available"
    if book.blocked:
        return "Book is blocked"
    if book.category is not None and book.category.blocked:
        return "Category is blocked"
    if book.stock < quantity:
        return "Insufficient stock" if book.stock > 0 else "Out of stock"
    return None


class PricingCalculator:
    def __init__(self, db: Session, resolver: Optional[OfferResolver] = None):
        self.db = db
        self.resolver = resolver or OfferResolver(db)

    def price_line(self, book: Book, quantity: int, now: datetime) -> LinePricing:
        offers = self.resolver.resolve(book.id, book.category_id, now)
        price = D(book.price)
        qty = Decimal(quantity)
        reason = availability(book, quantity)
        return LinePricing(
            book_id=book.id,
            title=book.title,
            quantity=quantity,
            unit_price=price,
            product_offer_percent=offers.product_percent,
            category_offer_percent=offers.category_percent,
            subtotal=price * qty,
            product_discount=price * offers.product_percent / HUNDRED * qty,
            category_discount=price * offers.category_percent / HUNDRED * qty,
            can_checkout=reason is None,
            unavailable_reason=reason,
        )

    def price_lines(self, lines: Iterable[tuple[Book, int]], now: Optional[datetime] = None) -> CartPricing:
        now = now or utcnow()
        return CartPricing(lines=[self.price_line(book, qty, now) for book, qty in lines])

    def price_cart(self, user_id: int, now: Optional[datetime] = None) -> CartPricing:
        rows = (
            self.db.query(CartItem)
            .options(joinedload(CartItem.book).joinedload(Book.category))
            .filter(CartItem.user_id == user_id)
            .order_by(CartItem.id)
            .all()
        )
        pricing = self.price_lines(((row.book, row.quantity) for row in rows), now)
        logger.info(f"Priced cart for user {user_id}: {len(pricing.lines)} lines, "
                    f"subtotal {round_money(pricing.subtotal)}")
        return pricing
