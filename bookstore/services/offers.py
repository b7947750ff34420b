import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from bookstore.db import atomic
from bookstore.errors import NotFoundError, StateConflictError, ValidationError
from bookstore.models import Book, Category, CategoryOffer, ProductOffer
from bookstore.money import D, HUNDRED, ZERO, as_utc, fmt, utcnow
from bookstore.schemas import OfferPatch

logger = logging.getLogger(__name__)

OFFER_KINDS = {
    "product": (ProductOffer, "book_id"),
    "category": (CategoryOffer, "category_id"),
}


@dataclass(frozen=True)
class OfferPercents:
    product_percent: Decimal = ZERO
    category_percent: Decimal = ZERO


def offer_as_dict(offer) -> dict:
    return {
        "id": offer.id,
        "target_id": offer.book_id if isinstance(offer, ProductOffer) else offer.category_id,
        "discount_percent": fmt(offer.discount_percent),
        "start_date": offer.start_date.isoformat(),
        "end_date": offer.end_date.isoformat(),
        "active": offer.active,
    }


class OfferResolver:
    """Finds the product-level and category-level offer in force for a book.

    An offer is in force when it is flagged active and ``start_date <= now <
    end_date``. Creation refuses a second live offer per target, but the check
    is not atomic, so overlapping rows can exist; the winner is then the
    highest percentage, and among equal percentages the lowest id.
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, book_id: int, category_id: int, now: Optional[datetime] = None) -> OfferPercents:
        now = now or utcnow()
        product = self._winner(ProductOffer, ProductOffer.book_id == book_id, now)
        category = self._winner(CategoryOffer, CategoryOffer.category_id == category_id, now)
        return OfferPercents(
            product_percent=D(product.discount_percent) if product else ZERO,
            category_percent=D(category.discount_percent) if category else ZERO,
        )

    def _winner(self, model, target_clause, now: datetime):
        return (
            self.db.query(model)
            .filter(target_clause, model.active.is_(True), model.start_date <= now, model.end_date > now)
            .order_by(model.discount_percent.desc(), model.id.asc())
            .first()
        )


class OfferService:
    def __init__(self, db: Session):
        self.db = db

    def create_product_offer(self, book_id: int, discount_percent, start_date: datetime, end_date: datetime,
                             now: Optional[datetime] = None) -> ProductOffer:
        with atomic(self.db):
            if not self.db.get(Book, book_id):
                raise NotFoundError(f"Book {book_id} not found")
            percent = self._validate(discount_percent, start_date, end_date, now)
            self._ensure_no_live_offer(ProductOffer, ProductOffer.book_id == book_id, f"book {book_id}", now)
            offer = ProductOffer(book_id=book_id, discount_percent=percent, start_date=start_date,
                                 end_date=end_date, active=True)
            self.db.add(offer)
            self.db.flush()
        logger.info(f"Product offer {offer.id} created: book {book_id}, {percent}%")
        return offer

    def create_category_offer(self, category_id: int, discount_percent, start_date: datetime, end_date: datetime,
                              now: Optional[datetime] = None) -> CategoryOffer:
        with atomic(self.db):
            if not self.db.get(Category, category_id):
                raise NotFoundError(f"Category {category_id} not found")
            percent = self._validate(discount_percent, start_date, end_date, now)
            self._ensure_no_live_offer(CategoryOffer, CategoryOffer.category_id == category_id,
                                       f"category {category_id}", now)
            offer = CategoryOffer(category_id=category_id, discount_percent=percent, start_date=start_date,
                                  end_date=end_date, active=True)
            self.db.add(offer)
            self.db.flush()
        logger.info(f"Category offer {offer.id} created: category {category_id}, {percent}%")
        return offer

    def list_offers(self, kind: str, active_only: bool = False) -> list:
        model, _ = self._kind(kind)
        query = self.db.query(model)
        if active_only:
            query = query.filter(model.active.is_(True))
        return query.order_by(model.id.desc()).all()

    def update_offer(self, kind: str, offer_id: int, patch: OfferPatch, now: Optional[datetime] = None):
        """Change the percentage, window or active flag of an offer; the target is fixed."""
        now = now or utcnow()
        changes = patch.model_dump(exclude_unset=True)
        model, target = self._kind(kind)
        with atomic(self.db):
            offer = self._get(model, offer_id)
            percent = D(offer.discount_percent)
            if {"discount_percent", "start_date", "end_date"} & changes.keys():
                percent = self._validate(changes.get("discount_percent", offer.discount_percent),
                                         changes.get("start_date", offer.start_date),
                                         changes.get("end_date", offer.end_date), now)
            active = changes.get("active", offer.active)
            if active and not offer.active:
                target_id = getattr(offer, target)
                self._ensure_no_live_offer(model, getattr(model, target) == target_id,
                                           f"{kind} {target_id}", now, exclude_id=offer.id)

            offer.discount_percent = percent
            offer.start_date = changes.get("start_date", offer.start_date)
            offer.end_date = changes.get("end_date", offer.end_date)
            offer.active = active
            self.db.flush()
        logger.info(f"{kind.capitalize()} offer {offer_id} updated: {', '.join(sorted(changes)) or 'no changes'}")
        return offer

    def deactivate_offer(self, kind: str, offer_id: int):
        model, _ = self._kind(kind)
        with atomic(self.db):
            offer = self._get(model, offer_id)
            offer.active = False
            self.db.flush()
        logger.info(f"{kind.capitalize()} offer {offer_id} deactivated")
        return offer

    def delete_offer(self, kind: str, offer_id: int) -> None:
        model, _ = self._kind(kind)
        with atomic(self.db):
            self.db.delete(self._get(model, offer_id))
            self.db.flush()
        logger.info(f"{kind.capitalize()} offer {offer_id} deleted")

    @staticmethod
    def _kind(kind: str):
        if kind not in OFFER_KINDS:
            raise ValidationError("Offer kind must be 'product' or 'category'")
        return OFFER_KINDS[kind]

    def _get(self, model, offer_id: int):
        offer = self.db.query(model).filter(model.id == offer_id).with_for_update().first()
        if offer is None:
            raise NotFoundError(f"Offer {offer_id} not found", state={"offer_id": offer_id})
        return offer

    @staticmethod
    def _validate(discount_percent, start_date: datetime, end_date: datetime, now: Optional[datetime]) -> Decimal:
        now = now or utcnow()
        percent = D(discount_percent)
        if percent <= ZERO or percent > HUNDRED:
            raise ValidationError("Discount percent must be greater than 0 and at most 100")
        if as_utc(end_date) <= as_utc(start_date):
            raise ValidationError("End date must be after start date")
        if as_utc(end_date) < now:
            raise ValidationError("End date cannot be in the past")
        return percent

    def _ensure_no_live_offer(self, model, target_clause, label: str, now: Optional[datetime],
                              exclude_id: Optional[int] = None) -> None:
        now = now or utcnow()
        query = self.db.query(model).filter(target_clause, model.active.is_(True), model.end_date > now)
        if exclude_id is not None:
            query = query.filter(model.id != exclude_id)
        existing = query.first()
        if existing:
            logger.warning(f"Active offer {existing.id} already exists for {label}")
            raise StateConflictError(f"An active offer already exists for this {label.split()[0]}",
                                     state={"offer_id": existing.id})
