import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from bookstore.db import atomic
from bookstore.errors import (
    CouponAlreadyUsedError, CouponNotFoundError, MinOrderNotMetError, StateConflictError,
    UsageLimitExceededError, ValidationError,
)
from bookstore.models import Coupon, UserActiveCoupon, UserCoupon
from bookstore.money import D, HUNDRED, ZERO, as_utc, fmt, round_money, utcnow
from bookstore.schemas import CouponPatch
from bookstore.services.pricing import CartPricing, PriceBreakdown, PricingCalculator

logger = logging.getLogger(__name__)

COUPON_TYPES = ("flat", "percent")
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 10


@dataclass(frozen=True)
class CouponResult:
    breakdown: PriceBreakdown
    coupon_code: str = ""
    discount_per_unit: Decimal = ZERO

    def as_dict(self) -> dict:
        return {
            **self.breakdown.as_dict(),
            "coupon_code": self.coupon_code,
            "discount_per_unit": fmt(self.discount_per_unit),
        }


@dataclass(frozen=True)
class CouponPage:
    coupons: list[Coupon]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0

    def as_dict(self) -> dict:
        return {
            "coupons": [coupon_as_dict(c) for c in self.coupons],
            "pagination": {"total": self.total, "page": self.page, "limit": self.limit, "pages": self.pages},
        }


def coupon_as_dict(coupon: Coupon) -> dict:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "type": coupon.type,
        "value": fmt(coupon.value),
        "min_order_value": fmt(coupon.min_order_value),
        "max_discount": fmt(coupon.max_discount),
        "expiry": coupon.expiry.isoformat() if coupon.expiry else None,
        "usage_limit": coupon.usage_limit,
        "used_count": coupon.used_count,
        "active": coupon.active,
    }


class CouponService:
    """Single active coupon per user, layered on top of offer pricing.

    Applying only records the user's choice. The coupon is consumed
    (``used_count`` incremented, usage row written) when an order is placed.
    """

    def __init__(self, db: Session, pricing: Optional[PricingCalculator] = None):
        self.db = db
        self.pricing = pricing or PricingCalculator(db)

    # ----- admin -----

    def create_coupon(self, code: str, type: str, value, min_order_value, max_discount, expiry: datetime,
                      usage_limit: int, now: Optional[datetime] = None) -> Coupon:
        now = now or utcnow()
        code = (code or "").strip().upper()
        type = (type or "").strip().lower()
        value, min_order_value, max_discount = D(value), D(min_order_value), D(max_discount)

        if not code:
            raise ValidationError("Coupon code is required")
        self._check_terms(type, value, min_order_value, max_discount, usage_limit)
        if as_utc(expiry) <= now:
            raise ValidationError("Expiry date must be in the future")

        with atomic(self.db):
            if self.db.query(Coupon).filter(func.lower(Coupon.code) == code.lower()).first():
                raise StateConflictError("Coupon code already exists", state={"code": code})
            coupon = Coupon(code=code, type=type, value=value, min_order_value=min_order_value,
                            max_discount=max_discount, expiry=expiry, usage_limit=usage_limit,
                            used_count=0, active=True)
            self.db.add(coupon)
            self.db.flush()
        logger.info(f"Coupon {code} created ({type} {value}, limit {usage_limit})")
        return coupon

    def list_coupons(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> CouponPage:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            limit = DEFAULT_PAGE_SIZE
        page = max(page, 1)
        query = self.db.query(Coupon)
        total = query.count()
        rows = (
            query.order_by(Coupon.created_at.desc(), Coupon.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return CouponPage(coupons=rows, page=page, limit=limit, total=total)

    def update_coupon(self, coupon_id: int, patch: CouponPatch, now: Optional[datetime] = None) -> Coupon:
        """Change the terms of an existing coupon. The code and usage count are fixed."""
        now = now or utcnow()
        changes = patch.model_dump(exclude_unset=True)
        with atomic(self.db):
            coupon = self._get(coupon_id)
            type = changes.get("type", coupon.type)
            value = D(changes.get("value", coupon.value))
            min_order_value = D(changes.get("min_order_value", coupon.min_order_value))
            max_discount = D(changes.get("max_discount", coupon.max_discount))
            usage_limit = changes.get("usage_limit", coupon.usage_limit)
            self._check_terms(type, value, min_order_value, max_discount, usage_limit)
            if usage_limit < coupon.used_count:
                raise ValidationError("Usage limit cannot be below the number of uses so far",
                                      state={"used_count": coupon.used_count})
            if "expiry" in changes and as_utc(changes["expiry"]) <= now:
                raise ValidationError("Expiry date must be in the future")

            coupon.type = type
            coupon.value = value
            coupon.min_order_value = min_order_value
            coupon.max_discount = max_discount
            coupon.usage_limit = usage_limit
            if "expiry" in changes:
                coupon.expiry = changes["expiry"]
            if changes.get("active") is False:
                self._deactivate(coupon)
            elif changes.get("active"):
                coupon.active = True
            self.db.flush()
        logger.info(f"Coupon {coupon.code} updated: {', '.join(sorted(changes)) or 'no changes'}")
        return coupon

    def deactivate_coupon(self, coupon_id: int) -> Coupon:
        with atomic(self.db):
            coupon = self._get(coupon_id)
            self._deactivate(coupon)
            self.db.flush()
        logger.info(f"Coupon {coupon.code} deactivated")
        return coupon

    def delete_coupon(self, coupon_id: int) -> None:
        """Remove a coupon nobody has used yet; used coupons can only be deactivated."""
        with atomic(self.db):
            coupon = self._get(coupon_id)
            if coupon.used_count > 0:
                raise StateConflictError("Cannot delete a coupon that has been used",
                                         state={"code": coupon.code, "used_count": coupon.used_count})
            code = coupon.code
            self.db.query(UserActiveCoupon).filter(UserActiveCoupon.coupon_id == coupon.id).delete()
            self.db.delete(coupon)
            self.db.flush()
        logger.info(f"Coupon {code} deleted")

    # ----- user -----

    def apply(self, user_id: int, code: str, now: Optional[datetime] = None) -> CouponResult:
        now = now or utcnow()
        logger.info(f"Applying coupon {code!r} for user {user_id}")
        with atomic(self.db):
            coupon = self._find_usable(code, now)
            self._check_usage(user_id, coupon)
            pricing = self.pricing.price_cart(user_id, now)
            if not pricing.lines:
                raise ValidationError("Cart is empty")
            self._check_min_order(coupon, pricing)
            discount = self.compute_discount(coupon, pricing.subtotal)

            # Replace, never accumulate
            self.db.query(UserActiveCoupon).filter(UserActiveCoupon.user_id == user_id).delete()
            self.db.flush()
            self.db.add(UserActiveCoupon(user_id=user_id, coupon_id=coupon.id, code=coupon.code, applied_at=now))
            self.db.flush()

        result = CouponResult(
            breakdown=pricing.breakdown(discount),
            coupon_code=coupon.code,
            discount_per_unit=self.discount_per_unit(discount, pricing.total_quantity),
        )
        logger.info(f"Coupon {coupon.code} applied for user {user_id}, final total "
                    f"{round_money(result.breakdown.final_total)}")
        return result

    def remove(self, user_id: int, code: str, now: Optional[datetime] = None) -> CouponResult:
        now = now or utcnow()
        with atomic(self.db):
            coupon = self._by_code(code)
            if coupon is None:
                raise CouponNotFoundError("Invalid coupon", state={"code": code})
            deleted = (
                self.db.query(UserActiveCoupon)
                .filter(UserActiveCoupon.user_id == user_id, UserActiveCoupon.coupon_id == coupon.id)
                .delete()
            )
        if not deleted:
            logger.warning(f"Coupon {coupon.code} was not active for user {user_id}")
        pricing = self.pricing.price_cart(user_id, now)
        logger.info(f"Coupon {coupon.code} removed for user {user_id}")
        return CouponResult(breakdown=pricing.breakdown())

    # ----- shared rules -----

    def validate(self, user_id: int, coupon: Coupon, pricing: CartPricing) -> None:
        """Usage limit, then prior use by this user, then the minimum order value."""
        self._check_usage(user_id, coupon)
        self._check_min_order(coupon, pricing)

    def _check_usage(self, user_id: int, coupon: Coupon) -> None:
        if coupon.used_count >= coupon.usage_limit:
            logger.error(f"Coupon {coupon.code} usage limit reached")
            raise UsageLimitExceededError("Coupon usage limit reached",
                                          state={"used_count": coupon.used_count, "usage_limit": coupon.usage_limit})
        used = (
            self.db.query(UserCoupon)
            .filter(UserCoupon.user_id == user_id, UserCoupon.coupon_id == coupon.id)
            .first()
        )
        if used:
            logger.error(f"User {user_id} has already used coupon {coupon.code}")
            raise CouponAlreadyUsedError("You have already used this coupon", state={"code": coupon.code})

    @staticmethod
    def _check_min_order(coupon: Coupon, pricing: CartPricing) -> None:
        if pricing.subtotal < D(coupon.min_order_value):
            logger.error(f"Cart subtotal {round_money(pricing.subtotal)} below minimum "
                         f"{coupon.min_order_value} for coupon {coupon.code}")
            raise MinOrderNotMetError(
                "Cart total is less than minimum order value for this coupon",
                state={"subtotal": fmt(pricing.subtotal), "min_order_value": fmt(coupon.min_order_value)},
            )

    def active_coupon(self, user_id: int, pricing: CartPricing, now: datetime) -> Optional[Coupon]:
        """The user's applied coupon if it would still be accepted, else None."""
        row = self.db.query(UserActiveCoupon).filter(UserActiveCoupon.user_id == user_id).first()
        if row is None:
            return None
        coupon = row.coupon
        if not self._usable(coupon, now):
            return None
        try:
            self.validate(user_id, coupon, pricing)
        except StateConflictError:
            return None
        return coupon

    def require_active_coupon(self, user_id: int, pricing: CartPricing, now: datetime) -> Optional[Coupon]:
        """Like ``active_coupon`` but reports why an applied coupon no longer qualifies."""
        row = self.db.query(UserActiveCoupon).filter(UserActiveCoupon.user_id == user_id).first()
        if row is None:
            return None
        coupon = self._find_usable(row.code, now)
        self.validate(user_id, coupon, pricing)
        return coupon

    def consume(self, user_id: int, coupon: Coupon, now: datetime) -> None:
        """Record final use of ``coupon`` by ``user_id``. Caller owns the transaction."""
        updated = (
            self.db.query(Coupon)
            .filter(Coupon.id == coupon.id, Coupon.used_count < Coupon.usage_limit)
            .update({Coupon.used_count: Coupon.used_count + 1}, synchronize_session=False)
        )
        if not updated:
            raise UsageLimitExceededError("Coupon usage limit reached", state={"code": coupon.code})
        self.db.add(UserCoupon(user_id=user_id, coupon_id=coupon.id, used_at=now))
        self.db.query(UserActiveCoupon).filter(UserActiveCoupon.user_id == user_id).delete()
        self.db.flush()
        logger.info(f"Coupon {coupon.code} consumed by user {user_id}")

    @staticmethod
    def compute_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
        value = D(coupon.value)
        if coupon.type == "percent":
            discount = subtotal * value / HUNDRED
            cap = D(coupon.max_discount)
            if cap > ZERO and discount > cap:
                discount = cap
            return discount
        return value

    @staticmethod
    def discount_per_unit(coupon_discount: Decimal, total_quantity: int) -> Decimal:
        if total_quantity <= 0:
            return ZERO
        return coupon_discount / Decimal(total_quantity)

    @staticmethod
    def allocate(coupon_discount: Decimal, line_totals: list[Decimal]) -> list[Decimal]:
        """Split a captured coupon discount across lines in proportion to their totals.

        Shares are whole cents; the last line takes the remainder so the shares
        always add up to ``coupon_discount`` exactly.
        """
        coupon_discount = round_money(coupon_discount)
        base = sum(line_totals, ZERO)
        if not line_totals or coupon_discount <= ZERO or base <= ZERO:
            return [ZERO for _ in line_totals]
        shares = []
        allocated = ZERO
        for i, total in enumerate(line_totals):
            if i == len(line_totals) - 1:
                share = coupon_discount - allocated
            else:
                share = round_money(coupon_discount * total / base)
            shares.append(share)
            allocated += share
        return shares

    @staticmethod
    def _check_terms(type: str, value: Decimal, min_order_value: Decimal, max_discount: Decimal,
                     usage_limit: int) -> None:
        if type not in COUPON_TYPES:
            raise ValidationError("Coupon type must be 'flat' or 'percent'")
        if value <= ZERO:
            raise ValidationError("Coupon value must be greater than 0")
        if type == "percent" and value > HUNDRED:
            raise ValidationError("Percentage coupon value cannot exceed 100")
        if type == "percent" and max_discount <= ZERO:
            raise ValidationError("Percentage coupons need a max discount greater than 0")
        if min_order_value < ZERO or max_discount < ZERO:
            raise ValidationError("Amounts cannot be negative")
        if usage_limit < 1:
            raise ValidationError("Usage limit must be at least 1")

    def _get(self, coupon_id: int) -> Coupon:
        coupon = self.db.query(Coupon).filter(Coupon.id == coupon_id).with_for_update().first()
        if coupon is None:
            raise CouponNotFoundError(f"Coupon {coupon_id} not found", state={"coupon_id": coupon_id})
        return coupon

    def _deactivate(self, coupon: Coupon) -> None:
        coupon.active = False
        # Carts holding it fall back to no coupon
        released = self.db.query(UserActiveCoupon).filter(UserActiveCoupon.coupon_id == coupon.id).delete()
        if released:
            logger.info(f"Released coupon {coupon.code} from {released} carts")

    def _by_code(self, code: str) -> Optional[Coupon]:
        code = (code or "").strip()
        if not code:
            return None
        return self.db.query(Coupon).filter(func.lower(Coupon.code) == code.lower()).first()

    def _find_usable(self, code: str, now: datetime) -> Coupon:
        code = (code or "").strip()
        coupon = (
            self.db.query(Coupon)
            .filter(func.lower(Coupon.code) == code.lower(), Coupon.active.is_(True))
            .with_for_update()
            .first()
        ) if code else None
        if coupon is None or not self._usable(coupon, now):
            logger.error(f"Invalid, inactive or expired coupon code: {code!r}")
            raise CouponNotFoundError("Invalid, inactive or expired coupon", state={"code": code})
        return coupon

    @staticmethod
    def _usable(coupon: Coupon, now: datetime) -> bool:
        return bool(coupon.active) and as_utc(coupon.expiry) > now
