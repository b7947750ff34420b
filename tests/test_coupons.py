"""Tests for the cart and the coupon engine."""
from datetime import timedelta
from decimal import Decimal

import pytest

from bookstore.errors import (
    CouponAlreadyUsedError, CouponNotFoundError, InsufficientStockError, MinOrderNotMetError, NotFoundError,
    StateConflictError, UsageLimitExceededError, ValidationError,
)
from bookstore.models import CartItem, Coupon, UserActiveCoupon, UserCoupon
from bookstore.money import utcnow
from bookstore.schemas import CouponPatch
from bookstore.services.cart import CartService
from bookstore.services.coupons import CouponService


def _active_rows(db, user_id):
    return db.query(UserActiveCoupon).filter(UserActiveCoupon.user_id == user_id).all()


# ----- cart -----

def test_add_item_merges_quantities(db_session, setup_test_data):
    novel = setup_test_data["books"]["novel"]
    cart = CartService(db_session)

    cart.add_item(1, novel.id, 2)
    row = cart.add_item(1, novel.id, 3)

    assert row.quantity == 5
    assert db_session.query(CartItem).filter(CartItem.user_id == 1).count() == 1


def test_add_item_limits(db_session, setup_test_data):
    books = setup_test_data["books"]
    cart = CartService(db_session)

    with pytest.raises(ValidationError):
        cart.add_item(1, books["novel"].id, 10)
    with pytest.raises(ValidationError):
        cart.add_item(1, books["novel"].id, 0)
    assert cart.get_cart(1).pricing.lines == []

    assert cart.add_item(1, books["novel"].id, 5).quantity == 5
    with pytest.raises(ValidationError):
        cart.add_item(1, books["novel"].id, 1)
    with pytest.raises(InsufficientStockError):
        cart.add_item(1, books["poems"].id, 1)
    with pytest.raises(ValidationError):
        cart.add_item(1, books["secret"].id, 1)
    with pytest.raises(NotFoundError):
        cart.add_item(1, 9999, 1)


def test_update_and_remove_item(db_session, setup_test_data):
    atlas = setup_test_data["books"]["atlas"]
    cart = CartService(db_session)
    cart.add_item(1, atlas.id, 1)

    assert cart.update_quantity(1, atlas.id, 4).quantity == 4
    with pytest.raises(ValidationError):
        cart.update_quantity(1, atlas.id, 6)
    with pytest.raises(ValidationError):
        cart.update_quantity(1, atlas.id, 0)

    atlas.stock = 2
    db_session.commit()
    with pytest.raises(InsufficientStockError):
        cart.update_quantity(1, atlas.id, 3)

    cart.remove_item(1, atlas.id)
    assert cart.get_cart(1).pricing.lines == []
    with pytest.raises(NotFoundError):
        cart.remove_item(1, atlas.id)


# ----- apply -----

def test_save10_scenario(db_session, setup_test_data):
    novel = setup_test_data["books"]["novel"]
    CartService(db_session).add_item(1, novel.id, 3)

    result = CouponService(db_session).apply(1, "SAVE10")

    assert result.as_dict() == {
        "subtotal": "300.00",
        "product_discount": "0.00",
        "category_discount": "0.00",
        "coupon_discount": "30.00",
        "total_discount": "30.00",
        "final_total": "270.00",
        "coupon_code": "SAVE10",
        "discount_per_unit": "10.00",
    }


def test_percent_coupon_is_capped(db_session, setup_test_data):
    atlas = setup_test_data["books"]["atlas"]
    CartService(db_session).add_item(1, atlas.id, 5)

    result = CouponService(db_session).apply(1, "SAVE10")

    assert result.as_dict()["coupon_discount"] == "50.00"
    assert result.as_dict()["final_total"] == "950.00"


def test_code_lookup_is_case_insensitive(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 2)

    result = CouponService(db_session).apply(1, "  save10 ")

    assert result.coupon_code == "SAVE10"


def test_reapply_replaces_active_coupon(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)
    service = CouponService(db_session)

    service.apply(1, "SAVE10")
    service.apply(1, "SAVE10")
    assert len(_active_rows(db_session, 1)) == 1

    service.apply(1, "FLAT50")
    rows = _active_rows(db_session, 1)
    assert len(rows) == 1
    assert rows[0].code == "FLAT50"


def test_usage_limit_reached_is_rejected(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)

    with pytest.raises(UsageLimitExceededError) as exc_info:
        CouponService(db_session).apply(1, "USEDUP")

    assert exc_info.value.state == {"used_count": 1, "usage_limit": 1}
    assert _active_rows(db_session, 1) == []


def test_unknown_and_expired_codes(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)
    service = CouponService(db_session)

    with pytest.raises(CouponNotFoundError):
        service.apply(1, "NOPE")
    with pytest.raises(CouponNotFoundError):
        service.apply(1, "EXPIRED")
    with pytest.raises(CouponNotFoundError):
        service.apply(1, "")


def test_inactive_coupon_is_not_found(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)
    setup_test_data["coupons"]["FLAT50"].active = False
    db_session.commit()

    with pytest.raises(CouponNotFoundError):
        CouponService(db_session).apply(1, "FLAT50")


def test_coupon_already_used_by_user(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)
    db_session.add(UserCoupon(user_id=1, coupon_id=setup_test_data["coupons"]["SAVE10"].id))
    db_session.commit()

    with pytest.raises(CouponAlreadyUsedError):
        CouponService(db_session).apply(1, "SAVE10")

    # Another user can still use it
    CartService(db_session).add_item(2, setup_test_data["books"]["novel"].id, 3)
    assert CouponService(db_session).apply(2, "SAVE10").coupon_code == "SAVE10"


def test_min_order_not_met(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)

    with pytest.raises(MinOrderNotMetError) as exc_info:
        CouponService(db_session).apply(1, "BIG500")

    assert exc_info.value.state == {"subtotal": "300.00", "min_order_value": "500.00"}


def test_empty_cart_is_rejected(db_session, setup_test_data):
    with pytest.raises(ValidationError):
        CouponService(db_session).apply(1, "FLAT50")


def test_usage_checks_come_before_empty_cart(db_session, setup_test_data):
    service = CouponService(db_session)

    with pytest.raises(UsageLimitExceededError):
        service.apply(1, "USEDUP")

    db_session.add(UserCoupon(user_id=1, coupon_id=setup_test_data["coupons"]["SAVE10"].id))
    db_session.commit()
    with pytest.raises(CouponAlreadyUsedError):
        service.apply(1, "SAVE10")


def test_flat_coupon_above_subtotal_clamps_final_total(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)

    data = CouponService(db_session).apply(1, "HUGE").as_dict()

    assert data["coupon_discount"] == "1000.00"
    assert data["final_total"] == "0.00"


# ----- remove -----

def test_remove_coupon_keeps_usage_count(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)
    service = CouponService(db_session)
    service.apply(1, "SAVE10")

    result = service.remove(1, "save10")

    assert _active_rows(db_session, 1) == []
    assert result.as_dict()["coupon_discount"] == "0.00"
    assert result.as_dict()["final_total"] == "300.00"
    coupon = db_session.query(Coupon).filter(Coupon.code == "SAVE10").one()
    assert coupon.used_count == 0

    with pytest.raises(CouponNotFoundError):
        service.remove(1, "NOPE")


# ----- cart view -----

def test_cart_view_includes_qualifying_coupon(db_session, setup_test_data):
    novel = setup_test_data["books"]["novel"]
    cart = CartService(db_session)
    cart.add_item(1, novel.id, 3)
    CouponService(db_session).apply(1, "SAVE10")

    view = cart.get_cart(1).as_dict()
    assert view["coupon_code"] == "SAVE10"
    assert view["final_total"] == "270.00"

    # The applied coupon follows cart changes while it still qualifies
    cart.remove_item(1, novel.id)
    cart.add_item(1, setup_test_data["books"]["atlas"].id, 1)
    assert cart.get_cart(1).as_dict()["coupon_code"] == "SAVE10"

    # Below the minimum it stays applied but no longer counts
    setup_test_data["coupons"]["SAVE10"].min_order_value = Decimal("500")
    db_session.commit()
    view = cart.get_cart(1).as_dict()
    assert view["coupon_code"] == ""
    assert view["final_total"] == "200.00"


# ----- admin / helpers -----

def test_create_coupon(db_session, setup_test_data):
    now = utcnow()
    service = CouponService(db_session)

    coupon = service.create_coupon("welcome5", "percent", "5", "0", "25", now + timedelta(days=10), 3, now=now)

    assert coupon.code == "WELCOME5"
    assert coupon.used_count == 0
    with pytest.raises(StateConflictError):
        service.create_coupon("Welcome5", "flat", "5", "0", "0", now + timedelta(days=10), 3, now=now)
    with pytest.raises(ValidationError):
        service.create_coupon("BAD", "percent", "150", "0", "25", now + timedelta(days=10), 3, now=now)
    with pytest.raises(ValidationError):
        service.create_coupon("BAD", "percent", "10", "0", "0", now + timedelta(days=10), 3, now=now)
    with pytest.raises(ValidationError):
        service.create_coupon("BAD", "flat", "10", "0", "0", now - timedelta(days=1), 3, now=now)
    with pytest.raises(ValidationError):
        service.create_coupon("BAD", "bogo", "10", "0", "0", now + timedelta(days=1), 3, now=now)
    with pytest.raises(ValidationError):
        service.create_coupon("BAD", "flat", "10", "0", "0", now + timedelta(days=1), 0, now=now)


def test_allocate_splits_by_line_value():
    shares = CouponService.allocate(Decimal("10"), [Decimal("100"), Decimal("200")])

    assert shares == [Decimal("3.33"), Decimal("6.67")]
    assert sum(shares) == Decimal("10.00")
    assert CouponService.allocate(Decimal("0"), [Decimal("100")]) == [Decimal("0")]


def test_discount_per_unit():
    assert CouponService.discount_per_unit(Decimal("30"), 3) == Decimal("10")
    assert CouponService.discount_per_unit(Decimal("30"), 0) == 0


def test_deactivated_coupon_is_released_and_refused(db_session, setup_test_data):
    CartService(db_session).add_item(1, setup_test_data["books"]["novel"].id, 3)
    service = CouponService(db_session)
    service.apply(1, "SAVE10")
    save10 = setup_test_data["coupons"]["SAVE10"]

    coupon = service.deactivate_coupon(save10.id)

    assert coupon.active is False
    assert _active_rows(db_session, 1) == []
    assert CartService(db_session).get_cart(1).as_dict()["coupon_code"] == ""
    with pytest.raises(CouponNotFoundError):
        service.apply(1, "SAVE10")

    service.update_coupon(save10.id, CouponPatch(active=True))
    assert service.apply(1, "SAVE10").coupon_code == "SAVE10"


def test_update_coupon_terms(db_session, setup_test_data):
    now = utcnow()
    service = CouponService(db_session)
    save10 = setup_test_data["coupons"]["SAVE10"]

    coupon = service.update_coupon(save10.id, CouponPatch(value="15", max_discount="80", usage_limit=5), now=now)

    assert (coupon.value, coupon.max_discount, coupon.usage_limit) == (Decimal("15"), Decimal("80"), 5)
    assert coupon.code == "SAVE10"
    assert coupon.active is True

    CartService(db_session).add_item(1, setup_test_data["books"]["atlas"].id, 2)
    assert service.apply(1, "SAVE10", now=now).as_dict()["coupon_discount"] == "60.00"

    save10.used_count = 3
    db_session.commit()
    with pytest.raises(ValidationError):
        service.update_coupon(save10.id, CouponPatch(usage_limit=2), now=now)
    with pytest.raises(ValidationError):
        service.update_coupon(save10.id, CouponPatch(expiry=now - timedelta(days=1)), now=now)
    with pytest.raises(ValidationError):
        service.update_coupon(save10.id, CouponPatch(value="150"), now=now)
    with pytest.raises(CouponNotFoundError):
        service.update_coupon(9999, CouponPatch(active=False), now=now)


def test_list_coupons_pages(db_session, setup_test_data):
    service = CouponService(db_session)

    page = service.list_coupons(page=2, limit=4)

    assert page.total == 6
    assert page.pages == 2
    assert len(page.coupons) == 2
    data = page.as_dict()
    assert data["pagination"] == {"total": 6, "page": 2, "limit": 4, "pages": 2}
    assert service.list_coupons(limit=500).limit == 10


def test_delete_coupon_only_when_unused(db_session, setup_test_data):
    coupons = setup_test_data["coupons"]
    service = CouponService(db_session)

    with pytest.raises(StateConflictError):
        service.delete_coupon(coupons["USEDUP"].id)

    flat50_id = coupons["FLAT50"].id
    service.delete_coupon(flat50_id)
    assert db_session.query(Coupon).filter(Coupon.code == "FLAT50").first() is None
    with pytest.raises(CouponNotFoundError):
        service.delete_coupon(flat50_id)
