import logging
from typing import Literal

from fastapi import Depends, FastAPI, Header, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.requests import Request

from bookstore import settings
from bookstore.db import get_db
from bookstore.errors import CommerceError, NotFoundError, StateConflictError, TransientInfraError, ValidationError
from bookstore.money import fmt
from bookstore.schemas import (
    CartItemCreate, CartItemPatch, CheckoutRequest, CouponCode, CouponCreate, CouponPatch, OfferCreate, OfferPatch,
    OrderStatusPatch, ReasonRequest, ReturnReviewRequest,
)
from bookstore.services.cart import CartService
from bookstore.services.coupons import CouponService, coupon_as_dict
from bookstore.services.offers import OfferService, offer_as_dict
from bookstore.services.orders import OrderService
from bookstore.services.wallet import WalletLedger

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(title="Bookstore Pricing and Refunds")

STATUS_CODES = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (StateConflictError, 409),
    (TransientInfraError, 503),
]


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError):
    status_code = next((code for cls, code in STATUS_CODES if isinstance(exc, cls)), 400)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.code}): {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.as_dict())


def current_user(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    return x_user_id


def current_admin(x_admin_id: int = Header(..., alias="X-Admin-Id")) -> int:
    return x_admin_id


@app.get("/health")
async def health_check():
    return {"status": "ok"}


# ----- cart -----

@app.get("/cart")
async def get_cart(user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    return CartService(db).get_cart(user_id).as_dict()


@app.post("/cart/items", status_code=201)
async def add_cart_item(body: CartItemCreate, user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    cart = CartService(db)
    cart.add_item(user_id, body.book_id, body.quantity)
    return cart.get_cart(user_id).as_dict()


@app.patch("/cart/items/{book_id}")
async def update_cart_item(book_id: int, body: CartItemPatch, user_id: int = Depends(current_user),
                           db: Session = Depends(get_db)):
    cart = CartService(db)
    cart.update_quantity(user_id, book_id, body.quantity)
    return cart.get_cart(user_id).as_dict()


@app.delete("/cart/items/{book_id}")
async def remove_cart_item(book_id: int, user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    cart = CartService(db)
    cart.remove_item(user_id, book_id)
    return cart.get_cart(user_id).as_dict()


@app.post("/cart/coupon")
async def apply_coupon(body: CouponCode, user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    result = CouponService(db).apply(user_id, body.code)
    return {"status": True, "message": "Coupon applied successfully", **result.as_dict()}


@app.delete("/cart/coupon")
async def remove_coupon(body: CouponCode, user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    result = CouponService(db).remove(user_id, body.code)
    return {"status": True, "message": "Coupon removed successfully", **result.as_dict()}


# ----- orders -----

@app.post("/checkout", status_code=201)
async def checkout(body: CheckoutRequest, user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    return OrderService(db).place_order(user_id, body.payment_method, body.delivery_charge).as_dict()


@app.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: int, body: ReasonRequest, user_id: int = Depends(current_user),
                       db: Session = Depends(get_db)):
    return OrderService(db).cancel_order(order_id, user_id, body.reason).as_dict()


@app.post("/orders/{order_id}/items/{item_id}/cancel")
async def cancel_order_item(order_id: int, item_id: int, body: ReasonRequest,
                            user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    return OrderService(db).cancel_order_item(order_id, item_id, user_id, body.reason).as_dict()


@app.post("/orders/{order_id}/return")
async def return_order(order_id: int, body: ReasonRequest, user_id: int = Depends(current_user),
                       db: Session = Depends(get_db)):
    return OrderService(db).return_order(order_id, user_id, body.reason).as_dict()


@app.post("/orders/{order_id}/items/{item_id}/return")
async def return_order_item(order_id: int, item_id: int, body: ReasonRequest,
                            user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    return OrderService(db).request_item_return(order_id, item_id, user_id, body.reason).as_dict()


# ----- wallet -----

@app.get("/wallet")
async def get_wallet(user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    return {"status": True, "balance": fmt(WalletLedger(db).balance(user_id))}


@app.get("/wallet/transactions")
async def wallet_transactions(page: int = Query(1, ge=1), limit: int = Query(10),
                              user_id: int = Depends(current_user), db: Session = Depends(get_db)):
    return {"status": True, **WalletLedger(db).transactions(user_id, page, limit).as_dict()}


# ----- admin -----

@app.post("/admin/coupons", status_code=201)
async def create_coupon(body: CouponCreate, admin_id: int = Depends(current_admin), db: Session = Depends(get_db)):
    coupon = CouponService(db).create_coupon(body.code, body.type, body.value, body.min_order_value,
                                             body.max_discount, body.expiry, body.usage_limit)
    logger.info(f"Admin {admin_id} created coupon {coupon.code}")
    return {"status": True, "coupon_id": coupon.id, "code": coupon.code}


@app.get("/admin/coupons")
async def list_coupons(page: int = Query(1, ge=1), limit: int = Query(10), admin_id: int = Depends(current_admin),
                       db: Session = Depends(get_db)):
    return {"status": True, **CouponService(db).list_coupons(page, limit).as_dict()}


@app.patch("/admin/coupons/{coupon_id}")
async def update_coupon(coupon_id: int, body: CouponPatch, admin_id: int = Depends(current_admin),
                        db: Session = Depends(get_db)):
    coupon = CouponService(db).update_coupon(coupon_id, body)
    logger.info(f"Admin {admin_id} updated coupon {coupon.code}")
    return {"status": True, "coupon": coupon_as_dict(coupon)}


@app.post("/admin/coupons/{coupon_id}/deactivate")
async def deactivate_coupon(coupon_id: int, admin_id: int = Depends(current_admin), db: Session = Depends(get_db)):
    coupon = CouponService(db).deactivate_coupon(coupon_id)
    logger.info(f"Admin {admin_id} deactivated coupon {coupon.code}")
    return {"status": True, "coupon": coupon_as_dict(coupon)}


@app.delete("/admin/coupons/{coupon_id}")
async def delete_coupon(coupon_id: int, admin_id: int = Depends(current_admin), db: Session = Depends(get_db)):
    CouponService(db).delete_coupon(coupon_id)
    logger.info(f"Admin {admin_id} deleted coupon {coupon_id}")
    return {"status": True, "message": "Coupon deleted successfully"}


@app.post("/admin/offers/product", status_code=201)
async def create_product_offer(body: OfferCreate, admin_id: int = Depends(current_admin),
                               db: Session = Depends(get_db)):
    offer = OfferService(db).create_product_offer(body.target_id, body.discount_percent, body.start_date,
                                                  body.end_date)
    logger.info(f"Admin {admin_id} created product offer {offer.id}")
    return {"status": True, "offer_id": offer.id, "discount_percent": fmt(offer.discount_percent)}


@app.post("/admin/offers/category", status_code=201)
async def create_category_offer(body: OfferCreate, admin_id: int = Depends(current_admin),
                                db: Session = Depends(get_db)):
    offer = OfferService(db).create_category_offer(body.target_id, body.discount_percent, body.start_date,
                                                   body.end_date)
    logger.info(f"Admin {admin_id} created category offer {offer.id}")
    return {"status": True, "offer_id": offer.id, "discount_percent": fmt(offer.discount_percent)}


@app.get("/admin/offers/{kind}")
async def list_offers(kind: Literal["product", "category"], active_only: bool = False,
                      admin_id: int = Depends(current_admin), db: Session = Depends(get_db)):
    offers = OfferService(db).list_offers(kind, active_only)
    return {"status": True, "offers": [offer_as_dict(o) for o in offers]}


@app.patch("/admin/offers/{kind}/{offer_id}")
async def update_offer(kind: Literal["product", "category"], offer_id: int, body: OfferPatch,
                       admin_id: int = Depends(current_admin), db: Session = Depends(get_db)):
    offer = OfferService(db).update_offer(kind, offer_id, body)
    logger.info(f"Admin {admin_id} updated {kind} offer {offer_id}")
    return {"status": True, "offer": offer_as_dict(offer)}


@app.post("/admin/offers/{kind}/{offer_id}/deactivate")
async def deactivate_offer(kind: Literal["product", "category"], offer_id: int,
                           admin_id: int = Depends(current_admin), db: Session = Depends(get_db)):
    offer = OfferService(db).deactivate_offer(kind, offer_id)
    logger.info(f"Admin {admin_id} deactivated {kind} offer {offer_id}")
    return {"status": True, "offer": offer_as_dict(offer)}


@app.delete("/admin/offers/{kind}/{offer_id}")
async def delete_offer(kind: Literal["product", "category"], offer_id: int,
                       admin_id: int = Depends(current_admin), db: Session = Depends(get_db)):
    OfferService(db).delete_offer(kind, offer_id)
    logger.info(f"Admin {admin_id} deleted {kind} offer {offer_id}")
    return {"status": True, "message": "Offer deleted successfully"}


@app.patch("/admin/orders/{order_id}/status")
async def update_order_status(order_id: int, body: OrderStatusPatch, admin_id: int = Depends(current_admin),
                              db: Session = Depends(get_db)):
    return OrderService(db).update_status(order_id, body, admin_id).as_dict()


@app.post("/admin/orders/{order_id}/items/{item_id}/return-review")
async def review_item_return(order_id: int, item_id: int, body: ReturnReviewRequest,
                             admin_id: int = Depends(current_admin), db: Session = Depends(get_db)):
    return OrderService(db).review_item_return(order_id, item_id, admin_id, body.action, body.reason,
                                                body.condition).as_dict()
