import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from bookstore import settings
from bookstore.db import atomic
from bookstore.errors import InsufficientStockError, NotFoundError, StateConflictError, ValidationError
from bookstore.models import Book, Order, OrderItem, OrderStatus, RefundStatus, ReturnStatus
from bookstore.money import D, ZERO, as_utc, fmt, round_money, utcnow
from bookstore.schemas import OrderStatusPatch
from bookstore.services.cart import CartService
from bookstore.services.coupons import CouponService
from bookstore.services.pricing import PriceBreakdown
from bookstore.services.wallet import WalletLedger

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cod", "wallet", "online")
ITEM_CONDITIONS = ("good", "damaged", "unusable")

# Forward-only fulfilment path
FULFILMENT_FLOW = [
    OrderStatus.PLACED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]
CANCELLABLE = (OrderStatus.PLACED, OrderStatus.PROCESSING)


def order_breakdown(order: Order) -> PriceBreakdown:
    return PriceBreakdown(
        subtotal=D(order.total_amount),
        product_discount=D(order.product_discount),
        category_discount=D(order.category_discount),
        coupon_discount=D(order.coupon_discount),
    )


def item_as_dict(item: OrderItem) -> dict:
    return {
        "item_id": item.id,
        "book_id": item.book_id,
        "quantity": item.quantity,
        "price": fmt(item.price),
        "discount": fmt(item.discount),
        "coupon_discount": fmt(item.coupon_discount),
        "total": fmt(item.total),
        "amount_paid": fmt(item.amount_paid),
        "cancellation_status": item.cancellation_status,
        "return_status": item.return_status,
        "return_condition": item.return_condition,
        "refund_status": item.refund_status,
        "refund_amount": fmt(item.refund_amount) if item.refund_amount is not None else None,
    }


@dataclass(frozen=True)
class OrderResult:
    order: Order
    message: str
    item: Optional[OrderItem] = None
    refunded: Decimal = ZERO

    def as_dict(self) -> dict:
        order = self.order
        data = {
            "status": True,
            "message": self.message,
            "order_id": order.id,
            "order_status": order.status,
            "payment_method": order.payment_method,
            "coupon_code": order.coupon_code or "",
            "refund_status": order.refund_status,
            "refunded": fmt(self.refunded),
            "delivery_charge": fmt(order.delivery_charge),
            "total_with_delivery": fmt(order.total_with_delivery),
            "items": [item_as_dict(i) for i in order.items],
            **order_breakdown(order).as_dict(),
        }
        if self.item is not None:
            data["item"] = item_as_dict(self.item)
        return data


class OrderService:
    """Checkout, cancellation and return workflows.

    Every public method is one transaction: stock, wallet and order changes
    are committed together or not at all.
    """

    def __init__(self, db: Session):
        self.db = db
        self.cart = CartService(db)
        self.coupons = self.cart.coupons
        self.ledger = WalletLedger(db)

    # ----- checkout -----

    def place_order(self, user_id: int, payment_method: str, delivery_charge=0,
                    now: Optional[datetime] = None) -> OrderResult:
        now = now or utcnow()
        payment_method = (payment_method or "").strip().lower()
        delivery_charge = round_money(delivery_charge)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Payment method must be one of {', '.join(PAYMENT_METHODS)}")
        if delivery_charge < ZERO:
            raise ValidationError("Delivery charge cannot be negative")

        logger.info(f"Placing order for user {user_id} ({payment_method})")
        with atomic(self.db):
            pricing = self.cart.pricing.price_cart(user_id, now)
            if not pricing.lines:
                raise ValidationError("Cart is empty")
            blocked = [line for line in pricing.lines if not line.can_checkout]
            if blocked:
                logger.error(f"Checkout refused for user {user_id}: {len(blocked)} unavailable items")
                raise StateConflictError(
                    "Some items in your cart are unavailable",
                    state={"items": [{"book_id": line.book_id, "reason": line.unavailable_reason}
                                     for line in blocked]},
                )

            coupon = self.coupons.require_active_coupon(user_id, pricing, now)

            items = []
            for line in pricing.lines:
                product_discount = round_money(line.product_discount)
                category_discount = round_money(line.category_discount)
                subtotal = round_money(line.subtotal)
                items.append(OrderItem(
                    book_id=line.book_id,
                    quantity=line.quantity,
                    price=round_money(line.unit_price),
                    product_discount=product_discount,
                    category_discount=category_discount,
                    discount=product_discount + category_discount,
                    total=subtotal - product_discount - category_discount,
                ))
            original_subtotal = sum((i.total for i in items), ZERO)

            coupon_discount = ZERO
            if coupon is not None:
                # A flat coupon can exceed what is left after offers
                coupon_discount = round_money(min(self.coupons.compute_discount(coupon, pricing.subtotal),
                                                  original_subtotal))
            for item, share in zip(items, self.coupons.allocate(coupon_discount, [i.total for i in items])):
                item.coupon_discount = share

            product_discount = sum((i.product_discount for i in items), ZERO)
            category_discount = sum((i.category_discount for i in items), ZERO)
            order = Order(
                user_id=user_id,
                status=OrderStatus.PLACED,
                total_amount=sum((i.subtotal for i in items), ZERO),
                product_discount=product_discount,
                category_discount=category_discount,
                discount=product_discount + category_discount,
                coupon_discount=coupon_discount,
                delivery_charge=delivery_charge,
                final_total=original_subtotal - coupon_discount,
                original_subtotal=original_subtotal,
                original_coupon_discount=coupon_discount,
                coupon_id=coupon.id if coupon else None,
                coupon_code=coupon.code if coupon else None,
                payment_method=payment_method,
                created_at=now,
                updated_at=now,
                items=items,
            )
            self.db.add(order)
            self.db.flush()

            for item in items:
                self._take_stock(item.book_id, item.quantity)
            if coupon is not None:
                self.coupons.consume(user_id, coupon, now)
            if payment_method == "wallet" and order.total_with_delivery > ZERO:
                wallet = self.ledger.get_or_create_wallet(user_id, lock=True)
                self.ledger.debit(wallet.id, order.total_with_delivery, f"Payment for order #{order.id}",
                                  reference=f"ORDER-{order.id}", order_id=order.id)
            self.cart.clear(user_id)

        logger.info(f"Order {order.id} placed for user {user_id}: final total {order.final_total}, "
                    f"coupon {order.coupon_code or '-'}")
        return OrderResult(order=order, message="Order placed successfully")

    # ----- admin status -----

    def update_status(self, order_id: int, patch: OrderStatusPatch, admin_id: int,
                      now: Optional[datetime] = None) -> OrderResult:
        now = now or utcnow()
        with atomic(self.db):
            order = self._order(order_id)
            if patch.status not in FULFILMENT_FLOW:
                raise ValidationError(f"Invalid status {patch.status!r}")
            if order.status not in FULFILMENT_FLOW:
                raise StateConflictError(f"Order is {order.status}, status can no longer change",
                                         state={"status": order.status})
            if FULFILMENT_FLOW.index(patch.status) <= FULFILMENT_FLOW.index(order.status):
                raise StateConflictError(f"Cannot move order from {order.status} to {patch.status}",
                                         state={"status": order.status})
            previous = order.status
            order.status = patch.status
            # Delivery time opens the return window
            order.updated_at = now
            self.db.flush()
        logger.info(f"Admin {admin_id} moved order {order_id} from {previous} to {order.status}")
        return OrderResult(order=order, message=f"Order status updated to {order.status}")

    # ----- cancellation -----

    def cancel_order(self, order_id: int, user_id: int, reason: Optional[str] = None,
                     now: Optional[datetime] = None) -> OrderResult:
        now = now or utcnow()
        logger.info(f"User {user_id} cancelling order {order_id}")
        with atomic(self.db):
            order = self._order(order_id, user_id)
            self._check_cancellable(order, now)

            for item in order.items:
                if item.cancellation_status == OrderStatus.CANCELLED:
                    continue
                self._restock(item)
                item.cancellation_status = OrderStatus.CANCELLED
                item.cancellation_reason = reason

            refunded = ZERO
            order.status = OrderStatus.CANCELLED
            order.cancellation_reason = reason
            order.updated_at = now
            if self._is_cod(order):
                order.refund_status = RefundStatus.NOT_APPLICABLE
            elif order.total_with_delivery > ZERO:
                # Delivery charge goes back on a full cancel
                refunded = D(order.total_with_delivery)
                self._refund(order, refunded, f"REFUND-ORDER-{order.id}",
                             f"Refund for cancelled order #{order.id}", now)
            else:
                order.refund_status = RefundStatus.NOT_APPLICABLE
            self.db.flush()

        logger.info(f"Order {order_id} cancelled, refund status {order.refund_status}, refunded {refunded}")
        return OrderResult(order=order, message="Order cancelled successfully", refunded=refunded)

    def cancel_order_item(self, order_id: int, item_id: int, user_id: int, reason: Optional[str] = None,
                          now: Optional[datetime] = None) -> OrderResult:
        now = now or utcnow()
        logger.info(f"User {user_id} cancelling item {item_id} of order {order_id}")
        with atomic(self.db):
            order = self._order(order_id, user_id)
            item = self._item(order, item_id)
            self._check_cancellable(order, now)
            if item.cancellation_status == OrderStatus.CANCELLED:
                raise StateConflictError("Item is already cancelled", state={"item_id": item.id})

            self._restock(item)
            item.cancellation_status = OrderStatus.CANCELLED
            item.cancellation_reason = reason

            refunded = ZERO
            amount = round_money(item.amount_paid)
            if self._is_cod(order) or amount <= ZERO:
                item.refund_status = RefundStatus.NOT_APPLICABLE
            else:
                refunded = amount
                self._refund(order, amount, f"REFUND-ORDER-{order.id}-ITEM-{item.id}",
                             f"Refund for cancelled item #{item.id} of order #{order.id}", now)
                item.refund_status = RefundStatus.COMPLETED
                item.refund_amount = amount
                item.refunded_at = now
            self._unwind(order, item)

            if all(i.cancellation_status == OrderStatus.CANCELLED for i in order.items):
                order.status = OrderStatus.CANCELLED
                order.cancellation_reason = reason
                delivery = D(order.delivery_charge)
                if not self._is_cod(order) and delivery > ZERO:
                    self._refund(order, delivery, f"REFUND-ORDER-{order.id}-DELIVERY",
                                 f"Delivery refund for cancelled order #{order.id}", now)
                    refunded += delivery
                if order.refund_status is None:
                    order.refund_status = RefundStatus.NOT_APPLICABLE
            order.updated_at = now
            self.db.flush()

        logger.info(f"Item {item_id} of order {order_id} cancelled, refunded {refunded}, "
                    f"order final total now {order.final_total}")
        return OrderResult(order=order, item=item, message="Item cancelled successfully", refunded=refunded)

    # ----- returns -----

    def request_item_return(self, order_id: int, item_id: int, user_id: int, reason: str,
                            now: Optional[datetime] = None) -> OrderResult:
        now = now or utcnow()
        reason = self._require_reason(reason, "Return reason is required")
        with atomic(self.db):
            order = self._order(order_id, user_id)
            item = self._item(order, item_id)
            if order.status != OrderStatus.DELIVERED:
                raise StateConflictError("Only delivered orders can be returned", state={"status": order.status})
            if item.cancellation_status == OrderStatus.CANCELLED:
                raise StateConflictError("Cancelled items cannot be returned", state={"item_id": item.id})
            if item.return_requested:
                raise StateConflictError("Return already requested for this item",
                                         state={"item_id": item.id, "return_status": item.return_status})
            self._check_return_window(order, item, now)

            self._mark_pending(item, reason)
            order.has_item_return_requests = True
            self.db.flush()

        logger.info(f"Return requested for item {item_id} of order {order_id}, refund on approval {item.refund_amount}")
        return OrderResult(order=order, item=item, message="Return request submitted")

    def return_order(self, order_id: int, user_id: int, reason: str,
                     now: Optional[datetime] = None) -> OrderResult:
        now = now or utcnow()
        reason = self._require_reason(reason, "Return reason is required")
        with atomic(self.db):
            order = self._order(order_id, user_id)
            if order.status != OrderStatus.DELIVERED:
                raise StateConflictError("Only delivered orders can be returned", state={"status": order.status})
            lines = [i for i in order.items
                     if i.cancellation_status != OrderStatus.CANCELLED and not i.return_requested]
            if not lines:
                raise StateConflictError("Every item already has a return request", state={"order_id": order.id})
            for item in lines:
                self._check_return_window(order, item, now)
            for item in lines:
                self._mark_pending(item, reason)

            order.status = OrderStatus.RETURN_REQUESTED
            order.return_reason = reason
            order.has_item_return_requests = True
            self.db.flush()

        logger.info(f"Return requested for order {order_id} ({len(lines)} items)")
        return OrderResult(order=order, message="Return request submitted")

    def review_item_return(self, order_id: int, item_id: int, admin_id: int, action: str,
                           reason: Optional[str] = None, condition: Optional[str] = None,
                           now: Optional[datetime] = None) -> OrderResult:
        now = now or utcnow()
        action = (action or "").strip().lower()
        if action not in ("approve", "reject"):
            raise ValidationError("Action must be 'approve' or 'reject'")
        condition = (condition or "good").strip().lower()
        if condition not in ITEM_CONDITIONS:
            raise ValidationError(f"Condition must be one of {', '.join(ITEM_CONDITIONS)}")
        if action == "reject":
            reason = self._require_reason(reason, "Reason is required when rejecting a return")

        with atomic(self.db):
            order = self._order(order_id)
            item = self._item(order, item_id)
            if item.return_status != ReturnStatus.PENDING:
                raise StateConflictError("Item has no pending return request",
                                         state={"item_id": item.id, "return_status": item.return_status})

            refunded = ZERO
            if action == "approve":
                item.return_condition = condition
                if condition == "good":
                    self._restock(item)
                refunded = round_money(item.refund_amount)
                if refunded > ZERO:
                    self._refund(order, refunded, f"REFUND-ORDER-{order.id}-ITEM-{item.id}",
                                 f"Refund for returned item #{item.id} of order #{order.id}", now)
                item.return_status = ReturnStatus.APPROVED
                item.refund_status = RefundStatus.COMPLETED
                item.refunded_at = now
                self._unwind(order, item)
            else:
                item.return_status = ReturnStatus.REJECTED
                item.refund_status = RefundStatus.REJECTED
                item.return_condition = condition

            if not any(i.return_status == ReturnStatus.PENDING for i in order.items):
                order.has_item_return_requests = False
                if order.status == OrderStatus.RETURN_REQUESTED:
                    if any(i.return_status == ReturnStatus.APPROVED for i in order.items):
                        order.status = OrderStatus.RETURN_COMPLETED
                    else:
                        order.status = OrderStatus.RETURN_REJECTED
                        order.return_reject_reason = reason
            self.db.flush()

        logger.info(f"Admin {admin_id} {action}d return of item {item_id} in order {order_id} "
                    f"(condition {condition}), refunded {refunded}")
        return OrderResult(order=order, item=item, message=f"Return {action}d", refunded=refunded)

    # ----- helpers -----

    def _order(self, order_id: int, user_id: Optional[int] = None) -> Order:
        query = self.db.query(Order).filter(Order.id == order_id)
        if user_id is not None:
            query = query.filter(Order.user_id == user_id)
        order = query.with_for_update().first()
        if order is None:
            # Same answer whether the order is missing or belongs to someone else
            logger.error(f"Order {order_id} not found for user {user_id}")
            raise NotFoundError("Order not found", state={"order_id": order_id})
        return order

    @staticmethod
    def _item(order: Order, item_id: int) -> OrderItem:
        for item in order.items:
            if item.id == item_id:
                return item
        raise NotFoundError("Order item not found", state={"order_id": order.id, "item_id": item_id})

    @staticmethod
    def _check_cancellable(order: Order, now: datetime) -> None:
        if order.status == OrderStatus.CANCELLED:
            raise StateConflictError("Order is already cancelled", state={"status": order.status})
        if order.status not in CANCELLABLE:
            raise StateConflictError(f"Order cannot be cancelled in {order.status} status",
                                     state={"status": order.status})
        deadline = as_utc(order.created_at) + timedelta(minutes=settings.CANCELLATION_WINDOW_MINUTES)
        if now > deadline:
            logger.error(f"Cancellation window expired for order {order.id}")
            raise StateConflictError(
                f"Orders can only be cancelled within {settings.CANCELLATION_WINDOW_MINUTES} minutes",
                state={"status": order.status, "deadline": deadline.isoformat()},
            )

    @staticmethod
    def _check_return_window(order: Order, item: OrderItem, now: datetime) -> None:
        category = item.book.category if item.book is not None else None
        days = category.return_window if category is not None and category.return_window else \
            settings.DEFAULT_RETURN_WINDOW_DAYS
        deadline = as_utc(order.updated_at) + timedelta(days=days)
        if now > deadline:
            logger.error(f"Return window of {days} days expired for item {item.id} of order {order.id}")
            raise StateConflictError(f"Return window of {days} days has expired",
                                     state={"item_id": item.id, "deadline": deadline.isoformat()})

    @staticmethod
    def _mark_pending(item: OrderItem, reason: str) -> None:
        item.return_requested = True
        item.return_status = ReturnStatus.PENDING
        item.return_reason = reason
        item.refund_amount = round_money(item.amount_paid)
        item.refund_status = RefundStatus.PENDING

    @staticmethod
    def _require_reason(reason: Optional[str], message: str) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError(message)
        return reason

    @staticmethod
    def _is_cod(order: Order) -> bool:
        return (order.payment_method or "").lower() in settings.COD_PAYMENT_METHODS

    def _take_stock(self, book_id: int, quantity: int) -> None:
        updated = (
            self.db.query(Book)
            .filter(Book.id == book_id, Book.stock >= quantity)
            .update({Book.stock: Book.stock - quantity}, synchronize_session=False)
        )
        if not updated:
            logger.error(f"Insufficient stock for book {book_id}, requested {quantity}")
            raise InsufficientStockError("Insufficient stock", state={"book_id": book_id, "requested": quantity})

    def _restock(self, item: OrderItem) -> None:
        if item.stock_restored:
            return
        self.db.query(Book).filter(Book.id == item.book_id).update(
            {Book.stock: Book.stock + item.quantity}, synchronize_session=False)
        item.stock_restored = True
        logger.info(f"Restocked book {item.book_id} by {item.quantity}")

    def _refund(self, order: Order, amount: Decimal, reference: str, description: str, now: datetime) -> None:
        wallet = self.ledger.get_or_create_wallet(order.user_id, lock=True)
        self.ledger.credit(wallet.id, amount, description, reference=reference, order_id=order.id)
        order.refund_status = RefundStatus.COMPLETED
        order.refund_amount = D(order.refund_amount) + amount
        order.refunded_at = now
        order.refunded_to_wallet = True

    @staticmethod
    def _unwind(order: Order, item: OrderItem) -> None:
        """Take a line out of the order totals.

        The coupon share removed is ``item.total / original_subtotal *
        original_coupon_discount``, which is exactly the share written to the
        line at checkout, so ``final_total`` drops by the line's refund amount
        and the other lines are left untouched.
        """
        order.total_amount = D(order.total_amount) - D(item.subtotal)
        order.product_discount = D(order.product_discount) - D(item.product_discount)
        order.category_discount = D(order.category_discount) - D(item.category_discount)
        order.discount = D(order.discount) - D(item.discount)
        order.coupon_discount = max(ZERO, D(order.coupon_discount) - D(item.coupon_discount))
        order.final_total = max(ZERO, D(order.final_total) - D(item.amount_paid))
