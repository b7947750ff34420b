from datetime import datetime, timezone
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _now():
    return datetime.now(timezone.utc)


class OrderStatus:
    PLACED = "Placed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURN_REQUESTED = "Return Requested"
    RETURN_COMPLETED = "Return Completed"
    RETURN_REJECTED = "Return Rejected"


class ReturnStatus:
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class RefundStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"
    NOT_APPLICABLE = "not applicable"


class TransactionType:
    CREDIT = "credit"
    DEBIT = "debit"


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False, unique=True)
    blocked = Column(Boolean, nullable=False, default=False)
    return_window = Column(Integer, nullable=False, default=7)  # days

    books = relationship("Book", back_populates="category")

    def __repr__(self):
        return f"<Category(id={self.id}, name={self.name}, return_window={self.return_window})>"


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_books_stock_non_negative"),)

    id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(15, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    blocked = Column(Boolean, nullable=False, default=False)

    category = relationship("Category", back_populates="books")

    def __repr__(self):
        return f"<Book(id={self.id}, title={self.title}, price={self.price}, stock={self.stock})>"


class ProductOffer(Base):
    __tablename__ = "product_offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    discount_percent = Column(Numeric(5, 2), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)

    def __repr__(self):
        return f"<ProductOffer(id={self.id}, book_id={self.book_id}, percent={self.discount_percent})>"


class CategoryOffer(Base):
    __tablename__ = "category_offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    discount_percent = Column(Numeric(5, 2), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)

    def __repr__(self):
        return f"<CategoryOffer(id={self.id}, category_id={self.category_id}, percent={self.discount_percent})>"


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (CheckConstraint("used_count <= usage_limit", name="ck_coupons_usage"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), nullable=False, unique=True, index=True)  # stored upper-case
    type = Column(String(10), nullable=False)  # flat, percent
    value = Column(Numeric(15, 2), nullable=False)
    min_order_value = Column(Numeric(15, 2), nullable=False, default=0)
    max_discount = Column(Numeric(15, 2), nullable=False, default=0)
    expiry = Column(DateTime(timezone=True), nullable=False)
    usage_limit = Column(Integer, nullable=False)
    used_count = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)

    def __repr__(self):
        return f"<Coupon(code={self.code}, type={self.type}, value={self.value}, used={self.used_count}/{self.usage_limit})>"


class UserActiveCoupon(Base):
    __tablename__ = "user_active_coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True)  # at most one active coupon per user
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False)
    code = Column(String(64), nullable=False)
    applied_at = Column(DateTime(timezone=True), default=_now)

    coupon = relationship("Coupon")

    def __repr__(self):
        return f"<UserActiveCoupon(user_id={self.user_id}, code={self.code})>"


class UserCoupon(Base):
    __tablename__ = "user_coupons"
    __table_args__ = (UniqueConstraint("user_id", "coupon_id", name="uq_user_coupons_user_coupon"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False)
    used_at = Column(DateTime(timezone=True), default=_now)

    def __repr__(self):
        return f"<UserCoupon(user_id={self.user_id}, coupon_id={self.coupon_id})>"


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "book_id", name="uq_cart_items_user_book"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)

    book = relationship("Book")

    def __repr__(self):
        return f"<CartItem(user_id={self.user_id}, book_id={self.book_id}, qty={self.quantity})>"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PLACED)
    # Pricing snapshot; only ever reduced (item unwind) after checkout
    total_amount = Column(Numeric(15, 2), nullable=False)  # pre-discount subtotal
    product_discount = Column(Numeric(15, 2), nullable=False, default=0)
    category_discount = Column(Numeric(15, 2), nullable=False, default=0)
    discount = Column(Numeric(15, 2), nullable=False, default=0)  # product + category offers
    coupon_discount = Column(Numeric(15, 2), nullable=False, default=0)
    delivery_charge = Column(Numeric(15, 2), nullable=False, default=0)
    final_total = Column(Numeric(15, 2), nullable=False)
    original_subtotal = Column(Numeric(15, 2), nullable=False)  # sum of line totals at checkout
    original_coupon_discount = Column(Numeric(15, 2), nullable=False, default=0)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=True)
    coupon_code = Column(String(64), nullable=True)
    payment_method = Column(String(20), nullable=False)
    cancellation_reason = Column(Text, nullable=True)
    return_reason = Column(Text, nullable=True)
    return_reject_reason = Column(Text, nullable=True)
    has_item_return_requests = Column(Boolean, nullable=False, default=False)
    refund_status = Column(String(20), nullable=True)  # pending, completed, not applicable
    refund_amount = Column(Numeric(15, 2), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refunded_to_wallet = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id", cascade="all, delete-orphan")

    @property
    def total_with_delivery(self):
        return self.final_total + self.delivery_charge

    def __repr__(self):
        return f"<Order(id={self.id}, user_id={self.user_id}, status={self.status}, final_total={self.final_total})>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    # Captured at checkout, never rewritten
    price = Column(Numeric(15, 2), nullable=False)  # unit price
    product_discount = Column(Numeric(15, 2), nullable=False, default=0)
    category_discount = Column(Numeric(15, 2), nullable=False, default=0)
    discount = Column(Numeric(15, 2), nullable=False, default=0)  # line product + category discount
    coupon_discount = Column(Numeric(15, 2), nullable=False, default=0)  # line share of order coupon
    total = Column(Numeric(15, 2), nullable=False)  # after offers, before coupon
    # Return / cancellation sub-state
    cancellation_status = Column(String(20), nullable=True)  # Cancelled
    cancellation_reason = Column(Text, nullable=True)
    return_requested = Column(Boolean, nullable=False, default=False)
    return_status = Column(String(20), nullable=True)  # Pending, Approved, Rejected
    return_reason = Column(Text, nullable=True)
    return_condition = Column(String(20), nullable=True)  # good, damaged, unusable
    refund_status = Column(String(20), nullable=True)
    refund_amount = Column(Numeric(15, 2), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    stock_restored = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="items")
    book = relationship("Book")

    @property
    def subtotal(self):
        return self.price * self.quantity

    @property
    def amount_paid(self):
        return self.total - self.coupon_discount

    def __repr__(self):
        return f"<OrderItem(id={self.id}, order_id={self.order_id}, book_id={self.book_id}, qty={self.quantity})>"


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True)
    balance = Column(Numeric(15, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    transactions = relationship("WalletTransaction", back_populates="wallet", order_by="WalletTransaction.id")

    def __repr__(self):
        return f"<Wallet(id={self.id}, user_id={self.user_id}, balance={self.balance})>"


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)  # always positive, sign comes from type
    type = Column(String(10), nullable=False)  # credit, debit
    description = Column(Text, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    reference = Column(String(100), nullable=False, unique=True)  # one per logical money event
    status = Column(String(20), nullable=False, default="completed")
    created_at = Column(DateTime(timezone=True), default=_now)

    wallet = relationship("Wallet", back_populates="transactions")

    def __repr__(self):
        return f"<WalletTransaction(wallet_id={self.wallet_id}, type={self.type}, amount={self.amount}, ref={self.reference})>"
