import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from .database import Base  # Import the Base class from our database setup


def utcnow():
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


# A dish on the canteen menu together with its stock counters.
class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(String(32), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Numeric(10, 2), nullable=False)  # Current unit price.
    category = Column(String(64), nullable=False, index=True)
    total_count = Column(Integer, nullable=False, default=0)
    remaining_count = Column(Integer, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=False)  # Always remaining_count > 0.
    version = Column(Integer, nullable=False)  # Optimistic lock, bumped on every flush.
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __mapper_args__ = {"version_id_col": version}

    def set_remaining(self, count, now=None):
        """Store a new remaining count, clamped to [0, total_count], and re-derive availability."""
        count = max(0, min(int(count), self.total_count))
        self.remaining_count = count
        self.is_available = count > 0
        self.updated_at = now or utcnow()


# A placed order; lines and pricing are frozen at creation time.
class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    user_name = Column(String(255), nullable=False, default="")
    user_email = Column(String(255), nullable=False, default="")
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)
    qr_code = Column(String(255), nullable=False, unique=True)
    idempotency_key = Column(String(128), nullable=True)  # Per-user key to prevent duplicate placement.
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency_key"),)

    lines = relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.position",
        lazy="selectin",
    )


# Snapshot of one ordered item; never updated after insert.
class OrderLine(Base):
    __tablename__ = "order_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    menu_item_id = Column(String(32), nullable=False, index=True)  # No FK: history outlives the menu.
    item_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # Unit price when ordered.
    total_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="lines")
