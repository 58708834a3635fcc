"""Order placement: validate, price, reserve stock and create the pending order."""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import (
    EmptyOrderError,
    InsufficientStockError,
    InvalidQuantityError,
    ItemsNotFoundError,
    OrderPersistenceError,
)
from .inventory import merge_requests
from .models import MenuItem, Order, OrderLine, OrderStatus, utcnow
from .notifications import NullNotifier
from .serializers import order_to_dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated caller as supplied by the identity provider."""

    id: str
    name: str = ""
    email: str = ""
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _validate_lines(requested_lines):
    if not requested_lines:
        raise EmptyOrderError()
    for item_id, quantity in requested_lines:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantityError(item_id, quantity)
    return merge_requests(requested_lines)


class OrderPlacementService:
    def __init__(self, session_factory, ledger, codec, notifier=None):
        self.session_factory = session_factory
        self.ledger = ledger
        self.codec = codec
        self.notifier = notifier or NullNotifier()

    def place_order(self, user: UserIdentity, requested_lines, idempotency_key=None):
        """Place an order for ``requested_lines`` (pairs of item id and quantity).

        Validation happens before anything is written. Stock reservation and
        the order insert share one transaction; if either fails nothing is
        kept. A repeated ``idempotency_key`` from the same user returns the order it
        created.
        """
        requests = _validate_lines(requested_lines)

        if idempotency_key:
            existing = self._find_by_key(user.id, idempotency_key)
            if existing is not None:
                logger.info("Replaying order %s for idempotency key %s", existing.id, idempotency_key)
                return existing

        self._precheck(requests)

        order_id = uuid.uuid4().hex

        def reserve_and_create(batch):
            items = batch.require([item_id for item_id, _ in requests])
            batch.reserve(requests)

            lines = []
            for position, (item, (_, quantity)) in enumerate(zip(items, requests)):
                price = Decimal(item.price)
                lines.append(
                    OrderLine(
                        position=position,
                        menu_item_id=item.id,
                        item_name=item.name,
                        quantity=quantity,
                        price=price,
                        total_price=price * quantity,
                    )
                )
            order = Order(
                id=order_id,
                user_id=user.id,
                user_name=user.name,
                user_email=user.email,
                total_amount=sum((line.total_price for line in lines), Decimal("0")),
                status=OrderStatus.PENDING.value,
                qr_code=self.codec.mint(order_id),
                idempotency_key=idempotency_key,
                created_at=utcnow(),
                lines=lines,
            )
            batch.session.add(order)
            return order

        try:
            order = self.ledger.with_atomic_batch([item_id for item_id, _ in requests], reserve_and_create)
        except IntegrityError as exc:
            if idempotency_key:
                existing = self._find_by_key(user.id, idempotency_key)
                if existing is not None:
                    logger.info("Concurrent duplicate for idempotency key %s", idempotency_key)
                    return existing
            logger.error("Could not store order %s after reserving stock", order_id, exc_info=True)
            raise OrderPersistenceError(order_id) from exc
        except SQLAlchemyError as exc:
            # The rollback of the batch already gave the reserved stock back.
            logger.error("Could not store order %s after reserving stock", order_id, exc_info=True)
            raise OrderPersistenceError(order_id) from exc

        logger.info(
            "Order %s placed by %s: %d line(s), total %s",
            order.id, user.id, len(order.lines), order.total_amount,
        )
        self.notifier.publish_new_order(order_to_dict(order))
        return order

    def _find_by_key(self, user_id, idempotency_key):
        """Keys are scoped to the caller; another user's order is never replayed."""
        with self.session_factory() as session:
            return session.execute(
                select(Order).where(Order.user_id == user_id, Order.idempotency_key == idempotency_key)
            ).scalar_one_or_none()

    def _precheck(self, requests):
        """Fail early, without locks, with every missing id or every short item name.

        The atomic reservation repeats these checks on the locked rows.
        """
        item_ids = [item_id for item_id, _ in requests]
        with self.session_factory() as session:
            items = {
                item.id: item
                for item in session.execute(select(MenuItem).where(MenuItem.id.in_(item_ids))).scalars()
            }
        missing = [item_id for item_id in item_ids if item_id not in items]
        if missing:
            raise ItemsNotFoundError(missing)
        short = [items[item_id].name for item_id, quantity in requests if items[item_id].remaining_count < quantity]
        if short:
            raise InsufficientStockError(short)
