"""Order state machine: pending -> fulfilled | cancelled.

Every transition is a conditional UPDATE keyed on the order still being
pending, so two concurrent requests can never both move the same order.
"""

import logging

from sqlalchemy import select, update

from .errors import (
    AlreadyCancelledError,
    AlreadyFulfilledError,
    InvalidTransitionError,
    OrderNotFoundError,
)
from .models import Order, OrderStatus, utcnow
from .notifications import NullNotifier

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: frozenset([OrderStatus.FULFILLED, OrderStatus.CANCELLED]),
    OrderStatus.FULFILLED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def check_transition(order_id, current, target):
    current, target = OrderStatus(current), OrderStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(order_id, current.value, target.value)


class OrderLifecycle:
    def __init__(self, session_factory, ledger, codec, notifier=None):
        self.session_factory = session_factory
        self.ledger = ledger
        self.codec = codec
        self.notifier = notifier or NullNotifier()

    # --- Reads ---

    def get_order(self, order_id):
        with self.session_factory() as session:
            order = session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def list_orders(self, status=None, user_id=None):
        stmt = select(Order)
        if status:
            stmt = stmt.where(Order.status == OrderStatus(status).value)
        if user_id:
            stmt = stmt.where(Order.user_id == user_id)
        stmt = stmt.order_by(Order.created_at.desc())
        with self.session_factory() as session:
            return list(session.execute(stmt).scalars())

    # --- Transitions ---

    def update_status(self, order_id, target):
        """Move an order to ``fulfilled`` or ``cancelled``. Cancelling returns its stock."""
        target = OrderStatus(target)
        order = self.get_order(order_id)
        check_transition(order.id, order.status, target)

        if target is OrderStatus.FULFILLED:
            return self._fulfil(order.id, pickup=False)
        return self._cancel(order)

    def verify_pickup(self, token):
        """Check a scanned pickup token and fulfil its order."""
        claim = self.codec.verify(token)
        order = self.get_order(claim.order_id)
        if order.status == OrderStatus.FULFILLED.value:
            raise AlreadyFulfilledError(order.id)
        if order.status == OrderStatus.CANCELLED.value:
            raise AlreadyCancelledError(order.id)
        return self._fulfil(order.id, pickup=True)

    def _move_from_pending(self, session, order_id, target, **values):
        result = session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _rejection(self, order_id, current, target, pickup):
        if pickup and current == OrderStatus.FULFILLED.value:
            return AlreadyFulfilledError(order_id)
        if pickup and current == OrderStatus.CANCELLED.value:
            return AlreadyCancelledError(order_id)
        return InvalidTransitionError(order_id, current, target.value)

    def _fulfil(self, order_id, pickup):
        with self.session_factory() as session:
            changed = self._move_from_pending(
                session, order_id, OrderStatus.FULFILLED, fulfilled_at=utcnow()
            )
            session.commit()
            order = session.get(Order, order_id)

        if not changed:
            # Another request finished the order between our read and the update.
            raise self._rejection(order_id, order.status, OrderStatus.FULFILLED, pickup)

        logger.info("Order %s fulfilled%s", order_id, " via pickup scan" if pickup else "")
        self.notifier.publish_order_fulfilled(order_id)
        return order

    def _cancel(self, order):
        requests = [(line.menu_item_id, line.quantity) for line in order.lines]

        def cancel(batch):
            if not self._move_from_pending(batch.session, order.id, OrderStatus.CANCELLED):
                current = batch.session.get(Order, order.id)
                raise self._rejection(order.id, current.status, OrderStatus.CANCELLED, pickup=False)
            batch.release(requests)

        self.ledger.with_atomic_batch([item_id for item_id, _ in requests], cancel)
        logger.info("Order %s cancelled, released %d line(s)", order.id, len(requests))
        return self.get_order(order.id)
