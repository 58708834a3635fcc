"""Inventory ledger: the only writer of menu-item stock counts.

All stock mutations run inside ``InventoryLedger.with_atomic_batch``, which
serialises work per item inside this process (sorted per-item locks) and
relies on the ``version`` column of ``menu_items`` to detect writers in other
processes. A conflicting batch is rolled back and retried from scratch.
"""

import logging
import math
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from .config import RESERVATION_MAX_ATTEMPTS, RESERVATION_RETRY_DELAY
from .errors import (
    InsufficientStockError,
    InvalidMenuItemError,
    ItemsNotFoundError,
    MenuItemInUseError,
    MenuItemNotFoundError,
    ReservationConflictError,
)
from .models import MenuItem, OrderLine, utcnow
from .notifications import NullNotifier
from .serializers import item_to_dict

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
PATCHABLE_FIELDS = frozenset(
    ["name", "description", "price", "category", "total_count", "remaining_count"]
)
# Driver messages that mark lock contention or a serialization failure.
CONFLICT_MARKERS = ("locked", "deadlock", "could not serialize", "lock wait timeout")


# --- Item state and validation ---


@dataclass(frozen=True)
class ItemState:
    """Editable fields of a menu item, detached from the session."""

    name: str
    description: str
    price: Decimal
    category: str
    total_count: int
    remaining_count: int

    @property
    def is_available(self) -> bool:
        return self.remaining_count > 0

    @classmethod
    def of(cls, item: MenuItem) -> "ItemState":
        return cls(
            name=item.name,
            description=item.description,
            price=Decimal(item.price),
            category=item.category,
            total_count=item.total_count,
            remaining_count=item.remaining_count,
        )


def _text(value, field, allow_empty=False):
    if not isinstance(value, str):
        raise InvalidMenuItemError(f"{field} must be a string")
    value = value.strip()
    if not value and not allow_empty:
        raise InvalidMenuItemError(f"{field} cannot be empty")
    return value


def _price(value):
    if isinstance(value, bool) or value is None:
        raise InvalidMenuItemError("Price must be a number")
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise InvalidMenuItemError("Price must be a number") from None
    if not price.is_finite() or price <= 0:
        raise InvalidMenuItemError("Price must be positive")
    return price.quantize(CENT)


def _count(value, field):
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, float) and math.isfinite(value) and value.is_integer():
            value = int(value)
        else:
            raise InvalidMenuItemError(f"{field} must be an integer")
    if value < 0:
        raise InvalidMenuItemError(f"{field} must be non-negative")
    return value


def new_item_state(name, description, price, category, total_count) -> ItemState:
    """Validate a new menu item; it starts fully stocked."""
    total = _count(total_count, "Total count")
    return ItemState(
        name=_text(name, "Name"),
        description=_text(description, "Description"),
        price=_price(price),
        category=_text(category, "Category").lower(),
        total_count=total,
        remaining_count=total,
    )


def apply_patch(state: ItemState, patch: dict) -> ItemState:
    """Return ``state`` with ``patch`` applied and the stock invariants re-established.

    ``remaining_count`` is clamped to ``total_count``, so lowering the total
    also lowers what is left. Availability is derived and cannot be patched.
    """
    unknown = sorted(set(patch) - PATCHABLE_FIELDS)
    if unknown:
        raise InvalidMenuItemError(f"Fields cannot be updated: {', '.join(unknown)}")

    changes = {}
    if "name" in patch:
        changes["name"] = _text(patch["name"], "Name")
    if "description" in patch:
        changes["description"] = _text(patch["description"], "Description", allow_empty=True)
    if "price" in patch:
        changes["price"] = _price(patch["price"])
    if "category" in patch:
        changes["category"] = _text(patch["category"], "Category").lower()

    total = _count(patch["total_count"], "Total count") if "total_count" in patch else state.total_count
    remaining = (
        _count(patch["remaining_count"], "Remaining count")
        if "remaining_count" in patch
        else state.remaining_count
    )
    changes["total_count"] = total
    changes["remaining_count"] = min(remaining, total)
    return replace(state, **changes)


def is_write_conflict(exc) -> bool:
    """True when a fresh attempt can succeed: a lost optimistic update or lock contention."""
    if isinstance(exc, StaleDataError):
        return True
    message = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in message for marker in CONFLICT_MARKERS)


def merge_requests(requests):
    """Collapse repeated item ids into one (item_id, quantity) pair, keeping first-seen order."""
    merged = {}
    for item_id, quantity in requests:
        merged[item_id] = merged.get(item_id, 0) + quantity
    return list(merged.items())


# --- Locking ---


class KeyedLocks:
    """One lock per key, always acquired in sorted order to rule out deadlocks.

    Each entry counts its holders and waiters and is dropped when the last
    one leaves, so only keys in use are kept.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, users]

    def __len__(self):
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, keys):
        keys = sorted(set(keys))
        with self._guard:
            entries = []
            for key in keys:
                entry = self._locks.setdefault(key, [threading.Lock(), 0])
                entry[1] += 1
                entries.append(entry)
        acquired = []
        try:
            for lock, _ in entries:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            with self._guard:
                for key, entry in zip(keys, entries):
                    entry[1] -= 1
                    if entry[1] == 0:
                        del self._locks[key]


class StockBatch:
    """Locked rows for one atomic batch plus the changes to announce after commit."""

    def __init__(self, session, items):
        self.session = session
        self.items = items
        self.stock_changed = {}
        self.edited = {}

    def require(self, item_ids):
        missing = [item_id for item_id in item_ids if item_id not in self.items]
        if missing:
            raise ItemsNotFoundError(missing)
        return [self.items[item_id] for item_id in item_ids]

    def reserve(self, requests):
        """Decrement every requested item, or none of them."""
        requests = merge_requests(requests)
        self.require([item_id for item_id, _ in requests])
        short = [
            self.items[item_id].name
            for item_id, quantity in requests
            if self.items[item_id].remaining_count < quantity
        ]
        if short:
            raise InsufficientStockError(short)

        now = utcnow()
        for item_id, quantity in requests:
            item = self.items[item_id]
            item.set_remaining(item.remaining_count - quantity, now)
            self.stock_changed[item_id] = item

    def release(self, requests):
        """Give stock back, never beyond an item's total. Deleted items are skipped."""
        now = utcnow()
        for item_id, quantity in merge_requests(requests):
            item = self.items.get(item_id)
            if item is None:
                logger.warning("Cannot release %d of deleted item %s", quantity, item_id)
                continue
            item.set_remaining(item.remaining_count + quantity, now)
            self.stock_changed[item_id] = item

    def assign(self, item, state: ItemState):
        """Write an admin-edited state back to the locked row."""
        before = item.remaining_count
        item.name = state.name
        item.description = state.description
        item.price = state.price
        item.category = state.category
        item.total_count = state.total_count
        item.set_remaining(state.remaining_count)
        self.edited[item.id] = item
        if item.remaining_count != before:
            self.stock_changed[item.id] = item


class InventoryLedger:
    def __init__(
        self,
        session_factory,
        notifier=None,
        max_attempts=RESERVATION_MAX_ATTEMPTS,
        retry_delay=RESERVATION_RETRY_DELAY,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or NullNotifier()
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._locks = KeyedLocks()

    # --- Atomic stock batches ---

    def with_atomic_batch(self, item_ids, fn):
        """Run ``fn(batch)`` in one transaction over the locked ``item_ids`` rows.

        Domain errors raised by ``fn`` roll back and propagate untouched.
        Version conflicts and lock contention are retried up to ``max_attempts`` times and
        then surface as ``ReservationConflictError``. Stock events are
        published after commit while the item locks are still held, so
        same-item events always leave in commit order.
        """
        keys = sorted(set(item_ids))
        with self._locks.hold(keys):
            attempt = 0
            while True:
                attempt += 1
                session = self.session_factory()
                try:
                    stmt = select(MenuItem).where(MenuItem.id.in_(keys)).with_for_update()
                    items = {item.id: item for item in session.execute(stmt).scalars()}
                    batch = StockBatch(session, items)
                    result = fn(batch)
                    session.commit()
                except (StaleDataError, OperationalError) as exc:
                    session.rollback()
                    if not is_write_conflict(exc):
                        raise
                    if attempt >= self.max_attempts:
                        logger.error(
                            "Stock batch on %s failed after %d attempts", keys, attempt, exc_info=True
                        )
                        raise ReservationConflictError(keys, attempt) from exc
                    logger.warning("Stock batch conflict on %s (attempt %d), retrying", keys, attempt)
                    time.sleep(self.retry_delay * attempt)
                    continue
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()

                self._announce(batch)
                return result

    def _announce(self, batch):
        for item in batch.stock_changed.values():
            self.notifier.publish_stock_delta(item.id, item.remaining_count)
        for item in batch.edited.values():
            self.notifier.publish_item_updated(item_to_dict(item))

    def reserve(self, requests):
        requests = merge_requests(requests)
        self.with_atomic_batch([item_id for item_id, _ in requests], lambda batch: batch.reserve(requests))

    def release(self, requests):
        requests = merge_requests(requests)
        self.with_atomic_batch([item_id for item_id, _ in requests], lambda batch: batch.release(requests))

    # --- Reads ---

    def list_items(self, category=None, available=None):
        stmt = select(MenuItem)
        if category:
            stmt = stmt.where(MenuItem.category == category.lower())
        if available is not None:
            stmt = stmt.where(MenuItem.remaining_count > 0 if available else MenuItem.remaining_count <= 0)
        stmt = stmt.order_by(MenuItem.created_at.desc(), MenuItem.name)
        with self.session_factory() as session:
            return list(session.execute(stmt).scalars())

    def list_categories(self):
        stmt = select(MenuItem.category).distinct().order_by(MenuItem.category)
        with self.session_factory() as session:
            return [category for category in session.execute(stmt).scalars() if category]

    def get_item(self, item_id):
        with self.session_factory() as session:
            item = session.get(MenuItem, item_id)
        if item is None:
            raise MenuItemNotFoundError(item_id)
        return item

    # --- Administration ---

    def create_item(self, name, description, price, category, total_count):
        state = new_item_state(name, description, price, category, total_count)
        now = utcnow()
        item = MenuItem(
            id=uuid.uuid4().hex,
            name=state.name,
            description=state.description,
            price=state.price,
            category=state.category,
            total_count=state.total_count,
            remaining_count=state.remaining_count,
            is_available=state.is_available,
            created_at=now,
            updated_at=now,
        )
        with self.session_factory() as session:
            session.add(item)
            session.commit()
        logger.info("Created menu item %s (%s) with %d in stock", item.id, item.name, item.total_count)
        self.notifier.publish_item_updated(item_to_dict(item))
        return item

    def update_item(self, item_id, patch: dict):
        def edit(batch):
            item = batch.items.get(item_id)
            if item is None:
                raise MenuItemNotFoundError(item_id)
            batch.assign(item, apply_patch(ItemState.of(item), patch))
            return item

        item = self.with_atomic_batch([item_id], edit)
        logger.info("Updated menu item %s: %s", item_id, ", ".join(sorted(patch)) or "no fields")
        return item

    def delete_item(self, item_id):
        def remove(batch):
            item = batch.items.get(item_id)
            if item is None:
                raise MenuItemNotFoundError(item_id)
            referenced = batch.session.execute(
                select(OrderLine.id).where(OrderLine.menu_item_id == item_id).limit(1)
            ).first()
            if referenced is not None:
                raise MenuItemInUseError(item_id)
            batch.session.delete(item)

        self.with_atomic_batch([item_id], remove)
        logger.info("Deleted menu item %s", item_id)
