# --- Imports ---
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

import pika
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

# Internal imports from sibling modules
from . import config
from .consumers import start_consumer_thread
from .database import Base, SessionLocal
from .errors import (
    AlreadyCancelledError,
    AlreadyFulfilledError,
    CanteenError,
    EmptyOrderError,
    InsufficientStockError,
    InvalidMenuItemError,
    InvalidQuantityError,
    InvalidTransitionError,
    ItemsNotFoundError,
    MalformedTokenError,
    MenuItemInUseError,
    MenuItemNotFoundError,
    OrderNotFoundError,
    OrderPersistenceError,
    ReservationConflictError,
    SignatureMismatchError,
)
from .inventory import InventoryLedger
from .lifecycle import OrderLifecycle
from .messaging.bus import RabbitMQNotifier
from .models import OrderStatus, utcnow
from .notifications import MANAGEMENT_ROOM, WebSocketHub
from .orders import OrderPlacementService, UserIdentity
from .serializers import item_to_dict, order_to_dict
from .tokens import TokenCodec

logger = logging.getLogger(__name__)


# --- Request Models ---
class MenuItemCreate(BaseModel):
    """Pydantic model for adding a dish to the menu."""
    name: str
    description: str
    price: Decimal
    category: str
    total_count: int


class MenuItemUpdate(BaseModel):
    """Partial update; availability is derived from the remaining count and cannot be sent."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    category: Optional[str] = None
    total_count: Optional[int] = None
    remaining_count: Optional[int] = None


class OrderLineRequest(BaseModel):
    menu_item_id: str
    quantity: int


class PlaceOrderRequest(BaseModel):
    """Pydantic model for placing an order from the cart."""
    items: list[OrderLineRequest] = []
    idempotency_key: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class VerifyQRRequest(BaseModel):
    qr_code: str


# --- Error mapping ---
ERROR_STATUS_CODES = {
    EmptyOrderError: 400,
    InvalidQuantityError: 400,
    ItemsNotFoundError: 400,
    InsufficientStockError: 409,
    InvalidTransitionError: 409,
    AlreadyFulfilledError: 409,
    AlreadyCancelledError: 409,
    OrderNotFoundError: 404,
    MalformedTokenError: 400,
    SignatureMismatchError: 400,
    MenuItemNotFoundError: 404,
    InvalidMenuItemError: 400,
    MenuItemInUseError: 409,
    ReservationConflictError: 503,
    OrderPersistenceError: 500,
}


async def canteen_error_handler(request: Request, exc: CanteenError) -> JSONResponse:
    """Map CanteenError subclasses to HTTP responses with a stable error code."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content = {"detail": str(exc), "code": exc.code}
    if isinstance(exc, InsufficientStockError):
        content["items"] = exc.item_names
    elif isinstance(exc, ItemsNotFoundError):
        content["item_ids"] = exc.item_ids
    return JSONResponse(status_code=status_code, content=content)


# --- Dependencies ---
def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_name: str = Header(""),
    x_user_email: str = Header(""),
    x_user_role: str = Header("user"),
) -> UserIdentity:
    """Identity is established upstream and forwarded in X-User-* headers."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Access denied. No identity provided.")
    return UserIdentity(id=x_user_id, name=x_user_name, email=x_user_email, role=x_user_role)


def require_admin(user: UserIdentity = Depends(get_current_user)) -> UserIdentity:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied. Admin role required.")
    return user


def websocket_identity(websocket: WebSocket) -> Optional[UserIdentity]:
    """Reads the same X-User-* headers as get_current_user; None when no identity was forwarded."""
    headers = websocket.headers
    if not headers.get("x-user-id"):
        return None
    return UserIdentity(
        id=headers["x-user-id"],
        name=headers.get("x-user-name", ""),
        email=headers.get("x-user-email", ""),
        role=headers.get("x-user-role", "user"),
    )


def get_ledger(request: Request) -> InventoryLedger:
    return request.app.state.ledger


def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.lifecycle


def get_placement(request: Request) -> OrderPlacementService:
    return request.app.state.placement


router = APIRouter()


# --- Endpoints ---
@router.get("/")
def root():
    """Health check endpoint to confirm the canteen service is operational."""
    return {"message": "Canteen service is running"}


@router.get("/health")
def health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}


@router.get("/api/v1/menu/items")
def list_items(
    category: Optional[str] = None,
    available: Optional[bool] = None,
    ledger: InventoryLedger = Depends(get_ledger),
):
    """Current menu with live stock, optionally filtered by category or availability."""
    return [item_to_dict(item) for item in ledger.list_items(category=category, available=available)]


@router.get("/api/v1/menu/categories")
def list_categories(ledger: InventoryLedger = Depends(get_ledger)):
    return ledger.list_categories()


@router.get("/api/v1/menu/items/{item_id}")
def get_item(item_id: str, ledger: InventoryLedger = Depends(get_ledger)):
    return item_to_dict(ledger.get_item(item_id))


@router.post("/api/v1/menu/items", status_code=201)
def create_item(
    req: MenuItemCreate,
    admin: UserIdentity = Depends(require_admin),
    ledger: InventoryLedger = Depends(get_ledger),
):
    item = ledger.create_item(
        name=req.name,
        description=req.description,
        price=req.price,
        category=req.category,
        total_count=req.total_count,
    )
    return item_to_dict(item)


@router.patch("/api/v1/menu/items/{item_id}")
def update_item(
    item_id: str,
    req: MenuItemUpdate,
    admin: UserIdentity = Depends(require_admin),
    ledger: InventoryLedger = Depends(get_ledger),
):
    """
    Applies a partial update.
    - Remaining count is clamped to the total count.
    - Clients are told about the new item and, if it changed, the new count.
    """
    return item_to_dict(ledger.update_item(item_id, req.model_dump(exclude_unset=True)))


@router.delete("/api/v1/menu/items/{item_id}")
def delete_item(
    item_id: str,
    admin: UserIdentity = Depends(require_admin),
    ledger: InventoryLedger = Depends(get_ledger),
):
    ledger.delete_item(item_id)
    return {"status": "deleted", "id": item_id}


@router.post("/api/v1/orders", status_code=201)
def place_order(
    req: PlaceOrderRequest,
    user: UserIdentity = Depends(get_current_user),
    placement: OrderPlacementService = Depends(get_placement),
):
    """
    Places an order for the signed-in user.
    - Prices come from the menu, never from the request.
    - Stock for all lines is reserved atomically; the response carries the pickup QR code.
    """
    lines = [(line.menu_item_id, line.quantity) for line in req.items]
    order = placement.place_order(user, lines, idempotency_key=req.idempotency_key)
    return order_to_dict(order)


@router.get("/api/v1/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    user_id: Optional[str] = None,
    user: UserIdentity = Depends(get_current_user),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Admins see every order; everyone else only their own."""
    if not user.is_admin:
        user_id = user.id
    return [order_to_dict(o) for o in lifecycle.list_orders(status=status, user_id=user_id)]


@router.post("/api/v1/orders/verify-qr")
def verify_qr(
    req: VerifyQRRequest,
    admin: UserIdentity = Depends(require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Scanned pickup code: check the signature, then fulfil the order."""
    return order_to_dict(lifecycle.verify_pickup(req.qr_code))


@router.get("/api/v1/orders/{order_id}")
def get_order(
    order_id: str,
    user: UserIdentity = Depends(get_current_user),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = lifecycle.get_order(order_id)
    if not user.is_admin and order.user_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied.")
    return order_to_dict(order)


@router.put("/api/v1/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    req: StatusUpdateRequest,
    admin: UserIdentity = Depends(require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    return order_to_dict(lifecycle.update_status(order_id, req.status))


@router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """
    Live menu counts and order events.
    Clients send {"action": "join-room" | "leave-room", "room": "<name>"};
    only admins may join the management room.
    """
    hub: WebSocketHub = websocket.app.state.hub
    user = websocket_identity(websocket)

    await hub.connect(websocket)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"detail": "Messages must be JSON"}})
                continue
            if not isinstance(message, dict):
                message = {}
            action, room = message.get("action"), message.get("room")

            if action == "join-room" and room:
                if room == MANAGEMENT_ROOM and not (user and user.is_admin):
                    await websocket.send_json({"event": "error", "data": {"detail": "Admin role required"}})
                    continue
                hub.join(websocket, room)
                await websocket.send_json({"event": "joined", "data": {"room": room}})
            elif action == "leave-room" and room:
                hub.leave(websocket, room)
                await websocket.send_json({"event": "left", "data": {"room": room}})
            else:
                await websocket.send_json({"event": "error", "data": {"detail": "Unknown action"}})
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)


# --- App Factory ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables defined in models.py if they don't exist
    Base.metadata.create_all(bind=app.state.session_factory.kw["bind"])
    await app.state.hub.start()

    if isinstance(app.state.notifier, RabbitMQNotifier):
        try:
            app.state.notifier.connect()
        except pika.exceptions.AMQPConnectionError:
            logger.error("RabbitMQ unavailable at start-up; events will be dropped until it returns")
        start_consumer_thread(app.state.hub)

    yield

    await app.state.hub.stop()
    app.state.notifier.close()


def create_app(session_factory=None, notifier=None, codec=None) -> FastAPI:
    """
    Builds the API around one shared ledger, lifecycle and placement service.
    Without an explicit notifier the NOTIFIER_BACKEND setting decides between
    the in-process WebSocket hub and RabbitMQ.
    """
    session_factory = session_factory or SessionLocal
    hub = WebSocketHub()
    if notifier is None:
        notifier = RabbitMQNotifier() if config.NOTIFIER_BACKEND == "rabbitmq" else hub
    codec = codec or TokenCodec(config.get_qr_secret)

    ledger = InventoryLedger(session_factory, notifier)

    app = FastAPI(title="Canteen Service", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.hub = hub
    app.state.notifier = notifier
    app.state.ledger = ledger
    app.state.lifecycle = OrderLifecycle(session_factory, ledger, codec, notifier)
    app.state.placement = OrderPlacementService(session_factory, ledger, codec, notifier)

    app.add_exception_handler(CanteenError, canteen_error_handler)
    app.include_router(router)
    return app


# --- App Instance ---
app = create_app()
