"""Plain-dict views of the ORM rows, shared by the HTTP layer and the notifiers."""


def _money(value):
    return float(value) if value is not None else None


def _when(value):
    return value.isoformat() if value is not None else None


def item_to_dict(item):
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "price": _money(item.price),
        "category": item.category,
        "total_count": item.total_count,
        "remaining_count": item.remaining_count,
        "is_available": bool(item.is_available),
        "created_at": _when(item.created_at),
        "updated_at": _when(item.updated_at),
    }


def line_to_dict(line):
    return {
        "menu_item_id": line.menu_item_id,
        "item_name": line.item_name,
        "quantity": line.quantity,
        "price": _money(line.price),
        "total_price": _money(line.total_price),
    }


def order_to_dict(order):
    return {
        "id": order.id,
        "user_id": order.user_id,
        "user_name": order.user_name,
        "user_email": order.user_email,
        "items": [line_to_dict(line) for line in order.lines],
        "total_amount": _money(order.total_amount),
        "status": order.status,
        "qr_code": order.qr_code,
        "created_at": _when(order.created_at),
        "fulfilled_at": _when(order.fulfilled_at),
    }
