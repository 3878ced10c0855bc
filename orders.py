"""
Order placement and management.

Placing an order touches several documents: each book's stock, the order
itself and the buyer's user document. MongoDB only offers multi-document
transactions on replica sets, so the sequence runs as a saga instead:

1. every check (books exist, stock suffices, sale code) runs before any write;
2. stock is taken book by book with a guarded `$inc`, so two buyers can never
   both take the last copy; a refused book gives back what was already taken;
3. the order is inserted; if that fails all taken stock is given back;
4. the buyer's cart is cleared and the order linked in one update.

A failure after step 3 leaves a committed order. It is logged with the order
id and re-raised, never hidden.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pymongo import ReturnDocument

import catalog
import config
from database import collection, create_document, get_documents_by_ids, serialize_doc, to_object_id
from errors import Forbidden, InsufficientStock, NotFound, Unauthorized, ValidationFailed
from schemas import Order, OrderItem, OrderStatus, PaymentMethod
from security import is_admin, load_user

logger = logging.getLogger("bookstore.orders")

UPDATABLE_FIELDS = ("government", "full_name", "address", "payment_method", "sale_code", "notes", "status")


class OrderItemIn(BaseModel):
    book: str
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    government: str = Field(..., min_length=1)
    full_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    payment_method: PaymentMethod
    sale_code: Optional[str] = None
    notes: Optional[str] = None
    items: Optional[List[OrderItemIn]] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderUpdate(BaseModel):
    government: Optional[str] = Field(None, min_length=1)
    full_name: Optional[str] = Field(None, min_length=1)
    address: Optional[str] = Field(None, min_length=1)
    payment_method: Optional[PaymentMethod] = None
    sale_code: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[OrderStatus] = None


# ------------------------- Views ------------------------------

def populate_orders(orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace book and user references with a short view of the current documents."""
    books = get_documents_by_ids("book", [i["book"] for o in orders for i in o.get("items", [])])
    users = get_documents_by_ids("user", [o["user"] for o in orders if o.get("user")])
    populated = []
    for order in orders:
        view = serialize_doc(order)
        for item, raw in zip(view["items"], order.get("items", [])):
            book = books.get(raw["book"])
            item["book"] = None if book is None else {
                "id": str(book["_id"]),
                "name": book.get("name"),
                "title": book.get("title"),
                "price": book.get("price"),
                "imgs": book.get("imgs", []),
                "category": book.get("category"),
            }
        user = users.get(order.get("user"))
        view["user"] = None if user is None else {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email")}
        populated.append(view)
    return populated


def populate_order(order: Dict[str, Any]) -> Dict[str, Any]:
    return populate_orders([order])[0]


# ------------------------- Access -----------------------------

def _get_order(order_id: str) -> Dict[str, Any]:
    oid = to_object_id(order_id)
    order = collection("order").find_one({"_id": oid}) if oid is not None else None
    if not order:
        raise NotFound("Order not found")
    return order


def _authorize(order: Dict[str, Any], user: Optional[Dict[str, Any]]) -> None:
    if is_admin(user):
        return
    if user is None or order.get("user") != user["_id"]:
        raise Forbidden("Not allowed to access this order")


# ------------------------- Placement --------------------------

def _requested_lines(payload: CreateOrderRequest, user: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if payload.items is not None:
        source = [{"book": i.book, "quantity": i.quantity} for i in payload.items]
    else:
        if user is None:
            raise NotFound("User not found")
        source = [{"book": e["book"], "quantity": e.get("quantity", 1)} for e in user.get("cart", [])]

    merged: Dict[str, int] = {}
    for line in source:
        key = str(line["book"])
        merged[key] = merged.get(key, 0) + int(line["quantity"])
    return [{"book": k, "quantity": q} for k, q in merged.items()]


def _apply_sale_code(total: float, sale_code: Optional[str]) -> float:
    if not sale_code:
        return total
    if sale_code != config.SALE_CODE:
        raise ValidationFailed("Invalid sale code")
    return total * config.SALE_CODE_MULTIPLIER


def _price_lines(lines: List[Dict[str, Any]]) -> List[OrderItem]:
    books = get_documents_by_ids("book", [line["book"] for line in lines])
    items = []
    for line in lines:
        book = books.get(to_object_id(line["book"]))
        if book is None:
            raise NotFound(f"Book not found: {line['book']}")
        if book["quantity"] < line["quantity"]:
            raise InsufficientStock(f"Insufficient stock for book: {book.get('title') or book.get('name')}")
        items.append(OrderItem(book=book["_id"], quantity=line["quantity"], price=book["price"]))
    return items


def _give_back(items: List[OrderItem]) -> None:
    for item in items:
        if not catalog.return_stock(item.book, item.quantity):
            logger.error("Could not give back %s of book %s: book no longer exists", item.quantity, item.book)


def _take_stock(items: List[OrderItem]) -> None:
    taken: List[OrderItem] = []
    for item in items:
        try:
            ok = catalog.take_stock(item.book, item.quantity)
        except Exception:
            logger.exception("Taking stock of book %s failed, giving back %d earlier lines", item.book, len(taken))
            _give_back(taken)
            raise
        if not ok:
            _give_back(taken)
            book = collection("book").find_one({"_id": item.book}) or {}
            raise InsufficientStock(f"Insufficient stock for book: {book.get('title') or book.get('name') or item.book}")
        taken.append(item)


def create_order(payload: CreateOrderRequest, user_id: Optional[str]) -> Dict[str, Any]:
    user = load_user(user_id)
    if user_id and user is None:
        raise NotFound("User not found")

    lines = _requested_lines(payload, user)
    if not lines:
        raise ValidationFailed("Cart/Items is empty")

    items = _price_lines(lines)
    total = _apply_sale_code(sum(i.price * i.quantity for i in items), payload.sale_code)

    order = Order(
        user=user["_id"] if user else None,
        items=items,
        total_amount=round(total, 2),
        government=payload.government,
        full_name=payload.full_name,
        address=payload.address,
        payment_method=payload.payment_method,
        sale_code=payload.sale_code or None,
        notes=payload.notes or None,
        status="pending",
    )

    _take_stock(items)
    try:
        order_id = create_document("order", order)
    except Exception:
        logger.exception("Saving order failed, giving back stock for %d lines", len(items))
        _give_back(items)
        raise

    if user:
        update: Dict[str, Any] = {"$push": {"orders": order_id}, "$set": {"updated_at": datetime.now(timezone.utc)}}
        if payload.items is None:
            update["$set"]["cart"] = []
        try:
            collection("user").update_one({"_id": user["_id"]}, update)
        except Exception:
            logger.exception("Order %s was saved and stock taken, but user %s was not updated", order_id, user["_id"])
            raise

    logger.info("Order %s placed: %d lines, total %.2f, user %s", order_id, len(items), order.total_amount, order.user)
    return populate_order(collection("order").find_one({"_id": order_id}))


# ------------------------- Queries ----------------------------

def get_all_orders(user_id: Optional[str]) -> List[Dict[str, Any]]:
    user = load_user(user_id)
    if user is None:
        raise Unauthorized("Sign in to list orders")
    query = {} if is_admin(user) else {"user": user["_id"]}
    orders = list(collection("order").find(query).sort([("created_at", -1), ("_id", -1)]))
    return populate_orders(orders)


def get_order_by_id(order_id: str, user_id: Optional[str]) -> Dict[str, Any]:
    order = _get_order(order_id)
    _authorize(order, load_user(user_id))
    return populate_order(order)


# ------------------------- Changes ----------------------------

def update_order_status(order_id: str, status: str, user_id: Optional[str]) -> Dict[str, Any]:
    order = _get_order(order_id)
    _authorize(order, load_user(user_id))
    if order.get("status") == "delivered" and status != "cancelled":
        raise ValidationFailed("A delivered order can only be cancelled")
    updated = collection("order").find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Order not found")
    logger.info("Order %s status %s -> %s", order_id, order.get("status"), status)
    return populate_order(updated)


def update_order(order_id: str, payload: OrderUpdate, user_id: Optional[str]) -> Dict[str, Any]:
    if not is_admin(load_user(user_id)):
        raise Forbidden("Admin only")
    order = _get_order(order_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if k in UPDATABLE_FIELDS}
    if changes:
        changes["updated_at"] = datetime.now(timezone.utc)
        order = collection("order").find_one_and_update(
            {"_id": order["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        if order is None:
            raise NotFound("Order not found")
        logger.info("Order %s edited: %s", order_id, ", ".join(sorted(k for k in changes if k != "updated_at")))
    return populate_order(order)


def delete_order(order_id: str, user_id: Optional[str]) -> None:
    order = _get_order(order_id)
    _authorize(order, load_user(user_id))

    # Removing first makes the delete the claim: a second concurrent delete finds nothing to restore.
    order = collection("order").find_one_and_delete({"_id": order["_id"]})
    if order is None:
        raise NotFound("Order not found")

    restored = 0
    try:
        for item in order.get("items", []):
            if not catalog.return_stock(item["book"], item["quantity"]):
                logger.warning("Order %s: book %s is gone, %s units not restored", order_id, item["book"], item["quantity"])
            restored += 1
        if order.get("user"):
            collection("user").update_one(
                {"_id": order["user"]},
                {"$pull": {"orders": order["_id"]}, "$set": {"updated_at": datetime.now(timezone.utc)}},
            )
    except Exception:
        logger.exception(
            "Order %s deleted but cleanup stopped after %d of %d lines; user %s may still reference it",
            order_id, restored, len(order.get("items", [])), order.get("user"),
        )
        raise
    logger.info("Order %s deleted, stock restored for %d lines", order_id, restored)
