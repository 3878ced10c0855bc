"""
Book catalog: validation of admin input, image storage and stock bookkeeping.

`stock_status` is never written on its own. Full saves go through the Book
schema, which derives it from quantity, and every quantity adjustment
finishes with `refresh_stock_status`.

Images are written only after the book fields passed validation, and files
no longer referenced by a book (replaced, deleted, or left by a failed save)
are removed from the upload directory.
"""

import logging
import os
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import UploadFile
from pydantic import ValidationError
from pymongo import ReturnDocument

import config
from database import collection, create_document, delete_document, get_document_by_id, get_documents, serialize_doc
from errors import NotFound, ValidationFailed
from schemas import Book, stock_status_for

logger = logging.getLogger("bookstore.catalog")

ALLOWED_IMAGE_EXTENSIONS = {".jpeg", ".jpg", ".png", ".gif"}
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif"}


def parse_price(value: Optional[str]) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Price must be a positive number or zero")
    if price < 0 or price != price:
        raise ValidationFailed("Price must be a positive number or zero")
    return price


def parse_quantity(value: Any) -> int:
    try:
        quantity = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationFailed("Quantity must be a positive integer or zero")
    if quantity < 0:
        raise ValidationFailed("Quantity must be a positive integer or zero")
    return quantity


def parse_offer(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        offer = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Offer percentage must be between 0 and 100")
    if not 0 <= offer <= 100:
        raise ValidationFailed("Offer percentage must be between 0 and 100")
    return offer


def public_book(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialized book with a stock status computed from its current quantity."""
    book = serialize_doc(doc)
    book["stock_status"] = stock_status_for(int(doc.get("quantity", 0)))
    return book


def get_book(book_id: str) -> Dict[str, Any]:
    doc = get_document_by_id("book", book_id)
    if not doc:
        raise NotFound("Book not found")
    return doc


def list_books() -> List[Dict[str, Any]]:
    return [public_book(b) for b in get_documents("book", sort=[("created_at", -1), ("_id", -1)])]


def read_images(files: Optional[List[UploadFile]]) -> List[Tuple[str, bytes]]:
    """Validate uploaded images and load them; nothing is written yet."""
    files = [f for f in (files or []) if f.filename]
    if len(files) > config.MAX_IMAGES_PER_BOOK:
        raise ValidationFailed(f"At most {config.MAX_IMAGES_PER_BOOK} images are allowed")

    pending = []
    for upload in files:
        ext = os.path.splitext(upload.filename)[1].lower()
        if ext not in ALLOWED_IMAGE_EXTENSIONS or (upload.content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
            raise ValidationFailed("Invalid file type. Only JPEG, JPG, PNG, and GIF are allowed.")
        content = upload.file.read()
        if len(content) > config.MAX_IMAGE_BYTES:
            raise ValidationFailed("Image exceeds the 5 MB limit")
        pending.append((ext, content))
    return pending


def write_images(pending: List[Tuple[str, bytes]]) -> List[str]:
    """Write validated images to the upload directory and return their public paths."""
    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    paths = []
    for ext, content in pending:
        filename = f"{int(time.time() * 1000)}-{secrets.token_hex(3)}{ext}"
        with open(os.path.join(config.UPLOAD_DIR, filename), "wb") as fh:
            fh.write(content)
        paths.append(f"/uploads/{filename}")
    return paths


def discard_images(paths: List[str]) -> None:
    for path in paths:
        if not path.startswith("/uploads/"):
            continue
        try:
            os.remove(os.path.join(config.UPLOAD_DIR, os.path.basename(path)))
        except FileNotFoundError:
            logger.warning("Image %s was already gone", path)


def _validated(doc: Dict[str, Any]) -> Book:
    data = {k: v for k, v in doc.items() if k in Book.model_fields}
    try:
        return Book(**data)
    except ValidationError as exc:
        raise ValidationFailed(exc.errors()[0]["msg"])


def add_book(fields: Dict[str, Any], uploads: Optional[List[UploadFile]] = None) -> Dict[str, Any]:
    missing = [k for k in ("name", "title", "category") if not (fields.get(k) or "").strip()]
    if missing or fields.get("price") in (None, "") or fields.get("quantity") in (None, ""):
        raise ValidationFailed("Required fields (name, title, category, price, quantity) are missing")
    book = _validated({
        "name": fields["name"].strip(),
        "title": fields["title"].strip(),
        "category": fields["category"].strip(),
        "code": (fields.get("code") or "").strip(),
        "description": (fields.get("description") or "").strip(),
        "price": parse_price(fields["price"]),
        "quantity": parse_quantity(fields["quantity"]),
        "offer": parse_offer(fields.get("offer")),
    })
    book.imgs = write_images(read_images(uploads))
    try:
        book_id = create_document("book", book)
    except Exception:
        discard_images(book.imgs)
        raise
    logger.info("Book %s added (%s)", book_id, book.title)
    return public_book(collection("book").find_one({"_id": book_id}))


def _save(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Re-validate a full book document and persist it; recomputes stock_status."""
    update = _validated(doc).model_dump()
    update["updated_at"] = datetime.now(timezone.utc)
    saved = collection("book").find_one_and_update(
        {"_id": doc["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    if saved is None:
        raise NotFound("Book not found")
    return public_book(saved)


def update_book(book_id: str, fields: Dict[str, Any], uploads: Optional[List[UploadFile]] = None) -> Dict[str, Any]:
    doc = get_book(book_id)
    for key in ("name", "title", "category", "code", "description"):
        if fields.get(key) is not None:
            doc[key] = fields[key].strip()
    if fields.get("price") is not None:
        doc["price"] = parse_price(fields["price"])
    if fields.get("quantity") is not None:
        doc["quantity"] = parse_quantity(fields["quantity"])
    if fields.get("offer") is not None:
        doc["offer"] = parse_offer(fields["offer"])
    _validated(doc)

    pending = read_images(uploads)
    replaced = []
    if pending:
        replaced = doc.get("imgs") or []
        doc["imgs"] = write_images(pending)
    try:
        book = _save(doc)
    except Exception:
        if pending:
            discard_images(doc["imgs"])
        raise
    discard_images(replaced)
    logger.info("Book %s updated", book_id)
    return book


def set_offer(book_id: str, offer: Any) -> Dict[str, Any]:
    if offer is None or offer == "":
        raise ValidationFailed("Invalid offer percentage")
    value = parse_offer(offer)
    doc = get_book(book_id)
    doc["offer"] = value
    return _save(doc)


def set_stock(book_id: str, quantity: Any) -> Dict[str, Any]:
    if quantity is None or quantity == "":
        raise ValidationFailed("Invalid quantity")
    value = parse_quantity(quantity)
    doc = get_book(book_id)
    doc["quantity"] = value
    book = _save(doc)
    logger.info("Stock of book %s set to %s (%s)", book_id, value, book["stock_status"])
    return book


def delete_book(book_id: str) -> None:
    doc = get_book(book_id)
    if not delete_document("book", doc["_id"]):
        raise NotFound("Book not found")
    discard_images(doc.get("imgs") or [])
    logger.info("Book %s deleted", book_id)


# ------------------------- Stock adjustments -----------------

def refresh_stock_status(book_oid) -> None:
    books = collection("book")
    books.update_one({"_id": book_oid, "quantity": {"$gt": 0}}, {"$set": {"stock_status": "inStock"}})
    books.update_one({"_id": book_oid, "quantity": {"$lte": 0}}, {"$set": {"stock_status": "outOfStock"}})


def take_stock(book_oid, quantity: int) -> bool:
    """Atomically decrement a book's quantity if enough is available."""
    taken = collection("book").find_one_and_update(
        {"_id": book_oid, "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
    )
    if taken is None:
        return False
    refresh_stock_status(book_oid)
    return True


def return_stock(book_oid, quantity: int) -> bool:
    """Add units back to a book; False when the book no longer exists."""
    res = collection("book").update_one(
        {"_id": book_oid},
        {"$inc": {"quantity": quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
    )
    if res.matched_count == 0:
        return False
    refresh_stock_status(book_oid)
    return True
