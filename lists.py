"""
Cart and favorites.

Both are ordered lists of book entries, at most one entry per book. A guest
keeps the list in the session cookie; a signed-in user keeps it embedded in
the user document. The services below only talk to a `ListRepository`, so
they never need to know which of the two they were handed.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, Request

import catalog
from database import collection, get_documents_by_ids, to_object_id
from errors import Conflict, InsufficientStock, NotFound
from security import resolve_identity

logger = logging.getLogger("bookstore.lists")


def _book_key(book_id: Any) -> str:
    oid = to_object_id(book_id)
    return str(oid) if oid is not None else str(book_id)


class ListRepository:
    """Entries are dicts with a string `book` id plus per-list values (cart: quantity)."""

    field: str

    def entries(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def find(self, book_key: str) -> Optional[Dict[str, Any]]:
        for entry in self.entries():
            if entry["book"] == book_key:
                return entry
        return None

    def add(self, book_key: str, values: Dict[str, Any]) -> bool:
        """Append an entry unless the book is already listed."""
        raise NotImplementedError

    def update(self, book_key: str, values: Dict[str, Any]) -> bool:
        """Overwrite values of an existing entry; False when the book is not listed."""
        raise NotImplementedError

    def remove(self, book_key: str) -> bool:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class SessionListRepository(ListRepository):
    def __init__(self, session: Dict[str, Any], field: str):
        self.session = session
        self.field = field

    def entries(self) -> List[Dict[str, Any]]:
        return [dict(e) for e in self.session.get(self.field) or []]

    def _store(self, entries: List[Dict[str, Any]]) -> None:
        self.session[self.field] = entries

    def add(self, book_key, values):
        entries = self.entries()
        if any(e["book"] == book_key for e in entries):
            return False
        entries.append({"book": book_key, **values})
        self._store(entries)
        return True

    def update(self, book_key, values):
        entries = self.entries()
        for entry in entries:
            if entry["book"] == book_key:
                entry.update(values)
                self._store(entries)
                return True
        return False

    def remove(self, book_key):
        entries = self.entries()
        kept = [e for e in entries if e["book"] != book_key]
        if len(kept) == len(entries):
            return False
        self._store(kept)
        return True

    def clear(self):
        self._store([])


class UserListRepository(ListRepository):
    """List embedded in a user document, changed with single-document atomic updates."""

    def __init__(self, user_id: str, field: str):
        self.field = field
        self.user_oid = to_object_id(user_id)
        if self.user_oid is None or collection("user").find_one({"_id": self.user_oid}, {"_id": 1}) is None:
            raise NotFound("User not found")

    def entries(self):
        doc = collection("user").find_one({"_id": self.user_oid}, {self.field: 1}) or {}
        return [{**e, "book": str(e["book"])} for e in doc.get(self.field) or []]

    def _touch(self) -> Dict[str, Any]:
        return {"updated_at": datetime.now(timezone.utc)}

    def add(self, book_key, values):
        book_oid = to_object_id(book_key)
        res = collection("user").update_one(
            {"_id": self.user_oid, f"{self.field}.book": {"$ne": book_oid}},
            {"$push": {self.field: {"book": book_oid, **values}}, "$set": self._touch()},
        )
        return res.modified_count > 0

    def update(self, book_key, values):
        book_oid = to_object_id(book_key)
        if book_oid is None:
            return False
        changes = {f"{self.field}.$.{k}": v for k, v in values.items()}
        res = collection("user").update_one(
            {"_id": self.user_oid, f"{self.field}.book": book_oid},
            {"$set": {**changes, **self._touch()}},
        )
        return res.matched_count > 0

    def remove(self, book_key):
        book_oid = to_object_id(book_key)
        if book_oid is None:
            return False
        res = collection("user").update_one(
            {"_id": self.user_oid, f"{self.field}.book": book_oid},
            {"$pull": {self.field: {"book": book_oid}}, "$set": self._touch()},
        )
        return res.modified_count > 0

    def clear(self):
        collection("user").update_one({"_id": self.user_oid}, {"$set": {self.field: [], **self._touch()}})


def list_repository(field: str):
    """FastAPI dependency factory choosing the repository for the caller."""
    def dependency(request: Request, user_id: Optional[str] = Depends(resolve_identity)) -> ListRepository:
        if user_id:
            return UserListRepository(user_id, field)
        return SessionListRepository(request.session, field)
    return dependency


cart_repository = list_repository("cart")
favorites_repository = list_repository("favorites")


def populate(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Join entries with their books; entries pointing at deleted books are left out."""
    books = get_documents_by_ids("book", [e["book"] for e in entries])
    joined = []
    for entry in entries:
        book = books.get(to_object_id(entry["book"]))
        if book is None:
            logger.warning("Skipping reference to missing book %s", entry["book"])
            continue
        joined.append({**entry, "book": catalog.public_book(book)})
    return joined


# ------------------------- Cart -------------------------------

def get_cart(repo: ListRepository) -> List[Dict[str, Any]]:
    return populate(repo.entries())


def add_to_cart(repo: ListRepository, book_id: str, quantity: int) -> List[Dict[str, Any]]:
    book = catalog.get_book(book_id)
    key = str(book["_id"])
    existing = repo.find(key)
    new_total = existing["quantity"] + quantity if existing else quantity
    if book["quantity"] < new_total:
        logger.warning("Cart add refused for book %s: %s requested, %s in stock", key, new_total, book["quantity"])
        raise InsufficientStock("Insufficient stock")
    if existing:
        stored = repo.update(key, {"quantity": new_total})
    else:
        stored = repo.add(key, {"quantity": quantity})
    if not stored:
        # another request changed this entry between the read and the write
        raise Conflict("Cart changed while adding, please retry")
    return get_cart(repo)


def update_cart_item(repo: ListRepository, book_id: str, quantity: int) -> List[Dict[str, Any]]:
    book = catalog.get_book(book_id)
    if book["quantity"] < quantity:
        raise InsufficientStock("Insufficient stock")
    if not repo.update(str(book["_id"]), {"quantity": quantity}):
        raise NotFound("Book not in cart")
    return get_cart(repo)


def remove_from_cart(repo: ListRepository, book_id: str) -> List[Dict[str, Any]]:
    if not repo.remove(_book_key(book_id)):
        raise NotFound("Book not in cart")
    return get_cart(repo)


def clear_cart(repo: ListRepository) -> None:
    repo.clear()


# ------------------------- Favorites --------------------------

def get_favorites(repo: ListRepository) -> List[Dict[str, Any]]:
    return populate(repo.entries())


def add_to_favorites(repo: ListRepository, book_id: str) -> Tuple[bool, List[Dict[str, Any]]]:
    book = catalog.get_book(book_id)
    added = repo.add(str(book["_id"]), {})
    return added, populate(repo.entries())


def remove_from_favorites(repo: ListRepository, book_id: str) -> Tuple[bool, List[Dict[str, Any]]]:
    removed = repo.remove(_book_key(book_id))
    return removed, populate(repo.entries())


def clear_favorites(repo: ListRepository) -> None:
    repo.clear()
