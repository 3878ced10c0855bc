import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import lists
import main
from errors import Conflict


def test_guest_cart_lives_in_session(client, make_book):
    book_id = make_book()
    res = client.post("/cart", json={"book_id": book_id, "quantity": 2})
    assert res.status_code == 200
    cart = res.json()["cart"]
    assert len(cart) == 1
    assert cart[0]["quantity"] == 2
    assert cart[0]["book"]["id"] == book_id
    assert cart[0]["book"]["stock_status"] == "inStock"

    assert client.get("/cart").json()["cart"][0]["quantity"] == 2


def test_adding_same_book_merges_quantity(client, make_book):
    book_id = make_book(quantity=5)
    client.post("/cart", json={"book_id": book_id, "quantity": 2})
    res = client.post("/cart", json={"book_id": book_id, "quantity": 3})
    assert res.status_code == 200
    assert [line["quantity"] for line in res.json()["cart"]] == [5]


def test_add_beyond_stock_is_refused(client, make_book):
    book_id = make_book(quantity=3)
    client.post("/cart", json={"book_id": book_id, "quantity": 2})
    res = client.post("/cart", json={"book_id": book_id, "quantity": 2})
    assert res.status_code == 400
    assert res.json()["message"] == "Insufficient stock"
    assert client.get("/cart").json()["cart"][0]["quantity"] == 2


def test_add_validates_book_and_quantity(client, db):
    assert client.post("/cart", json={"book_id": str(ObjectId()), "quantity": 1}).status_code == 404
    assert client.post("/cart", json={"book_id": "garbage", "quantity": 1}).status_code == 404
    assert client.post("/cart", json={"book_id": str(ObjectId()), "quantity": 0}).status_code == 400


def test_update_sets_quantity(client, make_book):
    book_id = make_book(quantity=5)
    client.post("/cart", json={"book_id": book_id, "quantity": 1})
    res = client.put("/cart", json={"book_id": book_id, "quantity": 4})
    assert res.status_code == 200
    assert res.json()["cart"][0]["quantity"] == 4

    assert client.put("/cart", json={"book_id": book_id, "quantity": 6}).status_code == 400


def test_update_book_not_in_cart(client, make_book):
    book_id = make_book()
    res = client.put("/cart", json={"book_id": book_id, "quantity": 1})
    assert res.status_code == 404
    assert res.json()["message"] == "Book not in cart"


def test_remove_and_clear(client, make_book):
    first = make_book(title="Dune")
    second = make_book(title="Emma")
    client.post("/cart", json={"book_id": first})
    client.post("/cart", json={"book_id": second})

    res = client.delete(f"/cart/{first}")
    assert res.status_code == 200
    assert [line["book"]["id"] for line in res.json()["cart"]] == [second]
    assert client.delete(f"/cart/{first}").status_code == 404

    res = client.post("/cart/clear")
    assert res.status_code == 200
    assert client.get("/cart").json()["cart"] == []


def test_user_cart_is_stored_on_user(client, db, make_book, make_user):
    reader = make_user()
    book_id = make_book()
    res = client.post("/cart", json={"book_id": book_id, "quantity": 2}, headers=reader["headers"])
    assert res.status_code == 200

    stored = db.user.find_one({"_id": ObjectId(reader["id"])})
    assert stored["cart"] == [{"book": ObjectId(book_id), "quantity": 2}]

    # the session cart is a separate list
    assert client.get("/cart").json()["cart"] == []

    client.post("/cart", json={"book_id": book_id, "quantity": 1}, headers=reader["headers"])
    stored = db.user.find_one({"_id": ObjectId(reader["id"])})
    assert stored["cart"] == [{"book": ObjectId(book_id), "quantity": 3}]

    client.delete(f"/cart/{book_id}", headers=reader["headers"])
    assert db.user.find_one({"_id": ObjectId(reader["id"])})["cart"] == []


def test_deleted_books_are_left_out(client, db, make_book, make_user):
    reader = make_user()
    kept = make_book(title="Emma")
    gone = make_book(title="Dune")
    client.post("/cart", json={"book_id": kept}, headers=reader["headers"])
    client.post("/cart", json={"book_id": gone}, headers=reader["headers"])
    db.book.delete_one({"_id": ObjectId(gone)})

    cart = client.get("/cart", headers=reader["headers"]).json()["cart"]
    assert [line["book"]["id"] for line in cart] == [kept]


def test_token_of_deleted_user(client, db, make_user):
    reader = make_user()
    db.user.delete_one({"_id": ObjectId(reader["id"])})
    res = client.get("/cart", headers=reader["headers"])
    assert res.status_code == 404
    assert res.json()["message"] == "User not found"


def test_guests_do_not_share_carts(client, make_book):
    book_id = make_book()
    client.post("/cart", json={"book_id": book_id})
    with TestClient(main.app) as other:
        assert other.get("/cart").json()["cart"] == []
    assert len(client.get("/cart").json()["cart"]) == 1


def test_add_racing_another_request_conflicts(db, make_book):
    book_id = make_book(quantity=5)

    class RacedRepository(lists.SessionListRepository):
        def add(self, book_key, values):
            # a parallel request stored the entry first
            super().add(book_key, {"quantity": 1})
            return False

    repo = RacedRepository({}, "cart")
    with pytest.raises(Conflict):
        lists.add_to_cart(repo, book_id, 2)
    assert repo.entries() == [{"book": book_id, "quantity": 1}]


def test_add_conflict_is_reported(client, make_book, monkeypatch):
    book_id = make_book()
    monkeypatch.setattr(lists.SessionListRepository, "add", lambda self, book_key, values: False)
    res = client.post("/cart", json={"book_id": book_id})
    assert res.status_code == 409
    assert res.json()["message"] == "Cart changed while adding, please retry"
