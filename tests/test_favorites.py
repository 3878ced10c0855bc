from bson import ObjectId


def test_add_is_idempotent(client, make_book):
    book_id = make_book()
    res = client.post("/favorites", json={"book_id": book_id})
    assert res.status_code == 200
    assert res.json()["is_added"] is True
    assert len(res.json()["favorites"]) == 1

    res = client.post("/favorites", json={"book_id": book_id})
    assert res.status_code == 200
    assert res.json()["is_added"] is False
    assert res.json()["message"] == "Already in favorites"
    assert len(res.json()["favorites"]) == 1


def test_add_unknown_book(client, db):
    res = client.post("/favorites", json={"book_id": str(ObjectId())})
    assert res.status_code == 404
    assert res.json()["message"] == "Book not found"


def test_remove_reports_whether_anything_changed(client, make_book):
    book_id = make_book()
    res = client.delete(f"/favorites/{book_id}")
    assert res.status_code == 200
    assert res.json()["is_removed"] is False

    client.post("/favorites", json={"book_id": book_id})
    res = client.delete(f"/favorites/{book_id}")
    assert res.json()["is_removed"] is True
    assert res.json()["favorites"] == []


def test_user_favorites_and_clear(client, db, make_book, make_user):
    reader = make_user()
    first = make_book(title="Dune")
    second = make_book(title="Emma")
    client.post("/favorites", json={"book_id": first}, headers=reader["headers"])
    res = client.post("/favorites", json={"book_id": second}, headers=reader["headers"])
    assert [f["book"]["title"] for f in res.json()["favorites"]] == ["Dune", "Emma"]

    stored = db.user.find_one({"_id": ObjectId(reader["id"])})
    assert stored["favorites"] == [{"book": ObjectId(first)}, {"book": ObjectId(second)}]
    assert client.get("/favorites").json()["favorites"] == []

    res = client.post("/favorites/clear", headers=reader["headers"])
    assert res.status_code == 200
    assert client.get("/favorites", headers=reader["headers"]).json()["favorites"] == []
