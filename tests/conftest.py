import os
import tempfile

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="bookstore-uploads-"))
os.environ.setdefault("SECRET_KEY", "test-secret")

import mongomock
from bson import ObjectId
import pytest
from fastapi.testclient import TestClient

import database
import mailer
import main
from schemas import Book


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient().bookstore
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def client(db):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []
    monkeypatch.setattr(mailer, "send_email", lambda **kwargs: sent.append(kwargs))
    return sent


@pytest.fixture
def make_book(db):
    def _make(**overrides):
        fields = {"name": "Dune", "title": "Dune", "category": "Science Fiction", "price": 10.0, "quantity": 5}
        fields.update(overrides)
        return str(database.create_document("book", Book(**fields)))
    return _make


@pytest.fixture
def make_user(client, db):
    counter = {"n": 0}

    def _make(role="user", email=None):
        counter["n"] += 1
        payload = {
            "name": f"Reader {counter['n']}",
            "email": email or f"reader{counter['n']}@example.com",
            "password": "s3cret-pass",
            "phone": "01000000000",
            "address": "12 Nile St",
            "age": 30,
        }
        res = client.post("/auth/register", json=payload)
        assert res.status_code == 201, res.text
        body = res.json()
        if role != "user":
            db.user.update_one({"_id": ObjectId(body["user"]["id"])}, {"$set": {"role": role}})
        return {"id": body["user"]["id"], "token": body["token"], "headers": {"Authorization": f"Bearer {body['token']}"}}
    return _make


@pytest.fixture
def stock_of(db):
    def _stock(book_id):
        return db.book.find_one({"_id": ObjectId(book_id)})["quantity"]
    return _stock
