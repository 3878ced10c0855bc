from datetime import datetime, timedelta, timezone


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def register_payload(**overrides):
    payload = {
        "name": "Mona",
        "email": "mona@example.com",
        "password": "first-pass",
        "phone": "01011111111",
        "address": "3 Tahrir Sq",
        "age": 27,
    }
    payload.update(overrides)
    return payload


def test_register_returns_token_and_hides_password(client, db):
    res = client.post("/auth/register", json=register_payload())
    assert res.status_code == 201
    body = res.json()
    assert body["token"]
    assert body["user"]["email"] == "mona@example.com"
    assert body["user"]["role"] == "user"
    assert "password" not in body["user"]

    stored = db.user.find_one({"email": "mona@example.com"})
    assert stored["password_hash"] != "first-pass"
    assert "password" not in stored
    assert stored["cart"] == [] and stored["favorites"] == [] and stored["orders"] == []


def test_register_duplicate_email_conflicts(client):
    assert client.post("/auth/register", json=register_payload()).status_code == 201
    res = client.post("/auth/register", json=register_payload(name="Other"))
    assert res.status_code == 409
    assert res.json()["message"] == "Email already registered"


def test_register_missing_field_is_bad_request(client):
    payload = register_payload()
    del payload["phone"]
    res = client.post("/auth/register", json=payload)
    assert res.status_code == 400
    assert "phone" in res.json()["message"]


def test_login_success_and_uniform_failures(client):
    client.post("/auth/register", json=register_payload())

    ok = client.post("/auth/login", json={"email": "mona@example.com", "password": "first-pass"})
    assert ok.status_code == 200
    assert ok.json()["token"]

    wrong_password = client.post("/auth/login", json={"email": "mona@example.com", "password": "nope"})
    unknown_email = client.post("/auth/login", json={"email": "ghost@example.com", "password": "first-pass"})
    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json()["message"] == unknown_email.json()["message"]


def test_forget_password_unknown_email(client, sent_emails):
    res = client.post("/auth/forgetpassword", json={"email": "ghost@example.com"})
    assert res.status_code == 404
    assert sent_emails == []


def test_password_reset_flow(client, db, sent_emails):
    client.post("/auth/register", json=register_payload())

    res = client.post("/auth/forgetpassword", json={"email": "mona@example.com"})
    assert res.status_code == 200
    assert len(sent_emails) == 1
    assert sent_emails[0]["to"] == "mona@example.com"

    token = sent_emails[0]["text"].split("/auth/resetpassword/")[1].split()[0]
    stored = db.user.find_one({"email": "mona@example.com"})
    assert stored["reset_password_token"] != token
    assert stored["reset_password_expire"] > _utcnow()

    res = client.put(f"/auth/resetpassword/{token}", json={"password": "second-pass"})
    assert res.status_code == 200

    stored = db.user.find_one({"email": "mona@example.com"})
    assert "reset_password_token" not in stored
    assert client.post("/auth/login", json={"email": "mona@example.com", "password": "first-pass"}).status_code == 401
    assert client.post("/auth/login", json={"email": "mona@example.com", "password": "second-pass"}).status_code == 200

    # a used token cannot be replayed
    assert client.put(f"/auth/resetpassword/{token}", json={"password": "third-pass"}).status_code == 400


def test_reset_with_expired_token_fails(client, db, sent_emails):
    client.post("/auth/register", json=register_payload())
    client.post("/auth/forgetpassword", json={"email": "mona@example.com"})
    token = sent_emails[0]["text"].split("/auth/resetpassword/")[1].split()[0]

    db.user.update_one(
        {"email": "mona@example.com"},
        {"$set": {"reset_password_expire": _utcnow() - timedelta(minutes=1)}},
    )
    res = client.put(f"/auth/resetpassword/{token}", json={"password": "second-pass"})
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid or expired token"


def test_reset_with_unknown_token_fails(client):
    res = client.put("/auth/resetpassword/not-a-token", json={"password": "whatever"})
    assert res.status_code == 400


def test_self_registration_cannot_claim_admin(client, db):
    res = client.post("/auth/register", json=register_payload(role="admin"))
    assert res.status_code == 403
    assert db.user.count_documents({}) == 0


def test_admin_can_register_another_admin(client, db, make_user):
    admin = make_user(role="admin")
    res = client.post("/auth/register", json=register_payload(role="admin"), headers=admin["headers"])
    assert res.status_code == 201
    assert res.json()["user"]["role"] == "admin"

    member = make_user()
    res = client.post("/auth/register", json=register_payload(email="other@example.com", role="admin"),
                      headers=member["headers"])
    assert res.status_code == 403
