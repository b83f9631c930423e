import pytest
from fastapi.testclient import TestClient

from digivault.main import app
from digivault.db.session import Base, engine


@pytest.fixture(autouse=True, scope="module")
def setup_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def test_register_and_login_and_refresh_and_logout():
    client = TestClient(app)

    # Register
    reg_payload = {"email": "Buyer@Example.com", "password": "secretpass", "full_name": "Ada Buyer"}
    r = client.post("/auth/register", json=reg_payload)
    assert r.status_code == 201
    assert "access_token" in r.json()
    # Refresh cookie set
    assert "refresh_token=" in r.headers.get("set-cookie", "")

    # Duplicate email is rejected regardless of case
    dup = client.post("/auth/register", json={"email": "buyer@example.com", "password": "secretpass"})
    assert dup.status_code == 409

    # Login
    r2 = client.post("/auth/login", json={"email": "buyer@example.com", "password": "secretpass"})
    assert r2.status_code == 200
    token = r2.json()["access_token"]

    me = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "buyer@example.com"
    assert me.json()["full_name"] == "Ada Buyer"
    assert me.json()["role"] == "user"

    # Refresh (reads cookie automatically)
    r3 = client.post("/auth/refresh")
    assert r3.status_code == 200
    assert "access_token" in r3.json()

    # Logout (delete cookie)
    r4 = client.post("/auth/logout")
    assert r4.status_code == 204
    # Further refresh should fail
    r5 = client.post("/auth/refresh")
    assert r5.status_code in (401, 403)


def test_wrong_password_and_bad_tokens():
    client = TestClient(app)
    client.post("/auth/register", json={"email": "other@example.com", "password": "secretpass"})

    assert client.post("/auth/login", json={"email": "other@example.com", "password": "nope-nope"}).status_code == 401
    assert client.post("/auth/login", json={"email": "ghost@example.com", "password": "secretpass"}).status_code == 401

    assert client.get("/users/me").status_code == 401
    assert client.get("/users/me", headers={"Authorization": "Bearer garbage"}).status_code == 401
