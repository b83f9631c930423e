from fastapi.testclient import TestClient

from digivault.main import app
from digivault.db.session import Base, engine


def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def register(client: TestClient, email: str, password: str = "secretpass") -> str:
    r = client.post("/auth/register", json={"email": email, "password": password})
    assert r.status_code == 201
    return r.json()["access_token"]


def promote_first_user_to_admin():
    with engine.begin() as conn:
        conn.exec_driver_sql("UPDATE users SET role='admin' WHERE id=1")


def test_admin_routes_reject_buyers_and_anonymous_callers():
    reset_db()
    client = TestClient(app)
    register(client, "admin@example.com")
    user_headers = bearer(register(client, "user@example.com"))

    order = {"id": 1, "buyer": {"id": 2, "email": "user@example.com"}, "items": [{"product_id": 1}]}
    admin_calls = [
        ("post", "/products/", {"json": {"name": "Free stuff"}}),
        ("get", "/products/", {}),
        ("post", "/products/1/files", {"files": {"file": ("a.zip", b"zip", "application/zip")}}),
        ("get", "/files/usage", {}),
        ("delete", "/files/1", {}),
        ("get", "/grants/", {}),
        ("post", "/grants/1/revoke", {"json": {}}),
        ("post", "/grants/1/limit", {"json": {"extra_downloads": 100}}),
        ("get", "/licenses/analytics", {}),
        ("post", "/licenses/1/extend", {"json": {"extra_days": 365}}),
        ("post", "/orders/fulfill", {"json": order}),
        ("post", "/maintenance/cleanup", {}),
        ("get", "/users", {}),
    ]
    for method, url, kwargs in admin_calls:
        assert getattr(client, method)(url, headers=user_headers, **kwargs).status_code == 403, url
        assert getattr(client, method)(url, **kwargs).status_code == 401, url

    assert client.get("/me/downloads").status_code == 401


def test_admin_can_manage_roles():
    reset_db()
    client = TestClient(app)
    register(client, "admin@example.com")
    register(client, "user@example.com")
    promote_first_user_to_admin()
    login = client.post("/auth/login", json={"email": "admin@example.com", "password": "secretpass"})
    admin_headers = bearer(login.json()["access_token"])

    users = client.get("/users", headers=admin_headers)
    assert users.status_code == 200 and len(users.json()) == 2

    r = client.patch("/users/2/role", headers=admin_headers, json={"role": "admin"})
    assert r.status_code == 200 and r.json()["role"] == "admin"
    assert client.patch("/users/99/role", headers=admin_headers, json={"role": "admin"}).status_code == 404


def test_unknown_download_token_and_license_key():
    reset_db()
    client = TestClient(app)

    r = client.get("/downloads/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {"detail": "Download link not found.", "code": "not_found"}

    assert client.get("/downloads/does-not-exist/info").status_code == 404
    assert client.post("/licenses/info", json={"key": "NOPE-0000-0000-0000-0000"}).status_code == 404
    r_deact = client.post("/licenses/deactivate", json={"key": "NOPE-0000-0000-0000-0000"})
    assert r_deact.status_code == 404


def test_request_validation():
    reset_db()
    client = TestClient(app)
    register(client, "admin@example.com")
    promote_first_user_to_admin()
    login = client.post("/auth/login", json={"email": "admin@example.com", "password": "secretpass"})
    admin_headers = bearer(login.json()["access_token"])

    bad_orders = [
        {"id": 1, "buyer": {"id": 2, "email": "not-an-email"}, "items": [{"product_id": 1}]},
        {"id": 1, "buyer": {"id": 2, "email": "a@b.com"}, "items": []},
        {"id": 1, "buyer": {"id": 2, "email": "a@b.com"}, "items": [{"product_id": 1, "quantity": 0}]},
    ]
    for order in bad_orders:
        assert client.post("/orders/fulfill", headers=admin_headers, json=order).status_code == 422

    r_product = client.post("/products/", headers=admin_headers, json={"name": "X", "license_type": "lifetime"})
    assert r_product.status_code == 422

    r_ok = client.post("/products/", headers=admin_headers, json={"id": 40, "name": "Mirror"})
    assert r_ok.status_code == 201 and r_ok.json()["id"] == 40
    assert client.post("/products/", headers=admin_headers, json={"id": 40, "name": "Again"}).status_code == 409
