from fastapi.testclient import TestClient

from digivault.main import app
from digivault.core.settings import settings
from digivault.db.session import Base, SessionLocal, engine
from digivault.services.content_store import ContentStore
from digivault.services.grants import AccessGrantManager


INSTALLER = b"\x7fELF-installer-" + bytes(range(256)) * 40


def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def register(client: TestClient, email: str, password: str = "secretpass") -> str:
    r = client.post("/auth/register", json={"email": email, "password": password})
    assert r.status_code == 201
    return r.json()["access_token"]


def promote_user1_to_admin():
    with engine.begin() as conn:
        conn.exec_driver_sql("UPDATE users SET role='admin' WHERE id=1")


def setup_shop(client: TestClient, **product_fields):
    """Admin (id=1), buyer (id=2) and one product with an uploaded installer."""
    register(client, "admin@example.com")
    buyer_token = register(client, "buyer@example.com")
    promote_user1_to_admin()
    r_login = client.post("/auth/login", json={"email": "admin@example.com", "password": "secretpass"})
    admin_headers = bearer(r_login.json()["access_token"])

    payload = {"name": "Photo Editor Pro", "download_limit": 2}
    payload.update(product_fields)
    r_product = client.post("/products/", headers=admin_headers, json=payload)
    assert r_product.status_code == 201
    product = r_product.json()

    r_upload = client.post(
        f"/products/{product['id']}/files",
        headers=admin_headers,
        files={"file": ("PhotoEditor-2.0.zip", INSTALLER, "application/zip")},
        data={"is_primary": "true", "version": "2.0.0"},
    )
    assert r_upload.status_code == 201
    return admin_headers, bearer(buyer_token), product, r_upload.json()


def fulfill(client: TestClient, admin_headers: dict, product_id: int, quantity: int = 1, order_id: int = 1001):
    r = client.post(
        "/orders/fulfill",
        headers=admin_headers,
        json={
            "id": order_id,
            "buyer": {"id": 2, "email": "buyer@example.com", "name": "Buyer"},
            "items": [{"product_id": product_id, "quantity": quantity}],
        },
    )
    assert r.status_code == 200
    return r.json()


def test_purchase_to_download_end_to_end():
    reset_db()
    client = TestClient(app)
    admin_headers, buyer_headers, product, uploaded = setup_shop(client)

    assert uploaded["file_size"] == len(INSTALLER)
    assert uploaded["is_primary"] is True
    assert "file_path" not in uploaded

    report = fulfill(client, admin_headers, product["id"])
    assert report["success_count"] == 1 and report["error_count"] == 0
    assert report["successes"][0]["delivered"] is True
    token = report["successes"][0]["grant_tokens"][0]

    info = client.get(f"/downloads/{token}/info")
    assert info.status_code == 200
    assert info.json()["file"]["name"] == "PhotoEditor-2.0.zip"
    assert info.json()["downloads_remaining"] == 2

    # two full downloads, then the link is spent
    for remaining in (1, 0):
        r = client.get(f"/downloads/{token}")
        assert r.status_code == 200
        assert r.content == INSTALLER
        assert r.headers["content-type"] == "application/zip"
        assert "attachment" in r.headers["content-disposition"]
        assert r.headers["accept-ranges"] == "bytes"
        mine = client.get("/me/downloads", headers=buyer_headers).json()
        assert mine[0]["remaining_downloads"] == remaining

    r_spent = client.get(f"/downloads/{token}")
    assert r_spent.status_code == 403
    assert r_spent.json() == {"detail": "This download link is no longer valid.", "code": "invalid_access"}

    history = client.get("/me/download-history", headers=buyer_headers)
    assert history.status_code == 200
    assert [a["status"] for a in history.json()] == ["completed", "completed"]

    grant_id = mine[0]["id"]
    stats = client.get(f"/grants/{grant_id}/analytics", headers=admin_headers).json()
    assert stats["completed_attempts"] == 2
    assert stats["downloads_remaining"] == 0

    # more downloads can be granted by an admin
    r_limit = client.post(f"/grants/{grant_id}/limit", headers=admin_headers, json={"extra_downloads": 1})
    assert r_limit.status_code == 200
    assert r_limit.json()["remaining_downloads"] == 1
    assert client.get(f"/downloads/{token}").status_code == 200


def test_every_completed_range_request_is_charged():
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, _ = setup_shop(client)
    token = fulfill(client, admin_headers, product["id"])["successes"][0]["grant_tokens"][0]

    bad = client.get(f"/downloads/{token}", headers={"Range": f"bytes={len(INSTALLER)}-"})
    assert bad.status_code == 416
    assert bad.headers["content-range"] == f"bytes */{len(INSTALLER)}"

    short = {"Range": f"bytes=0-{len(INSTALLER) - 2}"}
    for _ in range(2):
        r = client.get(f"/downloads/{token}", headers=short)
        assert r.status_code == 206
        assert r.content == INSTALLER[:-1]
        assert r.headers["content-range"] == f"bytes 0-{len(INSTALLER) - 2}/{len(INSTALLER)}"

    assert client.get("/grants/", headers=admin_headers).json()[0]["downloads_used"] == 2
    assert client.get(f"/downloads/{token}", headers=short).status_code == 403


def test_interrupted_download_resumes_with_a_single_charge():
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, _ = setup_shop(client)
    token = fulfill(client, admin_headers, product["id"])["successes"][0]["grant_tokens"][0]

    db = SessionLocal()
    try:
        grants = AccessGrantManager(db)
        grant = grants.get_by_token(token)
        attempt = grants.begin_attempt(grant, grants.resolve_file(grant))
        grants.record_progress(attempt, 100)
        grants.fail_attempt(attempt, "client_disconnected")
        db.commit()
    finally:
        db.close()

    rest = client.get(f"/downloads/{token}", headers={"Range": "bytes=100-"})
    assert rest.status_code == 206
    assert rest.content == INSTALLER[100:]

    grant = client.get("/grants/", headers=admin_headers).json()[0]
    assert grant["downloads_used"] == 1
    attempts = client.get(f"/grants/{grant['id']}/attempts", headers=admin_headers).json()
    assert sorted(a["status"] for a in attempts) == ["completed", "failed"]


def _only_attempt(client: TestClient, admin_headers: dict):
    grant = client.get("/grants/", headers=admin_headers).json()[0]
    attempts = client.get(f"/grants/{grant['id']}/attempts", headers=admin_headers).json()
    assert len(attempts) == 1
    return grant, attempts[0]


def test_stalled_read_marks_attempt_failed(monkeypatch):
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, _ = setup_shop(client)
    token = fulfill(client, admin_headers, product["id"])["successes"][0]["grant_tokens"][0]

    monkeypatch.setattr(settings, "download_read_timeout_seconds", 0)
    r = client.get(f"/downloads/{token}")
    assert r.content == b""

    grant, attempt = _only_attempt(client, admin_headers)
    assert attempt["status"] == "failed"
    assert attempt["failure_reason"] == "read_timeout"
    assert grant["downloads_used"] == 0


def test_truncated_stream_marks_attempt_failed(monkeypatch):
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, _ = setup_shop(client)
    token = fulfill(client, admin_headers, product["id"])["successes"][0]["grant_tokens"][0]

    def truncated(self, obj, start=0, end=None, chunk_size=None):
        yield INSTALLER[:10]

    monkeypatch.setattr(ContentStore, "retrieve_stream", truncated)
    r = client.get(f"/downloads/{token}")
    assert r.content == INSTALLER[:10]

    grant, attempt = _only_attempt(client, admin_headers)
    assert attempt["status"] == "failed"
    assert attempt["failure_reason"] == "incomplete_read"
    assert attempt["bytes_transferred"] == 10
    assert grant["downloads_used"] == 0


def test_upload_over_size_limit_is_rejected(monkeypatch):
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, _ = setup_shop(client)

    monkeypatch.setattr(settings, "upload_max_bytes", 1024)
    r = client.post(
        f"/products/{product['id']}/files",
        headers=admin_headers,
        files={"file": ("big.zip", b"z" * 4096, "application/zip")},
    )
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"
    assert len(client.get(f"/products/{product['id']}/files", headers=admin_headers).json()) == 1


def test_progress_reporting():
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, uploaded = setup_shop(client)
    token = fulfill(client, admin_headers, product["id"])["successes"][0]["grant_tokens"][0]

    db = SessionLocal()
    try:
        grants = AccessGrantManager(db)
        grant = grants.get_by_token(token)
        attempt_id = grants.begin_attempt(grant, grants.resolve_file(grant)).id
        db.commit()
    finally:
        db.close()

    url = f"/downloads/{token}/attempts/{attempt_id}/progress"
    half = len(INSTALLER) // 2
    r = client.post(url, json={"bytes_transferred": half})
    assert r.status_code == 200
    assert r.json()["status"] == "started"
    assert r.json()["progress_percentage"] == round(half / len(INSTALLER) * 100, 2)

    r_done = client.post(url, json={"bytes_transferred": len(INSTALLER), "status": "completed"})
    assert r_done.status_code == 200
    assert r_done.json()["status"] == "completed"

    # finished attempts cannot be reported on again
    assert client.post(url, json={"bytes_transferred": 1}).status_code == 400
    assert client.post(f"/downloads/{token}/attempts/999/progress", json={"bytes_transferred": 1}).status_code == 404

    grants_list = client.get("/grants/", headers=admin_headers).json()
    assert grants_list[0]["downloads_used"] == 1


def test_grant_administration_blocks_downloads():
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, _ = setup_shop(client, download_limit=5)
    token = fulfill(client, admin_headers, product["id"])["successes"][0]["grant_tokens"][0]
    grant_id = client.get("/grants/", headers=admin_headers).json()[0]["id"]

    # the test client connects from a non-routable host name
    r_ip = client.post(f"/grants/{grant_id}/ips", headers=admin_headers, json={"ip": "10.0.0.0/8"})
    assert r_ip.status_code == 200
    assert r_ip.json()["allowed_ips"] == ["10.0.0.0/8"]
    assert client.get(f"/downloads/{token}").status_code == 403

    r_rm = client.delete(f"/grants/{grant_id}/ips", headers=admin_headers, params={"ip": "10.0.0.0/8"})
    assert r_rm.json()["allowed_ips"] == []
    assert client.get(f"/downloads/{token}").status_code == 200

    r_revoke = client.post(f"/grants/{grant_id}/revoke", headers=admin_headers, json={"reason": "chargeback"})
    assert r_revoke.status_code == 200
    assert r_revoke.json()["status"] == "revoked"
    assert r_revoke.json()["meta"]["revoked_reason"] == "chargeback"

    r_dead = client.get(f"/downloads/{token}")
    assert r_dead.status_code == 403
    assert r_dead.json()["detail"] == "This download link is no longer valid."
    assert client.get(f"/downloads/{token}/info").status_code == 403

    attempts = client.get(f"/grants/{grant_id}/attempts", headers=admin_headers).json()
    assert [a["status"] for a in attempts] == ["completed"]


def test_license_lifecycle_over_http():
    reset_db()
    client = TestClient(app)
    admin_headers, buyer_headers, product, _ = setup_shop(
        client, requires_license=True, license_type="multi_use", latest_version="2.0.0"
    )
    report = fulfill(client, admin_headers, product["id"], quantity=1)
    key = report["successes"][0]["license_keys"][0]
    assert key.startswith("PHOT-")

    r_valid = client.post("/licenses/validate", json={"key": key, "product_id": product["id"]})
    assert r_valid.json()["valid"] is True
    assert r_valid.json()["activations_remaining"] == 3
    assert client.post("/licenses/validate", json={"key": "NOPE-1111-2222-3333-4444"}).json() == {
        "valid": False,
        "status": None,
        "type": None,
        "expires_at": None,
        "activations_remaining": None,
    }

    for i in range(3):
        r = client.post("/licenses/activate", json={"key": key, "device": {"device_id": f"pc-{i}"}})
        assert r.status_code == 200
        assert r.json()["is_new_activation"] is True

    r_full = client.post("/licenses/activate", json={"key": key, "device": {"device_id": "pc-9"}})
    assert r_full.status_code == 409
    assert r_full.json()["code"] == "activation_limit_exceeded"

    r_again = client.post("/licenses/activate", json={"key": key, "device": {"device_id": "pc-0"}})
    assert r_again.status_code == 200
    assert r_again.json()["is_new_activation"] is False

    r_deact = client.post("/licenses/deactivate", json={"key": key, "device_id": "pc-1"})
    assert r_deact.json() == {"deactivated": True, "activations_remaining": 1}

    info = client.post("/licenses/info", json={"key": key})
    assert info.status_code == 200
    assert sorted(d["device_id"] for d in info.json()["devices"]) == ["pc-0", "pc-2"]

    mine = client.get("/me/licenses", headers=buyer_headers).json()
    assert [lic["license_key"] for lic in mine] == [key]

    license_id = mine[0]["id"]
    r_revoke = client.post(f"/licenses/{license_id}/revoke", headers=admin_headers, json={"reason": "refund"})
    assert r_revoke.json()["status"] == "revoked"
    r_blocked = client.post("/licenses/activate", json={"key": key, "device": {"device_id": "pc-7"}})
    assert r_blocked.status_code == 400
    assert r_blocked.json() == {"detail": "License key is not valid.", "code": "invalid_license"}

    analytics = client.get("/licenses/analytics", headers=admin_headers, params={"product_id": product["id"]})
    assert analytics.json()["revoked_licenses"] == 1

    product_stats = client.get(f"/products/{product['id']}/analytics", headers=admin_headers).json()
    assert product_stats["downloads"]["total"] == 1
    assert product_stats["licenses"]["total_licenses"] == 1
    assert product_stats["files"]["file_count"] == 1


def test_file_administration():
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, uploaded = setup_shop(client)
    file_id = uploaded["id"]

    assert client.get(f"/files/{file_id}/verify", headers=admin_headers).json() == {"id": file_id, "valid": True}

    r_update = client.patch(f"/files/{file_id}", headers=admin_headers, json={"description": "Windows build"})
    assert r_update.json()["description"] == "Windows build"

    r_move = client.post(
        f"/files/{file_id}/move", headers=admin_headers, json={"new_path": f"{product['id']}/archive/build.zip"}
    )
    assert r_move.status_code == 200
    assert client.get(f"/files/{file_id}/verify", headers=admin_headers).json()["valid"] is True

    usage = client.get("/files/usage", headers=admin_headers, params={"product_id": product["id"]}).json()
    assert usage["file_count"] == 1
    assert usage["total_bytes"] == len(INSTALLER)

    r_bad = client.post(
        f"/products/{product['id']}/files",
        headers=admin_headers,
        files={"file": ("payload.php", b"<?php system($_GET['c']); ?>", "application/x-php")},
    )
    assert r_bad.status_code == 400
    assert r_bad.json()["code"] == "validation_error"

    assert client.delete(f"/files/{file_id}", headers=admin_headers).status_code == 204
    assert client.get(f"/files/{file_id}", headers=admin_headers).status_code == 404
    assert client.get(f"/products/{product['id']}/files", headers=admin_headers).json() == []

    # a grant for a product without files has nothing to serve
    token = fulfill(client, admin_headers, product["id"])["successes"][0]["grant_tokens"][0]
    assert client.get(f"/downloads/{token}").status_code == 404


def test_cleanup_endpoint():
    reset_db()
    client = TestClient(app)
    admin_headers, _, product, _ = setup_shop(client)
    fulfill(client, admin_headers, product["id"])

    with engine.begin() as conn:
        conn.exec_driver_sql("UPDATE access_grants SET expires_at = '2000-01-01 00:00:00.000000'")

    r = client.post("/maintenance/cleanup", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"expired_grants": 1, "expired_licenses": 0}
    assert client.get("/grants/", headers=admin_headers).json()[0]["status"] == "expired"
