from types import SimpleNamespace

from bson import ObjectId

import main
import uploads
from conftest import ADMIN_EMAIL, make_coupon, make_product


def test_root_and_config(client):
    assert client.get("/").json() == {"name": "AtoZdpolify", "status": "ok"}
    config = client.get("/config").json()
    assert config["currency"] == "INR"
    assert config["returnWindowDays"] == 4


def test_register_login_me(client):
    res = client.post("/auth/register", json={"name": "Asha", "email": "asha@example.com", "password": "hunter22"})
    assert res.status_code == 200
    assert client.post("/auth/register", json={"email": "asha@example.com", "password": "hunter22"}).status_code == 400
    assert client.post("/auth/login", json={"email": "asha@example.com", "password": "wrong"}).status_code == 401
    token = client.post("/auth/login", json={"email": "asha@example.com", "password": "hunter22"}).json()["token"]
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["email"] == "asha@example.com"
    assert me["role"] == "customer"
    assert client.get("/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_admin_gate(client, user_headers):
    assert client.post("/admin/login", json={"email": ADMIN_EMAIL, "password": "guess"}).status_code == 401
    assert client.get("/admin/users", headers=user_headers).status_code == 403
    assert client.get("/admin/users").status_code == 401


def test_admin_gate_unconfigured(client, monkeypatch):
    monkeypatch.setattr(main, "ADMIN_PASSWORD", None)
    assert client.post("/admin/login", json={"email": ADMIN_EMAIL, "password": "x"}).status_code == 503


def test_admin_users_hide_password_hashes(client, user_headers, admin_headers):
    users = client.get("/admin/users", headers=admin_headers).json()
    assert users[0]["email"] == "asha@example.com"
    assert "password_hash" not in users[0]


def test_product_types_keep_their_own_attributes(client, admin_headers):
    mug = make_product(client, admin_headers, name="Photo Mug", product_type="customized", allow_image_upload=True,
                       default_image_x=10, file_format="PNG")
    product = client.get(f"/products/{mug}").json()
    assert product["allow_image_upload"] is True
    assert product["default_image_x"] == 10
    assert "file_format" not in product

    res = client.put(f"/admin/products/{mug}", headers=admin_headers,
                     json={"name": "Photo Mug Print", "price": 49, "category": "Digital", "product_type": "digital",
                           "file_format": "PNG"})
    assert res.status_code == 200
    product = client.get(f"/products/{mug}").json()
    assert product["file_format"] == "PNG"
    assert "allow_image_upload" not in product


def test_invalid_product_payloads(client, admin_headers):
    res = client.post("/admin/products", headers=admin_headers,
                      json={"name": "Thing", "price": 1, "category": "Misc", "product_type": "hologram"})
    assert res.status_code == 422
    res = client.post("/admin/products", headers=admin_headers,
                      json={"name": "Thing", "price": -1, "category": "Misc", "product_type": "physical"})
    assert res.status_code == 422
    assert client.get(f"/products/{ObjectId()}").status_code == 404
    assert client.delete(f"/admin/products/{ObjectId()}", headers=admin_headers).status_code == 404


def test_search_and_filters(client, admin_headers):
    make_product(client, admin_headers, name="Desk Lamp", keywords=["light"])
    make_product(client, admin_headers, name="Cotton Tee", category="Apparel")
    make_product(client, admin_headers, name="Wallpaper Pack", category="Digital", product_type="digital")
    assert [p["name"] for p in client.get("/products?q=LIGHT").json()["items"]] == ["Desk Lamp"]
    assert client.get("/products?category=Apparel").json()["total"] == 1
    assert client.get("/products?product_type=digital").json()["items"][0]["name"] == "Wallpaper Pack"
    assert client.get("/products?q=(").json()["total"] == 0


def test_primary_image_is_used_in_cart(client, admin_headers, user_headers):
    lamp = make_product(client, admin_headers, images=[{"url": "https://img/a.png"}, {"url": "https://img/b.png", "is_primary": True}])
    res = client.post("/cart/items", json={"product_id": lamp}, headers=user_headers)
    assert res.json()["items"][0]["image"] == "https://img/b.png"


def test_wishlist(client, admin_headers, user_headers):
    lamp = make_product(client, admin_headers)
    first = client.post("/wishlist", json={"product_id": lamp}, headers=user_headers).json()
    again = client.post("/wishlist", json={"product_id": lamp}, headers=user_headers).json()
    assert first["added"] is True and again["added"] is False
    items = client.get("/wishlist", headers=user_headers).json()
    assert [i["id"] for i in items] == [lamp]
    assert client.delete(f"/wishlist/{lamp}", headers=user_headers).status_code == 200
    assert client.get("/wishlist", headers=user_headers).json() == []
    assert client.delete(f"/wishlist/{lamp}", headers=user_headers).status_code == 404


def test_viewing_products_builds_history(client, admin_headers, user_headers):
    lamp = make_product(client, admin_headers)
    tee = make_product(client, admin_headers, name="Cotton Tee")
    client.get(f"/products/{lamp}", headers=user_headers)
    client.get(f"/products/{tee}", headers=user_headers)
    client.get(f"/products/{tee}")
    history = client.get("/history", headers=user_headers).json()
    assert [h["product_name"] for h in history] == ["Cotton Tee", "Desk Lamp"]


def test_recommendations_endpoint(client, admin_headers, user_headers):
    lamp = make_product(client, admin_headers)
    make_product(client, admin_headers, name="Cotton Tee")
    client.get(f"/products/{lamp}", headers=user_headers)

    class Model:
        def invoke(self, prompt):
            return SimpleNamespace(content="Cotton Tee, Desk Lamp, Rocket")

    main.app.dependency_overrides[main.get_recommendation_model] = lambda: Model()
    res = client.get("/recommendations", headers=user_headers)
    assert [p["name"] for p in res.json()] == ["Cotton Tee"]


def test_recommendations_without_history(client, user_headers):
    main.app.dependency_overrides[main.get_recommendation_model] = lambda: None
    assert client.get("/recommendations", headers=user_headers).json() == []


def test_coupon_admin(client, admin_headers):
    coupon_id = make_coupon(client, admin_headers)
    assert client.post("/admin/coupons", json={"code": "SAVE10", "discount": 5, "valid_till": "2024-07-01"},
                       headers=admin_headers).status_code == 400
    assert client.post("/admin/coupons", json={"code": "BIG", "discount": 150, "valid_till": "2024-07-01"},
                       headers=admin_headers).status_code == 422
    res = client.put(f"/admin/coupons/{coupon_id}", headers=admin_headers,
                     json={"code": "save15", "discount": 15, "valid_till": "2024-07-01"})
    assert res.status_code == 200
    coupons = client.get("/admin/coupons", headers=admin_headers).json()
    assert coupons[0]["code"] == "SAVE15"
    assert coupons[0]["valid_till"] == "2024-07-01"
    assert client.delete(f"/admin/coupons/{coupon_id}", headers=admin_headers).status_code == 200
    assert client.get("/admin/coupons", headers=admin_headers).json() == []


def test_feedback_and_product_requests(client, admin_headers, user_headers):
    assert client.post("/feedback", json={"message": "Love it"}, headers=user_headers).status_code == 422
    assert client.post("/feedback", json={"message": "Great selection of mugs!"}, headers=user_headers).status_code == 200
    assert client.get("/admin/feedback", headers=admin_headers).json()[0]["display_name"] == "Asha"

    req = {"product_name": "Bamboo Toothbrush", "description": "Eco friendly brushes in packs of four",
           "reference_link": "", "user_email": "guest@example.com"}
    request_id = client.post("/product-requests", json=req).json()["id"]
    res = client.post(f"/admin/product-requests/{request_id}/status", json={"status": "Sourced"}, headers=admin_headers)
    assert res.status_code == 200
    listed = client.get("/admin/product-requests", headers=admin_headers).json()
    assert listed[0]["status"] == "Sourced"
    assert listed[0]["user_id"] is None
    res = client.post(f"/admin/product-requests/{request_id}/status", json={"status": "Maybe"}, headers=admin_headers)
    assert res.status_code == 422


def test_image_upload(client, admin_headers, monkeypatch):
    files = {"file": ("lamp.png", b"\x89PNG fake", "image/png")}
    assert client.post("/admin/uploads", files=files, headers=admin_headers).status_code == 400

    monkeypatch.setattr(uploads, "CLOUDINARY_CLOUD_NAME", "demo")
    monkeypatch.setattr(uploads, "CLOUDINARY_UPLOAD_PRESET", "unsigned")
    calls = []

    def fake_upload(file, preset, **options):
        calls.append((preset, options["filename_override"]))
        return {"secure_url": "https://res.cloudinary.com/demo/image/upload/lamp.png"}

    monkeypatch.setattr(uploads.cloudinary.uploader, "unsigned_upload", fake_upload)
    res = client.post("/admin/uploads", files=files, headers=admin_headers)
    assert res.json() == {"url": "https://res.cloudinary.com/demo/image/upload/lamp.png"}
    assert calls == [("unsigned", "lamp.png")]

    text = {"file": ("notes.txt", b"hello", "text/plain")}
    assert client.post("/admin/uploads", files=text, headers=admin_headers).status_code == 400


def test_seed(client, admin_headers):
    assert client.post("/dev/seed").json() == {"ok": True}
    types = sorted(p["product_type"] for p in client.get("/products").json()["items"])
    assert types == ["customized", "digital", "physical"]
    assert client.get("/admin/coupons", headers=admin_headers).json()[0]["code"] == "SAVE10"


def test_admin_gate_rejects_non_ascii_email(client):
    res = client.post("/admin/login", json={"email": "josé@example.com", "password": "x"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid admin credentials"


def test_coupon_update_keeps_redemption_count(client, admin_headers, mongo):
    coupon_id = make_coupon(client, admin_headers, times_used=5)
    res = client.put(f"/admin/coupons/{coupon_id}", headers=admin_headers,
                     json={"code": "SAVE10", "discount": 12, "min_amount": 500, "valid_till": "2024-06-30", "max_uses": 5})
    assert res.status_code == 200
    stored = mongo["coupon"].find_one({"_id": ObjectId(coupon_id)})
    assert stored["times_used"] == 5
    assert stored["discount"] == 12

    client.put(f"/admin/coupons/{coupon_id}", headers=admin_headers,
               json={"code": "SAVE10", "discount": 12, "valid_till": "2024-06-30", "max_uses": 5, "times_used": 0})
    assert mongo["coupon"].find_one({"_id": ObjectId(coupon_id)})["times_used"] == 0
