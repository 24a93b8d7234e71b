import pytest


def test_create_product_derives_price_and_slug(make_product):
    product = make_product(name="AMD Ryzen 7 7800X3D", original_price=10990000, discount=10,
                           specs={"cores": "8", "threads": 16, "socket": "AM5"})

    assert product["slug"] == "amd-ryzen-7-7800x3d"
    assert product["final_price"] == pytest.approx(10990000 * 0.9)
    assert product["sold_count"] == 0
    assert product["specs"] == {"cores": 8, "threads": 16, "socket": "AM5"}
    assert product["category"]["name"] == "Processors"
    assert product["manufacturer"]["name"] == "AMD"


def test_slug_strips_vietnamese_accents(make_product):
    product = make_product(name="Bộ xử lý Đời mới")
    assert product["slug"] == "bo-xu-ly-doi-moi"


def test_duplicate_slug_rejected(client, admin, catalog, make_product):
    make_product(name="Core i5 14400F")
    res = client.post("/products", json={"name": "Core i5 14400f", "original_price": 1, **catalog},
                      headers=admin["headers"])
    assert res.status_code == 400
    assert "already exists" in res.json()["message"]


def test_unknown_spec_rejected(client, admin, catalog):
    res = client.post("/products", json={"name": "X", "type": "cpu", "original_price": 1,
                                         "specs": {"vram": 8}, **catalog},
                      headers=admin["headers"])
    assert res.status_code == 400
    assert res.json()["statusCode"] == 400


def test_missing_category_rejected(client, admin, catalog):
    body = {"name": "X", "original_price": 1, "category_id": "0" * 24,
            "manufacturer_id": catalog["manufacturer_id"]}
    res = client.post("/products", json=body, headers=admin["headers"])
    assert res.status_code == 400


def test_discount_over_100_rejected(client, admin, catalog):
    res = client.post("/products", json={"name": "X", "original_price": 100, "discount": 101, **catalog},
                      headers=admin["headers"])
    assert res.status_code == 400


def test_customer_cannot_create_product(client, customer, catalog):
    res = client.post("/products", json={"name": "X", "original_price": 1, **catalog},
                      headers=customer["headers"])
    assert res.status_code == 403


def test_anonymous_cannot_create_product(client, catalog):
    res = client.post("/products", json={"name": "X", "original_price": 1, **catalog})
    assert res.status_code == 401
    assert res.json() == {"statusCode": 401, "message": "Not authenticated", "data": None}


def test_update_recomputes_final_price(client, admin, make_product):
    product = make_product(original_price=2000000, discount=10)

    res = client.patch(f"/products/{product['id']}", json={"discount": 25}, headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["final_price"] == pytest.approx(1500000)

    res = client.patch(f"/products/{product['slug']}", json={"original_price": 4000000},
                       headers=admin["headers"])
    assert res.json()["data"]["final_price"] == pytest.approx(3000000)


def test_update_name_changes_slug(client, admin, make_product):
    product = make_product(name="Old Name")
    res = client.patch(f"/products/{product['id']}", json={"name": "New Name"}, headers=admin["headers"])
    assert res.json()["data"]["slug"] == "new-name"
    assert client.get("/products/new-name").status_code == 200
    assert client.get("/products/old-name").status_code == 404


def test_update_type_revalidates_specs(client, admin, make_product):
    product = make_product(specs={"cores": 6})
    res = client.patch(f"/products/{product['id']}", json={"type": "gpu"}, headers=admin["headers"])
    assert res.status_code == 400
    assert "Unknown spec 'cores'" in res.json()["message"]


def test_get_by_id_and_slug(client, make_product):
    product = make_product(name="Ryzen 9 7950X")
    assert client.get(f"/products/{product['id']}").json()["data"]["name"] == "Ryzen 9 7950X"
    assert client.get("/products/ryzen-9-7950x").json()["data"]["id"] == product["id"]
    res = client.get("/products/does-not-exist")
    assert res.status_code == 404
    assert res.json()["message"] == "Product with slug does-not-exist not found"


def test_list_products_filters_and_sorts(client, make_product):
    make_product(name="Cheap", original_price=100)
    make_product(name="Pricey", original_price=900)
    make_product(name="Middle", original_price=500)

    res = client.get("/products", params={"sort_by": "final_price", "order": "asc"})
    names = [p["name"] for p in res.json()["data"]["result"]]
    assert names == ["Cheap", "Middle", "Pricey"]

    res = client.get("/products", params={"q": "pri"})
    assert [p["name"] for p in res.json()["data"]["result"]] == ["Pricey"]

    res = client.get("/products", params={"limit": 2, "page": 2})
    assert res.json()["data"]["meta"] == {"page": 2, "limit": 2, "total": 3, "total_pages": 2}

    assert client.get("/products", params={"sort_by": "stock"}).status_code == 400


def test_delete_product_removes_images(client, admin, make_product, deleted_images):
    product = make_product(image_public_ids=["products/a", "products/b"])
    res = client.delete(f"/products/{product['slug']}", headers=admin["headers"])
    assert res.json()["message"] == "Product deleted successfully"
    assert deleted_images == ["products/a", "products/b"]
    assert client.get(f"/products/{product['id']}").status_code == 404


def test_product_specs_catalogue(client):
    specs = client.get("/products/specs").json()["data"]
    assert [f["name"] for f in specs["cpu"]] == ["cores", "threads", "socket"]
    assert "monitor" in specs


def test_invalid_object_id(client, admin):
    res = client.get("/categories/not-an-id")
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid id"


def test_category_crud(client, admin):
    created = client.post("/categories", json={"name": "Monitors"}, headers=admin["headers"]).json()["data"]
    res = client.patch(f"/categories/{created['id']}", json={"description": "Screens"}, headers=admin["headers"])
    assert res.json()["data"]["description"] == "Screens"
    assert len(client.get("/categories").json()["data"]) == 1
    client.delete(f"/categories/{created['id']}", headers=admin["headers"])
    assert client.get(f"/categories/{created['id']}").status_code == 404


def test_banners_by_type_are_active_and_ordered(client, admin):
    def banner(title, type_, order, active=True):
        body = {"title": title, "url": f"https://img/{title}", "link": "/", "image_public_id": f"banners/{title}",
                "type": type_, "order": order, "is_active": active}
        return client.post("/banners", json=body, headers=admin["headers"]).json()["data"]

    banner("b", "carousel", 2)
    banner("a", "carousel", 1)
    banner("hidden", "carousel", 0, active=False)
    banner("side", "sub_banner", 0)

    carousel = client.get("/banners", params={"type": "carousel"}).json()["data"]
    assert [b["title"] for b in carousel] == ["a", "b"]
    assert len(client.get("/banners").json()["data"]) == 4


def test_banner_image_replacement_deletes_old_image(client, admin, deleted_images):
    body = {"title": "t", "url": "https://img/1", "link": "/", "image_public_id": "banners/old", "type": "carousel"}
    created = client.post("/banners", json=body, headers=admin["headers"]).json()["data"]

    client.patch(f"/banners/{created['id']}", json={"image_public_id": "banners/new"}, headers=admin["headers"])
    assert deleted_images == ["banners/old"]

    client.delete(f"/banners/{created['id']}", headers=admin["headers"])
    assert deleted_images == ["banners/old", "banners/new"]
