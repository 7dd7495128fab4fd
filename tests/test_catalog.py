"""Tests for products, categories and catalog caching."""

import pytest
from bson import ObjectId

from storefront.catalog import slugify


@pytest.mark.parametrize(
    "name,expected",
    [
        ("Blue Mug", "blue-mug"),
        ("  Tea & Coffee  Set ", "tea-coffee-set"),
        ("Hello--World!!", "hello-world"),
        ("!!!", ""),
    ],
)
def test_slugify(name, expected):
    assert slugify(name) == expected


class TestProductWrites:
    def test_admin_creates_product(self, client, admin_headers):
        response = client.post(
            "/products", json={"name": "Blue Mug!", "price": 9.5, "stock": 3}, headers=admin_headers
        )
        assert response.status_code == 201, response.text
        product = response.json()
        assert product["slug"] == "blue-mug"
        assert product["viewCount"] == 0
        assert product["createdAt"]

    def test_duplicate_slug_conflicts(self, client, admin_headers):
        client.post("/products", json={"name": "Blue Mug", "price": 9.5}, headers=admin_headers)
        response = client.post("/products", json={"name": "blue mug", "price": 4}, headers=admin_headers)
        assert response.status_code == 409

    def test_unsluggable_name(self, client, admin_headers):
        response = client.post("/products", json={"name": "!!!", "price": 1}, headers=admin_headers)
        assert response.status_code == 400

    def test_unknown_category(self, client, admin_headers):
        response = client.post(
            "/products", json={"name": "Lamp", "price": 1, "categoryId": str(ObjectId())}, headers=admin_headers
        )
        assert response.status_code == 404

    def test_shopper_cannot_create(self, client, auth_headers):
        response = client.post("/products", json={"name": "Lamp", "price": 1}, headers=auth_headers)
        assert response.status_code == 403

    def test_anonymous_cannot_create(self, client):
        response = client.post("/products", json={"name": "Lamp", "price": 1})
        assert response.status_code == 401

    def test_update_refreshes_cached_product(self, client, admin_headers, make_product):
        product = make_product(price=10.0)
        assert client.get(f"/products/{product['id']}").json()["price"] == 10.0

        response = client.patch(f"/products/{product['id']}", json={"price": 7.25}, headers=admin_headers)
        assert response.status_code == 200
        assert client.get(f"/products/{product['id']}").json()["price"] == 7.25

    def test_rename_changes_slug(self, client, admin_headers, make_product):
        product = make_product(name="Old Name")
        response = client.patch(f"/products/{product['id']}", json={"name": "New Name"}, headers=admin_headers)
        assert response.json()["slug"] == "new-name"
        assert client.get("/products/slug/new-name").status_code == 200

    def test_delete(self, client, admin_headers, make_product):
        product = make_product()
        response = client.delete(f"/products/{product['id']}", headers=admin_headers)
        assert response.json() == {"status": "removed"}
        assert client.get(f"/products/{product['id']}").status_code == 404
        assert client.delete(f"/products/{product['id']}", headers=admin_headers).status_code == 404


class TestProductReads:
    def test_view_count_increments_on_cache_miss(self, client, db, make_product):
        product = make_product()
        first = client.get(f"/products/{product['id']}")
        assert first.json()["viewCount"] == 1
        client.get(f"/products/{product['id']}")
        assert db["products"].find_one({"_id": ObjectId(product["id"])})["viewCount"] == 1

    def test_unknown_and_malformed_ids(self, client):
        assert client.get(f"/products/{ObjectId()}").status_code == 404
        response = client.get("/products/not-an-id")
        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidIdError"

    def test_by_slug_hides_inactive(self, client, make_product):
        make_product(name="Hidden Thing", isActive=False)
        assert client.get("/products/slug/hidden-thing").status_code == 404

    def test_list_filters(self, client, make_product):
        make_product(name="Red Chair", price=40.0, tags=["furniture"])
        make_product(name="Red Pen", price=2.0, tags=["office"])
        make_product(name="Blue Pen", price=3.0, tags=["office"], isActive=False)

        assert client.get("/products").json()["total"] == 2
        assert client.get("/products", params={"search": "red"}).json()["total"] == 2
        cheap = client.get("/products", params={"maxPrice": 10}).json()
        assert [p["name"] for p in cheap["products"]] == ["Red Pen"]
        tagged = client.get("/products", params={"tags": "furniture"}).json()
        assert [p["name"] for p in tagged["products"]] == ["Red Chair"]
        ordered = client.get("/products", params={"sortBy": "price", "sortOrder": "asc"}).json()
        assert [p["price"] for p in ordered["products"]] == [2.0, 40.0]
        assert "reviews" not in ordered["products"][0]

    def test_unsortable_field(self, client):
        assert client.get("/products", params={"sortBy": "passwordHash"}).status_code == 400

    def test_pagination(self, client, make_product):
        for _ in range(5):
            make_product()
        page = client.get("/products", params={"limit": 2, "page": 3}).json()
        assert page["total"] == 5
        assert page["totalPages"] == 3
        assert len(page["products"]) == 1

    def test_list_is_cached_until_catalog_changes(self, client, db, make_product):
        make_product()
        assert client.get("/products").json()["total"] == 1

        db["products"].insert_one({"name": "Sneaky", "slug": "sneaky", "price": 1.0, "isActive": True})
        assert client.get("/products").json()["total"] == 1

        make_product()
        assert client.get("/products").json()["total"] == 3

    def test_featured(self, client, make_product):
        make_product(name="Star", isFeatured=True)
        make_product(name="Plain")
        featured = client.get("/products/featured").json()
        assert [p["name"] for p in featured] == ["Star"]


class TestReviews:
    def test_rating_is_recomputed(self, client, login, make_product):
        product = make_product()
        alice = login(telegram_id=1, first_name="Alice")
        bob = login(telegram_id=2, first_name="Bob")

        client.post(f"/products/{product['id']}/reviews", json={"rating": 5, "comment": "great"}, headers=alice)
        response = client.post(f"/products/{product['id']}/reviews", json={"rating": 3}, headers=bob)
        assert response.json()["rating"] == 4.0
        assert response.json()["reviewCount"] == 2

        response = client.post(f"/products/{product['id']}/reviews", json={"rating": 1}, headers=alice)
        assert response.json()["rating"] == 2.0
        assert response.json()["reviewCount"] == 2

    def test_rating_bounds(self, client, auth_headers, make_product):
        product = make_product()
        response = client.post(f"/products/{product['id']}/reviews", json={"rating": 6}, headers=auth_headers)
        assert response.status_code == 422

    def test_review_requires_user(self, client, make_product):
        product = make_product()
        assert client.post(f"/products/{product['id']}/reviews", json={"rating": 4}).status_code == 401


class TestCategories:
    def test_create_and_list(self, client, admin_headers):
        response = client.post("/categories", json={"name": "Home Goods"}, headers=admin_headers)
        assert response.status_code == 201
        assert response.json()["slug"] == "home-goods"

        categories = client.get("/categories").json()
        assert [c["name"] for c in categories] == ["Home Goods"]

    def test_duplicate_category(self, client, admin_headers):
        client.post("/categories", json={"name": "Home Goods"}, headers=admin_headers)
        response = client.post("/categories", json={"name": "Home Goods"}, headers=admin_headers)
        assert response.status_code == 409

    def test_shopper_cannot_create_category(self, client, auth_headers):
        response = client.post("/categories", json={"name": "Toys"}, headers=auth_headers)
        assert response.status_code == 403

    def test_product_count_follows_products(self, client, admin_headers, make_product):
        category = client.post("/categories", json={"name": "Kitchen"}, headers=admin_headers).json()
        assert client.get("/categories").json()[0]["productCount"] == 0

        product = make_product(categoryId=category["id"])
        make_product(categoryId=category["id"])
        assert client.get("/categories").json()[0]["productCount"] == 2

        client.delete(f"/products/{product['id']}", headers=admin_headers)
        assert client.get("/categories").json()[0]["productCount"] == 1

    def test_filter_by_category(self, client, admin_headers, make_product):
        category = client.post("/categories", json={"name": "Garden"}, headers=admin_headers).json()
        make_product(name="Shovel", categoryId=category["id"])
        make_product(name="Kettle")
        listing = client.get("/products", params={"category": category["id"]}).json()
        assert [p["name"] for p in listing["products"]] == ["Shovel"]


class TestRelatedProducts:
    def test_same_category_best_sellers_first(self, client, db, admin_headers, make_product):
        category = client.post("/categories", json={"name": "Mugs"}, headers=admin_headers).json()
        product = make_product(name="Base Mug", categoryId=category["id"])
        popular = make_product(name="Popular Mug", categoryId=category["id"])
        quiet = make_product(name="Quiet Mug", categoryId=category["id"])
        make_product(name="Hidden Mug", categoryId=category["id"], isActive=False)
        make_product(name="Lamp")
        db["products"].update_one({"_id": ObjectId(popular["id"])}, {"$set": {"orderCount": 9}})

        related = client.get(f"/products/{product['id']}/related").json()
        assert [p["name"] for p in related] == ["Popular Mug", "Quiet Mug"]
        assert quiet["id"] in [p["id"] for p in related]

        limited = client.get(f"/products/{product['id']}/related", params={"limit": 1}).json()
        assert [p["name"] for p in limited] == ["Popular Mug"]

    def test_uncategorised_or_unknown_product(self, client, make_product):
        product = make_product()
        assert client.get(f"/products/{product['id']}/related").json() == []
        assert client.get(f"/products/{ObjectId()}/related").json() == []


class TestCategoryHierarchy:
    @pytest.fixture
    def kitchen(self, client, admin_headers):
        root = client.post("/categories", json={"name": "Kitchen"}, headers=admin_headers).json()
        child = client.post(
            "/categories", json={"name": "Cookware", "parentId": root["id"]}, headers=admin_headers
        ).json()
        grandchild = client.post(
            "/categories", json={"name": "Pans", "parentId": child["id"]}, headers=admin_headers
        ).json()
        return root, child, grandchild

    def test_tree(self, client, kitchen):
        root, child, grandchild = kitchen
        tree = client.get("/categories/tree").json()
        assert [node["id"] for node in tree] == [root["id"]]
        assert [node["id"] for node in tree[0]["children"]] == [child["id"]]
        assert [node["id"] for node in tree[0]["children"][0]["children"]] == [grandchild["id"]]

    def test_tree_refreshes_after_create(self, client, admin_headers, kitchen):
        client.get("/categories/tree")
        client.post("/categories", json={"name": "Garden"}, headers=admin_headers)
        assert len(client.get("/categories/tree").json()) == 2

    def test_by_slug_and_id(self, client, kitchen):
        root, child, _ = kitchen
        assert client.get("/categories/slug/cookware").json()["id"] == child["id"]
        assert client.get(f"/categories/{root['id']}").json()["name"] == "Kitchen"
        assert client.get("/categories/slug/nope").status_code == 404
        assert client.get(f"/categories/{ObjectId()}").status_code == 404

    def test_children(self, client, kitchen):
        root, child, _ = kitchen
        assert [c["id"] for c in client.get(f"/categories/{root['id']}/children").json()] == [child["id"]]
        assert client.get("/categories/bad-id/children").status_code == 400

    def test_update(self, client, admin_headers, kitchen):
        root, child, _ = kitchen
        response = client.patch(
            f"/categories/{child['id']}", json={"description": "Pots", "slug": "Pots and Pans"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["slug"] == "pots-and-pans"
        assert client.get("/categories/slug/pots-and-pans").json()["description"] == "Pots"

    def test_update_duplicate_slug(self, client, admin_headers, kitchen):
        _, child, _ = kitchen
        response = client.patch(f"/categories/{child['id']}", json={"slug": "kitchen"}, headers=admin_headers)
        assert response.status_code == 409

    def test_update_rejects_cycles(self, client, admin_headers, kitchen):
        root, _, grandchild = kitchen
        response = client.patch(f"/categories/{root['id']}", json={"parentId": grandchild["id"]}, headers=admin_headers)
        assert response.status_code == 400
        response = client.patch(f"/categories/{root['id']}", json={"parentId": root["id"]}, headers=admin_headers)
        assert response.status_code == 400

    def test_move_to_root(self, client, admin_headers, kitchen):
        _, _, grandchild = kitchen
        client.patch(f"/categories/{grandchild['id']}", json={"parentId": None}, headers=admin_headers)
        assert len(client.get("/categories/tree").json()) == 2

    def test_delete_rules(self, client, admin_headers, make_product, kitchen):
        root, child, grandchild = kitchen
        assert client.delete(f"/categories/{root['id']}", headers=admin_headers).status_code == 409

        product = make_product(categoryId=grandchild["id"])
        assert client.delete(f"/categories/{grandchild['id']}", headers=admin_headers).status_code == 409

        client.delete(f"/products/{product['id']}", headers=admin_headers)
        assert client.delete(f"/categories/{grandchild['id']}", headers=admin_headers).json() == {"status": "removed"}
        assert client.get(f"/categories/{child['id']}/children").json() == []
        assert client.delete(f"/categories/{grandchild['id']}", headers=admin_headers).status_code == 404

    def test_writes_require_admin(self, client, auth_headers, kitchen):
        root, _, _ = kitchen
        assert client.patch(f"/categories/{root['id']}", json={"description": "x"}, headers=auth_headers).status_code == 403
        assert client.delete(f"/categories/{root['id']}", headers=auth_headers).status_code == 403

    def test_stats(self, client, admin_headers, make_product, kitchen):
        root, _, _ = kitchen
        make_product(categoryId=root["id"])
        stats = client.get("/categories/stats", headers=admin_headers).json()
        assert stats["totalCategories"] == 3
        assert stats["activeCategories"] == 3
        assert stats["rootCategories"] == 1
        assert stats["totalProducts"] == 1
