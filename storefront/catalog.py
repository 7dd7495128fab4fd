"""Products and categories, with cache-aside reads and prefix invalidation."""
import json
import logging
import math
import re
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .cache import Cache
from .config import Settings
from .database import create_document, parse_object_id, serialize_doc, utcnow
from .errors import BadRequestError, ConflictError, NotFoundError
from .schemas import Category, Product

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {"createdAt", "price", "rating", "orderCount", "viewCount", "name", "sortOrder"}


def slugify(name: str) -> str:
    slug = name.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


class CatalogService:
    def __init__(self, db: Database, cache: Cache, settings: Settings):
        self.products = db["products"]
        self.categories = db["categories"]
        self.db = db
        self.cache = cache
        self.settings = settings

    # ---------- products: reads ----------

    def list_products(
        self,
        page: int = 1,
        limit: int = 20,
        category: Optional[str] = None,
        search: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        featured: Optional[bool] = None,
        tags: Optional[List[str]] = None,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        query = {
            "page": page,
            "limit": limit,
            "category": category,
            "search": search,
            "minPrice": min_price,
            "maxPrice": max_price,
            "featured": featured,
            "tags": tags,
            "sortBy": sort_by,
            "sortOrder": sort_order,
        }
        cache_key = "products:" + json.dumps(query, sort_keys=True)
        cached = self.cache.get_json(cache_key)
        if cached:
            return cached

        filt: Dict[str, Any] = {"isActive": True}
        if category:
            filt["categoryId"] = parse_object_id(category, "Category")
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            filt["$or"] = [{"name": pattern}, {"description": pattern}]
        if min_price is not None or max_price is not None:
            filt["price"] = {}
            if min_price is not None:
                filt["price"]["$gte"] = min_price
            if max_price is not None:
                filt["price"]["$lte"] = max_price
        if featured is not None:
            filt["isFeatured"] = featured
        if tags:
            filt["tags"] = {"$in": tags}

        if sort_by not in SORTABLE_FIELDS:
            raise BadRequestError(f"Cannot sort by {sort_by}")
        direction = DESCENDING if sort_order == "desc" else ASCENDING

        skip = (page - 1) * limit
        docs = list(self.products.find(filt, {"reviews": 0}).sort(sort_by, direction).skip(skip).limit(limit))
        total = self.products.count_documents(filt)
        result = {
            "products": serialize_doc(docs),
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if limit else 0,
        }
        self.cache.set_json(cache_key, result, self.settings.product_list_cache_ttl)
        return result

    def featured(self, limit: int = 10) -> List[Dict[str, Any]]:
        cache_key = f"products:featured:{limit}"
        cached = self.cache.get_json(cache_key)
        if cached is not None:
            return cached
        docs = self.products.find({"isActive": True, "isFeatured": True}, {"reviews": 0}).sort(
            [("sortOrder", ASCENDING), ("createdAt", DESCENDING)]
        ).limit(limit)
        result = serialize_doc(list(docs))
        self.cache.set_json(cache_key, result, self.settings.featured_cache_ttl)
        return result

    def get_product(self, product_id: str) -> Dict[str, Any]:
        cache_key = f"product:{product_id}"
        cached = self.cache.get_json(cache_key)
        if cached:
            return cached
        doc = self.products.find_one_and_update(
            {"_id": parse_object_id(product_id, "Product")},
            {"$inc": {"viewCount": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError("Product", product_id)
        product = serialize_doc(doc)
        self.cache.set_json(cache_key, product, self.settings.product_cache_ttl)
        return product

    def get_by_slug(self, slug: str) -> Dict[str, Any]:
        doc = self.products.find_one({"slug": slug, "isActive": True})
        if doc is None:
            raise NotFoundError("Product", slug)
        return serialize_doc(doc)

    def load_for_order(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Raw product document straight from MongoDB, never from cache."""
        try:
            oid = parse_object_id(product_id, "Product")
        except BadRequestError:
            return None
        return self.products.find_one({"_id": oid})

    def related(self, product_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Best sellers from the same category, excluding the product itself."""
        product = self.load_for_order(product_id)
        if not product or not product.get("categoryId"):
            return []
        docs = self.products.find(
            {"_id": {"$ne": product["_id"]}, "categoryId": product["categoryId"], "isActive": True},
            {"reviews": 0},
        ).sort([("orderCount", DESCENDING), ("rating", DESCENDING)]).limit(limit)
        return serialize_doc(list(docs))

    # ---------- products: writes ----------

    def create_product(self, data: Dict[str, Any]) -> Dict[str, Any]:
        slug = self._slug_for(data["name"])
        category_oid = self._require_category(data.get("categoryId"))
        product = Product(**{**data, "slug": slug}).model_dump()
        product["categoryId"] = category_oid
        try:
            product_id = create_document(self.db, "products", product)
        except DuplicateKeyError:
            raise ConflictError(f"Product slug already exists: {slug}")
        if category_oid:
            self.refresh_product_count(category_oid)
        self._invalidate()
        logger.info("Created product %s (%s)", product_id, slug)
        return serialize_doc(self.products.find_one({"_id": ObjectId(product_id)}))

    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        oid = parse_object_id(product_id, "Product")
        old = self.products.find_one({"_id": oid})
        if old is None:
            raise NotFoundError("Product", product_id)
        changes = dict(changes)
        if "name" in changes:
            changes["slug"] = self._slug_for(changes["name"], exclude=oid)
        if "categoryId" in changes:
            changes["categoryId"] = self._require_category(changes["categoryId"])
        changes["updatedAt"] = utcnow()
        doc = self.products.find_one_and_update({"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER)
        for category_oid in {old.get("categoryId"), doc.get("categoryId")}:
            if category_oid:
                self.refresh_product_count(category_oid)
        self._invalidate(product_id)
        return serialize_doc(doc)

    def delete_product(self, product_id: str) -> None:
        oid = parse_object_id(product_id, "Product")
        doc = self.products.find_one_and_delete({"_id": oid})
        if doc is None:
            raise NotFoundError("Product", product_id)
        if doc.get("categoryId"):
            self.refresh_product_count(doc["categoryId"])
        self._invalidate(product_id)

    def add_review(self, product_id: str, user_id: str, rating: int, comment: str) -> Dict[str, Any]:
        """Add or replace the user's review and recompute the rating."""
        oid = parse_object_id(product_id, "Product")
        doc = self.products.find_one({"_id": oid})
        if doc is None:
            raise NotFoundError("Product", product_id)
        reviews = [r for r in doc.get("reviews", []) if r.get("userId") != user_id]
        reviews.append({"userId": user_id, "rating": rating, "comment": comment, "createdAt": utcnow()})
        avg = sum(r["rating"] for r in reviews) / len(reviews)
        updated = self.products.find_one_and_update(
            {"_id": oid},
            {"$set": {"reviews": reviews, "rating": round(avg, 2), "reviewCount": len(reviews), "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        self.cache.delete(f"product:{product_id}")
        return serialize_doc(updated)

    # ---------- stock ----------

    def reserve_stock(self, product_oid: ObjectId, quantity: int) -> bool:
        """Take ``quantity`` units in one conditional update.

        The ``stock >= quantity`` guard lives in the same write, so two racing
        orders can never drive stock below zero.
        """
        doc = self.products.find_one_and_update(
            {"_id": product_oid, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return False
        self._invalidate(str(product_oid))
        return True

    def release_stock(self, product_oid: ObjectId, quantity: int) -> None:
        self.products.update_one({"_id": product_oid}, {"$inc": {"stock": quantity}})
        self._invalidate(str(product_oid))
        logger.info("Released %d units of product %s", quantity, product_oid)

    def record_order(self, items: List[Dict[str, Any]]) -> None:
        for item in items:
            self.products.update_one({"_id": item["productId"]}, {"$inc": {"orderCount": item["quantity"]}})
            self.cache.delete(f"product:{item['productId']}")
        self.cache.delete_prefix("products:")

    def stats(self) -> Dict[str, Any]:
        result = list(
            self.products.aggregate(
                [
                    {
                        "$group": {
                            "_id": None,
                            "totalProducts": {"$sum": 1},
                            "activeProducts": {"$sum": {"$cond": ["$isActive", 1, 0]}},
                            "featuredProducts": {"$sum": {"$cond": ["$isFeatured", 1, 0]}},
                            "avgPrice": {"$avg": "$price"},
                            "totalViews": {"$sum": "$viewCount"},
                            "totalOrders": {"$sum": "$orderCount"},
                        }
                    }
                ]
            )
        )
        if not result:
            return {
                "totalProducts": 0,
                "activeProducts": 0,
                "featuredProducts": 0,
                "avgPrice": 0,
                "totalViews": 0,
                "totalOrders": 0,
            }
        stats = result[0]
        stats.pop("_id", None)
        return stats

    # ---------- categories ----------

    def list_categories(self) -> List[Dict[str, Any]]:
        cached = self.cache.get_json("categories:all")
        if cached is not None:
            return cached
        docs = self.categories.find({"isActive": True}).sort([("sortOrder", ASCENDING), ("name", ASCENDING)])
        result = serialize_doc(list(docs))
        self.cache.set_json("categories:all", result, self.settings.category_cache_ttl)
        return result

    def create_category(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        if not data.get("slug"):
            data["slug"] = slugify(data["name"])
        if data.get("parentId"):
            self._require_category(data["parentId"])
        category = Category(**data).model_dump()
        if self.categories.find_one({"$or": [{"slug": category["slug"]}, {"name": category["name"]}]}):
            raise ConflictError("Category exists")
        try:
            category_id = create_document(self.db, "categories", category)
        except DuplicateKeyError:
            raise ConflictError("Category exists")
        self.cache.delete_prefix("categories:")
        return serialize_doc(self.categories.find_one({"_id": ObjectId(category_id)}))

    def category_tree(self) -> List[Dict[str, Any]]:
        """Active categories nested under their parents via ``children``."""
        cached = self.cache.get_json("categories:tree")
        if cached is not None:
            return cached
        docs = self.categories.find({"isActive": True}).sort([("sortOrder", ASCENDING), ("name", ASCENDING)])
        nodes = [{**serialize_doc(doc), "children": []} for doc in docs]
        by_id = {node["id"]: node for node in nodes}
        tree = []
        for node in nodes:
            parent = by_id.get(node.get("parentId")) if node.get("parentId") else None
            if parent is not None:
                parent["children"].append(node)
            elif not node.get("parentId"):
                tree.append(node)
        self.cache.set_json("categories:tree", tree, self.settings.category_cache_ttl)
        return tree

    def get_category(self, category_id: str) -> Dict[str, Any]:
        cache_key = f"categories:id:{category_id}"
        cached = self.cache.get_json(cache_key)
        if cached:
            return cached
        doc = self.categories.find_one({"_id": parse_object_id(category_id, "Category")})
        if doc is None:
            raise NotFoundError("Category", category_id)
        category = serialize_doc(doc)
        self.cache.set_json(cache_key, category, self.settings.category_cache_ttl)
        return category

    def get_category_by_slug(self, slug: str) -> Dict[str, Any]:
        cache_key = f"categories:slug:{slug}"
        cached = self.cache.get_json(cache_key)
        if cached:
            return cached
        doc = self.categories.find_one({"slug": slug, "isActive": True})
        if doc is None:
            raise NotFoundError("Category", slug)
        category = serialize_doc(doc)
        self.cache.set_json(cache_key, category, self.settings.category_cache_ttl)
        return category

    def category_children(self, parent_id: str) -> List[Dict[str, Any]]:
        parse_object_id(parent_id, "Category")
        cache_key = f"categories:children:{parent_id}"
        cached = self.cache.get_json(cache_key)
        if cached is not None:
            return cached
        docs = self.categories.find({"parentId": parent_id, "isActive": True}).sort(
            [("sortOrder", ASCENDING), ("name", ASCENDING)]
        )
        children = serialize_doc(list(docs))
        self.cache.set_json(cache_key, children, self.settings.category_cache_ttl)
        return children

    def update_category(self, category_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        oid = parse_object_id(category_id, "Category")
        if self.categories.find_one({"_id": oid}) is None:
            raise NotFoundError("Category", category_id)
        changes = dict(changes)
        if changes.get("slug") is not None:
            changes["slug"] = slugify(changes["slug"])
            if not changes["slug"]:
                raise BadRequestError("Category slug cannot be empty")
            if self.categories.find_one({"slug": changes["slug"], "_id": {"$ne": oid}}):
                raise ConflictError(f"Category slug already exists: {changes['slug']}")
        if changes.get("parentId"):
            self._check_parent(oid, changes["parentId"])
        changes["updatedAt"] = utcnow()
        doc = self.categories.find_one_and_update({"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER)
        self.cache.delete_prefix("categories:")
        return serialize_doc(doc)

    def delete_category(self, category_id: str) -> None:
        """Remove a leaf category that no product points at."""
        oid = parse_object_id(category_id, "Category")
        if self.categories.find_one({"parentId": category_id}):
            raise ConflictError("Cannot delete category with subcategories")
        if self.products.find_one({"categoryId": oid}):
            raise ConflictError("Cannot delete category with products")
        if self.categories.find_one_and_delete({"_id": oid}) is None:
            raise NotFoundError("Category", category_id)
        self.cache.delete_prefix("categories:")
        logger.info("Deleted category %s", category_id)

    def category_stats(self) -> Dict[str, Any]:
        result = list(
            self.categories.aggregate(
                [
                    {
                        "$group": {
                            "_id": None,
                            "totalCategories": {"$sum": 1},
                            "activeCategories": {"$sum": {"$cond": ["$isActive", 1, 0]}},
                            "rootCategories": {"$sum": {"$cond": [{"$eq": ["$parentId", None]}, 1, 0]}},
                            "avgProductCount": {"$avg": "$productCount"},
                            "totalProducts": {"$sum": "$productCount"},
                        }
                    }
                ]
            )
        )
        if not result:
            return {
                "totalCategories": 0,
                "activeCategories": 0,
                "rootCategories": 0,
                "avgProductCount": 0,
                "totalProducts": 0,
            }
        stats = result[0]
        stats.pop("_id", None)
        return stats

    def refresh_product_count(self, category_oid: ObjectId) -> None:
        count = self.products.count_documents({"categoryId": category_oid, "isActive": True})
        self.categories.update_one({"_id": category_oid}, {"$set": {"productCount": count}})
        self.cache.delete_prefix("categories:")

    # ---------- internals ----------

    def _slug_for(self, name: str, exclude: Optional[ObjectId] = None) -> str:
        slug = slugify(name)
        if not slug:
            raise BadRequestError(f"Cannot derive a slug from name {name!r}")
        filt: Dict[str, Any] = {"slug": slug}
        if exclude is not None:
            filt["_id"] = {"$ne": exclude}
        if self.products.find_one(filt):
            raise ConflictError(f"Product slug already exists: {slug}")
        return slug

    def _require_category(self, category_id: Optional[str]) -> Optional[ObjectId]:
        if not category_id:
            return None
        oid = parse_object_id(category_id, "Category")
        if not self.categories.find_one({"_id": oid}):
            raise NotFoundError("Category", category_id)
        return oid

    def _check_parent(self, category_oid: ObjectId, parent_id: str) -> None:
        """Reject a parent that is the category itself or one of its descendants."""
        parent_oid = self._require_category(parent_id)
        seen = set()
        while parent_oid is not None and parent_oid not in seen:
            if parent_oid == category_oid:
                raise BadRequestError("A category cannot be nested under itself")
            seen.add(parent_oid)
            parent = self.categories.find_one({"_id": parent_oid}, {"parentId": 1})
            next_id = parent.get("parentId") if parent else None
            parent_oid = ObjectId(next_id) if next_id and ObjectId.is_valid(next_id) else None

    def _invalidate(self, product_id: Optional[str] = None) -> None:
        if product_id:
            self.cache.delete(f"product:{product_id}")
        self.cache.delete_prefix("products:")
