import logging
import math
import re
from datetime import timedelta
from typing import Any, Dict, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .cache import Cache
from .config import Settings
from .database import parse_object_id, serialize_doc, utcnow
from .errors import NotFoundError
from .schemas import CartItem, TelegramUser, User

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "id",
    "telegramId",
    "firstName",
    "lastName",
    "username",
    "photoUrl",
    "isPremium",
    "preferences",
    "cart",
    "favoriteProducts",
    "lastActiveAt",
)


def public_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    return {field: user.get(field) for field in PROFILE_FIELDS}


def admin_view(user: Dict[str, Any]) -> Dict[str, Any]:
    """Profile plus the account fields shown in the admin user list."""
    view = public_profile(user)
    for field in ("isActive", "totalOrders", "totalSpent", "createdAt"):
        view[field] = user.get(field)
    return view


class UserService:
    def __init__(self, db: Database, cache: Cache, settings: Settings):
        self.collection = db["users"]
        self.cache = cache
        self.settings = settings

    # ---------- lookups ----------

    def find_by_telegram_id(self, telegram_id: int, fresh: bool = False) -> Optional[Dict[str, Any]]:
        """Look a user up by Telegram id; ``fresh`` bypasses the cached copy."""
        if not fresh:
            cached = self.cache.get_json(f"user:telegram:{telegram_id}")
            if cached:
                return cached
        doc = self.collection.find_one({"telegramId": telegram_id})
        if doc is None:
            return None
        return self._cache_user(doc)

    def find_by_id(self, user_id: str) -> Dict[str, Any]:
        cached = self.cache.get_json(f"user:id:{user_id}")
        if cached:
            return cached
        doc = self.collection.find_one({"_id": parse_object_id(user_id, "User")})
        if doc is None:
            raise NotFoundError("User", user_id)
        return self._cache_user(doc)

    # ---------- provisioning ----------

    def provision(self, tg_user: TelegramUser) -> Dict[str, Any]:
        """Create the user on first sight, otherwise just touch lastActiveAt.

        A single upsert keyed by telegramId, so repeated or concurrent logins
        never produce a second record.
        """
        now = utcnow()
        profile = User(
            telegramId=tg_user.id,
            firstName=tg_user.first_name,
            lastName=tg_user.last_name,
            username=tg_user.username,
            languageCode=tg_user.language_code,
            photoUrl=tg_user.photo_url,
            isPremium=tg_user.is_premium,
        ).model_dump()
        profile.pop("telegramId")
        profile["createdAt"] = now
        update = {"$setOnInsert": profile, "$set": {"lastActiveAt": now, "updatedAt": now}}
        try:
            doc = self.collection.find_one_and_update(
                {"telegramId": tg_user.id}, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # lost an insert race; the other request created the record
            doc = self.collection.find_one_and_update(
                {"telegramId": tg_user.id}, update, return_document=ReturnDocument.AFTER
            )
        logger.info("Telegram user %s active", tg_user.id)
        return self._cache_user(doc)

    # ---------- cart ----------

    def add_to_cart(self, user_id: str, item: CartItem) -> Dict[str, Any]:
        oid = parse_object_id(user_id, "User")
        doc = self.collection.find_one({"_id": oid})
        if doc is None:
            raise NotFoundError("User", user_id)
        items = list((doc.get("cart") or {}).get("items") or [])
        for existing in items:
            if existing["productId"] == item.productId and existing.get("selectedVariant") == item.selectedVariant:
                existing["quantity"] += item.quantity
                break
        else:
            items.append(item.model_dump())
        return self._update(oid, {"$set": {"cart": {"items": items, "updatedAt": utcnow()}}})

    def remove_from_cart(self, user_id: str, product_id: str, variant: Optional[str] = None) -> Dict[str, Any]:
        oid = parse_object_id(user_id, "User")
        doc = self.collection.find_one({"_id": oid})
        if doc is None:
            raise NotFoundError("User", user_id)
        items = [
            it
            for it in (doc.get("cart") or {}).get("items") or []
            if not (it["productId"] == product_id and it.get("selectedVariant") == variant)
        ]
        return self._update(oid, {"$set": {"cart": {"items": items, "updatedAt": utcnow()}}})

    def clear_cart(self, user_id: str) -> Dict[str, Any]:
        oid = parse_object_id(user_id, "User")
        return self._update(oid, {"$set": {"cart": {"items": [], "updatedAt": utcnow()}}})

    # ---------- favorites & preferences ----------

    def add_favorite(self, user_id: str, product_id: str) -> Dict[str, Any]:
        oid = parse_object_id(user_id, "User")
        return self._update(oid, {"$addToSet": {"favoriteProducts": product_id}})

    def remove_favorite(self, user_id: str, product_id: str) -> Dict[str, Any]:
        oid = parse_object_id(user_id, "User")
        return self._update(oid, {"$pull": {"favoriteProducts": product_id}})

    def update_preferences(self, user_id: str, preferences: Dict[str, Any]) -> Dict[str, Any]:
        oid = parse_object_id(user_id, "User")
        changes = {f"preferences.{k}": v for k, v in preferences.items()}
        if not changes:
            return self.find_by_id(user_id)
        return self._update(oid, {"$set": changes})

    def record_purchase(self, user_id: str, total: float) -> Dict[str, Any]:
        oid = parse_object_id(user_id, "User")
        return self._update(oid, {"$inc": {"totalOrders": 1, "totalSpent": total}})

    def list_users(self, page: int = 1, limit: int = 20, search: Optional[str] = None) -> Dict[str, Any]:
        filt: Dict[str, Any] = {}
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            filt["$or"] = [{"firstName": pattern}, {"lastName": pattern}, {"username": pattern}]
        docs = self.collection.find(filt).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit)
        total = self.collection.count_documents(filt)
        return {
            "users": [admin_view(serialize_doc(doc)) for doc in docs],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if limit else 0,
        }

    def stats(self) -> Dict[str, Any]:
        # naive UTC, the form BSON dates come back in
        week_ago = (utcnow() - timedelta(days=7)).replace(tzinfo=None)
        result = list(
            self.collection.aggregate(
                [
                    {
                        "$group": {
                            "_id": None,
                            "totalUsers": {"$sum": 1},
                            "activeUsers": {"$sum": {"$cond": [{"$gte": ["$lastActiveAt", week_ago]}, 1, 0]}},
                            "premiumUsers": {"$sum": {"$cond": ["$isPremium", 1, 0]}},
                        }
                    }
                ]
            )
        )
        if not result:
            return {"totalUsers": 0, "activeUsers": 0, "premiumUsers": 0}
        stats = result[0]
        stats.pop("_id", None)
        return stats

    # ---------- internals ----------

    def _update(self, oid, update: Dict[str, Any]) -> Dict[str, Any]:
        update.setdefault("$set", {})["updatedAt"] = utcnow()
        doc = self.collection.find_one_and_update({"_id": oid}, update, return_document=ReturnDocument.AFTER)
        if doc is None:
            raise NotFoundError("User", str(oid))
        return self._cache_user(doc)

    def _cache_user(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        user = serialize_doc(doc)
        ttl = self.settings.user_cache_ttl
        self.cache.set_json(f"user:telegram:{user['telegramId']}", user, ttl)
        self.cache.set_json(f"user:id:{user['id']}", user, ttl)
        return user
