import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from . import cache as cache_backend
from . import database
from .admin import AdminService
from .auth import SESSION_TOKEN, AuthService, TokenService
from .cache import Cache
from .catalog import CatalogService
from .config import Settings
from .errors import (
    ERROR_STATUS_CODES,
    AuthenticationError,
    AuthFailure,
    NotFoundError,
    PermissionDeniedError,
    StorefrontError,
)
from .orders import OrderService
from .schemas import CartItem, OrderCreate, OrderStatus, PaymentStatus
from .users import UserService, public_profile

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/telegram", auto_error=False)

router = APIRouter()


# ---------- Request models ----------

class TelegramAuthIn(BaseModel):
    initData: str


class TokenIn(BaseModel):
    token: str


class AdminLoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class PreferencesIn(BaseModel):
    notifications: Optional[bool] = None
    language: Optional[str] = None
    currency: Optional[str] = None


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=2)
    slug: Optional[str] = None
    description: Optional[str] = None
    parentId: Optional[str] = None
    sortOrder: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    slug: Optional[str] = None
    description: Optional[str] = None
    parentId: Optional[str] = None
    isActive: Optional[bool] = None
    sortOrder: Optional[int] = None


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    comparePrice: Optional[float] = Field(None, ge=0)
    discountPercentage: float = Field(0, ge=0, le=100)
    currency: str = "USD"
    categoryId: Optional[str] = None
    images: List[str] = []
    thumbnail: Optional[str] = None
    stock: int = Field(0, ge=0)
    trackStock: bool = True
    isActive: bool = True
    isFeatured: bool = False
    tags: List[str] = []
    sortOrder: int = 0


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    comparePrice: Optional[float] = Field(None, ge=0)
    discountPercentage: Optional[float] = Field(None, ge=0, le=100)
    currency: Optional[str] = None
    categoryId: Optional[str] = None
    images: Optional[List[str]] = None
    thumbnail: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    trackStock: Optional[bool] = None
    isActive: Optional[bool] = None
    isFeatured: Optional[bool] = None
    tags: Optional[List[str]] = None
    sortOrder: Optional[int] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class StatusIn(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class OrderUpdate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    trackingNumber: Optional[str] = None
    shippingCarrier: Optional[str] = None
    estimatedDelivery: Optional[datetime] = None
    notes: Optional[str] = None
    paymentStatus: Optional[PaymentStatus] = None
    paymentMethod: Optional[str] = None


# ---------- Dependencies ----------

def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_users(request: Request) -> UserService:
    return request.app.state.users


def get_catalog(request: Request) -> CatalogService:
    return request.app.state.catalog


def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_admins(request: Request) -> AdminService:
    return request.app.state.admins


async def _init_data_from_body(request: Request) -> Optional[str]:
    if request.method not in ("POST", "PUT", "PATCH"):
        return None
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("initData"), str):
        return payload["initData"]
    return None


async def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    auth: AuthService = Depends(get_auth),
):
    """Resolve the caller from, in order: bearer token, init-data header, init data in the body.

    A bad bearer token falls through to the init-data sources; bad init data
    is final.
    """
    if token:
        try:
            return auth.validate_token(token)
        except AuthenticationError as e:
            logger.info("Bearer token rejected (%s), trying init data", e.reason.value)

    init_data = request.headers.get("x-telegram-init-data")
    if init_data:
        return auth.authenticate_telegram(init_data)

    body_init_data = await _init_data_from_body(request)
    if body_init_data:
        return auth.authenticate_telegram(body_init_data)

    raise AuthenticationError(AuthFailure.MISSING_CREDENTIALS)


def require_admin(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    admins: AdminService = Depends(get_admins),
):
    if not token:
        raise AuthenticationError(AuthFailure.MISSING_CREDENTIALS)
    try:
        return admins.verify(token)
    except AuthenticationError:
        # a valid shopper session is identified, just not privileged
        request.app.state.tokens.decode(token, SESSION_TOKEN)
        raise PermissionDeniedError()


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Map StorefrontError subclasses to HTTP responses."""
    status_code = 500
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            status_code = ERROR_STATUS_CODES[cls]
            break
    content = {"detail": str(exc), "error_type": type(exc).__name__}
    reason = getattr(exc, "reason", None)
    if reason is not None:
        content["reason"] = reason.value
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


# ---------- Service endpoints ----------

@router.get("/")
def read_root():
    return {"message": "Telegram Storefront API is running"}


@router.get("/health")
def health(request: Request):
    db = request.app.state.db
    response = {
        "backend": "running",
        "database": "unavailable",
        "database_name": getattr(db, "name", None),
        "cache": "unavailable",
        "collections": [],
    }
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "connected"
    except Exception as e:
        response["database"] = f"error: {str(e)[:80]}"
    if request.app.state.cache.ping():
        response["cache"] = "connected"
    response["telegram_bot_token"] = "set" if request.app.state.settings.telegram_bot_token else "not set"
    return response


# ---------- Auth ----------

@router.post("/auth/telegram")
def telegram_auth(payload: TelegramAuthIn, auth: AuthService = Depends(get_auth)):
    user = auth.authenticate_telegram(payload.initData)
    return auth.login(user)


@router.get("/auth/me")
def get_me(user=Depends(get_current_user)):
    return {"user": public_profile(user)}


@router.post("/auth/validate")
def validate_token(payload: TokenIn, auth: AuthService = Depends(get_auth)):
    user = auth.validate_token(payload.token)
    return {"valid": True, "user": user["telegramId"]}


@router.get("/auth/webapp-url")
def webapp_url(startParam: Optional[str] = None, auth: AuthService = Depends(get_auth)):
    url = auth.webapp_url(startParam)
    if url is None:
        raise NotFoundError("Bot username")
    return {"url": url}


# ---------- Users ----------

@router.get("/users/me")
def my_profile(user=Depends(get_current_user), users: UserService = Depends(get_users)):
    return users.find_by_id(user["id"])


@router.patch("/users/me/preferences")
def update_preferences(payload: PreferencesIn, user=Depends(get_current_user), users: UserService = Depends(get_users)):
    updated = users.update_preferences(user["id"], payload.model_dump(exclude_none=True))
    return public_profile(updated)


@router.get("/users/me/cart")
def get_cart(user=Depends(get_current_user), users: UserService = Depends(get_users)):
    return users.find_by_id(user["id"]).get("cart") or {"items": []}


@router.post("/users/me/cart")
def add_to_cart(
    payload: CartItem,
    user=Depends(get_current_user),
    users: UserService = Depends(get_users),
    catalog: CatalogService = Depends(get_catalog),
):
    if catalog.load_for_order(payload.productId) is None:
        raise NotFoundError("Product", payload.productId)
    return users.add_to_cart(user["id"], payload)["cart"]


@router.delete("/users/me/cart/{product_id}")
def remove_from_cart(
    product_id: str,
    variant: Optional[str] = None,
    user=Depends(get_current_user),
    users: UserService = Depends(get_users),
):
    return users.remove_from_cart(user["id"], product_id, variant)["cart"]


@router.delete("/users/me/cart")
def clear_cart(user=Depends(get_current_user), users: UserService = Depends(get_users)):
    return users.clear_cart(user["id"])["cart"]


@router.post("/users/me/favorites/{product_id}")
def add_favorite(product_id: str, user=Depends(get_current_user), users: UserService = Depends(get_users)):
    return {"favoriteProducts": users.add_favorite(user["id"], product_id)["favoriteProducts"]}


@router.delete("/users/me/favorites/{product_id}")
def remove_favorite(product_id: str, user=Depends(get_current_user), users: UserService = Depends(get_users)):
    return {"favoriteProducts": users.remove_favorite(user["id"], product_id)["favoriteProducts"]}


# ---------- Categories ----------

@router.get("/categories")
def list_categories(catalog: CatalogService = Depends(get_catalog)):
    return catalog.list_categories()


@router.post("/categories", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_admin)])
def create_category(payload: CategoryIn, catalog: CatalogService = Depends(get_catalog)):
    return catalog.create_category(payload.model_dump())


@router.get("/categories/tree")
def category_tree(catalog: CatalogService = Depends(get_catalog)):
    return catalog.category_tree()


@router.get("/categories/stats", dependencies=[Depends(require_admin)])
def category_stats(catalog: CatalogService = Depends(get_catalog)):
    return catalog.category_stats()


@router.get("/categories/slug/{slug}")
def category_by_slug(slug: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.get_category_by_slug(slug)


@router.get("/categories/{category_id}")
def get_category(category_id: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.get_category(category_id)


@router.get("/categories/{category_id}/children")
def category_children(category_id: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.category_children(category_id)


@router.patch("/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: str, payload: CategoryUpdate, catalog: CatalogService = Depends(get_catalog)):
    return catalog.update_category(category_id, payload.model_dump(exclude_unset=True))


@router.delete("/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: str, catalog: CatalogService = Depends(get_catalog)):
    catalog.delete_category(category_id)
    return {"status": "removed"}


# ---------- Products ----------

@router.get("/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = None,
    search: Optional[str] = None,
    minPrice: Optional[float] = None,
    maxPrice: Optional[float] = None,
    featured: Optional[bool] = None,
    tags: Optional[List[str]] = Query(None),
    sortBy: str = "createdAt",
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.list_products(
        page=page,
        limit=limit,
        category=category,
        search=search,
        min_price=minPrice,
        max_price=maxPrice,
        featured=featured,
        tags=tags,
        sort_by=sortBy,
        sort_order=sortOrder,
    )


@router.get("/products/featured")
def featured_products(limit: int = Query(10, ge=1, le=50), catalog: CatalogService = Depends(get_catalog)):
    return catalog.featured(limit)


@router.get("/products/slug/{slug}")
def product_by_slug(slug: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.get_by_slug(slug)


@router.get("/products/{product_id}")
def get_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.get_product(product_id)


@router.get("/products/{product_id}/related")
def related_products(
    product_id: str, limit: int = Query(5, ge=1, le=20), catalog: CatalogService = Depends(get_catalog)
):
    return catalog.related(product_id, limit)


@router.post("/products", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_admin)])
def create_product(payload: ProductIn, catalog: CatalogService = Depends(get_catalog)):
    return catalog.create_product(payload.model_dump())


@router.patch("/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductUpdate, catalog: CatalogService = Depends(get_catalog)):
    return catalog.update_product(product_id, payload.model_dump(exclude_unset=True))


@router.delete("/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    catalog.delete_product(product_id)
    return {"status": "removed"}


@router.post("/products/{product_id}/reviews")
def add_review(
    product_id: str,
    payload: ReviewIn,
    user=Depends(get_current_user),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.add_review(product_id, user["id"], payload.rating, payload.comment)


# ---------- Orders ----------

@router.post("/orders", status_code=status.HTTP_201_CREATED)
def create_order(payload: OrderCreate, user=Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    return orders.create(user, payload)


@router.get("/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(get_current_user),
    orders: OrderService = Depends(get_orders),
):
    return orders.list_for_user(user, page, limit)


@router.get("/orders/stats")
def order_stats(user=Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    return orders.stats(user)


@router.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    return orders.get_for_user(order_id, user)


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    payload: Optional[CancelIn] = None,
    user=Depends(get_current_user),
    orders: OrderService = Depends(get_orders),
):
    return orders.cancel(order_id, user, payload.reason if payload else None)


@router.post("/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: StatusIn, orders: OrderService = Depends(get_orders)):
    return orders.update_status(order_id, payload.status, payload.note)


@router.patch("/orders/{order_id}", dependencies=[Depends(require_admin)])
def update_order(order_id: str, payload: OrderUpdate, orders: OrderService = Depends(get_orders)):
    return orders.update_details(order_id, payload.model_dump(exclude_unset=True))


# ---------- Admin ----------

@router.post("/admin/auth/login")
def admin_login(payload: AdminLoginIn, admins: AdminService = Depends(get_admins)):
    result = admins.login(payload.email, payload.password)
    return {"success": True, "message": "Login successful", **result}


@router.post("/admin/auth/verify")
def admin_verify(payload: TokenIn, admins: AdminService = Depends(get_admins)):
    return {"success": True, "admin": admins.verify(payload.token)}


@router.get("/admin/dashboard/stats", dependencies=[Depends(require_admin)])
def dashboard_stats(
    users: UserService = Depends(get_users),
    catalog: CatalogService = Depends(get_catalog),
    orders: OrderService = Depends(get_orders),
):
    return {
        "users": users.stats(),
        "products": catalog.stats(),
        "categories": catalog.category_stats(),
        "orders": orders.stats(),
    }


@router.get("/admin/users", dependencies=[Depends(require_admin)])
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    users: UserService = Depends(get_users),
):
    return users.list_users(page, limit, search)


# ---------- Application ----------

def create_app(settings: Optional[Settings] = None, db=None, redis_client=None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if db is None:
        db = database.connect(settings)
    cache = Cache(redis_client if redis_client is not None else cache_backend.connect(settings.redis_url))

    tokens = TokenService(settings)
    users = UserService(db, cache, settings)
    catalog = CatalogService(db, cache, settings)
    orders = OrderService(db, cache, catalog, users, settings)
    admins = AdminService(db, tokens)
    auth = AuthService(users, tokens, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.ensure_indexes(db)
        if settings.admin_email and settings.admin_password:
            admins.bootstrap(settings.admin_email, settings.admin_password)
        yield

    app = FastAPI(title="Telegram Storefront API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_origin_regex=r"^https://.*\.telegram\.org$",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Telegram-Init-Data"],
    )
    app.add_exception_handler(StorefrontError, storefront_error_handler)

    app.state.settings = settings
    app.state.db = db
    app.state.cache = cache
    app.state.tokens = tokens
    app.state.users = users
    app.state.catalog = catalog
    app.state.orders = orders
    app.state.admins = admins
    app.state.auth = auth

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
