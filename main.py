import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import media
import services
from schemas import (
    ActiveBody, Banner, BannerType, BannerUpdateBody, CartBody, Category, CategoryUpdateBody,
    ChangePasswordBody, EmailBody, LoginBody, Manufacturer, ManufacturerUpdateBody,
    OrderCreateBody, OrderUpdateBody, PaymentStatusBody, ProductCreateBody, ProductType,
    ProductUpdateBody, RefundCreateBody, RefundDecisionBody, RefundStatusBody, RegisterBody,
    User as UserSchema, UserCreateBody, UserUpdateBody,
)
from security import get_current_user, get_optional_user, hash_password, require_admin, require_staff
from settings import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.ensure_indexes()
    yield


app = FastAPI(title="PC Shop API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Envelope -----------------------
def ok(data=None, message: str = "", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"statusCode": status_code, "message": message, "data": jsonable_encoder(data)},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"statusCode": exc.status_code, "message": str(exc.detail), "data": None},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", []) if p != "body")
        messages.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return JSONResponse(
        status_code=400,
        content={"statusCode": 400, "message": "; ".join(messages), "data": None},
    )


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_error(request: Request, exc: DuplicateKeyError):
    # two requests raced past the existence check
    fields = ", ".join(((exc.details or {}).get("keyValue") or {}).keys()) or "value"
    return JSONResponse(
        status_code=400,
        content={"statusCode": 400, "message": f"Duplicate {fields}", "data": None},
    )


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"statusCode": 500, "message": "Internal server error", "data": None},
    )


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return ok({"service": "PC Shop API"}, "PC Shop API running")


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": settings.DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return ok(response)


# ----------------------- Auth -----------------------
@app.post("/auth/login")
def login(body: LoginBody):
    return ok(services.login(body), "Login successfully", 201)


@app.post("/auth/register")
def register(body: RegisterBody):
    return ok(services.register(body), "Register successfully", 201)


@app.post("/auth/active")
def activate(body: ActiveBody):
    return ok(services.activate(body), "Account activated successfully!", 201)


@app.post("/auth/reactive")
def reactivate(body: EmailBody):
    return ok(services.reactivate(body.email), "Resend active code successfully!", 201)


@app.post("/auth/send-code")
def send_code(body: EmailBody):
    return ok(services.send_change_password_code(body.email), "Send code successfully", 201)


@app.post("/auth/change-password")
def change_password(body: ChangePasswordBody):
    return ok(services.change_password(body), "Change password successfully!", 201)


@app.get("/auth/me")
def me(user=Depends(get_current_user)):
    return ok(services.public_user(user))


# ----------------------- Users -----------------------
@app.post("/users")
def create_user(body: UserCreateBody, user=Depends(require_admin)):
    return ok({"id": services.create_user(body)}, "User created", 201)


@app.get("/users")
def list_users(current: int = 1, page_size: int = 10, user=Depends(require_staff)):
    return ok(services.list_users(current, page_size))


@app.get("/users/points/{user_id}")
def user_points(user_id: str, user=Depends(get_current_user)):
    if user["id"] != user_id and user.get("role") not in ("STAFF", "ADMIN"):
        raise HTTPException(status_code=403, detail="Not allowed")
    return ok(services.get_user_points(user_id))


@app.get("/users/{user_id}")
def get_user(user_id: str, user=Depends(get_current_user)):
    if user["id"] != user_id and user.get("role") not in ("STAFF", "ADMIN"):
        raise HTTPException(status_code=403, detail="Not allowed")
    return ok(services.get_user(user_id))


@app.patch("/users/{user_id}")
def update_user(user_id: str, body: UserUpdateBody, user=Depends(get_current_user)):
    is_staff = user.get("role") in ("STAFF", "ADMIN")
    if user["id"] != user_id and not is_staff:
        raise HTTPException(status_code=403, detail="Not allowed")
    if not is_staff and (body.points is not None or body.is_active is not None):
        raise HTTPException(status_code=403, detail="Staff only")
    if user.get("role") != "ADMIN" and services.get_user(user_id).get("role") == "ADMIN":
        raise HTTPException(status_code=403, detail="Admin only")
    return ok(services.update_user(user_id, body), "User updated")


@app.patch("/users/{user_id}/role")
def toggle_role(user_id: str, user=Depends(require_admin)):
    return ok(services.toggle_user_role(user_id), "User role updated successfully!")


@app.delete("/users/{user_id}")
def delete_user(user_id: str, user=Depends(require_admin)):
    services.delete_user(user_id)
    return ok(None, "User deleted")


# ----------------------- Categories -----------------------
@app.post("/categories")
def create_category(body: Category, user=Depends(require_staff)):
    return ok(services.create_simple("category", body), "Category created", 201)


@app.get("/categories")
def list_categories():
    return ok(services.list_simple("category"))


@app.get("/categories/{category_id}")
def get_category(category_id: str):
    return ok(services.get_simple("category", category_id, "Category"))


@app.patch("/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdateBody, user=Depends(require_staff)):
    return ok(services.update_simple("category", category_id, body, "Category"), "Category updated")


@app.delete("/categories/{category_id}")
def delete_category(category_id: str, user=Depends(require_staff)):
    services.delete_simple("category", category_id, "Category")
    return ok(None, "Category deleted")


# ----------------------- Manufacturers -----------------------
@app.post("/manufacturers")
def create_manufacturer(body: Manufacturer, user=Depends(require_staff)):
    return ok(services.create_simple("manufacturer", body), "Manufacturer created", 201)


@app.get("/manufacturers")
def list_manufacturers():
    return ok(services.list_simple("manufacturer"))


@app.get("/manufacturers/{manufacturer_id}")
def get_manufacturer(manufacturer_id: str):
    return ok(services.get_simple("manufacturer", manufacturer_id, "Manufacturer"))


@app.patch("/manufacturers/{manufacturer_id}")
def update_manufacturer(manufacturer_id: str, body: ManufacturerUpdateBody, user=Depends(require_staff)):
    return ok(services.update_simple("manufacturer", manufacturer_id, body, "Manufacturer"), "Manufacturer updated")


@app.delete("/manufacturers/{manufacturer_id}")
def delete_manufacturer(manufacturer_id: str, user=Depends(require_staff)):
    services.delete_simple("manufacturer", manufacturer_id, "Manufacturer")
    return ok(None, "Manufacturer deleted")


# ----------------------- Products -----------------------
@app.post("/products")
def create_product(body: ProductCreateBody, user=Depends(require_staff)):
    return ok(services.create_product(body), "Product created", 201)


@app.get("/products")
def list_products(q: Optional[str] = None, type: Optional[ProductType] = None,
                  category_id: Optional[str] = None, manufacturer_id: Optional[str] = None,
                  sort_by: str = "created_at", order: str = "desc", page: int = 1, limit: int = 20):
    return ok(services.list_products(q, type, category_id, manufacturer_id, sort_by, order, page, limit))


@app.get("/products/specs")
def product_specs():
    return ok(services.product_specs())


@app.get("/products/redeemable")
def redeemable_products():
    return ok(services.list_redeemable())


@app.get("/products/redeem/history/{user_id}")
def redeem_history(user_id: str, page: int = 1, limit: int = 10, user=Depends(get_current_user)):
    return ok(services.redeem_history(user_id, user, page, limit))


@app.post("/products/{product_id}/redeem")
def redeem(product_id: str, user=Depends(get_current_user)):
    return ok(services.redeem_product(user, product_id), "Redeem successful", 201)


@app.get("/products/{id_or_slug}")
def get_product(id_or_slug: str):
    return ok(services.get_product(id_or_slug))


@app.patch("/products/{id_or_slug}")
def update_product(id_or_slug: str, body: ProductUpdateBody, user=Depends(require_staff)):
    return ok(services.update_product(id_or_slug, body), "Product updated")


@app.delete("/products/{id_or_slug}")
def delete_product(id_or_slug: str, user=Depends(require_staff)):
    services.delete_product(id_or_slug)
    return ok(None, "Product deleted successfully")


# ----------------------- Banners -----------------------
@app.post("/banners")
def create_banner(body: Banner, user=Depends(require_staff)):
    return ok(services.create_simple("banner", body), "Banner created", 201)


@app.get("/banners")
def list_banners(type: Optional[BannerType] = None):
    return ok(services.list_banners(type))


@app.get("/banners/{banner_id}")
def get_banner(banner_id: str):
    return ok(services.get_simple("banner", banner_id, "Banner"))


@app.patch("/banners/{banner_id}")
def update_banner(banner_id: str, body: BannerUpdateBody, user=Depends(require_staff)):
    return ok(services.update_banner(banner_id, body), "Banner updated")


@app.delete("/banners/{banner_id}")
def delete_banner(banner_id: str, user=Depends(require_staff)):
    services.delete_banner(banner_id)
    return ok(None, "Banner deleted")


# ----------------------- Orders -----------------------
@app.post("/orders")
def create_order(body: OrderCreateBody, user=Depends(get_optional_user)):
    return ok(services.create_order(body, user), "Order created", 201)


@app.get("/orders")
def list_orders(limit: Optional[int] = None, user=Depends(require_staff)):
    return ok(services.list_orders(limit))


@app.get("/orders/my")
def my_orders(user=Depends(get_current_user)):
    return ok(services.my_orders(user["id"]))


@app.get("/orders/lookup")
def lookup_orders(email: Optional[str] = None, phone: Optional[str] = None):
    return ok(services.lookup_orders(email, phone))


@app.get("/orders/revenue")
def order_revenue(mode: str = "day", user=Depends(require_staff)):
    return ok(services.revenue(mode))


@app.get("/orders/{order_id}")
def get_order(order_id: str):
    return ok(services.get_order(order_id))


@app.patch("/orders/{order_id}")
def update_order(order_id: str, body: OrderUpdateBody, user=Depends(require_staff)):
    return ok(services.update_order(order_id, body), "Order updated")


@app.patch("/orders/{order_id}/payment-status")
def update_payment_status(order_id: str, body: PaymentStatusBody):
    if not body.payment_status:
        raise HTTPException(status_code=400, detail="Payment status can only be set to true")
    return ok(services.confirm_payment(order_id), "Payment confirmed")


@app.get("/orders/{order_id}/payment-qr")
def order_payment_qr(order_id: str):
    return ok(services.payment_qr(order_id))


# ----------------------- Refunds -----------------------
@app.post("/refunds")
def create_refund(body: RefundCreateBody, user=Depends(get_current_user)):
    return ok(services.create_refund(user, body), "Refund request created", 201)


@app.get("/refunds")
def list_refunds(user=Depends(require_staff)):
    return ok(services.list_refunds())


@app.get("/refunds/my")
def my_refunds(user=Depends(get_current_user)):
    return ok(services.my_refunds(user["id"]))


@app.patch("/refunds/{refund_id}/approve")
def approve_refund(refund_id: str, body: Optional[RefundDecisionBody] = None, user=Depends(require_staff)):
    notes = body.admin_notes if body else None
    return ok(services.decide_refund(refund_id, True, notes), "Refund approved")


@app.patch("/refunds/{refund_id}/reject")
def reject_refund(refund_id: str, body: Optional[RefundDecisionBody] = None, user=Depends(require_staff)):
    notes = body.admin_notes if body else None
    return ok(services.decide_refund(refund_id, False, notes), "Refund rejected")


@app.patch("/refunds/{refund_id}/status")
def refund_status(refund_id: str, body: RefundStatusBody, user=Depends(require_staff)):
    return ok(services.update_refund_status(refund_id, body), f"Refund {body.status}")


# ----------------------- Cart -----------------------
@app.get("/cart")
def get_cart(user=Depends(get_current_user)):
    return ok(services.get_cart(user["id"]))


@app.post("/cart")
def update_cart(body: CartBody, user=Depends(get_current_user)):
    return ok(services.update_cart(user["id"], body.items), "Cart updated", 201)


@app.delete("/cart")
def clear_cart(user=Depends(get_current_user)):
    return ok(services.clear_cart(user["id"]), "Cart cleared")


# ----------------------- Upload -----------------------
@app.post("/upload/images")
def upload_images(images: List[UploadFile] = File(...), user=Depends(require_staff)):
    uploaded = []
    for image in images:
        if image.content_type and not image.content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail=f"{image.filename} is not an image")
        uploaded.append(media.upload_image(image.file.read()))
    return ok(uploaded, "Images uploaded", 201)


@app.delete("/upload/images/{public_id:path}")
def delete_uploaded_image(public_id: str, user=Depends(require_staff)):
    if not media.delete_image(public_id):
        raise HTTPException(status_code=404, detail=f"Image {public_id} not found")
    return ok(None, "Image deleted")


# ----------------------- Seed Demo Data -----------------------
DEMO_CATEGORIES = [
    {"name": "Processors", "type": "cpu"},
    {"name": "Graphics Cards", "type": "gpu"},
    {"name": "Memory", "type": "ram"},
    {"name": "Storage", "type": "ssd"},
]

DEMO_MANUFACTURERS = [
    {"name": "AMD", "type": "cpu", "website": "https://www.amd.com"},
    {"name": "NVIDIA", "type": "gpu", "website": "https://www.nvidia.com"},
    {"name": "Kingston", "type": "ram", "website": "https://www.kingston.com"},
    {"name": "Samsung", "type": "ssd", "website": "https://www.samsung.com"},
]

DEMO_PRODUCTS = [
    {
        "name": "AMD Ryzen 7 7800X3D",
        "type": "cpu",
        "category": "Processors",
        "manufacturer": "AMD",
        "description": "8 cores with 3D V-Cache for gaming.",
        "original_price": 10990000,
        "discount": 10,
        "stock": 20,
        "images": ["https://images.unsplash.com/photo-1591799264318-7e6ef8ddb7ea"],
        "specs": {"cores": 8, "threads": 16, "socket": "AM5"},
    },
    {
        "name": "NVIDIA GeForce RTX 4070 Super",
        "type": "gpu",
        "category": "Graphics Cards",
        "manufacturer": "NVIDIA",
        "description": "Ada Lovelace card for 1440p.",
        "original_price": 16490000,
        "discount": 5,
        "stock": 10,
        "images": ["https://images.unsplash.com/photo-1587202372775-e229f172b9d7"],
        "specs": {"vram": 12, "chipset": "AD104"},
    },
    {
        "name": "Kingston Fury Beast 32GB DDR5",
        "type": "ram",
        "category": "Memory",
        "manufacturer": "Kingston",
        "description": "2x16GB kit.",
        "original_price": 2790000,
        "discount": 0,
        "stock": 50,
        "images": ["https://images.unsplash.com/photo-1562976540-1502c2145186"],
        "specs": {"size": 32, "bus": "5600MHz"},
        "is_redeemable": True,
        "require_point": 300,
    },
    {
        "name": "Samsung 990 Pro 1TB",
        "type": "ssd",
        "category": "Storage",
        "manufacturer": "Samsung",
        "description": "PCIe 4.0 NVMe SSD.",
        "original_price": 3290000,
        "discount": 15,
        "stock": 35,
        "images": ["https://images.unsplash.com/photo-1597872200969-2b65d56bd16b"],
        "specs": {"capacity": 1000, "interface": "PCIe 4.0 x4"},
        "is_redeemable": True,
        "require_point": 400,
    },
]


@app.post("/seed")
def seed():
    if database.collection("product").count_documents({}) > 0:
        return ok({"seeded": False}, "Products already exist")
    category_ids = {c["name"]: database.create_document("category", Category(**c)) for c in DEMO_CATEGORIES}
    manufacturer_ids = {
        m["name"]: database.create_document("manufacturer", Manufacturer(**m)) for m in DEMO_MANUFACTURERS
    }
    for p in DEMO_PRODUCTS:
        p = dict(p)
        body = ProductCreateBody(
            category_id=category_ids[p.pop("category")],
            manufacturer_id=manufacturer_ids[p.pop("manufacturer")],
            **p,
        )
        services.create_product(body)
    # create admin user if none
    if database.collection("user").count_documents({"role": "ADMIN"}) == 0:
        admin = UserSchema(name="Admin", email="admin@pcshop.com", password=hash_password("admin123"),
                           role="ADMIN", is_active=True)
        database.create_document("user", admin)
    return ok({"seeded": True, "products": database.collection("product").count_documents({})}, "Seeded", 201)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
