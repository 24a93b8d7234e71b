"""
Business logic behind the REST routes.

Every function reads and writes MongoDB directly through ``database`` and
raises ``HTTPException`` for anything the caller got wrong. Stock and point
balances are only ever changed with conditional single-document updates so
that concurrent requests cannot oversell or award twice.
"""
import logging
import math
import re
import secrets
import unicodedata
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

import database
import mailer
import media
from database import collection, create_document, serialize_doc, to_object_id, utcnow
from schemas import (
    PRODUCT_TYPE_SPECS, Order, OrderItem, Product, Redemption, RefundRequest, User, validate_specs,
)
from security import create_token, hash_password, verify_password
from settings import settings

logger = logging.getLogger(__name__)

POINT_UNIT = 10000  # one loyalty point per 10,000 of order total
ACTIVATION_CODE_MINUTES = 15
RENEWED_CODE_MINUTES = 5
PRODUCT_SORT_FIELDS = ("created_at", "final_price", "sold_count", "name")
QR_BASE_URL = "https://img.vietqr.io/image"


# ----------------------- Helpers -----------------------
def slugify(text: str) -> str:
    text = text.replace("đ", "d").replace("Đ", "D")
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode()
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def compute_final_price(original_price: float, discount: float) -> float:
    return original_price - original_price * discount / 100


def compute_earned_points(total: float) -> int:
    return int(math.floor(total / POINT_UNIT))


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def public_user(user: dict) -> dict:
    user = serialize_doc(user)
    for key in ("password", "code_id", "code_expired"):
        user.pop(key, None)
    return user


def paginate(collection_name: str, filter_dict: dict, page: int, limit: int, sort=None):
    if page < 1 or limit < 1:
        raise HTTPException(status_code=400, detail="page and limit must be positive")
    coll = collection(collection_name)
    total = coll.count_documents(filter_dict)
    cursor = coll.find(filter_dict)
    if sort:
        cursor = cursor.sort(sort)
    docs = list(cursor.skip((page - 1) * limit).limit(limit))
    meta = {"page": page, "limit": limit, "total": total, "total_pages": max(1, math.ceil(total / limit))}
    return docs, meta


def _get_or_404(collection_name: str, id_str: str, label: str) -> dict:
    doc = database.get_document(collection_name, id_str)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} with ID {id_str} not found")
    return doc


# ----------------------- Users -----------------------
def is_email_exist(email: str) -> bool:
    return collection("user").find_one({"email": email}, {"_id": 1}) is not None


def create_user(body) -> str:
    if is_email_exist(body.email):
        raise HTTPException(status_code=400, detail=f"Email: {body.email} is exist")
    user = User(**body.model_dump(exclude={"password"}), password=hash_password(body.password))
    return create_document("user", user)


def list_users(page: int, limit: int) -> dict:
    docs, meta = paginate("user", {}, page, limit, sort=[("created_at", -1)])
    return {"result": [public_user(d) for d in docs], "meta": meta}


def get_user(user_id: str) -> dict:
    return public_user(_get_or_404("user", user_id, "User"))


def update_user(user_id: str, body) -> dict:
    changes = body.model_dump(exclude_none=True)
    if "email" in changes:
        clash = collection("user").find_one({"email": changes["email"], "_id": {"$ne": to_object_id(user_id)}})
        if clash:
            raise HTTPException(status_code=400, detail=f"Email: {changes['email']} is exist")
    updated = database.update_document("user", user_id, changes)
    if not updated:
        raise HTTPException(status_code=404, detail=f"User with ID {user_id} not found")
    return public_user(updated)


def delete_user(user_id: str) -> None:
    if not database.delete_document("user", user_id):
        raise HTTPException(status_code=404, detail=f"User with ID {user_id} not found")


def get_user_points(user_id: str) -> dict:
    user = database.get_document("user", user_id)
    if not user:
        raise HTTPException(status_code=400, detail="User not found!")
    return {"points": user.get("points", 0)}


def toggle_user_role(user_id: str) -> dict:
    user = _get_or_404("user", user_id, "User")
    previous = user.get("role", "USER")
    if previous == "ADMIN":
        raise HTTPException(status_code=400, detail="Admin role cannot be toggled")
    new_role = "STAFF" if previous == "USER" else "USER"
    database.update_document("user", user_id, {"role": new_role})
    logger.info("User %s role changed %s -> %s", user_id, previous, new_role)
    return {"new_role": new_role, "previous_role": previous}


# ----------------------- Auth -----------------------
def register(body) -> dict:
    if is_email_exist(body.email):
        raise HTTPException(status_code=400, detail=f"Email: {body.email} is already exist")
    user = User(
        name=body.name,
        email=body.email,
        password=hash_password(body.password),
        phone=body.phone,
        address=body.address,
        is_active=False,
        code_id=generate_code(),
        code_expired=utcnow() + timedelta(minutes=ACTIVATION_CODE_MINUTES),
    )
    user_id = create_document("user", user)
    logger.info("Registered user %s (%s)", user_id, body.email)
    mailer.notify(user.email, "activation", name=user.name or user.email,
                  code=user.code_id, minutes=ACTIVATION_CODE_MINUTES)
    return {"id": user_id}


def login(body) -> dict:
    user = collection("user").find_one({"email": body.email})
    if not user or not verify_password(body.password, user.get("password")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active"):
        raise HTTPException(status_code=400, detail="Account is not active")
    profile = public_user(user)
    token = create_token({"id": profile["id"], "email": profile["email"], "role": profile.get("role", "USER")})
    return {
        "user": {k: profile.get(k) for k in ("id", "email", "name", "role", "points")},
        "access_token": token,
    }


def _code_expired(user: dict) -> bool:
    expires = database.as_utc(user.get("code_expired"))
    return expires is None or expires < utcnow()


def activate(body) -> dict:
    user = database.get_document("user", body.id)
    if not user:
        raise HTTPException(status_code=400, detail="User not found!")
    if user.get("code_id") != body.active_code:
        raise HTTPException(status_code=400, detail="Invalid activation code!")
    if _code_expired(user):
        raise HTTPException(status_code=400, detail="Activation code has expired!")
    database.update_document("user", body.id, {"is_active": True})
    return {"id": body.id}


def _send_code(user: dict, template: str) -> None:
    code = user.get("code_id")
    if not code or _code_expired(user):
        code = generate_code()
        minutes = RENEWED_CODE_MINUTES
        collection("user").update_one(
            {"_id": user["_id"]},
            {"$set": {
                "code_id": code,
                "code_expired": utcnow() + timedelta(minutes=minutes),
                "updated_at": utcnow(),
            }},
        )
    else:
        # reused code keeps its original deadline
        remaining = database.as_utc(user["code_expired"]) - utcnow()
        minutes = max(1, math.ceil(remaining.total_seconds() / 60))
    mailer.notify(user["email"], template, name=user.get("name") or user["email"],
                  code=code, minutes=minutes)


def reactivate(email: str) -> dict:
    user = collection("user").find_one({"email": email})
    if not user:
        raise HTTPException(status_code=400, detail="User not found!")
    if user.get("is_active"):
        raise HTTPException(status_code=400, detail="Account is already active!")
    _send_code(user, "activation")
    return {"email": email, "id": str(user["_id"])}


def send_change_password_code(email: str) -> dict:
    user = collection("user").find_one({"email": email})
    if not user:
        raise HTTPException(status_code=400, detail="User not found!")
    _send_code(user, "change-password")
    return {"email": email}


def change_password(body) -> dict:
    user = collection("user").find_one({"email": body.email})
    if not user:
        raise HTTPException(status_code=400, detail="User not found!")
    if not user.get("code_id") or user.get("code_id") != body.code_id:
        raise HTTPException(status_code=400, detail="Invalid change password code or wrong code!")
    if _code_expired(user):
        raise HTTPException(status_code=400, detail="Change password code has expired!")
    if body.new_password != body.confirm_password:
        raise HTTPException(status_code=400, detail="Confirm password does not match!")
    collection("user").update_one(
        {"_id": user["_id"]},
        {"$set": {"password": hash_password(body.new_password), "code_id": None, "updated_at": utcnow()}},
    )
    return {"email": body.email}


# ----------------------- Categories & manufacturers -----------------------
def create_simple(collection_name: str, body) -> dict:
    doc_id = create_document(collection_name, body)
    return serialize_doc(database.get_document(collection_name, doc_id))


def list_simple(collection_name: str) -> List[dict]:
    return serialize_doc(database.get_documents(collection_name, sort=[("created_at", -1)])) or []


def get_simple(collection_name: str, doc_id: str, label: str) -> dict:
    return serialize_doc(_get_or_404(collection_name, doc_id, label))


def update_simple(collection_name: str, doc_id: str, body, label: str) -> dict:
    updated = database.update_document(collection_name, doc_id, body.model_dump(exclude_none=True))
    if not updated:
        raise HTTPException(status_code=404, detail=f"{label} with ID {doc_id} not found")
    return serialize_doc(updated)


def delete_simple(collection_name: str, doc_id: str, label: str) -> None:
    if not database.delete_document(collection_name, doc_id):
        raise HTTPException(status_code=404, detail=f"{label} with ID {doc_id} not found")


# ----------------------- Products -----------------------
def _product_filter(id_or_slug: str) -> dict:
    if database.is_object_id(id_or_slug):
        return {"_id": to_object_id(id_or_slug)}
    return {"slug": id_or_slug}


def _find_product(id_or_slug: str) -> dict:
    product = collection("product").find_one(_product_filter(id_or_slug))
    if not product:
        kind = "ID" if database.is_object_id(id_or_slug) else "slug"
        raise HTTPException(status_code=404, detail=f"Product with {kind} {id_or_slug} not found")
    return product


def _populate(products: List[dict]) -> List[dict]:
    """Attach the referenced category and manufacturer to each product."""
    refs = {"category": set(), "manufacturer": set()}
    for p in products:
        for name in refs:
            ref = p.get(f"{name}_id")
            if ref and database.is_object_id(ref):
                refs[name].add(to_object_id(ref))
    lookup = {}
    for name, ids in refs.items():
        docs = collection(name).find({"_id": {"$in": list(ids)}}) if ids else []
        lookup[name] = {str(d["_id"]): {"id": str(d["_id"]), "name": d.get("name")} for d in docs}
    out = []
    for p in products:
        item = serialize_doc(p)
        item["category"] = lookup["category"].get(p.get("category_id"))
        item["manufacturer"] = lookup["manufacturer"].get(p.get("manufacturer_id"))
        out.append(item)
    return out


def _check_reference(collection_name: str, ref_id: str, label: str) -> None:
    if not database.is_object_id(ref_id) or not database.get_document(collection_name, ref_id):
        raise HTTPException(status_code=400, detail=f"{label} {ref_id} does not exist")


def _unique_slug(name: str, exclude_id=None) -> str:
    slug = slugify(name)
    if not slug:
        raise HTTPException(status_code=400, detail="Product name must contain letters or digits")
    query = {"slug": slug}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if collection("product").find_one(query):
        raise HTTPException(status_code=400, detail=f"Product with slug {slug} already exists")
    return slug


def create_product(body) -> dict:
    _check_reference("category", body.category_id, "Category")
    _check_reference("manufacturer", body.manufacturer_id, "Manufacturer")
    product = Product(
        **body.model_dump(),
        slug=_unique_slug(body.name),
        final_price=compute_final_price(body.original_price, body.discount),
    )
    product_id = create_document("product", product)
    logger.info("Created product %s (%s)", product_id, product.slug)
    return _populate([collection("product").find_one({"_id": to_object_id(product_id)})])[0]


def list_products(q: Optional[str] = None, product_type: Optional[str] = None,
                  category_id: Optional[str] = None, manufacturer_id: Optional[str] = None,
                  sort_by: str = "created_at", order: str = "desc",
                  page: int = 1, limit: int = 20) -> dict:
    if sort_by not in PRODUCT_SORT_FIELDS:
        raise HTTPException(status_code=400, detail=f"sort_by must be one of {', '.join(PRODUCT_SORT_FIELDS)}")
    if order not in ("asc", "desc"):
        raise HTTPException(status_code=400, detail="order must be 'asc' or 'desc'")
    filt = {}
    if q:
        filt["name"] = {"$regex": re.escape(q), "$options": "i"}
    if product_type:
        filt["type"] = product_type
    if category_id:
        filt["category_id"] = category_id
    if manufacturer_id:
        filt["manufacturer_id"] = manufacturer_id
    direction = 1 if order == "asc" else -1
    docs, meta = paginate("product", filt, page, limit, sort=[(sort_by, direction)])
    return {"result": _populate(docs), "meta": meta}


def list_redeemable() -> List[dict]:
    docs = database.get_documents("product", {"is_redeemable": True}, sort=[("require_point", 1)])
    return _populate(docs)


def get_product(id_or_slug: str) -> dict:
    return _populate([_find_product(id_or_slug)])[0]


def update_product(id_or_slug: str, body) -> dict:
    product = _find_product(id_or_slug)
    changes = body.model_dump(exclude_none=True)

    if "name" in changes:
        changes["slug"] = _unique_slug(changes["name"], exclude_id=product["_id"])
    if "category_id" in changes:
        _check_reference("category", changes["category_id"], "Category")
    if "manufacturer_id" in changes:
        _check_reference("manufacturer", changes["manufacturer_id"], "Manufacturer")
    if "type" in changes or "specs" in changes:
        product_type = changes.get("type", product.get("type", "other"))
        specs = changes.get("specs", product.get("specs") or {})
        try:
            changes["specs"] = validate_specs(product_type, specs)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    if "original_price" in changes or "discount" in changes:
        original_price = changes.get("original_price", product.get("original_price", 0))
        discount = changes.get("discount", product.get("discount", 0))
        changes["final_price"] = compute_final_price(original_price, discount)

    updated = database.update_document("product", str(product["_id"]), changes)
    if not updated:
        raise HTTPException(status_code=404, detail=f"Product with ID {product['_id']} not found after update")
    return _populate([updated])[0]


def delete_product(id_or_slug: str) -> None:
    product = _find_product(id_or_slug)
    res = collection("product").delete_one({"_id": product["_id"]})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail=f"Product with ID {product['_id']} not found")
    media.delete_images_quietly(product.get("image_public_ids"))
    logger.info("Deleted product %s (%s)", product["_id"], product.get("slug"))


# ----------------------- Stock & points -----------------------
def _reserve_stock(items: List[dict]) -> None:
    """Take every line item out of stock or none of them."""
    reserved = []
    for item in items:
        res = collection("product").update_one(
            {"_id": to_object_id(item["product_id"]), "stock": {"$gte": item["quantity"]}},
            {"$inc": {"stock": -item["quantity"], "sold_count": item["quantity"]}},
        )
        if res.matched_count == 0:
            _release_stock(reserved)
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {item['name']}")
        reserved.append(item)


def _release_stock(items: List[dict]) -> None:
    for item in items:
        collection("product").update_one(
            {"_id": to_object_id(item["product_id"])},
            {"$inc": {"stock": item["quantity"], "sold_count": -item["quantity"]}},
        )


def _award_points(user_id: Optional[str], points: int) -> None:
    if not user_id or points <= 0:
        return
    collection("user").update_one(
        {"_id": to_object_id(user_id)},
        {"$inc": {"points": points}, "$set": {"updated_at": utcnow()}},
    )


# ----------------------- Redemption -----------------------
def redeem_product(user: dict, product_id: str) -> dict:
    product = _get_or_404("product", product_id, "Product")
    if not product.get("is_redeemable"):
        raise HTTPException(status_code=400, detail="Product is not redeemable")
    cost = int(product.get("require_point") or 0)
    if cost <= 0:
        raise HTTPException(status_code=400, detail="Product has no point cost")

    res = collection("product").update_one(
        {"_id": product["_id"], "stock": {"$gte": 1}},
        {"$inc": {"stock": -1}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=400, detail="Product is out of stock")

    updated = collection("user").find_one_and_update(
        {"_id": to_object_id(user["id"]), "points": {"$gte": cost}},
        {"$inc": {"points": -cost}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        collection("product").update_one({"_id": product["_id"]}, {"$inc": {"stock": 1}})
        raise HTTPException(status_code=400, detail="Not enough points")

    redemption = Redemption(
        user_id=user["id"],
        product_id=product_id,
        product_name=product.get("name", ""),
        require_point=cost,
        redeemed_at=utcnow(),
    )
    try:
        create_document("redemption", redemption)
    except PyMongoError:
        logger.exception("Failed to record redemption of %s by %s", product_id, user["id"])

    logger.info("User %s redeemed %s for %d points", user["id"], product_id, cost)
    mailer.notify(updated["email"], "redeem", name=updated.get("name") or updated["email"],
                  product=product.get("name"), points=cost, remaining=updated["points"])
    return {"points": updated["points"], "product_id": product_id, "require_point": cost}


def redeem_history(user_id: str, current_user: dict, page: int = 1, limit: int = 10) -> dict:
    if current_user["id"] != user_id and current_user.get("role") not in ("STAFF", "ADMIN"):
        raise HTTPException(status_code=403, detail="Not allowed")
    docs, meta = paginate("redemption", {"user_id": user_id}, page, limit, sort=[("redeemed_at", -1)])
    return {"data": serialize_doc(docs) or [], **meta}


# ----------------------- Orders -----------------------
def _build_items(items_in) -> List[dict]:
    """Snapshot catalog data for each requested line, merging repeats."""
    quantities: Dict[str, int] = {}
    for it in items_in:
        quantities[it.product_id] = quantities.get(it.product_id, 0) + it.quantity
    items = []
    for product_id, quantity in quantities.items():
        product = None
        if database.is_object_id(product_id):
            product = collection("product").find_one({"_id": to_object_id(product_id)})
        if not product:
            raise HTTPException(status_code=400, detail=f"Invalid product: {product_id}")
        images = product.get("images") or []
        items.append(OrderItem(
            product_id=product_id,
            name=product.get("name", ""),
            price=float(product.get("final_price", 0)),
            quantity=quantity,
            image=images[0] if images else None,
        ).model_dump())
    return items


def _check_stock(items: List[dict]) -> None:
    for item in items:
        product = collection("product").find_one({"_id": to_object_id(item["product_id"])}, {"stock": 1})
        if not product or product.get("stock", 0) < item["quantity"]:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {item['name']}")


def create_order(body, user: Optional[dict] = None) -> dict:
    items = _build_items(body.items)
    total = round(sum(i["price"] * i["quantity"] for i in items), 2)
    order = Order(
        user_id=user["id"] if user else None,
        full_name=body.full_name,
        email=body.email,
        address=body.address,
        phone=body.phone,
        note=body.note,
        items=items,
        total=total,
        payment=body.payment,
    )

    if order.payment == "cod":
        _reserve_stock(items)
        order.fulfilled = True
        order.earned_points = compute_earned_points(total)
        try:
            order_id = create_document("order", order)
        except PyMongoError:
            _release_stock(items)
            raise
        _award_points(order.user_id, order.earned_points)
        logger.info("COD order %s fulfilled, %d points to %s", order_id, order.earned_points, order.user_id)
    else:
        _check_stock(items)
        order_id = create_document("order", order)
        logger.info("Order %s created, awaiting payment", order_id)
    return serialize_doc(database.get_document("order", order_id))


def confirm_payment(order_id: str) -> dict:
    """Flip payment_status to true, fulfilling the order exactly once."""
    order = _get_or_404("order", order_id, "Order")
    if order.get("payment_status"):
        return serialize_doc(order)

    oid = order["_id"]
    if order.get("fulfilled"):
        updated = collection("order").find_one_and_update(
            {"_id": oid},
            {"$set": {"payment_status": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(updated)

    points = compute_earned_points(order.get("total", 0))
    _reserve_stock(order["items"])
    updated = collection("order").find_one_and_update(
        {"_id": oid, "fulfilled": False},
        {"$set": {"payment_status": True, "fulfilled": True, "earned_points": points, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # another request fulfilled it first
        _release_stock(order["items"])
        updated = collection("order").find_one_and_update(
            {"_id": oid},
            {"$set": {"payment_status": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(updated)

    _award_points(order.get("user_id"), points)
    logger.info("Order %s paid and fulfilled, %d points to %s", order_id, points, order.get("user_id"))
    return serialize_doc(updated)


def list_orders(limit: Optional[int] = None) -> List[dict]:
    return serialize_doc(database.get_documents("order", limit=limit, sort=[("created_at", -1)])) or []


def my_orders(user_id: str) -> List[dict]:
    docs = database.get_documents("order", {"user_id": user_id}, sort=[("created_at", -1)])
    return serialize_doc(docs) or []


def lookup_orders(email: Optional[str], phone: Optional[str]) -> List[dict]:
    if not email or not phone:
        raise HTTPException(status_code=400, detail="Email and phone are required")
    docs = database.get_documents("order", {"email": email, "phone": phone}, sort=[("created_at", -1)])
    return serialize_doc(docs) or []


def get_order(order_id: str) -> dict:
    return serialize_doc(_get_or_404("order", order_id, "Order"))


def update_order(order_id: str, body) -> dict:
    order = _get_or_404("order", order_id, "Order")
    changes = body.model_dump(exclude_none=True)
    if changes:
        database.update_document("order", order_id, changes)
    # cash is collected on delivery
    if changes.get("status") == "delivered" and order.get("payment") == "cod" and not order.get("payment_status"):
        return confirm_payment(order_id)
    return get_order(order_id)


def revenue(mode: str) -> dict:
    """Paid revenue per day of the current month or per month of the current year."""
    if mode not in ("day", "month"):
        raise HTTPException(status_code=400, detail="mode must be 'day' or 'month'")
    now = utcnow()
    buckets: Dict[str, float] = {}
    for order in collection("order").find({"payment_status": True}, {"total": 1, "created_at": 1}):
        created = database.as_utc(order.get("created_at"))
        if created is None or created.year != now.year:
            continue
        if mode == "day":
            if created.month != now.month:
                continue
            label = created.strftime("%d/%m/%Y")
        else:
            label = created.strftime("%m/%Y")
        buckets[label] = buckets.get(label, 0) + order.get("total", 0)
    labels = sorted(buckets, key=lambda l: tuple(reversed(l.split("/"))))
    return {"labels": labels, "data": [buckets[l] for l in labels]}


def payment_qr(order_id: str) -> dict:
    order = _get_or_404("order", order_id, "Order")
    if not settings.BANK_ACCOUNT_NO:
        raise HTTPException(status_code=500, detail="Bank account is not configured")
    query = urlencode({
        "amount": int(order.get("total", 0)),
        "addInfo": f"Thanh toan don hang {order_id}",
        "accountName": settings.BANK_ACCOUNT_NAME,
    })
    url = f"{QR_BASE_URL}/{settings.BANK_CODE}-{settings.BANK_ACCOUNT_NO}-compact2.png?{query}"
    return {"order_id": order_id, "amount": order.get("total", 0),
            "payment_status": order.get("payment_status", False), "qr_url": url}


# ----------------------- Refunds -----------------------
def _claim_refund_quantities(order_oid, ordered: Dict[str, int], requested: Dict[str, int]) -> None:
    """Add ``requested`` to the order's refunded counters, or raise if any
    product would exceed what was ordered. Pending, approved and completed
    refunds all hold their quantity; a rejection gives it back."""
    filt = {"_id": order_oid}
    for product_id, quantity in requested.items():
        filt[f"refunded_quantities.{product_id}"] = {"$not": {"$gt": ordered[product_id] - quantity}}
    res = collection("order").update_one(
        filt,
        {"$inc": {f"refunded_quantities.{k}": v for k, v in requested.items()}},
    )
    if res.matched_count == 0:
        order = collection("order").find_one({"_id": order_oid}, {"refunded_quantities": 1}) or {}
        held = order.get("refunded_quantities") or {}
        for product_id, quantity in requested.items():
            if quantity + held.get(product_id, 0) > ordered[product_id]:
                raise HTTPException(status_code=400, detail=f"Invalid quantity for product with ID {product_id}")
        raise HTTPException(status_code=409, detail="Order changed while creating the refund, please retry")


def _release_refund_quantities(order_id: str, quantities: Dict[str, int]) -> None:
    if not quantities or not database.is_object_id(order_id):
        return
    collection("order").update_one(
        {"_id": to_object_id(order_id)},
        {"$inc": {f"refunded_quantities.{k}": -v for k, v in quantities.items()}},
    )


def create_refund(user: dict, body) -> dict:
    order = None
    if database.is_object_id(body.order_id):
        order = collection("order").find_one({"_id": to_object_id(body.order_id), "user_id": user["id"]})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found or does not belong to the user")
    if not order.get("fulfilled"):
        raise HTTPException(status_code=400, detail="Only fulfilled orders can be refunded")

    ordered: Dict[str, int] = {}
    for item in order.get("items", []):
        ordered[item["product_id"]] = ordered.get(item["product_id"], 0) + item["quantity"]

    requested: Dict[str, int] = {}
    for p in body.products:
        if p.product_id not in ordered:
            raise HTTPException(status_code=400, detail=f"Product with ID {p.product_id} not found in the order")
        if p.quantity <= 0:
            raise HTTPException(status_code=400, detail=f"Invalid quantity for product with ID {p.product_id}")
        requested[p.product_id] = requested.get(p.product_id, 0) + p.quantity
    for product_id, quantity in requested.items():
        if quantity > ordered[product_id]:
            raise HTTPException(status_code=400, detail=f"Invalid quantity for product with ID {product_id}")

    _claim_refund_quantities(order["_id"], ordered, requested)

    refund = RefundRequest(
        order_id=body.order_id,
        user_id=user["id"],
        products=[{"product_id": k, "quantity": v} for k, v in requested.items()],
        reason=body.reason,
    )
    try:
        refund_id = create_document("refundrequest", refund)
    except PyMongoError:
        _release_refund_quantities(body.order_id, requested)
        raise
    logger.info("Refund %s requested for order %s", refund_id, body.order_id)
    return serialize_doc(database.get_document("refundrequest", refund_id))


def list_refunds() -> List[dict]:
    refunds = database.get_documents("refundrequest", sort=[("created_at", -1)])
    user_ids = {to_object_id(r["user_id"]) for r in refunds if database.is_object_id(r.get("user_id", ""))}
    users = {}
    if user_ids:
        for u in collection("user").find({"_id": {"$in": list(user_ids)}}, {"email": 1, "name": 1}):
            users[str(u["_id"])] = {"id": str(u["_id"]), "email": u.get("email"), "name": u.get("name")}
    out = []
    for r in refunds:
        item = serialize_doc(r)
        item["user"] = users.get(r.get("user_id"))
        out.append(item)
    return out


def my_refunds(user_id: str) -> List[dict]:
    return serialize_doc(database.get_documents("refundrequest", {"user_id": user_id},
                                                sort=[("created_at", -1)])) or []


def _transition_refund(refund_id: str, allowed_from, changes: dict, error: str) -> dict:
    refund = _get_or_404("refundrequest", refund_id, "Refund request")
    if refund.get("status") not in allowed_from:
        raise HTTPException(status_code=400, detail=error)
    updated = collection("refundrequest").find_one_and_update(
        {"_id": refund["_id"], "status": refund["status"]},
        {"$set": {**changes, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=400, detail=error)
    return updated


def decide_refund(refund_id: str, approve: bool, admin_notes: Optional[str] = None) -> dict:
    status = "approved" if approve else "rejected"
    verb = "approved" if approve else "rejected"
    changes = {"status": status}
    if admin_notes is not None:
        changes["admin_notes"] = admin_notes
    refund = _transition_refund(refund_id, ("pending",), changes,
                                f"Only pending refund requests can be {verb}")

    if database.is_object_id(refund["order_id"]):
        collection("order").update_one(
            {"_id": to_object_id(refund["order_id"])},
            {"$set": {"status": f"refund_{status}", "updated_at": utcnow()}},
        )
    if not approve:
        _release_refund_quantities(refund["order_id"],
                                   {p["product_id"]: p["quantity"] for p in refund.get("products", [])})
    logger.info("Refund %s %s", refund_id, status)

    user = database.get_document("user", refund["user_id"]) if database.is_object_id(refund["user_id"]) else None
    if user:
        notes = f"Notes: {admin_notes}\n" if admin_notes else ""
        mailer.notify(user["email"], f"refund-{status}", name=user.get("name") or user["email"],
                      refund_id=refund_id, order_id=refund["order_id"], reason=refund["reason"], notes=notes)
    return serialize_doc(refund)


def update_refund_status(refund_id: str, body) -> dict:
    allowed_from = ("approved",) if body.status == "processing" else ("approved", "processing")
    changes = {"status": body.status}
    if body.admin_notes is not None:
        changes["admin_notes"] = body.admin_notes
    refund = _transition_refund(refund_id, allowed_from, changes,
                                f"Refund request cannot move to {body.status}")
    if body.status == "completed":
        for p in refund.get("products", []):
            if database.is_object_id(p["product_id"]):
                collection("product").update_one(
                    {"_id": to_object_id(p["product_id"])},
                    {"$inc": {"stock": p["quantity"], "sold_count": -p["quantity"]}},
                )
    logger.info("Refund %s moved to %s", refund_id, body.status)
    return serialize_doc(refund)


# ----------------------- Cart -----------------------
def get_cart(user_id: str) -> dict:
    now = utcnow()
    cart = collection("cart").find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {"items": [], "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return {"items": cart.get("items", [])}


def update_cart(user_id: str, items) -> dict:
    now = utcnow()
    payload = [i.model_dump() for i in items]
    collection("cart").update_one(
        {"user_id": user_id},
        {"$set": {"items": payload, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    return {"items": payload}


def clear_cart(user_id: str) -> dict:
    collection("cart").update_one({"user_id": user_id}, {"$set": {"items": [], "updated_at": utcnow()}})
    return {"items": []}


# ----------------------- Banners -----------------------
def list_banners(banner_type: Optional[str] = None) -> List[dict]:
    if banner_type:
        docs = database.get_documents("banner", {"type": banner_type, "is_active": True}, sort=[("order", 1)])
    else:
        docs = database.get_documents("banner", sort=[("order", 1)])
    return serialize_doc(docs) or []


def update_banner(banner_id: str, body) -> dict:
    banner = _get_or_404("banner", banner_id, "Banner")
    changes = body.model_dump(exclude_none=True)
    old_image = banner.get("image_public_id")
    updated = database.update_document("banner", banner_id, changes)
    if not updated:
        raise HTTPException(status_code=404, detail=f"Banner with ID {banner_id} not found")
    if changes.get("image_public_id") and changes["image_public_id"] != old_image:
        media.delete_images_quietly([old_image])
    return serialize_doc(updated)


def delete_banner(banner_id: str) -> None:
    banner = _get_or_404("banner", banner_id, "Banner")
    database.delete_document("banner", banner_id)
    media.delete_images_quietly([banner.get("image_public_id")])


def product_specs() -> Dict[str, Any]:
    return PRODUCT_TYPE_SPECS
