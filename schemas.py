"""
Database Schemas for the PC Shop API

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
Request bodies live next to the collection they write to.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, EmailStr, model_validator

ProductType = Literal[
    "cpu", "gpu", "vga", "ram", "ssd", "hdd", "mainboard", "psu", "case", "monitor", "other"
]
BannerType = Literal["carousel", "sub_banner"]
Role = Literal["USER", "STAFF", "ADMIN"]
PaymentMethod = Literal["cod", "banking"]
OrderStatus = Literal[
    "pending", "processing", "shipped", "delivered", "cancelled", "refund_approved", "refund_rejected"
]
RefundStatus = Literal["pending", "approved", "rejected", "processing", "completed"]

# Fields the admin product forms collect for each hardware type.
PRODUCT_TYPE_SPECS: Dict[str, List[Dict[str, str]]] = {
    "cpu": [
        {"name": "cores", "label": "Cores", "type": "number"},
        {"name": "threads", "label": "Threads", "type": "number"},
        {"name": "socket", "label": "Socket", "type": "text"},
    ],
    "gpu": [
        {"name": "vram", "label": "VRAM (GB)", "type": "number"},
        {"name": "chipset", "label": "Chipset", "type": "text"},
    ],
    "vga": [
        {"name": "vram", "label": "VRAM (GB)", "type": "number"},
        {"name": "chipset", "label": "Chipset", "type": "text"},
    ],
    "ram": [
        {"name": "size", "label": "Size (GB)", "type": "number"},
        {"name": "bus", "label": "Bus", "type": "text"},
    ],
    "ssd": [
        {"name": "capacity", "label": "Capacity (GB)", "type": "number"},
        {"name": "interface", "label": "Interface", "type": "text"},
    ],
    "hdd": [
        {"name": "capacity", "label": "Capacity (GB)", "type": "number"},
        {"name": "rpm", "label": "RPM", "type": "number"},
        {"name": "interface", "label": "Interface", "type": "text"},
    ],
    "mainboard": [
        {"name": "chipset", "label": "Chipset", "type": "text"},
        {"name": "socket", "label": "Socket", "type": "text"},
        {"name": "formFactor", "label": "Form Factor", "type": "text"},
    ],
    "psu": [
        {"name": "wattage", "label": "Wattage (W)", "type": "number"},
        {"name": "efficiency", "label": "Efficiency", "type": "text"},
    ],
    "case": [
        {"name": "formFactor", "label": "Form Factor", "type": "text"},
        {"name": "color", "label": "Color", "type": "text"},
    ],
    "monitor": [
        {"name": "size", "label": "Size (inch)", "type": "number"},
        {"name": "resolution", "label": "Resolution", "type": "text"},
        {"name": "refreshRate", "label": "Refresh Rate (Hz)", "type": "number"},
    ],
    "other": [
        {"name": "detail", "label": "Detail", "type": "text"},
    ],
}


def validate_specs(product_type: str, specs: Dict[str, Any]) -> Dict[str, Any]:
    """Check a specs map against the fields known for ``product_type``.

    Number fields accept numeric strings (form posts) and are stored as
    numbers. Missing fields are allowed; unknown fields are not.
    """
    fields = {f["name"]: f["type"] for f in PRODUCT_TYPE_SPECS[product_type]}
    cleaned = {}
    for key, value in specs.items():
        if key not in fields:
            raise ValueError(f"Unknown spec '{key}' for product type '{product_type}'")
        if value is None or value == "":
            continue
        if fields[key] == "number":
            if isinstance(value, bool):
                raise ValueError(f"Spec '{key}' must be a number")
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"Spec '{key}' must be a number")
            value = int(number) if number.is_integer() else number
        else:
            value = str(value)
        cleaned[key] = value
    return cleaned


# ----------------------- Users -----------------------
class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password: str = Field(..., description="Bcrypt hash")
    address: Optional[str] = None
    phone: Optional[str] = None
    account_type: str = "LOCAL"
    role: Role = "USER"
    is_active: bool = False
    points: int = Field(0, ge=0)
    code_id: Optional[str] = None
    code_expired: Optional[datetime] = None


class UserCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    role: Role = "USER"
    is_active: bool = True


class UserUpdateBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None
    points: Optional[int] = Field(None, ge=0)


# ----------------------- Auth -----------------------
class LoginBody(BaseModel):
    email: EmailStr
    password: str


class RegisterBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)


class ActiveBody(BaseModel):
    id: str
    active_code: str


class EmailBody(BaseModel):
    email: EmailStr


class ChangePasswordBody(BaseModel):
    email: EmailStr
    code_id: str
    new_password: str = Field(..., min_length=1)
    confirm_password: str = Field(..., min_length=1)


# ----------------------- Catalog -----------------------
class Category(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    type: Optional[str] = None


class CategoryUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    type: Optional[str] = None


class Manufacturer(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    logo: Optional[str] = None
    website: Optional[str] = None
    type: str = Field(..., min_length=1, description="Hardware type it makes, e.g. 'cpu'")


class ManufacturerUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    logo: Optional[str] = None
    website: Optional[str] = None
    type: Optional[str] = Field(None, min_length=1)


class ProductCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    type: ProductType = "other"
    category_id: str
    manufacturer_id: str
    stock: int = Field(0, ge=0)
    original_price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    images: List[str] = []
    image_public_ids: List[str] = []
    specs: Dict[str, Any] = {}
    is_redeemable: bool = False
    require_point: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_specs(self):
        self.specs = validate_specs(self.type, self.specs)
        return self


class ProductUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    type: Optional[ProductType] = None
    category_id: Optional[str] = None
    manufacturer_id: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    images: Optional[List[str]] = None
    image_public_ids: Optional[List[str]] = None
    specs: Optional[Dict[str, Any]] = None
    is_redeemable: Optional[bool] = None
    require_point: Optional[int] = Field(None, ge=0)


class Product(ProductCreateBody):
    slug: str
    final_price: float = Field(..., ge=0)
    sold_count: int = Field(0, ge=0)


class Banner(BaseModel):
    title: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    link: str = Field(..., min_length=1)
    image_public_id: str = Field(..., min_length=1)
    type: BannerType
    order: int = 0
    is_active: bool = True


class BannerUpdateBody(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    url: Optional[str] = Field(None, min_length=1)
    link: Optional[str] = Field(None, min_length=1)
    image_public_id: Optional[str] = Field(None, min_length=1)
    type: Optional[BannerType] = None
    order: Optional[int] = None
    is_active: Optional[bool] = None


# ----------------------- Orders -----------------------
class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class OrderCreateBody(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    address: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    note: Optional[str] = None
    items: List[OrderItemIn] = Field(..., min_length=1)
    payment: PaymentMethod = "cod"


class Order(BaseModel):
    user_id: Optional[str] = None
    full_name: str
    email: EmailStr
    address: str
    phone: str
    note: Optional[str] = None
    items: List[OrderItem]
    total: float = Field(..., ge=0)
    payment: PaymentMethod
    payment_status: bool = False
    status: OrderStatus = "pending"
    earned_points: int = 0
    fulfilled: bool = False
    refunded_quantities: Dict[str, int] = Field({}, description="Quantity per product held by non-rejected refunds")


class OrderUpdateBody(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    address: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, min_length=1)
    note: Optional[str] = None
    status: Optional[OrderStatus] = None


class PaymentStatusBody(BaseModel):
    payment_status: bool


# ----------------------- Refunds -----------------------
class RefundProduct(BaseModel):
    product_id: str
    quantity: int


class RefundCreateBody(BaseModel):
    order_id: str
    products: List[RefundProduct] = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    order_id: str
    user_id: str
    products: List[RefundProduct]
    reason: str
    status: RefundStatus = "pending"
    admin_notes: Optional[str] = None


class RefundDecisionBody(BaseModel):
    admin_notes: Optional[str] = None


class RefundStatusBody(BaseModel):
    status: Literal["processing", "completed"]
    admin_notes: Optional[str] = None


# ----------------------- Cart & redemption -----------------------
class CartItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class CartBody(BaseModel):
    items: List[CartItem] = []


class Redemption(BaseModel):
    user_id: str
    product_id: str
    product_name: str
    require_point: int
    redeemed_at: datetime
