"""
AtoZdpolify Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class Coupon -> collection "coupon". Products are stored in "product" whatever
their type; cart, wishlist and browsing history documents are owned by the user in `user_id`.

These schemas are used for validation before inserting/updating documents.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field

ProductType = Literal["physical", "customized", "digital"]

OrderStatus = Literal[
    "Pending",
    "Pending Payment",
    "Paid",
    "Approved",
    "Processing",
    "Shipped",
    "Delivered",
    "Completed",
    "Cancelled",
    "Payment Failed",
    "Return Requested",
    "Returned",
]

ReturnStatus = Literal["Pending", "Approved", "Rejected", "Processing", "Completed", "Cancelled"]

PaymentMethod = Literal["Cash on Delivery", "Online Payment"]

ProductRequestStatus = Literal["Pending Review", "Under Consideration", "Approved", "Not Feasible", "Sourced"]

PLACEHOLDER_IMAGE = "https://placehold.co/300x200.png"


class User(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    password_hash: str
    has_claimed_gift: bool = False


# Products

class ProductImage(BaseModel):
    url: str
    alt_text: Optional[str] = None
    color: Optional[str] = Field(None, description="Should match one of available_colors")
    is_primary: bool = False


class BaseProduct(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    images: List[ProductImage] = []
    category: str
    sub_category: Optional[str] = None
    keywords: List[str] = []


class PhysicalProduct(BaseProduct):
    product_type: Literal["physical"] = "physical"
    available_colors: List[str] = []
    available_sizes: List[str] = []


class CustomizedProduct(BaseProduct):
    product_type: Literal["customized"] = "customized"
    available_colors: List[str] = []
    available_sizes: List[str] = []
    allow_image_upload: bool = False
    customization_instructions: Optional[str] = None
    allow_text_customization: bool = False
    text_customization_label: Optional[str] = None
    text_customization_max_length: Optional[int] = Field(None, ge=1)
    default_image_x: Optional[float] = None
    default_image_y: Optional[float] = None
    default_image_scale: Optional[float] = None
    default_text_x: Optional[float] = None
    default_text_y: Optional[float] = None
    default_text_size: Optional[float] = None


class DigitalProduct(BaseProduct):
    product_type: Literal["digital"] = "digital"
    file_format: Optional[str] = None
    download_url: Optional[str] = None


Product = Annotated[Union[PhysicalProduct, CustomizedProduct, DigitalProduct], Field(discriminator="product_type")]


def primary_image_url(images: List[dict]) -> str:
    if not images:
        return PLACEHOLDER_IMAGE
    for img in images:
        if img.get("is_primary"):
            return img["url"]
    return images[0]["url"]


# Cart, wishlist, history

class CartItemCustomization(BaseModel):
    custom_image_data_uri: Optional[str] = None
    image_x: Optional[float] = None
    image_y: Optional[float] = None
    image_scale: Optional[float] = None
    text: Optional[str] = None
    text_x: Optional[float] = None
    text_y: Optional[float] = None
    text_size: Optional[float] = None
    selected_color: Optional[str] = None
    selected_size: Optional[str] = None


class CartItem(BaseModel):
    cart_item_id: str
    product_id: str
    quantity: int = Field(1, ge=1)
    customization: Optional[Dict[str, Any]] = Field(None, description="Only the CartItemCustomization fields that were set")
    image: str
    added_at: datetime


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []
    coupon_code: Optional[str] = None


class WishlistItem(BaseModel):
    user_id: str
    product_id: str


class BrowsingHistory(BaseModel):
    user_id: str
    product_id: str
    product_name: str
    viewed_at: datetime


# Coupons and orders

class Coupon(BaseModel):
    code: str = Field(..., min_length=3)
    discount: float = Field(..., ge=0, le=100, description="Percentage")
    is_active: bool = True
    min_amount: float = Field(0, ge=0)
    valid_till: str = Field(..., description="ISO date; valid through the end of that day")
    max_uses: Optional[int] = Field(None, ge=0)
    times_used: int = Field(0, ge=0)


class CustomerInfo(BaseModel):
    name: str
    email: EmailStr
    phone: str
    address_line: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


class AppliedCoupon(BaseModel):
    id: str
    code: str
    discount: float


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int
    image: str
    customization: Optional[CartItemCustomization] = None
    product_type: ProductType
    download_url: Optional[str] = None


class Order(BaseModel):
    user_id: Optional[str] = None
    customer_info: CustomerInfo
    items: List[OrderItem]
    sub_total: float
    discount_amount: float = 0.0
    grand_total: float
    applied_coupon: Optional[AppliedCoupon] = None
    currency: str = "INR"
    payment_method: PaymentMethod
    status: OrderStatus = "Pending"
    payment_ref: Optional[str] = None


class ReturnRequest(BaseModel):
    order_id: str
    product_id: str
    product_name: str
    quantity_returned: int
    user_id: str
    user_email: Optional[str] = None
    upi_id: str
    reason: str
    status: ReturnStatus = "Pending"
    order_created_at: datetime
    requested_at: datetime


# Community

class Feedback(BaseModel):
    user_id: str
    user_email: EmailStr
    display_name: Optional[str] = None
    message: str


class ProductRequest(BaseModel):
    product_name: str
    description: str
    category: Optional[str] = None
    estimated_price: Optional[str] = None
    reference_link: Optional[str] = None
    user_email: EmailStr
    user_id: Optional[str] = None
    status: ProductRequestStatus = "Pending Review"


class ShippingDetails(BaseModel):
    name: str
    phone: str
    address_line: str
    state: str
    zip_code: str


class GiftClaim(BaseModel):
    user_id: str
    user_email: EmailStr
    shipping_details: ShippingDetails
    gift_type: str = "5ProductMilestone"
