import os
import re
import hmac
import logging
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional, List, Dict, Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from fastapi import FastAPI, HTTPException, Depends, Header, Request, Body, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, TypeAdapter, ValidationError
from passlib.context import CryptContext
from bson import ObjectId
from bson.errors import InvalidId
import jwt
import stripe

from database import db, create_document, get_documents
from schemas import (
    User, Product, CartItemCustomization, CartItem, Cart, WishlistItem, BrowsingHistory, Coupon, CustomerInfo, OrderItem, Order, AppliedCoupon,
    ReturnRequest, Feedback, ProductRequest, ShippingDetails, GiftClaim, OrderStatus, ReturnStatus,
    ProductRequestStatus, PhysicalProduct, CustomizedProduct, DigitalProduct, ProductImage, primary_image_url,
)
from pricing import compute_totals, coupon_rejection
from returns import return_block_reason, kept_product_count
import recommendations
import uploads

# Payments
STRIPE_SECRET = os.getenv("STRIPE_SECRET_KEY")
if STRIPE_SECRET:
    stripe.api_key = STRIPE_SECRET

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("atozdpolify")

# Security
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "60"))
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

# Configuration
STORE_NAME = os.getenv("STORE_NAME", "AtoZdpolify")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "INR")
STORE_TZ = ZoneInfo(os.getenv("STORE_TIMEZONE", "Asia/Kolkata"))
RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", "4"))
GIFT_MILESTONE_PRODUCTS = int(os.getenv("GIFT_MILESTONE_PRODUCTS", "5"))
HISTORY_LIMIT = 10
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

REVENUE_STATUSES = ["Paid", "Approved", "Processing", "Shipped", "Delivered", "Completed"]

PHONE_PATTERN = r"^\+?[0-9\s\-()]{10,20}$"
ZIP_PATTERN = re.compile(r"^\d{3,10}(?:[-\s]\d{4})?$")
UPI_PATTERN = r"^[a-zA-Z0-9.\-_@]{2,}@[a-zA-Z]{2,}$"

PRODUCT_ADAPTER = TypeAdapter(Product)

app = FastAPI(title="AtoZdpolify API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in ALLOWED_ORIGINS] if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Utilities
class TokenData(BaseModel):
    user_id: str
    email: EmailStr
    role: str


def store_now() -> datetime:
    return datetime.now(STORE_TZ)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(user_doc: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user_doc.get("_id")),
        "email": user_doc.get("email"),
        "role": user_doc.get("role", "customer"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXP_MIN),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        return TokenData(user_id=payload["sub"], email=payload["email"], role=payload.get("role", "customer"))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except (jwt.InvalidTokenError, KeyError, ValidationError):
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    token_data = decode_token(token)
    if token_data.role == "admin":
        # The admin gate is backed by environment credentials, not a user document
        return {"_id": "admin", "email": token_data.email, "name": "Admin", "role": "admin"}
    try:
        user = db["user"].find_one({"_id": ObjectId(token_data.user_id)})
    except InvalidId:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_user(user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_admin(user: Optional[Dict[str, Any]]):
    require_user(user)
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")


def to_object_id(value: str, what: str = "Document") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=404, detail=f"{what} not found")


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    doc.pop("password_hash", None)
    return doc


def field_error(field: str, message: str):
    raise HTTPException(status_code=422, detail=[{"loc": ["body", field], "msg": message, "type": "value_error"}])


# Error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Health and config
@app.get("/")
def root():
    return {"name": STORE_NAME, "status": "ok"}


@app.get("/config")
def get_config():
    return {
        "storeName": STORE_NAME,
        "currency": PRIMARY_CURRENCY,
        "returnWindowDays": RETURN_WINDOW_DAYS,
        "giftMilestoneProducts": GIFT_MILESTONE_PRODUCTS,
        "payments": {"stripe": bool(STRIPE_SECRET)},
        "uploads": uploads.uploads_configured(),
        "recommendations": bool(recommendations.OPENAI_API_KEY),
    }


# Auth
class RegisterDTO(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginDTO(BaseModel):
    email: EmailStr
    password: str


def user_payload(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(doc["_id"]), "name": doc.get("name"), "email": doc["email"], "role": doc.get("role", "customer")}


@app.post("/auth/register")
def register(data: RegisterDTO):
    existing = db["user"].find_one({"email": data.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already in use")
    user = User(name=data.name, email=data.email, password_hash=hash_password(data.password))
    user_id = create_document("user", user)
    doc = db["user"].find_one({"_id": ObjectId(user_id)})
    return {"token": create_token(doc), "user": user_payload(doc)}


@app.post("/auth/login")
def login(data: LoginDTO):
    user = db["user"].find_one({"email": data.email})
    if not user or not verify_password(data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": user_payload(user)}


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    return user_payload(user)


@app.post("/admin/login")
def admin_login(data: LoginDTO):
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        raise HTTPException(status_code=503, detail="Admin credentials are not configured")
    email_ok = hmac.compare_digest(data.email.lower().encode(), ADMIN_EMAIL.lower().encode())
    password_ok = hmac.compare_digest(data.password.encode(), ADMIN_PASSWORD.encode())
    if not (email_ok and password_ok):
        logger.warning("Rejected admin login for %s", data.email)
        raise HTTPException(status_code=401, detail="Invalid admin credentials")
    token = create_token({"_id": "admin", "email": data.email, "role": "admin"})
    return {"token": token, "role": "admin"}


# Products
@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, sub_category: Optional[str] = None,
                  product_type: Optional[str] = None, limit: int = 50, page: int = 1):
    query: Dict[str, Any] = {}
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"keywords": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if sub_category:
        query["sub_category"] = sub_category
    if product_type:
        query["product_type"] = product_type
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {"items": [serialize(p) for p in cursor], "total": total, "page": page, "limit": limit}


@app.get("/products/{product_id}")
def get_product(product_id: str, user: Optional[Dict[str, Any]] = Depends(get_current_user)):
    p = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    if user and user.get("role") != "admin":
        create_document("browsinghistory", BrowsingHistory(
            user_id=str(user["_id"]),
            product_id=product_id,
            product_name=p["name"],
            viewed_at=datetime.now(timezone.utc),
        ))
    return serialize(p)


def validate_product(payload: Dict[str, Any]):
    try:
        return PRODUCT_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False, include_input=False))


@app.post("/admin/products")
def create_product(payload: Dict[str, Any] = Body(...), user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    prod = validate_product(payload)
    prod_id = create_document("product", prod)
    logger.info("Created %s product %s (%s)", prod.product_type, prod_id, prod.name)
    return {"id": prod_id}


@app.put("/admin/products/{product_id}")
def update_product(product_id: str, payload: Dict[str, Any] = Body(...), user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    oid = to_object_id(product_id, "Product")
    existing = db["product"].find_one({"_id": oid})
    if not existing:
        raise HTTPException(status_code=404, detail="Product not found")
    prod = validate_product(payload)
    # Replace rather than $set so attributes of a previous product type do not linger
    doc = prod.model_dump() | {"created_at": existing.get("created_at"), "updated_at": datetime.now(timezone.utc)}
    db["product"].replace_one({"_id": oid}, doc)
    return {"id": product_id, "updated": True}


@app.delete("/admin/products/{product_id}")
def delete_product(product_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    res = db["product"].delete_one({"_id": to_object_id(product_id, "Product")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"id": product_id, "deleted": True}


@app.post("/admin/uploads")
def upload_product_image(file: UploadFile = File(...), user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    if not uploads.uploads_configured():
        raise HTTPException(status_code=400, detail="Image uploads not configured")
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image files can be uploaded")
    try:
        url = uploads.upload_image(file.file, file.filename or "upload")
    except uploads.UploadError:
        raise HTTPException(status_code=502, detail="Image upload failed")
    return {"url": url}


# Cart
class CartAddDTO(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    customization: Optional[CartItemCustomization] = None
    image: Optional[str] = None


class CartQuantityDTO(BaseModel):
    quantity: int


class CouponCodeDTO(BaseModel):
    code: str


def clean_customization(customization: Optional[CartItemCustomization]) -> Optional[Dict[str, Any]]:
    if customization is None:
        return None
    cleaned = {}
    for key, value in customization.model_dump().items():
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, float) and value != value:  # NaN
            continue
        cleaned[key] = value
    return cleaned or None


def load_cart(user_id: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        return Cart(user_id=user_id).model_dump()
    return cart


def save_cart(cart: Dict[str, Any]):
    fields = {"items": cart["items"], "coupon_code": cart.get("coupon_code"), "updated_at": datetime.now(timezone.utc)}
    db["cart"].update_one({"user_id": cart["user_id"]}, {"$set": fields, "$setOnInsert": {"created_at": fields["updated_at"]}},
                          upsert=True)


def fetch_products(product_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    oids = [ObjectId(pid) for pid in set(product_ids) if ObjectId.is_valid(pid)]
    if not oids:
        return {}
    return {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": oids}})}


def cart_lines(cart: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Join cart entries with current product data; entries whose product is gone are skipped."""
    products = fetch_products([i["product_id"] for i in cart.get("items", [])])
    lines = []
    for item in cart.get("items", []):
        product = products.get(item["product_id"])
        if not product:
            logger.warning("Product %s in cart of %s not found", item["product_id"], cart["user_id"])
            continue
        line = serialize(product)
        line.update({
            "cart_item_id": item["cart_item_id"],
            "product_id": item["product_id"],
            "quantity": item["quantity"],
            "customization": item.get("customization"),
            "image": item.get("image") or primary_image_url(product.get("images", [])),
        })
        lines.append(line)
    return lines


def find_coupon(code: Optional[str]) -> Optional[Dict[str, Any]]:
    if not code:
        return None
    return db["coupon"].find_one({"code": code.upper()})


def cart_view(cart: Dict[str, Any]) -> Dict[str, Any]:
    lines = cart_lines(cart)
    totals = compute_totals(lines, find_coupon(cart.get("coupon_code")), now=store_now())
    return {
        "items": lines,
        "count": sum(line["quantity"] for line in lines),
        "coupon_code": cart.get("coupon_code"),
        "totals": totals,
    }


@app.get("/cart")
def cart_get(user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    return cart_view(load_cart(str(user["_id"])))


@app.post("/cart/items")
def cart_add(data: CartAddDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    product = db["product"].find_one({"_id": to_object_id(data.product_id, "Product")})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    cart = load_cart(str(user["_id"]))
    customization = clean_customization(data.customization)
    image = data.image or primary_image_url(product.get("images", []))
    # merge if same product, customization and image
    for it in cart["items"]:
        if it["product_id"] == data.product_id and it.get("customization") == customization and it.get("image") == image:
            it["quantity"] += data.quantity
            break
    else:
        cart["items"].append(CartItem(
            cart_item_id=uuid4().hex,
            product_id=data.product_id,
            quantity=data.quantity,
            customization=customization,
            image=image,
            added_at=datetime.now(timezone.utc),
        ).model_dump())
    save_cart(cart)
    return cart_view(cart)


@app.put("/cart/items/{cart_item_id}")
def cart_update_quantity(cart_item_id: str, data: CartQuantityDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    cart = load_cart(str(user["_id"]))
    item = next((it for it in cart["items"] if it["cart_item_id"] == cart_item_id), None)
    if not item:
        raise HTTPException(status_code=404, detail="Cart item not found")
    if data.quantity <= 0:
        cart["items"].remove(item)
    else:
        item["quantity"] = data.quantity
    save_cart(cart)
    return cart_view(cart)


@app.delete("/cart/items/{cart_item_id}")
def cart_remove(cart_item_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    cart = load_cart(str(user["_id"]))
    remaining = [it for it in cart["items"] if it["cart_item_id"] != cart_item_id]
    if len(remaining) == len(cart["items"]):
        raise HTTPException(status_code=404, detail="Cart item not found")
    cart["items"] = remaining
    save_cart(cart)
    return cart_view(cart)


@app.delete("/cart")
def cart_clear(user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    db["cart"].delete_one({"user_id": str(user["_id"])})
    return cart_view(load_cart(str(user["_id"])))


@app.post("/cart/coupon")
def cart_apply_coupon(data: CouponCodeDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    code = data.code.strip().upper()
    if not code:
        raise HTTPException(status_code=400, detail="Please enter a coupon code.")
    coupon = find_coupon(code)
    if not coupon:
        raise HTTPException(status_code=404, detail="This coupon code does not exist.")
    cart = load_cart(str(user["_id"]))
    subtotal = compute_totals(cart_lines(cart))["subtotal"]
    reason = coupon_rejection(coupon, subtotal, now=store_now())
    if reason:
        raise HTTPException(status_code=400, detail=reason)
    cart["coupon_code"] = code
    save_cart(cart)
    return cart_view(cart)


@app.delete("/cart/coupon")
def cart_remove_coupon(user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    cart = load_cart(str(user["_id"]))
    cart["coupon_code"] = None
    save_cart(cart)
    return cart_view(cart)


# Wishlist and history
class WishlistDTO(BaseModel):
    product_id: str


@app.get("/wishlist")
def wishlist_get(user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    entries = list(db["wishlistitem"].find({"user_id": str(user["_id"])}).sort("created_at", -1))
    products = fetch_products([e["product_id"] for e in entries])
    return [serialize(products[e["product_id"]]) | {"wishlist_item_id": str(e["_id"])}
            for e in entries if e["product_id"] in products]


@app.post("/wishlist")
def wishlist_add(data: WishlistDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    if not db["product"].find_one({"_id": to_object_id(data.product_id, "Product")}):
        raise HTTPException(status_code=404, detail="Product not found")
    item = WishlistItem(user_id=str(user["_id"]), product_id=data.product_id)
    existing = db["wishlistitem"].find_one(item.model_dump())
    if existing:
        return {"id": str(existing["_id"]), "added": False}
    return {"id": create_document("wishlistitem", item), "added": True}


@app.delete("/wishlist/{product_id}")
def wishlist_remove(product_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    res = db["wishlistitem"].delete_one({"user_id": str(user["_id"]), "product_id": product_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Not in wishlist")
    return {"product_id": product_id, "removed": True}


def recent_history(user_id: str) -> List[Dict[str, Any]]:
    cursor = db["browsinghistory"].find({"user_id": user_id}).sort([("viewed_at", -1), ("_id", -1)]).limit(HISTORY_LIMIT)
    return [serialize(h) for h in cursor]


@app.get("/history")
def history_get(user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    return recent_history(str(user["_id"]))


# Recommendations
@lru_cache(maxsize=1)
def get_recommendation_model():
    return recommendations.build_model()


@app.get("/recommendations")
def recommendations_get(user: Dict[str, Any] = Depends(get_current_user), model=Depends(get_recommendation_model)):
    require_user(user)
    names = [h["product_name"] for h in recent_history(str(user["_id"]))]
    if not names:
        return []
    catalog = get_documents("product", limit=50)
    return [serialize(p) for p in recommendations.recommend(model, names, catalog)]


# Checkout
class CheckoutDTO(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address_line: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


def redeem_coupon(coupon: Dict[str, Any]) -> bool:
    """Count one use of the coupon unless that would exceed its cap."""
    query: Dict[str, Any] = {"_id": coupon["_id"]}
    if coupon.get("max_uses") is not None:
        query["$or"] = [{"times_used": {"$lt": coupon["max_uses"]}}, {"times_used": {"$exists": False}}]
    res = db["coupon"].update_one(query, {"$inc": {"times_used": 1}})
    return res.modified_count == 1


def release_coupon(coupon_id: str):
    """Give back a use counted by `redeem_coupon` for an order that never went through."""
    db["coupon"].update_one({"_id": ObjectId(coupon_id), "times_used": {"$gt": 0}}, {"$inc": {"times_used": -1}})


@app.post("/checkout")
def checkout(data: CheckoutDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    user_id = str(user["_id"])
    cart = load_cart(user_id)
    lines = cart_lines(cart)
    if not lines:
        raise HTTPException(status_code=400, detail="Cart is empty")

    is_physical = any(line["product_type"] in ("physical", "customized") for line in lines)
    has_digital = any(line["product_type"] == "digital" for line in lines)
    customer = {"name": data.name, "email": data.email, "phone": data.phone}
    if is_physical:
        if not data.address_line or len(data.address_line.strip()) < 5:
            field_error("address_line", "A valid Address (Road Name/Area/Colony) is required.")
        if not data.state or len(data.state.strip()) < 2:
            field_error("state", "State/Province is required.")
        if not data.zip_code or not ZIP_PATTERN.match(data.zip_code.strip()):
            field_error("zip_code", "A valid Zip/Postal code is required.")
        customer.update(address_line=data.address_line, state=data.state, zip_code=data.zip_code.strip())

    coupon = find_coupon(cart.get("coupon_code"))
    totals = compute_totals(lines, coupon, now=store_now())
    applied = totals["applied_coupon"]
    if applied and not redeem_coupon(coupon):
        raise HTTPException(status_code=409, detail="This coupon has reached its maximum usage limit.")

    payment_method = "Online Payment" if has_digital else "Cash on Delivery"
    order_items = [
        OrderItem(
            product_id=line["product_id"],
            name=line["name"],
            price=line["price"],
            quantity=line["quantity"],
            image=line["image"],
            customization=line.get("customization"),
            product_type=line["product_type"],
            download_url=line.get("download_url") if line["product_type"] == "digital" else None,
        )
        for line in lines
    ]
    order = Order(
        user_id=user_id,
        customer_info=CustomerInfo(**customer),
        items=order_items,
        sub_total=totals["subtotal"],
        discount_amount=totals["discount"],
        grand_total=totals["grand_total"],
        applied_coupon=AppliedCoupon(**applied) if applied else None,
        currency=PRIMARY_CURRENCY,
        payment_method=payment_method,
        status="Pending Payment" if payment_method == "Online Payment" else "Pending",
    )
    order_id = create_document("order", order)
    logger.info("Order %s placed by %s: %s %.2f (%s)", order_id, user_id, PRIMARY_CURRENCY, order.grand_total, payment_method)
    if applied:
        logger.info("Coupon %s redeemed on order %s", applied["code"], order_id)

    client_secret = None
    status = order.status
    if payment_method == "Online Payment":
        if STRIPE_SECRET:
            try:
                intent = stripe.PaymentIntent.create(amount=int(round(order.grand_total * 100)),
                                                     currency=PRIMARY_CURRENCY.lower(), metadata={"order_id": order_id})
            except stripe.StripeError as exc:
                logger.error("Payment intent for order %s failed: %s", order_id, exc)
                db["order"].update_one({"_id": ObjectId(order_id)},
                                       {"$set": {"status": "Payment Failed", "updated_at": datetime.now(timezone.utc)}})
                if applied:
                    release_coupon(applied["id"])
                # the cart is kept so the customer can retry
                raise HTTPException(status_code=502, detail="Payment could not be started. Please try again.")
            client_secret = intent.client_secret
            db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"payment_ref": intent.id}})
        else:
            # Without a payment provider the payment is simulated as successful
            status = "Paid"
            db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": status}})

    # clear cart after checkout
    db["cart"].delete_one({"user_id": user_id})

    return {"order_id": order_id, "status": status, "grand_total": order.grand_total,
            "payment_method": payment_method, "client_secret": client_secret}


# Orders
def order_returns(user_id: str) -> List[Dict[str, Any]]:
    return list(db["returnrequest"].find({"user_id": user_id}))


def annotate_order(order: Dict[str, Any], returns: List[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    order_id = str(order["_id"])
    out = serialize(order)
    for item in out["items"]:
        existing = next((rr for rr in returns if rr["order_id"] == order_id and rr["product_id"] == item["product_id"]), None)
        item["return_status"] = existing["status"] if existing else None
        item["return_eligible"] = item["product_type"] != "digital" and return_block_reason(
            order, item["product_id"], returns, now=now, tz=STORE_TZ, window_days=RETURN_WINDOW_DAYS) is None
    return out


@app.get("/orders")
def list_orders(user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    user_id = str(user["_id"])
    returns = order_returns(user_id)
    now = store_now()
    cursor = db["order"].find({"user_id": user_id}).sort("created_at", -1).limit(100)
    return [annotate_order(o, returns, now) for o in cursor]


def load_order(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    o = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not o:
        raise HTTPException(status_code=404, detail="Order not found")
    if user.get("role") != "admin" and o.get("user_id") != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Forbidden")
    return o


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    o = load_order(order_id, user)
    return annotate_order(o, order_returns(o.get("user_id") or ""), store_now())


class ReturnDTO(BaseModel):
    product_id: str
    upi_id: str = Field(..., min_length=5, pattern=UPI_PATTERN)
    reason: str = Field(..., min_length=10, max_length=500)


@app.post("/orders/{order_id}/returns")
def file_return(order_id: str, data: ReturnDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    order = load_order(order_id, user)
    # differently customized lines of one product are returned together
    matching = [i for i in order.get("items", []) if i["product_id"] == data.product_id]
    if not matching:
        raise HTTPException(status_code=404, detail="Item not found in order")
    item = matching[0]
    if item["product_type"] == "digital":
        raise HTTPException(status_code=400, detail="Digital items cannot be returned.")
    existing = list(db["returnrequest"].find({"order_id": order_id, "product_id": data.product_id}))
    reason = return_block_reason(order, data.product_id, existing, now=store_now(), tz=STORE_TZ,
                                 window_days=RETURN_WINDOW_DAYS)
    if reason:
        raise HTTPException(status_code=400, detail=reason)
    request = ReturnRequest(
        order_id=order_id,
        product_id=data.product_id,
        product_name=item["name"],
        quantity_returned=sum(i["quantity"] for i in matching),
        user_id=str(user["_id"]),
        user_email=user.get("email"),
        upi_id=data.upi_id,
        reason=data.reason,
        order_created_at=order["created_at"],
        requested_at=datetime.now(timezone.utc),
    )
    return_id = create_document("returnrequest", request)
    logger.info("Return %s filed for order %s item %s", return_id, order_id, data.product_id)
    return {"id": return_id, "status": request.status}


# Rewards
class GiftClaimDTO(BaseModel):
    name: str = Field(..., min_length=2)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    address_line: str = Field(..., min_length=5)
    state: str = Field(..., min_length=2)
    zip_code: str = Field(..., pattern=r"^\d{5,10}(?:[-\s]\d{4})?$")


def reward_status(user: Dict[str, Any]) -> Dict[str, Any]:
    user_id = str(user["_id"])
    orders = list(db["order"].find({"user_id": user_id}))
    kept = kept_product_count(orders, order_returns(user_id))
    claimed = bool(user.get("has_claimed_gift"))
    return {"kept_products": kept, "milestone": GIFT_MILESTONE_PRODUCTS, "claimed": claimed,
            "eligible": not claimed and kept >= GIFT_MILESTONE_PRODUCTS}


@app.get("/rewards")
def rewards_get(user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    return reward_status(user)


@app.post("/rewards/claim")
def rewards_claim(data: GiftClaimDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    status = reward_status(user)
    if status["claimed"]:
        raise HTTPException(status_code=400, detail="Gift already claimed")
    if not status["eligible"]:
        raise HTTPException(status_code=400, detail=f"Keep {GIFT_MILESTONE_PRODUCTS} products to unlock the gift")
    claim = GiftClaim(user_id=str(user["_id"]), user_email=user["email"], shipping_details=ShippingDetails(**data.model_dump()))
    claim_id = create_document("giftclaim", claim)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"has_claimed_gift": True}})
    logger.info("Gift claim %s by %s", claim_id, user["email"])
    return {"id": claim_id}


# Feedback and product requests
class FeedbackDTO(BaseModel):
    message: str = Field(..., min_length=10, max_length=2000)


class ProductRequestDTO(BaseModel):
    product_name: str = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    category: Optional[str] = Field(None, max_length=50)
    estimated_price: Optional[str] = Field(None, max_length=20)
    reference_link: Optional[str] = Field(None, pattern=r"^(https?://\S+)?$")
    user_email: EmailStr


@app.post("/feedback")
def submit_feedback(data: FeedbackDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_user(user)
    fb = Feedback(user_id=str(user["_id"]), user_email=user["email"], display_name=user.get("name"), message=data.message)
    return {"id": create_document("feedback", fb)}


@app.post("/product-requests")
def submit_product_request(data: ProductRequestDTO, user: Optional[Dict[str, Any]] = Depends(get_current_user)):
    req = ProductRequest(**data.model_dump(), user_id=str(user["_id"]) if user else None)
    return {"id": create_document("productrequest", req)}


# Admin
def list_collection(name: str, sort_field: str = "created_at") -> List[Dict[str, Any]]:
    return [serialize(d) for d in db[name].find({}).sort(sort_field, -1)]


@app.get("/admin/users")
def admin_users(user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    return list_collection("user")


@app.get("/admin/feedback")
def admin_feedback(user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    return list_collection("feedback")


@app.get("/admin/claims")
def admin_claims(user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    return list_collection("giftclaim")


@app.get("/admin/product-requests")
def admin_product_requests(user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    return list_collection("productrequest")


class ProductRequestStatusDTO(BaseModel):
    status: ProductRequestStatus


@app.post("/admin/product-requests/{request_id}/status")
def update_product_request_status(request_id: str, data: ProductRequestStatusDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    res = db["productrequest"].update_one({"_id": to_object_id(request_id, "Request")},
                                          {"$set": {"status": data.status, "updated_at": datetime.now(timezone.utc)}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Request not found")
    return {"ok": True}


# Admin coupons
class CouponDTO(BaseModel):
    code: str = Field(..., min_length=3)
    discount: float = Field(..., ge=0, le=100)
    is_active: bool = True
    min_amount: float = Field(0, ge=0)
    valid_till: date
    max_uses: Optional[int] = Field(None, ge=0)
    times_used: Optional[int] = Field(None, ge=0)

    def to_coupon(self) -> Coupon:
        return Coupon(**(self.model_dump() | {"code": self.code.strip().upper(), "valid_till": self.valid_till.isoformat(),
                                              "times_used": self.times_used or 0}))


@app.get("/admin/coupons")
def admin_coupons(user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    return list_collection("coupon")


@app.post("/admin/coupons")
def create_coupon(data: CouponDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    coupon = data.to_coupon()
    if db["coupon"].find_one({"code": coupon.code}):
        raise HTTPException(status_code=400, detail="Coupon code already exists.")
    return {"id": create_document("coupon", coupon)}


@app.put("/admin/coupons/{coupon_id}")
def update_coupon(coupon_id: str, data: CouponDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    oid = to_object_id(coupon_id, "Coupon")
    coupon = data.to_coupon()
    if db["coupon"].find_one({"code": coupon.code, "_id": {"$ne": oid}}):
        raise HTTPException(status_code=400, detail="Coupon code already exists.")
    fields = coupon.model_dump() | {"updated_at": datetime.now(timezone.utc)}
    if data.times_used is None:
        # keep the redemption count when the form leaves it out
        fields.pop("times_used")
    res = db["coupon"].update_one({"_id": oid}, {"$set": fields})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"id": coupon_id, "updated": True}


@app.delete("/admin/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    res = db["coupon"].delete_one({"_id": to_object_id(coupon_id, "Coupon")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"id": coupon_id, "deleted": True}


# Admin orders and returns
class OrderStatusDTO(BaseModel):
    status: OrderStatus


class ReturnStatusDTO(BaseModel):
    status: ReturnStatus


@app.get("/admin/orders")
def admin_orders(status: Optional[str] = None, user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    query = {"status": status} if status else {}
    return [serialize(o) for o in db["order"].find(query).sort("created_at", -1)]


@app.post("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    res = db["order"].update_one({"_id": to_object_id(order_id, "Order")},
                                 {"$set": {"status": data.status, "updated_at": datetime.now(timezone.utc)}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("Order %s status set to %s", order_id, data.status)
    return {"ok": True}


@app.get("/admin/returns")
def admin_returns(user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    return list_collection("returnrequest", "requested_at")


def close_fully_returned_order(order_id: str):
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not order:
        return
    completed = {rr["product_id"] for rr in db["returnrequest"].find({"order_id": order_id, "status": "Completed"})}
    if all(item["product_id"] in completed for item in order.get("items", [])):
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": "Returned", "updated_at": datetime.now(timezone.utc)}})
        logger.info("Order %s fully returned", order_id)


@app.post("/admin/returns/{return_id}/status")
def update_return_status(return_id: str, data: ReturnStatusDTO, user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    rr = db["returnrequest"].find_one_and_update({"_id": to_object_id(return_id, "Return request")},
                                                 {"$set": {"status": data.status, "updated_at": datetime.now(timezone.utc)}})
    if not rr:
        raise HTTPException(status_code=404, detail="Return request not found")
    logger.info("Return %s status set to %s", return_id, data.status)
    if data.status == "Completed":
        close_fully_returned_order(rr["order_id"])
    return {"ok": True}


# Admin analytics
@app.get("/admin/analytics")
def analytics(user: Dict[str, Any] = Depends(get_current_user)):
    require_admin(user)
    revenue = 0.0
    for o in db["order"].find({"status": {"$in": REVENUE_STATUSES}}):
        revenue += float(o.get("grand_total", 0))
    return {
        "revenue": round(revenue, 2),
        "orders": db["order"].count_documents({}),
        "products": db["product"].count_documents({}),
        "users": db["user"].count_documents({}),
        "pendingReturns": db["returnrequest"].count_documents({"status": "Pending"}),
    }


# Stripe webhook
@app.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    if not STRIPE_SECRET:
        return {"ok": True}
    payload = await request.body()
    sig = request.headers.get("Stripe-Signature")
    endpoint_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    try:
        if endpoint_secret:
            event = stripe.Webhook.construct_event(payload, sig, endpoint_secret)
        else:
            event = stripe.Event.construct_from(await request.json(), stripe.api_key)
    except (ValueError, stripe.SignatureVerificationError):
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    status_for_event = {"payment_intent.succeeded": "Paid", "payment_intent.payment_failed": "Payment Failed"}
    if event["type"] in status_for_event:
        intent = event["data"]["object"]
        metadata = intent["metadata"] if "metadata" in intent else {}
        order_id = metadata["order_id"] if "order_id" in metadata else None
        if order_id and ObjectId.is_valid(order_id):
            db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": status_for_event[event["type"]]}})
            logger.info("Order %s marked %s by Stripe", order_id, status_for_event[event["type"]])
    return {"received": True}


# Sample seed endpoint (dev only)
@app.post("/dev/seed")
def seed():
    if db["product"].count_documents({}) == 0:
        create_document("product", PhysicalProduct(
            name="Classic Cotton Tee",
            description="Soft everyday cotton tee",
            price=499.0,
            category="Apparel",
            sub_category="T-Shirts",
            keywords=["shirt", "cotton"],
            images=[ProductImage(url="https://images.unsplash.com/photo-1520975682031-a1248f1a6386", is_primary=True)],
            available_colors=["Black", "White"],
            available_sizes=["S", "M", "L"],
        ))
        create_document("product", CustomizedProduct(
            name="Custom Photo Mug",
            description="Ceramic mug printed with your photo and text",
            price=349.0,
            category="Home Decor",
            keywords=["mug", "gift"],
            images=[ProductImage(url="https://images.unsplash.com/photo-1514228742587-6b1558fcca3d")],
            allow_image_upload=True,
            allow_text_customization=True,
            text_customization_label="Name on mug",
            text_customization_max_length=20,
            default_image_x=50, default_image_y=40, default_image_scale=1.0,
            default_text_x=50, default_text_y=80, default_text_size=16,
        ))
        create_document("product", DigitalProduct(
            name="Wallpaper Pack",
            description="Twenty 4K desktop wallpapers",
            price=99.0,
            category="Digital",
            keywords=["wallpaper", "4k"],
            file_format="ZIP",
            download_url="https://example.com/downloads/wallpapers.zip",
        ))
    if db["coupon"].count_documents({}) == 0:
        valid_till = (store_now().date() + timedelta(days=30)).isoformat()
        create_document("coupon", Coupon(code="SAVE10", discount=10, min_amount=500, valid_till=valid_till, max_uses=5))
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
