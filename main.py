import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import auth
import cart
import catalog
import config
import coupons
import database
import notifications
import orders
import payments
import uploads
from auth import require_admin, require_user
from errors import AlreadyInCartError, AppError, ForbiddenError, ValidationError
from schemas import Coupon, OrderItem, Product, ProductStatus, DiscountType

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("artify")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes()
    except PyMongoError:
        logger.exception("Could not ensure indexes; uniqueness guarantees depend on them")
    yield


app = FastAPI(title="Artify API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.ALLOWED_ORIGINS] if config.ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/uploads", StaticFiles(directory=uploads.upload_path("products")), name="uploads")
app.mount("/uploads-cart", StaticFiles(directory=uploads.upload_path("cart")), name="uploads-cart")


def schedule(background_tasks: BackgroundTasks, sends) -> None:
    for send, order in sends:
        background_tasks.add_task(send, order)


# Error handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request",
                                                  "reason": "validation", "details": errors})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Health and config
@app.get("/")
def root():
    return {"name": config.STORE_NAME, "status": "ok"}


@app.get("/config")
def get_config():
    return {
        "storeName": config.STORE_NAME,
        "currency": config.PRIMARY_CURRENCY,
        "gstRate": config.GST_RATE,
        "payments": {"stripe": bool(config.STRIPE_SECRET)},
    }


# Auth
class RegisterDTO(BaseModel):
    firstName: str
    lastName: str = ""
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginDTO(BaseModel):
    email: EmailStr
    password: str


@app.post("/auth/register", status_code=201)
def register(data: RegisterDTO):
    return auth.register_user(data.firstName, data.lastName, data.email, data.password, data.phone)


@app.post("/auth/login")
def login(data: LoginDTO):
    return auth.login_user(data.email, data.password)


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(require_user)):
    return auth.public_user(user)


# Products
class ProductDTO(BaseModel):
    name: str = Field(..., max_length=100)
    description: str
    price: float = Field(..., ge=0)
    originalPrice: Optional[float] = Field(None, ge=0)
    category: str
    subcategory: Optional[str] = None
    deliveryTime: Optional[str] = None
    features: List[str] = []
    includes: List[str] = []
    excludes: List[str] = []
    status: ProductStatus = "draft"


class ProductUpdateDTO(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    originalPrice: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    deliveryTime: Optional[str] = None
    features: Optional[List[str]] = None
    includes: Optional[List[str]] = None
    excludes: Optional[List[str]] = None
    status: Optional[ProductStatus] = None


@app.get("/products")
def list_products():
    items = catalog.list_products()
    return {"success": True, "count": len(items), "data": database.serialize(items)}


@app.get("/products/all")
def list_all_products(user: Dict[str, Any] = Depends(require_admin)):
    items = catalog.list_products(include_inactive=True)
    return {"success": True, "count": len(items), "data": database.serialize(items)}


@app.get("/products/{product_id}")
def get_product(product_id: str):
    return {"success": True, "data": database.serialize(catalog.get_product(product_id))}


@app.post("/products", status_code=201)
def create_product(data: ProductDTO, user: Dict[str, Any] = Depends(require_admin)):
    product = catalog.create_product(Product(**data.model_dump()))
    return {"success": True, "data": database.serialize(product)}


@app.put("/products/{product_id}")
def update_product(product_id: str, data: ProductUpdateDTO, user: Dict[str, Any] = Depends(require_admin)):
    product = catalog.update_product(product_id, data.model_dump(exclude_unset=True))
    return {"success": True, "data": database.serialize(product)}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, user: Dict[str, Any] = Depends(require_admin)):
    catalog.delete_product(product_id)
    return {"success": True, "data": {}}


@app.post("/products/{product_id}/images")
def upload_product_images(product_id: str, images: List[UploadFile] = File(...),
                          user: Dict[str, Any] = Depends(require_admin)):
    catalog.get_product(product_id)
    saved = [uploads.save_upload(f, "products", field="images", images_only=True) for f in images]
    product = catalog.add_product_images(product_id, saved)
    return {"success": True, "data": database.serialize(product)}


# Coupons
class CouponDTO(BaseModel):
    code: str = Field(..., min_length=1)
    description: str
    discountType: DiscountType = "percentage"
    discountValue: float = Field(..., ge=0)
    minOrderAmount: float = Field(0.0, ge=0)
    maxDiscountAmount: Optional[float] = Field(None, ge=0)
    startDate: Optional[datetime] = None
    endDate: datetime
    maxUses: Optional[int] = Field(None, ge=1)
    userSpecific: bool = False
    allowedUsers: List[str] = []
    categories: List[str] = []
    products: List[str] = []
    isActive: bool = True


class CouponUpdateDTO(BaseModel):
    description: Optional[str] = None
    discountType: Optional[DiscountType] = None
    discountValue: Optional[float] = Field(None, ge=0)
    minOrderAmount: Optional[float] = Field(None, ge=0)
    maxDiscountAmount: Optional[float] = Field(None, ge=0)
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    maxUses: Optional[int] = Field(None, ge=1)
    userSpecific: Optional[bool] = None
    allowedUsers: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    products: Optional[List[str]] = None
    isActive: Optional[bool] = None


class CouponValidateDTO(BaseModel):
    code: str
    cartAmount: float = Field(..., ge=0)
    cartItems: List[Dict[str, Any]] = []


@app.post("/coupons", status_code=201)
def create_coupon(data: CouponDTO, user: Dict[str, Any] = Depends(require_admin)):
    payload = data.model_dump()
    payload["startDate"] = payload["startDate"] or database.now()
    return database.serialize(coupons.create_coupon(Coupon(**payload)))


@app.get("/coupons")
def list_coupons(user: Dict[str, Any] = Depends(require_admin)):
    return database.serialize(coupons.list_coupons())


@app.patch("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, data: CouponUpdateDTO, user: Dict[str, Any] = Depends(require_admin)):
    return database.serialize(coupons.update_coupon(coupon_id, data.model_dump(exclude_unset=True)))


@app.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, user: Dict[str, Any] = Depends(require_admin)):
    coupons.delete_coupon(coupon_id)
    return {"message": "Coupon deleted successfully"}


@app.post("/coupons/validate")
def validate_coupon(data: CouponValidateDTO, user: Dict[str, Any] = Depends(require_user)):
    result = coupons.validate(data.code, str(user["_id"]), data.cartAmount, data.cartItems)
    return {"valid": True, "coupon": result.summary(), "discountAmount": result.discount_amount}


# Cart
@app.get("/cart")
def cart_get(user: Dict[str, Any] = Depends(require_user)):
    return database.serialize(cart.view(cart.get(str(user["_id"]))))


@app.post("/cart")
def cart_add(productId: str = Form(...), quantity: int = Form(1, ge=1),
             clientInfo: Optional[str] = Form(None), files: Optional[List[UploadFile]] = File(None),
             user: Dict[str, Any] = Depends(require_user)):
    user_id = str(user["_id"])
    product = catalog.get_product(productId)
    try:
        info = json.loads(clientInfo) if clientInfo else {}
    except json.JSONDecodeError:
        raise ValidationError("Invalid client information format", reason="invalid_client_info")
    if not isinstance(info, dict):
        raise ValidationError("Invalid client information format", reason="invalid_client_info")
    if any(i["product"] == str(product["_id"]) for i in cart.get(user_id)["items"]):
        raise AlreadyInCartError()
    saved = []
    try:
        for f in files or []:
            saved.append(uploads.save_upload(f, "cart"))
        updated = cart.add_item(user_id, productId, quantity, info, saved)
    except AppError:
        uploads.discard_uploads(saved, "cart")
        raise
    return {"success": True, "message": "Product added to cart", "cart": database.serialize(cart.view(updated))}


@app.delete("/cart/{product_id}")
def cart_remove(product_id: str, user: Dict[str, Any] = Depends(require_user)):
    updated = cart.remove_item(str(user["_id"]), product_id)
    return {"success": True, "message": "Item removed from cart", "cart": database.serialize(cart.view(updated))}


@app.delete("/cart")
def cart_clear(user: Dict[str, Any] = Depends(require_user)):
    return database.serialize(cart.view(cart.clear(str(user["_id"]))))


# Orders
class OrderCreateDTO(orders.OrderSnapshot):
    user: Optional[str] = None
    items: List[OrderItem] = Field(..., min_length=1)


class OrderStatusDTO(BaseModel):
    status: str


@app.post("/orders", status_code=201)
def create_order(data: OrderCreateDTO, background_tasks: BackgroundTasks,
                 user: Dict[str, Any] = Depends(require_user)):
    owner = str(user["_id"])
    if data.user and data.user != owner:
        if not auth.is_admin(user):
            raise ForbiddenError("Cannot place an order for another user")
        owner = data.user
    snapshot = orders.OrderSnapshot(**data.model_dump(exclude={"user"}))
    order, sends = orders.create_order(owner, snapshot)
    schedule(background_tasks, sends)
    return database.serialize(order)


@app.get("/orders")
def list_orders(status: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 10,
                user: Dict[str, Any] = Depends(require_admin)):
    result = orders.list_orders(status=status, search=search, page=page, limit=limit)
    result["orders"] = database.serialize(result["orders"])
    return result


@app.get("/orders/user-orders/{user_id}")
def list_user_orders(user_id: str, user: Dict[str, Any] = Depends(require_user)):
    if str(user["_id"]) != user_id and not auth.is_admin(user):
        raise ForbiddenError("Not allowed to view these orders")
    return database.serialize(orders.list_user_orders(user_id))


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: Dict[str, Any] = Depends(require_user)):
    order = orders.get_order(order_id)
    if order.get("user") != str(user["_id"]) and not auth.is_admin(user):
        raise ForbiddenError("Not allowed to view this order")
    return database.serialize(order)


@app.put("/orders/update-status/{order_id}")
def update_order_status(order_id: str, data: OrderStatusDTO, background_tasks: BackgroundTasks,
                        user: Dict[str, Any] = Depends(require_admin)):
    order, changed = orders.update_order_status(order_id, data.status)
    if orders.status_notification_due(order, changed):
        background_tasks.add_task(notifications.send_status_update, order)
    return database.serialize(order)


# Payments
class PaymentIntentDTO(BaseModel):
    amount: int = Field(..., gt=0, description="smallest currency unit, e.g. paise")
    currency: str = config.PRIMARY_CURRENCY
    metadata: Dict[str, Any] = {}


@app.post("/payment/create-payment-intent")
def create_payment_intent(data: PaymentIntentDTO, user: Dict[str, Any] = Depends(require_user)):
    metadata = dict(data.metadata)
    metadata.setdefault("user_id", str(user["_id"]))
    intent = payments.create_payment_intent(data.amount, data.currency, metadata)
    return {"success": True, **intent}


@app.get("/payment/payment/{intent_id}")
def get_payment_intent(intent_id: str, user: Dict[str, Any] = Depends(require_user)):
    return payments.retrieve_payment_intent(intent_id)


def process_webhook(payload: bytes, signature: Optional[str]):
    event = payments.construct_event(payload, signature)
    return payments.handle_event(event)


@app.post("/payment/webhook")
async def payment_webhook(request: Request, background_tasks: BackgroundTasks):
    payload = await request.body()
    result = await run_in_threadpool(process_webhook, payload, request.headers.get("Stripe-Signature"))
    if result is not None:
        schedule(background_tasks, result.notify)
    return {"received": True}


# Sample seed endpoint (dev only)
SEED_ADMIN_EMAIL = "admin@example.com"


@app.post("/dev/seed")
def seed():
    if not config.ENABLE_DEV_SEED:
        raise ForbiddenError("Seeding is disabled")
    if not database.db["user"].find_one({"email": SEED_ADMIN_EMAIL}):
        auth.register_user("Admin", "", SEED_ADMIN_EMAIL, "admin123")
        database.db["user"].update_one({"email": SEED_ADMIN_EMAIL}, {"$set": {"role": "admin"}})
    if database.db["product"].count_documents({}) == 0:
        catalog.create_product(Product(
            name="Custom Portrait",
            description="Hand drawn digital portrait from your photo",
            price=500,
            originalPrice=800,
            category="portraits",
            deliveryTime="3-5 days",
            status="active",
        ))
    if database.db["coupon"].count_documents({}) == 0:
        coupons.create_coupon(Coupon(
            code="WELCOME10",
            description="10% off your first order",
            discountValue=10,
            maxDiscountAmount=200,
            startDate=database.now(),
            endDate=database.now() + timedelta(days=365),
        ))
    return {"ok": True}


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
