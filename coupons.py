"""
Coupon engine.

``validate`` answers "may this user apply this code to this cart, and for how
much?" without touching the usage counter. Usage is recorded separately with
``record_usage`` once an order using the coupon has been committed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pydantic
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import database
from errors import ConflictError, CouponError, NotFoundError, ValidationError
from schemas import Coupon

logger = logging.getLogger("artify.coupons")


@dataclass(frozen=True)
class CouponValidation:
    coupon: Dict[str, Any]
    discount_amount: float

    def summary(self) -> Dict[str, Any]:
        return {
            "code": self.coupon["code"],
            "description": self.coupon.get("description"),
            "discountType": self.coupon["discountType"],
            "discountValue": self.coupon["discountValue"],
            "discountAmount": self.discount_amount,
            "maxDiscountAmount": self.coupon.get("maxDiscountAmount"),
        }


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def compute_discount(coupon: Dict[str, Any], cart_amount: float) -> float:
    value = float(coupon["discountValue"])
    if coupon["discountType"] == "percentage":
        discount = cart_amount * value / 100
        cap = coupon.get("maxDiscountAmount")
        if cap is not None:
            discount = min(discount, float(cap))
    else:
        discount = min(value, cart_amount)
    return round(max(discount, 0.0), 2)


def _item_matches(item: Dict[str, Any], products: List[str], categories: List[str]) -> bool:
    product_id = str(item.get("productId") or item.get("product") or "")
    category = item.get("categoryId") or item.get("category")
    return product_id in products or (category is not None and str(category) in categories)


def validate(code: str, user_id: Optional[str], cart_amount: float,
             cart_items: Iterable[Dict[str, Any]] = (), now: Optional[datetime] = None) -> CouponValidation:
    coupon = database.db["coupon"].find_one({"code": normalize_code(code), "isActive": True})
    if not coupon:
        raise CouponError("Invalid coupon code", reason="invalid")

    now = now or database.now()
    if now < database.as_utc(coupon["startDate"]):
        raise CouponError("Coupon is not valid yet", reason="not_yet_valid")
    if now > database.as_utc(coupon["endDate"]):
        raise CouponError("Coupon has expired", reason="expired")

    max_uses = coupon.get("maxUses")
    if max_uses is not None and coupon.get("currentUses", 0) >= max_uses:
        raise CouponError("Coupon has reached its maximum usage limit", reason="usage_exceeded")

    min_amount = coupon.get("minOrderAmount") or 0
    if cart_amount < min_amount:
        raise CouponError(f"Minimum order amount of {min_amount:g} required for this coupon",
                          reason="below_minimum")

    if coupon.get("userSpecific") and (not user_id or str(user_id) not in coupon.get("allowedUsers", [])):
        raise CouponError("This coupon is not valid for your account", reason="not_allowed_for_user")

    products = [str(p) for p in coupon.get("products", [])]
    categories = [str(c) for c in coupon.get("categories", [])]
    if products or categories:
        if not any(_item_matches(item, products, categories) for item in cart_items):
            raise CouponError("Coupon not applicable to any items in your cart", reason="not_applicable")

    return CouponValidation(coupon=coupon, discount_amount=compute_discount(coupon, cart_amount))


def record_usage(code: str) -> bool:
    """Count one use of ``code``; refuses to go past ``maxUses``."""
    code = normalize_code(code)
    coupon = database.db["coupon"].find_one({"code": code}, {"maxUses": 1})
    if coupon is None:
        logger.warning("Coupon %s usage not recorded: no such coupon", code)
        return False
    max_uses = coupon.get("maxUses")
    query = {"_id": coupon["_id"], "maxUses": max_uses}
    if max_uses is not None:
        query["currentUses"] = {"$lt": max_uses}
    result = database.db["coupon"].update_one(
        query, {"$inc": {"currentUses": 1}, "$set": {"updated_at": database.now()}}
    )
    if result.modified_count:
        logger.info("Recorded usage of coupon %s", code)
        return True
    logger.warning("Coupon %s usage not recorded (missing or cap reached)", code)
    return False


def _check_coupon(data: Coupon) -> None:
    if data.endDate <= data.startDate:
        raise ValidationError("endDate must be after startDate", reason="invalid_dates")
    if data.discountType == "percentage" and data.discountValue > 100:
        raise ValidationError("Percentage discount cannot exceed 100", reason="invalid_discount")


def create_coupon(data: Coupon) -> Dict[str, Any]:
    _check_coupon(data)
    try:
        coupon_id = database.create_document("coupon", data)
    except DuplicateKeyError:
        raise ConflictError(f"Coupon {data.code} already exists", reason="duplicate_code")
    return get_coupon(coupon_id)


def get_coupon(coupon_id: str) -> Dict[str, Any]:
    coupon = database.db["coupon"].find_one({"_id": database.to_object_id(coupon_id, "coupon")})
    if not coupon:
        raise NotFoundError("Coupon not found")
    return coupon


def list_coupons() -> List[Dict[str, Any]]:
    return list(database.db["coupon"].find({}).sort("created_at", -1))


def update_coupon(coupon_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    current = get_coupon(coupon_id)
    merged = {k: v for k, v in current.items() if k not in ("_id", "created_at", "updated_at")}
    merged.update(changes)
    try:
        coupon = Coupon(**merged)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid coupon: {exc.errors()[0]['msg']}")
    _check_coupon(coupon)
    try:
        return database.db["coupon"].find_one_and_update(
            {"_id": current["_id"]},
            {"$set": coupon.model_dump() | {"updated_at": database.now()}},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError(f"Coupon {coupon.code} already exists", reason="duplicate_code")


def delete_coupon(coupon_id: str) -> None:
    result = database.db["coupon"].delete_one({"_id": database.to_object_id(coupon_id, "coupon")})
    if result.deleted_count == 0:
        raise NotFoundError("Coupon not found")
