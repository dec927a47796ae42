import logging
from typing import Any, Dict, List, Optional

import pydantic
from pymongo import ReturnDocument

import database
from errors import NotFoundError, ValidationError
from schemas import Product, ProductImage

logger = logging.getLogger("artify.catalog")


def discount_label(price: float, original_price: Optional[float]) -> Optional[str]:
    if not original_price or original_price <= price:
        return None
    pct = round((original_price - price) / original_price * 100)
    return f"{pct}% OFF"


def _check_prices(price: float, original_price: Optional[float]) -> None:
    if original_price is not None and price > original_price:
        raise ValidationError("Price cannot exceed original price", reason="price_above_original")


def list_products(include_inactive: bool = False) -> List[Dict[str, Any]]:
    query = {} if include_inactive else {"status": "active"}
    return list(database.db["product"].find(query).sort("created_at", -1))


def get_product(product_id: str) -> Dict[str, Any]:
    product = database.db["product"].find_one({"_id": database.to_object_id(product_id, "product")})
    if not product:
        raise NotFoundError(f"Product not found with id of {product_id}")
    return product


def create_product(data: Product) -> Dict[str, Any]:
    _check_prices(data.price, data.originalPrice)
    data.discount = discount_label(data.price, data.originalPrice)
    product_id = database.create_document("product", data)
    logger.info("Created product %s (%s)", product_id, data.status)
    return get_product(product_id)


def update_product(product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    current = get_product(product_id)
    merged = {k: v for k, v in current.items() if k not in ("_id", "created_at", "updated_at")}
    merged.update(changes)
    try:
        product = Product(**merged)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid product: {exc.errors()[0]['msg']}")
    _check_prices(product.price, product.originalPrice)
    product.discount = discount_label(product.price, product.originalPrice)
    return database.db["product"].find_one_and_update(
        {"_id": current["_id"]},
        {"$set": product.model_dump() | {"updated_at": database.now()}},
        return_document=ReturnDocument.AFTER,
    )


def delete_product(product_id: str) -> None:
    result = database.db["product"].delete_one({"_id": database.to_object_id(product_id, "product")})
    if result.deleted_count == 0:
        raise NotFoundError(f"Product not found with id of {product_id}")


def add_product_images(product_id: str, images: List[Dict[str, str]]) -> Dict[str, Any]:
    current = get_product(product_id)
    entries = [ProductImage(**img).model_dump() for img in images]
    return database.db["product"].find_one_and_update(
        {"_id": current["_id"]},
        {"$push": {"images": {"$each": entries}}, "$set": {"updated_at": database.now()}},
        return_document=ReturnDocument.AFTER,
    )


def product_categories(product_ids: List[str]) -> Dict[str, Optional[str]]:
    """Map product id -> category for coupon restriction checks."""
    oids = []
    for pid in product_ids:
        try:
            oids.append(database.to_object_id(pid, "product"))
        except ValidationError:
            continue
    return {str(p["_id"]): p.get("category") for p in database.db["product"].find({"_id": {"$in": oids}})}
