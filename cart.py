"""
Per-user shopping cart.

A cart document holds the caller's line items and a ``total`` that is always
recomputed from them. Writes are compare-and-set on the document ``version``
so two concurrent requests from the same user cannot overwrite each other; the
first write for a user is an insert guarded by the unique ``user`` index.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

import catalog
import database
from errors import AlreadyInCartError, AppError, NotFoundError
from schemas import CartItem, ClientFile, ClientInfo

logger = logging.getLogger("artify.cart")

MAX_WRITE_ATTEMPTS = 5


class CartWriteConflict(AppError):
    status_code = 409
    reason = "concurrent_update"


def compute_total(items: List[Dict[str, Any]]) -> float:
    return round(sum(float(i["price"]) * int(i["quantity"]) for i in items), 2)


def empty_cart(user_id: str) -> Dict[str, Any]:
    return {"user": user_id, "items": [], "total": 0.0, "version": 0}


def _mutate(user_id: str, change: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]],
            create: bool) -> Dict[str, Any]:
    """Apply ``change`` to the user's items and persist with a version check."""
    carts = database.db["cart"]
    for _ in range(MAX_WRITE_ATTEMPTS):
        current = carts.find_one({"user": user_id})
        if current is None:
            if not create:
                raise NotFoundError("Cart not found")
            items = change([])
            doc = {"user": user_id, "items": items, "total": compute_total(items), "version": 1,
                   "created_at": database.now(), "updated_at": database.now()}
            try:
                carts.insert_one(doc)
            except DuplicateKeyError:
                continue  # another request created it first
            return doc

        version = current.get("version", 0)
        items = change(list(current.get("items", [])))
        update = {"items": items, "total": compute_total(items), "version": version + 1,
                  "updated_at": database.now()}
        result = carts.update_one({"_id": current["_id"], "version": version}, {"$set": update})
        if result.matched_count == 1:
            current.update(update)
            return current
        logger.info("Cart for user %s changed concurrently, retrying", user_id)
    raise CartWriteConflict("Cart is being updated by another request, please retry")


def get(user_id: str) -> Dict[str, Any]:
    return database.db["cart"].find_one({"user": user_id}) or empty_cart(user_id)


def add_item(user_id: str, product_id: str, quantity: int = 1,
             client_info: Optional[Dict[str, Any]] = None,
             files: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    product = catalog.get_product(product_id)
    if product.get("status") != "active":
        raise NotFoundError("Product not available", reason="product_unavailable")

    info = dict(client_info or {})
    item = CartItem(
        product=str(product["_id"]),
        quantity=quantity,
        price=float(product["price"]),
        clientInfo=ClientInfo(
            name=info.get("name") or "",
            phone=info.get("phone") or "",
            gst=info.get("gst") or "",
            driveLink=info.get("driveLink") or "",
            files=[ClientFile(name=f["name"], url=f["url"]) for f in files or []],
        ),
    ).model_dump()

    def change(items):
        if any(i["product"] == item["product"] for i in items):
            logger.info("Product %s already in cart of user %s", item["product"], user_id)
            raise AlreadyInCartError()
        return items + [item]

    return _mutate(user_id, change, create=True)


def remove_item(user_id: str, product_id: str) -> Dict[str, Any]:
    return _mutate(user_id, lambda items: [i for i in items if i["product"] != product_id], create=False)


def clear(user_id: str) -> Dict[str, Any]:
    if database.db["cart"].find_one({"user": user_id}) is None:
        return empty_cart(user_id)
    return _mutate(user_id, lambda items: [], create=False)


def view(cart: Dict[str, Any]) -> Dict[str, Any]:
    """Cart as returned to clients, with product name/image joined in for display."""
    product_ids = [i["product"] for i in cart.get("items", [])]
    products = {}
    if product_ids:
        oids = [database.to_object_id(pid, "product") for pid in product_ids]
        products = {str(p["_id"]): p for p in database.db["product"].find({"_id": {"$in": oids}})}
    items = []
    for i in cart.get("items", []):
        product = products.get(i["product"], {})
        images = product.get("images") or []
        items.append({
            "productId": i["product"],
            "name": product.get("name"),
            "image": images[0]["url"] if images else "",
            "delivery": product.get("deliveryTime"),
            "price": i["price"],
            "quantity": i["quantity"],
            "clientInfo": i.get("clientInfo", {}),
        })
    return {"items": items, "total": cart.get("total", 0.0)}
