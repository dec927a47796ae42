"""
Order ledger.

An order is a frozen snapshot of what was bought and for how much, keyed by
the payment intent that pays for it. Two status fields evolve independently:

* ``paymentStatus`` is driven by gateway events through
  :func:`reconcile_payment_event`::

      pending -> succeeded | failed
      failed  -> succeeded | failed      (the customer retried on the same intent)
      succeeded -> refunded

* ``orderStatus`` is driven by admins through :func:`update_order_status`::

      processing -> designed -> delivered
      processing | designed -> cancelled

Secondary writes that follow order creation (coupon usage, cart clearing) are
best effort: they are attempted after the order commits and logged on failure.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import cart
import catalog
import config
import coupons
import database
import notifications
from errors import ConflictError, CouponError, NotFoundError, ValidationError
from schemas import AppliedCoupon, BillingDetails, Order, OrderItem, PaymentEvent, ShippingDetails

logger = logging.getLogger("artify.orders")

PAYMENT_TRANSITIONS = {
    "pending": {"succeeded", "failed"},
    # a card retried on the same intent stays on its order instead of opening a new one
    "failed": {"succeeded", "failed"},
    "succeeded": {"refunded"},
    "refunded": set(),
}

ORDER_TRANSITIONS = {
    "processing": {"designed", "cancelled"},
    "designed": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

# fulfillment changes the customer is emailed about
NOTIFY_ORDER_STATUSES = {"designed", "delivered"}


class OrderSnapshot(BaseModel):
    items: List[OrderItem]
    subtotal: float
    gst: float
    discount: float = 0.0
    total: float
    coupon: Optional[AppliedCoupon] = None
    paymentIntentId: str
    billingDetails: BillingDetails


@dataclass
class ReconcileResult:
    """Outcome of applying one gateway event to the ledger."""

    status: str  # applied | duplicate | ignored | buffered
    order: Optional[Dict[str, Any]] = None
    notify: List = field(default_factory=list)


def can_transition_payment(current: str, new: str) -> bool:
    return new in PAYMENT_TRANSITIONS.get(current, set())


def can_transition_order(current: str, new: str) -> bool:
    return new in ORDER_TRANSITIONS.get(current, set())


def _money_equal(a: float, b: float) -> bool:
    return round(a - b, 2) == 0


def shipping_from_billing(billing: BillingDetails) -> ShippingDetails:
    return ShippingDetails(
        name=f"{billing.firstName} {billing.lastName}".strip(),
        address=billing.address,
        city=billing.city,
        state=billing.state,
        zipCode=billing.zipCode,
        country=billing.country,
    )


def _fill_item_names(items: List[OrderItem]) -> None:
    for item in items:
        if item.name and item.image is not None:
            continue
        try:
            product = catalog.get_product(item.product)
        except (NotFoundError, ValidationError):
            continue
        item.name = item.name or product.get("name")
        if item.image is None:
            images = product.get("images") or []
            item.image = images[0]["url"] if images else None


def _check_totals(user_id: str, snapshot: OrderSnapshot) -> None:
    if not snapshot.items:
        raise ValidationError("Order must contain at least one item", reason="empty_order")
    items_subtotal = sum(i.price * i.quantity for i in snapshot.items)
    if not _money_equal(items_subtotal, snapshot.subtotal):
        raise ValidationError("Subtotal does not match order items", reason="subtotal_mismatch")
    if not _money_equal(round(snapshot.subtotal * config.GST_RATE, 2), snapshot.gst):
        raise ValidationError("GST does not match the configured rate", reason="gst_mismatch")
    if not _money_equal(snapshot.subtotal + snapshot.gst - snapshot.discount, snapshot.total):
        raise ValidationError("Total must equal subtotal + gst - discount", reason="total_mismatch")

    if snapshot.coupon is None:
        if snapshot.discount > 0:
            raise ValidationError("Discount given without a coupon", reason="discount_without_coupon")
        return
    categories = catalog.product_categories([i.product for i in snapshot.items])
    cart_items = [{"productId": i.product, "categoryId": categories.get(i.product)} for i in snapshot.items]
    try:
        result = coupons.validate(snapshot.coupon.code, user_id, snapshot.subtotal, cart_items)
    except CouponError as exc:
        raise ValidationError(f"Coupon rejected: {exc.message}", reason=f"coupon_{exc.reason}")
    if not _money_equal(result.discount_amount, snapshot.discount):
        raise ValidationError("Discount does not match coupon", reason="discount_mismatch")
    snapshot.coupon = AppliedCoupon(code=result.coupon["code"], discount=result.discount_amount)


def create_order(user_id: str, snapshot: OrderSnapshot) -> Tuple[Dict[str, Any], List]:
    """Persist a checkout.

    Returns the stored order and the notification sends owed because a payment
    outcome buffered before the order existed was applied to it.
    """
    orders = database.db["order"]
    if orders.find_one({"paymentIntentId": snapshot.paymentIntentId}, {"_id": 1}):
        raise ConflictError("An order already exists for this payment intent", reason="duplicate_payment_intent")

    _check_totals(user_id, snapshot)
    _fill_item_names(snapshot.items)

    order = Order(
        user=str(user_id),
        items=snapshot.items,
        subtotal=snapshot.subtotal,
        gst=snapshot.gst,
        discount=snapshot.discount,
        total=snapshot.total,
        coupon=snapshot.coupon,
        paymentIntentId=snapshot.paymentIntentId,
        billingDetails=snapshot.billingDetails,
        shippingDetails=shipping_from_billing(snapshot.billingDetails),
    )
    try:
        order_id = database.create_document("order", order)
    except DuplicateKeyError:
        raise ConflictError("An order already exists for this payment intent", reason="duplicate_payment_intent")
    logger.info("Created order %s for intent %s (total %.2f)", order_id, order.paymentIntentId, order.total)

    _after_create(user_id, order)

    notify = apply_buffered_events(order.paymentIntentId)
    return get_order(order_id), notify


def _after_create(user_id: str, order: Order) -> None:
    try:
        if order.coupon:
            coupons.record_usage(order.coupon.code)
        cart.clear(str(user_id))
    except PyMongoError:
        logger.exception("Post-checkout bookkeeping failed for intent %s", order.paymentIntentId)


def get_order(order_id: str) -> Dict[str, Any]:
    order = database.db["order"].find_one({"_id": database.to_object_id(order_id, "order")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def list_user_orders(user_id: str) -> List[Dict[str, Any]]:
    return list(database.db["order"].find({"user": str(user_id)}).sort("created_at", -1))


def list_orders(status: Optional[str] = None, search: Optional[str] = None,
                page: int = 1, limit: int = 10) -> Dict[str, Any]:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    query: Dict[str, Any] = {}
    if status and status != "all":
        query["orderStatus"] = status
    if search:
        pattern = re.escape(search)
        clauses: List[Dict[str, Any]] = [
            {"billingDetails.firstName": {"$regex": pattern, "$options": "i"}},
            {"billingDetails.lastName": {"$regex": pattern, "$options": "i"}},
            {"billingDetails.email": {"$regex": pattern, "$options": "i"}},
        ]
        try:
            clauses.insert(0, {"_id": database.to_object_id(search)})
        except ValidationError:
            pass
        query["$or"] = clauses
    total = database.db["order"].count_documents(query)
    cursor = database.db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "orders": list(cursor),
        "totalPages": (total + limit - 1) // limit,
        "currentPage": page,
        "totalOrders": total,
    }


def reconcile_payment_event(intent_id: str, outcome: str, event_type: str = "") -> ReconcileResult:
    """Apply a verified gateway outcome to the order paid by ``intent_id``.

    Re-delivery of an outcome the order already has is a no-op. An event for an
    intent with no order yet is kept in ``payment_event`` and replayed by
    :func:`create_order`.
    """
    if outcome not in PAYMENT_TRANSITIONS:
        raise ValidationError(f"Unknown payment outcome {outcome}")
    orders = database.db["order"]
    order = orders.find_one({"paymentIntentId": intent_id})
    if order is None:
        logger.warning("No order for payment intent %s yet; buffering %s", intent_id, outcome)
        database.create_document("payment_event", PaymentEvent(
            paymentIntentId=intent_id, outcome=outcome, eventType=event_type or outcome))
        if orders.find_one({"paymentIntentId": intent_id}, {"_id": 1}):
            # the order committed while the event was being buffered
            return ReconcileResult("buffered", notify=apply_buffered_events(intent_id))
        return ReconcileResult("buffered")

    current = order.get("paymentStatus", "pending")
    if current == outcome:
        logger.info("Payment %s for intent %s already recorded", outcome, intent_id)
        return ReconcileResult("duplicate", order)
    if not can_transition_payment(current, outcome):
        logger.warning("Ignoring payment %s for intent %s in state %s", outcome, intent_id, current)
        return ReconcileResult("ignored", order)

    updated = orders.find_one_and_update(
        {"_id": order["_id"], "paymentStatus": current},
        {"$set": {"paymentStatus": outcome, "updated_at": database.now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # a concurrent delivery moved it first; report against whatever it is now
        latest = orders.find_one({"_id": order["_id"]})
        status = "duplicate" if latest.get("paymentStatus") == outcome else "ignored"
        return ReconcileResult(status, latest)

    logger.info("Order %s payment %s -> %s", updated["_id"], current, outcome)
    result = ReconcileResult("applied", updated)
    if outcome == "succeeded":
        result.notify = notifications.payment_succeeded_tasks(updated)
    return result


def apply_buffered_events(intent_id: str) -> List:
    """Replay outcomes that arrived before the order for ``intent_id`` existed."""
    notify: List = []
    pending = database.db["payment_event"]
    while True:
        event = pending.find_one_and_update(
            {"paymentIntentId": intent_id, "applied": False},
            {"$set": {"applied": True, "updated_at": database.now()}},
            sort=[("created_at", 1)],
        )
        if event is None:
            return notify
        result = reconcile_payment_event(intent_id, event["outcome"], event.get("eventType", ""))
        notify.extend(result.notify)


def update_order_status(order_id: str, status: str) -> Tuple[Dict[str, Any], bool]:
    """Move fulfillment forward. Returns the order and whether anything changed."""
    if status not in ORDER_TRANSITIONS:
        raise ValidationError(f"Unknown order status {status}", reason="invalid_status")
    order = get_order(order_id)
    current = order.get("orderStatus", "processing")
    if current == status:
        return order, False
    if not can_transition_order(current, status):
        raise ValidationError(f"Cannot change order status from {current} to {status}",
                              reason="invalid_transition")
    updated = database.db["order"].find_one_and_update(
        {"_id": order["_id"], "orderStatus": current},
        {"$set": {"orderStatus": status, "updated_at": database.now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Order status changed concurrently, please retry", reason="concurrent_update")
    logger.info("Order %s status %s -> %s", updated["_id"], current, status)
    return updated, True


def status_notification_due(order: Dict[str, Any], changed: bool) -> bool:
    return changed and order.get("orderStatus") in NOTIFY_ORDER_STATUSES
