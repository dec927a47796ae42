"""
Transactional email.

Senders here are scheduled as FastAPI background tasks after the state change
they describe has been committed. They never raise: a failed delivery is
retried a few times with backoff and then logged.
"""
import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

from jinja2 import DictLoader, Environment, select_autoescape
from tenacity import Retrying, RetryError, stop_after_attempt, wait_exponential_jitter

import config

logger = logging.getLogger("artify.notifications")

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
  <style>
    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
    .container { max-width: 600px; margin: 0 auto; padding: 20px; }
    .header { background-color: #2c3e50; color: white; padding: 20px; text-align: center; }
    .content { padding: 20px; background-color: #f9f9f9; }
    .footer { margin-top: 20px; padding: 10px; text-align: center; font-size: 12px; color: #777; }
    table { width: 100%; border-collapse: collapse; }
    td, th { padding: 6px; border-bottom: 1px solid #ddd; text-align: left; }
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h2>{% block title %}{% endblock %}</h2></div>
    <div class="content">{% block content %}{% endblock %}</div>
    <div class="footer"><p>The {{ store_name }} Team</p></div>
  </div>
</body>
</html>
"""

_ITEMS = """<table>
  <tr><th>Item</th><th>Qty</th><th>Price</th></tr>
  {% for item in order["items"] %}
  <tr><td>{{ item.name or item.product }}</td><td>{{ item.quantity }}</td><td>{{ "%.2f"|format(item.price) }}</td></tr>
  {% endfor %}
</table>
<p>Subtotal: {{ "%.2f"|format(order.subtotal) }}<br>
GST: {{ "%.2f"|format(order.gst) }}<br>
{% if order.discount %}Discount{% if order.coupon %} ({{ order.coupon.code }}){% endif %}: -{{ "%.2f"|format(order.discount) }}<br>{% endif %}
<strong>Total: {{ "%.2f"|format(order.total) }}</strong></p>
"""

TEMPLATES = {
    "layout.html": _LAYOUT,
    "items.html": _ITEMS,
    "order_confirmation.html": """{% extends "layout.html" %}
{% block title %}Thank you for your order{% endblock %}
{% block content %}
<p>Dear {{ order.billingDetails.firstName }},</p>
<p>We have received your payment for order <strong>#{{ ref }}</strong>. Our team will start working on it shortly.</p>
{% include "items.html" %}
{% endblock %}""",
    "admin_notification.html": """{% extends "layout.html" %}
{% block title %}New order received{% endblock %}
{% block content %}
<p>Order <strong>#{{ ref }}</strong> has been paid.</p>
<p>Customer: {{ order.billingDetails.firstName }} {{ order.billingDetails.lastName }}
  &lt;{{ order.billingDetails.email }}&gt;{% if order.billingDetails.phone %}, {{ order.billingDetails.phone }}{% endif %}</p>
{% if order.billingDetails.organizationName %}<p>Organization: {{ order.billingDetails.organizationName }}
  {% if order.billingDetails.gstNumber %}(GST {{ order.billingDetails.gstNumber }}){% endif %}</p>{% endif %}
{% include "items.html" %}
{% endblock %}""",
    "status_update.html": """{% extends "layout.html" %}
{% block title %}Your order status has changed{% endblock %}
{% block content %}
<p>Dear {{ order.billingDetails.firstName }},</p>
<p>Your order <strong>#{{ ref }}</strong> is now <strong>{{ order.orderStatus }}</strong>.</p>
{% endblock %}""",
}

env = Environment(loader=DictLoader(TEMPLATES), autoescape=select_autoescape(default=True))


class Mailer(ABC):
    """Outbound email port; adapters deliver one HTML message or raise."""

    @abstractmethod
    def send(self, to: str, subject: str, html: str) -> None:
        ...


class SMTPMailer(Mailer):
    def __init__(self, host: str = None, port: int = None, user: Optional[str] = None,
                 password: Optional[str] = None, use_tls: bool = None, timeout: float = None):
        self.host = host or config.EMAIL_HOST
        self.port = port or config.EMAIL_PORT
        self.user = user if user is not None else config.EMAIL_USER
        self.password = password if password is not None else config.EMAIL_PASSWORD
        self.use_tls = config.EMAIL_USE_TLS if use_tls is None else use_tls
        self.timeout = timeout or config.EMAIL_TIMEOUT

    def send(self, to: str, subject: str, html: str) -> None:
        msg = EmailMessage()
        msg["From"] = f'"{config.STORE_NAME}" <{config.EMAIL_FROM}>'
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML capable email client.")
        msg.add_alternative(html, subtype="html")
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(msg)


_mailer: Optional[Mailer] = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = SMTPMailer()
    return _mailer


def set_mailer(mailer: Optional[Mailer]) -> None:
    global _mailer
    _mailer = mailer


def order_ref(order: Dict[str, Any]) -> str:
    return str(order.get("_id", ""))[-6:].upper()


def render(template: str, order: Dict[str, Any]) -> str:
    return env.get_template(template).render(order=order, ref=order_ref(order), store_name=config.STORE_NAME)


def deliver(to: str, subject: str, html: str) -> bool:
    """Send with retries; returns False instead of raising when every attempt failed."""
    try:
        for attempt in Retrying(
            stop=stop_after_attempt(max(config.EMAIL_MAX_ATTEMPTS, 1)),
            wait=wait_exponential_jitter(initial=0.5, max=config.EMAIL_RETRY_WAIT),
            reraise=False,
        ):
            with attempt:
                get_mailer().send(to, subject, html)
    except RetryError as exc:
        logger.error("Email '%s' to %s failed after %d attempts: %s", subject, to,
                     exc.last_attempt.attempt_number, exc.last_attempt.exception())
        return False
    logger.info("Email '%s' sent to %s", subject, to)
    return True


def _billing_email(order: Dict[str, Any]) -> Optional[str]:
    return (order.get("billingDetails") or {}).get("email")


def send_order_confirmation(order: Dict[str, Any]) -> bool:
    to = _billing_email(order)
    if not to:
        logger.warning("Order %s has no billing email, confirmation skipped", order.get("_id"))
        return False
    return deliver(to, f"Your {config.STORE_NAME} Order #{order_ref(order)}",
                   render("order_confirmation.html", order))


def send_admin_notification(order: Dict[str, Any]) -> bool:
    return deliver(config.ADMIN_EMAIL, f"New Order Received - #{order_ref(order)}",
                   render("admin_notification.html", order))


def send_status_update(order: Dict[str, Any]) -> bool:
    to = _billing_email(order)
    if not to:
        logger.warning("Order %s has no billing email, status update skipped", order.get("_id"))
        return False
    return deliver(to, f"Your Order Status Update - #{order_ref(order)}",
                   render("status_update.html", order))


def payment_succeeded_tasks(order: Dict[str, Any]) -> List:
    """Sends owed once an order's payment succeeds."""
    return [(send_order_confirmation, order), (send_admin_notification, order)]
