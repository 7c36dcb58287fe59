import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import resend
from flask import render_template

from .orders import CASH_ON_DELIVERY, normalize_email, safe_float, safe_positive_int, utcnow

logger = logging.getLogger(__name__)

ORDER_EMAIL_TEMPLATE = "emails/order_confirmation.html"
ORDER_EMAIL_SUBJECT = "NISARGMAITRI order confirmation"


def send_email_via_resend(payload: Dict[str, object], api_key: str):
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def normalize_order_email_items(items: List[Dict]) -> List[Dict]:
    normalized_items: List[Dict] = []
    for entry in items or []:
        if not isinstance(entry, dict):
            continue
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_value = round(safe_float(entry.get("price"), 0.0), 2)
        normalized_items.append(
            {
                "name": str(entry.get("name") or "").strip() or "Item",
                "variant": str(entry.get("variant") or "").strip(),
                "quantity": quantity,
                "price": price_value,
                "line_total": round(price_value * quantity, 2),
            }
        )
    return normalized_items


class OrderMailer:
    def __init__(
        self,
        api_key: str,
        sender: str,
        admin_recipient: Optional[str] = None,
        render: Callable[..., str] = render_template,
    ):
        self.api_key = api_key
        self.sender = sender
        self.admin_recipient = normalize_email(admin_recipient)
        self.render = render

    def send_order_confirmation(self, order_document: Dict) -> Tuple[bool, Optional[str]]:
        customer = order_document.get("customer") or {}
        recipient_email = normalize_email(customer.get("email"))
        if not recipient_email:
            return False, "Missing customer email for the order receipt."

        items = normalize_order_email_items(order_document.get("items"))
        order_identifier = str(order_document.get("order_id") or "Order")
        total_value = round(safe_float(order_document.get("total")), 2)
        is_cash_on_delivery = order_document.get("payment_method") == CASH_ON_DELIVERY

        created_at_value = order_document.get("created_at")
        if not isinstance(created_at_value, datetime):
            created_at_value = utcnow()

        html_body = self.render(
            ORDER_EMAIL_TEMPLATE,
            order_id=order_identifier,
            customer=customer,
            items=items,
            shipping=order_document.get("shipping_method") or {},
            coupon=order_document.get("coupon") or {},
            total=total_value,
            address=order_document.get("shipping_address") or {},
            payment_ref=order_document.get("gateway_payment_ref"),
            cash_on_delivery=is_cash_on_delivery,
            created_at=created_at_value,
        )
        item_lines = ", ".join(
            f"{item['name']} x{item['quantity']} (INR {item['line_total']:.2f})" for item in items
        )
        payment_line = (
            "Payment will be collected on delivery."
            if is_cash_on_delivery
            else "Your payment has been received."
        )
        text_body = (
            f"Thank you for your order {order_identifier} with NISARGMAITRI.\n"
            f"Items: {item_lines}.\n"
            f"Total: INR {total_value:.2f}. {payment_line}\n\n"
            "NISARGMAITRI"
        )

        recipients = [recipient_email]
        payload: Dict[str, object] = {
            "from": f"NISARGMAITRI <{self.sender}>",
            "to": recipients,
            "subject": f"{ORDER_EMAIL_SUBJECT} ({order_identifier})",
            "html": html_body,
            "text": text_body,
        }
        if self.admin_recipient and self.admin_recipient != recipient_email:
            payload["bcc"] = [self.admin_recipient]

        sent, error = send_email_via_resend(payload, self.api_key)
        if sent:
            logger.info("Order confirmation for %s sent to %s", order_identifier, recipient_email)
        else:
            logger.error("Order confirmation for %s failed: %s", order_identifier, error)
        return sent, error
