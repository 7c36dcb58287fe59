import json
import math
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from bson import ObjectId

from .errors import AmountMismatch, ValidationError

PENDING = "pending"
PAID = "paid"
FAILED = "failed"
TERMINAL_STATUSES = {PAID, FAILED}
PAYMENT_STATUSES = {PENDING, PAID, FAILED}

CASH_ON_DELIVERY = "cod"
GATEWAY_PAYMENT = "gateway"

PHONEPE = "phonepe"
RAZORPAY = "razorpay"
GATEWAY_PROVIDERS = (PHONEPE, RAZORPAY)

# Labels the storefront has sent over time for the payment method field.
PAYMENT_METHOD_ALIASES = {
    "cod": (CASH_ON_DELIVERY, None),
    "cashondelivery": (CASH_ON_DELIVERY, None),
    "cash on delivery": (CASH_ON_DELIVERY, None),
    "gateway": (GATEWAY_PAYMENT, None),
    "gatewaypayment": (GATEWAY_PAYMENT, None),
    "online": (GATEWAY_PAYMENT, None),
    "phonepe": (GATEWAY_PAYMENT, PHONEPE),
    "razorpay": (GATEWAY_PAYMENT, RAZORPAY),
}

AMOUNT_EPSILON = 0.01
DEFAULT_CURRENCY = "INR"
DEFAULT_SHIPPING_RATES = {"standard": 80.0, "express": 150.0, "pickup": 0.0}

CUSTOMER_FIELD_ALIASES = {
    "first_name": ("firstName", "first_name"),
    "last_name": ("lastName", "last_name"),
    "email": ("email",),
    "phone": ("phone", "mobile", "mobileNumber"),
}
ADDRESS_FIELD_ALIASES = {
    "address1": ("address1", "line1", "addressLine1"),
    "address2": ("address2", "line2", "addressLine2"),
    "city": ("city",),
    "state": ("state",),
    "pincode": ("pincode", "postcode", "zip"),
    "country": ("country",),
}
GST_FIELD_ALIASES = {
    "gst_number": ("gstNumber", "gst_number"),
    "state": ("state",),
    "city": ("city",),
}
ADDRESS_REQUIRED_FIELDS = ("address1", "city", "state", "pincode")

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def to_minor_units(amount: float) -> int:
    return int(round(safe_float(amount) * 100))


def amounts_match(first: float, second: float) -> bool:
    return abs(round(first - second, 6)) <= AMOUNT_EPSILON


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form Mongo hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_order_id() -> str:
    return f"NM-{uuid4().hex[:12].upper()}"


def _pick_fields(payload, aliases: Dict[str, tuple]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field, candidates in aliases.items():
        value = None
        for alias in candidates:
            if alias in payload:
                value = payload.get(alias)
                break
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            normalized[field] = trimmed
    return normalized


def normalize_customer(payload) -> Dict[str, str]:
    customer = _pick_fields(payload, CUSTOMER_FIELD_ALIASES)
    if "email" in customer:
        customer["email"] = normalize_email(customer["email"])
    return customer


def normalize_address_payload(payload) -> Dict[str, str]:
    return _pick_fields(payload, ADDRESS_FIELD_ALIASES)


def normalize_order_item(payload):
    if not isinstance(payload, dict):
        return None

    product_identifier = (
        payload.get("productId")
        or payload.get("product_id")
        or payload.get("id")
    )
    if isinstance(product_identifier, ObjectId):
        product_identifier = str(product_identifier)
    product_id = str(product_identifier or "").strip()
    if not product_id:
        return None

    quantity = safe_positive_int(payload.get("quantity"), 0)
    price_value = safe_float(payload.get("price"), -1.0)
    if quantity < 1 or price_value < 0:
        return None

    return {
        "product_id": product_id,
        "name": str(payload.get("name") or "").strip() or "Item",
        "quantity": quantity,
        "price": round(price_value, 2),
        "variant": str(payload.get("variant") or "").strip(),
    }


def resolve_payment_method(value, default_gateway: str):
    key = str(value or "").strip().lower()
    if key not in PAYMENT_METHOD_ALIASES:
        accepted = ", ".join(sorted({"COD", "PhonePe", "Razorpay"}))
        raise ValidationError(f"Invalid payment method. Must be one of: {accepted}")
    method, provider = PAYMENT_METHOD_ALIASES[key]
    if method == GATEWAY_PAYMENT:
        provider = provider or default_gateway
        if provider not in GATEWAY_PROVIDERS:
            raise ValidationError(f"Unsupported payment gateway: {provider}")
    return method, provider


class PricingRules:
    """Current shipping rates and coupon definitions.

    Coupons map an upper-case code to ``{"type": "flat" | "percent", "value": n}``.
    """

    def __init__(
        self,
        shipping_rates: Optional[Dict[str, float]] = None,
        coupons: Optional[Dict[str, Dict]] = None,
    ):
        rates = shipping_rates if shipping_rates is not None else DEFAULT_SHIPPING_RATES
        self.shipping_rates = {
            str(name).strip().lower(): round(safe_float(cost), 2)
            for name, cost in rates.items()
        }
        self.coupons = {
            str(code).strip().upper(): rule for code, rule in (coupons or {}).items()
        }

    @classmethod
    def from_json(cls, shipping_json: Optional[str], coupons_json: Optional[str]):
        shipping_rates = json.loads(shipping_json) if shipping_json else None
        coupons = json.loads(coupons_json) if coupons_json else None
        return cls(shipping_rates, coupons)

    def shipping_cost(self, method_type: Optional[str]) -> float:
        key = str(method_type or "").strip().lower()
        if key not in self.shipping_rates:
            raise ValidationError(f"Unknown shipping method: {method_type or 'none'}")
        return self.shipping_rates[key]

    def coupon_discount(self, code: Optional[str], subtotal: float) -> float:
        normalized_code = str(code or "").strip().upper()
        if not normalized_code:
            return 0.0
        rule = self.coupons.get(normalized_code)
        if not isinstance(rule, dict):
            raise ValidationError(f"Coupon {normalized_code} is not valid.")

        value = safe_float(rule.get("value"), 0.0)
        if str(rule.get("type") or "flat").lower() == "percent":
            discount = subtotal * value / 100.0
        else:
            discount = value
        return round(min(max(discount, 0.0), subtotal), 2)

    def quote(
        self, items: List[Dict], shipping_type: Optional[str], coupon_code: Optional[str]
    ) -> Dict[str, float]:
        subtotal = round(
            sum(
                safe_float(item.get("price")) * safe_positive_int(item.get("quantity"))
                for item in items
            ),
            2,
        )
        shipping = self.shipping_cost(shipping_type)
        discount = self.coupon_discount(coupon_code, subtotal)
        return {
            "subtotal": subtotal,
            "shipping": shipping,
            "discount": discount,
            "total": round(subtotal + shipping - discount, 2),
        }

    def requote_order(self, order_document: Dict) -> Dict[str, float]:
        return self.quote(
            order_document.get("items") or [],
            (order_document.get("shipping_method") or {}).get("type"),
            (order_document.get("coupon") or {}).get("code"),
        )


def validate_total(provided_total: float, expected_total: float, order_id: str = ""):
    if not amounts_match(provided_total, expected_total):
        raise AmountMismatch(
            "Order total does not match items, shipping and discount.",
            order_id=order_id,
            expected=expected_total,
            provided=provided_total,
        )


def build_order_document(payload: Dict, pricing: PricingRules, default_gateway: str) -> Dict:
    """Validate a storefront order payload and return the document to insert."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")

    missing = [
        field
        for field in ("customer", "shippingAddress", "items", "total", "paymentMethod")
        if payload.get(field) in (None, "", [], {})
    ]
    if missing:
        raise ValidationError("Missing required fields", fields=missing)

    customer = normalize_customer(payload.get("customer"))
    if not customer.get("first_name"):
        raise ValidationError("Customer first name is required.")
    if not email_regex.match(customer.get("email", "")):
        raise ValidationError("A valid customer email is required.")

    shipping_address = normalize_address_payload(payload.get("shippingAddress"))
    missing_address = [
        field for field in ADDRESS_REQUIRED_FIELDS if not shipping_address.get(field)
    ]
    if missing_address:
        raise ValidationError("Shipping address is incomplete.", fields=missing_address)

    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        raise ValidationError("Items must be a list.")
    items = []
    for entry in raw_items:
        normalized_entry = normalize_order_item(entry)
        if not normalized_entry:
            raise ValidationError(
                "Each item needs a product id, a quantity of at least 1 and a price."
            )
        items.append(normalized_entry)

    shipping_payload = payload.get("shippingMethod")
    if isinstance(shipping_payload, str):
        shipping_payload = {"type": shipping_payload}
    shipping_type = str((shipping_payload or {}).get("type") or "standard").strip().lower()

    coupon_payload = payload.get("coupon")
    if isinstance(coupon_payload, str):
        coupon_payload = {"code": coupon_payload}
    coupon_code = str((coupon_payload or {}).get("code") or "").strip().upper()

    payment_method, gateway = resolve_payment_method(
        payload.get("paymentMethod"), default_gateway
    )

    quote = pricing.quote(items, shipping_type, coupon_code)
    provided_total = safe_float(payload.get("total"), -1.0)
    validate_total(provided_total, quote["total"])

    document = {
        "customer": customer,
        "shipping_address": shipping_address,
        "shipping_method": {"type": shipping_type, "cost": quote["shipping"]},
        "items": items,
        "subtotal": quote["subtotal"],
        "total": quote["total"],
        "currency": DEFAULT_CURRENCY,
        "payment_method": payment_method,
        "payment_status": PENDING,
        "email_sent": False,
    }
    if coupon_code:
        document["coupon"] = {"code": coupon_code, "discount": quote["discount"]}
    if gateway:
        document["gateway"] = gateway
    gst_details = _pick_fields(payload.get("gstDetails"), GST_FIELD_ALIASES)
    if gst_details:
        document["gst_details"] = gst_details
    return document


def _isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def serialize_order(order_document, include_customer: bool = True):
    if not order_document:
        return None

    items = [
        {
            "productId": item.get("product_id", ""),
            "name": item.get("name", ""),
            "quantity": item.get("quantity", 0),
            "price": item.get("price", 0.0),
            "variant": item.get("variant", ""),
            "lineTotal": round(
                safe_float(item.get("price")) * safe_positive_int(item.get("quantity")), 2
            ),
        }
        for item in order_document.get("items") or []
        if isinstance(item, dict)
    ]
    shipping_method = order_document.get("shipping_method") or {}
    coupon = order_document.get("coupon") or {}
    customer = order_document.get("customer") or {}
    address = order_document.get("shipping_address") or {}

    serialized = {
        "orderId": order_document.get("order_id", ""),
        "items": items,
        "subtotal": order_document.get("subtotal", 0.0),
        "shippingMethod": {
            "type": shipping_method.get("type", ""),
            "cost": shipping_method.get("cost", 0.0),
        },
        "coupon": {"code": coupon.get("code", ""), "discount": coupon.get("discount", 0.0)}
        if coupon
        else None,
        "total": order_document.get("total", 0.0),
        "currency": order_document.get("currency", DEFAULT_CURRENCY),
        "paymentMethod": order_document.get("payment_method", ""),
        "gateway": order_document.get("gateway"),
        "paymentStatus": order_document.get("payment_status", PENDING),
        "gatewayOrderRef": order_document.get("gateway_order_ref"),
        "gatewayPaymentRef": order_document.get("gateway_payment_ref"),
        "emailSent": bool(order_document.get("email_sent")),
        "createdAt": _isoformat(order_document.get("created_at")),
        "updatedAt": _isoformat(order_document.get("updated_at")),
    }
    if include_customer:
        serialized["customer"] = {
            "firstName": customer.get("first_name", ""),
            "lastName": customer.get("last_name", ""),
            "email": customer.get("email", ""),
            "phone": customer.get("phone", ""),
        }
        serialized["shippingAddress"] = {
            field: address.get(field, "") for field in ADDRESS_FIELD_ALIASES
        }
        gst_details = order_document.get("gst_details")
        if gst_details:
            serialized["gstDetails"] = {
                "gstNumber": gst_details.get("gst_number", ""),
                "state": gst_details.get("state", ""),
                "city": gst_details.get("city", ""),
            }
    return serialized
