import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import (
    GatewayError,
    GatewayUnavailable,
    MalformedReport,
    ReferenceMismatch,
    ValidationError,
)
from .orders import FAILED, PAID, PENDING, PHONEPE, RAZORPAY, to_minor_units
from .signatures import (
    PHONEPE_PAY_PATH,
    decode_phonepe_payload,
    encode_phonepe_payload,
    phonepe_pay_checksum,
    phonepe_status_checksum,
    phonepe_status_path,
    verify_phonepe_callback,
    verify_razorpay_checkout,
    verify_razorpay_webhook,
)

logger = logging.getLogger(__name__)

PHONEPE_URLS = {
    "production": "https://api.phonepe.com/apis/hermes",
    "sandbox": "https://api-preprod.phonepe.com/apis/pg-sandbox",
}
RAZORPAY_API_URL = "https://api.razorpay.com/v1"


@dataclass
class GatewayInitiation:
    provider: str
    transaction_ref: str
    action_url: Optional[str] = None
    client_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusReport:
    outcome: str
    transaction_ref: str
    payment_ref: Optional[str] = None
    confirmed_amount: Optional[int] = None
    provider_code: Optional[str] = None
    # One payment attempt failed; the provider order stays open for a retry.
    attempt_failed: bool = False


@dataclass
class PaymentReport:
    """An inbound claim about a payment, not yet authenticated."""

    provider: str
    kind: str
    body: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None
    raw_body: bytes = b""


class GatewayClient:
    name = ""

    def __init__(self, timeout: float = 30, status_attempts: int = 3, backoff: float = 0.5):
        self.timeout = timeout
        self._status_retry = Retrying(
            stop=stop_after_attempt(max(1, int(status_attempts))),
            wait=wait_exponential(multiplier=backoff, max=8),
            retry=retry_if_exception_type(GatewayUnavailable),
            reraise=True,
        )

    def create_payment(self, order: Dict, **fields) -> GatewayInitiation:
        raise NotImplementedError

    def check_status(self, transaction_ref: str, payment_ref: Optional[str] = None) -> StatusReport:
        return self._status_retry(self._fetch_status, transaction_ref, payment_ref)

    def resume_payment(self, order: Dict) -> GatewayInitiation:
        """Describe a payment that was already initiated for ``order``."""
        raise NotImplementedError

    def verify_report(self, report: PaymentReport) -> bool:
        raise NotImplementedError

    def read_report(self, report: PaymentReport) -> StatusReport:
        raise NotImplementedError

    def _fetch_status(self, transaction_ref: str, payment_ref: Optional[str]) -> StatusReport:
        raise NotImplementedError

    def _send(self, method, url: str, **kwargs):
        try:
            response = method(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.error("%s request to %s failed: %s", self.name, url, exc.__class__.__name__)
            raise GatewayUnavailable(
                "Payment provider is unreachable.", provider=self.name
            ) from exc

        if response.status_code >= 500 or response.status_code == 429:
            logger.error("%s responded %s for %s", self.name, response.status_code, url)
            raise GatewayUnavailable(
                "Payment provider is temporarily unavailable.", provider=self.name
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Payment provider returned an unreadable response.", provider=self.name
            ) from exc
        return response.status_code, data if isinstance(data, dict) else {}


# ---- PhonePe ----

PHONEPE_FAILED_CODES = {
    "PAYMENT_ERROR",
    "PAYMENT_DECLINED",
    "TIMED_OUT",
    "AUTHORIZATION_FAILED",
    "PAYMENT_CANCELLED",
}


class PhonePeGateway(GatewayClient):
    name = PHONEPE

    def __init__(self, merchant_id: str, salt_key: str, salt_index: str = "1",
                 environment: str = "sandbox", **kwargs):
        super().__init__(**kwargs)
        if not merchant_id or not salt_key:
            raise ValueError("PhonePe configuration is incomplete.")
        self.merchant_id = merchant_id
        self.salt_key = salt_key
        self.salt_index = str(salt_index or "1")
        self.base_url = PHONEPE_URLS.get(environment, PHONEPE_URLS["sandbox"])

    @staticmethod
    def transaction_ref_for(order_id: str) -> str:
        return f"TXN-{order_id}"

    def create_payment(self, order: Dict, redirect_url: str = "", callback_url: str = "",
                       mobile_number: str = "", merchant_user_id: str = "", **_) -> GatewayInitiation:
        if not redirect_url or not callback_url:
            raise ValidationError("PhonePe payments need a redirect URL and a callback URL.")
        transaction_ref = self.transaction_ref_for(order["order_id"])
        separator = "&" if "?" in redirect_url else "?"
        customer = order.get("customer") or {}
        payload = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": transaction_ref,
            "merchantUserId": merchant_user_id or f"MUID-{order['order_id']}",
            "amount": to_minor_units(order.get("total")),
            "redirectUrl": f"{redirect_url}{separator}transactionId={transaction_ref}",
            "redirectMode": "REDIRECT",
            "callbackUrl": callback_url,
            "mobileNumber": mobile_number or customer.get("phone", ""),
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded_payload = encode_phonepe_payload(payload)

        logger.info("Creating PhonePe payment %s for order %s", transaction_ref, order["order_id"])
        _, data = self._send(
            requests.post,
            f"{self.base_url}{PHONEPE_PAY_PATH}",
            json={"request": encoded_payload},
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": phonepe_pay_checksum(encoded_payload, self.salt_key, self.salt_index),
                "accept": "application/json",
            },
        )

        redirect_info = (
            ((data.get("data") or {}).get("instrumentResponse") or {}).get("redirectInfo") or {}
        )
        payment_url = redirect_info.get("url")
        if not data.get("success") or not payment_url:
            raise GatewayError(
                data.get("message") or "PhonePe payment initiation failed",
                provider=self.name,
                code=data.get("code"),
            )

        return GatewayInitiation(
            provider=self.name,
            transaction_ref=transaction_ref,
            action_url=payment_url,
            client_payload={"paymentUrl": payment_url, "transactionId": transaction_ref},
        )

    def resume_payment(self, order: Dict) -> GatewayInitiation:
        transaction_ref = order["gateway_order_ref"]
        payment_url = order.get("action_url")
        return GatewayInitiation(
            provider=self.name,
            transaction_ref=transaction_ref,
            action_url=payment_url,
            client_payload={"paymentUrl": payment_url, "transactionId": transaction_ref},
        )

    def _fetch_status(self, transaction_ref: str, payment_ref: Optional[str]) -> StatusReport:
        path = phonepe_status_path(self.merchant_id, transaction_ref)
        _, data = self._send(
            requests.get,
            f"{self.base_url}{path}",
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": phonepe_status_checksum(
                    self.merchant_id, transaction_ref, self.salt_key, self.salt_index
                ),
                "X-MERCHANT-ID": self.merchant_id,
                "accept": "application/json",
            },
        )
        return self._status_from_response(data, transaction_ref)

    def _status_from_response(self, data: Dict, transaction_ref: Optional[str] = None) -> StatusReport:
        details = data.get("data") or {}
        state = str(details.get("state") or "").upper()
        code = str(data.get("code") or details.get("responseCode") or "").upper()

        if state == "COMPLETED" or code == "PAYMENT_SUCCESS":
            outcome = PAID
        elif state == "FAILED" or code in PHONEPE_FAILED_CODES:
            outcome = FAILED
        else:
            outcome = PENDING

        amount = details.get("amount")
        return StatusReport(
            outcome=outcome,
            transaction_ref=details.get("merchantTransactionId") or transaction_ref or "",
            payment_ref=details.get("transactionId"),
            confirmed_amount=int(amount) if isinstance(amount, (int, float)) else None,
            provider_code=code or None,
        )

    def verify_report(self, report: PaymentReport) -> bool:
        return verify_phonepe_callback(
            report.body.get("response"), report.signature, self.salt_key, self.salt_index
        )

    def read_report(self, report: PaymentReport) -> StatusReport:
        decoded = decode_phonepe_payload(report.body.get("response"))
        status = self._status_from_response(decoded)
        if not status.transaction_ref:
            raise MalformedReport("PhonePe callback is missing merchantTransactionId.")
        return status


# ---- Razorpay ----

RAZORPAY_PAID_EVENTS = {"payment.captured", "order.paid"}
# Razorpay Checkout lets the customer retry on the same order, so a failed
# payment only closes one attempt. The order is failed by expiry.
RAZORPAY_ATTEMPT_FAILED_EVENTS = {"payment.failed"}
RAZORPAY_SUCCESS_STATES = {"captured", "authorized"}


class RazorpayGateway(GatewayClient):
    name = RAZORPAY

    def __init__(self, key_id: str, key_secret: str, webhook_secret: str = "",
                 base_url: str = RAZORPAY_API_URL, **kwargs):
        super().__init__(**kwargs)
        if not key_id or not key_secret:
            raise ValueError("Razorpay configuration is incomplete.")
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")

    def create_payment(self, order: Dict, **_) -> GatewayInitiation:
        amount = to_minor_units(order.get("total"))
        currency = order.get("currency") or "INR"
        status_code, data = self._send(
            requests.post,
            f"{self.base_url}/orders",
            json={
                "amount": amount,
                "currency": currency,
                "receipt": order["order_id"],
                "notes": {"order_id": order["order_id"]},
            },
            auth=(self.key_id, self.key_secret),
        )
        if status_code != 200 or not data.get("id"):
            description = (data.get("error") or {}).get("description")
            raise GatewayError(
                description or "Razorpay order creation failed", provider=self.name
            )

        logger.info("Razorpay order %s created for order %s", data["id"], order["order_id"])
        return GatewayInitiation(
            provider=self.name,
            transaction_ref=data["id"],
            client_payload={
                "razorpayOrderId": data["id"],
                "keyId": self.key_id,
                "amount": amount,
                "currency": currency,
            },
        )

    def resume_payment(self, order: Dict) -> GatewayInitiation:
        transaction_ref = order["gateway_order_ref"]
        return GatewayInitiation(
            provider=self.name,
            transaction_ref=transaction_ref,
            client_payload={
                "razorpayOrderId": transaction_ref,
                "keyId": self.key_id,
                "amount": to_minor_units(order.get("total")),
                "currency": order.get("currency") or "INR",
            },
        )

    def _fetch_status(self, transaction_ref: str, payment_ref: Optional[str]) -> StatusReport:
        auth = (self.key_id, self.key_secret)
        if payment_ref:
            _, payment = self._send(
                requests.get, f"{self.base_url}/payments/{payment_ref}", auth=auth
            )
            if payment.get("order_id") != transaction_ref:
                raise ReferenceMismatch(
                    "Payment does not belong to this order.",
                    transaction_ref=transaction_ref,
                )
            return self._status_from_payment(payment, transaction_ref)

        _, data = self._send(
            requests.get, f"{self.base_url}/orders/{transaction_ref}/payments", auth=auth
        )
        payments = [entry for entry in data.get("items") or [] if isinstance(entry, dict)]
        for payment in payments:
            if payment.get("status") in RAZORPAY_SUCCESS_STATES:
                return self._status_from_payment(payment, transaction_ref)
        if payments:
            return self._status_from_payment(payments[0], transaction_ref)
        return StatusReport(outcome=PENDING, transaction_ref=transaction_ref)

    @staticmethod
    def _status_from_payment(payment: Dict, transaction_ref: str) -> StatusReport:
        status = payment.get("status")
        amount = payment.get("amount")
        return StatusReport(
            outcome=PAID if status in RAZORPAY_SUCCESS_STATES else PENDING,
            transaction_ref=payment.get("order_id") or transaction_ref,
            payment_ref=payment.get("id"),
            confirmed_amount=int(amount) if isinstance(amount, (int, float)) else None,
            provider_code=status,
            attempt_failed=status == "failed",
        )

    def verify_report(self, report: PaymentReport) -> bool:
        if report.kind == "webhook":
            if not self.webhook_secret:
                logger.error("Razorpay webhook received but no webhook secret is configured")
                return False
            return verify_razorpay_webhook(report.raw_body, report.signature, self.webhook_secret)
        return verify_razorpay_checkout(
            report.body.get("razorpay_order_id"),
            report.body.get("razorpay_payment_id"),
            report.signature,
            self.key_secret,
        )

    def read_report(self, report: PaymentReport) -> StatusReport:
        if report.kind != "webhook":
            # A valid checkout signature is only issued for a successful payment;
            # the amount is fetched from the payment itself.
            return StatusReport(
                outcome=PAID,
                transaction_ref=report.body["razorpay_order_id"],
                payment_ref=report.body["razorpay_payment_id"],
            )

        try:
            event = json.loads(report.raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedReport("Invalid Razorpay webhook body") from exc
        if not isinstance(event, dict):
            raise MalformedReport("Invalid Razorpay webhook body")

        event_type = event.get("event")
        payload = event.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        order_entity = (payload.get("order") or {}).get("entity") or {}
        transaction_ref = payment.get("order_id") or order_entity.get("id")
        if not transaction_ref:
            raise MalformedReport("Razorpay webhook is missing the order id.")

        amount = payment.get("amount")
        if amount is None:
            amount = order_entity.get("amount_paid")
        return StatusReport(
            outcome=PAID if event_type in RAZORPAY_PAID_EVENTS else PENDING,
            transaction_ref=transaction_ref,
            payment_ref=payment.get("id"),
            confirmed_amount=int(amount) if isinstance(amount, (int, float)) else None,
            provider_code=event_type,
            attempt_failed=event_type in RAZORPAY_ATTEMPT_FAILED_EVENTS,
        )


def build_gateways(config) -> Dict[str, GatewayClient]:
    """Instantiate every provider that has credentials in ``config``."""
    common = {
        "timeout": float(config.get("GATEWAY_TIMEOUT_SECONDS", 30)),
        "status_attempts": int(config.get("GATEWAY_STATUS_ATTEMPTS", 3)),
        "backoff": float(config.get("GATEWAY_RETRY_BACKOFF", 0.5)),
    }
    gateways: Dict[str, GatewayClient] = {}
    if config.get("PHONEPE_MERCHANT_ID") and config.get("PHONEPE_SALT_KEY"):
        gateways[PHONEPE] = PhonePeGateway(
            config["PHONEPE_MERCHANT_ID"],
            config["PHONEPE_SALT_KEY"],
            config.get("PHONEPE_SALT_INDEX") or "1",
            environment=config.get("PHONEPE_ENV") or "sandbox",
            **common,
        )
    if config.get("RAZORPAY_KEY_ID") and config.get("RAZORPAY_KEY_SECRET"):
        gateways[RAZORPAY] = RazorpayGateway(
            config["RAZORPAY_KEY_ID"],
            config["RAZORPAY_KEY_SECRET"],
            config.get("RAZORPAY_WEBHOOK_SECRET") or "",
            **common,
        )
    return gateways
