"""Payment report authentication.

Each provider documents one canonical string and hash; the helpers here
reproduce them byte for byte. Verification helpers return ``False`` on a
mismatch and only raise for input that cannot be parsed at all.
"""
import base64
import binascii
import hashlib
import hmac
import json
from typing import Dict, Optional, Union

from .errors import MalformedReport

PHONEPE_PAY_PATH = "/pg/v1/pay"
PHONEPE_STATUS_PATH = "/pg/v1/status"
PHONEPE_CHECKSUM_SEPARATOR = "###"


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def constant_time_equals(expected: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(_as_bytes(expected), _as_bytes(provided.strip()))


# ---- Razorpay ----


def razorpay_checkout_signature(order_ref: str, payment_ref: str, key_secret: str) -> str:
    message = f"{order_ref}|{payment_ref}"
    return hmac.new(_as_bytes(key_secret), _as_bytes(message), hashlib.sha256).hexdigest()


def verify_razorpay_checkout(
    order_ref: str, payment_ref: str, signature: Optional[str], key_secret: str
) -> bool:
    if not order_ref or not payment_ref:
        raise MalformedReport("Razorpay order and payment ids are required.")
    expected = razorpay_checkout_signature(order_ref, payment_ref, key_secret)
    return constant_time_equals(expected, signature)


def razorpay_webhook_signature(raw_body: Union[str, bytes], webhook_secret: str) -> str:
    return hmac.new(_as_bytes(webhook_secret), _as_bytes(raw_body), hashlib.sha256).hexdigest()


def verify_razorpay_webhook(
    raw_body: Union[str, bytes], signature: Optional[str], webhook_secret: str
) -> bool:
    expected = razorpay_webhook_signature(raw_body, webhook_secret)
    return constant_time_equals(expected, signature)


# ---- PhonePe ----


def phonepe_checksum(message: str, salt_key: str, salt_index: Union[str, int]) -> str:
    digest = hashlib.sha256(_as_bytes(f"{message}{salt_key}")).hexdigest()
    return f"{digest}{PHONEPE_CHECKSUM_SEPARATOR}{salt_index}"


def phonepe_pay_checksum(encoded_payload: str, salt_key: str, salt_index) -> str:
    return phonepe_checksum(f"{encoded_payload}{PHONEPE_PAY_PATH}", salt_key, salt_index)


def phonepe_status_path(merchant_id: str, merchant_transaction_id: str) -> str:
    return f"{PHONEPE_STATUS_PATH}/{merchant_id}/{merchant_transaction_id}"


def phonepe_status_checksum(
    merchant_id: str, merchant_transaction_id: str, salt_key: str, salt_index
) -> str:
    return phonepe_checksum(
        phonepe_status_path(merchant_id, merchant_transaction_id), salt_key, salt_index
    )


def verify_phonepe_callback(
    encoded_response: str, x_verify: Optional[str], salt_key: str, salt_index
) -> bool:
    if not encoded_response:
        raise MalformedReport("PhonePe callback is missing the response payload.")
    if not x_verify or PHONEPE_CHECKSUM_SEPARATOR not in x_verify:
        return False
    expected = phonepe_checksum(encoded_response, salt_key, salt_index)
    return constant_time_equals(expected, x_verify)


def encode_phonepe_payload(payload: Dict) -> str:
    return base64.b64encode(_as_bytes(json.dumps(payload, separators=(",", ":")))).decode("ascii")


def decode_phonepe_payload(encoded_response: str) -> Dict:
    try:
        decoded = base64.b64decode(_as_bytes(encoded_response), validate=True)
        payload = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise MalformedReport("Invalid PhonePe callback response format") from exc
    if not isinstance(payload, dict):
        raise MalformedReport("Invalid PhonePe callback response format")
    return payload
