"""
Provider signature schemes.
"""
import base64
import hashlib
import hmac
import json

import pytest

from nisarg_store.errors import MalformedReport
from nisarg_store.signatures import (
    decode_phonepe_payload,
    encode_phonepe_payload,
    phonepe_pay_checksum,
    phonepe_status_checksum,
    razorpay_checkout_signature,
    verify_phonepe_callback,
    verify_razorpay_checkout,
    verify_razorpay_webhook,
)

SALT_KEY = "099eb0cd-02cf-4e2a-8aca-3e6c6aff0399"


class TestRazorpay:
    def test_checkout_signature_is_hmac_of_order_and_payment(self) -> None:
        expected = hmac.new(b"secret", b"order_A|pay_B", hashlib.sha256).hexdigest()
        assert razorpay_checkout_signature("order_A", "pay_B", "secret") == expected

    def test_checkout_verification(self) -> None:
        signature = razorpay_checkout_signature("order_A", "pay_B", "secret")

        assert verify_razorpay_checkout("order_A", "pay_B", signature, "secret")
        assert not verify_razorpay_checkout("order_A", "pay_C", signature, "secret")
        assert not verify_razorpay_checkout("order_A", "pay_B", signature, "other-secret")
        assert not verify_razorpay_checkout("order_A", "pay_B", None, "secret")

    def test_checkout_requires_ids(self) -> None:
        with pytest.raises(MalformedReport):
            verify_razorpay_checkout("", "pay_B", "sig", "secret")

    def test_webhook_signature_covers_raw_body(self) -> None:
        body = b'{"event":"payment.captured","amount":93000}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

        assert verify_razorpay_webhook(body, signature, "whsec")
        assert not verify_razorpay_webhook(body.replace(b"93000", b"100"), signature, "whsec")


class TestPhonePe:
    def test_pay_checksum(self) -> None:
        encoded = encode_phonepe_payload({"merchantId": "M1", "amount": 93000})
        digest = hashlib.sha256(f"{encoded}/pg/v1/pay{SALT_KEY}".encode()).hexdigest()
        assert phonepe_pay_checksum(encoded, SALT_KEY, 1) == f"{digest}###1"

    def test_status_checksum(self) -> None:
        digest = hashlib.sha256(f"/pg/v1/status/M1/TXN-NM-1{SALT_KEY}".encode()).hexdigest()
        assert phonepe_status_checksum("M1", "TXN-NM-1", SALT_KEY, "1") == f"{digest}###1"

    def test_callback_verification(self) -> None:
        response = base64.b64encode(json.dumps({"code": "PAYMENT_SUCCESS"}).encode()).decode()
        x_verify = hashlib.sha256(f"{response}{SALT_KEY}".encode()).hexdigest() + "###1"

        assert verify_phonepe_callback(response, x_verify, SALT_KEY, "1")
        assert not verify_phonepe_callback(response, x_verify, "wrong-salt", "1")
        assert not verify_phonepe_callback(response, x_verify.split("###")[0], SALT_KEY, "1")

    def test_tampered_callback_rejected(self) -> None:
        original = base64.b64encode(json.dumps({"amount": 93000}).encode()).decode()
        tampered = base64.b64encode(json.dumps({"amount": 100}).encode()).decode()
        x_verify = hashlib.sha256(f"{original}{SALT_KEY}".encode()).hexdigest() + "###1"

        assert not verify_phonepe_callback(tampered, x_verify, SALT_KEY, "1")

    def test_callback_without_response_is_malformed(self) -> None:
        with pytest.raises(MalformedReport):
            verify_phonepe_callback("", "abc###1", SALT_KEY, "1")

    def test_payload_round_trip_is_compact(self) -> None:
        encoded = encode_phonepe_payload({"a": 1, "b": "x"})
        assert base64.b64decode(encoded) == b'{"a":1,"b":"x"}'
        assert decode_phonepe_payload(encoded) == {"a": 1, "b": "x"}

    def test_garbage_payload_rejected(self) -> None:
        with pytest.raises(MalformedReport):
            decode_phonepe_payload("not base64 at all!")
