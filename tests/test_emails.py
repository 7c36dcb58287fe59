"""
Order confirmation emails through Resend.
"""
from nisarg_store.emails import OrderMailer, normalize_order_email_items

ORDER = {
    "order_id": "NM-ABC",
    "customer": {"first_name": "Asha", "email": "asha@example.com"},
    "items": [{"name": "Jute Bag", "quantity": 2, "price": 175}],
    "total": 430.0,
    "payment_method": "gateway",
    "gateway_payment_ref": "pay_1",
}


def _render(template, **context):
    return f"<p>{context['order_id']}</p>"


def test_confirmation_payload(resend_send) -> None:
    mailer = OrderMailer("re_test", "orders@example.com", "Admin@Example.com", render=_render)

    sent, error = mailer.send_order_confirmation(ORDER)

    assert sent and error is None
    payload = resend_send[0]
    assert payload["from"] == "NISARGMAITRI <orders@example.com>"
    assert payload["to"] == ["asha@example.com"]
    assert payload["bcc"] == ["admin@example.com"]
    assert "NM-ABC" in payload["subject"]
    assert "Jute Bag x2 (INR 350.00)" in payload["text"]


def test_missing_api_key_is_reported(resend_send) -> None:
    mailer = OrderMailer("", "orders@example.com", render=_render)

    sent, error = mailer.send_order_confirmation(ORDER)

    assert not sent
    assert error == "Resend API key is not configured."
    assert resend_send == []


def test_provider_error_is_reported(monkeypatch) -> None:
    def _fail(payload):
        raise RuntimeError("rate limited")

    monkeypatch.setattr("nisarg_store.emails.resend.Emails.send", _fail)
    mailer = OrderMailer("re_test", "orders@example.com", render=_render)

    assert mailer.send_order_confirmation(ORDER) == (False, "rate limited")


def test_missing_recipient() -> None:
    mailer = OrderMailer("re_test", "orders@example.com", render=_render)
    sent, error = mailer.send_order_confirmation({"order_id": "NM-1", "customer": {}})
    assert not sent
    assert "customer email" in error


def test_normalize_items_skips_garbage() -> None:
    items = normalize_order_email_items([{"name": " ", "quantity": 0, "price": "12.5"}, "junk"])
    assert items == [{"name": "Item", "variant": "", "quantity": 1, "price": 12.5, "line_total": 12.5}]
