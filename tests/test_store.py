"""
Order persistence and conditional status transitions.
"""
from datetime import datetime, timedelta

import pytest

from nisarg_store.errors import DuplicateOrder
from nisarg_store.orders import utcnow
from nisarg_store.store import IdempotentReplay, OrderStore


def _order(order_id: str, **fields):
    document = {
        "order_id": order_id,
        "payment_status": "pending",
        "payment_method": "gateway",
        "gateway": "razorpay",
        "total": 930.0,
        "email_sent": False,
    }
    document.update(fields)
    return document


class TestInsert:
    def test_duplicate_order_id_rejected(self, store: OrderStore) -> None:
        store.insert(_order("NM-1"))
        with pytest.raises(DuplicateOrder):
            store.insert(_order("NM-1"))

    def test_idempotency_key_replays_existing_order(self, store: OrderStore) -> None:
        store.insert(_order("NM-1", idempotency_key="checkout-abc"))

        with pytest.raises(IdempotentReplay) as excinfo:
            store.insert(_order("NM-2", idempotency_key="checkout-abc"))

        assert excinfo.value.order_document["order_id"] == "NM-1"
        assert store.get("NM-2") is None

    def test_orders_without_refs_coexist(self, store: OrderStore) -> None:
        store.insert(_order("NM-1"))
        store.insert(_order("NM-2"))
        assert store.get("NM-2")["order_id"] == "NM-2"


class TestTransitions:
    """Only a pending order can change status, and only once."""

    def test_transition_sets_timestamp(self, store: OrderStore) -> None:
        store.insert(_order("NM-1"))

        updated = store.transition("NM-1", "paid", {"gateway_payment_ref": "pay_1"})

        assert updated["payment_status"] == "paid"
        assert updated["gateway_payment_ref"] == "pay_1"
        assert isinstance(updated["paid_at"], datetime)

    def test_second_writer_loses(self, store: OrderStore) -> None:
        store.insert(_order("NM-1"))

        first = store.transition("NM-1", "paid")
        second = store.transition("NM-1", "failed")

        assert first is not None
        assert second is None
        assert store.get("NM-1")["payment_status"] == "paid"

    def test_pending_is_not_a_target(self, store: OrderStore) -> None:
        store.insert(_order("NM-1"))
        with pytest.raises(ValueError):
            store.transition("NM-1", "pending")

    def test_gateway_ref_attached_once(self, store: OrderStore) -> None:
        store.insert(_order("NM-1"))

        first = store.attach_gateway_ref("NM-1", "order_A", "https://pay.example/a")
        second = store.attach_gateway_ref("NM-1", "order_B")

        assert first["gateway_order_ref"] == "order_A"
        assert first["action_url"] == "https://pay.example/a"
        assert second is None
        assert store.get_by_gateway_ref("order_A")["order_id"] == "NM-1"
        assert store.get_by_gateway_ref("order_B") is None

    def test_failed_attempts_keep_order_pending(self, store: OrderStore) -> None:
        store.insert(_order("NM-1"))

        store.record_failed_attempt("NM-1", "pay_1", "failed")
        updated = store.record_failed_attempt("NM-1", "pay_2", "failed")

        assert updated["payment_status"] == "pending"
        assert updated["failed_attempts"] == 2
        assert updated["last_failed_payment_ref"] == "pay_2"

        store.transition("NM-1", "paid")
        assert store.record_failed_attempt("NM-1", "pay_3", "failed") is None


class TestEmailFlag:
    def test_claim_only_once(self, store: OrderStore) -> None:
        store.insert(_order("NM-1", payment_status="paid"))

        assert store.claim_email("NM-1") is not None
        assert store.claim_email("NM-1") is None

    def test_pending_order_cannot_claim(self, store: OrderStore) -> None:
        store.insert(_order("NM-1"))
        assert store.claim_email("NM-1") is None

    def test_release_makes_order_retryable(self, store: OrderStore) -> None:
        store.insert(_order("NM-1", payment_status="paid"))
        store.claim_email("NM-1")

        store.release_email("NM-1", "smtp down")

        unsent = store.find_unsent_confirmations()
        assert [order["order_id"] for order in unsent] == ["NM-1"]
        assert unsent[0]["email_error"] == "smtp down"


class TestQueries:
    def test_list_orders_filters_by_day_and_fragment(self, store: OrderStore) -> None:
        day = datetime(2024, 3, 10, 9, 30)
        store.insert(_order("NM-ABC123", created_at=day))
        store.insert(_order("NM-ABC999", created_at=day + timedelta(hours=2)))
        store.insert(_order("NM-XYZ000", created_at=day - timedelta(days=1)))

        same_day = store.list_orders(day=datetime(2024, 3, 10))
        assert [order["order_id"] for order in same_day] == ["NM-ABC999", "NM-ABC123"]

        matching = store.list_orders(order_id_fragment="abc1")
        assert [order["order_id"] for order in matching] == ["NM-ABC123"]

    def test_fragment_is_not_a_regex(self, store: OrderStore) -> None:
        store.insert(_order("NM-ABC123"))
        assert store.list_orders(order_id_fragment=".*") == []

    def test_stale_and_purge(self, store: OrderStore) -> None:
        now = utcnow()
        store.insert(_order("NM-OLD", created_at=now - timedelta(days=2)))
        store.insert(_order("NM-OLDPAID", payment_status="paid", created_at=now - timedelta(days=2)))
        store.insert(_order("NM-NEW", created_at=now))

        stale = store.find_stale_pending(now - timedelta(hours=1))
        assert [order["order_id"] for order in stale] == ["NM-OLD"]

        assert store.purge(now - timedelta(hours=24)) == 1
        assert store.get("NM-OLD") is None
        assert store.get("NM-OLDPAID") is not None
