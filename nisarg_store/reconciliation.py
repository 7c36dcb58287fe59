"""Order payment lifecycle.

``ReconciliationEngine`` is the only writer of ``payment_status``. Orders move
``pending -> paid`` or ``pending -> failed`` through a conditional update in
the store, so duplicate webhooks, a webhook racing a client verification, or
an expiry sweep racing either of them apply at most one transition. The
confirmation email is attached to the first transition to ``paid`` and is
guarded by its own conditional flag.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from .errors import (
    AmountMismatch,
    GatewayError,
    InvalidSignature,
    OrderAlreadyProcessed,
    OrderExpired,
    OrderNotFound,
    ReferenceMismatch,
    ShopError,
    ValidationError,
)
from .events import OrderEventHub
from .gateways import GatewayClient, GatewayInitiation, PaymentReport, StatusReport
from .orders import (
    AMOUNT_EPSILON,
    CASH_ON_DELIVERY,
    FAILED,
    GATEWAY_PAYMENT,
    PAID,
    PENDING,
    TERMINAL_STATUSES,
    PricingRules,
    generate_order_id,
    serialize_order,
    to_minor_units,
    utcnow,
    validate_total,
)
from .store import IdempotentReplay, OrderStore

logger = logging.getLogger(__name__)

AMOUNT_EPSILON_MINOR = int(round(AMOUNT_EPSILON * 100))


@dataclass
class ConfirmationOutcome:
    order: Dict
    status: str
    applied: bool
    email_sent: bool = False

    @property
    def success(self) -> bool:
        return self.status == PAID


class ReconciliationEngine:
    def __init__(
        self,
        store: OrderStore,
        gateways: Dict[str, GatewayClient],
        pricing: PricingRules,
        mailer=None,
        events: Optional[OrderEventHub] = None,
        validity: timedelta = timedelta(minutes=30),
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateways = gateways
        self.pricing = pricing
        self.mailer = mailer
        self.events = events
        self.validity = validity
        self.retention = retention
        self.clock = clock

    # --- Creation ---

    def create_order(
        self, document: Dict, idempotency_key: Optional[str] = None
    ) -> Tuple[Dict, bool]:
        """Persist a validated order document. Returns ``(order, created)``."""
        order_document = dict(document)
        order_document["order_id"] = generate_order_id()
        now = self.clock()
        order_document["created_at"] = now
        order_document["updated_at"] = now
        if idempotency_key:
            order_document["idempotency_key"] = idempotency_key
        if order_document.get("payment_method") == CASH_ON_DELIVERY:
            order_document["payment_status"] = PAID
            order_document["status_reason"] = "cod"
            order_document["paid_at"] = now

        try:
            order = self.store.insert(order_document)
        except IdempotentReplay as replay:
            logger.info(
                "Order request replayed with idempotency key, returning %s",
                replay.order_document.get("order_id"),
            )
            return replay.order_document, False

        logger.info(
            "Order created: %s with payment method %s",
            order["order_id"],
            order.get("gateway") or order.get("payment_method"),
        )
        self._publish("order.created", order)
        if order["payment_status"] == PAID:
            self._send_confirmation(order["order_id"])
            order = self.store.get(order["order_id"]) or order
        return order, True

    # --- Initiation ---

    def initiate(self, order_id: str, **provider_fields) -> GatewayInitiation:
        order = self.store.get(order_id)
        if not order:
            raise OrderNotFound("Order not found", order_id=order_id)
        if order.get("payment_method") != GATEWAY_PAYMENT:
            raise ValidationError("This order is not paid through a payment gateway.")
        if order.get("payment_status") != PENDING:
            logger.warning(
                "Payment already processed for order: %s, status: %s",
                order_id,
                order.get("payment_status"),
            )
            raise OrderAlreadyProcessed("Payment already processed for this order")
        if self.is_expired(order):
            outcome = self._settle_expired(order)
            if outcome.status == PAID:
                raise OrderAlreadyProcessed("Payment already processed for this order")
            raise OrderExpired("This order has expired. Please place it again.")

        quote = self.pricing.requote_order(order)
        validate_total(order.get("total", 0.0), quote["total"], order_id)

        gateway = self.gateway_for(order.get("gateway"))
        if order.get("gateway_order_ref"):
            return gateway.resume_payment(order)

        # Not retried: a second create call could open a second provider transaction.
        initiation = gateway.create_payment(order, **provider_fields)
        updated = self.store.attach_gateway_ref(
            order_id, initiation.transaction_ref, initiation.action_url
        )
        if updated is None:
            current = self.store.get(order_id) or {}
            existing_ref = current.get("gateway_order_ref")
            if existing_ref and existing_ref != initiation.transaction_ref:
                logger.warning(
                    "Order %s was initiated concurrently, keeping reference %s",
                    order_id,
                    existing_ref,
                )
                return gateway.resume_payment(current)
            if current.get("payment_status") != PENDING:
                raise OrderAlreadyProcessed("Payment already processed for this order")
        logger.info(
            "%s payment initiated for order %s, transaction %s",
            gateway.name,
            order_id,
            initiation.transaction_ref,
        )
        return initiation

    # --- Confirmation ---

    def confirm(
        self, report: PaymentReport, expected_order_id: Optional[str] = None
    ) -> ConfirmationOutcome:
        gateway = self.gateway_for(report.provider)
        if not gateway.verify_report(report):
            logger.warning(
                "Rejected %s %s report: signature verification failed",
                report.provider,
                report.kind,
            )
            raise InvalidSignature("Payment signature verification failed")

        status = gateway.read_report(report)
        order = self.store.get_by_gateway_ref(status.transaction_ref)
        if not order:
            raise OrderNotFound(
                "Order not found for transaction", transaction_ref=status.transaction_ref
            )
        if expected_order_id and order.get("order_id") != expected_order_id:
            raise ReferenceMismatch("Transaction does not belong to this order.")
        return self._reconcile(order, status, gateway)

    def verify(self, order_id: str, transaction_ref: str) -> ConfirmationOutcome:
        order = self.store.get(order_id)
        if not order or order.get("gateway_order_ref") != transaction_ref:
            logger.warning("Order not found: %s, transaction: %s", order_id, transaction_ref)
            raise OrderNotFound("Order not found", order_id=order_id)
        if order.get("payment_status") in TERMINAL_STATUSES:
            return ConfirmationOutcome(order, order["payment_status"], applied=False)

        gateway = self.gateway_for(order.get("gateway"))
        status = gateway.check_status(transaction_ref)
        return self._reconcile(order, status, gateway)

    def _reconcile(
        self, order: Dict, status: StatusReport, gateway: GatewayClient
    ) -> ConfirmationOutcome:
        order_id = order["order_id"]
        if order.get("payment_status") in TERMINAL_STATUSES:
            if order.get("payment_status") == FAILED and status.outcome == PAID:
                logger.error(
                    "Order %s is failed but %s reports payment %s as paid; refund or override needed",
                    order_id,
                    gateway.name,
                    status.payment_ref or status.transaction_ref,
                )
            else:
                logger.info(
                    "Order %s is already %s, ignoring %s report",
                    order_id,
                    order.get("payment_status"),
                    gateway.name,
                )
            return ConfirmationOutcome(order, order["payment_status"], applied=False)

        if order.get("gateway") != gateway.name or order.get("gateway_order_ref") != status.transaction_ref:
            logger.warning(
                "Report for %s does not match order %s", status.transaction_ref, order_id
            )
            raise ReferenceMismatch("Payment report does not match the order reference.")

        if status.outcome == PAID and status.confirmed_amount is None:
            status = gateway.check_status(status.transaction_ref, status.payment_ref)

        if status.outcome == PENDING:
            if status.attempt_failed:
                logger.warning(
                    "Payment attempt %s for order %s failed (%s); order stays open for a retry",
                    status.payment_ref,
                    order_id,
                    status.provider_code,
                )
                order = (
                    self.store.record_failed_attempt(
                        order_id, status.payment_ref, status.provider_code
                    )
                    or order
                )
            return ConfirmationOutcome(order, order.get("payment_status", PENDING), applied=False)

        if status.outcome == PAID:
            expected_amount = to_minor_units(order.get("total"))
            confirmed_amount = status.confirmed_amount
            if (
                confirmed_amount is None
                or abs(confirmed_amount - expected_amount) > AMOUNT_EPSILON_MINOR
            ):
                logger.warning(
                    "Amount mismatch for order %s: expected %s, reported %s",
                    order_id,
                    expected_amount,
                    confirmed_amount,
                )
                raise AmountMismatch(
                    "Paid amount does not match the order total.",
                    order_id=order_id,
                    expected=expected_amount,
                    reported=confirmed_amount,
                )

        fields = {"status_reason": "gateway"}
        if status.payment_ref:
            fields["gateway_payment_ref"] = status.payment_ref
        if status.provider_code:
            fields["gateway_code"] = status.provider_code
        return self._apply(order, status.outcome, fields)

    # --- Administrative ---

    def override(self, order_id: str, new_status: str, actor: str) -> ConfirmationOutcome:
        normalized_status = str(new_status or "").strip().lower()
        if normalized_status not in TERMINAL_STATUSES:
            raise ValidationError("Status must be either paid or failed.")
        order = self.store.get(order_id)
        if not order:
            raise OrderNotFound("Order not found", order_id=order_id)
        if order.get("payment_status") in TERMINAL_STATUSES:
            raise OrderAlreadyProcessed("Payment already processed for this order")

        logger.info("Admin %s marking order %s as %s", actor, order_id, normalized_status)
        outcome = self._apply(
            order, normalized_status, {"status_reason": "admin", "overridden_by": actor}
        )
        if not outcome.applied:
            raise OrderAlreadyProcessed("Payment already processed for this order")
        return outcome

    def is_expired(self, order: Dict, now: Optional[datetime] = None) -> bool:
        created_at = order.get("created_at")
        if not isinstance(created_at, datetime):
            return False
        return created_at < (now or self.clock()) - self.validity

    def expire_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Settle pending gateway orders that outlived the validity window.

        Orders with a provider reference are polled once first, so a payment
        that completed without a callback is recorded as paid.
        """
        cutoff = (now or self.clock()) - self.validity
        summary = {"expired": 0, "paid": 0}
        for order in self.store.find_stale_pending(cutoff):
            outcome = self._settle_expired(order)
            if outcome.applied:
                summary["paid" if outcome.status == PAID else "expired"] += 1
        logger.info("Expired %s pending orders, settled %s as paid", summary["expired"], summary["paid"])
        return summary

    def _settle_expired(self, order: Dict) -> ConfirmationOutcome:
        """Poll the provider once for an expired order, then fail it unless paid."""
        transaction_ref = order.get("gateway_order_ref")
        gateway = self.gateways.get(order.get("gateway"))
        if transaction_ref and gateway:
            try:
                status = gateway.check_status(transaction_ref)
                if status.outcome == PAID:
                    return self._reconcile(order, status, gateway)
            except ShopError as exc:
                logger.warning(
                    "Could not settle order %s with %s before expiry: %s",
                    order["order_id"],
                    gateway.name,
                    exc.message,
                )
        return self._apply(order, FAILED, {"status_reason": "expired"})

    def purge_stale(self, now: Optional[datetime] = None) -> int:
        deleted = self.store.purge((now or self.clock()) - self.retention)
        logger.info("Cleaned up %s old pending/failed orders", deleted)
        return deleted

    def retry_pending_emails(self) -> int:
        delivered = 0
        for order in self.store.find_unsent_confirmations():
            if self._send_confirmation(order["order_id"]):
                delivered += 1
        return delivered

    # --- Internals ---

    def gateway_for(self, provider: Optional[str]) -> GatewayClient:
        gateway = self.gateways.get(provider or "")
        if gateway is None:
            raise GatewayError(
                f"Payment gateway {provider or 'unknown'} is not configured.", provider=provider
            )
        return gateway

    def _apply(self, order: Dict, new_status: str, fields: Dict) -> ConfirmationOutcome:
        order_id = order["order_id"]
        updated = self.store.transition(order_id, new_status, fields)
        if updated is None:
            current = self.store.get(order_id) or order
            logger.info(
                "Order %s already settled as %s, skipping %s",
                order_id,
                current.get("payment_status"),
                new_status,
            )
            return ConfirmationOutcome(current, current.get("payment_status"), applied=False)

        logger.info("Order %s marked %s (%s)", order_id, new_status, fields.get("status_reason"))
        self._publish("order.updated", updated)

        email_sent = False
        if new_status == PAID:
            email_sent = self._send_confirmation(order_id)
            updated = self.store.get(order_id) or updated
        return ConfirmationOutcome(updated, new_status, applied=True, email_sent=email_sent)

    def _send_confirmation(self, order_id: str) -> bool:
        if self.mailer is None:
            return False
        claimed = self.store.claim_email(order_id)
        if not claimed:
            return False

        try:
            sent, error = self.mailer.send_order_confirmation(claimed)
        except Exception as exc:
            sent, error = False, str(exc)

        if not sent:
            logger.error("Confirmation email for order %s failed: %s", order_id, error)
            self.store.release_email(order_id, error or "Unknown email error")
            return False
        if claimed.get("email_error"):
            self.store.clear_email_error(order_id)
        return True

    def _publish(self, event_type: str, order: Dict):
        if self.events is None:
            return
        self.events.broadcast(event_type, serialize_order(order, include_customer=False))
