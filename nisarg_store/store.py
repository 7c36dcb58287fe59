import logging
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import DuplicateOrder
from .orders import FAILED, PAID, PENDING, utcnow

logger = logging.getLogger(__name__)


class IdempotentReplay(Exception):
    """Raised when an insert reuses a client idempotency key."""

    def __init__(self, order_document: Dict):
        super().__init__(order_document.get("order_id"))
        self.order_document = order_document


class OrderStore:
    """Order persistence on a Mongo collection.

    Every status change goes through a filter on ``payment_status`` so two
    writers racing on the same order cannot both win.
    """

    def __init__(self, collection):
        self.collection = collection

    def ensure_indexes(self):
        try:
            self.collection.create_index("order_id", unique=True)
            self.collection.create_index("gateway_order_ref", unique=True, sparse=True)
            self.collection.create_index("idempotency_key", unique=True, sparse=True)
            self.collection.create_index([("created_at", DESCENDING)])
            self.collection.create_index(
                [("payment_status", ASCENDING), ("created_at", ASCENDING)]
            )
        except Exception as exc:
            logger.warning("Unable to ensure indexes for orders: %s", exc)

    def insert(self, order_document: Dict) -> Dict:
        document = dict(order_document)
        now = utcnow()
        document.setdefault("created_at", now)
        document.setdefault("updated_at", now)
        try:
            result = self.collection.insert_one(document)
        except DuplicateKeyError as exc:
            idempotency_key = document.get("idempotency_key")
            if idempotency_key:
                existing = self.collection.find_one({"idempotency_key": idempotency_key})
                if existing:
                    raise IdempotentReplay(existing) from exc
            raise DuplicateOrder(
                "Duplicate order ID or transaction ID",
                order_id=document.get("order_id"),
            ) from exc
        document["_id"] = result.inserted_id
        return document

    def get(self, order_id: str) -> Optional[Dict]:
        return self.collection.find_one({"order_id": order_id})

    def get_by_gateway_ref(self, gateway_order_ref: str) -> Optional[Dict]:
        return self.collection.find_one({"gateway_order_ref": gateway_order_ref})

    def attach_gateway_ref(
        self, order_id: str, gateway_order_ref: str, action_url: Optional[str] = None
    ) -> Optional[Dict]:
        """Record the provider reference once, only while the order is pending."""
        fields = {
            "gateway_order_ref": gateway_order_ref,
            "updated_at": utcnow(),
        }
        if action_url:
            fields["action_url"] = action_url
        return self.collection.find_one_and_update(
            {
                "order_id": order_id,
                "payment_status": PENDING,
                "gateway_order_ref": {"$exists": False},
            },
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    def transition(
        self, order_id: str, new_status: str, fields: Optional[Dict] = None
    ) -> Optional[Dict]:
        """Move a pending order to ``paid`` or ``failed``.

        Returns the updated document, or ``None`` when the order was no longer
        pending (another writer got there first).
        """
        if new_status not in (PAID, FAILED):
            raise ValueError(f"Cannot transition an order to {new_status}")

        now = utcnow()
        update_fields = dict(fields or {})
        update_fields.update(
            {
                "payment_status": new_status,
                "updated_at": now,
                f"{new_status}_at": now,
            }
        )
        return self.collection.find_one_and_update(
            {"order_id": order_id, "payment_status": PENDING},
            {"$set": update_fields},
            return_document=ReturnDocument.AFTER,
        )

    def record_failed_attempt(
        self, order_id: str, payment_ref: Optional[str], code: Optional[str]
    ) -> Optional[Dict]:
        """Note a declined payment attempt on a still-pending order."""
        return self.collection.find_one_and_update(
            {"order_id": order_id, "payment_status": PENDING},
            {
                "$set": {
                    "last_failed_payment_ref": payment_ref,
                    "last_failed_code": code,
                    "last_failed_at": utcnow(),
                    "updated_at": utcnow(),
                },
                "$inc": {"failed_attempts": 1},
            },
            return_document=ReturnDocument.AFTER,
        )

    def claim_email(self, order_id: str) -> Optional[Dict]:
        return self.collection.find_one_and_update(
            {"order_id": order_id, "payment_status": PAID, "email_sent": {"$ne": True}},
            {"$set": {"email_sent": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def release_email(self, order_id: str, error: str):
        self.collection.update_one(
            {"order_id": order_id},
            {"$set": {"email_sent": False, "email_error": error}},
        )

    def clear_email_error(self, order_id: str):
        self.collection.update_one({"order_id": order_id}, {"$unset": {"email_error": ""}})

    def find_unsent_confirmations(self, limit: int = 100) -> List[Dict]:
        cursor = (
            self.collection.find({"payment_status": PAID, "email_sent": {"$ne": True}})
            .sort("created_at", ASCENDING)
            .limit(limit)
        )
        return list(cursor)

    def find_stale_pending(self, created_before: datetime) -> List[Dict]:
        return list(
            self.collection.find(
                {"payment_status": PENDING, "created_at": {"$lt": created_before}}
            )
        )

    def purge(self, created_before: datetime) -> int:
        result = self.collection.delete_many(
            {
                "payment_status": {"$in": [PENDING, FAILED]},
                "created_at": {"$lt": created_before},
            }
        )
        return result.deleted_count

    def list_orders(
        self, day: Optional[datetime] = None, order_id_fragment: Optional[str] = None
    ) -> List[Dict]:
        query: Dict[str, object] = {}
        if day is not None:
            start_of_day = datetime(day.year, day.month, day.day)
            query["created_at"] = {
                "$gte": start_of_day,
                "$lt": start_of_day + timedelta(days=1),
            }
        if order_id_fragment:
            query["order_id"] = {"$regex": re.escape(order_id_fragment), "$options": "i"}
        cursor = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return list(cursor)
