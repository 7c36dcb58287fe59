from typing import Any, Dict, Optional


class ShopError(Exception):
    """Base error rendered as ``{"error": ..., "code": ...}`` by the app."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ShopError):
    status_code = 400
    code = "validation_error"


class NotFound(ShopError):
    status_code = 404
    code = "not_found"


class OrderNotFound(NotFound):
    code = "order_not_found"


class Conflict(ShopError):
    status_code = 409
    code = "conflict"


class DuplicateOrder(Conflict):
    code = "duplicate_order"


class OrderAlreadyProcessed(Conflict):
    code = "order_already_processed"


class OrderExpired(ShopError):
    status_code = 400
    code = "order_expired"


class InvalidSignature(ShopError):
    status_code = 400
    code = "invalid_signature"


class MalformedReport(ShopError):
    status_code = 400
    code = "malformed_report"


class AmountMismatch(ShopError):
    status_code = 400
    code = "amount_mismatch"


class ReferenceMismatch(ShopError):
    status_code = 400
    code = "reference_mismatch"


class GatewayError(ShopError):
    status_code = 502
    code = "gateway_error"

    def __init__(self, message: str, provider: Optional[str] = None, **details: Any):
        super().__init__(message, **details)
        self.provider = provider


class GatewayUnavailable(GatewayError):
    """Network failure or 5xx from a provider. Safe to retry for status checks."""

    code = "gateway_unavailable"
