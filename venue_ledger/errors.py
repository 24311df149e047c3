from typing import Optional


class LedgerError(Exception):
    """Base for every typed rejection the ledger returns to its caller."""

    reason_code = "ERROR"
    http_status = 400

    def __init__(self, detail: str = "", entity_id: Optional[str] = None):
        super().__init__(detail or self.reason_code)
        self.detail = detail or self.reason_code
        self.entity_id = entity_id

    def to_response(self, decision_id: str) -> dict:
        return {
            "status": "REJECTED",
            "reason_code": self.reason_code,
            "detail": self.detail,
            "entity_id": self.entity_id,
            "decision_id": decision_id,
        }


class NotFoundError(LedgerError):
    reason_code = "NOT_FOUND"
    http_status = 404


class WrongVenueError(LedgerError):
    reason_code = "WRONG_VENUE"
    http_status = 403


class AlreadyResolvedError(LedgerError):
    reason_code = "ALREADY_RESOLVED"
    http_status = 409


class InsufficientAllotmentError(LedgerError):
    reason_code = "INSUFFICIENT_ALLOTMENT"
    http_status = 409

    def __init__(self, item_id: str, item_name: str, requested: int, remaining: int):
        super().__init__(
            f"{item_name}: requested {requested}, only {remaining} remaining",
            entity_id=item_id,
        )
        self.item_name = item_name
        self.requested = requested
        self.remaining = remaining


class PurchaseNotActiveError(LedgerError):
    reason_code = "PURCHASE_NOT_ACTIVE"
    http_status = 409


class ItemNotFoundError(LedgerError):
    reason_code = "ITEM_NOT_FOUND"
    http_status = 404


class ValidationError(LedgerError):
    reason_code = "VALIDATION_ERROR"
    http_status = 422


class PromoUnavailableError(LedgerError):
    reason_code = "PROMO_UNAVAILABLE"
    http_status = 409


class ConcurrentUpdateError(LedgerError):
    reason_code = "CONCURRENT_UPDATE"
    http_status = 409
