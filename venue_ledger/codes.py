"""
Scan-code resolution.

A staff terminal hands us whatever the scanner or keyboard produced. We turn
it into a typed reference, trying in order:

    1. BG-XXXXXXXX           individual booking guest
    2. PG-XXXXXXXX           individual package guest
    3. structured payload    JSON object or signed scan token carrying one of
                             passId / purchaseId / promoCode / bookingRef
    4. literal               booking reference, purchase code, promo code, pass id

Prefix checks run first so that short alphanumeric booking references can
never be mistaken for a guest code (or the other way round).
"""
import json
import re
from enum import Enum
from typing import Callable, List, Optional, Tuple, Type

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import NotFoundError, ValidationError, WrongVenueError
from .security import looks_like_scan_token, verify_scan_token
from .store import LedgerStore

BOOKING_GUEST_CODE = re.compile(r"^BG-[A-Za-z0-9]{8}$")
PACKAGE_GUEST_CODE = re.compile(r"^PG-[A-Za-z0-9]{8}$")
SIGNED_TOKEN = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")


class EntityKind(str, Enum):
    BOOKING_GUEST = "booking_guest"
    BOOKING = "booking"
    PACKAGE_GUEST = "package_guest"
    PACKAGE_PURCHASE = "package_purchase"
    PROMO = "promo"
    LINE_SKIP_PASS = "line_skip_pass"


class EntityRef(BaseModel):
    kind: EntityKind
    id: str
    venue_id: Optional[str]
    code: Optional[str] = None
    # Owning booking / purchase for guest kinds.
    parent_id: Optional[str] = None
    status: Optional[str] = None


# -------------------------
# Structured payload shapes, matched strictly in this order
# -------------------------
class _Shape(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    venueId: Optional[str] = None


class PassPayload(_Shape):
    passId: str = Field(min_length=1)


class PurchasePayload(_Shape):
    purchaseId: str = Field(min_length=1)


class PromoPayload(_Shape):
    promoCode: str = Field(min_length=1)


class BookingPayload(_Shape):
    bookingRef: str = Field(min_length=1)


PAYLOAD_SHAPES: List[Tuple[Type[_Shape], str, EntityKind]] = [
    (PassPayload, "passId", EntityKind.LINE_SKIP_PASS),
    (PurchasePayload, "purchaseId", EntityKind.PACKAGE_PURCHASE),
    (PromoPayload, "promoCode", EntityKind.PROMO),
    (BookingPayload, "bookingRef", EntityKind.BOOKING),
]


def match_payload(obj: dict) -> Tuple[EntityKind, str, Optional[str]]:
    """Returns (kind, identifier, embedded venue id) for the first shape the object satisfies."""
    for shape, field, kind in PAYLOAD_SHAPES:
        try:
            parsed = shape.model_validate(obj)
        except pydantic.ValidationError:
            continue
        return kind, getattr(parsed, field), parsed.venueId
    raise ValidationError("scan payload matches no known code format")


def _check_venue(entity_venue_id: Optional[str], venue_id: str, allow_global: bool = False) -> None:
    if entity_venue_id is None and allow_global:
        return
    if entity_venue_id != venue_id:
        raise WrongVenueError("this code belongs to a different venue")


class CodeResolver:
    def __init__(self, store: LedgerStore, token_secret: str):
        self.store = store
        self.token_secret = token_secret

    def resolve(self, code: str, venue_id: str) -> EntityRef:
        raw = (code or "").strip()
        if not raw:
            raise ValidationError("empty code")

        if BOOKING_GUEST_CODE.match(raw):
            return self._booking_guest(raw.upper(), venue_id)

        if PACKAGE_GUEST_CODE.match(raw):
            return self._package_guest(raw.upper(), venue_id)

        payload = self._structured(raw)
        if payload is not None:
            kind, ident, embedded_venue = match_payload(payload)
            if embedded_venue is not None and embedded_venue != venue_id:
                raise WrongVenueError("this code is for a different venue")
            ref = self._by_kind(kind, ident, venue_id)
            if ref is None:
                raise NotFoundError(f"no {kind.value} matches {ident}")
            return ref

        for lookup in self._literal_lookups():
            ref = lookup(raw, venue_id)
            if ref is not None:
                return ref

        raise NotFoundError("no booking, pass, package or promo found with this code")

    def _structured(self, raw: str) -> Optional[dict]:
        if raw.startswith("{"):
            try:
                obj = json.loads(raw)
            except json.JSONDecodeError:
                return None
            if not isinstance(obj, dict):
                raise ValidationError("scan payload must be an object")
            return obj

        if SIGNED_TOKEN.match(raw) and looks_like_scan_token(raw):
            try:
                return verify_scan_token(raw, self.token_secret)
            except ValueError as e:
                raise ValidationError(f"scan token rejected: {e}") from e

        return None

    def _by_kind(self, kind: EntityKind, ident: str, venue_id: str) -> Optional[EntityRef]:
        if kind is EntityKind.LINE_SKIP_PASS:
            return self._pass(ident, venue_id)
        if kind is EntityKind.PACKAGE_PURCHASE:
            return self._purchase(ident, venue_id, by_id=True)
        if kind is EntityKind.PROMO:
            return self._promo(ident, venue_id)
        return self._booking(ident, venue_id, by_id=True)

    def _literal_lookups(self) -> List[Callable[[str, str], Optional[EntityRef]]]:
        return [self._booking, self._purchase, self._promo, self._pass]

    # -------------------------
    # Per-kind lookups. None means "not this kind"; venue mismatch raises.
    # -------------------------
    def _booking_guest(self, code: str, venue_id: str) -> EntityRef:
        guest = self.store.booking_guest_by_code(code)
        if guest is None:
            raise NotFoundError(f"no booking guest with code {code}")
        _check_venue(guest.booking.venue_id, venue_id)
        return EntityRef(
            kind=EntityKind.BOOKING_GUEST,
            id=guest.id,
            venue_id=guest.booking.venue_id,
            code=guest.qr_code,
            parent_id=guest.booking_id,
            status=guest.check_in_status,
        )

    def _package_guest(self, code: str, venue_id: str) -> EntityRef:
        guest = self.store.package_guest_by_code(code)
        if guest is None:
            raise NotFoundError(f"no package guest with code {code}")
        _check_venue(guest.purchase.venue_id, venue_id)
        return EntityRef(
            kind=EntityKind.PACKAGE_GUEST,
            id=guest.id,
            venue_id=guest.purchase.venue_id,
            code=guest.qr_code,
            parent_id=guest.purchase_id,
            status=guest.redemption_status,
        )

    def _booking(self, ident: str, venue_id: str, by_id: bool = False) -> Optional[EntityRef]:
        booking = self.store.booking_by_reference(ident)
        if booking is None and by_id:
            booking = self.store.booking(ident)
        if booking is None:
            return None
        _check_venue(booking.venue_id, venue_id)
        return EntityRef(
            kind=EntityKind.BOOKING,
            id=booking.id,
            venue_id=booking.venue_id,
            code=booking.booking_reference,
            status=booking.status,
        )

    def _purchase(self, ident: str, venue_id: str, by_id: bool = False) -> Optional[EntityRef]:
        purchase = self.store.purchase(ident) if by_id else None
        if purchase is None:
            purchase = self.store.purchase_by_code(ident)
        if purchase is None:
            return None
        _check_venue(purchase.venue_id, venue_id)
        return EntityRef(
            kind=EntityKind.PACKAGE_PURCHASE,
            id=purchase.id,
            venue_id=purchase.venue_id,
            code=purchase.qr_code,
            status=purchase.status,
        )

    def _promo(self, ident: str, venue_id: str) -> Optional[EntityRef]:
        promo = self.store.promo_by_code(ident)
        if promo is None:
            return None
        _check_venue(promo.venue_id, venue_id, allow_global=True)
        return EntityRef(
            kind=EntityKind.PROMO,
            id=promo.id,
            venue_id=promo.venue_id,
            code=promo.promo_code,
            status="active" if promo.is_active else "inactive",
        )

    def _pass(self, ident: str, venue_id: str) -> Optional[EntityRef]:
        line_pass = self.store.line_skip_pass(ident)
        if line_pass is None:
            return None
        _check_venue(line_pass.venue_id, venue_id)
        return EntityRef(
            kind=EntityKind.LINE_SKIP_PASS,
            id=line_pass.id,
            venue_id=line_pass.venue_id,
            status=line_pass.status,
        )
