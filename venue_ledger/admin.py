import logging
import secrets
import string
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import update

from . import config
from .admission import AdmissionService, booking_view, guest_view
from .audit import recent_decisions
from .errors import NotFoundError
from .models import (
    Booking,
    BookingStatus,
    LineSkipPass,
    PackageItem,
    PackagePurchase,
    PassStatus,
    PosSession,
    PosSessionStatus,
    Promo,
    PurchaseStatus,
    RedemptionRule,
    VenuePackage,
    utcnow,
)
from .db import SessionLocal
from .redemption import RedemptionLedger
from .security import mint_scan_token
from .store import new_scan_code

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# -------------------------
# Helpers
# -------------------------
def _gen_booking_reference() -> str:
    # NTL-4KQ8ZC
    return "NTL-" + "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))


# -------------------------
# Bookings + guests
# -------------------------
class CreateBookingReq(BaseModel):
    venue_id: str
    booking_date: date
    party_size: int = 1
    guest_name: Optional[str] = None
    resource_name: Optional[str] = None
    booking_reference: Optional[str] = None
    status: BookingStatus = BookingStatus.CONFIRMED
    # Off for walk-in style bookings admitted as a whole.
    with_guests: bool = True


@router.post("/bookings")
def create_booking(req: CreateBookingReq):
    if req.party_size < 1 or req.party_size > 500:
        return {"ok": False, "error": "party_size must be between 1 and 500"}

    db = SessionLocal()
    try:
        booking = Booking(
            venue_id=req.venue_id,
            booking_reference=(req.booking_reference or _gen_booking_reference()).upper(),
            booking_date=req.booking_date,
            party_size=req.party_size,
            status=req.status.value,
            guest_name=req.guest_name,
            resource_name=req.resource_name,
        )
        db.add(booking)
        db.commit()

        out = {"ok": True, **booking_view(booking), "guests": []}
        if req.with_guests:
            primary = AdmissionService(db).ensure_primary_guest(booking)
            out["guests"].append(guest_view(primary))
        return out
    finally:
        db.close()


class AddGuestReq(BaseModel):
    guest_name: Optional[str] = None
    guest_phone: Optional[str] = None
    guest_email: Optional[str] = None
    user_id: Optional[str] = None


@router.post("/venues/{venue_id}/bookings/{booking_id}/guests")
def add_booking_guest(venue_id: str, booking_id: str, req: AddGuestReq):
    db = SessionLocal()
    try:
        guest = AdmissionService(db).add_guest(
            venue_id, booking_id, req.guest_name, req.guest_phone, req.guest_email, req.user_id
        )
        return {"ok": True, **guest_view(guest)}
    finally:
        db.close()


@router.delete("/venues/{venue_id}/guests/{guest_id}")
def remove_booking_guest(venue_id: str, guest_id: str):
    db = SessionLocal()
    try:
        AdmissionService(db).remove_guest(venue_id, guest_id)
        return {"ok": True, "guest_id": guest_id}
    finally:
        db.close()


@router.post("/venues/{venue_id}/pos-sessions/{session_id}/close")
def close_pos_session(venue_id: str, session_id: str):
    db = SessionLocal()
    try:
        # Clearing active_booking_id lets the booking open a fresh session later.
        closed = db.execute(
            update(PosSession)
            .where(
                PosSession.id == session_id,
                PosSession.venue_id == venue_id,
                PosSession.status != PosSessionStatus.CLOSED.value,
            )
            .values(status=PosSessionStatus.CLOSED.value, active_booking_id=None, closed_at=utcnow())
        ).rowcount
        if closed != 1:
            raise NotFoundError(f"open pos session {session_id} not found", entity_id=session_id)
        db.commit()
        return {"ok": True, "pos_session_id": session_id}
    finally:
        db.close()


# -------------------------
# Packages + purchases
# -------------------------
class PackageItemReq(BaseModel):
    item_name: str
    item_type: str = "other"
    quantity: int = 1
    redemption_rule: RedemptionRule = RedemptionRule.MULTIPLE


class CreatePackageReq(BaseModel):
    venue_id: str
    name: str
    price: float = 0
    items: List[PackageItemReq]


@router.post("/packages")
def create_package(req: CreatePackageReq):
    if not req.items:
        return {"ok": False, "error": "a package needs at least one item"}
    if any(i.quantity < 1 for i in req.items):
        return {"ok": False, "error": "item quantity must be at least 1"}

    db = SessionLocal()
    try:
        package = VenuePackage(venue_id=req.venue_id, name=req.name, price=Decimal(str(req.price)))
        db.add(package)
        db.flush()

        items = [
            PackageItem(
                package_id=package.id,
                item_name=i.item_name,
                item_type=i.item_type,
                quantity=i.quantity,
                redemption_rule=i.redemption_rule.value,
                sort_order=n,
            )
            for n, i in enumerate(req.items)
        ]
        db.add_all(items)
        db.commit()

        return {
            "ok": True,
            "package_id": package.id,
            "venue_id": package.venue_id,
            "name": package.name,
            "items": [
                {
                    "package_item_id": i.id,
                    "item_name": i.item_name,
                    "quantity": i.quantity,
                    "redemption_rule": i.redemption_rule,
                }
                for i in items
            ],
        }
    finally:
        db.close()


class CreatePurchaseReq(BaseModel):
    guest_name: Optional[str] = None
    guest_count: int = 1
    total_paid: float = 0
    user_id: Optional[str] = None


@router.post("/packages/{package_id}/purchases")
def create_purchase(package_id: str, req: CreatePurchaseReq):
    if req.guest_count < 1:
        return {"ok": False, "error": "guest_count must be at least 1"}

    db = SessionLocal()
    try:
        package = db.get(VenuePackage, package_id)
        if package is None:
            raise NotFoundError(f"package {package_id} not found", entity_id=package_id)

        purchase = PackagePurchase(
            package_id=package.id,
            venue_id=package.venue_id,
            qr_code=new_scan_code("PKG"),
            user_id=req.user_id,
            guest_name=req.guest_name,
            guest_count=req.guest_count,
            total_paid=Decimal(str(req.total_paid)),
            status=PurchaseStatus.ACTIVE.value,
        )
        db.add(purchase)
        db.commit()

        primary = RedemptionLedger(db).add_package_guest(
            package.venue_id, purchase.id, guest_name=req.guest_name, user_id=req.user_id, is_primary=True
        )
        return {
            "ok": True,
            "purchase_id": purchase.id,
            "venue_id": purchase.venue_id,
            "qr_code": purchase.qr_code,
            "status": purchase.status,
            "primary_guest_id": primary.id,
            "primary_guest_code": primary.qr_code,
        }
    finally:
        db.close()


@router.post("/venues/{venue_id}/purchases/{purchase_id}/guests")
def add_package_guest(venue_id: str, purchase_id: str, req: AddGuestReq):
    db = SessionLocal()
    try:
        guest = RedemptionLedger(db).add_package_guest(
            venue_id, purchase_id, req.guest_name, req.guest_phone, req.guest_email, req.user_id
        )
        return {"ok": True, "guest_id": guest.id, "guest_number": guest.guest_number, "qr_code": guest.qr_code}
    finally:
        db.close()


@router.delete("/venues/{venue_id}/package-guests/{guest_id}")
def remove_package_guest(venue_id: str, guest_id: str):
    db = SessionLocal()
    try:
        RedemptionLedger(db).remove_package_guest(venue_id, guest_id)
        return {"ok": True, "guest_id": guest_id}
    finally:
        db.close()


class PurchaseStatusReq(BaseModel):
    status: PurchaseStatus


@router.post("/purchases/{purchase_id}/status")
def set_purchase_status(purchase_id: str, req: PurchaseStatusReq):
    # Redemption progress is derived from the ledger; only lifecycle ends are set by hand.
    if req.status not in (PurchaseStatus.EXPIRED, PurchaseStatus.CANCELLED):
        return {"ok": False, "error": "only expired or cancelled can be set"}

    db = SessionLocal()
    try:
        purchase = db.get(PackagePurchase, purchase_id)
        if purchase is None:
            raise NotFoundError(f"purchase {purchase_id} not found", entity_id=purchase_id)
        purchase.status = req.status.value
        db.commit()
        logger.info("purchase %s set to %s", purchase_id, purchase.status)
        return {"ok": True, "purchase_id": purchase_id, "status": purchase.status}
    finally:
        db.close()


# -------------------------
# Promos + passes
# -------------------------
class CreatePromoReq(BaseModel):
    promo_code: str
    venue_id: Optional[str] = None
    title: str = ""
    max_redemptions: Optional[int] = None
    ends_at: Optional[datetime] = None
    is_active: bool = True


@router.post("/promos")
def create_promo(req: CreatePromoReq):
    db = SessionLocal()
    try:
        promo = Promo(
            venue_id=req.venue_id,
            promo_code=req.promo_code.strip().lower(),
            title=req.title,
            max_redemptions=req.max_redemptions,
            ends_at=req.ends_at,
            is_active=req.is_active,
        )
        db.add(promo)
        db.commit()
        return {"ok": True, "promo_id": promo.id, "promo_code": promo.promo_code, "venue_id": promo.venue_id}
    finally:
        db.close()


class CreatePassReq(BaseModel):
    venue_id: str
    pass_type: str = "standard"
    user_id: Optional[str] = None


@router.post("/passes")
def create_pass(req: CreatePassReq):
    db = SessionLocal()
    try:
        line_pass = LineSkipPass(
            venue_id=req.venue_id,
            pass_type=req.pass_type,
            user_id=req.user_id,
            status=PassStatus.ACTIVE.value,
        )
        db.add(line_pass)
        db.commit()
        return {"ok": True, "pass_id": line_pass.id, "pass_type": line_pass.pass_type}
    finally:
        db.close()


# -------------------------
# Signed scan tokens (operator UX)
# -------------------------
class ScanTokenReq(BaseModel):
    venue_id: Optional[str] = None
    pass_id: Optional[str] = None
    purchase_id: Optional[str] = None
    promo_code: Optional[str] = None
    booking_ref: Optional[str] = None
    ttl_minutes: int = 1440


@router.post("/scan-tokens")
def create_scan_token(req: ScanTokenReq):
    """
    Mints the signed form of a structured payload, for printing on tickets.
    Exactly one of pass_id / purchase_id / promo_code / booking_ref is expected.
    """
    fields = {
        "passId": req.pass_id,
        "purchaseId": req.purchase_id,
        "promoCode": req.promo_code,
        "bookingRef": req.booking_ref,
    }
    chosen = {k: v for k, v in fields.items() if v}
    if len(chosen) != 1:
        return {"ok": False, "error": "exactly one of pass_id, purchase_id, promo_code, booking_ref is required"}
    if req.venue_id:
        chosen["venueId"] = req.venue_id

    token = mint_scan_token(chosen, config.SCAN_TOKEN_SECRET, ttl_minutes=req.ttl_minutes)
    return {"ok": True, "token": token}


# -------------------------
# Logs
# -------------------------
@router.get("/audit")
def get_audit(limit: int = 80, venue_id: Optional[str] = None):
    db = SessionLocal()
    try:
        return recent_decisions(db, venue_id=venue_id, limit=limit)
    finally:
        db.close()
