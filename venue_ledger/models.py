import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    DECLINED = "declined"


class CheckInStatus(str, Enum):
    PENDING = "pending"
    CHECKED_IN = "checked_in"
    NO_SHOW = "no_show"


class PurchaseStatus(str, Enum):
    ACTIVE = "active"
    PARTIALLY_REDEEMED = "partially_redeemed"
    FULLY_REDEEMED = "fully_redeemed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class GuestRedemptionStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_REDEEMED = "partially_redeemed"
    FULLY_REDEEMED = "fully_redeemed"


class RedemptionRule(str, Enum):
    ONCE = "once"
    MULTIPLE = "multiple"
    UNLIMITED = "unlimited"


class PosSessionStatus(str, Enum):
    OPEN = "open"
    BILLING = "billing"
    CLOSED = "closed"


class PassStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class WaitlistStatus(str, Enum):
    WAITING = "waiting"
    NOTIFIED = "notified"
    SEATED = "seated"
    REMOVED = "removed"


# -------------------------
# Bookings
# -------------------------
class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    venue_id: Mapped[str] = mapped_column(String, index=True)
    booking_reference: Mapped[str] = mapped_column(String, unique=True, index=True)
    booking_date: Mapped[date] = mapped_column(Date, index=True)
    party_size: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String, default=BookingStatus.PENDING.value)
    guest_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resource_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Booking-level admission, used when the booking has no guest rows.
    check_in_status: Mapped[str] = mapped_column(String, default=CheckInStatus.PENDING.value)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    no_show_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    spend_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    guests: Mapped[List["BookingGuest"]] = relationship(
        back_populates="booking", order_by="BookingGuest.guest_number"
    )


class BookingGuest(Base):
    __tablename__ = "booking_guests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id"), index=True)
    guest_number: Mapped[int] = mapped_column(Integer)
    qr_code: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    check_in_status: Mapped[str] = mapped_column(String, default=CheckInStatus.PENDING.value, index=True)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    no_show_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    spend_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    booking: Mapped[Booking] = relationship(back_populates="guests")

    __table_args__ = (
        UniqueConstraint("booking_id", "guest_number", name="uniq_booking_guest_number"),
        Index(
            "uniq_booking_primary_guest",
            "booking_id",
            unique=True,
            sqlite_where=text("is_primary = 1"),
            postgresql_where=text("is_primary"),
        ),
    )


class PosSession(Base):
    __tablename__ = "pos_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    venue_id: Mapped[str] = mapped_column(String, index=True)
    booking_id: Mapped[Optional[str]] = mapped_column(ForeignKey("bookings.id"), index=True, nullable=True)
    # Set while open/billing, cleared on close: at most one live session per booking.
    active_booking_id: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    guest_count: Mapped[int] = mapped_column(Integer, default=1)
    guest_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=PosSessionStatus.OPEN.value)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# -------------------------
# Packages
# -------------------------
class VenuePackage(Base):
    __tablename__ = "venue_packages"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    venue_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    items: Mapped[List["PackageItem"]] = relationship(order_by="PackageItem.sort_order")


class PackageItem(Base):
    __tablename__ = "package_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    package_id: Mapped[str] = mapped_column(ForeignKey("venue_packages.id"), index=True)
    item_type: Mapped[str] = mapped_column(String, default="other")
    item_name: Mapped[str] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    redemption_rule: Mapped[str] = mapped_column(String, default=RedemptionRule.MULTIPLE.value)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    @property
    def is_countable(self) -> bool:
        return self.redemption_rule != RedemptionRule.UNLIMITED.value


class PackagePurchase(Base):
    __tablename__ = "package_purchases"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    package_id: Mapped[str] = mapped_column(ForeignKey("venue_packages.id"), index=True)
    venue_id: Mapped[str] = mapped_column(String, index=True)
    qr_code: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_count: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String, default=PurchaseStatus.ACTIVE.value)
    total_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_redeemed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    package: Mapped[VenuePackage] = relationship()

    __mapper_args__ = {"version_id_col": version}


class PackageGuest(Base):
    __tablename__ = "package_guests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    purchase_id: Mapped[str] = mapped_column(ForeignKey("package_purchases.id"), index=True)
    guest_number: Mapped[int] = mapped_column(Integer)
    qr_code: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    redemption_status: Mapped[str] = mapped_column(String, default=GuestRedemptionStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    purchase: Mapped[PackagePurchase] = relationship()

    __table_args__ = (
        UniqueConstraint("purchase_id", "guest_number", name="uniq_package_guest_number"),
        Index(
            "uniq_package_primary_guest",
            "purchase_id",
            unique=True,
            sqlite_where=text("is_primary = 1"),
            postgresql_where=text("is_primary"),
        ),
    )


class PackageRedemption(Base):
    __tablename__ = "package_redemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    purchase_id: Mapped[str] = mapped_column(ForeignKey("package_purchases.id"), index=True)
    package_item_id: Mapped[str] = mapped_column(ForeignKey("package_items.id"), index=True)
    package_guest_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("package_guests.id"), index=True, nullable=True
    )
    quantity_redeemed: Mapped[int] = mapped_column(Integer)
    redeemed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# -------------------------
# Promos + line-skip passes
# -------------------------
class Promo(Base):
    __tablename__ = "promos"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    # NULL venue means the promo is honoured everywhere.
    venue_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    promo_code: Mapped[str] = mapped_column(String, unique=True, index=True)
    title: Mapped[str] = mapped_column(String, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_redemptions: Mapped[int] = mapped_column(Integer, default=0)
    max_redemptions: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class PromoRedemption(Base):
    __tablename__ = "promo_redemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    promo_id: Mapped[str] = mapped_column(ForeignKey("promos.id"), index=True)
    venue_id: Mapped[str] = mapped_column(String, index=True)
    redeemed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    revenue_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class LineSkipPass(Base):
    __tablename__ = "line_skip_passes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    venue_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    pass_type: Mapped[str] = mapped_column(String, default="standard")
    status: Mapped[str] = mapped_column(String, default=PassStatus.ACTIVE.value)
    free_item_claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# -------------------------
# Waitlist
# -------------------------
class WaitlistEntry(Base):
    __tablename__ = "waitlist"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    venue_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    guest_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    party_size: Mapped[int] = mapped_column(Integer, default=1)
    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default=WaitlistStatus.WAITING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    seated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_waitlist_venue_status", "venue_id", "status"),)


# -------------------------
# Audit
# -------------------------
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[str] = mapped_column(String, index=True)
    venue_id: Mapped[str] = mapped_column(String, index=True)
    operator_id: Mapped[str] = mapped_column(String, index=True)
    action: Mapped[str] = mapped_column(String)
    entity_kind: Mapped[str] = mapped_column(String)
    entity_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
