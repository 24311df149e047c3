"""
Data access for the ledger.

Every state transition goes through `transition()`, a conditional UPDATE that
only matches rows still in the expected source state. Callers read the
rowcount to learn whether they won; nothing here does read-then-write.
"""
import logging
import secrets
import string
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    Booking,
    BookingGuest,
    LineSkipPass,
    PackageGuest,
    PackageItem,
    PackagePurchase,
    PackageRedemption,
    PosSession,
    PosSessionStatus,
    Promo,
    WaitlistEntry,
    WaitlistStatus,
)

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def new_scan_code(prefix: str, length: int = 8) -> str:
    # BG-7K2Q9XAA
    return f"{prefix}-" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


class LedgerStore:
    def __init__(self, db: Session):
        self.db = db

    # -------------------------
    # Lookups
    # -------------------------
    def booking(self, booking_id: str) -> Optional[Booking]:
        return self.db.get(Booking, booking_id, populate_existing=True)

    def booking_by_reference(self, reference: str) -> Optional[Booking]:
        return self.db.execute(
            select(Booking).where(func.upper(Booking.booking_reference) == reference.strip().upper())
        ).scalar_one_or_none()

    def booking_guest(self, guest_id: str) -> Optional[BookingGuest]:
        return self.db.get(BookingGuest, guest_id, populate_existing=True)

    def booking_guest_by_code(self, code: str) -> Optional[BookingGuest]:
        return self.db.execute(
            select(BookingGuest).where(BookingGuest.qr_code == code)
        ).scalar_one_or_none()

    def booking_guests(self, booking_id: str) -> List[BookingGuest]:
        return list(
            self.db.execute(
                select(BookingGuest)
                .where(BookingGuest.booking_id == booking_id)
                .order_by(BookingGuest.guest_number)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def bookings_for_night(self, venue_id: str, booking_date: date, statuses: Iterable[str]) -> List[Booking]:
        return list(
            self.db.execute(
                select(Booking)
                .where(
                    Booking.venue_id == venue_id,
                    Booking.booking_date == booking_date,
                    Booking.status.in_(list(statuses)),
                )
                .order_by(Booking.created_at)
            ).scalars()
        )

    def purchase(self, purchase_id: str) -> Optional[PackagePurchase]:
        return self.db.get(PackagePurchase, purchase_id, populate_existing=True)

    def purchase_by_code(self, code: str) -> Optional[PackagePurchase]:
        return self.db.execute(
            select(PackagePurchase).where(func.upper(PackagePurchase.qr_code) == code.strip().upper())
        ).scalar_one_or_none()

    def lock_purchase(self, purchase_id: str) -> Optional[PackagePurchase]:
        # Row lock on engines that support it; the version column covers the rest.
        return self.db.execute(
            select(PackagePurchase)
            .where(PackagePurchase.id == purchase_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def package_guest(self, guest_id: str) -> Optional[PackageGuest]:
        return self.db.get(PackageGuest, guest_id, populate_existing=True)

    def package_guest_by_code(self, code: str) -> Optional[PackageGuest]:
        return self.db.execute(
            select(PackageGuest).where(PackageGuest.qr_code == code)
        ).scalar_one_or_none()

    def package_guests(self, purchase_id: str) -> List[PackageGuest]:
        return list(
            self.db.execute(
                select(PackageGuest)
                .where(PackageGuest.purchase_id == purchase_id)
                .order_by(PackageGuest.guest_number)
            ).scalars()
        )

    def package_items(self, package_id: str) -> List[PackageItem]:
        return list(
            self.db.execute(
                select(PackageItem)
                .where(PackageItem.package_id == package_id)
                .order_by(PackageItem.sort_order, PackageItem.item_name)
            ).scalars()
        )

    def redeemed_counts(self, purchase_id: str, guest_id: Optional[str] = None) -> Dict[str, int]:
        q = (
            select(PackageRedemption.package_item_id, func.sum(PackageRedemption.quantity_redeemed))
            .where(PackageRedemption.purchase_id == purchase_id)
            .group_by(PackageRedemption.package_item_id)
        )
        if guest_id is not None:
            q = q.where(PackageRedemption.package_guest_id == guest_id)
        return {item_id: int(total or 0) for (item_id, total) in self.db.execute(q).all()}

    def redemptions(self, purchase_id: str) -> List[PackageRedemption]:
        return list(
            self.db.execute(
                select(PackageRedemption)
                .where(PackageRedemption.purchase_id == purchase_id)
                .order_by(PackageRedemption.redeemed_at, PackageRedemption.id)
            ).scalars()
        )

    def promo_by_code(self, code: str) -> Optional[Promo]:
        return self.db.execute(
            select(Promo).where(func.lower(Promo.promo_code) == code.strip().lower())
        ).scalar_one_or_none()

    def line_skip_pass(self, pass_id: str) -> Optional[LineSkipPass]:
        return self.db.get(LineSkipPass, pass_id.strip().lower(), populate_existing=True)

    def waitlist_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        return self.db.get(WaitlistEntry, entry_id, populate_existing=True)

    def waitlist_active(self, venue_id: str) -> List[WaitlistEntry]:
        return list(
            self.db.execute(
                select(WaitlistEntry)
                .where(
                    WaitlistEntry.venue_id == venue_id,
                    WaitlistEntry.status.in_([WaitlistStatus.WAITING.value, WaitlistStatus.NOTIFIED.value]),
                )
                .order_by(WaitlistEntry.created_at, WaitlistEntry.id)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def waiting_ahead(self, venue_id: str, created_at: datetime) -> int:
        return self.db.execute(
            select(func.count(WaitlistEntry.id)).where(
                WaitlistEntry.venue_id == venue_id,
                WaitlistEntry.status == WaitlistStatus.WAITING.value,
                WaitlistEntry.created_at < created_at,
            )
        ).scalar_one()

    def recently_seated(self, venue_id: str, limit: int, order_by) -> List[WaitlistEntry]:
        return list(
            self.db.execute(
                select(WaitlistEntry)
                .where(
                    WaitlistEntry.venue_id == venue_id,
                    WaitlistEntry.status == WaitlistStatus.SEATED.value,
                    order_by.is_not(None),
                )
                .order_by(order_by.desc())
                .limit(limit)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    # -------------------------
    # Conditional writes
    # -------------------------
    def transition(self, model, ident: str, column: str, expected: Iterable[str], *extra_where, **values) -> bool:
        """UPDATE model SET values WHERE id = ident AND column IN expected. True if the row moved."""
        col = getattr(model, column)
        result = self.db.execute(
            update(model)
            .where(model.id == ident, col.in_(list(expected)), *extra_where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def open_pos_session(self, booking: Booking, guest_count: int, guest_name: Optional[str]) -> Tuple[PosSession, bool]:
        """
        Create-if-absent on the unique active_booking_id. A concurrent opener
        hits IntegrityError and adopts the winner's session. Commits.
        """
        session = PosSession(
            venue_id=booking.venue_id,
            booking_id=booking.id,
            active_booking_id=booking.id,
            guest_count=guest_count,
            guest_name=guest_name,
            status=PosSessionStatus.OPEN.value,
        )
        self.db.add(session)
        try:
            self.db.commit()
            logger.info("opened pos session %s for booking %s", session.id, booking.id)
            return session, True
        except IntegrityError:
            self.db.rollback()
            existing = self.db.execute(
                select(PosSession).where(PosSession.active_booking_id == booking.id)
            ).scalar_one()
            return existing, False

    def next_guest_number(self, model, parent_column: str, parent_id: str) -> int:
        current = self.db.execute(
            select(func.max(model.guest_number)).where(getattr(model, parent_column) == parent_id)
        ).scalar_one()
        return (current or 0) + 1
