"""
Admission state machine for booking guests (and ungrouped bookings).

    pending --check_in--> checked_in        terminal
    pending --no_show---> no_show           reversible for UNDO_WINDOW_SECONDS
    no_show --undo------> pending           only inside the window

Every edge is a conditional UPDATE on the source state, so two terminals
scanning the same guest produce one winner and one AlreadyResolvedError.
"""
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .errors import AlreadyResolvedError, LedgerError, NotFoundError, ValidationError, WrongVenueError
from .models import (
    Booking,
    BookingGuest,
    BookingStatus,
    CheckInStatus,
    utcnow,
)
from .store import LedgerStore, new_scan_code

logger = logging.getLogger(__name__)

ADMISSIBLE_BOOKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


class BulkOutcome(BaseModel):
    entity_kind: str
    entity_id: str
    ok: bool
    reason_code: Optional[str] = None


class BulkResult(BaseModel):
    succeeded: int = 0
    failed: int = 0
    outcomes: List[BulkOutcome] = []

    def add(self, entity_kind: str, entity_id: str, error: Optional[LedgerError] = None) -> None:
        if error is None:
            self.succeeded += 1
            self.outcomes.append(BulkOutcome(entity_kind=entity_kind, entity_id=entity_id, ok=True))
        else:
            self.failed += 1
            self.outcomes.append(
                BulkOutcome(entity_kind=entity_kind, entity_id=entity_id, ok=False, reason_code=error.reason_code)
            )


def guest_view(guest: BookingGuest) -> dict:
    return {
        "guest_id": guest.id,
        "booking_id": guest.booking_id,
        "guest_number": guest.guest_number,
        "qr_code": guest.qr_code,
        "guest_name": guest.guest_name,
        "is_primary": guest.is_primary,
        "check_in_status": guest.check_in_status,
        "checked_in_at": guest.checked_in_at,
        "spend_amount": float(guest.spend_amount) if guest.spend_amount is not None else None,
    }


def booking_view(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "venue_id": booking.venue_id,
        "booking_reference": booking.booking_reference,
        "booking_date": booking.booking_date,
        "party_size": booking.party_size,
        "status": booking.status,
        "check_in_status": booking.check_in_status,
        "checked_in_at": booking.checked_in_at,
        "spend_amount": float(booking.spend_amount) if booking.spend_amount is not None else None,
    }


class AdmissionService:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        undo_window_seconds: Optional[float] = None,
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.clock = clock
        self.undo_window = timedelta(
            seconds=config.UNDO_WINDOW_SECONDS if undo_window_seconds is None else undo_window_seconds
        )

    # -------------------------
    # Loading with venue checks
    # -------------------------
    def _booking(self, venue_id: str, booking_id: str) -> Booking:
        booking = self.store.booking(booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found", entity_id=booking_id)
        if booking.venue_id != venue_id:
            raise WrongVenueError("booking belongs to a different venue", entity_id=booking_id)
        return booking

    def _guest(self, venue_id: str, guest_id: str) -> BookingGuest:
        guest = self.store.booking_guest(guest_id)
        if guest is None:
            raise NotFoundError(f"guest {guest_id} not found", entity_id=guest_id)
        if guest.booking.venue_id != venue_id:
            raise WrongVenueError("guest belongs to a different venue", entity_id=guest_id)
        return guest

    def _already(self, label: str, status: str, ident: str) -> AlreadyResolvedError:
        self.db.rollback()
        if status == CheckInStatus.CHECKED_IN.value:
            return AlreadyResolvedError(f"{label} already checked in", entity_id=ident)
        if status == CheckInStatus.NO_SHOW.value:
            return AlreadyResolvedError(f"{label} already marked no-show", entity_id=ident)
        return AlreadyResolvedError(f"{label} is {status}", entity_id=ident)

    # -------------------------
    # Guest transitions
    # -------------------------
    def check_in(self, venue_id: str, guest_id: str, operator_id: str, spend: Optional[float] = None) -> dict:
        guest = self._guest(venue_id, guest_id)
        booking = guest.booking
        if booking.status not in ADMISSIBLE_BOOKING_STATUSES:
            raise ValidationError(f"booking is {booking.status}", entity_id=booking.id)
        amount = _spend(spend)

        moved = self.store.transition(
            BookingGuest,
            guest.id,
            "check_in_status",
            [CheckInStatus.PENDING.value],
            check_in_status=CheckInStatus.CHECKED_IN.value,
            checked_in_at=self.clock(),
            spend_amount=amount,
        )
        if not moved:
            current = self.store.booking_guest(guest.id)
            raise self._already(f"guest #{guest.guest_number}", current.check_in_status, guest.id)

        self._confirm(booking.id)
        self.db.commit()
        logger.info("guest %s checked in (booking=%s operator=%s)", guest.id, booking.id, operator_id)

        pos_session, opened = self.store.open_pos_session(booking, booking.party_size, guest.guest_name or booking.guest_name)
        return {
            "guest": guest_view(self.store.booking_guest(guest.id)),
            "pos_session_id": pos_session.id,
            "pos_session_opened": opened,
        }

    def mark_no_show(self, venue_id: str, guest_id: str, operator_id: str) -> dict:
        guest = self._guest(venue_id, guest_id)
        now = self.clock()
        moved = self.store.transition(
            BookingGuest,
            guest.id,
            "check_in_status",
            [CheckInStatus.PENDING.value],
            check_in_status=CheckInStatus.NO_SHOW.value,
            no_show_at=now,
        )
        if not moved:
            current = self.store.booking_guest(guest.id)
            raise self._already(f"guest #{guest.guest_number}", current.check_in_status, guest.id)
        self.db.commit()
        logger.info("guest %s marked no-show (operator=%s)", guest.id, operator_id)
        return {
            "guest": guest_view(self.store.booking_guest(guest.id)),
            "undo_until": now + self.undo_window,
        }

    def undo_no_show(self, venue_id: str, guest_id: str, operator_id: str) -> dict:
        guest = self._guest(venue_id, guest_id)
        cutoff = self.clock() - self.undo_window
        moved = self.store.transition(
            BookingGuest,
            guest.id,
            "check_in_status",
            [CheckInStatus.NO_SHOW.value],
            BookingGuest.no_show_at >= cutoff,
            check_in_status=CheckInStatus.PENDING.value,
            no_show_at=None,
        )
        if not moved:
            current = self.store.booking_guest(guest.id)
            if current.check_in_status == CheckInStatus.NO_SHOW.value:
                self.db.rollback()
                raise AlreadyResolvedError("undo window has elapsed", entity_id=guest.id)
            raise self._already(f"guest #{guest.guest_number}", current.check_in_status, guest.id)
        self.db.commit()
        logger.info("guest %s no-show undone (operator=%s)", guest.id, operator_id)
        return {"guest": guest_view(self.store.booking_guest(guest.id))}

    def bulk_mark_no_show(self, venue_id: str, booking_id: str, operator_id: str) -> BulkResult:
        booking = self._booking(venue_id, booking_id)
        result = BulkResult()
        for guest in self.store.booking_guests(booking.id):
            if guest.check_in_status != CheckInStatus.PENDING.value:
                continue
            try:
                self.mark_no_show(venue_id, guest.id, operator_id)
            except LedgerError as e:
                logger.warning("bulk no-show skipped guest %s: %s", guest.id, e.reason_code)
                result.add("booking_guest", guest.id, e)
            else:
                result.add("booking_guest", guest.id)
        return result

    # -------------------------
    # Booking-level transitions (ungrouped bookings)
    # -------------------------
    def _ungrouped(self, venue_id: str, booking_id: str) -> Booking:
        booking = self._booking(venue_id, booking_id)
        if booking.guests:
            raise ValidationError("booking has individual guests; admit them one by one", entity_id=booking.id)
        return booking

    def check_in_booking(self, venue_id: str, booking_id: str, operator_id: str, spend: Optional[float] = None) -> dict:
        booking = self._ungrouped(venue_id, booking_id)
        if booking.status not in ADMISSIBLE_BOOKING_STATUSES:
            raise ValidationError(f"booking is {booking.status}", entity_id=booking.id)
        moved = self.store.transition(
            Booking,
            booking.id,
            "check_in_status",
            [CheckInStatus.PENDING.value],
            check_in_status=CheckInStatus.CHECKED_IN.value,
            checked_in_at=self.clock(),
            spend_amount=_spend(spend),
        )
        if not moved:
            current = self.store.booking(booking.id)
            raise self._already("booking", current.check_in_status, booking.id)
        self._confirm(booking.id)
        self.db.commit()
        logger.info("booking %s checked in (operator=%s)", booking.id, operator_id)

        pos_session, opened = self.store.open_pos_session(booking, booking.party_size, booking.guest_name)
        return {
            "booking": booking_view(self.store.booking(booking.id)),
            "pos_session_id": pos_session.id,
            "pos_session_opened": opened,
        }

    def mark_booking_no_show(self, venue_id: str, booking_id: str, operator_id: str) -> dict:
        booking = self._ungrouped(venue_id, booking_id)
        now = self.clock()
        moved = self.store.transition(
            Booking,
            booking.id,
            "check_in_status",
            [CheckInStatus.PENDING.value],
            check_in_status=CheckInStatus.NO_SHOW.value,
            no_show_at=now,
        )
        if not moved:
            current = self.store.booking(booking.id)
            raise self._already("booking", current.check_in_status, booking.id)
        self.db.commit()
        logger.info("booking %s marked no-show (operator=%s)", booking.id, operator_id)
        return {
            "booking": booking_view(self.store.booking(booking.id)),
            "undo_until": now + self.undo_window,
        }

    def undo_booking_no_show(self, venue_id: str, booking_id: str, operator_id: str) -> dict:
        booking = self._ungrouped(venue_id, booking_id)
        cutoff = self.clock() - self.undo_window
        moved = self.store.transition(
            Booking,
            booking.id,
            "check_in_status",
            [CheckInStatus.NO_SHOW.value],
            Booking.no_show_at >= cutoff,
            check_in_status=CheckInStatus.PENDING.value,
            no_show_at=None,
        )
        if not moved:
            current = self.store.booking(booking.id)
            if current.check_in_status == CheckInStatus.NO_SHOW.value:
                self.db.rollback()
                raise AlreadyResolvedError("undo window has elapsed", entity_id=booking.id)
            raise self._already("booking", current.check_in_status, booking.id)
        self.db.commit()
        logger.info("booking %s no-show undone (operator=%s)", booking.id, operator_id)
        return {"booking": booking_view(self.store.booking(booking.id))}

    def bulk_mark_bookings_no_show(self, venue_id: str, booking_date: date, operator_id: str) -> BulkResult:
        """End-of-night sweep: every booking of the night still awaiting admission."""
        result = BulkResult()
        for booking in self.store.bookings_for_night(venue_id, booking_date, ADMISSIBLE_BOOKING_STATUSES):
            if booking.guests:
                sub = self.bulk_mark_no_show(venue_id, booking.id, operator_id)
                result.succeeded += sub.succeeded
                result.failed += sub.failed
                result.outcomes.extend(sub.outcomes)
                continue
            if booking.check_in_status != CheckInStatus.PENDING.value:
                continue
            try:
                self.mark_booking_no_show(venue_id, booking.id, operator_id)
            except LedgerError as e:
                logger.warning("bulk no-show skipped booking %s: %s", booking.id, e.reason_code)
                result.add("booking", booking.id, e)
            else:
                result.add("booking", booking.id)
        return result

    def _confirm(self, booking_id: str) -> None:
        # Arrival confirms a still-pending booking; a no-op otherwise.
        self.store.transition(
            Booking,
            booking_id,
            "status",
            [BookingStatus.PENDING.value],
            status=BookingStatus.CONFIRMED.value,
        )

    # -------------------------
    # Roster + rollup
    # -------------------------
    def summary(self, venue_id: str, booking_id: str) -> dict:
        booking = self._booking(venue_id, booking_id)
        guests = self.store.booking_guests(booking.id)
        if guests:
            statuses = [g.check_in_status for g in guests]
        else:
            statuses = [booking.check_in_status]
        checked_in = statuses.count(CheckInStatus.CHECKED_IN.value)
        no_show = statuses.count(CheckInStatus.NO_SHOW.value)
        pending = statuses.count(CheckInStatus.PENDING.value)
        return {
            "booking": booking_view(booking),
            "guests": [guest_view(g) for g in guests],
            "total": len(statuses),
            "checked_in": checked_in,
            "no_show": no_show,
            "pending": pending,
            "fully_admitted": pending == 0,
        }

    def ensure_primary_guest(self, booking: Booking) -> BookingGuest:
        for guest in self.store.booking_guests(booking.id):
            if guest.is_primary:
                return guest
        guest = BookingGuest(
            booking_id=booking.id,
            guest_number=1,
            qr_code=new_scan_code("BG"),
            guest_name=booking.guest_name,
            is_primary=True,
        )
        self.db.add(guest)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return next(g for g in self.store.booking_guests(booking.id) if g.is_primary)
        return guest

    def add_guest(
        self,
        venue_id: str,
        booking_id: str,
        guest_name: Optional[str] = None,
        guest_phone: Optional[str] = None,
        guest_email: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> BookingGuest:
        booking = self._booking(venue_id, booking_id)
        self.ensure_primary_guest(booking)
        # Two staff adding at once can race for the same number; the unique key decides.
        for _ in range(3):
            guest = BookingGuest(
                booking_id=booking.id,
                guest_number=self.store.next_guest_number(BookingGuest, "booking_id", booking.id),
                qr_code=new_scan_code("BG"),
                user_id=user_id,
                guest_name=guest_name,
                guest_phone=guest_phone,
                guest_email=guest_email,
                is_primary=False,
            )
            self.db.add(guest)
            try:
                self.db.commit()
                return guest
            except IntegrityError:
                self.db.rollback()
        raise AlreadyResolvedError("could not allocate a guest number, try again", entity_id=booking.id)

    def remove_guest(self, venue_id: str, guest_id: str) -> None:
        guest = self._guest(venue_id, guest_id)
        if guest.is_primary:
            raise ValidationError("the primary guest cannot be removed", entity_id=guest.id)
        removed = self.db.execute(
            delete(BookingGuest)
            .where(
                BookingGuest.id == guest.id,
                BookingGuest.is_primary.is_(False),
                BookingGuest.check_in_status == CheckInStatus.PENDING.value,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if removed != 1:
            current = self.store.booking_guest(guest.id)
            raise self._already(f"guest #{guest.guest_number}", current.check_in_status, guest.id)
        self.db.commit()
        logger.info("guest %s removed from booking %s", guest.id, guest.booking_id)


def _spend(spend: Optional[float]) -> Optional[Decimal]:
    if spend is None:
        return None
    if spend < 0:
        raise ValidationError("spend amount cannot be negative")
    return Decimal(str(spend))
