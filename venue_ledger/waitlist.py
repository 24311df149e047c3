"""
Venue waitlist and wait-time estimation.

    waiting --notify--> notified --seat--> seated
    waiting --seat----> seated
    waiting|notified --remove--> removed

Position is never stored: it is 1 + the number of `waiting` entries at the
venue created strictly earlier, computed on every read.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from sqlalchemy.orm import Session

from . import config
from .errors import AlreadyResolvedError, NotFoundError, ValidationError, WrongVenueError
from .models import WaitlistEntry, WaitlistStatus, utcnow
from .store import LedgerStore

logger = logging.getLogger(__name__)

OPEN_STATUSES = (WaitlistStatus.WAITING.value, WaitlistStatus.NOTIFIED.value)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def estimate_wait_minutes(position: int, avg_turnover_minutes: float) -> int:
    return round_half_up(position * avg_turnover_minutes)


def format_wait(minutes: Optional[int]) -> str:
    if minutes is None:
        return "calculating..."
    if minutes < 5:
        return "less than 5 min"
    if minutes < 60:
        return f"~{minutes} min"
    hours, mins = divmod(minutes, 60)
    if mins == 0:
        return f"~{hours} hr"
    return f"~{hours} hr {mins} min"


# -------------------------
# Turnover strategies
# -------------------------
class TurnoverPolicy(Protocol):
    def average_minutes(self, store: LedgerStore, venue_id: str) -> Optional[float]:
        """Average minutes per queue slot, or None without history."""


class NotifyLatencyTurnover:
    """Mean of (notified_at - created_at) over recently seated parties. A proxy, not true table turn."""

    def __init__(self, sample_size: Optional[int] = None):
        self.sample_size = sample_size or config.TURNOVER_SAMPLE_SIZE

    def average_minutes(self, store: LedgerStore, venue_id: str) -> Optional[float]:
        rows = store.recently_seated(venue_id, self.sample_size, WaitlistEntry.notified_at)
        if not rows:
            return None
        waits = [(r.notified_at - r.created_at).total_seconds() / 60 for r in rows]
        return sum(waits) / len(waits)


class SeatIntervalTurnover:
    """Mean gap between consecutive seatings: how often a table actually frees up."""

    def __init__(self, sample_size: Optional[int] = None):
        self.sample_size = sample_size or config.TURNOVER_SAMPLE_SIZE

    def average_minutes(self, store: LedgerStore, venue_id: str) -> Optional[float]:
        rows = store.recently_seated(venue_id, self.sample_size + 1, WaitlistEntry.seated_at)
        if len(rows) < 2:
            return None
        gaps = [(a.seated_at - b.seated_at).total_seconds() / 60 for a, b in zip(rows, rows[1:])]
        return sum(gaps) / len(gaps)


class WaitEstimator:
    def __init__(self, policy: Optional[TurnoverPolicy] = None, default_minutes: Optional[float] = None):
        self.policy = policy or NotifyLatencyTurnover()
        self.default_minutes = config.DEFAULT_TURNOVER_MINUTES if default_minutes is None else default_minutes

    def avg_turnover_minutes(self, store: LedgerStore, venue_id: str) -> int:
        avg = self.policy.average_minutes(store, venue_id)
        if avg is None:
            avg = self.default_minutes
        return round_half_up(avg)

    def estimate(self, store: LedgerStore, venue_id: str, position: int) -> int:
        return estimate_wait_minutes(position, self.avg_turnover_minutes(store, venue_id))


def entry_view(entry: WaitlistEntry, position: Optional[int] = None, estimate: Optional[int] = None) -> dict:
    return {
        "entry_id": entry.id,
        "venue_id": entry.venue_id,
        "user_id": entry.user_id,
        "guest_name": entry.guest_name,
        "party_size": entry.party_size,
        "phone": entry.phone,
        "notes": entry.notes,
        "status": entry.status,
        "created_at": entry.created_at,
        "notified_at": entry.notified_at,
        "expires_at": entry.expires_at,
        "seated_at": entry.seated_at,
        "position": position,
        "estimated_wait_minutes": estimate,
        "estimated_wait": format_wait(estimate) if estimate is not None else None,
    }


class WaitlistQueue:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        estimator: Optional[WaitEstimator] = None,
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.clock = clock
        self.estimator = estimator or WaitEstimator()

    def _entry(self, venue_id: str, entry_id: str) -> WaitlistEntry:
        entry = self.store.waitlist_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"waitlist entry {entry_id} not found", entity_id=entry_id)
        if entry.venue_id != venue_id:
            raise WrongVenueError("waitlist entry belongs to a different venue", entity_id=entry_id)
        return entry

    def position(self, entry: WaitlistEntry) -> Optional[int]:
        if entry.status != WaitlistStatus.WAITING.value:
            return None
        return self.store.waiting_ahead(entry.venue_id, entry.created_at) + 1

    def view(self, entry: WaitlistEntry) -> dict:
        position = self.position(entry)
        estimate = self.estimator.estimate(self.store, entry.venue_id, position) if position else None
        return entry_view(entry, position, estimate)

    def join(
        self,
        venue_id: str,
        party_size: int,
        user_id: Optional[str] = None,
        guest_name: Optional[str] = None,
        phone: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> dict:
        if party_size < 1:
            raise ValidationError("party size must be at least 1")
        entry = WaitlistEntry(
            venue_id=venue_id,
            user_id=user_id,
            guest_name=guest_name,
            party_size=party_size,
            phone=phone,
            notes=notes,
            status=WaitlistStatus.WAITING.value,
            created_at=self.clock(),
        )
        self.db.add(entry)
        self.db.commit()
        logger.info("waitlist join %s at venue %s (party=%d)", entry.id, venue_id, party_size)
        return self.view(entry)

    def list_open(self, venue_id: str) -> List[dict]:
        entries = self.store.waitlist_active(venue_id)
        avg = self.estimator.avg_turnover_minutes(self.store, venue_id)
        waiting_times = sorted(e.created_at for e in entries if e.status == WaitlistStatus.WAITING.value)
        out = []
        for entry in entries:
            position = None
            estimate = None
            if entry.status == WaitlistStatus.WAITING.value:
                position = 1 + sum(1 for t in waiting_times if t < entry.created_at)
                estimate = estimate_wait_minutes(position, avg)
            out.append(entry_view(entry, position, estimate))
        return out

    def _move(self, venue_id: str, entry_id: str, sources, action: str, **values) -> WaitlistEntry:
        entry = self._entry(venue_id, entry_id)
        moved = self.store.transition(WaitlistEntry, entry.id, "status", sources, **values)
        if not moved:
            self.db.rollback()
            current = self.store.waitlist_entry(entry.id)
            raise AlreadyResolvedError(f"cannot {action} an entry that is {current.status}", entity_id=entry.id)
        self.db.commit()
        return self.store.waitlist_entry(entry.id)

    def notify(self, venue_id: str, entry_id: str, operator_id: str) -> dict:
        now = self.clock()
        entry = self._move(
            venue_id,
            entry_id,
            [WaitlistStatus.WAITING.value],
            "notify",
            status=WaitlistStatus.NOTIFIED.value,
            notified_at=now,
            expires_at=now + timedelta(minutes=config.NOTIFY_EXPIRY_MINUTES),
        )
        logger.info("waitlist entry %s notified (operator=%s)", entry.id, operator_id)
        return {"entry": entry_view(entry)}

    def seat(self, venue_id: str, entry_id: str, operator_id: str) -> dict:
        entry = self._move(
            venue_id,
            entry_id,
            list(OPEN_STATUSES),
            "seat",
            status=WaitlistStatus.SEATED.value,
            seated_at=self.clock(),
        )
        logger.info("waitlist entry %s seated (operator=%s)", entry.id, operator_id)
        return {"entry": entry_view(entry)}

    def remove(self, venue_id: str, entry_id: str, operator_id: str) -> dict:
        entry = self._move(
            venue_id,
            entry_id,
            list(OPEN_STATUSES),
            "remove",
            status=WaitlistStatus.REMOVED.value,
        )
        logger.info("waitlist entry %s removed (operator=%s)", entry.id, operator_id)
        return {"entry": entry_view(entry)}

    def stale_notified(self, venue_id: str) -> List[dict]:
        """Notified entries past their expiry. Nothing transitions them automatically."""
        now = self.clock()
        out = []
        for entry in self.store.waitlist_active(venue_id):
            if entry.status != WaitlistStatus.NOTIFIED.value or entry.expires_at is None:
                continue
            expires_at = entry.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=now.tzinfo)
            if expires_at < now:
                out.append(entry_view(entry))
        return out

    def estimate(self, venue_id: str, position: int) -> dict:
        if position < 1:
            raise ValidationError("position must be at least 1")
        avg = self.estimator.avg_turnover_minutes(self.store, venue_id)
        minutes = estimate_wait_minutes(position, avg)
        return {
            "position": position,
            "avg_turnover_minutes": avg,
            "estimated_wait_minutes": minutes,
            "estimated_wait": format_wait(minutes),
        }
