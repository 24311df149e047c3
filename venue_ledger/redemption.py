"""
Package redemption ledger, plus single-shot promo and line-skip pass redemption.

A package purchase is entitled to each of its package's items up to the item
quantity. Redemptions are append-only events; the redeemed count of an item
is the sum of its events. A batch is validated as a whole before anything is
written, and batches against the same purchase are serialized by a row lock
plus the purchase's version counter.
"""
import logging
import math
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import config
from .errors import (
    AlreadyResolvedError,
    ConcurrentUpdateError,
    InsufficientAllotmentError,
    ItemNotFoundError,
    LedgerError,
    NotFoundError,
    PromoUnavailableError,
    PurchaseNotActiveError,
    ValidationError,
    WrongVenueError,
)
from .models import (
    GuestRedemptionStatus,
    LineSkipPass,
    PackageGuest,
    PackageItem,
    PackagePurchase,
    PackageRedemption,
    PassStatus,
    Promo,
    PromoRedemption,
    PurchaseStatus,
    RedemptionRule,
    utcnow,
)
from .store import LedgerStore, new_scan_code

logger = logging.getLogger(__name__)

REDEEMABLE_STATUSES = (PurchaseStatus.ACTIVE.value, PurchaseStatus.PARTIALLY_REDEEMED.value)


class RedemptionLine(BaseModel):
    package_item_id: str
    quantity: int = 1


class RedemptionResult(BaseModel):
    purchase_id: str
    purchase_status: str
    guest_id: Optional[str] = None
    guest_redemption_status: Optional[str] = None
    redemption_ids: List[int] = []
    items: List[dict] = Field(default_factory=list)


LineInput = Union[RedemptionLine, Tuple[str, int]]


# -------------------------
# Pure accounting
# -------------------------
def remaining_quantity(item: PackageItem, redeemed: int) -> Optional[int]:
    """None for unlimited items."""
    if item.redemption_rule == RedemptionRule.UNLIMITED.value:
        return None
    if item.redemption_rule == RedemptionRule.ONCE.value:
        return 0 if redeemed > 0 else item.quantity
    return max(item.quantity - redeemed, 0)


def purchase_rollup(items: Sequence[PackageItem], counts: Dict[str, int], current: str) -> str:
    countable = [i for i in items if i.is_countable]
    if countable and all(remaining_quantity(i, counts.get(i.id, 0)) == 0 for i in countable):
        return PurchaseStatus.FULLY_REDEEMED.value
    if any(counts.get(i.id, 0) > 0 for i in items):
        return PurchaseStatus.PARTIALLY_REDEEMED.value
    return current


def guest_share(item: PackageItem, guest_count: int) -> int:
    return max(1, math.ceil(item.quantity / max(guest_count, 1)))


def guest_rollup(
    items: Sequence[PackageItem],
    guest_counts: Dict[str, int],
    purchase_counts: Dict[str, int],
    guest_count: int,
) -> str:
    def done(item: PackageItem) -> bool:
        # Nothing left on the purchase means nothing left for anyone.
        if remaining_quantity(item, purchase_counts.get(item.id, 0)) == 0:
            return True
        return guest_counts.get(item.id, 0) >= guest_share(item, guest_count)

    if not any(guest_counts.get(i.id, 0) > 0 for i in items):
        return GuestRedemptionStatus.PENDING.value
    countable = [i for i in items if i.is_countable]
    if countable and all(done(i) for i in countable):
        return GuestRedemptionStatus.FULLY_REDEEMED.value
    return GuestRedemptionStatus.PARTIALLY_REDEEMED.value


def item_view(item: PackageItem, redeemed: int) -> dict:
    return {
        "package_item_id": item.id,
        "item_name": item.item_name,
        "item_type": item.item_type,
        "redemption_rule": item.redemption_rule,
        "quantity": item.quantity,
        "redeemed": redeemed,
        "remaining": remaining_quantity(item, redeemed),
    }


def _normalize(lines: Iterable[LineInput]) -> "OrderedDict[str, int]":
    merged: "OrderedDict[str, int]" = OrderedDict()
    for line in lines:
        if isinstance(line, RedemptionLine):
            item_id, qty = line.package_item_id, line.quantity
        else:
            item_id, qty = line
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise ValidationError(f"quantity must be a positive integer (item {item_id})", entity_id=item_id)
        merged[item_id] = merged.get(item_id, 0) + qty
    if not merged:
        raise ValidationError("nothing to redeem")
    return merged


class RedemptionLedger:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.clock = clock
        self.max_attempts = max_attempts or config.REDEEM_MAX_ATTEMPTS

    def _purchase(self, venue_id: str, purchase_id: str, lock: bool = False) -> PackagePurchase:
        purchase = self.store.lock_purchase(purchase_id) if lock else self.store.purchase(purchase_id)
        if purchase is None:
            raise NotFoundError(f"purchase {purchase_id} not found", entity_id=purchase_id)
        if purchase.venue_id != venue_id:
            raise WrongVenueError("purchase belongs to a different venue", entity_id=purchase_id)
        return purchase

    def _package_guest(self, purchase: PackagePurchase, guest_id: str) -> PackageGuest:
        guest = self.store.package_guest(guest_id)
        if guest is None or guest.purchase_id != purchase.id:
            raise NotFoundError(f"package guest {guest_id} not found on this purchase", entity_id=guest_id)
        return guest

    # -------------------------
    # Package redemption
    # -------------------------
    def redeem(
        self,
        venue_id: str,
        purchase_id: str,
        lines: Iterable[LineInput],
        operator_id: str,
        guest_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> RedemptionResult:
        wanted = _normalize(lines)

        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._redeem_once(venue_id, purchase_id, wanted, operator_id, guest_id, notes)
            except StaleDataError:
                # Another terminal committed a batch between our read and write; re-validate.
                self.db.rollback()
                logger.info("redeem conflict on purchase %s (attempt %d)", purchase_id, attempt)
            except LedgerError:
                self.db.rollback()
                raise

        raise ConcurrentUpdateError("purchase is being redeemed elsewhere, try again", entity_id=purchase_id)

    def _redeem_once(
        self,
        venue_id: str,
        purchase_id: str,
        wanted: "OrderedDict[str, int]",
        operator_id: str,
        guest_id: Optional[str],
        notes: Optional[str],
    ) -> RedemptionResult:
        purchase = self._purchase(venue_id, purchase_id, lock=True)
        guest = self._package_guest(purchase, guest_id) if guest_id else None

        if purchase.status not in REDEEMABLE_STATUSES:
            raise PurchaseNotActiveError(f"purchase is {purchase.status}", entity_id=purchase.id)

        items = {i.id: i for i in self.store.package_items(purchase.package_id)}
        for item_id in wanted:
            if item_id not in items:
                raise ItemNotFoundError(f"item {item_id} is not part of this package", entity_id=item_id)

        counts = self.store.redeemed_counts(purchase.id)
        for item_id, qty in wanted.items():
            item = items[item_id]
            remaining = remaining_quantity(item, counts.get(item_id, 0))
            if remaining is not None and qty > remaining:
                raise InsufficientAllotmentError(item.id, item.item_name, qty, remaining)

        # Every line passed; write the whole batch.
        now = self.clock()
        events = []
        for item_id, qty in wanted.items():
            event = PackageRedemption(
                purchase_id=purchase.id,
                package_item_id=item_id,
                package_guest_id=guest.id if guest else None,
                quantity_redeemed=qty,
                redeemed_by=operator_id,
                notes=notes,
                redeemed_at=now,
            )
            self.db.add(event)
            events.append(event)
            counts[item_id] = counts.get(item_id, 0) + qty

        ordered = list(items.values())
        purchase.status = purchase_rollup(ordered, counts, purchase.status)
        purchase.last_redeemed_at = now

        # A batch can exhaust an item for everyone, so every guest is re-rolled.
        for member in self.store.package_guests(purchase.id):
            member_counts = self.store.redeemed_counts(purchase.id, member.id)
            if guest is not None and member.id == guest.id:
                for item_id, qty in wanted.items():
                    member_counts[item_id] = member_counts.get(item_id, 0) + qty
            member.redemption_status = guest_rollup(ordered, member_counts, counts, purchase.guest_count)

        self.db.commit()
        logger.info(
            "redeemed %s on purchase %s -> %s (operator=%s)",
            dict(wanted), purchase.id, purchase.status, operator_id,
        )

        return RedemptionResult(
            purchase_id=purchase.id,
            purchase_status=purchase.status,
            guest_id=guest.id if guest else None,
            guest_redemption_status=guest.redemption_status if guest else None,
            redemption_ids=[e.id for e in events],
            items=[item_view(i, counts.get(i.id, 0)) for i in ordered],
        )

    def summary(self, venue_id: str, purchase_id: str) -> dict:
        purchase = self._purchase(venue_id, purchase_id)
        counts = self.store.redeemed_counts(purchase.id)
        return {
            "purchase_id": purchase.id,
            "package_id": purchase.package_id,
            "qr_code": purchase.qr_code,
            "status": purchase.status,
            "guest_count": purchase.guest_count,
            "total_paid": float(purchase.total_paid or 0),
            "purchased_at": purchase.purchased_at,
            "items": [item_view(i, counts.get(i.id, 0)) for i in self.store.package_items(purchase.package_id)],
            "guests": [
                {
                    "guest_id": g.id,
                    "guest_number": g.guest_number,
                    "qr_code": g.qr_code,
                    "guest_name": g.guest_name,
                    "is_primary": g.is_primary,
                    "redemption_status": g.redemption_status,
                }
                for g in self.store.package_guests(purchase.id)
            ],
        }

    def list_redemptions(self, venue_id: str, purchase_id: str) -> List[dict]:
        purchase = self._purchase(venue_id, purchase_id)
        return [
            {
                "id": r.id,
                "package_item_id": r.package_item_id,
                "package_guest_id": r.package_guest_id,
                "quantity_redeemed": r.quantity_redeemed,
                "redeemed_by": r.redeemed_by,
                "redeemed_at": r.redeemed_at,
                "notes": r.notes,
            }
            for r in self.store.redemptions(purchase.id)
        ]

    # -------------------------
    # Package guest roster
    # -------------------------
    def add_package_guest(
        self,
        venue_id: str,
        purchase_id: str,
        guest_name: Optional[str] = None,
        guest_phone: Optional[str] = None,
        guest_email: Optional[str] = None,
        user_id: Optional[str] = None,
        is_primary: bool = False,
    ) -> PackageGuest:
        purchase = self._purchase(venue_id, purchase_id)
        for _ in range(3):
            guest = PackageGuest(
                purchase_id=purchase.id,
                guest_number=self.store.next_guest_number(PackageGuest, "purchase_id", purchase.id),
                qr_code=new_scan_code("PG"),
                user_id=user_id,
                guest_name=guest_name,
                guest_phone=guest_phone,
                guest_email=guest_email,
                is_primary=is_primary,
            )
            self.db.add(guest)
            try:
                self.db.commit()
                return guest
            except IntegrityError:
                self.db.rollback()
                if is_primary:
                    raise AlreadyResolvedError("purchase already has a primary guest", entity_id=purchase.id)
        raise AlreadyResolvedError("could not allocate a guest number, try again", entity_id=purchase.id)

    def remove_package_guest(self, venue_id: str, guest_id: str) -> None:
        guest = self.store.package_guest(guest_id)
        if guest is None:
            raise NotFoundError(f"package guest {guest_id} not found", entity_id=guest_id)
        self._purchase(venue_id, guest.purchase_id)
        if guest.is_primary:
            raise ValidationError("the primary guest cannot be removed", entity_id=guest.id)
        if self.store.redeemed_counts(guest.purchase_id, guest.id):
            raise AlreadyResolvedError("guest already has redemptions", entity_id=guest.id)
        self.db.delete(guest)
        self.db.commit()

    # -------------------------
    # Promos
    # -------------------------
    def redeem_promo(
        self,
        venue_id: str,
        code: str,
        operator_id: str,
        revenue_amount: Optional[float] = None,
    ) -> dict:
        promo = self.store.promo_by_code(code)
        if promo is None:
            raise NotFoundError(f"promo {code} not found")
        if promo.venue_id is not None and promo.venue_id != venue_id:
            raise WrongVenueError("this promo is not valid for this venue", entity_id=promo.id)
        now = self.clock()
        if not promo.is_active or (promo.ends_at is not None and _before(promo.ends_at, now)):
            raise PromoUnavailableError("promo is inactive or has ended", entity_id=promo.id)
        if revenue_amount is not None and revenue_amount < 0:
            raise ValidationError("revenue amount cannot be negative")

        # Counter and cap in one statement: concurrent redeemers can't overshoot max_redemptions.
        claimed = self.db.execute(
            update(Promo)
            .where(
                Promo.id == promo.id,
                or_(Promo.max_redemptions.is_(None), Promo.current_redemptions < Promo.max_redemptions),
            )
            .values(current_redemptions=Promo.current_redemptions + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            self.db.rollback()
            raise PromoUnavailableError("promo has reached maximum redemptions", entity_id=promo.id)

        event = PromoRedemption(
            promo_id=promo.id,
            venue_id=venue_id,
            redeemed_by=operator_id,
            revenue_amount=Decimal(str(revenue_amount)) if revenue_amount is not None else None,
            redeemed_at=now,
        )
        self.db.add(event)
        self.db.commit()
        promo = self.db.get(Promo, promo.id, populate_existing=True)
        logger.info("promo %s redeemed at venue %s (operator=%s)", promo.promo_code, venue_id, operator_id)
        return {
            "promo_id": promo.id,
            "promo_code": promo.promo_code,
            "current_redemptions": promo.current_redemptions,
            "max_redemptions": promo.max_redemptions,
            "redemption_id": event.id,
        }

    # -------------------------
    # Line-skip passes
    # -------------------------
    def redeem_pass(self, venue_id: str, pass_id: str, operator_id: str, claim_free_item: bool = False) -> dict:
        line_pass = self.store.line_skip_pass(pass_id)
        if line_pass is None:
            raise NotFoundError(f"pass {pass_id} not found", entity_id=pass_id)
        if line_pass.venue_id != venue_id:
            raise WrongVenueError("pass belongs to a different venue", entity_id=pass_id)
        if claim_free_item and line_pass.pass_type != "vip":
            raise ValidationError("only VIP passes include a free item", entity_id=pass_id)

        moved = self.store.transition(
            LineSkipPass,
            line_pass.id,
            "status",
            [PassStatus.ACTIVE.value],
            status=PassStatus.USED.value,
            used_at=self.clock(),
            free_item_claimed=claim_free_item,
        )
        if not moved:
            self.db.rollback()
            current = self.store.line_skip_pass(pass_id)
            raise AlreadyResolvedError(f"pass is already {current.status}", entity_id=pass_id)
        self.db.commit()
        logger.info("pass %s used at venue %s (operator=%s)", line_pass.id, venue_id, operator_id)
        line_pass = self.store.line_skip_pass(pass_id)
        return {
            "pass_id": line_pass.id,
            "pass_type": line_pass.pass_type,
            "pass_status": line_pass.status,
            "free_item_claimed": line_pass.free_item_claimed,
            "used_at": line_pass.used_at,
        }


def _before(moment: datetime, now: datetime) -> bool:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=now.tzinfo)
    return moment < now
