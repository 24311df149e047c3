import logging
import uuid
from datetime import date
from typing import Awaitable, Callable, List, Optional

from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.asyncio import Redis

from . import config
from .admin import router as admin_router
from .admission import AdmissionService
from .audit import record_decision
from .codes import CodeResolver
from .db import Base, SessionLocal, engine
from .errors import LedgerError
from .idempotency import get_cached_response, set_cached_response
from .rate_limit import token_bucket
from .redemption import RedemptionLedger, RedemptionLine
from .store import LedgerStore
from .waitlist import WaitlistQueue

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Venue Admission Ledger", version="1.0.0")

redis = Redis.from_url(config.REDIS_URL, decode_responses=True)

app.include_router(admin_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_response(str(uuid.uuid4())))


# -------------------------
# Decision plumbing
# -------------------------
def _in_session(work):
    db = SessionLocal()
    try:
        return work(db)
    finally:
        db.close()


async def _decide(
    *,
    action: str,
    venue_id: str,
    operator_id: str,
    entity_kind: str,
    entity_id: Optional[str],
    work: Callable,
    idempotency_key: Optional[str] = None,
    on_accept: Optional[Callable[[dict], Awaitable[None]]] = None,
):
    """
    Runs one mutating ledger call and turns the outcome into the decision shape:
    ACCEPTED with the payload, or REJECTED with the typed reason. Every decision
    is audited, and replayed verbatim for a repeated Idempotency-Key.
    """
    scope = f"{venue_id}:{action}"
    if idempotency_key:
        cached = await get_cached_response(redis, scope, idempotency_key)
        if cached:
            return JSONResponse(status_code=cached["status_code"], content=cached["body"])

    decision_id = str(uuid.uuid4())
    try:
        payload = await run_in_threadpool(_in_session, work)
    except LedgerError as e:
        logger.warning("%s rejected: %s %s (venue=%s)", action, e.reason_code, e.detail, venue_id)
        status_code, status, reason = e.http_status, "REJECTED", e.reason_code
        body = e.to_response(decision_id)
        entity_id = e.entity_id or entity_id
    else:
        status_code, status, reason = 200, "ACCEPTED", "OK"
        body = {**jsonable_encoder(payload), "status": status, "reason_code": reason, "decision_id": decision_id}
        if on_accept is not None:
            await on_accept(body)

    await run_in_threadpool(
        record_decision, decision_id, venue_id, operator_id, action, entity_kind, entity_id, status, reason
    )

    body = jsonable_encoder(body)
    if idempotency_key:
        await set_cached_response(redis, scope, idempotency_key, status_code, body, config.IDEMPOTENCY_TTL_SECONDS)
    return JSONResponse(status_code=status_code, content=body)


# -------------------------
# Code resolution
# -------------------------
class ResolveReq(BaseModel):
    code: str


@app.post("/venues/{venue_id}/resolve")
async def resolve_code(
    venue_id: str,
    req: ResolveReq,
    request: Request,
    operator_id: str = Header(alias="X-Operator-Id"),
):
    rate = config.RESOLVE_RATE_PER_MIN
    if rate > 0:
        ip = request.client.host if request.client else "unknown"
        allowed = await token_bucket(redis, key=f"resolve:{ip}", capacity=rate, refill_per_sec=rate / 60)
        if not allowed:
            decision_id = str(uuid.uuid4())
            await run_in_threadpool(
                record_decision, decision_id, venue_id, operator_id, "resolve", "code", None, "REJECTED", "RATE_LIMITED"
            )
            return JSONResponse(
                status_code=429,
                content={"status": "REJECTED", "reason_code": "RATE_LIMITED", "decision_id": decision_id},
            )

    def work(db):
        ref = CodeResolver(LedgerStore(db), config.SCAN_TOKEN_SECRET).resolve(req.code, venue_id)
        return {"entity": ref}

    return await _decide(
        action="resolve", venue_id=venue_id, operator_id=operator_id,
        entity_kind="code", entity_id=None, work=work,
    )


# -------------------------
# Admission
# -------------------------
class CheckInReq(BaseModel):
    spend_amount: Optional[float] = None


@app.post("/venues/{venue_id}/guests/{guest_id}/check-in")
async def check_in_guest(
    venue_id: str,
    guest_id: str,
    req: Optional[CheckInReq] = None,
    operator_id: str = Header(alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    spend = req.spend_amount if req else None
    return await _decide(
        action="check_in", venue_id=venue_id, operator_id=operator_id,
        entity_kind="booking_guest", entity_id=guest_id, idempotency_key=idempotency_key,
        work=lambda db: AdmissionService(db).check_in(venue_id, guest_id, operator_id, spend),
    )


@app.post("/venues/{venue_id}/guests/{guest_id}/no-show")
async def mark_guest_no_show(
    venue_id: str,
    guest_id: str,
    operator_id: str = Header(alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    return await _decide(
        action="no_show", venue_id=venue_id, operator_id=operator_id,
        entity_kind="booking_guest", entity_id=guest_id, idempotency_key=idempotency_key,
        work=lambda db: AdmissionService(db).mark_no_show(venue_id, guest_id, operator_id),
    )


@app.post("/venues/{venue_id}/guests/{guest_id}/undo-no-show")
async def undo_guest_no_show(
    venue_id: str,
    guest_id: str,
    operator_id: str = Header(alias="X-Operator-Id"),
):
    return await _decide(
        action="undo_no_show", venue_id=venue_id, operator_id=operator_id,
        entity_kind="booking_guest", entity_id=guest_id,
        work=lambda db: AdmissionService(db).undo_no_show(venue_id, guest_id, operator_id),
    )


@app.post("/venues/{venue_id}/bookings/no-show-remaining")
async def bulk_no_show_night(
    venue_id: str,
    booking_date: date,
    operator_id: str = Header(alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    return await _decide(
        action="bulk_no_show_night", venue_id=venue_id, operator_id=operator_id,
        entity_kind="venue", entity_id=venue_id, idempotency_key=idempotency_key,
        work=lambda db: AdmissionService(db).bulk_mark_bookings_no_show(venue_id, booking_date, operator_id),
    )


@app.post("/venues/{venue_id}/bookings/{booking_id}/no-show-remaining")
async def bulk_no_show_booking(
    venue_id: str,
    booking_id: str,
    operator_id: str = Header(alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    return await _decide(
        action="bulk_no_show", venue_id=venue_id, operator_id=operator_id,
        entity_kind="booking", entity_id=booking_id, idempotency_key=idempotency_key,
        work=lambda db: AdmissionService(db).bulk_mark_no_show(venue_id, booking_id, operator_id),
    )


@app.post("/venues/{venue_id}/bookings/{booking_id}/check-in")
async def check_in_booking(
    venue_id: str,
    booking_id: str,
    req: Optional[CheckInReq] = None,
    operator_id: str = Header(alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    spend = req.spend_amount if req else None
    return await _decide(
        action="check_in", venue_id=venue_id, operator_id=operator_id,
        entity_kind="booking", entity_id=booking_id, idempotency_key=idempotency_key,
        work=lambda db: AdmissionService(db).check_in_booking(venue_id, booking_id, operator_id, spend),
    )


@app.post("/venues/{venue_id}/bookings/{booking_id}/no-show")
async def mark_booking_no_show(
    venue_id: str,
    booking_id: str,
    operator_id: str = Header(alias="X-Operator-Id"),
):
    return await _decide(
        action="no_show", venue_id=venue_id, operator_id=operator_id,
        entity_kind="booking", entity_id=booking_id,
        work=lambda db: AdmissionService(db).mark_booking_no_show(venue_id, booking_id, operator_id),
    )


@app.post("/venues/{venue_id}/bookings/{booking_id}/undo-no-show")
async def undo_booking_no_show(
    venue_id: str,
    booking_id: str,
    operator_id: str = Header(alias="X-Operator-Id"),
):
    return await _decide(
        action="undo_no_show", venue_id=venue_id, operator_id=operator_id,
        entity_kind="booking", entity_id=booking_id,
        work=lambda db: AdmissionService(db).undo_booking_no_show(venue_id, booking_id, operator_id),
    )


@app.get("/venues/{venue_id}/bookings/{booking_id}/admission")
def admission_summary(venue_id: str, booking_id: str):
    db = SessionLocal()
    try:
        return jsonable_encoder(AdmissionService(db).summary(venue_id, booking_id))
    finally:
        db.close()


# -------------------------
# Redemption
# -------------------------
class RedeemReq(BaseModel):
    items: List[RedemptionLine]
    guest_id: Optional[str] = None
    notes: Optional[str] = None


@app.post("/venues/{venue_id}/purchases/{purchase_id}/redemptions")
async def redeem_items(
    venue_id: str,
    purchase_id: str,
    req: RedeemReq,
    operator_id: str = Header(alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    return await _decide(
        action="redeem", venue_id=venue_id, operator_id=operator_id,
        entity_kind="package_purchase", entity_id=purchase_id, idempotency_key=idempotency_key,
        work=lambda db: RedemptionLedger(db).redeem(
            venue_id, purchase_id, req.items, operator_id, guest_id=req.guest_id, notes=req.notes
        ),
    )


@app.get("/venues/{venue_id}/purchases/{purchase_id}/redemptions")
def list_redemptions(venue_id: str, purchase_id: str):
    db = SessionLocal()
    try:
        return jsonable_encoder(RedemptionLedger(db).list_redemptions(venue_id, purchase_id))
    finally:
        db.close()


@app.get("/venues/{venue_id}/purchases/{purchase_id}")
def purchase_summary(venue_id: str, purchase_id: str):
    db = SessionLocal()
    try:
        return jsonable_encoder(RedemptionLedger(db).summary(venue_id, purchase_id))
    finally:
        db.close()


class PromoRedeemReq(BaseModel):
    code: str
    revenue_amount: Optional[float] = None


@app.post("/venues/{venue_id}/promos/redeem")
async def redeem_promo(
    venue_id: str,
    req: PromoRedeemReq,
    operator_id: str = Header(alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    return await _decide(
        action="redeem_promo", venue_id=venue_id, operator_id=operator_id,
        entity_kind="promo", entity_id=None, idempotency_key=idempotency_key,
        work=lambda db: RedemptionLedger(db).redeem_promo(venue_id, req.code, operator_id, req.revenue_amount),
    )


class PassRedeemReq(BaseModel):
    claim_free_item: bool = False


@app.post("/venues/{venue_id}/passes/{pass_id}/redeem")
async def redeem_pass(
    venue_id: str,
    pass_id: str,
    req: Optional[PassRedeemReq] = None,
    operator_id: str = Header(alias="X-Operator-Id"),
):
    claim = req.claim_free_item if req else False
    return await _decide(
        action="redeem_pass", venue_id=venue_id, operator_id=operator_id,
        entity_kind="line_skip_pass", entity_id=pass_id,
        work=lambda db: RedemptionLedger(db).redeem_pass(venue_id, pass_id, operator_id, claim),
    )


# -------------------------
# Waitlist
# -------------------------
class JoinReq(BaseModel):
    party_size: int
    user_id: Optional[str] = None
    guest_name: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


@app.post("/venues/{venue_id}/waitlist")
async def join_waitlist(
    venue_id: str,
    req: JoinReq,
    operator_id: Optional[str] = Header(default=None, alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    return await _decide(
        action="waitlist_join", venue_id=venue_id, operator_id=operator_id or "guest",
        entity_kind="waitlist_entry", entity_id=None, idempotency_key=idempotency_key,
        work=lambda db: {"entry": WaitlistQueue(db).join(
            venue_id, req.party_size, user_id=req.user_id, guest_name=req.guest_name, phone=req.phone, notes=req.notes
        )},
    )


@app.get("/venues/{venue_id}/waitlist")
def list_waitlist(venue_id: str):
    db = SessionLocal()
    try:
        return jsonable_encoder(WaitlistQueue(db).list_open(venue_id))
    finally:
        db.close()


@app.get("/venues/{venue_id}/waitlist/stale")
def stale_waitlist(venue_id: str):
    db = SessionLocal()
    try:
        return jsonable_encoder(WaitlistQueue(db).stale_notified(venue_id))
    finally:
        db.close()


@app.get("/venues/{venue_id}/waitlist/estimate")
def estimate_wait(venue_id: str, position: int):
    db = SessionLocal()
    try:
        return WaitlistQueue(db).estimate(venue_id, position)
    finally:
        db.close()


async def _publish_notification(body: dict) -> None:
    if not config.NOTIFY_STREAM:
        return
    entry = body["entry"]
    # Delivery happens in the worker; the entry is already notified either way.
    try:
        await redis.xadd(config.NOTIFY_STREAM, {
            "entry_id": entry["entry_id"],
            "venue_id": entry["venue_id"],
            "user_id": entry.get("user_id") or "",
            "phone": entry.get("phone") or "",
            "expires_at": str(entry.get("expires_at") or ""),
        })
    except Exception:
        logger.exception("could not enqueue waitlist notification for %s", entry["entry_id"])


@app.post("/venues/{venue_id}/waitlist/{entry_id}/notify")
async def notify_waitlist(
    venue_id: str,
    entry_id: str,
    operator_id: str = Header(alias="X-Operator-Id"),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    return await _decide(
        action="waitlist_notify", venue_id=venue_id, operator_id=operator_id,
        entity_kind="waitlist_entry", entity_id=entry_id, idempotency_key=idempotency_key,
        work=lambda db: WaitlistQueue(db).notify(venue_id, entry_id, operator_id),
        on_accept=_publish_notification,
    )


@app.post("/venues/{venue_id}/waitlist/{entry_id}/seat")
async def seat_waitlist(
    venue_id: str,
    entry_id: str,
    operator_id: str = Header(alias="X-Operator-Id"),
):
    return await _decide(
        action="waitlist_seat", venue_id=venue_id, operator_id=operator_id,
        entity_kind="waitlist_entry", entity_id=entry_id,
        work=lambda db: WaitlistQueue(db).seat(venue_id, entry_id, operator_id),
    )


@app.post("/venues/{venue_id}/waitlist/{entry_id}/remove")
async def remove_waitlist(
    venue_id: str,
    entry_id: str,
    operator_id: str = Header(alias="X-Operator-Id"),
):
    return await _decide(
        action="waitlist_remove", venue_id=venue_id, operator_id=operator_id,
        entity_kind="waitlist_entry", entity_id=entry_id,
        work=lambda db: WaitlistQueue(db).remove(venue_id, entry_id, operator_id),
    )
