import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from tests.helpers import OTHER_VENUE, VENUE, package_with_purchase, resolve
from venue_ledger.errors import InsufficientAllotmentError, ValidationError
from venue_ledger.models import PackageItem, Promo, PromoRedemption
from venue_ledger.redemption import RedemptionLedger, guest_rollup, guest_share, remaining_quantity


def _redeem(client, purchase_id, lines, **extra):
    return client.post(
        f"/venues/{VENUE}/purchases/{purchase_id}/redemptions",
        json={"items": [{"package_item_id": i, "quantity": q} for i, q in lines], **extra},
    )


async def test_batch_is_all_or_nothing(client):
    purchase, items = await package_with_purchase(client, [
        {"item_name": "A", "quantity": 2},
        {"item_name": "B", "quantity": 1},
    ])
    pid = purchase["purchase_id"]
    assert (await _redeem(client, pid, [(items["B"], 1)])).status_code == 200

    r = await _redeem(client, pid, [(items["A"], 1), (items["B"], 1)])
    assert r.status_code == 409
    assert r.json()["reason_code"] == "INSUFFICIENT_ALLOTMENT"
    assert r.json()["entity_id"] == items["B"]

    summary = (await client.get(f"/venues/{VENUE}/purchases/{pid}")).json()
    a = next(i for i in summary["items"] if i["item_name"] == "A")
    assert a["redeemed"] == 0
    assert a["remaining"] == 2
    assert len((await client.get(f"/venues/{VENUE}/purchases/{pid}/redemptions")).json()) == 1


async def test_unlimited_item_does_not_block_full_redemption(client):
    spec = [
        {"item_name": "Champagne", "quantity": 2},
        {"item_name": "Mixers", "quantity": 1, "redemption_rule": "unlimited"},
    ]
    full, items = await package_with_purchase(client, spec)
    r = await _redeem(client, full["purchase_id"], [(items["Champagne"], 2)])
    assert r.json()["purchase_status"] == "fully_redeemed"

    partial, items = await package_with_purchase(client, spec)
    r = await _redeem(client, partial["purchase_id"], [(items["Champagne"], 1)])
    assert r.json()["purchase_status"] == "partially_redeemed"


async def test_fully_redeemed_purchase_refuses_more(client):
    purchase, items = await package_with_purchase(client, [
        {"item_name": "Shots", "quantity": 1},
        {"item_name": "Mixers", "quantity": 1, "redemption_rule": "unlimited"},
    ])
    pid = purchase["purchase_id"]
    await _redeem(client, pid, [(items["Shots"], 1)])

    r = await _redeem(client, pid, [(items["Mixers"], 5)])
    assert r.status_code == 409
    assert r.json()["reason_code"] == "PURCHASE_NOT_ACTIVE"


async def test_unlimited_items_redeem_freely_while_active(client):
    purchase, items = await package_with_purchase(client, [
        {"item_name": "Vodka", "quantity": 1},
        {"item_name": "Mixers", "quantity": 1, "redemption_rule": "unlimited"},
    ])
    pid = purchase["purchase_id"]
    for _ in range(3):
        r = await _redeem(client, pid, [(items["Mixers"], 4)])
        assert r.status_code == 200
    mixers = next(i for i in r.json()["items"] if i["item_name"] == "Mixers")
    assert mixers["redeemed"] == 12
    assert mixers["remaining"] is None
    assert r.json()["purchase_status"] == "partially_redeemed"


async def test_once_item_is_spent_by_a_single_event(client):
    purchase, items = await package_with_purchase(client, [
        {"item_name": "Entry", "quantity": 3, "redemption_rule": "once"},
        {"item_name": "Vodka", "quantity": 1},
    ])
    pid = purchase["purchase_id"]
    assert (await _redeem(client, pid, [(items["Entry"], 1)])).status_code == 200

    r = await _redeem(client, pid, [(items["Entry"], 1)])
    assert r.status_code == 409
    assert r.json()["reason_code"] == "INSUFFICIENT_ALLOTMENT"


async def test_invalid_lines(client):
    purchase, items = await package_with_purchase(client, [{"item_name": "Vodka", "quantity": 2}])
    pid = purchase["purchase_id"]

    zero = await _redeem(client, pid, [(items["Vodka"], 0)])
    unknown = await _redeem(client, pid, [("not-an-item", 1)])
    empty = await client.post(f"/venues/{VENUE}/purchases/{pid}/redemptions", json={"items": []})
    wrong_venue = await client.post(
        f"/venues/{OTHER_VENUE}/purchases/{pid}/redemptions",
        json={"items": [{"package_item_id": items["Vodka"], "quantity": 1}]},
    )

    assert zero.status_code == 422
    assert unknown.status_code == 404 and unknown.json()["reason_code"] == "ITEM_NOT_FOUND"
    assert empty.status_code == 422
    assert wrong_venue.status_code == 403


async def test_duplicate_lines_are_merged_before_the_check(client, db):
    purchase, items = await package_with_purchase(client, [{"item_name": "Vodka", "quantity": 2}])

    with pytest.raises(InsufficientAllotmentError) as exc:
        RedemptionLedger(db).redeem(VENUE, purchase["purchase_id"], [(items["Vodka"], 1), (items["Vodka"], 2)], "staff_1")
    assert exc.value.requested == 3
    assert exc.value.remaining == 2


async def test_cancelled_purchase_is_not_redeemable(client):
    purchase, items = await package_with_purchase(client, [{"item_name": "Vodka", "quantity": 2}])
    await client.post(f"/admin/purchases/{purchase['purchase_id']}/status", json={"status": "cancelled"})

    r = await _redeem(client, purchase["purchase_id"], [(items["Vodka"], 1)])
    assert r.status_code == 409
    assert r.json()["reason_code"] == "PURCHASE_NOT_ACTIVE"


async def test_concurrent_batches_never_over_redeem(client):
    purchase, items = await package_with_purchase(client, [
        {"item_name": "Vodka", "quantity": 3},
        {"item_name": "Gin", "quantity": 5},
    ])
    pid = purchase["purchase_id"]

    results = await asyncio.gather(*[_redeem(client, pid, [(items["Vodka"], 2)]) for _ in range(4)])
    accepted = [r for r in results if r.status_code == 200]
    assert len(accepted) == 1, [r.json() for r in results]
    assert all(r.json()["reason_code"] in ("INSUFFICIENT_ALLOTMENT", "CONCURRENT_UPDATE") for r in results if r.status_code != 200)

    summary = (await client.get(f"/venues/{VENUE}/purchases/{pid}")).json()
    vodka = next(i for i in summary["items"] if i["item_name"] == "Vodka")
    assert vodka["redeemed"] == 2


async def test_guest_redemption_rolls_up_per_guest(client):
    purchase, items = await package_with_purchase(client, [{"item_name": "Vodka", "quantity": 4}], guest_count=2)
    pid = purchase["purchase_id"]
    guest_id = purchase["primary_guest_id"]

    r1 = (await _redeem(client, pid, [(items["Vodka"], 1)], guest_id=guest_id)).json()
    assert r1["guest_redemption_status"] == "partially_redeemed"

    r2 = (await _redeem(client, pid, [(items["Vodka"], 1)], guest_id=guest_id, notes="second round")).json()
    assert r2["guest_redemption_status"] == "fully_redeemed"
    assert r2["purchase_status"] == "partially_redeemed"

    events = (await client.get(f"/venues/{VENUE}/purchases/{pid}/redemptions")).json()
    assert [e["package_guest_id"] for e in events] == [guest_id, guest_id]
    assert events[1]["notes"] == "second round"
    assert events[0]["redeemed_by"] == "staff_1"


async def test_once_item_completes_the_guest(client):
    purchase, items = await package_with_purchase(client, [
        {"item_name": "VIP Entry", "quantity": 4, "redemption_rule": "once"},
    ])
    guest_id = purchase["primary_guest_id"]

    r = (await _redeem(client, purchase["purchase_id"], [(items["VIP Entry"], 1)], guest_id=guest_id)).json()
    assert r["purchase_status"] == "fully_redeemed"
    assert r["guest_redemption_status"] == "fully_redeemed"


async def test_uneven_split_settles_every_guest_when_exhausted(client):
    purchase, items = await package_with_purchase(client, [{"item_name": "Vodka", "quantity": 3}], guest_count=2)
    pid = purchase["purchase_id"]
    first = purchase["primary_guest_id"]
    second = (await client.post(f"/admin/venues/{VENUE}/purchases/{pid}/guests", json={"guest_name": "Kim"})).json()

    r1 = (await _redeem(client, pid, [(items["Vodka"], 1)], guest_id=second["guest_id"])).json()
    assert r1["guest_redemption_status"] == "partially_redeemed"

    r2 = (await _redeem(client, pid, [(items["Vodka"], 2)], guest_id=first)).json()
    assert r2["purchase_status"] == "fully_redeemed"
    assert r2["guest_redemption_status"] == "fully_redeemed"

    # the second guest can never get another pour, so they are settled too
    ref = (await resolve(client, second["qr_code"])).json()["entity"]
    assert ref["kind"] == "package_guest"
    assert ref["status"] == "fully_redeemed"


def test_guest_rollup_rules():
    vodka = PackageItem(id="vodka", item_name="Vodka", quantity=3, redemption_rule="multiple")
    entry = PackageItem(id="entry", item_name="Entry", quantity=4, redemption_rule="once")

    assert guest_rollup([vodka], {}, {"vodka": 3}, 2) == "pending"
    assert guest_rollup([vodka], {"vodka": 1}, {"vodka": 1}, 2) == "partially_redeemed"
    assert guest_rollup([vodka], {"vodka": 1}, {"vodka": 3}, 2) == "fully_redeemed"
    assert guest_rollup([vodka], {"vodka": 2}, {"vodka": 2}, 2) == "fully_redeemed"
    assert guest_rollup([entry], {"entry": 1}, {"entry": 1}, 1) == "fully_redeemed"


async def test_package_guest_roster(client, db):
    purchase, items = await package_with_purchase(client, [{"item_name": "Vodka", "quantity": 4}], guest_count=3)
    pid = purchase["purchase_id"]

    added = (await client.post(f"/admin/venues/{VENUE}/purchases/{pid}/guests", json={"guest_name": "Kim"})).json()
    assert added["guest_number"] == 2
    assert added["qr_code"].startswith("PG-")

    ledger = RedemptionLedger(db)
    with pytest.raises(ValidationError):
        ledger.remove_package_guest(VENUE, purchase["primary_guest_id"])

    await _redeem(client, pid, [(items["Vodka"], 1)], guest_id=added["guest_id"])
    r = await client.delete(f"/admin/venues/{VENUE}/package-guests/{added['guest_id']}")
    assert r.status_code == 409


def test_remaining_and_share_rules():
    once = PackageItem(item_name="Entry", quantity=2, redemption_rule="once")
    multiple = PackageItem(item_name="Vodka", quantity=5, redemption_rule="multiple")
    unlimited = PackageItem(item_name="Mixers", quantity=1, redemption_rule="unlimited")

    assert remaining_quantity(once, 0) == 2
    assert remaining_quantity(once, 1) == 0
    assert remaining_quantity(multiple, 3) == 2
    assert remaining_quantity(unlimited, 40) is None
    assert guest_share(multiple, 2) == 3
    assert guest_share(multiple, 10) == 1


async def test_promo_redemption_respects_cap(client, db):
    await client.post("/admin/promos", json={"promo_code": "HAPPYHOUR", "venue_id": VENUE, "max_redemptions": 2})

    results = await asyncio.gather(*[
        client.post(f"/venues/{VENUE}/promos/redeem", json={"code": "happyhour", "revenue_amount": 20})
        for _ in range(4)
    ])
    accepted = [r for r in results if r.status_code == 200]
    rejected = [r for r in results if r.status_code == 409]
    assert len(accepted) == 2
    assert len(rejected) == 2
    assert all(r.json()["reason_code"] == "PROMO_UNAVAILABLE" for r in rejected)
    promo = db.execute(select(Promo).where(Promo.promo_code == "happyhour")).scalar_one()
    assert promo.current_redemptions == 2
    assert db.query(PromoRedemption).count() == 2


async def test_promo_venue_and_expiry(client):
    ended = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    await client.post("/admin/promos", json={"promo_code": "LOCAL", "venue_id": VENUE})
    await client.post("/admin/promos", json={"promo_code": "OLD", "venue_id": VENUE, "ends_at": ended})

    other = await client.post(f"/venues/{OTHER_VENUE}/promos/redeem", json={"code": "LOCAL"})
    old = await client.post(f"/venues/{VENUE}/promos/redeem", json={"code": "OLD"})
    missing = await client.post(f"/venues/{VENUE}/promos/redeem", json={"code": "NOPE"})

    assert other.status_code == 403
    assert old.status_code == 409 and old.json()["reason_code"] == "PROMO_UNAVAILABLE"
    assert missing.status_code == 404


async def test_line_skip_pass_is_single_use(client):
    vip = (await client.post("/admin/passes", json={"venue_id": VENUE, "pass_type": "vip"})).json()
    standard = (await client.post("/admin/passes", json={"venue_id": VENUE})).json()

    r1 = await client.post(f"/venues/{VENUE}/passes/{vip['pass_id']}/redeem", json={"claim_free_item": True})
    assert r1.status_code == 200
    assert r1.json()["status"] == "ACCEPTED"
    assert r1.json()["pass_status"] == "used"
    assert r1.json()["free_item_claimed"] is True

    r2 = await client.post(f"/venues/{VENUE}/passes/{vip['pass_id']}/redeem")
    assert r2.status_code == 409
    assert "already used" in r2.json()["detail"]

    r3 = await client.post(f"/venues/{VENUE}/passes/{standard['pass_id']}/redeem", json={"claim_free_item": True})
    assert r3.status_code == 422
