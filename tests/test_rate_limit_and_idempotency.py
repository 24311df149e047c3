import httpx
import pytest

from tests.helpers import VENUE, create_booking, resolve
from venue_ledger import config, main

pytestmark = pytest.mark.asyncio


async def test_rate_limit_kicks_in(client, monkeypatch):
    monkeypatch.setattr(config, "RESOLVE_RATE_PER_MIN", 5)

    hits = []
    for _ in range(8):
        r = await resolve(client, "definitely-not-a-code")
        hits.append((r.status_code, r.json()))

    # The first five get a real answer; the bucket is empty after that
    assert [code for code, _ in hits[:5]] == [404] * 5
    assert any(code == 429 and body.get("reason_code") == "RATE_LIMITED" for code, body in hits[5:])


async def test_idempotency_returns_same_cached_response(client):
    booking = await create_booking(client)
    guest_id = booking["guests"][0]["guest_id"]

    key = "idem-demo-123"
    r1 = await client.post(f"/venues/{VENUE}/guests/{guest_id}/check-in", headers={"Idempotency-Key": key})
    r2 = await client.post(f"/venues/{VENUE}/guests/{guest_id}/check-in", headers={"Idempotency-Key": key})

    j1, j2 = r1.json(), r2.json()
    assert r1.status_code == r2.status_code == 200
    assert j1 == j2, f"Expected exact cached response, got diff: {j1} vs {j2}"

    # a fresh key is a fresh attempt, and the guest is already in
    r3 = await client.post(f"/venues/{VENUE}/guests/{guest_id}/check-in", headers={"Idempotency-Key": "another"})
    assert r3.status_code == 409


async def test_replayed_decision_is_audited_once(client):
    booking = await create_booking(client)
    guest_id = booking["guests"][0]["guest_id"]

    for _ in range(3):
        await client.post(f"/venues/{VENUE}/guests/{guest_id}/no-show", headers={"Idempotency-Key": "k1"})

    rows = (await client.get("/admin/audit", params={"venue_id": VENUE})).json()
    assert [r["action"] for r in rows] == ["no_show"]


async def test_operator_header_is_required(client):
    booking = await create_booking(client)

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as anon:
        r = await anon.post(f"/venues/{VENUE}/guests/{booking['guests'][0]['guest_id']}/no-show")
    assert r.status_code == 422
