from datetime import datetime, timedelta, timezone

import pytest

from tests.helpers import OTHER_VENUE, VENUE
from venue_ledger import config
from venue_ledger.errors import AlreadyResolvedError
from venue_ledger.waitlist import (
    SeatIntervalTurnover,
    WaitEstimator,
    WaitlistQueue,
    estimate_wait_minutes,
    format_wait,
)

T0 = datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc)


class StepClock:
    """Hands out T0, T0+step, T0+2*step, ... unless pinned with set()."""

    def __init__(self, start=T0, step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def set(self, moment):
        self.now = moment

    def __call__(self):
        current = self.now
        self.now = current + self.step
        return current


async def _join(client, party_size=2, venue_id=VENUE, **extra):
    r = await client.post(f"/venues/{venue_id}/waitlist", json={"party_size": party_size, **extra})
    assert r.status_code == 200, r.text
    return r.json()["entry"]


async def test_join_reports_position_and_default_estimate(client):
    first = await _join(client)
    second = await _join(client, party_size=4)

    assert first["position"] == 1
    assert second["position"] == 2
    assert second["estimated_wait_minutes"] == 30
    assert second["estimated_wait"] == "~30 min"


async def test_positions_shift_when_someone_leaves(client):
    a = await _join(client)
    b = await _join(client)
    c = await _join(client)

    r = await client.post(f"/venues/{VENUE}/waitlist/{a['entry_id']}/remove")
    assert r.json()["entry"]["status"] == "removed"
    await client.post(f"/venues/{VENUE}/waitlist/{b['entry_id']}/notify")

    listing = (await client.get(f"/venues/{VENUE}/waitlist")).json()
    by_id = {e["entry_id"]: e for e in listing}
    assert a["entry_id"] not in by_id
    # notified parties keep their place in the listing but drop out of the ranking
    assert by_id[b["entry_id"]]["status"] == "notified"
    assert by_id[b["entry_id"]]["position"] is None
    assert by_id[c["entry_id"]]["position"] == 1


async def test_queues_are_per_venue(client):
    await _join(client, venue_id=OTHER_VENUE)
    mine = await _join(client)
    assert mine["position"] == 1


async def test_terminal_entries_refuse_further_moves(client):
    entry = await _join(client)
    await client.post(f"/venues/{VENUE}/waitlist/{entry['entry_id']}/seat")

    r = await client.post(f"/venues/{VENUE}/waitlist/{entry['entry_id']}/notify")
    assert r.status_code == 409
    assert r.json()["reason_code"] == "ALREADY_RESOLVED"

    wrong = await client.post(f"/venues/{OTHER_VENUE}/waitlist/{entry['entry_id']}/remove")
    assert wrong.status_code == 403


async def test_party_size_must_be_positive(client):
    r = await client.post(f"/venues/{VENUE}/waitlist", json={"party_size": 0})
    assert r.status_code == 422


async def test_notify_sets_expiry_and_enqueues(client, fake_redis, monkeypatch):
    monkeypatch.setattr(config, "NOTIFY_STREAM", "waitlist_notifications")
    entry = await _join(client, phone="+15550100")

    r = await client.post(f"/venues/{VENUE}/waitlist/{entry['entry_id']}/notify")
    data = r.json()["entry"]
    notified = datetime.fromisoformat(data["notified_at"])
    expires = datetime.fromisoformat(data["expires_at"])
    assert expires - notified == timedelta(minutes=15)

    [(_, fields)] = fake_redis.streams["waitlist_notifications"]
    assert fields["entry_id"] == entry["entry_id"]
    assert fields["phone"] == "+15550100"


def test_estimate_uses_notify_latency_of_seated_parties(db):
    clock = StepClock()
    queue = WaitlistQueue(db, clock=clock)

    for latency in (10, 20):
        start = clock.now
        entry = queue.join(VENUE, 2)
        clock.set(start + timedelta(minutes=latency))
        queue.notify(VENUE, entry["entry_id"], "staff_1")
        queue.seat(VENUE, entry["entry_id"], "staff_1")

    estimate = queue.estimate(VENUE, 3)
    assert estimate["avg_turnover_minutes"] == 15
    assert estimate["estimated_wait_minutes"] == 45
    assert estimate["estimated_wait"] == "~45 min"


def test_estimate_falls_back_to_default_without_history(db):
    queue = WaitlistQueue(db, clock=StepClock())
    # seated without a notify: not a latency sample
    entry = queue.join(VENUE, 2)
    queue.seat(VENUE, entry["entry_id"], "staff_1")

    assert queue.estimate(VENUE, 3)["estimated_wait_minutes"] == 45


def test_seat_interval_policy(db):
    clock = StepClock()
    queue = WaitlistQueue(db, clock=clock, estimator=WaitEstimator(SeatIntervalTurnover()))
    entries = [queue.join(VENUE, 2) for _ in range(3)]
    for n, entry in enumerate(entries):
        clock.set(T0 + timedelta(minutes=10 + 6 * n))
        queue.seat(VENUE, entry["entry_id"], "staff_1")

    assert queue.estimate(VENUE, 2)["estimated_wait_minutes"] == 12


def test_stale_notified_entries(db):
    clock = StepClock()
    queue = WaitlistQueue(db, clock=clock)
    entry = queue.join(VENUE, 2)
    fresh = queue.join(VENUE, 2)
    queue.notify(VENUE, entry["entry_id"], "staff_1")

    clock.set(T0 + timedelta(minutes=30))
    queue.notify(VENUE, fresh["entry_id"], "staff_1")
    stale = queue.stale_notified(VENUE)
    assert [e["entry_id"] for e in stale] == [entry["entry_id"]]

    with pytest.raises(AlreadyResolvedError):
        queue.notify(VENUE, entry["entry_id"], "staff_1")


def test_estimate_and_format_helpers():
    assert estimate_wait_minutes(3, 15) == 45
    assert estimate_wait_minutes(1, 2.5) == 3
    assert format_wait(None) == "calculating..."
    assert format_wait(4) == "less than 5 min"
    assert format_wait(5) == "~5 min"
    assert format_wait(59) == "~59 min"
    assert format_wait(60) == "~1 hr"
    assert format_wait(135) == "~2 hr 15 min"
