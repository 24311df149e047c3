from datetime import date

import httpx

VENUE = "venue_1"
OTHER_VENUE = "venue_2"


async def create_booking(client: httpx.AsyncClient, venue_id=VENUE, party_size=2, with_guests=True, **extra) -> dict:
    body = {
        "venue_id": venue_id,
        "booking_date": str(extra.pop("booking_date", date.today())),
        "party_size": party_size,
        "guest_name": "Dana",
        "with_guests": with_guests,
        **extra,
    }
    r = await client.post("/admin/bookings", json=body)
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data


async def add_guest(client: httpx.AsyncClient, booking_id: str, venue_id=VENUE, name="Plus one") -> dict:
    r = await client.post(f"/admin/venues/{venue_id}/bookings/{booking_id}/guests", json={"guest_name": name})
    r.raise_for_status()
    return r.json()


async def create_package(client: httpx.AsyncClient, items, venue_id=VENUE, name="Bottle service") -> dict:
    r = await client.post("/admin/packages", json={"venue_id": venue_id, "name": name, "price": 300, "items": items})
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data


async def create_purchase(client: httpx.AsyncClient, package_id: str, guest_count=1) -> dict:
    r = await client.post(f"/admin/packages/{package_id}/purchases", json={"guest_name": "Sam", "guest_count": guest_count})
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data


async def package_with_purchase(client: httpx.AsyncClient, items, venue_id=VENUE, guest_count=1):
    """Returns (purchase, {item_name: item_id})."""
    package = await create_package(client, items, venue_id=venue_id)
    purchase = await create_purchase(client, package["package_id"], guest_count=guest_count)
    return purchase, {i["item_name"]: i["package_item_id"] for i in package["items"]}


async def resolve(client: httpx.AsyncClient, code: str, venue_id=VENUE) -> httpx.Response:
    return await client.post(f"/venues/{venue_id}/resolve", json={"code": code})
