import asyncio
import logging
from typing import Optional

import httpx
from redis.asyncio import Redis

from . import config

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

LAST_ID_KEY = "worker:waitlist:last_id"


async def main():
    redis = Redis.from_url(config.REDIS_URL, decode_responses=True)
    # resume where we left off so a restart doesn't resend the backlog
    last_id = await redis.get(LAST_ID_KEY) or "0-0"

    async with httpx.AsyncClient(timeout=5.0) as client:
        while True:
            resp = await redis.xread({config.NOTIFY_STREAM: last_id}, block=5000, count=50)
            if not resp:
                continue

            _, messages = resp[0]
            for msg_id, data in messages:
                last_id = msg_id
                await process_one(client, data)
                await redis.xdel(config.NOTIFY_STREAM, msg_id)

                # persist progress
                await redis.set(LAST_ID_KEY, last_id)


async def process_one(client: httpx.AsyncClient, data: dict, webhook_url: Optional[str] = None) -> bool:
    """
    Delivers one "your table is ready" notification. Returns True when the
    webhook accepted it. Failures are logged and dropped: the entry is already
    notified and staff can see it on the stale list once it expires.
    """
    url = config.NOTIFY_WEBHOOK_URL if webhook_url is None else webhook_url
    entry_id = data.get("entry_id")

    if not url:
        logger.info("waitlist notify entry_id=%s phone=%s (no webhook configured)", entry_id, data.get("phone"))
        return False

    try:
        r = await client.post(url, json={
            "entry_id": entry_id,
            "venue_id": data.get("venue_id"),
            "user_id": data.get("user_id") or None,
            "phone": data.get("phone") or None,
            "expires_at": data.get("expires_at") or None,
        })
        r.raise_for_status()
    except httpx.HTTPError:
        logger.exception("waitlist notify failed entry_id=%s", entry_id)
        return False

    logger.info("waitlist notify delivered entry_id=%s", entry_id)
    return True


if __name__ == "__main__":
    asyncio.run(main())
