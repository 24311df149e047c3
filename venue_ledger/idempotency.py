import json
from typing import Optional


def _key(scope: str, idem_key: str) -> str:
    return f"idem:{scope}:{idem_key}"


async def get_cached_response(redis, scope: str, idem_key: str) -> Optional[dict]:
    raw = await redis.get(_key(scope, idem_key))
    return json.loads(raw) if raw else None


async def set_cached_response(redis, scope: str, idem_key: str, status_code: int, body: dict, ttl_seconds: int = 300):
    await redis.setex(_key(scope, idem_key), ttl_seconds, json.dumps({"status_code": status_code, "body": body}))
