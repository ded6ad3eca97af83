"""Per-user checkout progress kept in Redis.

One hash per user (``activity:<user_id>``) plus a sorted-set index scored by
last update, so the admin listing pages newest first.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from redis import Redis
from storefront.core.config import settings

INDEX_KEY = "activity:index"

def get_client() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)

def activity_key(user_id: int) -> str:
    return f"activity:{user_id}"

def _parse(raw: Dict[str, str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        product_ids = json.loads(raw.get("product_ids") or "[]")
    except ValueError:
        product_ids = []
    return {
        "user_id": int(raw["user_id"]),
        "product_ids": product_ids,
        "current_step": raw.get("current_step"),
        "created_at": raw.get("created_at"),
        "updated_at": raw.get("updated_at"),
    }

def get_activity(user_id: int) -> Optional[Dict[str, Any]]:
    return _parse(get_client().hgetall(activity_key(user_id)))

def upsert_activity(user_id: int, product_ids: List[int], current_step: str) -> bool:
    """Store the user's progress. Returns True when the record was created."""
    r = get_client()
    key = activity_key(user_id)
    now = datetime.now(timezone.utc)
    created = not r.exists(key)
    fields = {
        "user_id": str(user_id),
        "product_ids": json.dumps([int(p) for p in product_ids]),
        "current_step": current_step,
        "updated_at": now.isoformat(),
    }
    if created:
        fields["created_at"] = now.isoformat()
    r.hset(key, mapping=fields)
    r.zadd(INDEX_KEY, {str(user_id): now.timestamp()})
    return created

def count_activities() -> int:
    return int(get_client().zcard(INDEX_KEY))

def list_activities(offset: int, limit: int) -> List[Dict[str, Any]]:
    r = get_client()
    user_ids = r.zrevrange(INDEX_KEY, offset, offset + limit - 1)
    out = []
    for uid in user_ids:
        item = _parse(r.hgetall(activity_key(int(uid))))
        if item:
            out.append(item)
    return out
