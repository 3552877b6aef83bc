"""
Fixed-window request limits per user and endpoint, counted in MongoDB.
"""

import logging
import math
from datetime import datetime
from typing import Callable, Dict, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

from database import current_time
from errors import RateLimited

logger = logging.getLogger(__name__)

# endpoint -> (max requests, window in seconds)
RATE_LIMITS: Dict[str, Tuple[int, int]] = {
    "orders.create": (5, 60),
    "chat.send": (15, 60),
    "vouchers.add": (5, 60),
    "menu.add": (15, 60),
    "auth.login": (10, 15 * 60),
    "default": (30, 60),
}


def check_rate_limit(database: Database, user_id: str, endpoint: str, clock: Callable[[], datetime] = current_time) -> int:
    """
    Count one request and raise RateLimited once the window is full.

    Windows are aligned to multiples of their length since the epoch; each
    window gets its own counter document so the increment stays atomic.
    """
    max_requests, window_seconds = RATE_LIMITS.get(endpoint, RATE_LIMITS["default"])
    now = clock().timestamp()
    window_start = int(now // window_seconds * window_seconds)

    record = database["ratelimit"].find_one_and_update(
        {"user_id": user_id or "anonymous", "endpoint": endpoint, "window_start": window_start},
        {"$inc": {"count": 1}, "$set": {"last_request_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    if record["count"] > max_requests:
        minutes = max(1, math.ceil((window_start + window_seconds - now) / 60))
        logger.warning(f"Rate limit hit: {endpoint} for {user_id} ({record['count']}/{max_requests})")
        raise RateLimited(
            f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds // 60} minute(s). "
            f"Please try again in {minutes} minute(s)."
        )
    return record["count"]
