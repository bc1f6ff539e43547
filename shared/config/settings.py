import os
from functools import lru_cache
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

# Every calendar-date comparison (pickup status, scheduling, list filters)
# happens in this zone, never in the host's ambient local time.
ORDERS_TIMEZONE = os.getenv("ORDERS_TIMEZONE", "Australia/Sydney")

PICKUP_NOTES_MAX_LENGTH = 500

ORDER_CREATE_RATE_LIMIT = os.getenv("ORDER_CREATE_RATE_LIMIT", "30/minute")

REALTIME_AUTH_TIMEOUT_SECONDS = float(os.getenv("REALTIME_AUTH_TIMEOUT_SECONDS", "5"))
REALTIME_SEND_QUEUE_SIZE = int(os.getenv("REALTIME_SEND_QUEUE_SIZE", "256"))


@lru_cache(maxsize=None)
def server_timezone() -> ZoneInfo:
    return ZoneInfo(ORDERS_TIMEZONE)
