import time
import re
import uuid
from datetime import datetime, timezone
import hmac
from typing import Optional

PHONE_RE = re.compile(r"[0-9]{10}")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_phone(phone: Optional[str]) -> bool:
    if not isinstance(phone, str):
        return False
    return PHONE_RE.fullmatch(phone) is not None


def mask_phone(phone: Optional[str]) -> str:
    # 9876543210 -> 987xxxxx10
    if not phone:
        return "Hidden"
    return f"{phone[:3]}xxxxx{phone[8:]}"


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_order_id() -> str:
    # ms timestamp keeps ids sortable, the suffix keeps same-ms orders apart
    return f"ORD_{int(time.time() * 1000)}{uuid.uuid4().hex[:6].upper()}"
