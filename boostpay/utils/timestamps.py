"""
Gateway timestamp parsing.

MoMo and ZaloPay send epoch milliseconds. VNPay sends yyyyMMddHHmmss
in Vietnam local time (UTC+7, no DST).
"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union

VIETNAM_TZ = timezone(timedelta(hours=7), name="Asia/Ho_Chi_Minh")
VNPAY_DATE_FORMAT = "%Y%m%d%H%M%S"


def from_epoch_ms(value: Union[int, float, str, None]) -> Optional[datetime]:
    """Epoch milliseconds (number or numeric string) to an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    try:
        ms = int(value)
    except (TypeError, ValueError):
        return None
    if ms <= 0:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def parse_vnpay_pay_date(value: Optional[str]) -> Optional[datetime]:
    """Parse vnp_PayDate. Returns None for missing or malformed input."""
    if not value or len(value) != 14 or not value.isdigit():
        return None
    try:
        local = datetime.strptime(value, VNPAY_DATE_FORMAT)
    except ValueError:
        return None
    return local.replace(tzinfo=VIETNAM_TZ).astimezone(timezone.utc)


def format_vnpay_date(dt: datetime) -> str:
    """Format a datetime the way VNPay expects (Vietnam local time)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(VIETNAM_TZ).strftime(VNPAY_DATE_FORMAT)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from the database as UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
