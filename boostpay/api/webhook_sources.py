"""
Gateway wire-format readers.
Each function pulls the provider's fields out of the HTTP request without
interpreting them; signature checks run on exactly what these return.
"""
import json
import logging
from typing import Iterable, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

# Known VNPay IPN keys. Anything else in the query string is dropped before
# hashing or storage.
VNPAY_ALLOWED_PARAMS = frozenset({
    "vnp_TmnCode",
    "vnp_Amount",
    "vnp_BankCode",
    "vnp_BankTranNo",
    "vnp_CardType",
    "vnp_PayDate",
    "vnp_OrderInfo",
    "vnp_TransactionNo",
    "vnp_ResponseCode",
    "vnp_TransactionStatus",
    "vnp_TxnRef",
    "vnp_SecureHashType",
    "vnp_SecureHash",
})


def parse_momo_body(body: bytes) -> Optional[dict]:
    """Decode a MoMo IPN body. None when it is not a JSON object."""
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("MoMo webhook body is not valid JSON")
        return None
    if not isinstance(payload, dict):
        logger.warning("MoMo webhook body is not a JSON object")
        return None
    return payload


def extract_vnpay_params(items: Iterable[tuple[str, str]]) -> dict[str, str]:
    """Copy allow-listed vnp_* keys; the first occurrence of a key wins."""
    params: dict[str, str] = {}
    dropped = []
    for key, value in items:
        if key in VNPAY_ALLOWED_PARAMS:
            params.setdefault(key, value)
        elif key.startswith("vnp_"):
            dropped.append(key)
    if dropped:
        logger.info("Dropped unexpected VNPay params: %s", ", ".join(sorted(set(dropped))))
    return params


async def read_vnpay_params(request: Request) -> dict[str, str]:
    """Query params, plus form fields for POST callbacks."""
    items = list(request.query_params.multi_items())
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            items.extend((key, value) for key, value in form.multi_items() if isinstance(value, str))
    return extract_vnpay_params(items)


async def read_zalopay_fields(request: Request) -> tuple[Optional[str], Optional[str]]:
    """(data, mac) from a form or JSON callback body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = json.loads(await request.body())
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("ZaloPay webhook body is not valid JSON")
            return None, None
        if not isinstance(body, dict):
            return None, None
        data, mac = body.get("data"), body.get("mac")
    else:
        form = await request.form()
        data, mac = form.get("data"), form.get("mac")

    if not isinstance(data, str) or not isinstance(mac, str):
        return None, None
    return data or None, mac or None


def parse_zalopay_data(data: str) -> dict:
    """Decode the signed ZaloPay data string. Raises ValueError on garbage."""
    parsed = json.loads(data)
    if not isinstance(parsed, dict):
        raise ValueError("ZaloPay data is not a JSON object")
    return parsed
