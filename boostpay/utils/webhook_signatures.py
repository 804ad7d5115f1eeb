"""
Webhook signature validation - verify payment gateway callbacks are authentic.

Supported providers:
- MoMo: HMAC-SHA256 over a fixed, alphabetically ordered key=value string
- VNPay: HMAC-SHA512 over the sorted, form-encoded vnp_* parameters
- ZaloPay: HMAC-SHA256 over the raw `data` string with key2

Every comparison is constant-time. An empty secret or a missing signature
is always a rejection, never a pass.
"""
import hashlib
import hmac
import logging
from typing import Mapping, Optional
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

# Order is part of the MoMo contract - do not sort or extend
MOMO_SIGNATURE_FIELDS = (
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)

VNPAY_HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")


def _hmac_hex(secret: str, message: bytes, digestmod) -> str:
    return hmac.new(secret.encode("utf-8"), message, digestmod).hexdigest()


def _compare_hex(expected: str, supplied: Optional[str]) -> bool:
    """Constant-time compare of two hex digests, case-insensitive."""
    if not supplied:
        return False
    return hmac.compare_digest(expected.lower(), str(supplied).strip().lower())


def _momo_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def build_momo_raw_signature(access_key: str, payload: Mapping) -> str:
    """Build the canonical string MoMo signs for an IPN callback."""
    parts = [f"accessKey={access_key}"]
    for field in MOMO_SIGNATURE_FIELDS:
        parts.append(f"{field}={_momo_value(payload.get(field))}")
    return "&".join(parts)


def verify_momo_signature(
    access_key: str,
    secret_key: str,
    payload: Mapping,
) -> bool:
    """
    Validate a MoMo IPN signature.
    Returns True if valid, False if invalid or unverifiable.
    """
    signature = payload.get("signature")
    if not secret_key or not signature:
        return False

    raw = build_momo_raw_signature(access_key, payload)
    expected = _hmac_hex(secret_key, raw.encode("utf-8"), hashlib.sha256)
    return _compare_hex(expected, signature)


def build_vnpay_sign_data(params: Mapping[str, str]) -> str:
    """
    Sorted, form-encoded query string VNPay signs.
    Hash fields and absent (None) values are excluded.
    """
    items = sorted(
        (key, str(value))
        for key, value in params.items()
        if key.startswith("vnp_")
        and key not in VNPAY_HASH_FIELDS
        and value is not None
    )
    return urlencode(items)


def verify_vnpay_signature(hash_secret: str, params: Mapping[str, str]) -> bool:
    """Validate vnp_SecureHash (HMAC-SHA512) against the remaining vnp_* params."""
    secure_hash = params.get("vnp_SecureHash")
    if not hash_secret or not secure_hash:
        return False

    sign_data = build_vnpay_sign_data(params)
    expected = _hmac_hex(hash_secret, sign_data.encode("utf-8"), hashlib.sha512)
    return _compare_hex(expected, secure_hash)


def verify_zalopay_mac(key2: str, data: Optional[str], mac: Optional[str]) -> bool:
    """Validate a ZaloPay callback mac: HMAC-SHA256(key2, data)."""
    if not key2 or not data or not mac:
        return False

    expected = _hmac_hex(key2, data.encode("utf-8"), hashlib.sha256)
    return _compare_hex(expected, mac)


def sign_momo_payload(access_key: str, secret_key: str, payload: Mapping) -> str:
    """Compute the MoMo signature for a payload (used by test fixtures and scripts)."""
    raw = build_momo_raw_signature(access_key, payload)
    return _hmac_hex(secret_key, raw.encode("utf-8"), hashlib.sha256)


def sign_vnpay_params(hash_secret: str, params: Mapping[str, str]) -> str:
    """Compute vnp_SecureHash for a parameter set."""
    sign_data = build_vnpay_sign_data(params)
    return _hmac_hex(hash_secret, sign_data.encode("utf-8"), hashlib.sha512)


def sign_zalopay_data(key2: str, data: str) -> str:
    """Compute the ZaloPay callback mac for a data string."""
    return _hmac_hex(key2, data.encode("utf-8"), hashlib.sha256)
