"""
Simulate a signed payment gateway callback against a running instance.
Secrets are read from the same environment / .env as the app.

Usage:
    python scripts/simulate_webhook.py --provider momo --order BK-1001 --amount 150000
    python scripts/simulate_webhook.py --provider vnpay --order BK-1001 --amount 150000 --code 24
    python scripts/simulate_webhook.py --provider zalopay --order 261019_BK1001 --stale
    python scripts/simulate_webhook.py --provider momo --order BK-1001 --tamper
"""
import argparse
import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone, timedelta

import httpx

from boostpay.config import get_settings
from boostpay.utils.timestamps import format_vnpay_date, to_epoch_ms
from boostpay.utils.webhook_signatures import (
    sign_momo_payload,
    sign_vnpay_params,
    sign_zalopay_data,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def _flip_last_char(value: str) -> str:
    return value[:-1] + ("0" if value[-1] != "0" else "1")


async def simulate_momo(order: str, amount: int, code: str, sent_at: datetime, tamper: bool):
    settings = get_settings()
    payload = {
        "partnerCode": "MOMO",
        "orderId": order,
        "requestId": uuid.uuid4().hex,
        "amount": amount,
        "orderInfo": f"Thanh toan don {order}",
        "orderType": "momo_wallet",
        "transId": int(sent_at.timestamp()),
        "resultCode": int(code),
        "message": "Successful." if code == "0" else "Simulated result",
        "payType": "qr",
        "responseTime": to_epoch_ms(sent_at),
        "extraData": "",
    }
    signature = sign_momo_payload(settings.momo_access_key, settings.momo_secret_key, payload)
    payload["signature"] = _flip_last_char(signature) if tamper else signature

    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/webhooks/momo", json=payload)
        logger.info("MoMo response: %s %s", resp.status_code, resp.text)
        return resp


async def simulate_vnpay(order: str, amount: int, code: str, sent_at: datetime, tamper: bool):
    settings = get_settings()
    params = {
        "vnp_TmnCode": "BOOSTPAY",
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_PayDate": format_vnpay_date(sent_at),
        "vnp_OrderInfo": f"Thanh toan don {order}",
        "vnp_TransactionNo": str(int(sent_at.timestamp())),
        "vnp_ResponseCode": code,
        "vnp_TransactionStatus": code,
        "vnp_TxnRef": order,
    }
    secure_hash = sign_vnpay_params(settings.vnpay_hash_secret, params)
    params["vnp_SecureHash"] = _flip_last_char(secure_hash) if tamper else secure_hash

    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.get(f"{BASE_URL}/api/v1/webhooks/vnpay", params=params)
        logger.info("VNPay response: %s %s", resp.status_code, resp.text)
        return resp


async def simulate_zalopay(order: str, amount: int, code: str, sent_at: datetime, tamper: bool):
    settings = get_settings()
    data = json.dumps({
        "app_id": 2553,
        "app_trans_id": order,
        "app_user": "boostpay_user",
        "app_time": to_epoch_ms(sent_at) - 30_000,
        "amount": amount,
        "embed_data": "{}",
        "item": "[]",
        "zp_trans_id": int(sent_at.timestamp()),
        "server_time": to_epoch_ms(sent_at),
        "channel": 38,
        "status": int(code),
    })
    mac = sign_zalopay_data(settings.zalopay_key2, data)
    form = {"data": data, "mac": _flip_last_char(mac) if tamper else mac}

    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/webhooks/zalopay", data=form)
        logger.info("ZaloPay response: %s %s", resp.status_code, resp.text)
        return resp


DEFAULT_SUCCESS_CODES = {"momo": "0", "vnpay": "00", "zalopay": "1"}


async def main():
    global BASE_URL
    parser = argparse.ArgumentParser(description="Simulate payment gateway callbacks")
    parser.add_argument("--provider", required=True, choices=["momo", "vnpay", "zalopay"])
    parser.add_argument("--order", required=True, help="Booking payment reference")
    parser.add_argument("--amount", type=int, default=150000, help="Amount in VND")
    parser.add_argument("--code", default=None, help="Gateway result code (default: success)")
    parser.add_argument("--stale", action="store_true", help="Send a 10-minute-old timestamp")
    parser.add_argument("--tamper", action="store_true", help="Corrupt the signature")
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    BASE_URL = args.base_url
    code = args.code or DEFAULT_SUCCESS_CODES[args.provider]
    sent_at = datetime.now(timezone.utc)
    if args.stale:
        sent_at -= timedelta(minutes=10)

    handlers = {
        "momo": simulate_momo,
        "vnpay": simulate_vnpay,
        "zalopay": simulate_zalopay,
    }
    await handlers[args.provider](args.order, args.amount, code, sent_at, args.tamper)


if __name__ == "__main__":
    asyncio.run(main())
