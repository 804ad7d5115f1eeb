"""
Webhook payload schemas - verified input from each payment gateway.
Each gateway payload normalizes into a PaymentNotification before reconciliation,
so the reconciliation engine never sees provider-specific shapes.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Optional, Union
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from boostpay.utils.timestamps import from_epoch_ms, parse_vnpay_pay_date


def _to_str(value: Any) -> Any:
    # Gateways send ids as JSON numbers or strings interchangeably
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


IdStr = Annotated[str, BeforeValidator(_to_str)]


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class PaymentNotification(BaseModel):
    """Provider-independent view of a verified payment callback."""
    provider: str
    order_ref: str
    gateway_transaction_id: str
    amount: int  # VND
    outcome: PaymentOutcome
    result_code: str
    message: Optional[str] = None
    paid_at: Optional[datetime] = None
    raw: dict = Field(default_factory=dict)


# MoMo resultCode values that are definitive failures. 0 is success; anything
# else (1000 awaiting confirmation, 7000/7002 processing, 9000 authorized, ...)
# is treated as still pending.
MOMO_FAILURE_CODES = frozenset({
    1001, 1002, 1003, 1004, 1005, 1006, 1007, 1017, 1026, 1080, 1081, 4001, 4100,
})

# vnp_ResponseCode values that are definitive failures. "07" (suspected fraud,
# deducted) is left pending for the follow-up callback.
VNPAY_FAILURE_CODES = frozenset({
    "09", "10", "11", "12", "13", "24", "51", "65", "75", "79", "99",
})

# ZaloPay callback status: 1 success, 2 failed, 3 processing
ZALOPAY_STATUS_SUCCESS = 1
ZALOPAY_STATUS_FAILED = 2


class MoMoWebhookPayload(BaseModel):
    """MoMo IPN (JSON body)."""
    model_config = ConfigDict(extra="allow")

    partnerCode: str
    orderId: IdStr
    requestId: IdStr
    amount: int
    orderInfo: str = ""
    orderType: str = ""
    transId: IdStr
    resultCode: int
    message: str = ""
    payType: str = ""
    responseTime: Optional[int] = None  # epoch ms
    extraData: str = ""
    signature: str

    @property
    def event_id(self) -> str:
        return f"momo_{self.orderId}_{self.transId}"

    @property
    def gateway_timestamp(self) -> Optional[datetime]:
        return from_epoch_ms(self.responseTime)

    def outcome(self) -> PaymentOutcome:
        if self.resultCode == 0:
            return PaymentOutcome.SUCCEEDED
        if self.resultCode in MOMO_FAILURE_CODES:
            return PaymentOutcome.FAILED
        return PaymentOutcome.PENDING

    def to_notification(self) -> PaymentNotification:
        return PaymentNotification(
            provider="momo",
            order_ref=self.orderId,
            gateway_transaction_id=self.transId,
            amount=self.amount,
            outcome=self.outcome(),
            result_code=str(self.resultCode),
            message=self.message or None,
            paid_at=self.gateway_timestamp,
            raw=self.model_dump(exclude={"signature"}),
        )


class VNPayWebhookParams(BaseModel):
    """VNPay IPN query parameters (allow-listed vnp_* keys only)."""
    vnp_TmnCode: str = ""
    vnp_Amount: int  # VND x 100
    vnp_BankCode: Optional[str] = None
    vnp_BankTranNo: Optional[str] = None
    vnp_CardType: Optional[str] = None
    vnp_PayDate: Optional[str] = None  # yyyyMMddHHmmss, Vietnam time
    vnp_OrderInfo: str = ""
    vnp_TransactionNo: IdStr
    vnp_ResponseCode: str
    vnp_TransactionStatus: Optional[str] = None
    vnp_TxnRef: IdStr

    @property
    def event_id(self) -> str:
        return f"vnpay_{self.vnp_TxnRef}_{self.vnp_TransactionNo}"

    @property
    def gateway_timestamp(self) -> Optional[datetime]:
        return parse_vnpay_pay_date(self.vnp_PayDate)

    @property
    def amount_vnd(self) -> int:
        return self.vnp_Amount // 100

    def outcome(self) -> PaymentOutcome:
        code = self.vnp_ResponseCode
        txn_status = self.vnp_TransactionStatus
        if code == "00":
            if txn_status in (None, "", "00"):
                return PaymentOutcome.SUCCEEDED
            if txn_status == "02":
                return PaymentOutcome.FAILED
            return PaymentOutcome.PENDING
        if code in VNPAY_FAILURE_CODES:
            return PaymentOutcome.FAILED
        return PaymentOutcome.PENDING

    def to_notification(self) -> PaymentNotification:
        return PaymentNotification(
            provider="vnpay",
            order_ref=self.vnp_TxnRef,
            gateway_transaction_id=self.vnp_TransactionNo,
            amount=self.amount_vnd,
            outcome=self.outcome(),
            result_code=self.vnp_ResponseCode,
            message=f"VNPay response code {self.vnp_ResponseCode}",
            paid_at=self.gateway_timestamp,
            raw=self.model_dump(exclude_none=True),
        )


class ZaloPayCallbackData(BaseModel):
    """Parsed `data` field of a ZaloPay callback."""
    model_config = ConfigDict(extra="allow")

    app_id: Optional[int] = None
    app_trans_id: IdStr
    app_user: Optional[str] = None
    app_time: Optional[int] = None
    amount: int
    embed_data: Optional[str] = None
    item: Optional[str] = None
    zp_trans_id: IdStr
    server_time: Optional[int] = None  # epoch ms
    channel: Optional[int] = None
    discount_amount: Optional[int] = None
    user_fee_amount: Optional[int] = None
    # ZaloPay only calls back for settled payments; absent status means success
    status: Optional[int] = None

    @property
    def event_id(self) -> str:
        return f"zalopay_{self.app_trans_id}_{self.zp_trans_id}"

    @property
    def gateway_timestamp(self) -> Optional[datetime]:
        return from_epoch_ms(self.server_time)

    def outcome(self) -> PaymentOutcome:
        if self.status is None or self.status == ZALOPAY_STATUS_SUCCESS:
            return PaymentOutcome.SUCCEEDED
        if self.status == ZALOPAY_STATUS_FAILED:
            return PaymentOutcome.FAILED
        return PaymentOutcome.PENDING

    def to_notification(self) -> PaymentNotification:
        status = ZALOPAY_STATUS_SUCCESS if self.status is None else self.status
        return PaymentNotification(
            provider="zalopay",
            order_ref=self.app_trans_id,
            gateway_transaction_id=self.zp_trans_id,
            amount=self.amount,
            outcome=self.outcome(),
            result_code=str(status),
            message=f"ZaloPay status {status}",
            paid_at=self.gateway_timestamp,
            raw=self.model_dump(),
        )


ProviderPayload = Union[MoMoWebhookPayload, VNPayWebhookParams, ZaloPayCallbackData]

PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "momo": MoMoWebhookPayload,
    "vnpay": VNPayWebhookParams,
    "zalopay": ZaloPayCallbackData,
}


def parse_provider_payload(provider: str, payload: dict) -> ProviderPayload:
    """Validate a stored or inbound payload against the provider's schema."""
    model = PAYLOAD_MODELS.get(provider)
    if model is None:
        raise ValueError(f"Unsupported provider: {provider}")
    return model.model_validate(payload)


def notification_from_event(provider: str, payload: dict) -> PaymentNotification:
    """Normalize a stored webhook payload for reconciliation."""
    return parse_provider_payload(provider, payload).to_notification()
