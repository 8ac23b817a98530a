"""
支付确认服务：处理 payOS webhook，完成验签、幂等状态迁移和设备下发。

处理流程：
1. 解析 payload（格式错误 → BadRequest，不改状态）
2. 按交易绑定的渠道读取 checksum key 验签（失败 → Unauthorized，不改状态）
3. success=true → PAID，false → CANCELLED
4. 条件迁移：未生效（交易不存在或已是终态）按重放处理，返回 success=false
5. 新进入 PAID 时查找设备（找不到 → DeviceNotBound，不回滚 PAID）
6. 调用设备下发（失败只记日志，不影响对 payOS 的确认）
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from paygate.models.schemas import TransactionStatus
from paygate.services.channel_config import get_provider_config
from paygate.services.dispatcher import DeviceDispatcher, DispatchExhausted
from paygate.services.errors import BadRequest, DeviceNotBound, Unauthorized
from paygate.services.sign import verify_sign
from paygate.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

# SQLite INTEGER 上限
SQLITE_INT_MAX = 2 ** 63 - 1


class WebhookData(BaseModel):
    orderCode: int = Field(ge=1, le=SQLITE_INT_MAX)
    amount: int = Field(ge=1, le=SQLITE_INT_MAX)
    description: str
    accountNumber: Optional[str] = None
    reference: Optional[str] = None
    transactionDateTime: Optional[str] = None
    paymentLinkId: Optional[str] = None


class WebhookPayload(BaseModel):
    code: Optional[str] = None
    desc: Optional[str] = None
    success: bool
    data: WebhookData
    signature: str


class ConfirmState(str, enum.Enum):
    """单次 webhook 处理结束时所处的状态。"""

    TRANSITION_SKIPPED = "TransitionSkipped"
    TRANSITION_APPLIED = "TransitionApplied"
    DISPATCH_DONE = "DispatchDone"
    DISPATCH_FAILED = "DispatchFailed"


@dataclass
class ConfirmResult:
    success: bool
    state: ConfirmState
    bill_id: int
    status: Optional[TransactionStatus] = None
    dispatch_result: Any = None
    dispatch_error: Optional[str] = None

    def to_response(self) -> dict:
        return {"success": self.success}


def parse_payload(payload: Any) -> WebhookPayload:
    """解析 webhook 请求体。"""
    if not isinstance(payload, dict):
        raise BadRequest("webhook 请求体必须是 JSON 对象")
    try:
        return WebhookPayload.model_validate(payload)
    except ValidationError as e:
        raise BadRequest(f"webhook 请求体格式错误: {e.error_count()} 个字段无效")


class ConfirmService:
    """支付确认服务。"""

    def __init__(
        self,
        store: Optional[TransactionStore] = None,
        dispatcher: Optional[DeviceDispatcher] = None,
    ):
        self.store = store or TransactionStore()
        self.dispatcher = dispatcher or DeviceDispatcher(store=self.store)

    def _authenticate(self, webhook: WebhookPayload, pay_channel: str) -> None:
        config = get_provider_config(pay_channel)
        fields = {
            "amount": webhook.data.amount,
            "description": webhook.data.description,
            "orderCode": webhook.data.orderCode,
        }
        if not verify_sign(fields, config.checksum_key, webhook.signature):
            logger.warning(
                "webhook 签名无效: orderCode=%s, channel=%s",
                webhook.data.orderCode, pay_channel,
            )
            raise Unauthorized("webhook 签名无效")

    async def handle(self, payload: Any) -> ConfirmResult:
        """
        处理一次 webhook 投递。

        Returns:
            ConfirmResult，success 即返回给 payOS 的确认结果。

        Raises:
            BadRequest: payload 格式错误。
            Unauthorized: 签名校验失败。
            ConfigNotFound: 交易绑定的渠道不存在。
            DeviceNotBound: 已标记 PAID 但找不到设备。
        """
        webhook = parse_payload(payload)
        bill_id = webhook.data.orderCode

        txn = self.store.get(bill_id)
        if txn is None:
            logger.info("webhook 对应交易不存在，忽略: orderCode=%s", bill_id)
            return ConfirmResult(False, ConfirmState.TRANSITION_SKIPPED, bill_id)

        self._authenticate(webhook, txn.pay_channel)

        target = TransactionStatus.PAID if webhook.success else TransactionStatus.CANCELLED
        result = self.store.transition_if_pending(bill_id, target, int(time.time()))
        if not result.applied:
            logger.info("交易已是终态，按重放处理: orderCode=%s", bill_id)
            return ConfirmResult(False, ConfirmState.TRANSITION_SKIPPED, bill_id)

        if target is TransactionStatus.CANCELLED:
            return ConfirmResult(True, ConfirmState.TRANSITION_APPLIED, bill_id, target)

        device = self.store.find_device_target(bill_id)
        if device is None:
            logger.error(
                "交易已支付但未绑定设备，需人工对账: orderCode=%s, machine_id=%s",
                bill_id, txn.machine_id,
            )
            raise DeviceNotBound("找不到设备信息")

        try:
            dispatch_result = await self.dispatcher.dispatch_to_device(
                device, bill_id, webhook.data.amount, webhook.data.description
            )
        except DispatchExhausted as e:
            logger.error(
                "设备下发失败，需人工处理: orderCode=%s, attempts=%d, error=%s",
                bill_id, e.attempts, e.last_error or e,
            )
            return ConfirmResult(
                True, ConfirmState.DISPATCH_FAILED, bill_id, target,
                dispatch_error=str(e),
            )

        return ConfirmResult(
            True, ConfirmState.DISPATCH_DONE, bill_id, target,
            dispatch_result=dispatch_result,
        )
