"""
账单创建服务：生成订单号、写入 PENDING 交易、调用 payOS 创建支付链接。
"""

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Optional

from paygate.services.bill_id import BillIdGenerator, MonotonicClockIdGenerator
from paygate.services.channel_config import get_provider_config
from paygate.services.errors import BadRequest
from paygate.services.payos_client import PayOSClient
from paygate.services.transaction_store import DuplicateKeyError, TransactionStore

logger = logging.getLogger(__name__)

DESCRIPTION_PREFIX = "CFPAYOS"
MAX_ID_RETRIES = 10

_default_id_generator = MonotonicClockIdGenerator()


def parse_amount(raw) -> int:
    """金额字符串 → 正整数（payOS 金额不带小数）。"""
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise BadRequest("金额格式无效")
    if not amount.is_finite() or amount <= 0 or amount != amount.to_integral_value():
        raise BadRequest("金额格式无效")
    return int(amount)


class BillService:
    """账单创建服务。"""

    def __init__(
        self,
        store: Optional[TransactionStore] = None,
        id_generator: Optional[BillIdGenerator] = None,
    ):
        self.store = store or TransactionStore()
        self.id_generator = id_generator or _default_id_generator

    def _insert_pending(self, machine_id, channel_id, amount: int, description: str) -> int:
        """写入 PENDING 交易，订单号冲突时换号重试。"""
        for _ in range(MAX_ID_RETRIES):
            bill_id = self.id_generator.next_id()
            try:
                self.store.create(
                    bill_id, machine_id, channel_id, int(time.time()),
                    amount=amount, description=description,
                )
                return bill_id
            except DuplicateKeyError:
                logger.warning("订单号冲突，重新生成: bill_id=%s", bill_id)
        raise DuplicateKeyError("无法生成唯一订单号，请重试")

    def create_bill(self, channel_id, machine_id, amount_raw, suffix=None) -> dict:
        """
        创建账单：
        1. 校验渠道、机器和金额
        2. 读取渠道 payOS 配置
        3. 持久化 PENDING 交易
        4. 调用 payOS 创建支付链接

        Returns:
            {"c1": orderCode, "c2": qrCode, "c3": paymentUrl}

        Raises:
            BadRequest: 参数缺失或金额无效。
            ConfigNotFound: 渠道不存在。
            UpstreamProviderError: payOS 创建失败。
        """
        if not channel_id or not machine_id:
            raise BadRequest("缺少必填参数 c1 或 c2")
        amount = parse_amount(amount_raw)
        description = f"{DESCRIPTION_PREFIX}{suffix}" if suffix else DESCRIPTION_PREFIX

        config = get_provider_config(channel_id)
        bill_id = self._insert_pending(machine_id, channel_id, amount, description)
        logger.info(
            "交易已创建: bill_id=%s, channel=%s, machine=%s, amount=%s",
            bill_id, channel_id, machine_id, amount,
        )

        link = PayOSClient(config).create_payment_link(bill_id, amount, description)
        return {
            "c1": link["orderCode"],
            "c2": link["qrCode"],
            "c3": link["paymentUrl"],
        }
