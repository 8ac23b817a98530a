"""
payOS API 客户端：创建支付链接。

请求头携带渠道的 x-client-id / x-api-key，
请求体按 HMAC-SHA256 规则签名（见 paygate.services.sign）。
"""

import json
import logging
import os
import time

import httpx
from dotenv import load_dotenv

from paygate.models.schemas import ProviderConfig
from paygate.services.errors import GatewayError
from paygate.services.sign import PLACEHOLDER_URL, generate_sign

load_dotenv()

logger = logging.getLogger(__name__)

PAYOS_API_URL = os.getenv(
    "PAYOS_API_URL", "https://api-merchant.payos.vn/v2/payment-requests"
)

# 支付链接有效期 7 天
LINK_TTL_SECONDS = 7 * 24 * 60 * 60


class UpstreamProviderError(GatewayError):
    """payOS 拒绝请求或响应异常。"""
    pass


class PayOSClient:
    """payOS 支付链接客户端。"""

    def __init__(self, config: ProviderConfig):
        self.config = config

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-client-id": self.config.client_id,
            "x-api-key": self.config.api_key,
        }

    def build_request_body(self, order_code: int, amount: int, description: str) -> dict:
        """构建已签名的创建请求体。"""
        fields = {
            "orderCode": order_code,
            "amount": amount,
            "description": description,
        }
        signature = generate_sign(fields, self.config.checksum_key)
        return {
            "orderCode": order_code,
            "amount": amount,
            "description": description,
            "returnUrl": PLACEHOLDER_URL,
            "cancelUrl": PLACEHOLDER_URL,
            "expiredAt": int(time.time()) + LINK_TTL_SECONDS,
            "signature": signature,
        }

    def create_payment_link(self, order_code: int, amount: int, description: str) -> dict:
        """
        调用 payOS 创建支付链接。

        Returns:
            dict: {"orderCode": int, "qrCode": str, "paymentUrl": str}

        Raises:
            UpstreamProviderError: 请求失败、非 2xx 或响应缺少 data 字段。
        """
        body = self.build_request_body(order_code, amount, description)

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(PAYOS_API_URL, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise UpstreamProviderError(f"请求 payOS 失败: {e}")

        if response.status_code >= 400:
            raise UpstreamProviderError(f"创建支付链接失败: {response.text}")

        try:
            result = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise UpstreamProviderError(f"解析 payOS 响应失败: {e}")

        data = result.get("data") if isinstance(result, dict) else None
        if not data:
            desc = result.get("desc", "未知错误") if isinstance(result, dict) else "未知错误"
            raise UpstreamProviderError(f"payOS 返回错误: {desc}")

        logger.info("payOS 支付链接已创建: orderCode=%s", data.get("orderCode"))
        return {
            "orderCode": data.get("orderCode"),
            "qrCode": data.get("qrCode"),
            "paymentUrl": data.get("checkoutUrl"),
        }
