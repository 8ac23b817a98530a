"""HMAC-SHA256 签名生成与验证模块（payOS 校验规则）。"""

import hashlib
import hmac
import os

from dotenv import load_dotenv

from paygate.services.errors import GatewayError

load_dotenv()

# cancelUrl / returnUrl 固定使用与 payOS 约定的占位值，否则上游验签不通过
PLACEHOLDER_URL = os.getenv("PAYOS_PLACEHOLDER_URL", "abc")

# 参与签名的字段及顺序
SIGN_FIELDS = ("amount", "cancelUrl", "description", "orderCode", "returnUrl")


class ConfigError(GatewayError):
    """签名密钥缺失。"""
    pass


def _build_sign_string(fields: dict) -> str:
    values = dict(fields)
    values["cancelUrl"] = PLACEHOLDER_URL
    values["returnUrl"] = PLACEHOLDER_URL
    return "&".join(f"{k}={values.get(k, '')}" for k in SIGN_FIELDS)


def generate_sign(fields: dict, secret: str) -> str:
    """
    生成 HMAC-SHA256 签名。

    1. 按 amount, cancelUrl, description, orderCode, returnUrl 固定顺序取值
    2. cancelUrl / returnUrl 替换为占位值
    3. 拼接 key=value 并以 & 连接（值不 URL 编码）
    4. 使用渠道 checksum key 计算 HMAC-SHA256

    返回小写 64 位十六进制签名字符串。

    Raises:
        ConfigError: secret 为空。
    """
    if not secret:
        raise ConfigError("签名密钥未配置")
    data = _build_sign_string(fields)
    return hmac.new(
        secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_sign(fields: dict, secret: str, sign: str) -> bool:
    """验证签名是否正确（常量时间比较）。"""
    expected = generate_sign(fields, secret)
    if not isinstance(sign, str) or not sign:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), sign.encode("utf-8"))
