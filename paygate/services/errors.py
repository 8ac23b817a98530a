"""网关异常分类：服务层抛出，路由层按类型映射为 HTTP 响应。"""


class GatewayError(Exception):
    """网关异常基类。"""
    pass


class BadRequest(GatewayError):
    """请求参数缺失、格式错误或不受支持。"""
    pass


class Unauthorized(GatewayError):
    """webhook 签名校验失败。"""
    pass


class ConfigNotFound(GatewayError):
    """支付渠道或设备配置不存在。"""
    pass


class DeviceNotBound(ConfigNotFound):
    """交易已标记 PAID，但找不到绑定的设备，需人工对账。"""
    pass
