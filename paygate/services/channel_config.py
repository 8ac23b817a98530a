"""支付渠道配置查询：pay_channel 表只读访问。"""

from paygate.database import get_db
from paygate.models.schemas import ProviderConfig
from paygate.services.errors import ConfigNotFound


def get_provider_config(channel_id) -> ProviderConfig:
    """
    按渠道 ID 读取 payOS 凭证。

    Raises:
        ConfigNotFound: 渠道不存在。
    """
    db = get_db()
    try:
        row = db.execute(
            "SELECT id, api_key, client_id, checksum_key FROM pay_channel WHERE id = ?",
            (channel_id,),
        ).fetchone()
    finally:
        db.close()

    if not row:
        raise ConfigNotFound("找不到 payOS 配置")

    return ProviderConfig(
        channel_id=str(row["id"]),
        api_key=row["api_key"],
        client_id=row["client_id"],
        checksum_key=row["checksum_key"],
    )
