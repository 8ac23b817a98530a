"""交易日志路由：GET /logs 返回最近 20 笔交易。"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from paygate.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

router = APIRouter()

RECENT_LIMIT = 20


@router.get("/logs")
async def recent_logs():
    try:
        rows = TransactionStore().list_recent(RECENT_LIMIT)
    except Exception as e:
        logger.error("读取交易日志失败: %s", e)
        return JSONResponse(status_code=500, content={"error": "读取交易日志失败"})
    return JSONResponse(content=[t.to_dict() for t in rows])
