"""
webhook 路由：POST /bill-confirm

接收 payOS 支付结果通知。已处理、重放以及设备下发失败的通知都返回 200，
避免 payOS 因下游设备故障反复重投；下发失败通过日志和 dispatch_logs 跟进。
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from paygate.services.confirm_service import ConfirmService
from paygate.services.dispatcher import get_dispatcher
from paygate.services.errors import BadRequest, ConfigNotFound, Unauthorized
from paygate.services.sign import ConfigError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/bill-confirm")
async def bill_confirm(request: Request):
    """支付确认 webhook。"""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook 请求体不是有效的 JSON")
        return JSONResponse(status_code=400, content={
            "success": False, "error": "请求体不是有效的 JSON",
        })

    svc = ConfirmService(dispatcher=get_dispatcher())
    try:
        result = await svc.handle(payload)
    except BadRequest as e:
        logger.warning("webhook 请求体无效: %s", e)
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
    except Unauthorized as e:
        return JSONResponse(status_code=401, content={"success": False, "error": str(e)})
    except (ConfigNotFound, ConfigError) as e:
        logger.error("webhook 渠道配置不可用: %s", e)
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
    except Exception:
        logger.exception("webhook 处理异常")
        return JSONResponse(status_code=500, content={
            "success": False, "error": "webhook 处理异常",
        })

    logger.info(
        "webhook 处理完成: orderCode=%s, state=%s",
        result.bill_id, result.state.value,
    )
    return JSONResponse(content=result.to_response())
