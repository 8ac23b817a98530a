"""
账单路由：POST /create-bill，以及支付完成 / 取消后的静态提示页。

POST /create-bill 接受 JSON 或表单：
c1=渠道 ID，c2=机器 ID，c3=金额，c4=描述后缀（可选）。
"""

import logging

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from paygate.services.bill_service import BillService
from paygate.services.errors import BadRequest, ConfigNotFound
from paygate.services.sign import ConfigError

logger = logging.getLogger(__name__)

router = APIRouter()

BILL_FIELDS = ("c1", "c2", "c3", "c4")


async def _read_params(request: Request) -> dict:
    """按 Content-Type 读取 c1~c4。"""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            raise BadRequest("请求体不是有效的 JSON")
        if not isinstance(body, dict):
            raise BadRequest("请求体必须是 JSON 对象")
        return {k: body.get(k) for k in BILL_FIELDS}
    if "application/x-www-form-urlencoded" in content_type:
        form_data = await request.form()
        params = {k: v for k, v in form_data.items() if isinstance(v, str)}
        return {k: params.get(k) for k in BILL_FIELDS}
    raise BadRequest("不支持的 Content-Type")


@router.post("/create-bill")
async def create_bill(request: Request):
    """
    创建账单接口。

    流程：读取参数 → 查渠道配置 → 写入 PENDING 交易 → 调用 payOS → 返回二维码和支付链接
    """
    try:
        params = await _read_params(request)
        logger.info(
            "开始创建账单: channel=%s, machine=%s, amount=%s",
            params["c1"], params["c2"], params["c3"],
        )
        # payOS 请求为同步调用，在线程池中执行
        result = await run_in_threadpool(
            BillService().create_bill,
            params["c1"], params["c2"], params["c3"], params["c4"],
        )
    except (BadRequest, ConfigNotFound, ConfigError) as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        logger.error("创建账单失败: %s", e)
        return JSONResponse(status_code=500, content={
            "success": False,
            "message": "创建支付链接失败",
            "error": str(e),
        })

    return JSONResponse(content=result)


@router.get("/success")
async def payment_success():
    return PlainTextResponse("支付成功！请返回首页。")


@router.get("/cancel")
async def payment_cancel():
    return PlainTextResponse("支付已取消。")
