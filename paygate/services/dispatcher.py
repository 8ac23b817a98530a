"""
设备下发服务：支付确认后调用 IoT 设备接口，失败按退避策略重试。

核心功能：
- invoke: POST JSON 到设备接口，非 2xx 或网络异常计为一次失败，
  最多 max_attempts 次，用尽后抛出 DispatchExhausted
- dispatch_to_device: 拼接设备地址和指令，每次尝试记录到 dispatch_logs 表
- shutdown: 应用关闭时中止仍在等待重试的下发

下发不做去重，指令本身是否幂等由设备端负责。
"""

import asyncio
import logging
import os
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
from dotenv import load_dotenv

from paygate.models.schemas import DeviceTarget
from paygate.services.backoff import BackoffPolicy, FixedBackoff
from paygate.services.errors import GatewayError
from paygate.services.transaction_store import TransactionStore

load_dotenv()

logger = logging.getLogger(__name__)

DEVICE_API_BASE = os.getenv("DEVICE_API_BASE", "https://iot.ioeasy.com/api")
DISPATCH_MAX_ATTEMPTS = int(os.getenv("DISPATCH_MAX_ATTEMPTS", "3"))
DISPATCH_RETRY_DELAY = float(os.getenv("DISPATCH_RETRY_DELAY", "20"))

AttemptHook = Callable[[int, Optional[int], Optional[str]], None]


class DispatchExhausted(GatewayError):
    """设备接口在全部尝试后仍失败。"""

    def __init__(self, message: str, last_error: Optional[Exception] = None, attempts: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class DispatchAborted(DispatchExhausted):
    """应用关闭，剩余重试被取消。"""
    pass


def build_command(target: DeviceTarget, amount, description: str) -> str:
    """设备指令：<pre_cmd>,<amount>,<description>。"""
    return f"{target.pre_cmd},{amount},{description}"


class DeviceDispatcher:
    """设备接口调用器，带有限次数重试。"""

    def __init__(
        self,
        backoff: Optional[BackoffPolicy] = None,
        max_attempts: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[TransactionStore] = None,
    ):
        self.backoff = backoff or FixedBackoff(DISPATCH_RETRY_DELAY)
        self.max_attempts = max_attempts or DISPATCH_MAX_ATTEMPTS
        self._transport = transport
        self._store = store or TransactionStore()
        self._stopped = False
        self._stop_events: set[asyncio.Event] = set()

    def shutdown(self) -> None:
        """中止所有正在等待重试的下发，之后的 invoke 不再发起新请求。"""
        self._stopped = True
        for event in list(self._stop_events):
            event.set()

    async def _pause(self, delay: float, stop: asyncio.Event) -> None:
        if delay > 0:
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        if stop.is_set() or self._stopped:
            raise DispatchAborted("服务关闭，取消剩余下发重试")

    @staticmethod
    def _run_hook(
        hook: Optional[AttemptHook],
        attempt: int,
        http_status: Optional[int],
        body: Optional[str],
    ) -> None:
        """执行单次尝试回调；回调出错只记日志，不影响下发结果。"""
        if hook is None:
            return
        try:
            hook(attempt, http_status, body)
        except Exception:
            logger.exception("下发尝试回调失败 (attempt=%d)", attempt)

    async def invoke(
        self,
        endpoint: str,
        payload: dict,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        on_attempt: Optional[AttemptHook] = None,
    ) -> Any:
        """
        POST payload 到 endpoint，失败重试，两次尝试之间按 backoff 等待。

        Args:
            endpoint: 完整的设备接口地址。
            payload: JSON 请求体。
            max_attempts: 最大尝试次数，默认取实例配置。
            backoff: 重试间隔策略，默认取实例配置。
            on_attempt: 每次尝试后回调 (attempt, http_status, response_body)。

        Returns:
            设备接口的 JSON 响应（非 JSON 时返回文本）。

        Raises:
            DispatchExhausted: 全部尝试失败。
            DispatchAborted: 等待重试期间应用关闭。
        """
        attempts = max_attempts or self.max_attempts
        policy = backoff or self.backoff
        if self._stopped:
            raise DispatchAborted("服务关闭，拒绝新的下发")

        stop = asyncio.Event()
        self._stop_events.add(stop)
        last_error: Optional[Exception] = None
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                for attempt in range(1, attempts + 1):
                    http_status = None
                    body = None
                    try:
                        resp = await client.post(endpoint, json=payload)
                        http_status = resp.status_code
                        body = resp.text
                        resp.raise_for_status()
                    except Exception as e:
                        last_error = e
                        if body is None:
                            body = str(e)
                        logger.warning(
                            "设备下发失败 (attempt=%d/%d): %s", attempt, attempts, e
                        )
                    else:
                        self._run_hook(on_attempt, attempt, http_status, body)
                        logger.info("设备下发成功 (attempt=%d)", attempt)
                        try:
                            return resp.json()
                        except ValueError:
                            return body

                    self._run_hook(on_attempt, attempt, http_status, body)
                    if attempt < attempts:
                        await self._pause(policy.next_delay(attempt), stop)
        except DispatchAborted as e:
            e.last_error = last_error
            e.attempts = attempt
            raise
        finally:
            self._stop_events.discard(stop)

        raise DispatchExhausted(
            f"设备接口调用 {attempts} 次后仍失败", last_error, attempts
        )

    async def dispatch_to_device(
        self,
        target: DeviceTarget,
        bill_id: int,
        amount,
        description: str,
    ) -> Any:
        """向交易绑定的设备下发指令，每次尝试写入 dispatch_logs。"""
        endpoint = f"{DEVICE_API_BASE}/{target.io_id}"
        url = f"{endpoint}?{urlencode({'apiKey': target.io_key})}"
        cmd = build_command(target, amount, description)

        def _record(attempt: int, http_status: Optional[int], body: Optional[str]) -> None:
            self._store.log_dispatch_attempt(bill_id, attempt, endpoint, http_status, body)

        logger.info("开始设备下发: bill_id=%s, io_id=%s, cmd=%s", bill_id, target.io_id, cmd)
        return await self.invoke(url, {"cmd": cmd}, on_attempt=_record)


# ── 进程内共享实例 ────────────────────────────────────────

_dispatcher: Optional[DeviceDispatcher] = None


def get_dispatcher() -> DeviceDispatcher:
    """返回共享的下发器，关闭后再次调用会重新创建。"""
    global _dispatcher
    if _dispatcher is None or _dispatcher._stopped:
        _dispatcher = DeviceDispatcher()
    return _dispatcher


def shutdown_dispatcher() -> None:
    """应用关闭时调用：中止等待中的重试。"""
    global _dispatcher
    if _dispatcher is not None:
        _dispatcher.shutdown()
        _dispatcher = None
