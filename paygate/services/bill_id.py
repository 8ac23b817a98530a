"""
订单号（bill_id）生成策略。

payOS 的 orderCode 必须是整数，默认使用毫秒时间戳，
同一进程内保证严格递增；跨进程的唯一性由 transactions 主键兜底。
"""

import threading
import time
from typing import Callable, Protocol


class BillIdGenerator(Protocol):
    def next_id(self) -> int:
        ...


class MonotonicClockIdGenerator:
    """毫秒时钟订单号：时钟未前进（或回拨）时在上一个值基础上加 1。"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            candidate = int(self._clock() * 1000)
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return candidate
