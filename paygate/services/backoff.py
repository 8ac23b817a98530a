"""设备下发重试间隔策略。"""

import random
from typing import Protocol


class BackoffPolicy(Protocol):
    def next_delay(self, attempt: int) -> float:
        """第 attempt 次（从 1 开始）失败后、下一次尝试前的等待秒数。"""
        ...


class FixedBackoff:
    """固定间隔，默认 20 秒。"""

    def __init__(self, delay: float = 20.0):
        self.delay = delay

    def next_delay(self, attempt: int) -> float:
        return self.delay


class ExponentialBackoff:
    """指数退避：base * factor^(attempt-1)，上限 max_delay，可选全抖动。"""

    def __init__(
        self,
        base: float = 1.0,
        factor: float = 2.0,
        max_delay: float = 60.0,
        jitter: bool = False,
    ):
        self.base = base
        self.factor = factor
        self.max_delay = max_delay
        self.jitter = jitter

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base * self.factor ** max(attempt - 1, 0), self.max_delay)
        if self.jitter:
            return random.uniform(0, delay)
        return delay
