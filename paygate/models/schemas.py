"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TransactionStatus(str, Enum):
    """交易状态：PENDING 为初始状态，PAID / CANCELLED 为终态。"""

    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING

    def can_transition(self, target: "TransactionStatus") -> bool:
        """唯一合法的状态迁移：PENDING → PAID / CANCELLED。"""
        return self is TransactionStatus.PENDING and target.is_terminal


@dataclass
class Transaction:
    bill_id: int
    machine_id: str
    pay_channel: str
    status: TransactionStatus = TransactionStatus.PENDING
    amount: Optional[int] = None
    description: Optional[str] = None
    time_create: Optional[int] = None
    time_pay: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "bill_id": self.bill_id,
            "machine_id": self.machine_id,
            "pay_channel": self.pay_channel,
            "status": self.status.value,
            "amount": self.amount,
            "description": self.description,
            "time_create": self.time_create,
            "time_pay": self.time_pay,
        }


@dataclass(frozen=True)
class ProviderConfig:
    channel_id: str
    api_key: str
    client_id: str
    checksum_key: str


@dataclass(frozen=True)
class DeviceTarget:
    io_id: str
    io_key: str
    pre_cmd: str


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    status: TransactionStatus


@dataclass
class DispatchLog:
    id: int
    bill_id: int
    attempt: int
    url: str
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    created_at: Optional[str] = None
