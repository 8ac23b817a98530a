"""
交易存储：transactions 表的写入、条件状态迁移和查询。

状态迁移只通过一条带 status = 'PENDING' 条件的 UPDATE 完成，
同一 bill_id 的并发 webhook 中只有一个会看到 applied=True。
"""

import logging
import sqlite3
from typing import Optional

from paygate.database import get_db
from paygate.models.schemas import (
    DeviceTarget,
    DispatchLog,
    Transaction,
    TransactionStatus,
    TransitionResult,
)
from paygate.services.errors import GatewayError

logger = logging.getLogger(__name__)


class DuplicateKeyError(GatewayError):
    """bill_id 已存在，调用方需换一个新订单号重试。"""
    pass


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        bill_id=row["bill_id"],
        machine_id=row["machine_id"],
        pay_channel=row["pay_channel"],
        status=TransactionStatus(row["status"]),
        amount=row["amount"],
        description=row["description"],
        time_create=row["time_create"],
        time_pay=row["time_pay"],
    )


class TransactionStore:
    """交易存储服务：创建、条件迁移、设备查询、最近记录。"""

    def create(
        self,
        bill_id: int,
        machine_id: str,
        pay_channel: str,
        now: int,
        amount: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        """
        插入一笔 PENDING 交易。

        Raises:
            DuplicateKeyError: bill_id 已存在。
        """
        db = get_db()
        try:
            db.execute(
                """INSERT INTO transactions
                   (bill_id, machine_id, pay_channel, amount, description,
                    status, time_create)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    bill_id, str(machine_id), str(pay_channel), amount,
                    description, TransactionStatus.PENDING.value, now,
                ),
            )
            db.commit()
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise DuplicateKeyError(f"bill_id={bill_id} 已存在") from e
        finally:
            db.close()

        return Transaction(
            bill_id=bill_id,
            machine_id=str(machine_id),
            pay_channel=str(pay_channel),
            amount=amount,
            description=description,
            time_create=now,
        )

    def get(self, bill_id: int) -> Optional[Transaction]:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM transactions WHERE bill_id = ?", (bill_id,)
            ).fetchone()
        finally:
            db.close()
        return _row_to_transaction(row) if row else None

    def transition_if_pending(
        self,
        bill_id: int,
        new_status: TransactionStatus,
        pay_timestamp: int,
    ) -> TransitionResult:
        """
        仅当当前状态为 PENDING 时更新 status 和 time_pay。

        Returns:
            TransitionResult，applied 表示本次调用是否完成了迁移。

        Raises:
            ValueError: 目标状态不是终态。
        """
        if not TransactionStatus.PENDING.can_transition(new_status):
            raise ValueError(f"非法的目标状态: {new_status}")

        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE transactions
                   SET status = ?, time_pay = ?
                   WHERE bill_id = ? AND status = ?""",
                (
                    new_status.value, pay_timestamp, bill_id,
                    TransactionStatus.PENDING.value,
                ),
            )
            db.commit()
            applied = cursor.rowcount == 1
        finally:
            db.close()

        logger.info(
            "状态迁移 bill_id=%s -> %s, applied=%s",
            bill_id, new_status.value, applied,
        )
        return TransitionResult(applied=applied, status=new_status)

    def find_device_target(self, bill_id: int) -> Optional[DeviceTarget]:
        """通过交易关联的 machine_id 查找设备信息。"""
        db = get_db()
        try:
            row = db.execute(
                """SELECT m.io_id, m.io_key, m.pre_cmd
                   FROM transactions t
                   JOIN io_machine m ON t.machine_id = m.id
                   WHERE t.bill_id = ?""",
                (bill_id,),
            ).fetchone()
        finally:
            db.close()

        if not row:
            return None
        return DeviceTarget(
            io_id=row["io_id"], io_key=row["io_key"], pre_cmd=row["pre_cmd"]
        )

    def list_recent(self, limit: int = 20) -> list[Transaction]:
        """按创建时间倒序返回最近的交易。"""
        db = get_db()
        try:
            rows = db.execute(
                """SELECT * FROM transactions
                   ORDER BY time_create DESC, bill_id DESC
                   LIMIT ?""",
                (limit,),
            ).fetchall()
        finally:
            db.close()
        return [_row_to_transaction(row) for row in rows]

    # ── 下发日志 ──────────────────────────────────────────

    def log_dispatch_attempt(
        self,
        bill_id: int,
        attempt: int,
        url: str,
        http_status: Optional[int] = None,
        response_body: Optional[str] = None,
    ) -> None:
        """记录一次设备下发尝试到 dispatch_logs 表。"""
        db = get_db()
        try:
            db.execute(
                """INSERT INTO dispatch_logs
                   (bill_id, attempt, url, http_status, response_body)
                   VALUES (?, ?, ?, ?, ?)""",
                (bill_id, attempt, url, http_status, response_body),
            )
            db.commit()
        finally:
            db.close()

    def list_dispatch_logs(self, bill_id: int) -> list[DispatchLog]:
        db = get_db()
        try:
            rows = db.execute(
                """SELECT * FROM dispatch_logs
                   WHERE bill_id = ? ORDER BY attempt""",
                (bill_id,),
            ).fetchall()
        finally:
            db.close()
        return [DispatchLog(**dict(row)) for row in rows]
