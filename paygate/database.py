"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/paygate.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS pay_channel (
    id              INTEGER PRIMARY KEY,
    api_key         TEXT         NOT NULL,
    client_id       TEXT         NOT NULL,
    checksum_key    TEXT         NOT NULL
);

CREATE TABLE IF NOT EXISTS io_machine (
    id              INTEGER PRIMARY KEY,
    io_id           TEXT         NOT NULL,
    io_key          TEXT         NOT NULL,
    pre_cmd         TEXT         NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS transactions (
    bill_id         INTEGER PRIMARY KEY,
    machine_id      TEXT         NOT NULL,
    pay_channel     TEXT         NOT NULL,
    amount          INTEGER,
    description     VARCHAR(64),
    status          VARCHAR(16)  NOT NULL DEFAULT 'PENDING',
    time_create     INTEGER      NOT NULL,
    time_pay        INTEGER
);

CREATE TABLE IF NOT EXISTS dispatch_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    bill_id         INTEGER      NOT NULL REFERENCES transactions(bill_id),
    attempt         INTEGER      NOT NULL,
    url             TEXT         NOT NULL,
    http_status     INTEGER,
    response_body   TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_transactions_status
    ON transactions(status);
CREATE INDEX IF NOT EXISTS idx_transactions_time_create
    ON transactions(time_create);
CREATE INDEX IF NOT EXISTS idx_transactions_machine
    ON transactions(machine_id);
CREATE INDEX IF NOT EXISTS idx_dispatch_logs_bill_id
    ON dispatch_logs(bill_id);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表和索引（可重复调用）。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)
        conn.commit()
    finally:
        conn.close()

