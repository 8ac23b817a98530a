"""账单创建服务、订单号生成与 payOS 客户端单元测试。"""

import os
import sqlite3
import tempfile
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest

# 在导入 paygate 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="bill_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import paygate.database as _db_mod
from paygate.database import get_db, init_db
from paygate.models.schemas import ProviderConfig, TransactionStatus
from paygate.services.bill_id import MonotonicClockIdGenerator
from paygate.services.bill_service import BillService, parse_amount
from paygate.services.errors import BadRequest, ConfigNotFound
from paygate.services.payos_client import LINK_TTL_SECONDS, PayOSClient, UpstreamProviderError
from paygate.services.sign import verify_sign
from paygate.services.transaction_store import DuplicateKeyError, TransactionStore

CHECKSUM_KEY = "test-checksum-key"
CONFIG = ProviderConfig(
    channel_id="1", api_key="api-key", client_id="client-id", checksum_key=CHECKSUM_KEY
)


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS dispatch_logs;
        DROP TABLE IF EXISTS transactions;
        DROP TABLE IF EXISTS io_machine;
        DROP TABLE IF EXISTS pay_channel;
    """)
    conn.close()
    init_db()
    db = get_db()
    try:
        db.execute(
            "INSERT INTO pay_channel (id, api_key, client_id, checksum_key) VALUES (?, ?, ?, ?)",
            (1, "api-key", "client-id", CHECKSUM_KEY),
        )
        db.commit()
    finally:
        db.close()
    yield


def _mock_payos(mock_client_cls, status_code=200, body=None):
    """配置 httpx.Client mock，返回 payOS 响应。"""
    if body is None:
        body = {
            "code": "00",
            "desc": "success",
            "data": {
                "orderCode": 1001,
                "qrCode": "000201010212",
                "checkoutUrl": "https://pay.payos.vn/web/abc",
            },
        }
    mock_resp = MagicMock()
    mock_resp.status_code = status_code
    mock_resp.text = str(body)
    mock_resp.json.return_value = body
    mock_client = MagicMock()
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    mock_client.post.return_value = mock_resp
    mock_client_cls.return_value = mock_client
    return mock_client


class _FixedIds:
    def __init__(self, *ids):
        self.ids = list(ids)

    def next_id(self):
        return self.ids.pop(0)


# ── 订单号生成 ────────────────────────────────────────────


class TestMonotonicClockIdGenerator:
    """订单号生成测试。"""

    def test_uses_millisecond_clock(self):
        gen = MonotonicClockIdGenerator(clock=lambda: 1700000000.123)
        assert gen.next_id() == 1700000000123

    def test_strictly_increasing_when_clock_stalls(self):
        gen = MonotonicClockIdGenerator(clock=lambda: 1700000000.0)
        ids = [gen.next_id() for _ in range(5)]
        assert ids == [1700000000000 + i for i in range(5)]

    def test_clock_going_backwards(self):
        times = iter([2.0, 1.0])
        gen = MonotonicClockIdGenerator(clock=lambda: next(times))
        assert gen.next_id() == 2000
        assert gen.next_id() == 2001

    def test_unique_with_real_clock(self):
        gen = MonotonicClockIdGenerator()
        ids = {gen.next_id() for _ in range(100)}
        assert len(ids) == 100


# ── 金额解析 ──────────────────────────────────────────────


class TestParseAmount:
    """金额解析测试。"""

    @pytest.mark.parametrize("raw,expected", [
        ("50000", 50000), (" 10000 ", 10000), ("2000.00", 2000), (3000, 3000),
    ])
    def test_valid(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", "0", "-5", "10.5", "NaN", "Infinity"])
    def test_invalid(self, raw):
        with pytest.raises(BadRequest):
            parse_amount(raw)


# ── payOS 客户端 ─────────────────────────────────────────


class TestPayOSClient:
    """payOS 支付链接客户端测试。"""

    def test_request_body_signed(self):
        body = PayOSClient(CONFIG).build_request_body(1001, 50000, "CFPAYOS42")
        assert body["returnUrl"] == "abc"
        assert body["cancelUrl"] == "abc"
        assert verify_sign(body, CHECKSUM_KEY, body["signature"]) is True

    def test_expiry_is_seven_days(self):
        before = int(time.time())
        body = PayOSClient(CONFIG).build_request_body(1001, 50000, "CFPAYOS42")
        assert before + LINK_TTL_SECONDS <= body["expiredAt"] <= int(time.time()) + LINK_TTL_SECONDS

    @patch("paygate.services.payos_client.httpx.Client")
    def test_create_payment_link(self, mock_client_cls):
        mock_client = _mock_payos(mock_client_cls)

        link = PayOSClient(CONFIG).create_payment_link(1001, 50000, "CFPAYOS42")

        assert link == {
            "orderCode": 1001,
            "qrCode": "000201010212",
            "paymentUrl": "https://pay.payos.vn/web/abc",
        }
        headers = mock_client.post.call_args.kwargs["headers"]
        assert headers["x-client-id"] == "client-id"
        assert headers["x-api-key"] == "api-key"

    @patch("paygate.services.payos_client.httpx.Client")
    def test_http_error_status(self, mock_client_cls):
        _mock_payos(mock_client_cls, status_code=401, body={"code": "401"})
        with pytest.raises(UpstreamProviderError):
            PayOSClient(CONFIG).create_payment_link(1001, 50000, "CFPAYOS42")

    @patch("paygate.services.payos_client.httpx.Client")
    def test_missing_data(self, mock_client_cls):
        _mock_payos(mock_client_cls, body={"code": "20", "desc": "订单已存在", "data": None})
        with pytest.raises(UpstreamProviderError, match="订单已存在"):
            PayOSClient(CONFIG).create_payment_link(1001, 50000, "CFPAYOS42")

    @patch("paygate.services.payos_client.httpx.Client")
    def test_transport_error(self, mock_client_cls):
        mock_client = _mock_payos(mock_client_cls)
        mock_client.post.side_effect = httpx.ConnectError("refused")
        with pytest.raises(UpstreamProviderError):
            PayOSClient(CONFIG).create_payment_link(1001, 50000, "CFPAYOS42")


# ── 账单创建 ──────────────────────────────────────────────


class TestCreateBill:
    """BillService.create_bill 测试。"""

    @patch("paygate.services.payos_client.httpx.Client")
    def test_creates_pending_and_returns_link(self, mock_client_cls):
        mock_client = _mock_payos(mock_client_cls)
        svc = BillService(id_generator=_FixedIds(1001))

        result = svc.create_bill("1", "7", "50000", "42")

        assert result == {
            "c1": 1001,
            "c2": "000201010212",
            "c3": "https://pay.payos.vn/web/abc",
        }
        row = TransactionStore().get(1001)
        assert row.status is TransactionStatus.PENDING
        assert row.machine_id == "7"
        assert row.pay_channel == "1"
        assert row.amount == 50000
        assert row.description == "CFPAYOS42"

        posted = mock_client.post.call_args.kwargs["json"]
        assert posted["orderCode"] == 1001
        assert posted["description"] == "CFPAYOS42"

    @patch("paygate.services.payos_client.httpx.Client")
    def test_default_description(self, mock_client_cls):
        mock_client = _mock_payos(mock_client_cls)
        BillService(id_generator=_FixedIds(1001)).create_bill("1", "7", "50000")
        assert mock_client.post.call_args.kwargs["json"]["description"] == "CFPAYOS"

    @patch("paygate.services.payos_client.httpx.Client")
    def test_retries_on_duplicate_id(self, mock_client_cls):
        _mock_payos(mock_client_cls)
        TransactionStore().create(1001, "7", "1", 0)

        result = BillService(id_generator=_FixedIds(1001, 1002)).create_bill("1", "7", "50000")

        assert result["c1"] == 1001  # 来自 mock 响应
        assert TransactionStore().get(1002) is not None

    def test_gives_up_after_repeated_duplicates(self):
        TransactionStore().create(1001, "7", "1", 0)
        svc = BillService(id_generator=_FixedIds(*([1001] * 10)))
        with pytest.raises(DuplicateKeyError):
            svc.create_bill("1", "7", "50000")

    def test_unknown_channel(self):
        with pytest.raises(ConfigNotFound):
            BillService(id_generator=_FixedIds(1001)).create_bill("99", "7", "50000")
        assert TransactionStore().get(1001) is None

    @pytest.mark.parametrize("channel,machine", [(None, "7"), ("1", None), ("", "7")])
    def test_missing_params(self, channel, machine):
        with pytest.raises(BadRequest):
            BillService(id_generator=_FixedIds(1001)).create_bill(channel, machine, "50000")

    def test_invalid_amount_no_row(self):
        with pytest.raises(BadRequest):
            BillService(id_generator=_FixedIds(1001)).create_bill("1", "7", "abc")
        assert TransactionStore().get(1001) is None

    @patch("paygate.services.payos_client.httpx.Client")
    def test_upstream_failure_leaves_pending_row(self, mock_client_cls):
        _mock_payos(mock_client_cls, status_code=500, body={"code": "500"})
        with pytest.raises(UpstreamProviderError):
            BillService(id_generator=_FixedIds(1001)).create_bill("1", "7", "50000")
        assert TransactionStore().get(1001).status is TransactionStatus.PENDING
