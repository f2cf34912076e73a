from types import SimpleNamespace

import httpx
import pytest

from rabbit_consumer import backpressure
from rabbit_consumer.backpressure import BackpressureConfig, decide_throttle, get_queue_depth, has_headroom
from rabbit_consumer.config import Settings
from rabbit_consumer.errors import FatalProcessingError, RetryableProcessingError
from rabbit_consumer.retry import Disposition, backoff_delay, decide_disposition
from rabbit_consumer.validation import extract_record_id, parse_record


def test_backoff_delay_exponential_and_capped():
    assert backoff_delay(1, base=0.5, multiplier=2.0, maximum=30.0) == 0.5
    assert backoff_delay(2, base=0.5, multiplier=2.0, maximum=30.0) == 1.0
    assert backoff_delay(3, base=0.5, multiplier=2.0, maximum=30.0) == 2.0
    assert backoff_delay(10, base=0.5, multiplier=2.0, maximum=30.0) == 30.0
    assert backoff_delay(10_000, base=0.5, multiplier=2.0, maximum=30.0) == 30.0


def test_backoff_delay_jitter_stays_in_band():
    for _ in range(50):
        d = backoff_delay(3, base=1.0, multiplier=2.0, maximum=30.0, jitter=0.1)
        assert 3.6 <= d <= 4.4


def test_decide_disposition_success_acks():
    assert decide_disposition(None, delivery_count=5, max_redeliveries=0) is Disposition.ACK


def test_decide_disposition_fatal_and_unknown_dead_letter():
    assert decide_disposition(FatalProcessingError("bad"), 0, 3) is Disposition.DEAD_LETTER
    assert decide_disposition(ValueError("?"), 0, 3) is Disposition.DEAD_LETTER


def test_decide_disposition_retryable_respects_budget():
    exc = RetryableProcessingError("db timeout")
    assert decide_disposition(exc, 0, 0) is Disposition.DEAD_LETTER
    assert decide_disposition(exc, 0, 2) is Disposition.REQUEUE
    assert decide_disposition(exc, 1, 2) is Disposition.REQUEUE
    assert decide_disposition(exc, 2, 2) is Disposition.DEAD_LETTER


def test_decide_disposition_uncounted_redelivery_dead_letters():
    exc = RetryableProcessingError("db timeout")
    for _ in range(50):
        assert decide_disposition(exc, None, 3) is Disposition.DEAD_LETTER
    assert decide_disposition(None, None, 3) is Disposition.ACK


def test_decide_throttle_modes():
    cfg = BackpressureConfig(elevated_threshold=500, critical_threshold=900, max_length=1000)
    assert decide_throttle(50, cfg) == "none"
    assert decide_throttle(600, cfg) == "elevated"
    assert decide_throttle(950, cfg) == "critical"
    assert decide_throttle(1000, cfg) == "full"


def test_backpressure_config_for_max_length():
    cfg = BackpressureConfig.for_max_length(1000)
    assert (cfg.elevated_threshold, cfg.critical_threshold, cfg.max_length) == (500, 900, 1000)


def test_has_headroom():
    assert has_headroom(999, 1000) is True
    assert has_headroom(1000, 1000) is False


def test_get_queue_depth_reads_management_api(monkeypatch):
    seen = {}

    def fake_get(url, auth, timeout):
        seen["url"] = url
        seen["auth"] = auth
        return SimpleNamespace(status_code=200, json=lambda: {"messages": 42})

    monkeypatch.setattr(backpressure.httpx, "get", fake_get)
    settings = Settings(rabbitmq_mgmt_url="http://mgmt:15672/", rabbitmq_vhost="/")
    assert get_queue_depth("ingest.records.q", settings) == 42
    assert seen["url"] == "http://mgmt:15672/api/queues/%2F/ingest.records.q"
    assert seen["auth"] == (settings.rabbitmq_mgmt_user, settings.rabbitmq_mgmt_pass)


def test_get_queue_depth_fails_open(monkeypatch):
    def boom(*_a, **_k):
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(backpressure.httpx, "get", boom)
    assert get_queue_depth("q", Settings()) == 0

    monkeypatch.setattr(backpressure.httpx, "get", lambda *_a, **_k: SimpleNamespace(status_code=404, json=dict))
    assert get_queue_depth("q", Settings()) == 0


def test_parse_record_ok():
    rec = parse_record(b'{"DATA_SOURCE": "CUSTOMERS", "RECORD_ID": "1001", "NAME_FULL": "Ann"}')
    assert rec.DATA_SOURCE == "CUSTOMERS"
    assert rec.RECORD_ID == "1001"
    assert rec.model_extra == {"NAME_FULL": "Ann"}


@pytest.mark.parametrize(
    "body",
    [b"{broken", b"[1, 2]", b'{"DATA_SOURCE": "X"}', b'{"DATA_SOURCE": "", "RECORD_ID": "1"}', b"\xff\xfe"],
)
def test_parse_record_rejects_malformed(body):
    with pytest.raises(FatalProcessingError):
        parse_record(body)


def test_extract_record_id():
    assert extract_record_id(b'{"DATA_SOURCE": "CUSTOMERS", "RECORD_ID": "1001"}', "tag-1") == "CUSTOMERS:1001"
    assert extract_record_id(b'{"RECORD_ID": 7}', "tag-2") == "7"
    assert extract_record_id(b'{"DATA_SOURCE": "X"}', "tag-3") == "tag-3"
    assert extract_record_id(b"not json", "tag-4") == "tag-4"
    assert extract_record_id(b'"just a string"', "tag-5") == "tag-5"
