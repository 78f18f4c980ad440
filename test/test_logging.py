import hashlib
import hmac
import json

from txflow.core.logger import TX_SUBMITTED, BROADCAST_REJECTED, make_audit_processor


def test_audit_log_lines_are_signed(tmp_path):
    path = tmp_path / "audit" / "tx.log"
    key = b"unit-test-key"
    processor = make_audit_processor(str(path), key)

    event = processor(None, "info", {"event": "TRANSACTION_BROADCASTED", "nonce": 3})

    line = path.read_text().strip()
    payload, sig = line.split("|")
    expected = hmac.new(key, payload.encode(), hashlib.sha256).hexdigest()
    assert sig == expected
    assert event["signature"] == sig
    assert json.loads(payload) == {"event": "TRANSACTION_BROADCASTED", "nonce": 3}


def test_prometheus_counters():
    initial = TX_SUBMITTED._value.get()
    TX_SUBMITTED.inc()
    assert TX_SUBMITTED._value.get() == initial + 1

    c = BROADCAST_REJECTED.labels("unit")
    initial = c._value.get()
    c.inc()
    assert c._value.get() == initial + 1
