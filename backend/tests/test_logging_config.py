"""Tests for utils/logging_config.py."""

import json
import logging

from utils.logging_config import _JSONFormatter, get_context_logger


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_bound_context_reaches_json_line():
    handler = _Capture()
    base = logging.getLogger("tests.context")
    base.addHandler(handler)
    base.setLevel(logging.INFO)
    try:
        log = get_context_logger("tests.context", run_id=3, image_id=None)
        log.bind(detection_id=12, stage="searching").info("hello %s", "world")
    finally:
        base.removeHandler(handler)

    record = handler.records[0]
    entry = json.loads(_JSONFormatter().format(record))
    assert entry["message"] == "hello world"
    assert entry["run_id"] == 3
    assert entry["detection_id"] == 12
    assert entry["stage"] == "searching"
    assert "image_id" not in entry


def test_bind_does_not_mutate_parent():
    parent = get_context_logger("tests.context", run_id=1)
    child = parent.bind(detection_id=5)
    assert parent.extra == {"run_id": 1}
    assert child.extra == {"run_id": 1, "detection_id": 5}
