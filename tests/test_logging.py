import json
import logging

from core.logging import JsonFormatter, setup_logging


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("bridge", logging.WARNING, __file__, 12, "dropped %s", ("frame",), None)
    record.request_id = "abc123"

    data = json.loads(JsonFormatter().format(record))

    assert data["message"] == "dropped frame"
    assert data["level"] == "WARNING"
    assert data["request_id"] == "abc123"
    assert "args" not in data


def test_setup_logging_writes_json_file(tmp_path):
    log_file = tmp_path / "nested" / "codebridge.log"
    root = setup_logging("INFO", log_file)
    try:
        logging.getLogger("codebridge.test").info("hello", extra={"action": "ai.execute"})
        for handler in root.handlers:
            handler.flush()

        line = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
        assert line["message"] == "hello"
        assert line["action"] == "ai.execute"
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            handler.close()
        setup_logging("INFO", None)
