"""Unit tests for log formatting."""

import logging

import orjson

from relaychat.core.logging import ConsoleFormatter, JSONFormatter, record_extras, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="relaychat.realtime.registry",
        level=logging.WARNING,
        pathname=__file__,
        lineno=10,
        msg="Channel %s closed",
        args=("realtime:public:messages:*:all",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_record_extras_ignores_standard_attributes():
    assert record_extras(_record()) == {}
    assert record_extras(_record(channel="k")) == {"channel": "k"}


def test_json_formatter_includes_extra_fields():
    output = orjson.loads(JSONFormatter().format(_record(channel="k", attempts=2)))

    assert output["level"] == "WARNING"
    assert output["logger"] == "relaychat.realtime.registry"
    assert output["message"] == "Channel realtime:public:messages:*:all closed"
    assert output["extra"] == {"channel": "k", "attempts": 2}


def test_json_formatter_stringifies_unserializable_extras():
    output = orjson.loads(JSONFormatter().format(_record(error=ValueError("boom"))))

    assert output["extra"] == {"error": "boom"}


def test_console_formatter_appends_extras_and_restores_levelname():
    record = _record(channel="k")

    formatted = ConsoleFormatter("%(levelname)s %(message)s").format(record)

    assert "WARNING" in formatted
    assert formatted.endswith("[channel=k]")
    assert record.levelname == "WARNING"


def test_setup_logging_replaces_root_handlers():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("debug", json_logs=True)

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("realtime").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
