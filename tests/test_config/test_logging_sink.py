import json

import pytest
import structlog

from codehelm.config import Config, LoggingConfig
from codehelm.exceptions import ConfigurationError
from codehelm.logging import _SinkWriter, build_processors, configure_logging, get_logger, set_system_log_sink


def test_sink_writer_splits_lines_and_flushes_remainder():
    lines: list[str] = []
    writer = _SinkWriter(lines.append)

    writer.write("first\nsec")
    writer.write("ond\n\nthird")
    assert lines == ["first", "second"]

    writer.flush()
    writer.flush()
    assert lines == ["first", "second", "third"]


def test_unknown_log_format_is_rejected():
    with pytest.raises(ConfigurationError, match="unknown log format: xml"):
        build_processors("xml")


def test_json_lines_reach_the_sink():
    lines: list[str] = []
    set_system_log_sink(lines.append)
    try:
        configure_logging(Config(logging=LoggingConfig(level="WARNING", format="json")))
        log = get_logger("codehelm.sink_check")
        log.info("quiet")
        log.warning("Tool retried", tool="shell", attempt=2)
    finally:
        set_system_log_sink(None)
        structlog.reset_defaults()

    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["event"] == "Tool retried"
    assert record["tool"] == "shell"
    assert record["attempt"] == 2
    assert record["level"] == "warning"
