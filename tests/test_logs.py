"""Tests for logging setup."""

from __future__ import annotations

import logging
import logging.handlers

import pytest

from skarchive.errors import ConfigError
from skarchive.logs import configure_logging, level_for
from skarchive.models import LoggingConfig


@pytest.mark.parametrize("verbosity,level", [(0, logging.ERROR), (1, logging.INFO), (2, logging.DEBUG), (5, logging.DEBUG)])
def test_level_for(verbosity, level):
    assert level_for(verbosity) == level


class TestConfigureLogging:
    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log"
        root = configure_logging(LoggingConfig(file=log_file, verbosity=1), stderr=False)
        logging.getLogger("skarchive.pipeline").info("ttyrec x: plaintext -> encrypted")
        for handler in root.handlers:
            handler.flush()
        assert "plaintext -> encrypted" in log_file.read_text()

    def test_verbosity_override(self, tmp_path):
        root = configure_logging(LoggingConfig(file=tmp_path / "x.log"), verbosity=2, stderr=False)
        assert root.level == logging.DEBUG

    def test_quiet_by_default(self, tmp_path):
        root = configure_logging(LoggingConfig(file=tmp_path / "x.log"), stderr=False)
        assert root.level == logging.ERROR

    def test_stderr_only_errors(self):
        root = configure_logging(LoggingConfig(syslog_facility=None))
        [handler] = root.handlers
        assert isinstance(handler, logging.StreamHandler)
        assert handler.level == logging.ERROR

    def test_reconfigure_replaces_handlers(self, tmp_path):
        configure_logging(LoggingConfig(file=tmp_path / "a.log"))
        root = configure_logging(LoggingConfig(file=tmp_path / "b.log"))
        assert len(root.handlers) == 2

    def test_unknown_facility(self):
        with pytest.raises(ConfigError, match="facility"):
            configure_logging(LoggingConfig(syslog_facility="nonsense"))

    def test_syslog_facility(self, monkeypatch):
        local7 = logging.handlers.SysLogHandler.LOG_LOCAL7
        created = {}

        class RecordingHandler(logging.Handler):
            def __init__(self, address, facility):
                super().__init__()
                created.update(address=address, facility=facility)

        monkeypatch.setattr(logging.handlers, "SysLogHandler", type(
            "SysLogHandler", (RecordingHandler,),
            {"facility_names": logging.handlers.SysLogHandler.facility_names},
        ))
        configure_logging(LoggingConfig(syslog_facility="local7", syslog_address="/dev/log"), stderr=False)
        assert created == {
            "address": "/dev/log",
            "facility": local7,
        }
