"""
Contract tests for the command-line entry point.
"""

import logging
from unittest.mock import patch

import pytest

from reencoder import __main__ as entry
from reencoder.errors import ConfigError, StartError


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


class TestArguments:

    def test_defaults(self):
        args = entry._parse_args([])
        assert args.config is None
        assert args.mode is None

    def test_mode_choice_enforced(self):
        with pytest.raises(SystemExit):
            entry._parse_args(["--mode", "hls"])

    def test_config_and_mode(self):
        args = entry._parse_args(["-c", "site.yaml", "--mode", "rtsp"])
        assert args.config == "site.yaml"
        assert args.mode == "rtsp"


class TestExitCodes:

    def test_config_error_exits_1(self):
        with patch.object(entry, "load_config", side_effect=ConfigError("bad port")):
            assert entry.main(["-c", "broken.yaml"]) == 1

    def test_start_error_exits_1(self, config):
        with patch.object(entry, "load_config", return_value=config), \
                patch.object(entry, "_init_gstreamer"), \
                patch.object(entry, "signal"), \
                patch.object(entry, "PipelineLifecycleManager") as manager_cls:
            manager_cls.return_value.start.side_effect = StartError("no source")
            assert entry.main([]) == 1

    def test_mode_override_applied(self, config):
        with patch.object(entry, "load_config", return_value=config), \
                patch.object(entry, "_init_gstreamer"), \
                patch.object(entry, "signal"), \
                patch.object(entry, "PipelineLifecycleManager") as manager_cls:
            manager_cls.return_value.start.side_effect = StartError("no source")
            entry.main(["--mode", "rtsp"])

        manager_cls.return_value.start.assert_called_once_with("rtsp")


class TestLogFile:

    def test_file_handler_added(self, tmp_path):
        log_file = tmp_path / "reencoder.log"

        entry._configure_logging("DEBUG", str(log_file))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert any(isinstance(h, entry._SafeWatchedFileHandler) for h in root.handlers)

    def test_unopenable_log_file_is_not_fatal(self, tmp_path):
        entry._configure_logging("INFO", str(tmp_path / "missing-dir" / "reencoder.log"))

        assert not any(isinstance(h, entry._SafeWatchedFileHandler) for h in logging.getLogger().handlers)

    def test_write_failure_swallowed(self, tmp_path):
        handler = entry._SafeWatchedFileHandler(str(tmp_path / "reencoder.log"))
        record = logging.LogRecord("reencoder", logging.INFO, __file__, 1, "msg", None, None)

        handler.handleError(record)
        handler.close()
