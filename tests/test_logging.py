"""Tests for console helpers and structlog configuration."""

import json
import logging as stdlib_logging

import pytest
import structlog

from processscope import logging as console
from processscope.config import Config


@pytest.fixture
def configured(config: Config):
    """Configure file logging, restoring the defaults afterwards."""
    console.configure(config)
    yield config
    root = stdlib_logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    structlog.reset_defaults()


def test_configure_writes_json_lines(configured: Config):
    structlog.get_logger().info("alert_fired", rule="High CPU", value=95.0)

    lines = configured.log_path.read_text().splitlines()
    entry = json.loads(lines[-1])
    assert entry["event"] == "alert_fired"
    assert entry["rule"] == "High CPU"
    assert entry["level"] == "info"
    assert entry["source"] == "processscope"


def test_configure_creates_state_dir(configured: Config):
    assert configured.state_dir.is_dir()


def test_info_line_has_level_and_icon(capsys):
    console.info("hello", console.Icon.OK)
    out = capsys.readouterr().out
    assert "[info]" in out
    assert "✓" in out
    assert "hello" in out


def test_alert_fired_escapes_markup(capsys):
    console.alert_fired("Disk [root]", "free space [low]")
    out = capsys.readouterr().out
    assert "Disk [root]" in out
    assert "free space [low]" in out
    assert "[warn]" in out


def test_alerts_acknowledged_pluralizes(capsys):
    console.alerts_acknowledged(1)
    console.alerts_acknowledged(3)
    out = capsys.readouterr().out
    assert "Acknowledged 1 alert\n" in out
    assert "Acknowledged 3 alerts" in out


def test_policy_changed(capsys):
    console.policy_changed(window_visible=False, on_battery=True)
    out = capsys.readouterr().out
    assert "window hidden" in out
    assert "power battery" in out
