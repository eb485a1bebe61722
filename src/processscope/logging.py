"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (pipeline_started, alert_fired, etc.)
5. Structlog configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from processscope.config import Config

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    ALERT = "[bold red]▲[/]"
    ACK = "[green]✔[/]"
    RULES = "📋"
    TICK = "[magenta]♡[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def pipeline_started(tiers: list[str]) -> None:
    """Log pipeline startup complete."""
    info(f"Pipeline started [dim]({', '.join(tiers) or 'no tiers'})[/]", Icon.OK)


def pipeline_stopping() -> None:
    info("Pipeline stopping...", Icon.WAIT)


def pipeline_stopped() -> None:
    info("Pipeline stopped", Icon.OK)


def rules_loaded(alert_count: int, enrichment_count: int) -> None:
    """Log rule counts after loading the stores."""
    info(
        f"Rules: [cyan]{alert_count}[/] alert, [cyan]{enrichment_count}[/] enrichment",
        Icon.RULES,
    )


def rules_reset(count: int) -> None:
    info(f"Alert rules reset to [cyan]{count}[/] defaults", Icon.RULES)


def enrichment_rules_reset(count: int) -> None:
    info(f"Enrichment rules reset to [cyan]{count}[/] built-ins", Icon.RULES)


def alert_fired(rule_name: str, message: str) -> None:
    """Log an alert that was delivered."""
    warn(f"[bold]{escape(rule_name)}[/] [dim]{escape(message)}[/]", Icon.ALERT)


def alerts_acknowledged(count: int) -> None:
    suffix = "s" if count != 1 else ""
    info(f"Acknowledged [cyan]{count}[/] alert{suffix}", Icon.ACK)


def notification_permission_denied() -> None:
    warn("Notification permission denied, alerts will only be logged")


def policy_changed(window_visible: bool, on_battery: bool) -> None:
    """Log adaptive polling policy."""
    window = "visible" if window_visible else "hidden"
    power = "battery" if on_battery else "AC"
    info(f"Polling policy: window [cyan]{window}[/], power [cyan]{power}[/]", Icon.TICK)


def tick_failed(tier: str, error_msg: str) -> None:
    error(f"{tier} tick failed: {escape(error_msg)}", Icon.FAIL)


def tick_recovered(tier: str) -> None:
    info(f"{tier} tick recovered", Icon.OK)


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog to write JSON Lines to a rotating log file.

    Both use local time to match alert timestamps. Human-readable console
    output goes through the Rich helpers above.

    Args:
        config: Application config with paths
    """
    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    # Set up rotating file handler for JSON output
    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    # structlog will use stdlib logging for JSON output via ProcessorFormatter
    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)

    # Clear any existing handlers
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("processscope"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            _add_source("processscope"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
