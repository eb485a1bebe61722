"""Notification delivery for fired alerts."""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from typing import Protocol

import structlog

from processscope.alerts import AlertEvent

log = structlog.get_logger()


class NotificationGateway(Protocol):
    """Where fired alerts go. Implemented by the host application."""

    async def request_permission(self) -> bool: ...

    async def deliver(self, event: AlertEvent) -> None: ...

    async def update_badge(self, count: int) -> None: ...

    async def clear_badge(self) -> None: ...


def _escape(text: str) -> str:
    """Escape text for an AppleScript string literal."""
    return text.replace("\\", "\\\\").replace('"', '\\"')


def send_notification(
    title: str,
    message: str,
    sound: bool = True,
    subtitle: str | None = None,
) -> bool:
    """Send a macOS notification via osascript.

    Args:
        title: Notification title
        message: Notification body
        sound: Whether to play default sound
        subtitle: Optional subtitle

    Returns:
        True if notification was sent successfully
    """
    sound_part = 'sound name "Funk"' if sound else ""
    subtitle_part = f'subtitle "{_escape(subtitle)}"' if subtitle else ""

    script = f'''
    display notification "{_escape(message)}" with title "{_escape(title)}" {subtitle_part} {sound_part}
    '''

    try:
        subprocess.run(
            ["osascript", "-e", script],
            capture_output=True,
            timeout=5,
        )
        log.debug("notification_sent", title=title)
        return True
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        log.warning("notification_failed", error=str(e))
        return False


class OsascriptNotifier:
    """Notification gateway backed by macOS ``osascript``.

    osascript has no badge API, so the badge count is only tracked here for
    the host UI to read.
    """

    def __init__(self) -> None:
        self.badge_count = 0

    async def request_permission(self) -> bool:
        available = shutil.which("osascript") is not None
        if not available:
            log.warning("notifications_unavailable", reason="osascript not found")
        return available

    async def deliver(self, event: AlertEvent) -> None:
        await asyncio.to_thread(
            send_notification,
            title="ProcessScope Alert",
            subtitle=event.rule.name,
            message=event.message,
            sound=event.rule.sound,
        )

    async def update_badge(self, count: int) -> None:
        self.badge_count = count

    async def clear_badge(self) -> None:
        await self.update_badge(0)
