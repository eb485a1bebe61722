"""Shared test fixtures for processscope."""

import asyncio
from pathlib import Path

import pytest

from processscope.alerts import AlertEvent
from processscope.config import Config
from processscope.models import (
    MemoryPressure,
    MetricsContext,
    ProcessMemory,
    ProcessRecord,
    ThermalState,
    VolumeUsage,
)


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every Config path at a temporary home directory."""
    monkeypatch.setattr(Path, "home", lambda: tmp_path)
    return tmp_path


@pytest.fixture
def config(home: Path) -> Config:
    return Config()


def make_process(
    pid: int = 100,
    name: str = "python3",
    arguments: list[str] | None = None,
    working_directory: str | None = None,
    executable_path: str | None = None,
    ppid: int = 1,
) -> ProcessRecord:
    """Create a ProcessRecord for testing."""
    return ProcessRecord(
        pid=pid,
        ppid=ppid,
        name=name,
        executable_path=executable_path,
        arguments=tuple(arguments or ()),
        working_directory=working_directory,
    )


def make_context(
    cpu: float | None = None,
    memory_pressure: MemoryPressure | None = None,
    volumes: dict[str, float] | None = None,
    thermal: ThermalState | None = None,
    process_memory: dict[str, int] | None = None,
    unsafe_disconnect: bool | None = None,
) -> MetricsContext:
    """Create a MetricsContext with only the given metrics reported."""
    return MetricsContext(
        cpu_total=cpu,
        memory_pressure=memory_pressure,
        volumes=tuple(VolumeUsage(path, free) for path, free in (volumes or {}).items()),
        thermal_state=thermal,
        process_memory=tuple(
            ProcessMemory(name, rss) for name, rss in (process_memory or {}).items()
        ),
        unsafe_volume_disconnect=unsafe_disconnect,
    )


class FakeMetricsSource:
    """Returns a settable snapshot, or raises if ``error`` is set."""

    def __init__(self, context: MetricsContext | None = None):
        self.context = context
        self.error: Exception | None = None
        self.calls = 0

    async def snapshot(self) -> MetricsContext | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.context


class FakeProcessSource:
    def __init__(self, processes: list[ProcessRecord] | None = None):
        self.records = list(processes or [])
        self.calls = 0
        self.error: Exception | None = None

    async def processes(self) -> list[ProcessRecord]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records)


class RecordingGateway:
    """Notification gateway that records every call."""

    def __init__(self, allow: bool = True):
        self.allow = allow
        self.delivered: list[AlertEvent] = []
        self.badges: list[int] = []
        self.permission_requests = 0

    async def request_permission(self) -> bool:
        self.permission_requests += 1
        return self.allow

    async def deliver(self, event: AlertEvent) -> None:
        self.delivered.append(event)

    async def update_badge(self, count: int) -> None:
        self.badges.append(count)

    async def clear_badge(self) -> None:
        self.badges.append(0)


async def wait_until(condition, timeout=2.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)
