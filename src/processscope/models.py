"""Shared data types for the telemetry pipeline.

Snapshots handed to the core by the external collectors. Every metric field is
optional: ``None`` means the collector could not provide it this tick.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class PollingTier(Enum):
    """Named polling cadences with their nominal interval in seconds."""

    CRITICAL = "critical"  # 500ms
    STANDARD = "standard"  # 1s
    EXTENDED = "extended"  # 3s
    SLOW = "slow"  # 10s
    INFREQUENT = "infrequent"  # 60s

    @property
    def interval(self) -> float:
        """Nominal interval before adaptive multipliers."""
        return _TIER_INTERVALS[self]

    @classmethod
    def parse(cls, value: str) -> PollingTier:
        """Look up a tier by name, raising ValueError for unknown names."""
        try:
            return cls(value.lower())
        except ValueError:
            valid = [t.value for t in cls]
            raise ValueError(f"Unknown polling tier: {value!r}. Valid tiers: {valid}") from None


_TIER_INTERVALS = {
    PollingTier.CRITICAL: 0.5,
    PollingTier.STANDARD: 1.0,
    PollingTier.EXTENDED: 3.0,
    PollingTier.SLOW: 10.0,
    PollingTier.INFREQUENT: 60.0,
}


class MemoryPressure(IntEnum):
    """System memory pressure level."""

    NORMAL = 0
    WARNING = 1
    CRITICAL = 2


class ThermalState(IntEnum):
    """Thermal state ordinal as reported by the OS (0-3)."""

    NOMINAL = 0
    FAIR = 1
    SERIOUS = 2
    CRITICAL = 3


@dataclass(frozen=True)
class ProcessRecord:
    """Raw process record supplied by the process source."""

    pid: int
    ppid: int
    name: str
    executable_path: str | None = None
    arguments: tuple[str, ...] = ()
    working_directory: str | None = None
    user: str = ""

    def __post_init__(self) -> None:
        # Accept lists from callers but store an immutable tuple
        if not isinstance(self.arguments, tuple):
            object.__setattr__(self, "arguments", tuple(self.arguments))


@dataclass(frozen=True)
class VolumeUsage:
    """Free space for one mounted volume."""

    mount_path: str
    free_percent: float


@dataclass(frozen=True)
class ProcessMemory:
    """Resident memory for a process, keyed by name."""

    name: str
    rss_bytes: int


@dataclass(frozen=True)
class MetricsContext:
    """Read-only metrics snapshot evaluated by the alert engine."""

    cpu_total: float | None = None
    cpu_per_core: tuple[float, ...] = ()
    memory_pressure: MemoryPressure | None = None
    volumes: tuple[VolumeUsage, ...] = ()
    thermal_state: ThermalState | None = None
    process_memory: tuple[ProcessMemory, ...] = ()
    unsafe_volume_disconnect: bool | None = None
    captured_at: float | None = field(default=None, compare=False)

    def volume(self, mount_path: str) -> VolumeUsage | None:
        """Return usage for an exact mount path, or None if not reported."""
        for volume in self.volumes:
            if volume.mount_path == mount_path:
                return volume
        return None
