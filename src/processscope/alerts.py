"""Threshold alert rules and the engine that evaluates them.

The engine is called once per alert-tier tick with the latest metrics
snapshot. Per rule it keeps two timestamps:

- sustained: when the condition first became continuously true. Cleared the
  moment the condition is false, so an interrupted streak starts over.
- last fired: when the rule last produced an event. A rule cannot fire again
  until the cooldown (60s by default) has passed.

Rules with a duration fire only after the condition has held that long; rules
without one fire on the first true tick. Both are gated by the cooldown.
"""

from __future__ import annotations

import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar

import structlog

from processscope.models import MemoryPressure, MetricsContext, ThermalState

log = structlog.get_logger()

DEFAULT_COOLDOWN_SECONDS = 60.0
DEFAULT_HISTORY_LIMIT = 100


def _format_number(value: float) -> str:
    """Whole numbers without decimals, everything else to one place."""
    if value == round(value) and abs(value) < 10000:
        return f"{value:.0f}"
    return f"{value:.1f}"


def _format_bytes(value: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024:
            return f"{_format_number(value)} {unit}"
        value /= 1024
    return f"{_format_number(value)} TB"


# ─────────────────────────────────────────────────────────────────────────────
# Conditions
# ─────────────────────────────────────────────────────────────────────────────


class Condition(ABC):
    """A test against one metric domain of a MetricsContext.

    ``observe`` extracts the current value (None when the collector did not
    report it) and ``is_met`` compares it against the rule's parameters.
    """

    kind: ClassVar[str]

    @abstractmethod
    def observe(self, context: MetricsContext) -> float | None:
        """Current value of the watched metric, or None if unavailable."""

    @abstractmethod
    def is_met(self, value: float) -> bool:
        """Whether an observed value breaches the condition."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable condition, used in default alert messages."""

    def format_value(self, value: float) -> str:
        return _format_number(value)

    def evaluate(self, context: MetricsContext | None) -> bool:
        """True if the context breaches the condition. Missing data is never a breach."""
        if context is None:
            return False
        value = self.observe(context)
        return value is not None and self.is_met(value)

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """Serializable form, tagged with ``type``."""


@dataclass(frozen=True)
class CpuAbove(Condition):
    """Total CPU usage strictly above a percentage."""

    kind: ClassVar[str] = "cpu_above"
    threshold: float = 90.0

    def observe(self, context: MetricsContext) -> float | None:
        return context.cpu_total

    def is_met(self, value: float) -> bool:
        return value > self.threshold

    def describe(self) -> str:
        return f"CPU usage above {_format_number(self.threshold)}%"

    def format_value(self, value: float) -> str:
        return f"{_format_number(value)}%"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "threshold": self.threshold}


@dataclass(frozen=True)
class MemoryPressureAtLeast(Condition):
    """Memory pressure at or above a level."""

    kind: ClassVar[str] = "memory_pressure"
    level: MemoryPressure = MemoryPressure.CRITICAL

    def observe(self, context: MetricsContext) -> float | None:
        if context.memory_pressure is None:
            return None
        return float(context.memory_pressure)

    def is_met(self, value: float) -> bool:
        return value >= self.level

    def describe(self) -> str:
        return f"Memory pressure {self.level.name.lower()}"

    def format_value(self, value: float) -> str:
        return MemoryPressure(int(value)).name.lower()

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "level": self.level.name.lower()}


@dataclass(frozen=True)
class DiskFreeBelow(Condition):
    """Free space on a mount point strictly below a percentage."""

    kind: ClassVar[str] = "disk_free_below"
    percent: float = 5.0
    mount_path: str = "/"

    def observe(self, context: MetricsContext) -> float | None:
        volume = context.volume(self.mount_path)
        return volume.free_percent if volume else None

    def is_met(self, value: float) -> bool:
        return value < self.percent

    def describe(self) -> str:
        return f"Free space on {self.mount_path} below {_format_number(self.percent)}%"

    def format_value(self, value: float) -> str:
        return f"{_format_number(value)}%"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "percent": self.percent, "mount_path": self.mount_path}


@dataclass(frozen=True)
class ThermalAtLeast(Condition):
    """Thermal state at or above an ordinal."""

    kind: ClassVar[str] = "thermal_state"
    state: ThermalState = ThermalState.CRITICAL

    def observe(self, context: MetricsContext) -> float | None:
        if context.thermal_state is None:
            return None
        return float(context.thermal_state)

    def is_met(self, value: float) -> bool:
        return value >= self.state

    def describe(self) -> str:
        return f"Thermal state {self.state.name.lower()}"

    def format_value(self, value: float) -> str:
        return ThermalState(int(value)).name.lower()

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "state": self.state.name.lower()}


@dataclass(frozen=True)
class ProcessRssAbove(Condition):
    """Resident memory of a named process at or above a byte count.

    ``name`` is a case-insensitive substring; the largest matching process
    is observed.
    """

    kind: ClassVar[str] = "process_rss"
    name: str = ""
    rss_bytes: int = 0

    def observe(self, context: MetricsContext) -> float | None:
        needle = self.name.lower()
        matching = [p.rss_bytes for p in context.process_memory if needle in p.name.lower()]
        return float(max(matching)) if matching else None

    def is_met(self, value: float) -> bool:
        return value >= self.rss_bytes

    def describe(self) -> str:
        return f"{self.name} using at least {_format_bytes(self.rss_bytes)}"

    def format_value(self, value: float) -> str:
        return _format_bytes(value)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "name": self.name, "rss_bytes": self.rss_bytes}


@dataclass(frozen=True)
class VolumeUnsafeDisconnect(Condition):
    """A volume was removed without being ejected."""

    kind: ClassVar[str] = "volume_unsafe_disconnect"

    def observe(self, context: MetricsContext) -> float | None:
        if context.unsafe_volume_disconnect is None:
            return None
        return 1.0 if context.unsafe_volume_disconnect else 0.0

    def is_met(self, value: float) -> bool:
        return value >= 1.0

    def describe(self) -> str:
        return "Volume disconnected without ejecting"

    def format_value(self, value: float) -> str:
        return "yes" if value else "no"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind}


@dataclass(frozen=True)
class CustomExpression(Condition):
    """User expression kept for round-tripping. Not evaluated yet, so never met."""

    kind: ClassVar[str] = "custom_expression"
    expression: str = ""

    def observe(self, context: MetricsContext) -> float | None:
        return None

    def is_met(self, value: float) -> bool:
        return False

    def describe(self) -> str:
        return f"Custom: {self.expression}"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "expression": self.expression}


CONDITION_TYPES: dict[str, type[Condition]] = {
    cls.kind: cls
    for cls in (
        CpuAbove,
        MemoryPressureAtLeast,
        DiskFreeBelow,
        ThermalAtLeast,
        ProcessRssAbove,
        VolumeUnsafeDisconnect,
        CustomExpression,
    )
}


def _number(data: dict, key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    return float(value)


def _flag(data: dict, key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be true or false, got {value!r}")
    return value


def _enum_member(enum_cls: type[Enum], value: Any) -> Any:
    if isinstance(value, str):
        try:
            return enum_cls[value.upper()]
        except KeyError:
            pass
    elif isinstance(value, int) and not isinstance(value, bool):
        try:
            return enum_cls(value)
        except ValueError:
            pass
    valid = [m.name.lower() for m in enum_cls]  # type: ignore[attr-defined]
    raise ValueError(f"Invalid {enum_cls.__name__} {value!r}. Must be one of {valid}")


def condition_from_dict(data: dict) -> Condition:
    """Build a condition from its serialized form. Raises ValueError if malformed."""
    if not isinstance(data, dict):
        raise ValueError(f"condition must be a table, got {type(data).__name__}")
    kind = data.get("type")
    if kind not in CONDITION_TYPES:
        raise ValueError(f"Unknown condition type: {kind!r}. Valid types: {list(CONDITION_TYPES)}")

    if kind == CpuAbove.kind:
        return CpuAbove(threshold=_number(data, "threshold"))
    if kind == MemoryPressureAtLeast.kind:
        return MemoryPressureAtLeast(level=_enum_member(MemoryPressure, data.get("level")))
    if kind == DiskFreeBelow.kind:
        mount_path = data.get("mount_path", "/")
        if not isinstance(mount_path, str) or not mount_path:
            raise ValueError(f"mount_path must be a non-empty string, got {mount_path!r}")
        return DiskFreeBelow(percent=_number(data, "percent"), mount_path=mount_path)
    if kind == ThermalAtLeast.kind:
        return ThermalAtLeast(state=_enum_member(ThermalState, data.get("state")))
    if kind == ProcessRssAbove.kind:
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"name must be a non-empty string, got {name!r}")
        return ProcessRssAbove(name=name, rss_bytes=int(_number(data, "rss_bytes")))
    if kind == VolumeUnsafeDisconnect.kind:
        return VolumeUnsafeDisconnect()
    return CustomExpression(expression=str(data.get("expression", "")))


# ─────────────────────────────────────────────────────────────────────────────
# Rules and events
# ─────────────────────────────────────────────────────────────────────────────


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class AlertRule:
    """A named condition with optional sustain duration.

    ``id`` is the rule's identity: editing any other field keeps its
    sustained/cooldown history.
    """

    name: str
    condition: Condition
    duration: float | None = None  # Seconds the condition must hold; None fires immediately
    enabled: bool = True
    sound: bool = False
    message: str | None = None
    id: str = field(default_factory=new_id)

    @property
    def is_sustained(self) -> bool:
        return bool(self.duration and self.duration > 0)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "condition": self.condition.to_dict(),
            "enabled": self.enabled,
            "sound": self.sound,
        }
        if self.duration is not None:
            data["duration"] = self.duration
        if self.message is not None:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: dict) -> AlertRule:
        """Build a rule from its serialized form. Raises ValueError if malformed."""
        if not isinstance(data, dict):
            raise ValueError(f"rule must be a table, got {type(data).__name__}")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError(f"rule name must be a non-empty string, got {name!r}")

        duration = data.get("duration")
        if duration is not None:
            duration = _number(data, "duration")
            if duration < 0:
                raise ValueError(f"duration must be >= 0, got {duration}")

        message = data.get("message")
        if message is not None and not isinstance(message, str):
            raise ValueError(f"message must be a string, got {message!r}")

        rule_id = data.get("id") or new_id()
        return cls(
            id=str(rule_id),
            name=name,
            condition=condition_from_dict(data.get("condition")),
            duration=duration or None,
            enabled=_flag(data, "enabled", True),
            sound=_flag(data, "sound", False),
            message=message,
        )


@dataclass
class AlertEvent:
    """A fired alert. History entries only change when acknowledged."""

    rule: AlertRule
    value: float
    timestamp: float
    message: str
    acknowledged: bool = False
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule": self.rule.to_dict(),
            "value": self.value,
            "timestamp": self.timestamp,
            "message": self.message,
            "acknowledged": self.acknowledged,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AlertEvent:
        if not isinstance(data, dict):
            raise ValueError(f"event must be a table, got {type(data).__name__}")
        return cls(
            id=str(data.get("id") or new_id()),
            rule=AlertRule.from_dict(data.get("rule")),
            value=_number(data, "value"),
            timestamp=_number(data, "timestamp"),
            message=str(data.get("message", "")),
            acknowledged=_flag(data, "acknowledged", False),
        )


def default_rules() -> list[AlertRule]:
    """Built-in rules used on first launch and by reset."""
    return [
        AlertRule(
            name="High CPU Usage",
            condition=CpuAbove(threshold=90.0),
            duration=30.0,
            message="CPU usage has been above 90% for 30 seconds",
        ),
        AlertRule(
            name="Memory Pressure Critical",
            condition=MemoryPressureAtLeast(level=MemoryPressure.CRITICAL),
            sound=True,
            message="Memory pressure is critical",
        ),
        AlertRule(
            name="Disk Nearly Full",
            condition=DiskFreeBelow(percent=5.0, mount_path="/"),
            sound=True,
            message="Boot volume has less than 5% free space",
        ),
        AlertRule(
            name="Thermal Critical",
            condition=ThermalAtLeast(state=ThermalState.CRITICAL),
            message="System thermal state is critical",
        ),
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────


class StateChange(Enum):
    """What part of engine state a listener is being told about."""

    RULES = "rules"
    HISTORY = "history"


class AlertEngine:
    """Evaluates rules against metric snapshots and keeps the fired history.

    Rules, both temporal maps and history are guarded by one lock, so
    ``evaluate`` and the rule/history operations can be called from any tier
    or UI callback.
    """

    def __init__(
        self,
        rules: Iterable[AlertRule] | None = None,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self.history_limit = history_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._rules: list[AlertRule] = list(rules) if rules is not None else default_rules()
        self._sustained: dict[str, float] = {}
        self._last_fired: dict[str, float] = {}
        self._history: list[AlertEvent] = []  # Most recent first
        self._listeners: list[Callable[[StateChange], None]] = []

    # ─────────────────────────────────────────────────────────────────────
    # Change listeners
    # ─────────────────────────────────────────────────────────────────────

    def add_listener(self, listener: Callable[[StateChange], None]) -> None:
        """Register a callback run after rules or history change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[StateChange], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, change: StateChange) -> None:
        # Called outside the lock so listeners may read engine state
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                log.exception("alert_listener_failed", change=change.value, error=str(e))

    # ─────────────────────────────────────────────────────────────────────
    # Rules
    # ─────────────────────────────────────────────────────────────────────

    def get_rules(self) -> list[AlertRule]:
        with self._lock:
            return list(self._rules)

    def get_rule(self, rule_id: str) -> AlertRule | None:
        with self._lock:
            return next((r for r in self._rules if r.id == rule_id), None)

    def add_rule(self, rule: AlertRule) -> None:
        """Append a rule. Raises ValueError if the id is already in use."""
        with self._lock:
            if any(r.id == rule.id for r in self._rules):
                raise ValueError(f"Alert rule id already exists: {rule.id}")
            self._rules.append(rule)
            self._purge(rule.id)  # A reused id starts with a clean slate
        log.info("alert_rule_added", rule=rule.name, rule_id=rule.id)
        self._notify(StateChange.RULES)

    def update_rule(self, rule: AlertRule) -> bool:
        """Replace the rule with the same id. Returns False if no such rule.

        Temporal state is kept across edits; disabling a rule drops it.
        """
        with self._lock:
            for i, existing in enumerate(self._rules):
                if existing.id == rule.id:
                    self._rules[i] = rule
                    if not rule.enabled:
                        self._purge(rule.id)
                    break
            else:
                return False
        log.info("alert_rule_updated", rule=rule.name, rule_id=rule.id)
        self._notify(StateChange.RULES)
        return True

    def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self.get_rule(rule_id)
        if rule is None:
            return False
        return self.update_rule(replace(rule, enabled=enabled))

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule and its temporal state. History is left untouched."""
        with self._lock:
            before = len(self._rules)
            self._rules = [r for r in self._rules if r.id != rule_id]
            removed = len(self._rules) != before
            self._purge(rule_id)
        if removed:
            log.info("alert_rule_removed", rule_id=rule_id)
            self._notify(StateChange.RULES)
        return removed

    def set_rules(self, rules: Iterable[AlertRule]) -> None:
        """Replace the whole rule set, dropping state for ids that disappear."""
        with self._lock:
            self._rules = list(rules)
            keep = {r.id for r in self._rules if r.enabled}
            for rule_id in set(self._sustained) | set(self._last_fired):
                if rule_id not in keep:
                    self._purge(rule_id)
        self._notify(StateChange.RULES)

    def reset_to_defaults(self) -> None:
        """Replace all rules with the built-ins and clear temporal state."""
        with self._lock:
            self._rules = default_rules()
            self._sustained.clear()
            self._last_fired.clear()
        log.info("alert_rules_reset", count=len(self._rules))
        self._notify(StateChange.RULES)

    def _purge(self, rule_id: str) -> None:
        self._sustained.pop(rule_id, None)
        self._last_fired.pop(rule_id, None)

    # ─────────────────────────────────────────────────────────────────────
    # Evaluation
    # ─────────────────────────────────────────────────────────────────────

    def evaluate(self, context: MetricsContext | None, now: float | None = None) -> list[AlertEvent]:
        """Run every enabled rule against a snapshot and return newly fired events."""
        now = self._clock() if now is None else now
        fired: list[AlertEvent] = []

        with self._lock:
            for rule in self._rules:
                if not rule.enabled:
                    self._purge(rule.id)
                    continue

                value = rule.condition.observe(context) if context is not None else None
                if value is None or not rule.condition.is_met(value):
                    # Streak broken: no partial credit next time
                    self._sustained.pop(rule.id, None)
                    continue

                if rule.is_sustained:
                    first_true = self._sustained.get(rule.id)
                    if first_true is None:
                        self._sustained[rule.id] = now
                        continue
                    if now - first_true < rule.duration:  # type: ignore[operator]
                        continue
                    # Entry is kept: later true ticks stay eligible, gated by cooldown

                if not self._cooldown_elapsed(rule.id, now):
                    continue

                self._last_fired[rule.id] = now
                fired.append(self._make_event(rule, value, now))

            if fired:
                self._history[:0] = fired
                del self._history[self.history_limit :]

        for event in fired:
            log.warning(
                "alert_fired",
                rule=event.rule.name,
                rule_id=event.rule.id,
                value=event.value,
                message=event.message,
            )
        if fired:
            self._notify(StateChange.HISTORY)
        return fired

    def _cooldown_elapsed(self, rule_id: str, now: float) -> bool:
        last = self._last_fired.get(rule_id)
        return last is None or now - last >= self.cooldown_seconds

    def _make_event(self, rule: AlertRule, value: float, now: float) -> AlertEvent:
        message = rule.message or (
            f"{rule.condition.describe()} (now {rule.condition.format_value(value)})"
        )
        return AlertEvent(rule=rule, value=value, timestamp=now, message=message)

    @property
    def sustained_state(self) -> dict[str, float]:
        """Copy of rule id -> first-true timestamp."""
        with self._lock:
            return dict(self._sustained)

    @property
    def debounce_state(self) -> dict[str, float]:
        """Copy of rule id -> last-fired timestamp."""
        with self._lock:
            return dict(self._last_fired)

    # ─────────────────────────────────────────────────────────────────────
    # History
    # ─────────────────────────────────────────────────────────────────────

    def get_history(self) -> list[AlertEvent]:
        """Fired events, most recent first."""
        with self._lock:
            return list(self._history)

    def load_history(self, events: Iterable[AlertEvent]) -> None:
        """Restore persisted history (most recent first)."""
        with self._lock:
            self._history = list(events)[: self.history_limit]

    @property
    def unacknowledged_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._history if not e.acknowledged)

    def acknowledge_event(self, event_id: str) -> bool:
        with self._lock:
            event = next((e for e in self._history if e.id == event_id), None)
            if event is None or event.acknowledged:
                return False
            event.acknowledged = True
        self._notify(StateChange.HISTORY)
        return True

    def acknowledge_all(self) -> int:
        """Mark every event acknowledged. Returns how many changed."""
        with self._lock:
            pending = [e for e in self._history if not e.acknowledged]
            for event in pending:
                event.acknowledged = True
        if pending:
            log.info("alerts_acknowledged", count=len(pending))
            self._notify(StateChange.HISTORY)
        return len(pending)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
        log.info("alert_history_cleared")
        self._notify(StateChange.HISTORY)
