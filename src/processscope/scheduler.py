"""Tiered polling scheduler.

One asyncio task per active tier, each running its own sleep-then-tick loop:

    critical (500ms), standard (1s), extended (3s), slow (10s), infrequent (60s)

Tiers without subscribers never get a task. The effective interval doubles
while the window is hidden and doubles again on battery power; policy changes
restart the loops so the new interval applies immediately.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

import structlog

from processscope.models import PollingTier

log = structlog.get_logger()

TickCallback = Callable[[], Awaitable[None] | None]


@dataclass(frozen=True)
class Subscription:
    """A callback registered on one tier under a stable id."""

    tier: PollingTier
    id: str
    callback: TickCallback


class AdaptivePolicy:
    """Stretches polling intervals when the UI is hidden or on battery power.

    Multipliers compound: hidden + battery = 4x with the default factors.
    """

    def __init__(
        self,
        hidden_multiplier: float = 2.0,
        battery_multiplier: float = 2.0,
        intervals: Mapping[PollingTier, float] | None = None,
    ) -> None:
        self.hidden_multiplier = hidden_multiplier
        self.battery_multiplier = battery_multiplier
        self._intervals = dict(intervals) if intervals else {}
        self._window_visible = True
        self._on_battery = False

    @property
    def window_visible(self) -> bool:
        return self._window_visible

    @property
    def on_battery(self) -> bool:
        return self._on_battery

    def set_window_visible(self, visible: bool) -> bool:
        """Update visibility. Returns True only if the value changed."""
        if self._window_visible == visible:
            return False
        self._window_visible = visible
        return True

    def set_battery_mode(self, on_battery: bool) -> bool:
        """Update power source. Returns True only if the value changed."""
        if self._on_battery == on_battery:
            return False
        self._on_battery = on_battery
        return True

    def nominal_interval(self, tier: PollingTier) -> float:
        return self._intervals.get(tier, tier.interval)

    def effective_interval(self, tier: PollingTier) -> float:
        """Return the interval for a tier under the current policy."""
        interval = self.nominal_interval(tier)
        if not self._window_visible:
            interval *= self.hidden_multiplier
        if self._on_battery:
            interval *= self.battery_multiplier
        return interval


class _TierLoop:
    """Running loop state for one tier."""

    def __init__(self, tier: PollingTier, interval: float) -> None:
        self.tier = tier
        self.interval = interval
        self.stop_event = asyncio.Event()
        self.task: asyncio.Task | None = None


class TieredScheduler:
    """Runs independent polling loops per tier and fans ticks out to subscribers."""

    def __init__(self, policy: AdaptivePolicy | None = None) -> None:
        self.policy = policy or AdaptivePolicy()
        self._subscribers: dict[PollingTier, list[Subscription]] = {}
        self._loops: dict[PollingTier, _TierLoop] = {}
        # Held for the duration of a tick so a restarted loop never overlaps
        # the previous loop's in-flight tick.
        self._tick_locks: dict[PollingTier, asyncio.Lock] = {}
        self._draining: set[asyncio.Task] = set()
        self._running = False

    # ─────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ─────────────────────────────────────────────────────────────────────

    def subscribe(self, tier: PollingTier, id: str, callback: TickCallback) -> None:
        """Register a callback on a tier. Re-subscribing the same id+tier is a no-op."""
        subs = self._subscribers.setdefault(tier, [])
        if any(sub.id == id for sub in subs):
            return
        subs.append(Subscription(tier=tier, id=id, callback=callback))
        log.debug("tier_subscribed", tier=tier.value, subscriber=id)

        if self._running and tier not in self._loops:
            self._start_tier(tier)

    def unsubscribe(self, id: str) -> None:
        """Remove an id from every tier. Tiers left empty stop polling."""
        for tier in list(self._subscribers):
            remaining = [sub for sub in self._subscribers[tier] if sub.id != id]
            if len(remaining) == len(self._subscribers[tier]):
                continue
            log.debug("tier_unsubscribed", tier=tier.value, subscriber=id)
            if remaining:
                self._subscribers[tier] = remaining
            else:
                del self._subscribers[tier]
                self._stop_tier(tier)

    def subscribers(self, tier: PollingTier) -> list[str]:
        """Subscriber ids registered on a tier, in registration order."""
        return [sub.id for sub in self._subscribers.get(tier, [])]

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_tiers(self) -> set[PollingTier]:
        """Tiers that currently have a running loop."""
        return set(self._loops)

    def interval_for(self, tier: PollingTier) -> float | None:
        """Interval the tier's running loop was started with, or None if idle."""
        loop = self._loops.get(tier)
        return loop.interval if loop else None

    def start(self) -> None:
        """Start one loop per tier with subscribers. No-op if already running.

        Must be called from within a running event loop.
        """
        if self._running:
            return
        asyncio.get_running_loop()  # Raises RuntimeError outside an event loop
        self._running = True
        for tier in self._subscribers:
            self._start_tier(tier)
        log.info("scheduler_started", tiers=sorted(t.value for t in self._loops))

    def stop(self) -> None:
        """Stop all tier loops.

        Sleeping loops exit immediately. A loop in the middle of a tick finishes
        that tick and then exits without scheduling another.
        """
        if not self._running:
            return
        self._running = False
        for tier in list(self._loops):
            self._stop_tier(tier)
        log.info("scheduler_stopped")

    def restart(self) -> None:
        """Stop and start so the current policy takes effect immediately."""
        self.stop()
        self.start()

    async def drain(self) -> None:
        """Wait for stopped loops to finish their in-flight ticks."""
        if self._draining:
            await asyncio.gather(*self._draining, return_exceptions=True)

    async def aclose(self) -> None:
        """Stop all loops and wait for them to exit."""
        self.stop()
        await self.drain()

    # ─────────────────────────────────────────────────────────────────────
    # Adaptive policy
    # ─────────────────────────────────────────────────────────────────────

    def set_window_visible(self, visible: bool) -> None:
        if self.policy.set_window_visible(visible):
            log.info("policy_changed", window_visible=visible)
            if self._running:
                self.restart()

    def set_battery_mode(self, on_battery: bool) -> None:
        if self.policy.set_battery_mode(on_battery):
            log.info("policy_changed", on_battery=on_battery)
            if self._running:
                self.restart()

    # ─────────────────────────────────────────────────────────────────────
    # Tier loops
    # ─────────────────────────────────────────────────────────────────────

    def _start_tier(self, tier: PollingTier) -> None:
        interval = self.policy.effective_interval(tier)
        loop = _TierLoop(tier, interval)
        loop.task = asyncio.get_running_loop().create_task(
            self._run_tier(loop), name=f"tier-{tier.value}"
        )
        self._loops[tier] = loop
        log.info("tier_started", tier=tier.value, interval=interval)

    def _stop_tier(self, tier: PollingTier) -> None:
        loop = self._loops.pop(tier, None)
        if loop is None:
            return
        loop.stop_event.set()
        if loop.task is not None and not loop.task.done():
            self._draining.add(loop.task)
            loop.task.add_done_callback(self._draining.discard)
        log.info("tier_stopped", tier=tier.value)

    async def _run_tier(self, loop: _TierLoop) -> None:
        """Sleep-then-tick until the loop's stop event is set."""
        while not loop.stop_event.is_set():
            try:
                await asyncio.wait_for(loop.stop_event.wait(), timeout=loop.interval)
                break  # Stopped during sleep
            except asyncio.TimeoutError:
                pass  # Normal timeout, time to tick

            lock = self._tick_locks.setdefault(loop.tier, asyncio.Lock())
            async with lock:
                await self._tick(loop)

    async def _tick(self, loop: _TierLoop) -> None:
        """Invoke every subscriber of the tier in order, isolating failures."""
        for sub in list(self._subscribers.get(loop.tier, [])):
            # Skip subscribers removed earlier in this same tick
            if sub not in self._subscribers.get(loop.tier, []):
                continue
            try:
                result = sub.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception(
                    "tier_callback_failed",
                    tier=loop.tier.value,
                    subscriber=sub.id,
                    error=str(e),
                )
