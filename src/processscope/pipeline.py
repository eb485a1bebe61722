"""Telemetry pipeline: wires collectors, scheduler, enrichment and alerts together.

    metrics source --(alert tier)--> AlertEngine --> NotificationGateway
    process source --(enrichment tier)--> ProcessEnricher --> latest labels
    battery probe --(power tier)--> AdaptivePolicy

Every stage runs as a subscriber on the TieredScheduler, so a slow collector
only delays its own tier.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from processscope import logging as console
from processscope.alerts import AlertEngine, AlertEvent, StateChange
from processscope.config import Config
from processscope.enrichment import ProcessEnricher
from processscope.models import PollingTier
from processscope.notifications import NotificationGateway
from processscope.power import on_battery
from processscope.projects import ProjectGroup, group_by_project
from processscope.rulestore import RuleStore
from processscope.scheduler import AdaptivePolicy, TieredScheduler
from processscope.sources import MetricsSource, ProcessSource

log = structlog.get_logger()

ALERT_SUBSCRIBER = "alert-engine"
ENRICHMENT_SUBSCRIBER = "process-enrichment"
POWER_SUBSCRIBER = "power-probe"


class TelemetryPipeline:
    """Owns the scheduler subscriptions feeding the enrichment and alert engines."""

    def __init__(
        self,
        config: Config,
        metrics_source: MetricsSource,
        process_source: ProcessSource | None = None,
        notifier: NotificationGateway | None = None,
        *,
        store: RuleStore | None = None,
        scheduler: TieredScheduler | None = None,
        engine: AlertEngine | None = None,
        enricher: ProcessEnricher | None = None,
        power_probe: Callable[[], bool] | None = on_battery,
    ):
        self.config = config
        self.metrics_source = metrics_source
        self.process_source = process_source
        self.notifier = notifier
        self.store = store
        self.power_probe = power_probe

        sched = config.scheduler
        self.scheduler = scheduler or TieredScheduler(
            AdaptivePolicy(
                hidden_multiplier=sched.hidden_multiplier,
                battery_multiplier=sched.battery_multiplier,
            )
        )
        self.engine = engine or AlertEngine(
            cooldown_seconds=config.alerts.cooldown_seconds,
            history_limit=config.alerts.history_limit,
        )
        self.enricher = enricher or ProcessEnricher.with_defaults()

        self.latest_labels: dict[int, str] = {}
        self.latest_groups: list[ProjectGroup] = []
        self._notifications_allowed = False
        self._started = False
        # Source names currently failing; the console reports transitions only
        self._failing: set[str] = set()

    @classmethod
    def from_config(
        cls,
        config: Config,
        metrics_source: MetricsSource,
        process_source: ProcessSource | None = None,
        notifier: NotificationGateway | None = None,
    ) -> TelemetryPipeline:
        """Build a pipeline whose rules and history live in the config's data dir."""
        return cls(
            config,
            metrics_source,
            process_source,
            notifier,
            store=RuleStore(config),
        )

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def notifications_allowed(self) -> bool:
        return self._notifications_allowed

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Load persisted state, subscribe every stage and start polling."""
        if self._started:
            return
        log.info("pipeline_starting")

        if self.store is not None:
            self.engine.set_rules(self.store.load_alert_rules())
            self.engine.load_history(self.store.load_history())
            self.enricher = ProcessEnricher(self.store.load_enrichment_rules())
            self.engine.add_listener(self._persist)
        console.rules_loaded(len(self.engine.get_rules()), len(self.enricher.rules))

        if self.notifier is not None and self.config.alerts.notifications:
            self._notifications_allowed = await self.notifier.request_permission()
            if not self._notifications_allowed:
                console.notification_permission_denied()

        sched = self.config.scheduler
        if self.config.alerts.enabled:
            self.scheduler.subscribe(
                PollingTier.parse(sched.alert_tier), ALERT_SUBSCRIBER, self._alert_tick
            )
        if self.config.enrichment.enabled and self.process_source is not None:
            self.scheduler.subscribe(
                PollingTier.parse(sched.enrichment_tier),
                ENRICHMENT_SUBSCRIBER,
                self._enrichment_tick,
            )
        if self.power_probe is not None:
            # Probe once up front so the first loops start at the right interval
            await self._power_tick()
            self.scheduler.subscribe(
                PollingTier.parse(sched.power_check_tier), POWER_SUBSCRIBER, self._power_tick
            )

        self.scheduler.start()
        self._started = True
        tiers = sorted(t.value for t in self.scheduler.active_tiers)
        log.info("pipeline_started", tiers=tiers)
        console.pipeline_started(tiers)

    async def stop(self) -> None:
        """Unsubscribe every stage and wait for in-flight ticks to finish."""
        if not self._started:
            return
        console.pipeline_stopping()
        for subscriber in (ALERT_SUBSCRIBER, ENRICHMENT_SUBSCRIBER, POWER_SUBSCRIBER):
            self.scheduler.unsubscribe(subscriber)
        await self.scheduler.aclose()

        if self.store is not None:
            self.engine.remove_listener(self._persist)
            self.store.save_alert_rules(self.engine.get_rules())
            self.store.save_history(self.engine.get_history())

        self._started = False
        log.info("pipeline_stopped")
        console.pipeline_stopped()

    # ─────────────────────────────────────────────────────────────────────
    # Tier callbacks
    # ─────────────────────────────────────────────────────────────────────

    async def _alert_tick(self) -> None:
        try:
            context = await self.metrics_source.snapshot()
        except Exception as e:
            # An unavailable collector reads as "no data": every condition is false
            log.warning("metrics_snapshot_failed", error=str(e))
            self._source_failed(ALERT_SUBSCRIBER, e)
            context = None
        else:
            self._source_recovered(ALERT_SUBSCRIBER)

        events = self.engine.evaluate(context)
        for event in events:
            await self._deliver(event)
        if events:
            await self._update_badge()

    async def _deliver(self, event: AlertEvent) -> None:
        console.alert_fired(event.rule.name, event.message)
        if self.notifier is None or not self._notifications_allowed:
            return
        try:
            await self.notifier.deliver(event)
        except Exception as e:
            log.exception("notification_delivery_failed", rule=event.rule.name, error=str(e))

    async def _update_badge(self) -> None:
        if self.notifier is None or not self._notifications_allowed:
            return
        count = self.engine.unacknowledged_count
        try:
            if count:
                await self.notifier.update_badge(count)
            else:
                await self.notifier.clear_badge()
        except Exception as e:
            log.exception("badge_update_failed", count=count, error=str(e))

    async def _enrichment_tick(self) -> None:
        if self.process_source is None:
            return
        try:
            processes = await self.process_source.processes()
            labels = self.enricher.enrich_batch(processes)
            # Marker lookups touch the filesystem
            groups = await asyncio.to_thread(group_by_project, processes)
        except Exception as e:
            # Labels from an earlier tick may name processes that are gone
            log.warning("process_snapshot_failed", error=str(e))
            self._source_failed(ENRICHMENT_SUBSCRIBER, e)
            self.latest_labels = {}
            self.latest_groups = []
            return
        self._source_recovered(ENRICHMENT_SUBSCRIBER)
        self.latest_labels = labels
        self.latest_groups = groups
        log.debug(
            "processes_enriched",
            processes=len(processes),
            labelled=len(self.latest_labels),
            projects=len(self.latest_groups),
        )

    def _source_failed(self, subscriber: str, error: Exception) -> None:
        if subscriber not in self._failing:
            self._failing.add(subscriber)
            console.tick_failed(subscriber, str(error))

    def _source_recovered(self, subscriber: str) -> None:
        if subscriber in self._failing:
            self._failing.discard(subscriber)
            log.info("source_recovered", subscriber=subscriber)
            console.tick_recovered(subscriber)

    async def _power_tick(self) -> None:
        if self.power_probe is None:
            return
        battery = await asyncio.to_thread(self.power_probe)
        self._apply_policy(lambda: self.scheduler.set_battery_mode(battery))

    # ─────────────────────────────────────────────────────────────────────
    # Host controls
    # ─────────────────────────────────────────────────────────────────────

    def set_window_visible(self, visible: bool) -> None:
        """Tell the pipeline whether the UI window is on screen."""
        self._apply_policy(lambda: self.scheduler.set_window_visible(visible))

    def _apply_policy(self, change: Callable[[], None]) -> None:
        policy = self.scheduler.policy
        before = (policy.window_visible, policy.on_battery)
        change()
        if (policy.window_visible, policy.on_battery) != before:
            console.policy_changed(policy.window_visible, policy.on_battery)

    def label_for(self, pid: int) -> str | None:
        """Label from the most recent enrichment tick."""
        return self.latest_labels.get(pid)

    async def acknowledge_all(self) -> int:
        count = self.engine.acknowledge_all()
        if count:
            console.alerts_acknowledged(count)
        await self._update_badge()
        return count

    async def acknowledge_event(self, event_id: str) -> bool:
        acknowledged = self.engine.acknowledge_event(event_id)
        if acknowledged:
            await self._update_badge()
        return acknowledged

    async def clear_history(self) -> None:
        self.engine.clear_history()
        await self._update_badge()

    def reset_alert_rules(self) -> None:
        self.engine.reset_to_defaults()
        console.rules_reset(len(self.engine.get_rules()))

    def reset_enrichment_rules(self) -> None:
        """Drop user enrichment rules and relabel with the built-ins from the next tick."""
        if self.store is not None:
            self.store.reset_enrichment_rules()
            self.enricher = ProcessEnricher(self.store.load_enrichment_rules())
        else:
            self.enricher = ProcessEnricher.with_defaults()
        console.enrichment_rules_reset(len(self.enricher.rules))

    # ─────────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────────

    def _persist(self, change: StateChange) -> None:
        if self.store is None:
            return
        if change is StateChange.RULES:
            self.store.save_alert_rules(self.engine.get_rules())
        elif change is StateChange.HISTORY:
            self.store.save_history(self.engine.get_history())
