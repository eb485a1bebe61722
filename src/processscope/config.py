"""Configuration system for processscope."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

from processscope.models import PollingTier


@dataclass
class SystemConfig:
    """Process-level settings."""

    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class SchedulerConfig:
    """Polling cadence configuration.

    Adaptive multipliers compound: a hidden window on battery polls at
    nominal x hidden_multiplier x battery_multiplier.
    """

    hidden_multiplier: float = 2.0
    battery_multiplier: float = 2.0
    alert_tier: str = "critical"  # Alert evaluation runs on the fastest tier
    enrichment_tier: str = "extended"
    power_check_tier: str = "slow"  # Battery probe feeding the adaptive policy


@dataclass
class AlertsConfig:
    """Alert engine configuration."""

    enabled: bool = True
    cooldown_seconds: float = 60.0  # Min seconds between fires of the same rule
    history_limit: int = 100  # Most recent events kept in history
    notifications: bool = True  # Deliver fired events to the notification gateway


@dataclass
class EnrichmentConfig:
    """Process label enrichment configuration."""

    enabled: bool = True
    use_builtin_rules: bool = True  # Append built-in rules after user rules


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    system: SystemConfig = field(default_factory=SystemConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "processscope"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory for rule stores and alert history."""
        return Path.home() / ".local" / "share" / "processscope"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "processscope"

    @property
    def alert_rules_path(self) -> Path:
        """Alert rules store (JSON)."""
        return self.data_dir / "alerts.json"

    @property
    def alert_history_path(self) -> Path:
        """Fired alert history (JSON)."""
        return self.data_dir / "alert-history.json"

    @property
    def enrichment_rules_path(self) -> Path:
        """User enrichment rules (TOML, human-editable)."""
        return self.data_dir / "enrichment.toml"

    @property
    def log_path(self) -> Path:
        """Log path.

        Logs are expendable persistent state, so they go in XDG_STATE_HOME.
        """
        return self.state_dir / "processscope.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("system", "scheduler", "alerts", "enrichment"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
        This ensures Config() and Config.load() use identical defaults.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        system_data = data.get("system", {})
        sys_defaults = defaults.system

        return cls(
            system=SystemConfig(
                log_max_bytes=system_data.get("log_max_bytes", sys_defaults.log_max_bytes),
                log_backup_count=system_data.get("log_backup_count", sys_defaults.log_backup_count),
            ),
            scheduler=_load_scheduler_config(data.get("scheduler", {})),
            alerts=_load_alerts_config(data.get("alerts", {})),
            enrichment=_load_enrichment_config(data.get("enrichment", {})),
        )


def _load_scheduler_config(data: dict) -> SchedulerConfig:
    """Load scheduler config from TOML data, using dataclass defaults for missing fields."""
    defaults = SchedulerConfig()

    hidden_multiplier = data.get("hidden_multiplier", defaults.hidden_multiplier)
    battery_multiplier = data.get("battery_multiplier", defaults.battery_multiplier)
    if hidden_multiplier < 1:
        raise ValueError(f"hidden_multiplier must be >= 1, got {hidden_multiplier}")
    if battery_multiplier < 1:
        raise ValueError(f"battery_multiplier must be >= 1, got {battery_multiplier}")

    alert_tier = data.get("alert_tier", defaults.alert_tier)
    enrichment_tier = data.get("enrichment_tier", defaults.enrichment_tier)
    power_check_tier = data.get("power_check_tier", defaults.power_check_tier)
    # Raises ValueError on unknown tier names
    for tier_name in (alert_tier, enrichment_tier, power_check_tier):
        PollingTier.parse(tier_name)

    return SchedulerConfig(
        hidden_multiplier=hidden_multiplier,
        battery_multiplier=battery_multiplier,
        alert_tier=alert_tier,
        enrichment_tier=enrichment_tier,
        power_check_tier=power_check_tier,
    )


def _load_alerts_config(data: dict) -> AlertsConfig:
    """Load alerts config from TOML data."""
    d = AlertsConfig()

    cooldown_seconds = data.get("cooldown_seconds", d.cooldown_seconds)
    history_limit = data.get("history_limit", d.history_limit)
    if cooldown_seconds < 0:
        raise ValueError(f"cooldown_seconds must be >= 0, got {cooldown_seconds}")
    if history_limit < 1:
        raise ValueError(f"history_limit must be >= 1, got {history_limit}")

    return AlertsConfig(
        enabled=data.get("enabled", d.enabled),
        cooldown_seconds=cooldown_seconds,
        history_limit=history_limit,
        notifications=data.get("notifications", d.notifications),
    )


def _load_enrichment_config(data: dict) -> EnrichmentConfig:
    """Load enrichment config from TOML data."""
    d = EnrichmentConfig()
    return EnrichmentConfig(
        enabled=data.get("enabled", d.enabled),
        use_builtin_rules=data.get("use_builtin_rules", d.use_builtin_rules),
    )
