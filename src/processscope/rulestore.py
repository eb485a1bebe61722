"""Persistence for alert rules, alert history and enrichment rules.

Alert rules and history are stored as JSON for the application; both rule
kinds can also be exported to and imported from TOML for hand editing.

Loading never raises: a malformed rule is logged and skipped, and a store that
cannot be parsed at all falls back to the built-in defaults.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
import tomlkit

from processscope.alerts import AlertEvent, AlertRule, default_rules
from processscope.config import Config
from processscope.enrichment import BUILTIN_RULES, EnrichmentRule

log = structlog.get_logger()

_ENRICHMENT_FIELDS = ("process_name", "argv_contains", "argv_regex")


def _write_private(path: Path, text: str) -> None:
    """Atomically write a file readable only by the owner."""
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)


def _parse_each(items: list, build, kind: str, source: str) -> list:
    """Build every item, logging and skipping the ones that fail."""
    parsed = []
    for index, item in enumerate(items):
        try:
            parsed.append(build(item))
        except (ValueError, TypeError) as e:
            log.warning("rule_skipped", kind=kind, index=index, source=source, error=str(e))
    return parsed


# ─────────────────────────────────────────────────────────────────────────────
# Alert rules
# ─────────────────────────────────────────────────────────────────────────────


def alert_rules_from_data(data: Any, source: str = "<data>") -> list[AlertRule]:
    """Parse a decoded rule list. Raises ValueError if the document has no usable rules."""
    if isinstance(data, dict):
        data = data.get("rules")
    if not isinstance(data, list):
        raise ValueError(f"expected a list of rules in {source}")
    rules = _parse_each(data, AlertRule.from_dict, "alert", source)
    if data and not rules:
        raise ValueError(f"no valid rules in {source}")
    return rules


def load_alert_rules(path: Path) -> list[AlertRule] | None:
    """Load rules from a JSON store. Returns None if the store is missing or unusable."""
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return alert_rules_from_data(data, str(path))
    except (OSError, ValueError) as e:
        log.warning("alert_rules_unreadable", path=str(path), error=str(e))
        return None


def save_alert_rules(path: Path, rules: Iterable[AlertRule]) -> None:
    payload = [rule.to_dict() for rule in rules]
    _write_private(path, json.dumps(payload, indent=2, sort_keys=True))


def export_alert_rules_toml(rules: Iterable[AlertRule]) -> str:
    """Render rules as a human-editable TOML document."""
    doc = tomlkit.document()
    doc.add(tomlkit.comment("processscope alert rules"))
    doc.add(tomlkit.comment("Edit thresholds here, then import"))
    doc.add(tomlkit.nl())

    aot = tomlkit.aot()
    for rule in rules:
        table = tomlkit.table()
        data = rule.to_dict()
        condition = tomlkit.inline_table()
        condition.update(data.pop("condition"))
        for key, value in data.items():
            table.add(key, value)
        table.add("condition", condition)
        aot.append(table)
    doc.add("rules", aot)
    return tomlkit.dumps(doc)


def parse_alert_rules_toml(text: str) -> list[AlertRule]:
    """Parse rules from TOML text. Raises ValueError if the text is not usable."""
    try:
        data = tomlkit.parse(text).unwrap()
    except tomlkit.exceptions.TOMLKitError as e:
        raise ValueError(f"Failed to parse alert rules: {e}") from e
    return alert_rules_from_data(data.get("rules", []), "<toml>")


# ─────────────────────────────────────────────────────────────────────────────
# Alert history
# ─────────────────────────────────────────────────────────────────────────────


def load_alert_history(path: Path) -> list[AlertEvent]:
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.warning("alert_history_unreadable", path=str(path), error=str(e))
        return []
    if not isinstance(data, list):
        log.warning("alert_history_unreadable", path=str(path), error="not a list")
        return []
    return _parse_each(data, AlertEvent.from_dict, "event", str(path))


def save_alert_history(path: Path, events: Iterable[AlertEvent]) -> None:
    payload = [event.to_dict() for event in events]
    _write_private(path, json.dumps(payload))


# ─────────────────────────────────────────────────────────────────────────────
# Enrichment rules
# ─────────────────────────────────────────────────────────────────────────────


def enrichment_rule_from_dict(data: Any) -> EnrichmentRule:
    """Build an enrichment rule. Raises ValueError if malformed."""
    if not isinstance(data, dict):
        raise ValueError(f"rule must be a table, got {type(data).__name__}")
    name = data.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError(f"rule name must be a non-empty string, got {name!r}")

    matchers = {}
    for key in _ENRICHMENT_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"{key} must be a string, got {value!r}")
        matchers[key] = value or None

    template = data.get("template", "{name}")
    if not isinstance(template, str):
        raise ValueError(f"template must be a string, got {template!r}")
    priority = data.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValueError(f"priority must be an integer, got {priority!r}")

    return EnrichmentRule(name=name, template=template, priority=priority, **matchers)


def enrichment_rule_to_dict(rule: EnrichmentRule) -> dict[str, Any]:
    data: dict[str, Any] = {"name": rule.name}
    for key in _ENRICHMENT_FIELDS:
        value = getattr(rule, key)
        if value is not None:
            data[key] = value
    data["template"] = rule.template
    data["priority"] = rule.priority
    return data


def enrichment_rules_from_data(data: Any, source: str = "<data>") -> list[EnrichmentRule]:
    if isinstance(data, dict):
        data = data.get("rules")
    if not isinstance(data, list):
        raise ValueError(f"expected a list of rules in {source}")
    return _parse_each(data, enrichment_rule_from_dict, "enrichment", source)


def parse_enrichment_rules_toml(text: str) -> list[EnrichmentRule]:
    try:
        data = tomlkit.parse(text).unwrap()
    except tomlkit.exceptions.TOMLKitError as e:
        raise ValueError(f"Failed to parse enrichment rules: {e}") from e
    return enrichment_rules_from_data(data.get("rules", []), "<toml>")


def export_enrichment_rules_toml(rules: Iterable[EnrichmentRule]) -> str:
    doc = tomlkit.document()
    doc.add(tomlkit.comment("processscope enrichment rules"))
    doc.add(tomlkit.comment("Higher priority rules are tried first; the first match wins"))
    doc.add(tomlkit.nl())

    aot = tomlkit.aot()
    for rule in rules:
        table = tomlkit.table()
        for key, value in enrichment_rule_to_dict(rule).items():
            table.add(key, value)
        aot.append(table)
    doc.add("rules", aot)
    return tomlkit.dumps(doc)


def load_enrichment_rules(path: Path) -> list[EnrichmentRule] | None:
    """Load user rules from a .toml or .json file. None if missing or unusable."""
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix == ".json":
            return enrichment_rules_from_data(json.loads(text), str(path))
        return parse_enrichment_rules_toml(text)
    except (OSError, ValueError) as e:
        log.warning("enrichment_rules_unreadable", path=str(path), error=str(e))
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Store
# ─────────────────────────────────────────────────────────────────────────────


class RuleStore:
    """Config-located rule and history files."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def load_alert_rules(self) -> list[AlertRule]:
        """Stored rules, or the built-ins (written back) if the store is missing or unusable."""
        rules = load_alert_rules(self.config.alert_rules_path)
        if rules is None:
            rules = default_rules()
            self.save_alert_rules(rules)
            log.info("alert_rules_defaulted", count=len(rules))
        else:
            log.info("alert_rules_loaded", count=len(rules))
        return rules

    def save_alert_rules(self, rules: Iterable[AlertRule]) -> None:
        try:
            save_alert_rules(self.config.alert_rules_path, rules)
        except OSError as e:
            log.error("alert_rules_save_failed", error=str(e))

    def load_history(self) -> list[AlertEvent]:
        return load_alert_history(self.config.alert_history_path)

    def save_history(self, events: Iterable[AlertEvent]) -> None:
        try:
            save_alert_history(self.config.alert_history_path, events)
        except OSError as e:
            log.error("alert_history_save_failed", error=str(e))

    def load_enrichment_rules(self) -> list[EnrichmentRule]:
        """User rules followed by the built-ins (when enabled)."""
        user_rules = load_enrichment_rules(self.config.enrichment_rules_path) or []
        builtins = list(BUILTIN_RULES) if self.config.enrichment.use_builtin_rules else []
        log.info("enrichment_rules_loaded", user=len(user_rules), builtin=len(builtins))
        return user_rules + builtins

    def save_enrichment_rules(self, rules: Iterable[EnrichmentRule]) -> None:
        try:
            _write_private(self.config.enrichment_rules_path, export_enrichment_rules_toml(rules))
        except OSError as e:
            log.error("enrichment_rules_save_failed", error=str(e))

    def reset_enrichment_rules(self) -> None:
        """Drop user enrichment rules so only the built-ins apply."""
        path = self.config.enrichment_rules_path
        if path.exists():
            path.unlink()
        log.info("enrichment_rules_reset")
