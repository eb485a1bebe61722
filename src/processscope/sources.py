"""Contracts for the collectors that feed the pipeline.

Collectors live outside this package. They own their own timeouts: a slow
collector only delays the tier that awaits it.
"""

from __future__ import annotations

from typing import Protocol

from processscope.models import MetricsContext, ProcessRecord


class MetricsSource(Protocol):
    """Supplies the metrics snapshot evaluated by the alert engine."""

    async def snapshot(self) -> MetricsContext | None:
        """Latest snapshot, or None if the collector is unavailable."""
        ...


class ProcessSource(Protocol):
    """Supplies the process list labelled by the enrichment engine."""

    async def processes(self) -> list[ProcessRecord]: ...
