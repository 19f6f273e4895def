"""Memory-pressure monitor.

Samples the service's resident memory on an interval and, when a configured
tier is crossed, sheds sessions. Tiers are evaluated highest threshold first;
only the first matching tier acts on a sample.
"""
from __future__ import annotations

import asyncio
import gc
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import psutil

from ..kernel.registry import SessionRegistry
from ..kernel.settings import DEFAULT_MEMORY_TIERS, MemoryTier
from ..util.time import utc_now_iso

logger = logging.getLogger("shellbridge.health")


@dataclass
class MemorySample:
    rss_mb: float
    system_percent: float = 0.0


@dataclass
class HealthReport:
    ts: str
    rss_mb: float
    system_percent: float
    sessions: int
    tier: Optional[str] = None
    action: Optional[str] = None
    closed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts,
            "rss_mb": round(self.rss_mb, 1),
            "system_percent": round(self.system_percent, 1),
            "sessions": self.sessions,
            "tier": self.tier,
            "action": self.action,
            "closed": list(self.closed),
        }


def psutil_sampler() -> MemorySample:
    proc = psutil.Process()
    rss = float(proc.memory_info().rss)
    # Shells are children of this process; their memory counts too.
    for child in proc.children(recursive=True):
        try:
            rss += float(child.memory_info().rss)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return MemorySample(rss_mb=rss / (1024 * 1024), system_percent=float(psutil.virtual_memory().percent))


class HealthMonitor:
    def __init__(
        self,
        registry: SessionRegistry,
        *,
        tiers: Sequence[MemoryTier] = DEFAULT_MEMORY_TIERS,
        interval: float = 30.0,
        sampler: Optional[Callable[[], MemorySample]] = None,
        collect: Callable[[], Any] = gc.collect,
    ) -> None:
        self.registry = registry
        self.tiers = sorted(tiers, key=lambda t: t.threshold_mb, reverse=True)
        self.interval = float(interval)
        self._sampler = sampler or psutil_sampler
        self._collect = collect
        self.last_report: Optional[HealthReport] = None

    def match_tier(self, rss_mb: float) -> Optional[MemoryTier]:
        for tier in self.tiers:
            if rss_mb >= tier.threshold_mb:
                return tier
        return None

    def sample(self) -> MemorySample:
        return self._sampler()

    def check(self) -> HealthReport:
        sample = self.sample()
        live = len(self.registry.list_sessions())
        report = HealthReport(
            ts=utc_now_iso(),
            rss_mb=sample.rss_mb,
            system_percent=sample.system_percent,
            sessions=live,
        )
        tier = self.match_tier(sample.rss_mb)
        if tier is not None:
            report.tier = tier.name
            report.action = tier.action
            if tier.action == "close_all":
                report.closed = self.registry.close_all(reason="memory_pressure")
            else:
                report.closed = self.registry.close_oldest(math.ceil(live / 2), reason="memory_pressure")
                self._collect()
            logger.warning(
                f"[health] rss={sample.rss_mb:.0f}MB crossed {tier.name} ({tier.threshold_mb:.0f}MB); "
                f"{tier.action} closed {len(report.closed)} session(s)",
                extra={"op": "memory_pressure", "tier": tier.name},
            )
        self.last_report = report
        return report

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.check()
            except (psutil.Error, OSError) as e:
                logger.warning(f"[health] sampling failed: {e}")
            except Exception:
                logger.exception("[health] check failed")
