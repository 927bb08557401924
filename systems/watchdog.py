# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Health Monitor

Two background loops, independent of playback:

1. Monitoring pass (every check_interval seconds)
   - Probe each service: bot (gateway + job worker) and lavalink (node pool)
   - A probe that raises or times out counts as "unknown"
   - Failure streak per service: non-operational +1, operational resets to 0
   - Monitoring event (log + audit entry, action "monitor") on status change,
     or at most every log_interval while still non-operational
   - External alert when streak >= failure_threshold AND status is
     non-operational AND the last alert for that service is older than the
     cooldown

2. Sampling pass (wall-clock aligned, e.g. :00 :05 :10 for 5 minutes)
   - One health_samples row per service per interval
   - Skipped when the newest row is already inside the current interval
     (restarts don't double-sample)
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Union

import aiohttp
import discord
from loguru import logger

from utils.database import utc_now
from utils.persistence import AuditLog, HealthSampleStore

PROBE_TIMEOUT = 5.0  # seconds
# Sample dedup tolerance (loop wakeups are not exact)
SAMPLE_SLACK = timedelta(seconds=5)


class ServiceStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


Probe = Callable[[], Union[ServiceStatus, Awaitable[ServiceStatus]]]


@dataclass
class ServiceState:
    status: ServiceStatus | None = None
    streak: int = 0
    last_event_at: datetime | None = None
    last_alert_at: datetime | None = None


# =============================================================================
# PROBES
# =============================================================================

def probe_bot(bot: discord.Client, worker=None) -> ServiceStatus:
    """Gateway ready and, when given, the job worker loop still alive."""
    if not bot.is_ready() or bot.is_closed():
        return ServiceStatus.DOWN
    if worker is not None and not worker.is_running:
        return ServiceStatus.DOWN
    return ServiceStatus.OPERATIONAL


def probe_lavalink(pool) -> ServiceStatus:
    nodes = list(pool.nodes)
    if not nodes:
        return ServiceStatus.DOWN
    if all(node.available for node in nodes):
        return ServiceStatus.OPERATIONAL
    return ServiceStatus.DEGRADED


def next_aligned(now: datetime, interval: timedelta) -> datetime:
    """Next wall-clock multiple of interval strictly after now."""
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = now - day_start
    periods = elapsed // interval + 1
    return day_start + periods * interval


# =============================================================================
# ALERTS
# =============================================================================

class WebhookAlerter:
    """Posts alerts to a Discord webhook."""

    def __init__(self, url: str, session: aiohttp.ClientSession) -> None:
        self.webhook = discord.Webhook.from_url(url, session=session)

    async def send(self, service: str, status: ServiceStatus, streak: int) -> None:
        await self.webhook.send(
            content=f"**{service}** is {status.value} ({streak} failed checks in a row)",
            username="encore monitor",
        )


# =============================================================================
# MONITOR
# =============================================================================

class HealthMonitor:
    def __init__(
        self,
        probes: dict[str, Probe],
        samples: HealthSampleStore,
        audit: AuditLog,
        alerter=None,
        *,
        check_interval: float = 30.0,
        sample_interval: timedelta = timedelta(minutes=5),
        failure_threshold: int = 3,
        alert_cooldown: timedelta = timedelta(minutes=15),
        log_interval: timedelta = timedelta(minutes=2),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.probes = probes
        self.samples = samples
        self.audit = audit
        self.alerter = alerter
        self.check_interval = check_interval
        self.sample_interval = sample_interval
        self.failure_threshold = failure_threshold
        self.alert_cooldown = alert_cooldown
        self.log_interval = log_interval
        self.clock = clock

        self.states: dict[str, ServiceState] = {name: ServiceState() for name in probes}
        self._tasks: list[asyncio.Task] = []

    async def evaluate(self, service: str) -> ServiceStatus:
        """Run one probe. Anything that goes wrong is 'unknown'."""
        try:
            result = self.probes[service]()
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=PROBE_TIMEOUT)
            return ServiceStatus(result)
        except Exception:
            logger.opt(exception=True).debug(f"{service} probe failed")
            return ServiceStatus.UNKNOWN

    def should_alert(self, state: ServiceState, now: datetime) -> bool:
        if state.status in (None, ServiceStatus.OPERATIONAL):
            return False
        if state.streak < self.failure_threshold:
            return False
        return state.last_alert_at is None or now - state.last_alert_at >= self.alert_cooldown

    async def run_check(self) -> dict[str, ServiceStatus]:
        """One monitoring pass over every service."""
        results = {}
        for service in self.probes:
            status = await self.evaluate(service)
            await self.observe(service, status, self.clock())
            results[service] = status
        return results

    async def observe(self, service: str, status: ServiceStatus, now: datetime) -> None:
        """Fold one probe result into the service's streak / event / alert state."""
        state = self.states.setdefault(service, ServiceState())
        previous = state.status
        healthy = status == ServiceStatus.OPERATIONAL

        state.streak = 0 if healthy else state.streak + 1
        state.status = status

        # First healthy reading at startup isn't news
        changed = previous != status and not (previous is None and healthy)
        overdue = not healthy and (state.last_event_at is None or now - state.last_event_at >= self.log_interval)
        if changed or overdue:
            state.last_event_at = now
            await self._emit_event(service, status, previous, state.streak)

        if self.should_alert(state, now):
            state.last_alert_at = now
            await self._send_alert(service, status, state.streak)

    async def _emit_event(self, service: str, status: ServiceStatus,
                          previous: ServiceStatus | None, streak: int) -> None:
        if status == ServiceStatus.OPERATIONAL:
            logger.info(f"{service} is operational again")
        else:
            logger.warning(f"{service} is {status.value} (streak {streak})")
        await self.audit.record(
            "monitor",
            status.value,
            f"{service} {status.value}",
            payload={
                "service": service,
                "status": status.value,
                "previous": previous.value if previous else None,
                "streak": streak,
            },
        )

    async def _send_alert(self, service: str, status: ServiceStatus, streak: int) -> None:
        logger.error(f"alerting: {service} {status.value} for {streak} checks")
        if self.alerter is None:
            return
        try:
            await self.alerter.send(service, status, streak)
        except (discord.HTTPException, aiohttp.ClientError, asyncio.TimeoutError):
            logger.opt(exception=True).warning(f"alert delivery failed for {service}")

    async def run_sample(self, now: datetime | None = None) -> int:
        """Write one sample per service unless this interval already has one."""
        now = now or self.clock()
        written = 0
        for service in self.probes:
            latest = await self.samples.latest(service)
            if latest is not None and now - latest[1] < self.sample_interval - SAMPLE_SLACK:
                continue
            state = self.states.get(service)
            status = state.status if state and state.status else await self.evaluate(service)
            await self.samples.append(service, status.value, at=now)
            written += 1
        return written

    # =========================================================================
    # LOOPS
    # =========================================================================

    async def _monitor_loop(self) -> None:
        logger.debug("health monitor started")
        while True:
            try:
                await self.run_check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.opt(exception=True).error("health check failed")
            await asyncio.sleep(self.check_interval)

    async def _sample_loop(self) -> None:
        while True:
            now = self.clock()
            await asyncio.sleep((next_aligned(now, self.sample_interval) - now).total_seconds())
            try:
                await self.run_sample()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.opt(exception=True).error("health sampling failed")

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._monitor_loop()),
            asyncio.create_task(self._sample_loop()),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.debug("health monitor stopped")
