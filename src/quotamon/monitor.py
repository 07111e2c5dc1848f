"""Refresh cycles over every enabled provider.

Probes run concurrently and only return values. All writes to the provider
state map happen in one synchronous step after the probes settle, so there is
a single writer and no locking around the map. Overlapping ``refresh`` calls
join the cycle already in flight.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

from quotamon.errors import ExecutionFailed, ProbeError, Timeout
from quotamon.models import QuotaStatus, UsageSnapshot
from quotamon.registry import ProviderRecord, ProviderRegistry

logger = logging.getLogger(__name__)

TransitionCallback = Callable[["StatusTransition"], None]


@dataclass(frozen=True)
class ProviderState:
    provider_id: str
    snapshot: UsageSnapshot | None = None
    status: QuotaStatus | None = None
    error: ProbeError | None = None
    sequence: int = 0
    updated_at: datetime | None = None

    @property
    def phase(self) -> str:
        if self.error is not None:
            return "failed"
        if self.status is None:
            return "unprobed"
        return self.status.value


@dataclass(frozen=True)
class StatusTransition:
    provider_id: str
    previous: QuotaStatus | None
    current: QuotaStatus
    sequence: int
    at: datetime

    @property
    def degrading(self) -> bool:
        baseline = self.previous or QuotaStatus.HEALTHY
        return self.current.severity > baseline.severity


@dataclass(frozen=True)
class ProbeOutcome:
    provider_id: str
    snapshot: UsageSnapshot | None = None
    error: ProbeError | None = None
    elapsed: float = 0.0


@dataclass(frozen=True)
class RefreshResult:
    sequence: int
    outcomes: tuple[ProbeOutcome, ...]
    transitions: tuple[StatusTransition, ...]

    @property
    def alerts(self) -> tuple[StatusTransition, ...]:
        return tuple(t for t in self.transitions if t.degrading)


class QuotaMonitor:
    def __init__(
        self,
        registry: ProviderRegistry,
        probe_timeout: float = 20.0,
        refresh_timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.probe_timeout = probe_timeout
        self.refresh_timeout = refresh_timeout
        self._states: dict[str, ProviderState] = {}
        self._sequence = 0
        self._inflight: asyncio.Future[RefreshResult] | None = None
        self._subscribers: list[TransitionCallback] = []

    def subscribe(self, callback: TransitionCallback) -> Callable[[], None]:
        """Register a callback for degrading transitions. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def state(self, provider_id: str) -> ProviderState:
        return self._states.get(provider_id) or ProviderState(provider_id)

    def states(self) -> dict[str, ProviderState]:
        return {r.id: self.state(r.id) for r in self.registry.all}

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def refresh(self) -> RefreshResult:
        if self.refreshing:
            logger.debug("refresh already in flight; joining it")
        else:
            self._inflight = asyncio.ensure_future(self._run_refresh())
        # Cancelling one caller leaves the shared cycle running.
        return await asyncio.shield(self._inflight)

    async def shutdown(self) -> None:
        for record in self.registry.all:
            try:
                await record.probe.shutdown()
            except Exception:
                logger.exception("shutdown of %s probe failed", record.id)

    async def _run_refresh(self) -> RefreshResult:
        self._sequence += 1
        sequence = self._sequence
        targets = self.registry.enabled
        timeout = self.probe_timeout
        if self.refresh_timeout is not None:
            timeout = min(timeout, self.refresh_timeout)

        logger.debug("refresh %d: probing %s", sequence, ", ".join(r.id for r in targets) or "nothing")
        outcomes = await asyncio.gather(*(self._probe_one(r, timeout) for r in targets))
        transitions = self._apply(sequence, outcomes)
        result = RefreshResult(sequence=sequence, outcomes=tuple(outcomes), transitions=tuple(transitions))
        self._notify(result.alerts)
        return result

    async def _probe_one(self, record: ProviderRecord, timeout: float) -> ProbeOutcome:
        started = time.monotonic()
        snapshot = None
        error: ProbeError | None = None

        try:
            if not record.probe.is_available():
                raise ExecutionFailed(f"{record.name} is not installed or not configured")
            snapshot = await asyncio.wait_for(record.probe.probe(), timeout)
        except asyncio.TimeoutError as exc:
            error = Timeout(f"{record.name} probe exceeded {timeout:g}s", cause=exc)
        except ProbeError as exc:
            error = exc
        except Exception as exc:
            logger.exception("%s probe raised unexpectedly", record.id)
            error = ExecutionFailed(f"unexpected error: {exc}", cause=exc)

        elapsed = time.monotonic() - started
        if error is not None:
            logger.warning("%s probe failed after %.1fs: %s", record.id, elapsed, error)
        return ProbeOutcome(provider_id=record.id, snapshot=snapshot, error=error, elapsed=elapsed)

    def _apply(self, sequence: int, outcomes: list[ProbeOutcome]) -> list[StatusTransition]:
        now = datetime.now(timezone.utc)
        transitions: list[StatusTransition] = []
        for outcome in outcomes:
            previous = self.state(outcome.provider_id)
            if previous.sequence >= sequence:
                logger.debug("dropping stale result for %s from refresh %d", outcome.provider_id, sequence)
                continue

            if outcome.snapshot is None:
                # Keep the last good snapshot and status; only the error changes.
                self._states[outcome.provider_id] = replace(
                    previous, error=outcome.error, sequence=sequence, updated_at=now
                )
                continue

            status = outcome.snapshot.status
            self._states[outcome.provider_id] = ProviderState(
                provider_id=outcome.provider_id,
                snapshot=outcome.snapshot,
                status=status,
                error=None,
                sequence=sequence,
                updated_at=now,
            )
            if status != previous.status:
                transitions.append(StatusTransition(outcome.provider_id, previous.status, status, sequence, now))
                logger.info(
                    "%s status %s -> %s",
                    outcome.provider_id,
                    previous.status.value if previous.status else "none",
                    status.value,
                )
        return transitions

    def _notify(self, alerts: tuple[StatusTransition, ...]) -> None:
        for transition in alerts:
            for callback in list(self._subscribers):
                try:
                    callback(transition)
                except Exception:
                    logger.exception("transition subscriber failed")
