import asyncio
import json
import time
from pathlib import Path

import httpx
import respx

from quotamon.errors import AuthenticationRequired, ErrorKind, ExecutionFailed, Timeout
from quotamon.execution import CommandExecutor
from quotamon.models import Provider, QuotaStatus, UsageSnapshot
from quotamon.monitor import ProbeOutcome, QuotaMonitor
from quotamon.providers.base import QuotaProbe
from quotamon.providers.gemini import QUOTA_ENDPOINT, GeminiProbe
from quotamon.registry import ProviderRecord, ProviderRegistry


def make_monitor(*probes, probe_timeout: float = 1.0) -> QuotaMonitor:
    registry = ProviderRegistry(ProviderRecord(p.provider.value, p.provider.value.capitalize(), p) for p in probes)
    return QuotaMonitor(registry, probe_timeout=probe_timeout)


async def test_mixed_outcomes_are_contained(fake_probe) -> None:
    claude = fake_probe(Provider.CLAUDE, 90.0, ("sleep", 5, 90.0))
    codex = fake_probe(Provider.CODEX, 80.0, 15.0)
    gemini = fake_probe(Provider.GEMINI, 60.0)
    monitor = make_monitor(claude, codex, gemini, probe_timeout=0.3)
    alerts = []
    monitor.subscribe(alerts.append)

    first = await monitor.refresh()
    assert first.alerts == ()
    assert {s.phase for s in monitor.states().values()} == {"healthy"}

    started = time.monotonic()
    second = await monitor.refresh()
    assert time.monotonic() - started < 2

    claude_state = monitor.state("claude")
    assert isinstance(claude_state.error, Timeout)
    assert claude_state.error.kind is ErrorKind.TIMEOUT
    assert claude_state.snapshot.lowest_percent_remaining == 90.0
    assert claude_state.status is QuotaStatus.HEALTHY
    assert claude_state.phase == "failed"
    assert claude_state.sequence == second.sequence

    codex_state = monitor.state("codex")
    assert codex_state.status is QuotaStatus.CRITICAL
    assert codex_state.error is None

    gemini_state = monitor.state("gemini")
    assert gemini_state.status is QuotaStatus.HEALTHY

    assert [(a.provider_id, a.previous, a.current) for a in alerts] == [
        ("codex", QuotaStatus.HEALTHY, QuotaStatus.CRITICAL)
    ]
    assert second.alerts == tuple(alerts)


async def test_slow_provider_does_not_delay_others(fake_probe) -> None:
    slow = fake_probe(Provider.CLAUDE, ("sleep", 5, 90.0))
    fast = fake_probe(Provider.CODEX, 70.0)
    monitor = make_monitor(slow, fast, probe_timeout=0.5)

    result = await monitor.refresh()

    by_id = {o.provider_id: o for o in result.outcomes}
    assert isinstance(by_id["claude"].error, Timeout)
    assert by_id["codex"].snapshot is not None
    assert by_id["codex"].elapsed < 0.5


async def test_improving_transition_is_recorded_not_alerted(fake_probe) -> None:
    codex = fake_probe(Provider.CODEX, 10.0, 80.0)
    monitor = make_monitor(codex)
    alerts = []
    monitor.subscribe(alerts.append)

    await monitor.refresh()
    second = await monitor.refresh()

    assert [(t.previous, t.current, t.degrading) for t in second.transitions] == [
        (QuotaStatus.CRITICAL, QuotaStatus.HEALTHY, False)
    ]
    assert [(t.previous, t.current) for t in alerts] == [(None, QuotaStatus.CRITICAL)]


async def test_each_degrading_step_alerts(fake_probe) -> None:
    gemini = fake_probe(Provider.GEMINI, 70.0, 40.0, 40.0, 0.0)
    monitor = make_monitor(gemini)
    seen = []
    monitor.subscribe(lambda t: seen.append(t.current))

    for _ in range(4):
        await monitor.refresh()

    assert seen == [QuotaStatus.WARNING, QuotaStatus.DEPLETED]


async def test_failure_keeps_last_good_snapshot(fake_probe) -> None:
    claude = fake_probe(Provider.CLAUDE, 45.0, AuthenticationRequired(), 55.0)
    monitor = make_monitor(claude)

    await monitor.refresh()
    await monitor.refresh()
    failed = monitor.state("claude")
    assert isinstance(failed.error, AuthenticationRequired)
    assert failed.status is QuotaStatus.WARNING

    await monitor.refresh()
    recovered = monitor.state("claude")
    assert recovered.error is None
    assert recovered.status is QuotaStatus.HEALTHY


async def test_unexpected_exception_becomes_execution_failed(fake_probe) -> None:
    broken = fake_probe(Provider.CLAUDE, RuntimeError("boom"))
    fine = fake_probe(Provider.CODEX, 99.0)
    monitor = make_monitor(broken, fine)

    await monitor.refresh()

    assert isinstance(monitor.state("claude").error, ExecutionFailed)
    assert monitor.state("claude").phase == "failed"
    assert monitor.state("codex").phase == "healthy"


async def test_unavailable_probe_is_not_called(fake_probe) -> None:
    missing = fake_probe(Provider.GEMINI, 50.0, available=False)
    monitor = make_monitor(missing)

    await monitor.refresh()

    assert missing.calls == 0
    assert isinstance(monitor.state("gemini").error, ExecutionFailed)


async def test_overlapping_refreshes_are_coalesced(fake_probe) -> None:
    codex = fake_probe(Provider.CODEX, ("sleep", 0.1, 50.0))
    monitor = make_monitor(codex)

    first, second = await asyncio.gather(monitor.refresh(), monitor.refresh())

    assert first is second
    assert codex.calls == 1
    third = await monitor.refresh()
    assert third.sequence == first.sequence + 1


async def test_enablement_applies_to_next_refresh(fake_probe) -> None:
    claude = fake_probe(Provider.CLAUDE, ("sleep", 0.1, 50.0))
    codex = fake_probe(Provider.CODEX, ("sleep", 0.1, 50.0))
    monitor = make_monitor(claude, codex)

    inflight = asyncio.ensure_future(monitor.refresh())
    await asyncio.sleep(0.01)
    monitor.registry.set_enabled("codex", False)
    result = await inflight

    assert {o.provider_id for o in result.outcomes} == {"claude", "codex"}
    nxt = await monitor.refresh()
    assert {o.provider_id for o in nxt.outcomes} == {"claude"}
    assert monitor.state("codex").sequence == result.sequence


async def test_stale_results_are_discarded(fake_probe) -> None:
    codex = fake_probe(Provider.CODEX, 90.0, 30.0)
    monitor = make_monitor(codex)
    await monitor.refresh()
    await monitor.refresh()

    stale = ProbeOutcome("codex", error=ExecutionFailed("late"))
    assert monitor._apply(1, [stale]) == []

    state = monitor.state("codex")
    assert state.error is None
    assert state.status is QuotaStatus.WARNING
    assert state.sequence == 2


async def test_subscriber_errors_do_not_escape(fake_probe) -> None:
    codex = fake_probe(Provider.CODEX, 90.0, 5.0)
    monitor = make_monitor(codex)
    received = []

    def explode(transition) -> None:
        raise RuntimeError("subscriber bug")

    monitor.subscribe(explode)
    unsubscribe = monitor.subscribe(received.append)
    await monitor.refresh()
    await monitor.refresh()
    assert len(received) == 1

    unsubscribe()
    assert monitor.state("codex").status is QuotaStatus.CRITICAL


async def test_states_are_copies(fake_probe) -> None:
    monitor = make_monitor(fake_probe(Provider.CLAUDE, 50.0))
    assert monitor.state("claude").phase == "unprobed"

    await monitor.refresh()
    states = monitor.states()
    states.clear()

    assert monitor.states()["claude"].phase == "healthy"


async def test_shutdown_reaches_every_probe(fake_probe) -> None:
    claude = fake_probe(Provider.CLAUDE, 50.0)
    codex = fake_probe(Provider.CODEX, 50.0)
    monitor = make_monitor(claude, codex)
    monitor.registry.set_enabled("codex", False)

    await monitor.shutdown()

    assert claude.shutdowns == codex.shutdowns == 1


async def test_first_reading_below_healthy_alerts(fake_probe) -> None:
    claude = fake_probe(Provider.CLAUDE, 0.0)
    gemini = fake_probe(Provider.GEMINI, 75.0)
    monitor = make_monitor(claude, gemini)
    alerts = []
    monitor.subscribe(alerts.append)

    result = await monitor.refresh()

    assert [(t.provider_id, t.previous, t.current) for t in alerts] == [("claude", None, QuotaStatus.DEPLETED)]
    assert result.alerts == tuple(alerts)


async def test_failing_availability_check_is_contained(fake_probe) -> None:
    class BrokenAvailability(fake_probe):
        def is_available(self) -> bool:
            raise TypeError("unhashable type: 'list'")

    broken = BrokenAvailability(Provider.GEMINI, 50.0)
    codex = fake_probe(Provider.CODEX, 15.0)
    monitor = make_monitor(broken, codex)

    await monitor.refresh()

    assert broken.calls == 0
    assert isinstance(monitor.state("gemini").error, ExecutionFailed)
    assert monitor.state("codex").status is QuotaStatus.CRITICAL


@respx.mock
async def test_malformed_gemini_settings_do_not_abort_refresh(fake_probe, tmp_path: Path) -> None:
    gemini_dir = tmp_path / ".gemini"
    gemini_dir.mkdir()
    (gemini_dir / "oauth_creds.json").write_text(json.dumps({"access_token": "token"}))
    (gemini_dir / "settings.json").write_text(json.dumps({"selectedAuthType": ["oauth-personal"]}))
    respx.post(QUOTA_ENDPOINT).mock(
        return_value=httpx.Response(200, json={"buckets": [{"modelId": "gemini-2.5-pro", "remainingFraction": 0.6}]})
    )
    codex = fake_probe(Provider.CODEX, 15.0)
    monitor = make_monitor(GeminiProbe(home=tmp_path), codex)

    await monitor.refresh()

    assert monitor.state("gemini").status is QuotaStatus.HEALTHY
    assert monitor.state("codex").status is QuotaStatus.CRITICAL


class StubbornCLIProbe(QuotaProbe):
    provider = Provider.CLAUDE

    def is_available(self) -> bool:
        return True

    async def probe(self) -> UsageSnapshot:
        await CommandExecutor().execute("sh", ["-c", "trap '' TERM; sleep 30"], timeout=10)
        raise AssertionError("the child should never finish")


async def test_timed_out_cli_does_not_overrun_deadline(fake_probe) -> None:
    codex = fake_probe(Provider.CODEX, 80.0)
    monitor = make_monitor(StubbornCLIProbe(), codex, probe_timeout=0.3)

    started = time.monotonic()
    await monitor.refresh()

    assert time.monotonic() - started < 1.5
    assert isinstance(monitor.state("claude").error, Timeout)
    assert monitor.state("codex").status is QuotaStatus.HEALTHY
