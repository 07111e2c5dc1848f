from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable

from quotamon.errors import AuthenticationRequired, ExecutionFailed
from quotamon.execution import CommandExecutor
from quotamon.models import Provider, QuotaType, UsageQuota, UsageSnapshot
from quotamon.providers.base import QuotaProbe, make_quota, remaining_from_used, snapshot_of, strip_ansi
from quotamon.providers.codex_rpc import CodexRPCClient, RateLimits

logger = logging.getLogger(__name__)

BINARY = "codex"

FIVE_HOUR_RE = re.compile(r"5h limit:\s*\[[^\]]*\]\s*([0-9]{1,3}(?:\.[0-9]+)?)% left \(resets ([0-9]{2}:[0-9]{2})\)")
WEEKLY_RE = re.compile(r"Weekly limit:\s*\[[^\]]*\]\s*([0-9]{1,3}(?:\.[0-9]+)?)% left \(resets ([0-9]{2}:[0-9]{2}) on ([0-9]{1,2} [A-Za-z]{3})\)")
LOGIN_PHRASES = ("sign in with chatgpt", "not logged in", "codex login")

ClientFactory = Callable[[str], Awaitable[CodexRPCClient]]


class CodexProbe(QuotaProbe):
    """Reads rate limits from a long-lived ``codex app-server``.

    The app-server is spawned on first use and kept for later probes. It is
    dropped when it dies, when a request fails, or when a probe is cancelled
    mid-request, and respawned on the next probe. Codex builds without an
    app-server are read through the ``/status`` screen instead.
    """

    provider = Provider.CODEX

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        client_factory: ClientFactory | None = None,
        timeout: float = 20.0,
        status_fallback: bool = True,
    ) -> None:
        self.executor = executor or CommandExecutor()
        self.client_factory = client_factory or CodexRPCClient.start
        self.timeout = timeout
        self.status_fallback = status_fallback
        self._client: CodexRPCClient | None = None

    def is_available(self) -> bool:
        return self.executor.locate(BINARY) is not None

    async def probe(self) -> UsageSnapshot:
        try:
            client = await self._ensure_client()
        except ExecutionFailed as exc:
            if not self.status_fallback:
                raise
            logger.info("codex app-server unavailable (%s); reading /status instead", exc.reason)
            return await self._probe_status_screen()

        try:
            limits = await client.fetch_rate_limits()
        except (ExecutionFailed, asyncio.CancelledError):
            self._discard_client()
            raise
        return snapshot_from_rate_limits(limits)

    async def shutdown(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _ensure_client(self) -> CodexRPCClient:
        if self._client is not None and not self._client.alive:
            logger.info("codex app-server exited; respawning")
            self._discard_client()
        if self._client is None:
            path = self.executor.locate(BINARY)
            if path is None:
                raise ExecutionFailed("codex CLI not found")
            self._client = await self.client_factory(path)
        return self._client

    def _discard_client(self) -> None:
        if self._client is not None:
            self._client.shutdown()
            self._client = None

    async def _probe_status_screen(self) -> UsageSnapshot:
        result = await self.executor.execute(
            BINARY,
            script="/status\r",
            timeout=self.timeout,
            stop_on_substrings=["Weekly limit"],
        )
        return parse_status_output(result.output)


def snapshot_from_rate_limits(limits: RateLimits) -> UsageSnapshot:
    quotas: list[UsageQuota] = []
    if limits.primary is not None:
        quotas.append(
            remaining_from_used(Provider.CODEX, limits.primary.used_percent, QuotaType.session(), limits.primary.reset_description)
        )
    if limits.secondary is not None:
        quotas.append(
            remaining_from_used(Provider.CODEX, limits.secondary.used_percent, QuotaType.weekly(), limits.secondary.reset_description)
        )
    return snapshot_of(Provider.CODEX, quotas, "codex rate limits")


def parse_status_output(text: str) -> UsageSnapshot:
    clean = strip_ansi(text)
    lower = clean.lower()
    if any(phrase in lower for phrase in LOGIN_PHRASES) and "limit:" not in lower:
        raise AuthenticationRequired("codex CLI is not logged in")

    session: UsageQuota | None = None
    weekly: UsageQuota | None = None
    # Newest screen content wins when the TUI redraws.
    for line in reversed(clean.splitlines()):
        if session is None:
            m = FIVE_HOUR_RE.search(line)
            if m:
                session = make_quota(Provider.CODEX, float(m.group(1)), QuotaType.session(), f"Resets {m.group(2)}")
        if weekly is None:
            m = WEEKLY_RE.search(line)
            if m:
                weekly = make_quota(Provider.CODEX, float(m.group(1)), QuotaType.weekly(), f"Resets {m.group(2)} on {m.group(3)}")
        if session is not None and weekly is not None:
            break

    return snapshot_of(Provider.CODEX, [q for q in (session, weekly) if q is not None], "codex /status output")
