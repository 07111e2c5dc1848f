"""JSON-RPC client for ``codex app-server``.

Requests carry increasing integer ids and responses are matched by id.
Notifications (no id) and replies to earlier, abandoned requests are skipped.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from quotamon import __version__
from quotamon.errors import ExecutionFailed, ParseFailed
from quotamon.rpc import LineTransport, ProcessLineTransport

logger = logging.getLogger(__name__)

APP_SERVER_ARGS = ["-s", "read-only", "-a", "untrusted", "app-server"]


@dataclass(frozen=True)
class RateLimitWindow:
    used_percent: float
    reset_description: str | None = None
    window_minutes: int | None = None


@dataclass(frozen=True)
class RateLimits:
    primary: RateLimitWindow | None
    secondary: RateLimitWindow | None
    plan_type: str | None = None


class CodexRPCClient:
    def __init__(self, transport: LineTransport) -> None:
        self.transport = transport
        self._next_id = 1

    @classmethod
    async def start(cls, executable: str) -> CodexRPCClient:
        transport = await ProcessLineTransport.spawn(executable, APP_SERVER_ARGS)
        client = cls(transport)
        try:
            await client.initialize()
        except BaseException:
            transport.close()
            raise
        return client

    @property
    def alive(self) -> bool:
        return self.transport.alive

    async def initialize(self) -> None:
        await self.request("initialize", {"clientInfo": {"name": "quotamon", "version": __version__}})
        await self.notify("initialized")

    async def fetch_rate_limits(self) -> RateLimits:
        message = await self.request("account/rateLimits/read")
        return parse_rate_limits(message)

    async def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        request_id = self._next_id
        self._next_id += 1
        await self._send({"id": request_id, "method": method, "params": params or {}})

        while True:
            message = await self._read_message()
            if "id" not in message:
                continue
            if message["id"] != request_id:
                logger.debug("skipping reply to request %s while waiting for %s", message["id"], request_id)
                continue
            error = message.get("error")
            if isinstance(error, dict):
                raise ExecutionFailed(f"RPC error: {error.get('message', 'unknown error')}")
            return message

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._send({"method": method, "params": params or {}})

    def shutdown(self) -> None:
        self.transport.close()

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def _send(self, payload: dict[str, Any]) -> None:
        await self.transport.send(json.dumps(payload).encode())

    async def _read_message(self) -> dict[str, Any]:
        while True:
            line = await self.transport.receive()
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("ignoring non-JSON line from app-server: %r", line[:200])
                continue
            if isinstance(message, dict):
                return message


def parse_rate_limits(message: dict[str, Any], now: datetime | None = None) -> RateLimits:
    result = message.get("result")
    if not isinstance(result, dict):
        raise ParseFailed("invalid rate limits response")
    rate_limits = result.get("rateLimits")
    if not isinstance(rate_limits, dict):
        raise ParseFailed("no rateLimits in response")

    plan_type = rate_limits.get("planType")
    logger.debug("codex plan type: %s", plan_type or "unknown")

    primary = _parse_window(rate_limits.get("primary"), now)
    secondary = _parse_window(rate_limits.get("secondary"), now)

    if primary is None and secondary is None:
        if plan_type == "free":
            return RateLimits(primary=RateLimitWindow(0.0, "Free plan"), secondary=None, plan_type=plan_type)
        raise ParseFailed("no rate limits available yet")

    return RateLimits(primary=primary, secondary=secondary, plan_type=plan_type)


def _unix_to_dt(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_window(value: Any, now: datetime | None) -> RateLimitWindow | None:
    if not isinstance(value, dict):
        return None
    used = value.get("usedPercent")
    if isinstance(used, bool) or not isinstance(used, (int, float)):
        return None

    reset_description = None
    resets_at = _unix_to_dt(value.get("resetsAt"))
    if resets_at is not None:
        reset_description = format_reset(resets_at, now)

    window = value.get("windowDurationMins", value.get("windowMinutes"))
    return RateLimitWindow(
        used_percent=float(used),
        reset_description=reset_description,
        window_minutes=window if isinstance(window, int) else None,
    )


def format_reset(resets_at: datetime, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    seconds = (resets_at - now).total_seconds()
    if seconds <= 0:
        return "Resets soon"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 0:
        return f"Resets in {hours}h {minutes}m"
    return f"Resets in {minutes}m"
