from __future__ import annotations

import re
from abc import ABC, abstractmethod

from quotamon.errors import ParseFailed
from quotamon.models import Provider, QuotaType, UsageQuota, UsageSnapshot

ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


class QuotaProbe(ABC):
    """Reads one provider's remaining quota.

    ``is_available`` must stay cheap: file and PATH checks only.
    ``probe`` may be slow; callers bound it with their own timeout.
    """

    provider: Provider

    @abstractmethod
    def is_available(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def probe(self) -> UsageSnapshot:
        raise NotImplementedError

    async def shutdown(self) -> None:
        return None


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def make_quota(
    provider: Provider,
    percent_remaining: float,
    quota_type: QuotaType,
    reset_description: str | None = None,
) -> UsageQuota:
    if not 0.0 <= percent_remaining <= 100.0:
        raise ParseFailed(f"{quota_type.label} quota out of range: {percent_remaining:g}%")
    return UsageQuota(
        percent_remaining=float(percent_remaining),
        quota_type=quota_type,
        provider=provider,
        reset_description=reset_description,
    )


def remaining_from_used(provider: Provider, used_pct: float, quota_type: QuotaType, reset_description: str | None = None) -> UsageQuota:
    if not 0.0 <= used_pct <= 100.0:
        raise ParseFailed(f"{quota_type.label} usage out of range: {used_pct:g}%")
    return make_quota(provider, 100.0 - used_pct, quota_type, reset_description)


def snapshot_of(provider: Provider, quotas: list[UsageQuota], what: str) -> UsageSnapshot:
    if not quotas:
        raise ParseFailed(f"no usage data found in {what}")
    return UsageSnapshot(provider=provider, quotas=tuple(quotas))
