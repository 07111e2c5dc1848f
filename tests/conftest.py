import asyncio

import pytest

from quotamon.models import Provider, QuotaType, UsageQuota, UsageSnapshot
from quotamon.providers.base import QuotaProbe


def snapshot(provider: Provider, remaining: float) -> UsageSnapshot:
    return UsageSnapshot(provider=provider, quotas=[UsageQuota(remaining, QuotaType.session(), provider)])


class FakeProbe(QuotaProbe):
    """Plays back queued results: a percentage, a ProbeError, or ("sleep", seconds)."""

    def __init__(self, provider: Provider, *results, available: bool = True) -> None:
        self.provider = provider
        self.results = list(results)
        self.available = available
        self.calls = 0
        self.shutdowns = 0

    def is_available(self) -> bool:
        return self.available

    async def probe(self) -> UsageSnapshot:
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, tuple):
            _, seconds, value = result
            await asyncio.sleep(seconds)
            result = value
        if isinstance(result, BaseException):
            raise result
        return snapshot(self.provider, result)

    async def shutdown(self) -> None:
        self.shutdowns += 1


@pytest.fixture
def fake_probe():
    return FakeProbe

