from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Provider(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"


class QuotaKind(str, Enum):
    SESSION = "session"
    WEEKLY = "weekly"
    MODEL = "model"


class QuotaStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    DEPLETED = "depleted"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    QuotaStatus.HEALTHY: 0,
    QuotaStatus.WARNING: 1,
    QuotaStatus.CRITICAL: 2,
    QuotaStatus.DEPLETED: 3,
}

WARNING_THRESHOLD = 50.0
CRITICAL_THRESHOLD = 20.0


def classify(percent_remaining: float) -> QuotaStatus:
    if percent_remaining <= 0:
        return QuotaStatus.DEPLETED
    if percent_remaining < CRITICAL_THRESHOLD:
        return QuotaStatus.CRITICAL
    if percent_remaining < WARNING_THRESHOLD:
        return QuotaStatus.WARNING
    return QuotaStatus.HEALTHY


@dataclass(frozen=True)
class QuotaType:
    kind: QuotaKind
    model: str | None = None

    @classmethod
    def session(cls) -> QuotaType:
        return cls(QuotaKind.SESSION)

    @classmethod
    def weekly(cls) -> QuotaType:
        return cls(QuotaKind.WEEKLY)

    @classmethod
    def model_specific(cls, model: str) -> QuotaType:
        return cls(QuotaKind.MODEL, model)

    @property
    def label(self) -> str:
        if self.kind is QuotaKind.MODEL:
            return self.model or "model"
        return self.kind.value


@dataclass(frozen=True)
class UsageQuota:
    percent_remaining: float
    quota_type: QuotaType
    provider: Provider
    reset_description: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.percent_remaining <= 100.0:
            raise ValueError(f"percent_remaining out of range: {self.percent_remaining!r}")

    @property
    def percent_used(self) -> float:
        return 100.0 - self.percent_remaining

    @property
    def status(self) -> QuotaStatus:
        return classify(self.percent_remaining)


@dataclass(frozen=True)
class UsageSnapshot:
    provider: Provider
    quotas: tuple[UsageQuota, ...]
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        # Accept any sequence from callers but store a tuple.
        object.__setattr__(self, "quotas", tuple(self.quotas))
        if not self.quotas:
            raise ValueError("a usage snapshot needs at least one quota")
        for quota in self.quotas:
            if quota.provider is not self.provider:
                raise ValueError(f"quota for {quota.provider.value} in {self.provider.value} snapshot")

    @property
    def lowest_percent_remaining(self) -> float:
        return min(q.percent_remaining for q in self.quotas)

    @property
    def status(self) -> QuotaStatus:
        return classify(self.lowest_percent_remaining)

    def quota(self, quota_type: QuotaType) -> UsageQuota | None:
        for q in self.quotas:
            if q.quota_type == quota_type:
                return q
        return None
