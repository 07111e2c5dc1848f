from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from quotamon.config import Config
from quotamon.execution import CommandExecutor
from quotamon.models import Provider
from quotamon.providers import ClaudeProbe, CodexProbe, GeminiProbe
from quotamon.providers.base import QuotaProbe


@dataclass
class ProviderRecord:
    id: str
    name: str
    probe: QuotaProbe
    is_enabled: bool = True


class ProviderRegistry:
    """Every configured provider, in display order."""

    def __init__(self, records: Iterable[ProviderRecord]) -> None:
        self._records = list(records)
        ids = [r.id for r in self._records]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate provider ids: {ids}")

    @property
    def all(self) -> list[ProviderRecord]:
        return list(self._records)

    @property
    def enabled(self) -> list[ProviderRecord]:
        return [r for r in self._records if r.is_enabled]

    def get(self, provider_id: str) -> ProviderRecord | None:
        for record in self._records:
            if record.id == provider_id:
                return record
        return None

    def set_enabled(self, provider_id: str, enabled: bool) -> None:
        record = self.get(provider_id)
        if record is None:
            raise KeyError(provider_id)
        record.is_enabled = enabled


def build_registry(cfg: Config, executor: CommandExecutor | None = None) -> ProviderRegistry:
    executor = executor or CommandExecutor()
    timeout = float(cfg.general.probe_timeout_seconds)
    probes: dict[Provider, QuotaProbe] = {
        Provider.CLAUDE: ClaudeProbe(executor=executor, timeout=timeout),
        Provider.CODEX: CodexProbe(executor=executor, timeout=timeout),
        Provider.GEMINI: GeminiProbe(executor=executor, source=cfg.providers["gemini"].source, timeout=timeout),
    }
    return ProviderRegistry(
        ProviderRecord(
            id=provider.value,
            name=provider.value.capitalize(),
            probe=probe,
            is_enabled=cfg.providers[provider.value].enabled,
        )
        for provider, probe in probes.items()
    )
