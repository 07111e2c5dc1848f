from __future__ import annotations

import logging
import re
from pathlib import Path

from quotamon.errors import AuthenticationRequired
from quotamon.execution import CommandExecutor
from quotamon.models import Provider, QuotaType, UsageQuota, UsageSnapshot
from quotamon.providers.base import QuotaProbe, make_quota, remaining_from_used, snapshot_of, strip_ansi

logger = logging.getLogger(__name__)

BINARY = "claude"

SESSION_RE = re.compile(r"current session", re.IGNORECASE)
WEEK_ALL_RE = re.compile(r"current week \(all models\)", re.IGNORECASE)
WEEK_MODEL_RE = re.compile(r"current week \(([^)]+)\)", re.IGNORECASE)
PERCENT_RE = re.compile(r"(?<![\d.])(\d+(?:\.\d+)?)\s*%\s*(used|left|remaining)", re.IGNORECASE)
RESETS_RE = re.compile(r"^\s*(resets?\b.*?)\s*$", re.IGNORECASE)

LOGIN_PHRASES = (
    "please run /login",
    "invalid api key",
    "not logged in",
    "oauth token has expired",
    "authentication_error",
)

PROMPT_REPLIES = {
    "Do you trust the files in this folder?": "\r",
    "Press Enter to continue": "\r",
}


class ClaudeProbe(QuotaProbe):
    provider = Provider.CLAUDE

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        timeout: float = 20.0,
        working_directory: Path | None = None,
    ) -> None:
        self.executor = executor or CommandExecutor()
        self.timeout = timeout
        self.working_directory = working_directory or Path.home()

    def is_available(self) -> bool:
        return self.executor.locate(BINARY) is not None

    async def probe(self) -> UsageSnapshot:
        result = await self.executor.execute(
            BINARY,
            args=["/usage"],
            timeout=self.timeout,
            working_directory=self.working_directory,
            send_on_substrings=PROMPT_REPLIES,
            stop_on_substrings=["Current week"],
        )
        logger.debug("claude /usage exited with %s", result.exit_code)
        return parse_usage_output(result.output)


def parse_usage_output(text: str) -> UsageSnapshot:
    clean = strip_ansi(text)
    lower = clean.lower()
    if any(phrase in lower for phrase in LOGIN_PHRASES):
        raise AuthenticationRequired("claude CLI is not logged in")

    quotas: list[UsageQuota] = []
    section: QuotaType | None = None
    last: UsageQuota | None = None

    for raw_line in clean.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        heading = _section_for(line)
        if heading is not None:
            section = heading
            last = None

        if section is not None:
            m = PERCENT_RE.search(line)
            if m:
                value = float(m.group(1))
                if m.group(2).lower() == "used":
                    last = remaining_from_used(Provider.CLAUDE, value, section)
                else:
                    last = make_quota(Provider.CLAUDE, value, section)
                quotas = [q for q in quotas if q.quota_type != section]
                quotas.append(last)
                section = None
                continue

        if last is not None:
            m = RESETS_RE.match(line)
            if m:
                with_reset = UsageQuota(last.percent_remaining, last.quota_type, last.provider, m.group(1))
                quotas[-1] = with_reset
                last = None

    return snapshot_of(Provider.CLAUDE, quotas, "claude /usage output")


def _section_for(line: str) -> QuotaType | None:
    if SESSION_RE.search(line):
        return QuotaType.session()
    if WEEK_ALL_RE.search(line):
        return QuotaType.weekly()
    m = WEEK_MODEL_RE.search(line)
    if m:
        return QuotaType.model_specific(m.group(1).strip().lower())
    return None
