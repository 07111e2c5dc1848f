from pathlib import Path

import pytest

from quotamon.errors import AuthenticationRequired, ParseFailed
from quotamon.execution import CLIResult
from quotamon.models import QuotaStatus, QuotaType
from quotamon.providers.claude import ClaudeProbe, parse_usage_output

FIXTURES = Path(__file__).parent / "fixtures"


class FakeExecutor:
    def __init__(self, output: str, path: str | None = "/usr/bin/claude") -> None:
        self.output = output
        self.path = path
        self.calls: list[dict] = []

    def locate(self, binary: str) -> str | None:
        return self.path

    async def execute(self, binary, **kwargs) -> CLIResult:
        self.calls.append({"binary": binary, **kwargs})
        return CLIResult(output=self.output, exit_code=0)


def test_claude_parser_reads_sections() -> None:
    snap = parse_usage_output((FIXTURES / "claude_usage_output.txt").read_text())

    session = snap.quota(QuotaType.session())
    weekly = snap.quota(QuotaType.weekly())
    opus = snap.quota(QuotaType.model_specific("opus"))
    assert session.percent_remaining == 81.0
    assert session.reset_description == "Resets 3pm (Europe/Paris)"
    assert weekly.percent_remaining == 94.0
    assert opus.percent_remaining == 100.0
    assert opus.reset_description is None
    assert snap.status is QuotaStatus.HEALTHY


def test_claude_parser_accepts_percent_left() -> None:
    snap = parse_usage_output("Current session\n  12% left\n")
    assert snap.quota(QuotaType.session()).percent_remaining == 12.0


def test_claude_parser_detects_login_prompt() -> None:
    with pytest.raises(AuthenticationRequired):
        parse_usage_output("Invalid API key · Please run /login")


def test_claude_parser_without_quotas_fails() -> None:
    with pytest.raises(ParseFailed):
        parse_usage_output("Welcome to Claude Code!\n")


def test_claude_parser_rejects_out_of_range() -> None:
    with pytest.raises(ParseFailed):
        parse_usage_output("Current session\n 140% used\n")


async def test_claude_probe_runs_usage_command() -> None:
    executor = FakeExecutor((FIXTURES / "claude_usage_output.txt").read_text())
    probe = ClaudeProbe(executor=executor, timeout=5.0)

    assert probe.is_available()
    snap = await probe.probe()

    assert snap.lowest_percent_remaining == 81.0
    call = executor.calls[0]
    assert call["args"] == ["/usage"]
    assert call["timeout"] == 5.0
    assert "Do you trust the files in this folder?" in call["send_on_substrings"]


def test_claude_probe_unavailable_without_binary() -> None:
    assert not ClaudeProbe(executor=FakeExecutor("", path=None)).is_available()
