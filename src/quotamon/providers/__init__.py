from quotamon.providers.claude import ClaudeProbe
from quotamon.providers.codex import CodexProbe
from quotamon.providers.gemini import GeminiProbe

__all__ = ["ClaudeProbe", "CodexProbe", "GeminiProbe"]
