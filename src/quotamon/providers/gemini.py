from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from quotamon.errors import AuthenticationRequired, ExecutionFailed, ParseFailed
from quotamon.execution import CommandExecutor
from quotamon.models import Provider, QuotaType, UsageQuota, UsageSnapshot
from quotamon.providers.base import QuotaProbe, make_quota, snapshot_of, strip_ansi

logger = logging.getLogger(__name__)

BINARY = "gemini"
QUOTA_ENDPOINT = "https://cloudcode-pa.googleapis.com/v1internal:retrieveUserQuota"
CREDENTIALS_PATH = ".gemini/oauth_creds.json"
SETTINGS_PATH = ".gemini/settings.json"

# Auth types for which the OAuth quota endpoint has nothing to report.
NON_OAUTH_AUTH_TYPES = {"gemini-api-key", "vertex-ai"}

MODEL_ROW_RE = re.compile(r"(gemini[-\w.]+)\s+.*?(?<![\d.])([0-9]+(?:\.[0-9]+)?)\s*%", re.IGNORECASE)
LOGIN_PHRASES = ("login with google", "use gemini api key")

SOURCES = ("auto", "api", "cli")


@dataclass(frozen=True)
class OAuthCredentials:
    access_token: str | None
    refresh_token: str | None
    expiry: datetime | None

    @property
    def expired(self) -> bool:
        return self.expiry is not None and self.expiry <= datetime.now(timezone.utc)


class GeminiProbe(QuotaProbe):
    """Reads per-model quotas through the Gemini quota API or the CLI stats table.

    With ``source="auto"`` the API is used whenever OAuth credentials exist and
    the CLI settings do not select API-key or Vertex auth; otherwise the CLI.
    """

    provider = Provider.GEMINI

    def __init__(
        self,
        home: Path | None = None,
        executor: CommandExecutor | None = None,
        source: str = "auto",
        timeout: float = 10.0,
    ) -> None:
        if source not in SOURCES:
            raise ValueError(f"unknown gemini source: {source}")
        self.home = home or Path.home()
        self.executor = executor or CommandExecutor()
        self.source = source
        self.timeout = timeout

    @property
    def credentials_path(self) -> Path:
        return self.home / CREDENTIALS_PATH

    @property
    def settings_path(self) -> Path:
        return self.home / SETTINGS_PATH

    def is_available(self) -> bool:
        if self._use_api():
            return self.credentials_path.exists()
        return self.executor.locate(BINARY) is not None

    async def probe(self) -> UsageSnapshot:
        if self._use_api():
            return await self._probe_api()
        return await self._probe_cli()

    def _use_api(self) -> bool:
        if self.source != "auto":
            return self.source == "api"
        if not self.credentials_path.exists():
            return False
        return self._selected_auth_type() not in NON_OAUTH_AUTH_TYPES

    def _selected_auth_type(self) -> str | None:
        try:
            settings = json.loads(self.settings_path.read_text())
        except (OSError, ValueError):
            return None
        if not isinstance(settings, dict):
            return None
        security = settings.get("security")
        auth = security.get("auth") if isinstance(security, dict) else None
        selected = auth.get("selectedType") if isinstance(auth, dict) else None
        if not selected:
            selected = settings.get("selectedAuthType")
        return selected if isinstance(selected, str) else None

    async def _probe_api(self) -> UsageSnapshot:
        creds = load_credentials(self.credentials_path)
        if not creds.access_token:
            raise AuthenticationRequired("gemini credentials have no access token")
        if creds.expired:
            logger.debug("gemini access token expired at %s; trying it anyway", creds.expiry)

        headers = {"Authorization": f"Bearer {creds.access_token}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(QUOTA_ENDPOINT, headers=headers, content=b"{}")
        except httpx.HTTPError as exc:
            raise ExecutionFailed(f"quota request failed: {exc}", cause=exc) from exc

        if resp.status_code == 401:
            raise AuthenticationRequired("gemini rejected the access token")
        if resp.status_code != 200:
            raise ExecutionFailed(f"HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise ParseFailed("quota response is not JSON", cause=exc) from exc
        return parse_api_response(data)

    async def _probe_cli(self) -> UsageSnapshot:
        result = await self.executor.execute(
            BINARY,
            script="/stats model\r",
            timeout=self.timeout,
            stop_on_substrings=["Usage left", "Model Usage"],
        )
        return parse_cli_output(result.output)


def load_credentials(path: Path) -> OAuthCredentials:
    if not path.exists():
        raise AuthenticationRequired(f"missing {path}")
    try:
        raw = json.loads(path.read_text())
    except (OSError, ValueError) as exc:
        raise ParseFailed(f"invalid credentials file {path}", cause=exc) from exc
    if not isinstance(raw, dict):
        raise ParseFailed(f"invalid credentials file {path}")

    expiry = None
    expiry_ms = raw.get("expiry_date")
    if isinstance(expiry_ms, (int, float)) and not isinstance(expiry_ms, bool):
        expiry = datetime.fromtimestamp(expiry_ms / 1000, timezone.utc)

    token = raw.get("access_token")
    refresh = raw.get("refresh_token")
    return OAuthCredentials(
        access_token=token if isinstance(token, str) else None,
        refresh_token=refresh if isinstance(refresh, str) else None,
        expiry=expiry,
    )


def parse_api_response(data: Any) -> UsageSnapshot:
    buckets = data.get("buckets") if isinstance(data, dict) else None
    if not buckets:
        raise ParseFailed("no quota buckets in response")

    # The lowest remaining fraction per model is the binding one.
    lowest: dict[str, float] = {}
    for bucket in buckets:
        if not isinstance(bucket, dict):
            continue
        model_id = bucket.get("modelId")
        fraction = bucket.get("remainingFraction")
        if not isinstance(model_id, str) or isinstance(fraction, bool) or not isinstance(fraction, (int, float)):
            continue
        if not 0.0 <= fraction <= 1.0:
            raise ParseFailed(f"remaining fraction out of range for {model_id}: {fraction}")
        if model_id not in lowest or fraction < lowest[model_id]:
            lowest[model_id] = float(fraction)

    quotas = [
        make_quota(Provider.GEMINI, fraction * 100.0, QuotaType.model_specific(model_id))
        for model_id, fraction in sorted(lowest.items())
    ]
    if not quotas:
        raise ParseFailed("no valid quotas found")
    return UsageSnapshot(provider=Provider.GEMINI, quotas=tuple(quotas))


def parse_cli_output(text: str) -> UsageSnapshot:
    clean = strip_ansi(text)
    lower = clean.lower()
    if any(phrase in lower for phrase in LOGIN_PHRASES):
        raise AuthenticationRequired("gemini CLI is not logged in")
    return snapshot_of(Provider.GEMINI, parse_model_usage_table(clean), "gemini CLI output")


def parse_model_usage_table(text: str) -> list[UsageQuota]:
    found: dict[str, UsageQuota] = {}
    for line in text.splitlines():
        m = MODEL_ROW_RE.search(line.replace("│", " "))
        if not m:
            continue
        model_id = m.group(1)
        quota = make_quota(Provider.GEMINI, float(m.group(2)), QuotaType.model_specific(model_id))
        if model_id not in found or quota.percent_remaining < found[model_id].percent_remaining:
            found[model_id] = quota
    return list(found.values())
