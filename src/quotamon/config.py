from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
import tomli_w


HOME = Path.home()
CONFIG_PATH = HOME / ".config/quotamon/config.toml"
DEFAULT_STATE_FILE = str(HOME / ".local/state/quotamon/latest.json")
PROVIDER_NAMES = ("claude", "codex", "gemini")
GEMINI_SOURCES = ("auto", "api", "cli")


@dataclass
class ProviderConfig:
    enabled: bool = True
    source: str = "auto"


@dataclass
class GeneralConfig:
    refresh_seconds: int = 60
    probe_timeout_seconds: int = 20
    state_file: str = DEFAULT_STATE_FILE
    log_level: str = "WARNING"
    log_file: str | None = None


@dataclass
class Config:
    general: GeneralConfig = field(default_factory=GeneralConfig)
    providers: dict[str, ProviderConfig] = field(
        default_factory=lambda: {name: ProviderConfig() for name in PROVIDER_NAMES}
    )


def _provider_from_dict(raw: dict) -> ProviderConfig:
    source = raw.get("source", "auto")
    if source not in GEMINI_SOURCES:
        raise ValueError(f"unknown source: {source}")
    return ProviderConfig(enabled=bool(raw.get("enabled", True)), source=source)


def _provider_to_dict(cfg: ProviderConfig) -> dict:
    return {
        "enabled": cfg.enabled,
        "source": cfg.source,
    }


def load_config(path: Path = CONFIG_PATH) -> Config:
    if not path.exists():
        cfg = Config()
        save_config(cfg, path)
        return cfg

    raw = tomllib.loads(path.read_text())
    general_raw = raw.get("general", {})
    providers_raw = raw.get("providers", {})

    cfg = Config(
        general=GeneralConfig(
            refresh_seconds=int(general_raw.get("refresh_seconds", 60)),
            probe_timeout_seconds=int(general_raw.get("probe_timeout_seconds", 20)),
            state_file=general_raw.get("state_file", DEFAULT_STATE_FILE),
            log_level=str(general_raw.get("log_level", "WARNING")),
            log_file=general_raw.get("log_file") or None,
        ),
        providers={name: _provider_from_dict(providers_raw.get(name, {})) for name in PROVIDER_NAMES},
    )
    return cfg


def save_config(cfg: Config, path: Path = CONFIG_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    general: dict[str, object] = {
        "refresh_seconds": cfg.general.refresh_seconds,
        "probe_timeout_seconds": cfg.general.probe_timeout_seconds,
        "state_file": cfg.general.state_file,
        "log_level": cfg.general.log_level,
    }
    # TOML has no null.
    if cfg.general.log_file:
        general["log_file"] = cfg.general.log_file
    payload = {
        "general": general,
        "providers": {name: _provider_to_dict(pc) for name, pc in cfg.providers.items()},
    }
    path.write_text(tomli_w.dumps(payload))


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {value}")


def set_config_value(cfg: Config, dotted_key: str, value: str) -> None:
    if dotted_key in {"general.refresh_seconds", "general.probe_timeout_seconds"}:
        number = int(value)
        if number <= 0:
            raise ValueError(f"{dotted_key} must be positive")
        setattr(cfg.general, dotted_key.split(".")[1], number)
        return
    if dotted_key in {"general.state_file", "general.log_level", "general.log_file"}:
        setattr(cfg.general, dotted_key.split(".")[1], value)
        return

    keys = dotted_key.split(".")
    if len(keys) == 3 and keys[0] == "providers":
        provider, field_name = keys[1], keys[2]
        if provider not in cfg.providers:
            raise ValueError(f"unknown provider: {provider}")
        if field_name == "enabled":
            cfg.providers[provider].enabled = _parse_bool(value)
            return
        if field_name == "source":
            if value not in GEMINI_SOURCES:
                raise ValueError(f"unknown source: {value}")
            cfg.providers[provider].source = value
            return
    raise ValueError(f"unsupported key: {dotted_key}")
