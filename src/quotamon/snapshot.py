from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Mapping
import json

from quotamon.models import UsageSnapshot
from quotamon.monitor import ProviderState


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"not serializable: {type(obj)!r}")


def _snapshot_to_dict(snapshot: UsageSnapshot) -> dict[str, object]:
    return {
        "captured_at": snapshot.captured_at,
        "lowest_percent_remaining": snapshot.lowest_percent_remaining,
        "quotas": [
            {
                "type": q.quota_type.kind,
                "model": q.quota_type.model,
                "percent_remaining": q.percent_remaining,
                "reset": q.reset_description,
            }
            for q in snapshot.quotas
        ],
    }


def states_to_dict(states: Mapping[str, ProviderState], generated_at: datetime | None = None) -> dict[str, object]:
    providers = []
    for provider_id, state in states.items():
        providers.append(
            {
                "provider": provider_id,
                "phase": state.phase,
                "status": state.status,
                "snapshot": _snapshot_to_dict(state.snapshot) if state.snapshot else None,
                "error": {"kind": state.error.kind, "reason": state.error.reason} if state.error else None,
                "sequence": state.sequence,
                "updated_at": state.updated_at,
            }
        )
    return {"generated_at": generated_at or datetime.now().astimezone(), "providers": providers}


def states_to_json(states: Mapping[str, ProviderState]) -> str:
    return json.dumps(states_to_dict(states), default=_json_default, indent=2)


def write_state_file(path: str | Path, states: Mapping[str, ProviderState]) -> Path:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    # Readers poll this file; replace it in one step.
    tmp = target.with_suffix(target.suffix + ".tmp")
    tmp.write_text(states_to_json(states))
    tmp.replace(target)
    return target
