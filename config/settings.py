"""
Configuration loader for the automation & session orchestration engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./orchestrator.db"          # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    pool_size: int = 10                                # sql backend, server databases only
    max_overflow: int = 20
    pool_recycle: int = 1800


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "orchestrator-workers"
    consumer_concurrency: int = 5       # max concurrent event handlers per worker
    delayed_promote_interval: int = 5   # seconds between delayed-event scans
    max_delivery_attempts: int = 5      # redeliveries before an event is dead-lettered


@dataclass
class AutomationConfig:
    max_automations_per_workspace: int = 50
    max_actions_per_automation: int = 10
    max_condition_depth: int = 5
    max_condition_fanout: int = 20
    max_cascade_depth: int = 3
    max_delay_days: int = 30
    webhook_timeout_seconds: float = 10.0


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0


# Phase durations in seconds, keyed by preset name. "closing" is the pause
# between order attempts after a failed create_order.
TIMER_PRESETS: dict[str, dict[str, float]] = {
    "real": {"collecting_data": 360, "offering_pack": 600, "closing": 60},
    "rapido": {"collecting_data": 30, "offering_pack": 60, "closing": 10},
    "instantaneo": {"collecting_data": 1, "offering_pack": 2, "closing": 1},
}


@dataclass
class TimerConfig:
    preset: str = "real"
    durations: dict[str, float] = field(default_factory=dict)   # per-phase overrides
    required_fields: list[str] = field(
        default_factory=lambda: ["name", "phone", "city", "address", "department"]
    )
    pack_options: list[str] = field(default_factory=lambda: ["1x", "2x", "3x"])
    default_pack: str = "1x"
    pipeline_id: str = ""
    stage_id: str = ""
    recovery_window_seconds: int = 86400
    pending_message: str = (
        "We'll stay tuned! Whenever you're ready, send us your details to continue."
    )
    reprompt_message: str = "To finish your order we still need: {missing}"
    offer_message: str = "Thanks! Which pack would you like? Options: {options}"
    order_confirmation_message: str = "Your order with pack {pack} has been created."

    def duration_for(self, phase: str) -> float:
        """Seconds a phase may wait before its timer fires."""
        if phase in self.durations:
            return float(self.durations[phase])
        preset = TIMER_PRESETS.get(self.preset, TIMER_PRESETS["real"])
        return float(preset[phase])


@dataclass
class CollaboratorConfig:
    """HTTP collaborator (messaging API or CRM data store)."""
    type: str = "memory"                # "http" | "memory"
    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


@dataclass
class Settings:
    app_name: str = "AutomationOrchestrator"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timers: TimerConfig = field(default_factory=TimerConfig)
    messaging: CollaboratorConfig = field(default_factory=CollaboratorConfig)
    datastore: CollaboratorConfig = field(default_factory=CollaboratorConfig)
    automations: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


_ENV_REF = re.compile(r"\$\{(\w+)\}")

# YAML section (same name on Settings) → section dataclass
_SECTIONS = {
    "database": DatabaseConfig,
    "queue": QueueConfig,
    "automation": AutomationConfig,
    "retry": RetryConfig,
    "timers": TimerConfig,
    "messaging": CollaboratorConfig,
    "datastore": CollaboratorConfig,
}


def _expand_env(obj: Any) -> Any:
    """Substitute ${VAR} in every string; unset variables are left as written."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    return obj


def _section(cls, data: dict[str, Any]):
    """Build a dataclass section, ignoring unknown keys."""
    known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """
    Read settings.yaml (or $ORCHESTRATOR_CONFIG) into a fresh Settings and
    make it the process-wide instance. A missing file yields all defaults.
    """
    global _settings

    path = Path(config_path or os.environ.get(
        "ORCHESTRATOR_CONFIG", Path(__file__).parent / "settings.yaml",
    ))
    settings = Settings()

    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})
        for key in ("app_name", "debug", "timezone"):
            if key in raw:
                setattr(settings, key, raw[key])
        for key, cls in _SECTIONS.items():
            if key in raw:
                setattr(settings, key, _section(cls, raw[key]))
        settings.automations = raw.get("automations") or []

    if settings.timers.preset not in TIMER_PRESETS:
        raise ValueError(
            f"Unknown timer preset '{settings.timers.preset}', "
            f"expected one of {sorted(TIMER_PRESETS)}"
        )

    _settings = settings
    return settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
