"""Settings for the shellbridge service.

Settings are stored in ~/.shellbridge/settings.yaml (or $SHELLBRIDGE_HOME):

    terminal:
      max_sessions_per_project: 20
      memory_tiers:
        - {name: high, threshold_mb: 1536, action: shed_half}
        - {name: critical, threshold_mb: 2048, action: close_all}
    web:
      host: 127.0.0.1
      port: 8848
    logging:
      level: INFO
      command_log: none
      command_output: true

Web settings can also be overridden with SHELLBRIDGE_WEB_* environment variables.
"""
from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

import yaml  # type: ignore

from ..paths import ensure_home
from ..util.conv import coerce_bool, coerce_float, coerce_int

logger = logging.getLogger("shellbridge.settings")

TierAction = Literal["shed_half", "close_all"]
_TIER_ACTIONS = ("shed_half", "close_all")


@dataclass(frozen=True)
class MemoryTier:
    name: str
    threshold_mb: float
    action: TierAction


DEFAULT_MEMORY_TIERS: Tuple[MemoryTier, ...] = (
    MemoryTier(name="high", threshold_mb=1536.0, action="shed_half"),
    MemoryTier(name="critical", threshold_mb=2048.0, action="close_all"),
)

DEFAULT_ENV_FILES: Tuple[str, ...] = (".env.local", ".env.development.local", ".env.development", ".env")


@dataclass(frozen=True)
class TerminalSettings:
    # Capacity
    max_focused_per_project: int = 10
    max_sessions_per_project: int = 20
    max_total_sessions: int = 50
    # Creation rate limit / circuit breaker
    max_creations_per_minute: int = 10
    creation_window_seconds: float = 60.0
    breaker_cooldown_seconds: float = 300.0
    # Suspension
    suspension_buffer_entries: int = 1000
    max_suspension_seconds: float = 1800.0
    # Replay
    history_buffer_entries: int = 500
    closed_retention_seconds: float = 5.0
    # Keep-alive windows by disconnect class
    keepalive_intentional_seconds: float = 3600.0
    keepalive_reload_seconds: float = 60.0
    keepalive_limit_seconds: float = 1800.0
    keepalive_network_seconds: float = 60.0
    # Periodic work
    sweep_interval_seconds: float = 120.0
    health_interval_seconds: float = 30.0
    memory_tiers: Tuple[MemoryTier, ...] = DEFAULT_MEMORY_TIERS
    # Shell spawning
    shell_probe_timeout_seconds: float = 3.0
    spawn_liveness_timeout_seconds: float = 2.0
    default_rows: int = 24
    default_cols: int = 80
    env_files: Tuple[str, ...] = DEFAULT_ENV_FILES
    assistant_command: str = ""
    # Per-connection outbound queue bound
    outbox_max_messages: int = 2000
    # Optional command/output recorder: "none" or "jsonl"
    command_log: str = "none"
    command_log_output: bool = True


@dataclass(frozen=True)
class WebSettings:
    host: str = "127.0.0.1"
    port: int = 8848
    token: str = ""
    cors_origins: Tuple[str, ...] = ()
    log_level: str = "INFO"


@dataclass(frozen=True)
class Settings:
    terminal: TerminalSettings = field(default_factory=TerminalSettings)
    web: WebSettings = field(default_factory=WebSettings)

    def to_dict(self) -> Dict[str, Any]:
        terminal = asdict(self.terminal)
        terminal["memory_tiers"] = [asdict(t) for t in self.terminal.memory_tiers]
        terminal["env_files"] = list(self.terminal.env_files)
        web = asdict(self.web)
        web["cors_origins"] = list(self.web.cors_origins)
        return {"terminal": terminal, "web": web}


def _settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def _parse_tiers(raw: Any) -> Tuple[MemoryTier, ...]:
    if not isinstance(raw, list):
        return DEFAULT_MEMORY_TIERS
    tiers: List[MemoryTier] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        action = str(item.get("action") or "").strip()
        if action not in _TIER_ACTIONS:
            logger.warning(f"[settings] ignoring memory tier with unknown action: {action!r}")
            continue
        threshold = coerce_float(item.get("threshold_mb"), default=0.0)
        if threshold <= 0:
            continue
        name = str(item.get("name") or action).strip() or action
        tiers.append(MemoryTier(name=name, threshold_mb=threshold, action=action))  # type: ignore[arg-type]
    # Evaluated highest threshold first.
    tiers.sort(key=lambda t: t.threshold_mb, reverse=True)
    return tuple(tiers) if tiers else DEFAULT_MEMORY_TIERS


def terminal_settings_from_dict(d: Dict[str, Any]) -> TerminalSettings:
    base = TerminalSettings()
    updates: Dict[str, Any] = {}
    for f in fields(TerminalSettings):
        if f.name not in d:
            continue
        raw = d.get(f.name)
        current = getattr(base, f.name)
        if f.name == "memory_tiers":
            updates[f.name] = _parse_tiers(raw)
        elif f.name == "env_files":
            if isinstance(raw, list):
                updates[f.name] = tuple(str(x).strip() for x in raw if str(x or "").strip())
        elif isinstance(current, bool):
            updates[f.name] = coerce_bool(raw, default=current)
        elif isinstance(current, int):
            updates[f.name] = coerce_int(raw, default=current)
        elif isinstance(current, float):
            updates[f.name] = coerce_float(raw, default=current)
        elif isinstance(current, str):
            updates[f.name] = str(raw or "").strip()
    out = replace(base, **updates)
    if out.command_log not in ("none", "jsonl"):
        logger.warning(f"[settings] unknown command_log {out.command_log!r}, using none")
        out = replace(out, command_log="none")
    return out


def web_settings_from_dict(d: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> WebSettings:
    env = os.environ if environ is None else environ
    base = WebSettings()
    host = str(env.get("SHELLBRIDGE_WEB_HOST") or d.get("host") or base.host).strip()
    port = coerce_int(env.get("SHELLBRIDGE_WEB_PORT") or d.get("port"), default=base.port, minimum=1)
    token = str(env.get("SHELLBRIDGE_WEB_TOKEN") or d.get("token") or "").strip()
    cors_raw: Any = env.get("SHELLBRIDGE_WEB_CORS_ORIGINS") or d.get("cors_origins") or ()
    if isinstance(cors_raw, str):
        cors = tuple(o.strip() for o in cors_raw.split(",") if o.strip())
    else:
        cors = tuple(str(o).strip() for o in cors_raw if str(o or "").strip())
    level = str(env.get("SHELLBRIDGE_LOG_LEVEL") or d.get("log_level") or base.log_level).strip().upper()
    return WebSettings(host=host, port=port, token=token, cors_origins=cors, log_level=level)


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from settings.yaml; defaults on missing or malformed files."""
    p = path or _settings_path()
    doc: Dict[str, Any] = {}
    if p.exists():
        try:
            loaded = yaml.safe_load(p.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"[settings] failed to read {p}: {e}")
            loaded = None
        if isinstance(loaded, dict):
            doc = loaded
    terminal = doc.get("terminal") if isinstance(doc.get("terminal"), dict) else {}
    web = doc.get("web") if isinstance(doc.get("web"), dict) else {}
    log = doc.get("logging") if isinstance(doc.get("logging"), dict) else {}
    if "command_log" in log and "command_log" not in terminal:
        terminal = dict(terminal, command_log=log.get("command_log"))
    if "command_output" in log and "command_log_output" not in terminal:
        terminal = dict(terminal, command_log_output=log.get("command_output"))
    if "level" in log and "log_level" not in web:
        web = dict(web, log_level=log.get("level"))
    return Settings(terminal=terminal_settings_from_dict(terminal), web=web_settings_from_dict(web))


def dump_settings(settings: Settings) -> str:
    return yaml.safe_dump(settings.to_dict(), sort_keys=False, allow_unicode=True)
