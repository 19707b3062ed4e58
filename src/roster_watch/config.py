"""roster_watch.config

YAML settings for runs.

Usage:
    from pathlib import Path
    from roster_watch.config import load_settings

    settings = load_settings(Path("config/roster_watch.yml"))
    settings.scheduler.full_run_delay_seconds  # 0.6

Every top-level section must be present in the file; keys inside a section
fall back to their defaults when omitted. Unknown sections or keys are
rejected so typos do not silently fall back to a default. The database DSN is
never read from this file.
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from roster_watch.fetch import DEFAULT_USER_AGENT
from roster_watch.render import DEFAULT_WINDOW_SIZE


class SettingsValidationError(Exception):
    """Raised when a settings file is malformed or fails validation."""


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass
class HttpSettings:
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: float = 30.0
    max_attempts: int = 2
    backoff_seconds: float = 1.0


@dataclass
class RenderSettings:
    enabled: bool = True
    pool_size: int = 1
    idle_teardown_seconds: float = 60.0
    page_load_timeout_seconds: float = 30.0
    settle_seconds: float = 1.0
    window_size: str = DEFAULT_WINDOW_SIZE


@dataclass
class SchedulerSettings:
    full_run_delay_seconds: float = 0.6
    retry_delay_seconds: float = 2.0


@dataclass
class RetentionSettings:
    keep_snapshots: int = 2


@dataclass
class LedgerSettings:
    snippet_chars: int = 5000


@dataclass
class ExportSettings:
    enabled: bool = True
    output_dir: str = "./artifacts/exports"


@dataclass
class Settings:
    http: HttpSettings = field(default_factory=HttpSettings)
    render: RenderSettings = field(default_factory=RenderSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    export: ExportSettings = field(default_factory=ExportSettings)
    yaml_hash: str | None = None
    source_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


SECTION_TYPES: dict[str, type] = {
    "http": HttpSettings,
    "render": RenderSettings,
    "scheduler": SchedulerSettings,
    "retention": RetentionSettings,
    "ledger": LedgerSettings,
    "export": ExportSettings,
}

REQUIRED_SECTIONS = frozenset(SECTION_TYPES)

# (section, key) -> minimum allowed value
_MINIMUMS: dict[tuple[str, str], float] = {
    ("http", "timeout_seconds"): 0.001,
    ("http", "max_attempts"): 1,
    ("http", "backoff_seconds"): 0,
    ("render", "pool_size"): 1,
    ("render", "idle_teardown_seconds"): 0,
    ("render", "page_load_timeout_seconds"): 0.001,
    ("render", "settle_seconds"): 0,
    ("scheduler", "full_run_delay_seconds"): 0,
    ("scheduler", "retry_delay_seconds"): 0,
    ("retention", "keep_snapshots"): 1,
    ("ledger", "snippet_chars"): 0,
}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_settings(yaml_path: Path | None = None) -> Settings:
    """Load and validate settings; defaults when ``yaml_path`` is None.

    Raises:
        SettingsValidationError: malformed YAML or invalid values.
        FileNotFoundError: the file does not exist.
    """
    if yaml_path is None:
        return Settings()
    raw = yaml_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise SettingsValidationError(f"Invalid YAML in {yaml_path}: {exc}") from exc
    validate_settings(data)
    sections = {
        name: _build_section(name, cls, data[name] or {})
        for name, cls in SECTION_TYPES.items()
    }
    return Settings(
        **sections,
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        source_path=str(yaml_path),
    )


def validate_settings(data: Any) -> None:
    """Raise SettingsValidationError if data does not match the schema."""
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    missing = REQUIRED_SECTIONS - set(data.keys())
    if missing:
        raise SettingsValidationError(f"Missing required sections: {sorted(missing)}")
    unknown = set(data.keys()) - REQUIRED_SECTIONS
    if unknown:
        raise SettingsValidationError(f"Unknown sections: {sorted(unknown)}")

    for name, cls in SECTION_TYPES.items():
        section = data[name] or {}
        if not isinstance(section, dict):
            raise SettingsValidationError(f"Section '{name}' must be a mapping.")
        allowed = {f.name for f in fields(cls)}
        unknown_keys = set(section.keys()) - allowed
        if unknown_keys:
            raise SettingsValidationError(
                f"Unknown keys in '{name}': {sorted(unknown_keys)}"
            )


def _build_section(name: str, cls: type, values: dict[str, Any]) -> Any:
    defaults = cls()
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in values:
            continue
        kwargs[f.name] = _coerce(name, f.name, values[f.name], getattr(defaults, f.name))
    return cls(**kwargs)


def _coerce(section: str, key: str, value: Any, default: Any) -> Any:
    label = f"{section}.{key}"
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise SettingsValidationError(f"'{label}' must be true or false, got {value!r}.")
        return value
    if isinstance(default, (int, float)):
        if isinstance(value, bool):
            raise SettingsValidationError(f"'{label}' value {value!r} is not numeric.")
        try:
            num = float(value)
        except (TypeError, ValueError):
            raise SettingsValidationError(f"'{label}' value {value!r} is not numeric.")
        if isinstance(default, int):
            if not num.is_integer():
                raise SettingsValidationError(f"'{label}' must be an integer, got {value!r}.")
            num = int(num)
        minimum = _MINIMUMS.get((section, key))
        if minimum is not None and num < minimum:
            raise SettingsValidationError(f"'{label}' value {num} must be >= {minimum}.")
        return num
    if value is None:
        raise SettingsValidationError(f"'{label}' must not be empty.")
    return str(value)
