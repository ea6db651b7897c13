"""
Check-in Engine - Config Loader

Layered configuration:
  1. Base file checkin.yaml (path from argument, CHECKIN_CONFIG_PATH, or cwd)
  2. Per-environment overlay (config/{CHECKIN_ENV}.yaml merged over base)
  3. Environment variable overrides (CHECKIN_<SECTION>_<KEY>)

Usage:
    from checkin.config import load_settings

    settings = load_settings("checkin.yaml", env="prod")
    problems = settings.validate()

Environment variables:
    CHECKIN_CONFIG_PATH   - base config file
    CHECKIN_ENV           - active profile (dev, staging, prod)
    CHECKIN_CONFIG_DIR    - directory for overlay files (default: config/)
    CHECKIN_*             - flat overrides (e.g. CHECKIN_PERSONNEL_NURSE_LIMIT=40)
"""

from __future__ import annotations

import codecs
import copy
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from checkin.errors import ConfigError
from checkin.retry import RetryPolicy
from checkin.types import Role

logger = logging.getLogger("checkin.config")

ENV_PREFIX = "CHECKIN_"
DEFAULT_CONFIG_PATH = "checkin.yaml"
DEFAULT_ITEM_INDICES = [0, 1, 9, 11, 13, 14, 15, 22, 27, 28, 29, 58]


# ═══════════════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ApiSettings:
    base_url: str = ""
    timeout_seconds: float = 30.0
    cookie: str = ""
    referer: str = ""


@dataclass
class OrganizationSettings:
    code: str = "H37021106950"
    dept_name: str = ""
    region_code: int = 370284


@dataclass
class PersonnelSettings:
    nurse_limit: int = 50
    physician_limit: int = 80
    caregiver_limit: int = 30
    caregiver_names: list[str] = field(default_factory=list)


@dataclass
class CareSettings:
    checkin_type: str = "01"
    category_code: str = "04"
    item_indices: list[int] = field(default_factory=lambda: list(DEFAULT_ITEM_INDICES))


@dataclass
class IntakeSettings:
    encoding: str = "utf-8-sig"     # "gbk" for most Excel exports


@dataclass
class RetrySettings:
    max_attempts: int = 3
    delay_seconds: float = 1.0


@dataclass
class StorageSettings:
    checkpoint_path: str = "checkpoint.db"
    report_dir: str = "reports"


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "json"
    file: str | None = None


_SECTIONS = {
    "api": ApiSettings,
    "organization": OrganizationSettings,
    "personnel": PersonnelSettings,
    "care": CareSettings,
    "intake": IntakeSettings,
    "retry": RetrySettings,
    "storage": StorageSettings,
    "logging": LoggingSettings,
}


@dataclass
class Settings:
    api: ApiSettings = field(default_factory=ApiSettings)
    organization: OrganizationSettings = field(default_factory=OrganizationSettings)
    personnel: PersonnelSettings = field(default_factory=PersonnelSettings)
    care: CareSettings = field(default_factory=CareSettings)
    intake: IntakeSettings = field(default_factory=IntakeSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    active_env: str = "default"
    source: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Settings:
        data = data or {}
        kwargs: dict[str, Any] = {}
        for name, section_cls in _SECTIONS.items():
            raw = data.get(name) or {}
            if not isinstance(raw, dict):
                raise ConfigError(f"config section '{name}' must be a mapping")
            known = set(section_cls.__dataclass_fields__)
            unknown = sorted(set(raw) - known)
            if unknown:
                logger.warning("Ignoring unknown keys in '%s': %s", name, ", ".join(unknown))
            try:
                kwargs[name] = section_cls(**{k: v for k, v in raw.items() if k in known})
            except TypeError as e:
                raise ConfigError(f"config section '{name}': {e}") from e
        return cls(**kwargs)

    def limits(self) -> dict[Role, int]:
        return {
            Role.NURSE: int(self.personnel.nurse_limit),
            Role.PHYSICIAN: int(self.personnel.physician_limit),
            Role.CAREGIVER: int(self.personnel.caregiver_limit),
        }

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=int(self.retry.max_attempts),
            delay_seconds=float(self.retry.delay_seconds),
        )

    def validate(self) -> list[str]:
        """Human-readable problems. Empty list means usable."""
        problems = []
        for role, limit in self._raw_limits().items():
            if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
                problems.append(f"personnel.{role.value}_limit must be a positive integer, got {limit!r}")
        if not isinstance(self.retry.max_attempts, int) or self.retry.max_attempts < 1:
            problems.append(f"retry.max_attempts must be >= 1, got {self.retry.max_attempts!r}")
        if not isinstance(self.retry.delay_seconds, (int, float)) or self.retry.delay_seconds < 0:
            problems.append(f"retry.delay_seconds must be >= 0, got {self.retry.delay_seconds!r}")
        if not all(isinstance(i, int) and i >= 0 for i in self.care.item_indices or []):
            problems.append("care.item_indices must be non-negative integers")
        if not self.care.item_indices:
            problems.append("care.item_indices must not be empty")
        try:
            codecs.lookup(self.intake.encoding)
        except (LookupError, TypeError):
            problems.append(f"intake.encoding is not a known codec: {self.intake.encoding!r}")
        if self.logging.format not in ("json", "text"):
            problems.append(f"logging.format must be 'json' or 'text', got {self.logging.format!r}")
        return problems

    def _raw_limits(self) -> dict[Role, Any]:
        return {
            Role.NURSE: self.personnel.nurse_limit,
            Role.PHYSICIAN: self.personnel.physician_limit,
            Role.CAREGIVER: self.personnel.caregiver_limit,
        }

    def snapshot(self) -> dict[str, Any]:
        """Report-safe view: no cookie."""
        data = asdict(self)
        if data["api"].get("cookie"):
            data["api"]["cookie"] = "***"
        return data


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ═══════════════════════════════════════════════════════════════════
# Sources
# ═══════════════════════════════════════════════════════════════════

def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must contain a mapping")
    return data


def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """
    Per-environment overlay: {config_dir}/{env}.yaml, then config/{env}.yaml
    next to the base file. Empty dict if none exists.
    """
    env = env or os.environ.get("CHECKIN_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("CHECKIN_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / "config" / f"{env}.yaml",
    ]
    for path in candidates:
        if path.exists():
            overlay = _read_yaml(path)
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


def _load_env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    CHECKIN_<SECTION>_<KEY>=value -> {"section": {"key": value}}

    Only known sections are picked up. Values go through yaml.safe_load so
    numbers, booleans and lists arrive typed.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        section, _, key = name[len(ENV_PREFIX):].lower().partition("_")
        if section not in _SECTIONS or not key:
            continue
        fields = _SECTIONS[section].__dataclass_fields__
        if key in fields and fields[key].type == "str":
            # "01" must stay "01"
            parsed: Any = value
        else:
            try:
                parsed = yaml.safe_load(value)
            except yaml.YAMLError:
                parsed = value
        overrides.setdefault(section, {})[key] = parsed

    if overrides:
        logger.debug("Loaded env var overrides for sections: %s", ", ".join(sorted(overrides)))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Merged raw configuration dict.

    Priority (highest wins):
      1. Environment variable overrides (CHECKIN_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file
    """
    base_path = base_path or os.environ.get("CHECKIN_CONFIG_PATH", DEFAULT_CONFIG_PATH)

    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        config = _read_yaml(Path(base_path))
        logger.debug("Loaded base config: %s", base_path)
    else:
        logger.info("Config file %s not found, using defaults", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("CHECKIN_ENV", "default")
    config["_config_source"] = base_path
    return config


def load_settings(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> Settings:
    """Load and type the merged configuration. Raises ConfigError."""
    raw = load_config(base_path, env=env, config_dir=config_dir,
                      include_env_vars=include_env_vars)
    settings = Settings.from_dict(raw)
    settings.active_env = raw["_active_env"]
    settings.source = raw["_config_source"]
    return settings
