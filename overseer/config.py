"""
YAML job configuration and environment loading.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from dotenv import load_dotenv
except ImportError:  # pragma: no cover - dependency check at runtime
    load_dotenv = None

from overseer.errors import ConfigError, OverseerError
from overseer.retry import DEFAULT_DELAY_SECONDS, DEFAULT_MAX_ATTEMPTS, RetryPolicy

DEFAULT_CONFIG = "overseer.yaml"
DEFAULT_ENV_FILE = ".env"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_OVERLAP = "skip"
VALID_OVERLAPS = {"skip", "queue", "parallel"}

TOP_LEVEL_KEYS = {"version", "defaults", "jobs"}
DEFAULTS_KEYS = {"timezone", "overlap", "retry"}
JOB_KEYS = {"name", "schedule", "enabled", "timezone", "overlap", "retry", "params"}
RETRY_KEYS = {"max_attempts", "delay_seconds", "attempt_timeout"}


@dataclass(frozen=True)
class JobDefinition:
    name: str
    schedule: Any  # as written; register_jobs skips jobs whose schedule is invalid
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    enabled: bool = True
    timezone_name: str = DEFAULT_TIMEZONE
    overlap: str = DEFAULT_OVERLAP
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)


@dataclass(frozen=True)
class EngineConfig:
    path: Path
    jobs: List[JobDefinition]


def require_yaml_dependency() -> None:
    if yaml is None:
        raise OverseerError("Missing required dependency: PyYAML. Install with: pip install PyYAML")


def load_environment(env_file: Optional[Path]) -> bool:
    """Load ``env_file`` into os.environ without overriding existing variables."""
    if load_dotenv is None:
        raise OverseerError(
            "Missing required dependency: python-dotenv. Install with: pip install python-dotenv"
        )
    if env_file is None or not env_file.exists():
        return False
    return bool(load_dotenv(env_file, override=False))


def parse_timezone(name: Any, field_path: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Error: {field_path} must be a timezone string.")
    try:
        ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc
    return name.strip()


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_number(value: Any, field_path: str, default: Optional[float], minimum: float = 0) -> Optional[float]:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    return value


def reject_unknown(raw: Mapping[str, Any], allowed: Set[str], field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


def parse_overlap(value: Any, field_path: str, default: str) -> str:
    if value is None:
        return default
    overlap = ensure_str(value, field_path).lower()
    if overlap not in VALID_OVERLAPS:
        raise ConfigError(
            f'Error: {field_path} must be one of {sorted(VALID_OVERLAPS)}, got "{overlap}".'
        )
    return overlap


def parse_retry(raw: Any, field_path: str, default: RetryPolicy) -> RetryPolicy:
    if raw is None:
        return default
    raw = ensure_mapping(raw, field_path)
    reject_unknown(raw, RETRY_KEYS, field_path)
    max_attempts = ensure_int(raw.get("max_attempts"), f"{field_path}.max_attempts", default.max_attempts, 1)
    delay = ensure_number(raw.get("delay_seconds"), f"{field_path}.delay_seconds", default.delay_seconds, 0)
    if "attempt_timeout" in raw and raw["attempt_timeout"] is None:
        timeout = None
    else:
        timeout = ensure_number(
            raw.get("attempt_timeout"),
            f"{field_path}.attempt_timeout",
            default.attempt_timeout,
            0,
        )
        if timeout is not None and timeout <= 0:
            raise ConfigError(f"Error: {field_path}.attempt_timeout must be > 0.")
    return RetryPolicy(max_attempts=max_attempts, delay_seconds=delay, attempt_timeout=timeout)


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_config(config_path: Path) -> EngineConfig:
    """Parse the job file. Cron syntax and job names are checked later, per job."""
    payload = _load_config_payload(config_path)
    reject_unknown(payload, TOP_LEVEL_KEYS, "top level")

    defaults = ensure_mapping(payload.get("defaults"), "defaults")
    reject_unknown(defaults, DEFAULTS_KEYS, "defaults")
    default_timezone = parse_timezone(defaults.get("timezone", DEFAULT_TIMEZONE), "defaults.timezone")
    default_overlap = parse_overlap(defaults.get("overlap"), "defaults.overlap", DEFAULT_OVERLAP)
    default_retry = parse_retry(
        defaults.get("retry"),
        "defaults.retry",
        RetryPolicy(max_attempts=DEFAULT_MAX_ATTEMPTS, delay_seconds=DEFAULT_DELAY_SECONDS),
    )

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    seen_names: Set[str] = set()
    jobs: List[JobDefinition] = []
    for idx, job_raw in enumerate(jobs_raw):
        path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        reject_unknown(job_raw, JOB_KEYS, path)

        name = ensure_str(job_raw.get("name"), f"{path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate job name "{name}".')
        seen_names.add(name)

        params = ensure_mapping(job_raw.get("params"), f"{path}.params")
        jobs.append(
            JobDefinition(
                name=name,
                schedule=job_raw.get("schedule"),
                params=MappingProxyType(copy.deepcopy(params)),
                enabled=ensure_bool(job_raw.get("enabled"), f"{path}.enabled", True),
                timezone_name=parse_timezone(job_raw.get("timezone", default_timezone), f"{path}.timezone"),
                overlap=parse_overlap(job_raw.get("overlap"), f"{path}.overlap", default_overlap),
                retry=parse_retry(job_raw.get("retry"), f"{path}.retry", default_retry),
            )
        )

    return EngineConfig(path=config_path, jobs=jobs)
