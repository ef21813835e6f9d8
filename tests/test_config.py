from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Optional

import pytest
import yaml

from overseer.config import ConfigError, load_environment, parse_config
from overseer.errors import JobNotFoundError, Outcome
from overseer.jobs import CATALOG, AnnounceJob, JobKind
from overseer.jobs.shell import AliasSequenceJob
from overseer.registry import JobCapability, JobRegistry, register_jobs


def _base_config(**job_overrides: object) -> dict:
    job = {"name": "announce", "schedule": "0 6 * * *"}
    job.update(job_overrides)
    return {
        "version": 1,
        "defaults": {"timezone": "UTC", "overlap": "skip"},
        "jobs": [job],
    }


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "overseer.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return path


def test_parse_applies_defaults(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["defaults"]["retry"] = {"max_attempts": 3, "delay_seconds": 5, "attempt_timeout": 60}
    job = parse_config(_write_config(tmp_path, cfg)).jobs[0]
    assert job.name == "announce"
    assert job.schedule == "0 6 * * *"
    assert job.enabled is True
    assert job.overlap == "skip"
    assert job.timezone_name == "UTC"
    assert job.retry.max_attempts == 3
    assert job.retry.delay_seconds == 5.0
    assert job.retry.attempt_timeout == 60.0
    assert dict(job.params) == {}


def test_job_retry_overrides_defaults(tmp_path: Path) -> None:
    cfg = _base_config(retry={"max_attempts": 2, "attempt_timeout": None})
    cfg["defaults"]["retry"] = {"max_attempts": 5, "delay_seconds": 1, "attempt_timeout": 10}
    job = parse_config(_write_config(tmp_path, cfg)).jobs[0]
    assert job.retry.max_attempts == 2
    assert job.retry.delay_seconds == 1.0
    assert job.retry.attempt_timeout is None


def test_params_are_read_only(tmp_path: Path) -> None:
    cfg = _base_config(params={"message": "hi"})
    job = parse_config(_write_config(tmp_path, cfg)).jobs[0]
    with pytest.raises(TypeError):
        job.params["message"] = "changed"  # type: ignore[index]


def test_duplicate_job_names_rejected(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["jobs"].append({"name": "announce", "schedule": "0 7 * * *"})
    with pytest.raises(ConfigError, match="Duplicate job name"):
        parse_config(_write_config(tmp_path, cfg))


def test_unknown_job_key_rejected(tmp_path: Path) -> None:
    cfg = _base_config(command="echo hi")
    with pytest.raises(ConfigError, match="Unknown keys in jobs\\[0\\]"):
        parse_config(_write_config(tmp_path, cfg))


def test_unknown_timezone_rejected(tmp_path: Path) -> None:
    cfg = _base_config(timezone="America/NotAZone")
    with pytest.raises(ConfigError, match="Invalid timezone"):
        parse_config(_write_config(tmp_path, cfg))


def test_invalid_overlap_rejected(tmp_path: Path) -> None:
    cfg = _base_config(overlap="sometimes")
    with pytest.raises(ConfigError, match="overlap must be one of"):
        parse_config(_write_config(tmp_path, cfg))


def test_invalid_retry_rejected(tmp_path: Path) -> None:
    cfg = _base_config(retry={"max_attempts": 0})
    with pytest.raises(ConfigError, match="max_attempts must be >= 1"):
        parse_config(_write_config(tmp_path, cfg))


def test_missing_file_and_bad_yaml_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        parse_config(tmp_path / "missing.yaml")
    bad = tmp_path / "bad.yaml"
    bad.write_text("jobs: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        parse_config(bad)


def test_empty_jobs_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="jobs must be a non-empty list"):
        parse_config(_write_config(tmp_path, {"version": 1, "jobs": []}))


def test_register_skips_unknown_names_and_bad_schedules(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    cfg = {
        "version": 1,
        "jobs": [
            {"name": "announce", "schedule": "*/5 * * * *"},
            {"name": "no_such_job", "schedule": "0 6 * * *"},
            {"name": "alias_commands", "schedule": "every tuesday", "params": {"commands": ["true"]}},
            {"name": "reservation_bot", "schedule": "0 0 1 * *", "enabled": False},
        ],
    }
    definitions = parse_config(_write_config(tmp_path, cfg)).jobs
    with caplog.at_level(logging.WARNING, logger="overseer"):
        registered = register_jobs(definitions, CATALOG)
    assert [job.name for job in registered] == ["announce"]
    assert isinstance(registered[0].job, AnnounceJob)
    warnings = " ".join(record.getMessage() for record in caplog.records)
    assert "no_such_job" in warnings
    assert "Invalid schedule" in warnings


@pytest.mark.parametrize("schedule", ["", "   ", 5, None, ["0", "6"]])
def test_unusable_schedule_skips_only_that_job(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
    schedule: object,
) -> None:
    broken = {"name": "announce"}
    if schedule is not None:
        broken["schedule"] = schedule  # type: ignore[assignment]
    cfg = {
        "version": 1,
        "jobs": [
            broken,
            {"name": "alias_commands", "schedule": "0 6 * * *", "params": {"commands": ["true"]}},
        ],
    }
    definitions = parse_config(_write_config(tmp_path, cfg)).jobs
    assert [job.name for job in definitions] == ["announce", "alias_commands"]
    with caplog.at_level(logging.WARNING, logger="overseer"):
        registered = register_jobs(definitions, CATALOG)
    assert [job.name for job in registered] == ["alias_commands"]
    warnings = [record.getMessage() for record in caplog.records if record.levelno == logging.WARNING]
    assert any(message.startswith("Skipping job announce: Invalid schedule") for message in warnings)


def test_register_skips_job_with_invalid_params(tmp_path: Path) -> None:
    cfg = {
        "version": 1,
        "jobs": [{"name": "alias_commands", "schedule": "0 6 * * *", "params": {"commands": []}}],
    }
    definitions = parse_config(_write_config(tmp_path, cfg)).jobs
    assert register_jobs(definitions, CATALOG) == []


def test_registry_resolves_bound_capabilities(tmp_path: Path) -> None:
    cfg = {
        "version": 1,
        "jobs": [
            {"name": "alias_commands", "schedule": "0 6 * * *", "params": {"commands": ["true"]}},
        ],
    }
    definitions = parse_config(_write_config(tmp_path, cfg)).jobs
    registry = JobRegistry.from_definitions(definitions, CATALOG)
    job = registry.resolve(JobKind.ALIAS_COMMANDS.value)
    assert isinstance(job, AliasSequenceJob)
    assert job.commands == ["true"]
    assert "alias_commands" in registry
    with pytest.raises(JobNotFoundError):
        registry.resolve("announce")


def test_registry_is_read_only() -> None:
    class Noop(JobCapability):
        def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
            return Outcome.ok()

    entries = {"noop": Noop()}
    registry = JobRegistry(entries)
    entries["other"] = Noop()
    assert registry.names() == ["noop"]
    assert len(registry) == 1


def test_load_environment_does_not_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("OVERSEER_TEST_A=from-file\nOVERSEER_TEST_B=from-file\n", encoding="utf-8")
    monkeypatch.setenv("OVERSEER_TEST_A", "already-set")
    monkeypatch.delenv("OVERSEER_TEST_B", raising=False)
    assert load_environment(env_file) is True
    assert os.environ["OVERSEER_TEST_A"] == "already-set"
    assert os.environ["OVERSEER_TEST_B"] == "from-file"
    monkeypatch.delenv("OVERSEER_TEST_B")
    assert load_environment(tmp_path / "missing.env") is False
