"""
Shell alias sequence job.

Each command is run through a fallback over shell profiles: the command is
tried after sourcing each profile in turn, then executed directly. The
sequence moves on to the next command after a failure; how per-command
failures affect the job outcome is set by ``failure_policy``. A cancelled run
kills the running command and stops before the next one.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from overseer.config import JobDefinition, ensure_int, ensure_str, reject_unknown
from overseer.errors import ConfigError, Outcome
from overseer.fallback import Strategy, try_in_order
from overseer.logs import get_logger
from overseer.registry import JobCapability

DEFAULT_PROFILES = ["~/.zshrc", "~/.bash_profile", "~/.bashrc", "~/.profile"]
DEFAULT_COMMAND_TIMEOUT_SECONDS = 300
DEFAULT_SHELL = "bash"
BEST_EFFORT = "best_effort"
STRICT = "strict"
FAILURE_POLICIES = {BEST_EFFORT, STRICT}
PARAM_KEYS = {"commands", "profiles", "timeout_seconds", "shell", "failure_policy"}
OUTPUT_PREVIEW_CHARS = 1000
CANCEL_POLL_SECONDS = 0.1


@dataclass
class CommandRunResult:
    command: str
    success: bool
    return_code: int
    duration_seconds: float
    stdout: str
    stderr: str
    error: Optional[str] = None

    def failure_reason(self) -> str:
        if self.error in ("timeout", "cancelled"):
            return self.stderr
        detail = self.stderr.strip()[-OUTPUT_PREVIEW_CHARS:]
        return f"exit code {self.return_code}" + (f": {detail}" if detail else "")


def _kill_process_group(proc: "subprocess.Popen[str]") -> Tuple[str, str]:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:  # pragma: no cover - platform without process groups
            proc.kill()
    except ProcessLookupError:
        pass
    return proc.communicate()


def run_command(
    args: Union[str, List[str]],
    timeout: int,
    use_shell: bool = False,
    cancel: Optional[threading.Event] = None,
) -> CommandRunResult:
    """Run one command, killing its whole process group on timeout or cancel."""
    command_text = args if isinstance(args, str) else " ".join(args)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            args,
            shell=use_shell,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except OSError as exc:
        return CommandRunResult(
            command=command_text,
            success=False,
            return_code=-2,
            duration_seconds=time.monotonic() - started,
            stdout="",
            stderr=str(exc),
            error="exception",
        )

    deadline = started + timeout
    while True:
        try:
            wait = max(0.0, min(CANCEL_POLL_SECONDS, deadline - time.monotonic()))
            stdout, stderr = proc.communicate(timeout=wait)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                _kill_process_group(proc)
                return CommandRunResult(
                    command=command_text,
                    success=False,
                    return_code=-3,
                    duration_seconds=time.monotonic() - started,
                    stdout="",
                    stderr="Cancelled.",
                    error="cancelled",
                )
            if time.monotonic() >= deadline:
                _kill_process_group(proc)
                return CommandRunResult(
                    command=command_text,
                    success=False,
                    return_code=-1,
                    duration_seconds=time.monotonic() - started,
                    stdout="",
                    stderr=f"Timed out after {timeout} seconds.",
                    error="timeout",
                )

    return CommandRunResult(
        command=command_text,
        success=proc.returncode == 0,
        return_code=proc.returncode,
        duration_seconds=time.monotonic() - started,
        stdout=stdout or "",
        stderr=stderr or "",
    )


CommandRunner = Callable[[Union[str, List[str]], int, bool, Optional[threading.Event]], CommandRunResult]


class AliasSequenceJob(JobCapability):
    def __init__(
        self,
        name: str,
        commands: Sequence[str],
        profiles: Sequence[str] = tuple(DEFAULT_PROFILES),
        timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        shell: str = DEFAULT_SHELL,
        failure_policy: str = BEST_EFFORT,
        logger: Optional[logging.Logger] = None,
        runner: CommandRunner = run_command,
    ):
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"failure_policy must be one of {sorted(FAILURE_POLICIES)}")
        self.name = name
        self.commands = list(commands)
        self.profiles = list(profiles)
        self.timeout_seconds = timeout_seconds
        self.shell = shell
        self.failure_policy = failure_policy
        self.logger = get_logger(logger)
        self._runner = runner

    def strategies_for(self, command: str, cancel: Optional[threading.Event] = None) -> List[Strategy]:
        strategies = [
            Strategy(
                name=f"profile {profile}",
                action=self._make_action(
                    command,
                    [self.shell, "-c", f"source {profile} 2>/dev/null && {command}"],
                    use_shell=False,
                    via=profile,
                    cancel=cancel,
                ),
            )
            for profile in self.profiles
        ]
        strategies.append(
            Strategy(
                name="direct",
                action=self._make_action(command, command, use_shell=True, via="direct", cancel=cancel),
            )
        )
        return strategies

    def _make_action(
        self,
        command: str,
        args: Union[str, List[str]],
        use_shell: bool,
        via: str,
        cancel: Optional[threading.Event] = None,
    ) -> Callable[[], Outcome]:
        def action() -> Outcome:
            if cancel is not None and cancel.is_set():
                return Outcome.failed("cancelled")
            result = self._runner(args, self.timeout_seconds, use_shell, cancel)
            if not result.success:
                return Outcome.failed(result.failure_reason())
            if result.stdout.strip():
                self.logger.info("[%s] Command %s output: %s", self.name, command, result.stdout.strip())
            if result.stderr.strip():
                self.logger.warning("[%s] Command %s stderr: %s", self.name, command, result.stderr.strip())
            self.logger.info("[%s] Successfully completed command: %s (%s)", self.name, command, via)
            return Outcome.ok()

        return action

    def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
        self.logger.info("[%s] Starting alias commands sequence (%s commands)", self.name, len(self.commands))
        failed: List[str] = []
        for idx, command in enumerate(self.commands, start=1):
            if cancel is not None and cancel.is_set():
                self.logger.warning(
                    "[%s] Cancelled before command %s/%s: %s",
                    self.name,
                    idx,
                    len(self.commands),
                    command,
                )
                return Outcome.failed(f"cancelled after {idx - 1}/{len(self.commands)} commands")
            self.logger.info("[%s] Executing command %s/%s: %s", self.name, idx, len(self.commands), command)
            result = try_in_order(self.strategies_for(command, cancel), self.logger, label=f"{self.name}:{command}")
            if not result.success:
                failed.append(command)
                self.logger.error(
                    "[%s] Failed to execute command %s: %s",
                    self.name,
                    command,
                    result.outcome.reason,
                )
        if cancel is not None and cancel.is_set():
            self.logger.warning("[%s] Cancelled during the last command", self.name)
            return Outcome.failed("cancelled")
        self.logger.info(
            "[%s] Completed alias commands sequence (%s/%s succeeded)",
            self.name,
            len(self.commands) - len(failed),
            len(self.commands),
        )
        if failed and self.failure_policy == STRICT:
            return Outcome.failed(f"{len(failed)} command(s) failed: {', '.join(failed)}")
        return Outcome.ok()


def _string_list(value: Any, field_path: str, default: Optional[List[str]] = None) -> List[str]:
    if value is None and default is not None:
        return list(default)
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Error: {field_path} must be a non-empty list of strings.")
    return [ensure_str(item, f"{field_path}[{idx}]") for idx, item in enumerate(value)]


def build_alias_sequence_job(definition: JobDefinition, logger: logging.Logger) -> AliasSequenceJob:
    params = definition.params
    path = f"{definition.name}.params"
    reject_unknown(params, PARAM_KEYS, path)
    failure_policy = ensure_str(params.get("failure_policy", BEST_EFFORT), f"{path}.failure_policy").lower()
    if failure_policy not in FAILURE_POLICIES:
        raise ConfigError(
            f'Error: {path}.failure_policy must be one of {sorted(FAILURE_POLICIES)}, got "{failure_policy}".'
        )
    return AliasSequenceJob(
        name=definition.name,
        commands=_string_list(params.get("commands"), f"{path}.commands"),
        profiles=_string_list(params.get("profiles"), f"{path}.profiles", DEFAULT_PROFILES),
        timeout_seconds=ensure_int(
            params.get("timeout_seconds"),
            f"{path}.timeout_seconds",
            DEFAULT_COMMAND_TIMEOUT_SECONDS,
            1,
        ),
        shell=ensure_str(params.get("shell", DEFAULT_SHELL), f"{path}.shell"),
        failure_policy=failure_policy,
        logger=logger,
    )
