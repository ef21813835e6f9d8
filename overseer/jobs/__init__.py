"""
Job catalog: the job names a config file may schedule.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Dict, Optional

from overseer.config import JobDefinition, ensure_str, reject_unknown
from overseer.errors import Outcome
from overseer.jobs.reservation import build_reservation_job
from overseer.jobs.shell import build_alias_sequence_job
from overseer.logs import get_logger
from overseer.registry import JobCapability, JobFactory


class JobKind(str, Enum):
    ANNOUNCE = "announce"
    ALIAS_COMMANDS = "alias_commands"
    RESERVATION_BOT = "reservation_bot"


class AnnounceJob(JobCapability):
    """Logs a fixed message; useful for checking a schedule end to end."""

    def __init__(self, name: str, message: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.message = message
        self.logger = get_logger(logger)

    def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
        self.logger.info("[%s] %s", self.name, self.message)
        return Outcome.ok()


def build_announce_job(definition: JobDefinition, logger: logging.Logger) -> AnnounceJob:
    reject_unknown(definition.params, {"message"}, f"{definition.name}.params")
    message = definition.params.get("message", f"Executing {definition.name}")
    return AnnounceJob(definition.name, ensure_str(message, f"{definition.name}.params.message"), logger)


CATALOG: Dict[str, JobFactory] = {
    JobKind.ANNOUNCE.value: build_announce_job,
    JobKind.ALIAS_COMMANDS.value: build_alias_sequence_job,
    JobKind.RESERVATION_BOT.value: build_reservation_job,
}
