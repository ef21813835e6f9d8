"""
Job registry: job name -> executable capability, populated once at startup.
"""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from overseer.config import JobDefinition
from overseer.errors import ConfigError, InvalidScheduleError, JobNotFoundError, Outcome
from overseer.logs import get_logger
from overseer.triggers import validate_schedule


class JobCapability(abc.ABC):
    """A unit of work the scheduler can run, possibly more than once."""

    @abc.abstractmethod
    def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
        """Run once. ``cancel`` is set when the attempt has timed out or the
        scheduler is shutting down; long-running jobs stop when they see it."""
        raise NotImplementedError


JobFactory = Callable[[JobDefinition, logging.Logger], JobCapability]


@dataclass(frozen=True)
class RegisteredJob:
    definition: JobDefinition
    job: JobCapability

    @property
    def name(self) -> str:
        return self.definition.name


class JobRegistry:
    def __init__(self, entries: Mapping[str, JobCapability]):
        self._entries = MappingProxyType(dict(entries))

    def resolve(self, name: str) -> JobCapability:
        try:
            return self._entries[name]
        except KeyError:
            raise JobNotFoundError(name) from None

    def names(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def from_definitions(
        cls,
        definitions: Sequence[JobDefinition],
        catalog: Mapping[str, JobFactory],
        logger: Optional[logging.Logger] = None,
    ) -> "JobRegistry":
        """Bind each definition's params through its catalog factory.

        Names missing from the catalog and factories rejecting their params are
        skipped with a warning.
        """
        log = get_logger(logger)
        entries: Dict[str, JobCapability] = {}
        for definition in definitions:
            factory = catalog.get(definition.name)
            if factory is None:
                log.warning("Skipping job %s: %s", definition.name, JobNotFoundError(definition.name))
                continue
            try:
                entries[definition.name] = factory(definition, log)
            except ConfigError as exc:
                log.warning("Skipping job %s: %s", definition.name, exc)
        return cls(entries)


def register_jobs(
    definitions: Sequence[JobDefinition],
    catalog: Mapping[str, JobFactory],
    logger: Optional[logging.Logger] = None,
    include_disabled: bool = False,
) -> List[RegisteredJob]:
    """Join definitions against the catalog; drop what cannot be scheduled."""
    log = get_logger(logger)
    usable: List[JobDefinition] = []
    for definition in definitions:
        if not definition.enabled and not include_disabled:
            log.info("Skipping job %s: disabled", definition.name)
            continue
        try:
            validate_schedule(definition.schedule)
        except InvalidScheduleError as exc:
            log.warning("Skipping job %s: %s", definition.name, exc)
            continue
        usable.append(definition)

    registry = JobRegistry.from_definitions(usable, catalog, log)
    registered: List[RegisteredJob] = []
    for definition in usable:
        try:
            job = registry.resolve(definition.name)
        except JobNotFoundError:
            continue
        registered.append(RegisteredJob(definition=definition, job=job))
        log.info("Registered job %s with schedule %s (%s)", definition.name, definition.schedule, definition.timezone_name)
    return registered
