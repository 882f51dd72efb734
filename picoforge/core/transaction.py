"""Configuration transactions: stage, validate and commit setting changes.

A transaction is built against one ``ConfigSnapshot``. Staged settings are
grouped into one write per PHY tag and applied in ``WRITE_ORDER``. If a
write fails, the writes already applied are undone in reverse order by
restoring the snapshot's raw value for their tag.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

from picoforge.core.constraints import validate_combination, validate_setting
from picoforge.core.diagnostics import DiagnosticStream
from picoforge.core.driver import CommandDriver
from picoforge.core.errors import (
    CommitCancelledError,
    CommitError,
    DisconnectedError,
    PicoforgeError,
    TransactionStateError,
    TransportTimeoutError,
    ValidationError,
)
from picoforge.core.model import CommitReport, ConfigSnapshot, EventKind
from picoforge.core.phy import TAG_NAMES, encode_group, group_by_tag

LOGGER = logging.getLogger(__name__)


class TransactionState(str, Enum):
    BUILDING = "building"
    VALIDATING = "validating"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class WriteStep:
    tag: int
    name: str
    settings: tuple[str, ...]
    value: bytes
    previous: bytes | None

    @property
    def changes_device(self) -> bool:
        return self.value != self.previous


class ConfigTransaction:
    def __init__(
        self,
        driver: CommandDriver,
        snapshot: ConfigSnapshot,
        *,
        diagnostics: DiagnosticStream | None = None,
    ) -> None:
        self.driver = driver
        self.snapshot = snapshot
        self._diagnostics = diagnostics
        self._staged: dict[str, Any] = {}
        self._state = TransactionState.BUILDING

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def changes(self) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._staged))

    def _require_building(self, action: str) -> None:
        if self._state is not TransactionState.BUILDING:
            raise TransactionStateError(f"Cannot {action} a transaction that is {self._state.value}")

    def _transition(self, state: TransactionState) -> None:
        previous, self._state = self._state, state
        LOGGER.debug("Transaction %s -> %s", previous.value, state.value)
        if self._diagnostics is not None:
            self._diagnostics.publish(
                EventKind.STATE_TRANSITION,
                f"transaction {previous.value} -> {state.value}",
                previous=previous.value,
                state=state.value,
            )

    def stage(self, field: str, value: Any) -> Any:
        """Validate ``value`` for ``field`` and queue it; a rejected value leaves the transaction building."""
        self._require_building("stage into")
        if not self.driver.profile.supports("write_config"):
            raise ValidationError(f"Profile '{self.driver.profile.id}' is read-only", field=field)
        checked = validate_setting(self.driver.profile, field, value)
        self._staged[field] = checked
        return checked

    def unstage(self, field: str) -> None:
        self._require_building("unstage from")
        self._staged.pop(field, None)

    def plan(self) -> tuple[WriteStep, ...]:
        steps: list[WriteStep] = []
        for tag, values in group_by_tag(self._staged).items():
            steps.append(
                WriteStep(
                    tag=tag,
                    name=TAG_NAMES[tag],
                    settings=tuple(values),
                    value=encode_group(tag, values, self.snapshot),
                    previous=self.snapshot.raw(tag),
                )
            )
        return tuple(steps)

    def discard(self) -> None:
        if self._state is TransactionState.DISCARDED:
            return
        self._require_building("discard")
        self._transition(TransactionState.DISCARDED)

    def commit(self, cancel: threading.Event | None = None) -> CommitReport:
        """Apply the staged changes, holding the session until the commit or its rollback ends.

        ``cancel`` is checked before each write; setting it rolls back what was
        already applied.
        """
        self._require_building("commit")
        with self.driver.session.reserve():
            return self._commit(cancel)

    def _commit(self, cancel: threading.Event | None) -> CommitReport:
        self._transition(TransactionState.VALIDATING)
        try:
            validate_combination(self.driver.profile, self._staged, self.snapshot)
            steps = self.plan()
        except ValidationError:
            self._transition(TransactionState.FAILED)
            raise

        self._transition(TransactionState.COMMITTING)
        skipped = tuple(step.name for step in steps if not step.changes_device)
        applied: list[WriteStep] = []
        for step in steps:
            if not step.changes_device:
                continue
            if cancel is not None and cancel.is_set():
                report = self._unwind(applied, skipped, ())
                final = TransactionState.DISCARDED if report.consistent else TransactionState.FAILED
                self._transition(final)
                raise CommitCancelledError(
                    f"Commit cancelled before writing {step.name}",
                    report=replace(report, state=final.value),
                )
            try:
                self.driver.write_tags({step.tag: step.value})
            except PicoforgeError as exc:
                # A lost or silent device may still have applied the frame.
                in_doubt = (step.name,) if isinstance(exc, (TransportTimeoutError, DisconnectedError)) else ()
                report = self._unwind(applied, skipped, in_doubt)
                self._transition(TransactionState.FAILED)
                LOGGER.error("Commit failed at %s: %s", step.name, exc)
                raise CommitError(
                    f"Writing {step.name} failed: {exc}",
                    report=replace(report, state=TransactionState.FAILED.value),
                ) from exc
            applied.append(step)

        self._transition(TransactionState.COMMITTED)
        LOGGER.info("Committed %s", ", ".join(step.name for step in applied) or "no changes")
        return CommitReport(
            state=TransactionState.COMMITTED.value,
            applied=tuple(step.name for step in applied),
            skipped=skipped,
        )

    def _unwind(
        self,
        applied: list[WriteStep],
        skipped: tuple[str, ...],
        in_doubt: tuple[str, ...],
    ) -> CommitReport:
        rolled_back: list[str] = []
        failures: list[str] = []
        for step in reversed(applied):
            if step.previous is None:
                failures.append(step.name)
                LOGGER.error("Cannot roll back %s: device reported no previous value", step.name)
                continue
            try:
                self.driver.write_tags({step.tag: step.previous})
            except PicoforgeError as exc:
                failures.append(step.name)
                LOGGER.error("Rollback of %s failed: %s", step.name, exc)
                continue
            rolled_back.append(step.name)
        return CommitReport(
            state=self._state.value,
            applied=tuple(step.name for step in applied),
            skipped=skipped,
            rolled_back=tuple(rolled_back),
            rollback_failures=tuple(failures),
            in_doubt=in_doubt,
        )

