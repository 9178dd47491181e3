"""Exceptions raised by the meeting sync engine."""

from __future__ import annotations


class MeetingSyncError(Exception):
    """Base class for meeting sync engine errors."""


class MeetingConstraintError(MeetingSyncError):
    """A write violated a meeting uniqueness rule (second meeting for an owner, reused provider id)."""


class InvalidAutoEndOutcomeError(MeetingSyncError, ValueError):
    """An auto-end outcome outside the supported enumeration."""

    def __init__(self, outcome: object) -> None:
        super().__init__(f"unsupported auto-end outcome: {outcome!r}")
        self.outcome = outcome
