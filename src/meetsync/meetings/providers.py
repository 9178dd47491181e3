"""Meetings provider abstract base class and provider error taxonomy.

Every video-conferencing backend implements MeetingsProvider. The sync
workers look providers up by the meeting_provider_id stored on events,
sessions and meetings; concrete network clients live outside this
package.

Errors carry a `retryable` flag. Retryable failures leave the item
pending for the next worker cycle; non-retryable ones park the owner
with the error message until the re-arm policy picks it up again.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.meetsync.meetings.schemas import MeetingEndResult, ProviderMeeting, WorkItem


# ── Errors ───────────────────────────────────────────────────────────────────


class MeetingProviderError(Exception):
    """Base class for failures reported by a meetings provider."""

    retryable: bool = False

    @property
    def retry_after(self) -> float | None:
        """Seconds to wait before retrying, when the provider says so."""
        return None


class ProviderClientError(MeetingProviderError):
    """Request rejected by the provider (validation, permissions, ...)."""

    def __init__(self, message: str) -> None:
        super().__init__(f"provider client error: {message}")


class ProviderNetworkError(MeetingProviderError):
    """Connection to the provider failed."""

    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(f"provider network error: {message}")


class ProviderServerError(MeetingProviderError):
    """Provider returned a server-side failure."""

    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(f"provider server error: {message}")


class ProviderTokenError(MeetingProviderError):
    """Provider access token could not be obtained or was rejected."""

    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(f"provider token error: {message}")


class ProviderRateLimitError(MeetingProviderError):
    """Provider rate limit exceeded."""

    retryable = True

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded (retry after {int(retry_after)}s)")
        self._retry_after = retry_after

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class ProviderMeetingNotFoundError(MeetingProviderError):
    """Provider has no meeting with the given id."""

    def __init__(self, provider_meeting_id: str | None = None) -> None:
        super().__init__("meeting not found")
        self.provider_meeting_id = provider_meeting_id


class ProviderNotConfiguredError(MeetingProviderError):
    """No provider client is registered for the requested provider id."""

    def __init__(self, provider: str | None) -> None:
        super().__init__(f"provider not configured: {provider}")
        self.provider = provider


class NoHostAvailableError(MeetingProviderError):
    """Every candidate host account is at capacity for the requested slot."""

    def __init__(self, candidates: int) -> None:
        super().__init__(f"no host available among {candidates} candidate(s)")
        self.candidates = candidates


# ── Provider Interface ──────────────────────────────────────────────────────


class MeetingsProvider(ABC):
    """Abstract interface for a video-conferencing provider.

    Methods:
        create_meeting: Create a meeting hosted by host_user_id.
        update_meeting: Push new scheduling details for an existing meeting.
        get_meeting: Fetch current join details (passwords may be generated).
        delete_meeting: Remove a meeting.
        end_meeting: Force-terminate a running meeting.
    """

    @abstractmethod
    async def create_meeting(self, item: WorkItem, host_user_id: str | None) -> ProviderMeeting:
        """Create a meeting, return its provider details."""
        ...

    @abstractmethod
    async def update_meeting(self, provider_meeting_id: str, item: WorkItem) -> None:
        """Update a meeting's topic, schedule and settings."""
        ...

    @abstractmethod
    async def get_meeting(self, provider_meeting_id: str) -> ProviderMeeting:
        """Fetch meeting details."""
        ...

    @abstractmethod
    async def delete_meeting(self, provider_meeting_id: str) -> None:
        """Delete a meeting."""
        ...

    @abstractmethod
    async def end_meeting(self, provider_meeting_id: str) -> MeetingEndResult:
        """End a meeting if it is still running."""
        ...
